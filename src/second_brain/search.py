"""
Lexical, vector and fused retrieval over the chunk store.

Both signals are min-max normalised within their own candidate set before
being combined, so bm25 magnitudes and cosine similarities are comparable:

    fused = w * vector + (1 - w) * lexical

A chunk found by only one signal gets 0 for the other.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, text

from .db import ChunkRow, Database
from .embeddings import EmbeddingStore, VectorHit
from .errors import InvalidConfiguration
from .items import ItemStore
from .log import get_logger
from .models import RetrievedChunk

logger = get_logger(__name__)

_TOKEN = re.compile(r"\w+", re.UNICODE)

_LEXICAL_SQL = text(
    """
    SELECT c.id AS chunk_id, -bm25(chunks_fts) AS score
    FROM chunks_fts
    JOIN chunks AS c ON c.rowid = chunks_fts.rowid
    JOIN items AS i ON i.id = c.item_id
    WHERE chunks_fts MATCH :match AND i.deleted_at IS NULL
    ORDER BY score DESC, c.created_at DESC, c.id ASC
    LIMIT :limit
    """
)


@dataclass(frozen=True)
class LexicalHit:
    chunk_id: str
    score: float


@dataclass(frozen=True)
class FusedHit:
    chunk_id: str
    score: float
    vector_score: Optional[float] = None
    lexical_score: Optional[float] = None


def match_expression(query_text: str) -> Optional[str]:
    """Quote every word and OR them, so punctuation never reaches the FTS5 parser."""
    tokens = _TOKEN.findall(query_text)
    if not tokens:
        return None
    return " OR ".join(f'"{token}"' for token in tokens)


def _normalize(scores: Dict[str, float]) -> Dict[str, float]:
    if not scores:
        return {}
    lo = min(scores.values())
    hi = max(scores.values())
    if hi == lo:
        return {chunk_id: 1.0 for chunk_id in scores}
    span = hi - lo
    return {chunk_id: (score - lo) / span for chunk_id, score in scores.items()}


class Retriever:
    def __init__(
        self,
        db: Database,
        embeddings: EmbeddingStore,
        candidate_multiplier: int = 3,
    ) -> None:
        if candidate_multiplier < 1:
            raise InvalidConfiguration(
                "candidate_multiplier must be at least 1", field="candidate_multiplier"
            )
        self.db = db
        self.embeddings = embeddings
        self.items = ItemStore(db)
        self.candidate_multiplier = candidate_multiplier

    def lexical(self, query_text: str, limit: int = 10) -> List[LexicalHit]:
        """Full-text hits ranked by bm25; higher score is better."""
        if limit < 1:
            raise InvalidConfiguration("limit must be at least 1", field="limit")
        match = match_expression(query_text)
        if match is None:
            return []
        with self.db.session() as session:
            rows = session.execute(_LEXICAL_SQL, {"match": match, "limit": limit}).all()
        return [LexicalHit(chunk_id=row.chunk_id, score=float(row.score)) for row in rows]

    def vector(self, query_vector: Sequence[float], k: int = 10) -> List[VectorHit]:
        return self.embeddings.search(query_vector, k)

    def _recency(self, chunk_ids: Iterable[str]) -> Dict[str, datetime]:
        ids = list(chunk_ids)
        if not ids:
            return {}
        stmt = select(ChunkRow.id, ChunkRow.created_at).where(ChunkRow.id.in_(ids))
        with self.db.session() as session:
            return {chunk_id: created for chunk_id, created in session.execute(stmt).all()}

    def hybrid(
        self,
        query_text: str,
        query_vector: Optional[Sequence[float]],
        k: int = 5,
        vector_weight: float = 0.7,
    ) -> List[FusedHit]:
        """
        Fuse lexical and vector candidates into one ranking.

        Ties on the fused score are broken by the normalised score of the
        heavier-weighted signal (a chunk missing that signal ranks below one
        that has it), then by the more recent chunk, then by chunk id.
        """
        if k < 1:
            raise InvalidConfiguration("k must be at least 1", field="k")
        if not 0.0 <= vector_weight <= 1.0:
            raise InvalidConfiguration(
                f"vector_weight must be within [0, 1], got {vector_weight}", field="vector_weight"
            )

        pool = max(k, k * self.candidate_multiplier)
        lexical = _normalize({hit.chunk_id: hit.score for hit in self.lexical(query_text, pool)})
        vector: Dict[str, float] = {}
        if query_vector is not None:
            vector = _normalize({hit.chunk_id: hit.score for hit in self.vector(query_vector, pool)})

        candidates = set(lexical) | set(vector)
        if not candidates:
            return []

        hits = [
            FusedHit(
                chunk_id=chunk_id,
                score=vector_weight * vector.get(chunk_id, 0.0)
                + (1.0 - vector_weight) * lexical.get(chunk_id, 0.0),
                vector_score=vector.get(chunk_id),
                lexical_score=lexical.get(chunk_id),
            )
            for chunk_id in candidates
        ]

        primary = "vector_score" if vector_weight >= 0.5 else "lexical_score"
        recency = self._recency(candidates)

        def primary_score(hit: FusedHit) -> float:
            value = getattr(hit, primary)
            return -1.0 if value is None else value

        hits.sort(key=lambda hit: hit.chunk_id)
        hits.sort(key=lambda hit: recency.get(hit.chunk_id, datetime.min), reverse=True)
        hits.sort(key=primary_score, reverse=True)
        hits.sort(key=lambda hit: hit.score, reverse=True)

        logger.debug(
            "Hybrid search: %d lexical, %d vector, %d fused candidates",
            len(lexical),
            len(vector),
            len(hits),
        )
        return hits[:k]

    def retrieve(self, hits: Iterable[FusedHit]) -> List[RetrievedChunk]:
        """Hydrate ranked hits with chunk text and item titles, keeping their order."""
        return self.items.fetch_chunks((hit.chunk_id, hit.score) for hit in hits)

    def search(
        self,
        query_text: str,
        query_vector: Optional[Sequence[float]],
        k: int = 5,
        vector_weight: float = 0.7,
    ) -> List[RetrievedChunk]:
        return self.retrieve(self.hybrid(query_text, query_vector, k, vector_weight))


__all__ = ["FusedHit", "LexicalHit", "Retriever", "match_expression"]
