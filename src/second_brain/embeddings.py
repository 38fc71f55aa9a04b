"""
Chunk embeddings and exact vector search.

Vectors are stored as little-endian float32 blobs next to the chunk they
describe. Search loads every vector into a flat inner-product FAISS index over
L2-normalised rows, i.e. exact cosine similarity; there is no approximate
index, which keeps results deterministic for corpora up to ~100K chunks.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Sequence, Set, Tuple

import faiss
import numpy as np
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from .db import ChunkRow, Database, EmbeddingRow, ItemRow
from .errors import DimensionMismatch, InvalidConfiguration, NotFound
from .log import get_logger
from .models import Chunk, utcnow

logger = get_logger(__name__)

_DTYPE = "<f4"


@dataclass(frozen=True)
class VectorHit:
    chunk_id: str
    score: float


@dataclass
class _Matrix:
    key: Tuple[int, Optional[datetime]]
    index: faiss.IndexFlatIP
    chunk_ids: List[str]
    created_at: List[datetime]

    @property
    def dimension(self) -> int:
        return self.index.d


def _as_vector(vector: Sequence[float]) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float32)
    if arr.ndim != 1 or arr.size == 0:
        raise ValueError(f"Expected a non-empty 1-D vector, got shape {arr.shape}")
    return arr


def encode_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=_DTYPE).tobytes()


def decode_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=_DTYPE).astype(np.float32)


class EmbeddingStore:
    def __init__(self, db: Database, model_name: str = "unknown") -> None:
        self.db = db
        self.model_name = model_name
        self._lock = threading.Lock()
        self._matrix: Optional[_Matrix] = None

    def _other_dimension(self, session, chunk_id: str) -> Optional[int]:
        return session.execute(
            select(EmbeddingRow.dimensions)
            .where(EmbeddingRow.chunk_id != chunk_id)
            .limit(1)
        ).scalar_one_or_none()

    def put(self, chunk_id: str, vector: Sequence[float]) -> None:
        """
        Insert or replace the embedding of ``chunk_id``.

        The width check is repeated by the database on write, so a concurrent
        first write of another width still ends in DimensionMismatch.
        """
        arr = _as_vector(vector)
        try:
            with self.db.session() as session:
                if session.get(ChunkRow, chunk_id) is None:
                    raise NotFound("chunk", chunk_id)
                expected = self._other_dimension(session, chunk_id)
                if expected is not None and expected != arr.size:
                    raise DimensionMismatch(expected, arr.size)

                row = session.get(EmbeddingRow, chunk_id)
                if row is None:
                    row = EmbeddingRow(chunk_id=chunk_id)
                    session.add(row)
                row.vector = encode_vector(arr)
                row.dimensions = int(arr.size)
                row.model = self.model_name
                row.updated_at = utcnow()
        except IntegrityError:
            with self.db.session() as session:
                expected = self._other_dimension(session, chunk_id)
            if expected is None or expected == arr.size:
                raise
            raise DimensionMismatch(expected, arr.size) from None
        self.invalidate()

    def get(self, chunk_id: str) -> Optional[np.ndarray]:
        with self.db.session() as session:
            row = session.get(EmbeddingRow, chunk_id)
            return decode_vector(row.vector) if row is not None else None

    def get_unembedded(self, limit: int = 100) -> List[Chunk]:
        """Chunks of active items that have no embedding yet, by item then position."""
        stmt = (
            select(ChunkRow)
            .join(ItemRow, ItemRow.id == ChunkRow.item_id)
            .outerjoin(EmbeddingRow, EmbeddingRow.chunk_id == ChunkRow.id)
            .where(EmbeddingRow.chunk_id.is_(None), ItemRow.deleted_at.is_(None))
            .order_by(ChunkRow.item_id, ChunkRow.position)
            .limit(limit)
        )
        with self.db.session() as session:
            return [
                Chunk(
                    id=row.id,
                    item_id=row.item_id,
                    position=row.position,
                    content=row.content,
                    start_time=row.start_time,
                    end_time=row.end_time,
                    created_at=row.created_at,
                )
                for row in session.execute(stmt).scalars()
            ]

    def dimension(self) -> Optional[int]:
        with self.db.session() as session:
            return session.execute(
                select(EmbeddingRow.dimensions).limit(1)
            ).scalar_one_or_none()

    def stats(self) -> Tuple[int, int]:
        """Return ``(embedded, total)`` chunk counts."""
        with self.db.session() as session:
            embedded = session.execute(select(func.count()).select_from(EmbeddingRow)).scalar_one()
            total = session.execute(select(func.count()).select_from(ChunkRow)).scalar_one()
        return int(embedded), int(total)

    def invalidate(self) -> None:
        with self._lock:
            self._matrix = None

    def _cache_key(self) -> Tuple[int, Optional[datetime]]:
        with self.db.session() as session:
            count, latest = session.execute(
                select(func.count(), func.max(EmbeddingRow.updated_at))
            ).one()
        return int(count), latest

    def _load(self) -> Optional[_Matrix]:
        key = self._cache_key()
        with self._lock:
            if self._matrix is not None and self._matrix.key == key:
                return self._matrix

        stmt = (
            select(EmbeddingRow.chunk_id, EmbeddingRow.vector, ChunkRow.created_at)
            .join(ChunkRow, ChunkRow.id == EmbeddingRow.chunk_id)
            .order_by(EmbeddingRow.chunk_id)
        )
        with self.db.session() as session:
            rows = session.execute(stmt).all()
        if not rows:
            return None

        vectors = np.vstack([decode_vector(blob) for _, blob, _ in rows])
        vectors = np.ascontiguousarray(vectors, dtype=np.float32)
        faiss.normalize_L2(vectors)
        index = faiss.IndexFlatIP(vectors.shape[1])
        index.add(vectors)

        matrix = _Matrix(
            key=key,
            index=index,
            chunk_ids=[chunk_id for chunk_id, _, _ in rows],
            created_at=[created for _, _, created in rows],
        )
        with self._lock:
            self._matrix = matrix
        logger.debug("Loaded %d vectors of dimension %d", index.ntotal, index.d)
        return matrix

    def search(self, query_vector: Sequence[float], k: int) -> List[VectorHit]:
        """
        Return the ``k`` chunks most similar to ``query_vector``.

        Ties on score go to the more recently created chunk, then to the
        smaller chunk id.
        """
        if k < 1:
            raise InvalidConfiguration("k must be at least 1", field="k")
        query = _as_vector(query_vector)
        matrix = self._load()
        if matrix is None:
            return []
        if query.size != matrix.dimension:
            raise DimensionMismatch(matrix.dimension, query.size)

        q = np.ascontiguousarray(query.reshape(1, -1), dtype=np.float32)
        faiss.normalize_L2(q)
        scores, indices = matrix.index.search(q, matrix.index.ntotal)

        found = [(int(i), float(s)) for s, i in zip(scores[0], indices[0]) if i >= 0]
        found.sort(key=lambda pair: matrix.chunk_ids[pair[0]])
        found.sort(key=lambda pair: matrix.created_at[pair[0]], reverse=True)
        found.sort(key=lambda pair: pair[1], reverse=True)

        return [VectorHit(chunk_id=matrix.chunk_ids[i], score=s) for i, s in found[:k]]


class Encoder(Protocol):
    def encode(self, texts: Sequence[str]) -> np.ndarray: ...


@dataclass
class EmbedReport:
    embedded: int = 0
    failed: int = 0
    batches: int = 0


def embed_pending(store: EmbeddingStore, encoder: Encoder, batch_size: int = 32) -> EmbedReport:
    """
    Embed every chunk that has no vector yet.

    Resumable: progress is committed per chunk, so an interrupted run picks up
    where it stopped. A batch that fails is logged and skipped for the rest
    of this run.
    """
    if batch_size < 1:
        raise InvalidConfiguration("batch_size must be at least 1", field="batch_size")

    report = EmbedReport()
    skipped: Set[str] = set()
    while True:
        candidates = store.get_unembedded(limit=batch_size + len(skipped))
        batch = [c for c in candidates if c.id not in skipped][:batch_size]
        if not batch:
            break

        report.batches += 1
        try:
            vectors = np.asarray(encoder.encode([c.content for c in batch]), dtype=np.float32)
            if vectors.shape[0] != len(batch):
                raise ValueError(
                    f"Encoder returned {vectors.shape[0]} vectors for {len(batch)} chunks"
                )
            for chunk, vector in zip(batch, vectors):
                store.put(chunk.id, vector)
                report.embedded += 1
        except (DimensionMismatch, ValueError, RuntimeError) as exc:
            pending = [c.id for c in batch if store.get(c.id) is None]
            skipped.update(pending)
            report.failed += len(pending)
            logger.error("Embedding batch %d failed (%d chunks): %s", report.batches, len(pending), exc)

    logger.info(
        "Embedded %d chunk(s) in %d batch(es), %d failed", report.embedded, report.batches, report.failed
    )
    return report


__all__ = [
    "EmbedReport",
    "EmbeddingStore",
    "Encoder",
    "VectorHit",
    "decode_vector",
    "embed_pending",
    "encode_vector",
]
