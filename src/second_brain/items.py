"""
Content identity, deduplication and chunk persistence.

An item's fingerprint is the SHA-256 of its raw bytes. At most one active
(non-deleted) item may hold a fingerprint; the database enforces it, so
``register`` stays idempotent even when two ingesters race on the same file.
"""

from __future__ import annotations

import hashlib
import os
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from .db import ChunkRow, Database, ItemRow
from .errors import AlreadyExists, NotFound
from .log import get_logger
from .models import (
    Chunk,
    ContentItem,
    ItemMetadata,
    ItemType,
    RetrievedChunk,
    metadata_from_json,
    metadata_to_json,
    utcnow,
)

logger = get_logger(__name__)


def fingerprint(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _to_item(row: ItemRow) -> ContentItem:
    return ContentItem(
        id=row.id,
        item_type=ItemType(row.item_type),
        title=row.title,
        source=row.source,
        fingerprint=row.fingerprint,
        metadata=metadata_from_json(row.metadata_json),
        summary=row.summary,
        created_at=row.created_at,
        processed_at=row.processed_at,
    )


def _to_chunk(row: ChunkRow) -> Chunk:
    return Chunk(
        id=row.id,
        item_id=row.item_id,
        position=row.position,
        content=row.content,
        start_time=row.start_time,
        end_time=row.end_time,
        created_at=row.created_at,
    )


def _chunk_rows(item_id: str, chunks: Sequence[Chunk]) -> List[ChunkRow]:
    rows = []
    for expected, chunk in enumerate(chunks):
        if chunk.item_id != item_id:
            raise ValueError(f"Chunk {chunk.id} belongs to {chunk.item_id}, not {item_id}")
        if chunk.position != expected:
            raise ValueError(
                f"Chunk positions must be contiguous from 0; got {chunk.position} at {expected}"
            )
        rows.append(
            ChunkRow(
                id=chunk.id,
                item_id=item_id,
                position=chunk.position,
                content=chunk.content,
                start_time=chunk.start_time,
                end_time=chunk.end_time,
                created_at=chunk.created_at,
            )
        )
    return rows


def _item_row(item: ContentItem) -> ItemRow:
    return ItemRow(
        id=item.id,
        item_type=item.item_type.value,
        title=item.title,
        source=item.source,
        fingerprint=item.fingerprint,
        summary=item.summary,
        metadata_json=metadata_to_json(item.metadata),
        created_at=item.created_at,
        processed_at=item.processed_at,
    )


class ItemStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    # --- identity ------------------------------------------------------------

    def create(self, item: ContentItem) -> str:
        """Insert ``item``; raises AlreadyExists if its fingerprint is taken."""
        return self.create_with_chunks(item, [])

    def create_with_chunks(self, item: ContentItem, chunks: Sequence[Chunk]) -> str:
        """
        Insert ``item`` together with its chunk set in one transaction.

        Either both land or neither does, so a failure half way never leaves a
        fingerprint behind without the chunks it stands for. Raises
        AlreadyExists if the fingerprint is taken.
        """
        existing = self.find_by_fingerprint(item.fingerprint)
        if existing is not None:
            raise AlreadyExists(existing.id, item.fingerprint)

        rows = _chunk_rows(item.id, chunks)
        try:
            with self.db.session() as session:
                session.add(_item_row(item))
                session.flush()
                session.add_all(rows)
        except IntegrityError:
            # Lost a race against a concurrent insert of the same bytes.
            winner = self.find_by_fingerprint(item.fingerprint)
            if winner is None:
                raise
            raise AlreadyExists(winner.id, item.fingerprint) from None

        logger.debug("Created item %s (%s) with %d chunks", item.id, item.title, len(rows))
        return item.id

    def register(self, item: ContentItem) -> str:
        """Return the id of the active item holding ``item``'s fingerprint, creating it if needed."""
        try:
            return self.create(item)
        except AlreadyExists as exc:
            logger.info("Content already registered as %s, skipping", exc.item_id)
            return exc.item_id

    def get(self, item_id: str) -> ContentItem:
        with self.db.session() as session:
            row = session.get(ItemRow, item_id)
            if row is None or row.deleted_at is not None:
                raise NotFound("item", item_id)
            return _to_item(row)

    def find_by_fingerprint(self, digest: str) -> Optional[ContentItem]:
        stmt = select(ItemRow).where(
            ItemRow.fingerprint == digest, ItemRow.deleted_at.is_(None)
        )
        with self.db.session() as session:
            row = session.execute(stmt).scalar_one_or_none()
            return _to_item(row) if row is not None else None

    def find_by_source(self, source: str) -> Optional[ContentItem]:
        stmt = (
            select(ItemRow)
            .where(ItemRow.source == source, ItemRow.deleted_at.is_(None))
            .order_by(ItemRow.created_at.desc())
            .limit(1)
        )
        with self.db.session() as session:
            row = session.execute(stmt).scalar_one_or_none()
            return _to_item(row) if row is not None else None

    def list_items(
        self, item_type: Optional[ItemType] = None, limit: int = 100
    ) -> List[ContentItem]:
        stmt = select(ItemRow).where(ItemRow.deleted_at.is_(None))
        if item_type is not None:
            stmt = stmt.where(ItemRow.item_type == item_type.value)
        stmt = stmt.order_by(ItemRow.created_at.desc()).limit(limit)
        with self.db.session() as session:
            return [_to_item(row) for row in session.execute(stmt).scalars()]

    def find_under(self, directory: str) -> List[ContentItem]:
        """Active items whose source path lies below ``directory``."""
        prefix = directory.rstrip(os.sep) + os.sep
        stmt = (
            select(ItemRow)
            .where(
                ItemRow.source.startswith(prefix, autoescape=True),
                ItemRow.deleted_at.is_(None),
            )
            .order_by(ItemRow.source)
        )
        with self.db.session() as session:
            return [_to_item(row) for row in session.execute(stmt).scalars()]

    def update_content(
        self,
        item_id: str,
        digest: str,
        chunks: Sequence[Chunk],
        *,
        title: Optional[str] = None,
        metadata: Optional[ItemMetadata] = None,
    ) -> ContentItem:
        """
        Point an existing item at new bytes and swap its chunk set.

        Old chunks go with their embeddings (cascade). Raises AlreadyExists if
        another active item already holds ``digest``.
        """
        holder = self.find_by_fingerprint(digest)
        if holder is not None and holder.id != item_id:
            raise AlreadyExists(holder.id, digest)

        rows = _chunk_rows(item_id, chunks)
        with self.db.session() as session:
            row = session.get(ItemRow, item_id)
            if row is None or row.deleted_at is not None:
                raise NotFound("item", item_id)
            row.fingerprint = digest
            row.processed_at = utcnow()
            if title is not None:
                row.title = title
            if metadata is not None:
                row.metadata_json = metadata_to_json(metadata)
            session.execute(delete(ChunkRow).where(ChunkRow.item_id == item_id))
            session.add_all(rows)
            session.flush()
            item = _to_item(row)

        logger.info("Updated item %s with %d chunks", item_id, len(rows))
        return item

    def delete(self, item_id: str) -> None:
        """Soft-delete: the row stays for history, its chunks and fingerprint are released."""
        with self.db.session() as session:
            row = session.get(ItemRow, item_id)
            if row is None or row.deleted_at is not None:
                raise NotFound("item", item_id)
            row.deleted_at = utcnow()
            session.execute(delete(ChunkRow).where(ChunkRow.item_id == item_id))
        logger.info("Deleted item %s", item_id)

    # --- chunks --------------------------------------------------------------

    def add_chunks(self, item_id: str, chunks: Sequence[Chunk]) -> int:
        rows = _chunk_rows(item_id, chunks)
        with self.db.session() as session:
            row = session.get(ItemRow, item_id)
            if row is None or row.deleted_at is not None:
                raise NotFound("item", item_id)
            session.add_all(rows)
            row.processed_at = utcnow()
        return len(rows)

    def replace_chunks(self, item_id: str, chunks: Sequence[Chunk]) -> int:
        rows = _chunk_rows(item_id, chunks)
        with self.db.session() as session:
            row = session.get(ItemRow, item_id)
            if row is None or row.deleted_at is not None:
                raise NotFound("item", item_id)
            session.execute(delete(ChunkRow).where(ChunkRow.item_id == item_id))
            session.add_all(rows)
            row.processed_at = utcnow()
        return len(rows)

    def chunks_for(self, item_id: str) -> List[Chunk]:
        stmt = (
            select(ChunkRow)
            .where(ChunkRow.item_id == item_id)
            .order_by(ChunkRow.position)
        )
        with self.db.session() as session:
            return [_to_chunk(row) for row in session.execute(stmt).scalars()]

    def get_chunk(self, chunk_id: str) -> Chunk:
        with self.db.session() as session:
            row = session.get(ChunkRow, chunk_id)
            if row is None:
                raise NotFound("chunk", chunk_id)
            return _to_chunk(row)

    def fetch_chunks(self, ranked: Iterable[Tuple[str, float]]) -> List[RetrievedChunk]:
        """
        Hydrate ``(chunk_id, score)`` pairs with chunk text and item title.

        Order is preserved; ids whose chunk no longer exists are dropped.
        """
        ranked = list(ranked)
        if not ranked:
            return []
        ids = [chunk_id for chunk_id, _ in ranked]
        stmt = (
            select(ChunkRow, ItemRow.title)
            .join(ItemRow, ItemRow.id == ChunkRow.item_id)
            .where(ChunkRow.id.in_(ids), ItemRow.deleted_at.is_(None))
        )
        with self.db.session() as session:
            found: Dict[str, tuple] = {
                chunk.id: (chunk, title) for chunk, title in session.execute(stmt).all()
            }

        results = []
        for chunk_id, score in ranked:
            if chunk_id not in found:
                continue
            chunk, title = found[chunk_id]
            results.append(
                RetrievedChunk(
                    chunk_id=chunk.id,
                    item_id=chunk.item_id,
                    item_title=title,
                    position=chunk.position,
                    content=chunk.content,
                    score=float(score),
                    start_time=chunk.start_time,
                    end_time=chunk.end_time,
                )
            )
        return results


__all__ = ["ItemStore", "fingerprint"]
