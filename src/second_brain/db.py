"""
SQLite persistence for items, chunks, embeddings and queue jobs.

The schema enforces the ownership and uniqueness rules itself:

- one active item per fingerprint (partial unique index, soft-deleted rows excluded)
- chunks belong to an item and die with it (``ON DELETE CASCADE``)
- embeddings belong to a chunk and die with it
- at most one pending/processing job per source

Chunk text is mirrored into an FTS5 external-content table by triggers.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import (
    DDL,
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .log import get_logger
from .models import utcnow

logger = get_logger(__name__)


class Base(DeclarativeBase):
    pass


class ItemRow(Base):
    __tablename__ = "items"
    __table_args__ = (
        Index(
            "ux_items_active_fingerprint",
            "fingerprint",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    item_type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[Optional[str]] = mapped_column(Text, index=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    # "metadata" is reserved on declarative classes, hence the attribute name.
    metadata_json: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class ChunkRow(Base):
    __tablename__ = "chunks"
    __table_args__ = (UniqueConstraint("item_id", "position", name="uq_chunks_item_position"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    start_time: Mapped[Optional[float]] = mapped_column(Float)
    end_time: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class EmbeddingRow(Base):
    __tablename__ = "embeddings"

    chunk_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chunks.id", ondelete="CASCADE"), primary_key=True
    )
    vector: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    dimensions: Mapped[int] = mapped_column(Integer, nullable=False)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class QueueJobRow(Base):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        Index(
            "ux_queue_jobs_active_source",
            "source",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
        Index("ix_queue_jobs_claim", "status", "priority", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    item_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    # Set on every claim; only the holder may complete or fail the job.
    claim_token: Mapped[Optional[str]] = mapped_column(String(36))


_FTS_DDL = (
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
        content,
        content='chunks',
        content_rowid='rowid'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS chunks_ai AFTER INSERT ON chunks BEGIN
        INSERT INTO chunks_fts(rowid, content) VALUES (new.rowid, new.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS chunks_ad AFTER DELETE ON chunks BEGIN
        INSERT INTO chunks_fts(chunks_fts, rowid, content) VALUES ('delete', old.rowid, old.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS chunks_au AFTER UPDATE ON chunks BEGIN
        INSERT INTO chunks_fts(chunks_fts, rowid, content) VALUES ('delete', old.rowid, old.content);
        INSERT INTO chunks_fts(rowid, content) VALUES (new.rowid, new.content);
    END
    """,
)

for _statement in _FTS_DDL:
    event.listen(ChunkRow.__table__, "after_create", DDL(_statement))

# One vector width per store, checked inside the writing transaction.
_EMBEDDING_DDL = tuple(
    f"""
    CREATE TRIGGER IF NOT EXISTS embeddings_dimensions_{suffix} BEFORE {action} ON embeddings
    WHEN EXISTS (
        SELECT 1 FROM embeddings
        WHERE chunk_id != new.chunk_id AND dimensions != new.dimensions
    )
    BEGIN
        SELECT RAISE(ABORT, 'embedding dimension mismatch');
    END
    """
    for suffix, action in (("bi", "INSERT"), ("bu", "UPDATE OF dimensions"))
)

for _statement in _EMBEDDING_DDL:
    event.listen(EmbeddingRow.__table__, "after_create", DDL(_statement))


class Database:
    """
    Owns the engine and hands out transactional sessions.

    One instance per database file; pass it explicitly to every store and
    worker. ``close()`` disposes the connection pool.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self.in_memory = url in ("sqlite://", "sqlite:///:memory:")

        kwargs: Dict[str, Any] = {
            "connect_args": {"check_same_thread": False, "timeout": 30},
        }
        if self.in_memory:
            kwargs["poolclass"] = StaticPool

        self.engine: Engine = create_engine(url, echo=echo, **kwargs)
        event.listen(self.engine, "connect", self._on_connect)

        self._sessions = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )
        Base.metadata.create_all(self.engine)
        self._closed = False
        logger.debug("Opened database %s", url)

    @classmethod
    def open(cls, path: Path, *, echo: bool = False) -> "Database":
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(f"sqlite:///{path}", echo=echo)

    @classmethod
    def in_memory_db(cls) -> "Database":
        return cls("sqlite://")

    def _on_connect(self, dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not self.in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session committed on clean exit, rolled back on any exception."""
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def size_bytes(self) -> int:
        with self.engine.connect() as conn:
            page_count = conn.exec_driver_sql("PRAGMA page_count").scalar() or 0
            page_size = conn.exec_driver_sql("PRAGMA page_size").scalar() or 0
        return int(page_count) * int(page_size)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self.engine.dispose()
            self._closed = True

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


__all__ = ["Base", "ChunkRow", "Database", "EmbeddingRow", "ItemRow", "QueueJobRow"]
