from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from sqlalchemy import func, select

from .db import ChunkRow, Database, EmbeddingRow, ItemRow, QueueJobRow
from .models import ItemType, JobStatus


@dataclass
class CorpusStats:
    total_items: int = 0
    items_by_type: Dict[ItemType, int] = field(default_factory=dict)
    total_chunks: int = 0
    embedded_chunks: int = 0
    jobs_by_status: Dict[JobStatus, int] = field(default_factory=dict)
    database_bytes: int = 0

    @property
    def unembedded_chunks(self) -> int:
        return self.total_chunks - self.embedded_chunks


def collect_stats(db: Database) -> CorpusStats:
    """Counts over active items, their chunks and embeddings, plus queue state."""
    stats = CorpusStats(
        items_by_type={t: 0 for t in ItemType},
        jobs_by_status={s: 0 for s in JobStatus},
    )
    with db.session() as session:
        by_type = session.execute(
            select(ItemRow.item_type, func.count())
            .where(ItemRow.deleted_at.is_(None))
            .group_by(ItemRow.item_type)
        ).all()
        for item_type, count in by_type:
            stats.items_by_type[ItemType(item_type)] = count
            stats.total_items += count

        stats.total_chunks = session.execute(
            select(func.count()).select_from(ChunkRow)
        ).scalar_one()
        stats.embedded_chunks = session.execute(
            select(func.count()).select_from(EmbeddingRow)
        ).scalar_one()

        by_status = session.execute(
            select(QueueJobRow.status, func.count()).group_by(QueueJobRow.status)
        ).all()
        for status, count in by_status:
            stats.jobs_by_status[JobStatus(status)] = count

    stats.database_bytes = db.size_bytes()
    return stats


__all__ = ["CorpusStats", "collect_stats"]
