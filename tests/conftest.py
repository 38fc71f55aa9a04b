"""
Shared fixtures: databases, stores and small corpus builders.

In-memory databases share one connection (StaticPool) and suit single-thread
tests; anything that spins up threads uses ``file_db``.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import numpy as np
import pytest

from second_brain.db import Database
from second_brain.embeddings import EmbeddingStore
from second_brain.items import ItemStore, fingerprint
from second_brain.job_queue import ProcessingQueue
from second_brain.models import Chunk, ContentItem, ItemType


@pytest.fixture
def db():
    """Provide a fresh in-memory database."""
    database = Database.in_memory_db()
    yield database
    database.close()


@pytest.fixture
def file_db(tmp_path: Path):
    """Provide a file-backed database safe for multi-threaded use."""
    database = Database.open(tmp_path / "index" / "test.db")
    yield database
    database.close()


@pytest.fixture
def items(db: Database) -> ItemStore:
    return ItemStore(db)


@pytest.fixture
def queue(db: Database) -> ProcessingQueue:
    return ProcessingQueue(db, max_attempts=3, stale_after=timedelta(minutes=30))


@pytest.fixture
def embeddings(db: Database) -> EmbeddingStore:
    return EmbeddingStore(db, model_name="fake-model")


@pytest.fixture
def make_item(items: ItemStore) -> Callable[..., ContentItem]:
    """Register an item whose chunks hold the given texts, in position order."""

    def _make(
        title: str,
        texts: Sequence[str],
        created_at: Optional[Sequence[datetime]] = None,
        item_type: ItemType = ItemType.NOTE,
    ) -> ContentItem:
        item = ContentItem(
            item_type=item_type,
            title=title,
            source=f"/notes/{title}.md",
            fingerprint=fingerprint(("\n\n".join(texts) + title).encode("utf-8")),
        )
        items.create(item)
        chunks: List[Chunk] = []
        for position, text in enumerate(texts):
            chunk = Chunk(item_id=item.id, position=position, content=text)
            if created_at is not None:
                chunk.created_at = created_at[position]
            chunks.append(chunk)
        items.add_chunks(item.id, chunks)
        return item

    return _make


class FakeEncoder:
    """Deterministic bag-of-letters encoder standing in for a sentence model."""

    dimension = 4

    def __init__(self) -> None:
        self.calls = 0

    def encode(self, texts: Sequence[str]) -> np.ndarray:
        self.calls += 1
        rows = []
        for text in texts:
            lowered = text.lower()
            rows.append(
                [
                    lowered.count("a") + 1.0,
                    lowered.count("e"),
                    lowered.count("i"),
                    lowered.count("o"),
                ]
            )
        return np.asarray(rows, dtype=np.float32)


@pytest.fixture
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()
