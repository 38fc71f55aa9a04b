"""Tests for the embedding store, exact vector search and batch embedding."""

from datetime import datetime, timedelta

import numpy as np
import pytest
from sqlalchemy.exc import IntegrityError

from second_brain.db import Database, EmbeddingRow
from second_brain.embeddings import (
    EmbeddingStore,
    decode_vector,
    embed_pending,
    encode_vector,
)
from second_brain.errors import DimensionMismatch, InvalidConfiguration, NotFound
from second_brain.items import ItemStore


@pytest.fixture
def three_chunks(make_item):
    item = make_item("vectors", ["alpha", "beta", "gamma"])
    return item


def _chunk_ids(items: ItemStore, item_id: str):
    return [c.id for c in items.chunks_for(item_id)]


class TestBlobFormat:
    def test_vectors_should_be_stored_as_little_endian_float32(self) -> None:
        blob = encode_vector([1.0, -2.5])

        assert len(blob) == 8
        assert blob == np.array([1.0, -2.5], dtype="<f4").tobytes()
        np.testing.assert_array_equal(decode_vector(blob), np.array([1.0, -2.5], dtype=np.float32))


class TestPut:
    def test_put_then_get_should_return_the_vector(
        self, embeddings: EmbeddingStore, items: ItemStore, three_chunks
    ) -> None:
        chunk_id = _chunk_ids(items, three_chunks.id)[0]

        embeddings.put(chunk_id, [0.1, 0.2, 0.3])

        np.testing.assert_allclose(embeddings.get(chunk_id), [0.1, 0.2, 0.3], rtol=1e-6)
        assert embeddings.dimension() == 3

    def test_put_should_upsert(
        self, embeddings: EmbeddingStore, items: ItemStore, three_chunks
    ) -> None:
        chunk_id = _chunk_ids(items, three_chunks.id)[0]
        embeddings.put(chunk_id, [1.0, 0.0])

        embeddings.put(chunk_id, [0.0, 1.0])

        np.testing.assert_array_equal(embeddings.get(chunk_id), [0.0, 1.0])
        assert embeddings.stats() == (1, 3)

    def test_put_with_other_dimension_should_raise(
        self, embeddings: EmbeddingStore, items: ItemStore, three_chunks
    ) -> None:
        first, second, _ = _chunk_ids(items, three_chunks.id)
        embeddings.put(first, [1.0, 0.0, 0.0])

        with pytest.raises(DimensionMismatch) as excinfo:
            embeddings.put(second, [1.0, 0.0])

        assert excinfo.value.expected == 3
        assert excinfo.value.actual == 2

    def test_racing_first_writes_of_different_widths_should_raise(
        self, embeddings: EmbeddingStore, items: ItemStore, three_chunks, monkeypatch
    ) -> None:
        first, second, _ = _chunk_ids(items, three_chunks.id)
        embeddings.put(first, [1.0, 0.0, 0.0])
        original = EmbeddingStore._other_dimension
        calls = []

        def stale_read(self, session, chunk_id):
            # The first read misses the concurrent write, as a racing writer would.
            calls.append(chunk_id)
            return None if len(calls) == 1 else original(self, session, chunk_id)

        monkeypatch.setattr(EmbeddingStore, "_other_dimension", stale_read)

        with pytest.raises(DimensionMismatch) as excinfo:
            embeddings.put(second, [1.0, 0.0])

        assert excinfo.value.expected == 3
        assert embeddings.get(second) is None
        assert embeddings.stats() == (1, 3)

    def test_database_should_reject_a_second_width(
        self, db: Database, embeddings: EmbeddingStore, items: ItemStore, three_chunks
    ) -> None:
        first, second, _ = _chunk_ids(items, three_chunks.id)
        embeddings.put(first, [1.0, 0.0, 0.0])

        with pytest.raises(IntegrityError):
            with db.session() as session:
                session.add(
                    EmbeddingRow(
                        chunk_id=second,
                        vector=encode_vector([1.0, 0.0]),
                        dimensions=2,
                        model="other",
                    )
                )

        assert embeddings.get(second) is None

    def test_sole_embedding_may_change_width(
        self, embeddings: EmbeddingStore, items: ItemStore, three_chunks
    ) -> None:
        first = _chunk_ids(items, three_chunks.id)[0]
        embeddings.put(first, [1.0, 0.0, 0.0])

        embeddings.put(first, [0.0, 1.0])

        assert embeddings.dimension() == 2

    def test_put_for_unknown_chunk_should_raise(self, embeddings: EmbeddingStore) -> None:
        with pytest.raises(NotFound):
            embeddings.put("missing", [1.0])

    def test_get_unembedded_should_list_chunks_without_vectors(
        self, embeddings: EmbeddingStore, items: ItemStore, three_chunks
    ) -> None:
        first, second, third = _chunk_ids(items, three_chunks.id)
        embeddings.put(second, [1.0, 0.0])

        pending = embeddings.get_unembedded(limit=10)

        assert [c.id for c in pending] == [first, third]

    def test_embedding_should_not_outlive_its_chunk(
        self, embeddings: EmbeddingStore, items: ItemStore, three_chunks
    ) -> None:
        for chunk_id in _chunk_ids(items, three_chunks.id):
            embeddings.put(chunk_id, [1.0, 1.0])

        items.delete(three_chunks.id)

        assert embeddings.stats() == (0, 0)
        assert embeddings.search([1.0, 1.0], 3) == []


class TestSearch:
    def test_parallel_vector_should_rank_first_with_similarity_one(
        self, embeddings: EmbeddingStore, items: ItemStore, three_chunks
    ) -> None:
        a, b, c = _chunk_ids(items, three_chunks.id)
        embeddings.put(a, [1.0, 2.0, 3.0])
        embeddings.put(b, [3.0, -1.0, 0.0])
        embeddings.put(c, [0.0, 0.0, 1.0])

        hits = embeddings.search([2.0, 4.0, 6.0], 1)

        assert len(hits) == 1
        assert hits[0].chunk_id == a
        assert hits[0].score == pytest.approx(1.0, abs=1e-5)

    def test_results_should_be_sorted_by_similarity(
        self, embeddings: EmbeddingStore, items: ItemStore, three_chunks
    ) -> None:
        a, b, c = _chunk_ids(items, three_chunks.id)
        embeddings.put(a, [1.0, 0.0])
        embeddings.put(b, [0.6, 0.8])
        embeddings.put(c, [-1.0, 0.0])

        hits = embeddings.search([1.0, 0.0], 3)

        assert [h.chunk_id for h in hits] == [a, b, c]
        assert hits[0].score > hits[1].score > hits[2].score

    def test_ties_should_prefer_the_newer_chunk(
        self, embeddings: EmbeddingStore, items: ItemStore, make_item
    ) -> None:
        base = datetime(2024, 1, 1, 12, 0, 0)
        item = make_item(
            "tied", ["older", "newer"], created_at=[base, base + timedelta(days=1)]
        )
        older, newer = _chunk_ids(items, item.id)
        embeddings.put(older, [1.0, 1.0])
        embeddings.put(newer, [1.0, 1.0])

        hits = embeddings.search([1.0, 1.0], 2)

        assert [h.chunk_id for h in hits] == [newer, older]

    def test_query_dimension_mismatch_should_raise(
        self, embeddings: EmbeddingStore, items: ItemStore, three_chunks
    ) -> None:
        embeddings.put(_chunk_ids(items, three_chunks.id)[0], [1.0, 0.0, 0.0])

        with pytest.raises(DimensionMismatch):
            embeddings.search([1.0, 0.0], 1)

    def test_empty_store_should_return_no_hits(self, embeddings: EmbeddingStore) -> None:
        assert embeddings.search([1.0, 0.0], 5) == []

    def test_k_below_one_should_raise(self, embeddings: EmbeddingStore) -> None:
        with pytest.raises(InvalidConfiguration):
            embeddings.search([1.0], 0)

    def test_writes_should_invalidate_the_cached_matrix(
        self, embeddings: EmbeddingStore, items: ItemStore, three_chunks
    ) -> None:
        a, b, _ = _chunk_ids(items, three_chunks.id)
        embeddings.put(a, [0.0, 1.0])
        assert embeddings.search([1.0, 0.0], 1)[0].chunk_id == a

        embeddings.put(b, [1.0, 0.0])

        assert embeddings.search([1.0, 0.0], 1)[0].chunk_id == b


class TestEmbedPending:
    def test_should_embed_every_chunk_once(
        self, embeddings: EmbeddingStore, make_item, fake_encoder
    ) -> None:
        make_item("one", ["apple pie", "banana bread", "cherry tart"])
        make_item("two", ["olive oil", "rice"])

        report = embed_pending(embeddings, fake_encoder, batch_size=2)

        assert report.embedded == 5
        assert report.failed == 0
        assert embeddings.stats() == (5, 5)
        assert embed_pending(embeddings, fake_encoder, batch_size=2).embedded == 0

    def test_failed_batch_should_be_skipped_for_the_run(
        self, embeddings: EmbeddingStore, make_item
    ) -> None:
        make_item("one", ["apple", "banana", "cherry"])

        class FlakyEncoder:
            def encode(self, texts):
                if "banana" in texts:
                    raise RuntimeError("model crashed")
                return np.ones((len(texts), 3), dtype=np.float32)

        report = embed_pending(embeddings, FlakyEncoder(), batch_size=1)

        assert report.embedded == 2
        assert report.failed == 1
        assert embeddings.stats() == (2, 3)
        assert [c.content for c in embeddings.get_unembedded()] == ["banana"]

    def test_invalid_batch_size_should_raise(self, embeddings: EmbeddingStore, fake_encoder) -> None:
        with pytest.raises(InvalidConfiguration):
            embed_pending(embeddings, fake_encoder, batch_size=0)
