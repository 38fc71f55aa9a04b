"""Tests for fingerprinting, item deduplication and chunk persistence."""

import pytest
from sqlalchemy.exc import IntegrityError

from second_brain.errors import AlreadyExists, NotFound
from second_brain.items import ItemStore, fingerprint
from second_brain.models import (
    Chunk,
    ContentItem,
    GenericMetadata,
    ItemType,
    NoteMetadata,
)


def _item(data: bytes, title: str = "note", source: str = "/notes/note.md") -> ContentItem:
    return ContentItem(
        item_type=ItemType.NOTE,
        title=title,
        source=source,
        fingerprint=fingerprint(data),
    )


class TestFingerprint:
    def test_same_bytes_should_hash_the_same(self) -> None:
        assert fingerprint(b"hello") == fingerprint(b"hello")

    def test_different_bytes_should_hash_differently(self) -> None:
        assert fingerprint(b"hello") != fingerprint(b"hello!")

    def test_fingerprint_should_be_sha256_hex(self) -> None:
        assert fingerprint(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )


class TestRegister:
    def test_register_twice_should_return_the_existing_id(self, items: ItemStore) -> None:
        first = items.register(_item(b"same bytes"))
        second = items.register(_item(b"same bytes", title="copy"))

        assert first == second
        assert len(items.list_items()) == 1

    def test_create_duplicate_should_raise_already_exists(self, items: ItemStore) -> None:
        original = _item(b"dup")
        items.create(original)

        with pytest.raises(AlreadyExists) as excinfo:
            items.create(_item(b"dup"))

        assert excinfo.value.item_id == original.id

    def test_soft_delete_should_free_the_fingerprint(self, items: ItemStore) -> None:
        old_id = items.register(_item(b"content"))
        items.delete(old_id)

        new_id = items.register(_item(b"content"))

        assert new_id != old_id
        with pytest.raises(NotFound):
            items.get(old_id)

    def test_metadata_should_keep_its_variant(self, items: ItemStore) -> None:
        item = _item(b"tagged")
        item.metadata = NoteMetadata(format="markdown", tags=["recipes"], extensions={"x": 1})
        items.create(item)

        loaded = items.get(item.id)

        assert isinstance(loaded.metadata, NoteMetadata)
        assert loaded.metadata.tags == ["recipes"]
        assert loaded.metadata.extensions == {"x": 1}

    def test_default_metadata_should_be_generic(self, items: ItemStore) -> None:
        item_id = items.register(_item(b"plain"))

        assert isinstance(items.get(item_id).metadata, GenericMetadata)

    def test_find_by_source_should_ignore_deleted_items(self, items: ItemStore) -> None:
        item_id = items.register(_item(b"v1", source="/a.md"))
        items.delete(item_id)

        assert items.find_by_source("/a.md") is None


class TestCreateWithChunks:
    def test_item_and_chunks_should_be_stored_together(self, items: ItemStore) -> None:
        item = _item(b"doc")
        chunks = [Chunk(item_id=item.id, position=i, content=f"part {i}") for i in range(2)]

        items.create_with_chunks(item, chunks)

        assert [c.content for c in items.chunks_for(item.id)] == ["part 0", "part 1"]

    def test_failed_chunk_insert_should_leave_no_item_behind(self, items: ItemStore) -> None:
        item = _item(b"doc")
        clash = Chunk(item_id=item.id, position=0, content="a")
        twin = Chunk(item_id=item.id, position=1, content="b", id=clash.id)

        with pytest.raises(IntegrityError):
            items.create_with_chunks(item, [clash, twin])

        assert items.find_by_fingerprint(item.fingerprint) is None
        assert items.chunks_for(item.id) == []

    def test_taken_fingerprint_should_raise_already_exists(self, items: ItemStore) -> None:
        original = _item(b"dup")
        items.create(original)
        copy = _item(b"dup")

        with pytest.raises(AlreadyExists):
            items.create_with_chunks(copy, [Chunk(item_id=copy.id, position=0, content="x")])

        assert items.chunks_for(copy.id) == []


class TestChunks:
    def test_chunks_should_come_back_in_position_order(self, items: ItemStore) -> None:
        item_id = items.register(_item(b"doc"))
        chunks = [Chunk(item_id=item_id, position=i, content=f"part {i}") for i in range(3)]

        items.add_chunks(item_id, chunks)

        assert [c.content for c in items.chunks_for(item_id)] == ["part 0", "part 1", "part 2"]

    def test_non_contiguous_positions_should_be_rejected(self, items: ItemStore) -> None:
        item_id = items.register(_item(b"doc"))
        chunks = [
            Chunk(item_id=item_id, position=0, content="a"),
            Chunk(item_id=item_id, position=2, content="b"),
        ]

        with pytest.raises(ValueError):
            items.add_chunks(item_id, chunks)

    def test_delete_should_remove_chunks(self, items: ItemStore) -> None:
        item_id = items.register(_item(b"doc"))
        items.add_chunks(item_id, [Chunk(item_id=item_id, position=0, content="text")])

        items.delete(item_id)

        assert items.chunks_for(item_id) == []

    def test_update_content_should_swap_chunks_and_fingerprint(self, items: ItemStore) -> None:
        item_id = items.register(_item(b"v1"))
        items.add_chunks(item_id, [Chunk(item_id=item_id, position=0, content="old")])
        new_chunks = [
            Chunk(item_id=item_id, position=0, content="new a"),
            Chunk(item_id=item_id, position=1, content="new b"),
        ]

        updated = items.update_content(item_id, fingerprint(b"v2"), new_chunks, title="v2")

        assert updated.fingerprint == fingerprint(b"v2")
        assert updated.title == "v2"
        assert [c.content for c in items.chunks_for(item_id)] == ["new a", "new b"]
        assert items.find_by_fingerprint(fingerprint(b"v1")) is None

    def test_update_content_should_refuse_a_taken_fingerprint(self, items: ItemStore) -> None:
        first = items.register(_item(b"one", source="/one.md"))
        second = items.register(_item(b"two", source="/two.md"))

        with pytest.raises(AlreadyExists) as excinfo:
            items.update_content(second, fingerprint(b"one"), [])

        assert excinfo.value.item_id == first

    def test_fetch_chunks_should_keep_rank_order_and_drop_unknown(self, items: ItemStore) -> None:
        item_id = items.register(_item(b"doc", title="Doc"))
        chunks = [Chunk(item_id=item_id, position=i, content=f"part {i}") for i in range(3)]
        items.add_chunks(item_id, chunks)

        results = items.fetch_chunks(
            [(chunks[2].id, 0.9), ("missing", 0.8), (chunks[0].id, 0.5)]
        )

        assert [r.content for r in results] == ["part 2", "part 0"]
        assert [r.score for r in results] == [0.9, 0.5]
        assert all(r.item_title == "Doc" for r in results)
