"""Tests for greedy context packing and citations."""

from typing import List

import pytest

from second_brain.context import build_context, measure
from second_brain.errors import InvalidConfiguration
from second_brain.models import RetrievedChunk


def _chunk(n: int, size: int, item: str = "item-1", title: str = "Notes") -> RetrievedChunk:
    return RetrievedChunk(
        chunk_id=f"chunk-{n}",
        item_id=item,
        item_title=title,
        position=n,
        content="x" * size,
        score=1.0 / (n + 1),
    )


def _ranked(sizes: List[int]) -> List[RetrievedChunk]:
    return [_chunk(n, size, item=f"item-{n}", title=f"Doc {n}") for n, size in enumerate(sizes)]


class TestBuildContext:
    def test_budget_should_stop_packing_at_first_overflow(self) -> None:
        context = build_context(_ranked([100, 100, 100]), budget=250)

        assert context.included == 2
        assert context.considered == 3
        assert context.used == 200
        assert context.summary() == "showing 2 of 3 relevant results"

    def test_should_never_skip_ahead_to_a_smaller_chunk(self) -> None:
        context = build_context(_ranked([100, 300, 10]), budget=250)

        assert [e.chunk.chunk_id for e in context.entries] == ["chunk-0"]

    def test_oversized_first_chunk_should_not_be_truncated(self) -> None:
        context = build_context(_ranked([500]), budget=250)

        assert context.entries == []
        assert context.summary() == "showing 0 of 1 relevant results"

    def test_exact_fit_should_be_included(self) -> None:
        context = build_context(_ranked([100, 150]), budget=250)

        assert context.included == 2

    def test_empty_ranking_should_give_empty_context(self) -> None:
        context = build_context([], budget=100)

        assert context.included == 0
        assert context.render() == ""

    def test_token_budget_should_use_four_chars_per_token(self) -> None:
        context = build_context(_ranked([40, 40, 40]), budget=25, unit="tokens")

        assert context.included == 2
        assert context.used == 20

    @pytest.mark.parametrize("budget, unit", [(0, "chars"), (100, "words")])
    def test_invalid_budget_should_raise(self, budget: int, unit: str) -> None:
        with pytest.raises(InvalidConfiguration):
            build_context(_ranked([10]), budget=budget, unit=unit)


class TestCitations:
    def test_chunks_of_one_item_should_share_a_citation(self) -> None:
        ranked = [
            _chunk(0, 10, item="a", title="Alpha"),
            _chunk(1, 10, item="b", title="Beta"),
            _chunk(2, 10, item="a", title="Alpha"),
        ]

        context = build_context(ranked, budget=1000)

        assert [e.marker for e in context.entries] == ["[1]", "[2]", "[1]"]
        assert context.citations() == {1: "Alpha", 2: "Beta"}

    def test_render_should_label_each_block_with_its_source(self) -> None:
        ranked = [
            RetrievedChunk("c1", "a", "Alpha", 0, "first text"),
            RetrievedChunk("c2", "b", "Beta", 0, "second text"),
        ]

        rendered = build_context(ranked, budget=1000).render()

        assert rendered == (
            "[1] From: Alpha\nfirst text\n\n---\n\n[2] From: Beta\nsecond text"
        )


class TestMeasure:
    def test_tokens_should_round_up(self) -> None:
        assert measure("abcde", "tokens") == 2

    def test_chars_should_count_code_points(self) -> None:
        assert measure("\u00e9\u00e9", "chars") == 2
