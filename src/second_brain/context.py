"""
Packs ranked chunks into a bounded prompt context with stable citations.

Packing is greedy in rank order and stops at the first chunk that would not
fit; chunks are never truncated and never reordered, so a lower-ranked short
chunk cannot jump ahead of a higher-ranked long one.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from .errors import InvalidConfiguration
from .models import RetrievedChunk

UNITS = ("chars", "tokens")
CHARS_PER_TOKEN = 4


def measure(content: str, unit: str = "chars") -> int:
    if unit == "chars":
        return len(content)
    if unit == "tokens":
        return math.ceil(len(content) / CHARS_PER_TOKEN)
    raise InvalidConfiguration(f"Unknown budget unit: {unit!r}", field="unit")


@dataclass(frozen=True)
class ContextEntry:
    citation: int
    item_id: str
    item_title: str
    chunk: RetrievedChunk
    cost: int

    @property
    def marker(self) -> str:
        return f"[{self.citation}]"


@dataclass
class PromptContext:
    budget: int
    unit: str = "chars"
    entries: List[ContextEntry] = field(default_factory=list)
    considered: int = 0

    @property
    def included(self) -> int:
        return len(self.entries)

    @property
    def used(self) -> int:
        return sum(entry.cost for entry in self.entries)

    def citations(self) -> Dict[int, str]:
        """Citation number -> item title, in citation order."""
        cited: Dict[int, str] = {}
        for entry in self.entries:
            cited.setdefault(entry.citation, entry.item_title)
        return cited

    def summary(self) -> str:
        return f"showing {self.included} of {self.considered} relevant results"

    def render(self) -> str:
        blocks = [f"{entry.marker} From: {entry.item_title}\n{entry.chunk.content}" for entry in self.entries]
        return "\n\n---\n\n".join(blocks)


def build_context(
    ranked: Sequence[RetrievedChunk],
    budget: int,
    unit: str = "chars",
) -> PromptContext:
    if budget < 1:
        raise InvalidConfiguration("budget must be at least 1", field="budget")
    if unit not in UNITS:
        raise InvalidConfiguration(f"Unknown budget unit: {unit!r}", field="unit")

    context = PromptContext(budget=budget, unit=unit, considered=len(ranked))
    numbers: Dict[str, int] = {}
    used = 0
    for chunk in ranked:
        cost = measure(chunk.content, unit)
        if used + cost > budget:
            break
        citation = numbers.setdefault(chunk.item_id, len(numbers) + 1)
        context.entries.append(
            ContextEntry(
                citation=citation,
                item_id=chunk.item_id,
                item_title=chunk.item_title,
                chunk=chunk,
                cost=cost,
            )
        )
        used += cost
    return context


__all__ = ["ContextEntry", "PromptContext", "build_context", "measure"]
