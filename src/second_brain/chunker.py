"""
Paragraph-aware text chunking with overlap.

``chunk_text`` is a pure function of its input: the same text and settings
always give the same chunk sequence. Every chunk is a literal slice of the
normalised text (see ``normalize_text``), so ``char_start``/``char_end`` can
be used to check coverage, and ``overlap`` counts the characters a chunk
shares with its predecessor.

All sizes are measured in characters (code points), so a cut can never land
inside a multi-byte encoding; cuts additionally avoid separating a base
character from a following combining mark or joiner.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .errors import InvalidConfiguration

SEPARATOR = "\n\n"
_BLANK_LINE = re.compile(r"\n[ \t\f\v]*\n\s*")
_JOINERS = {"\u200d", "\ufe0f", "\ufe0e"}

Span = Tuple[int, int]


@dataclass(frozen=True)
class TextChunk:
    position: int
    text: str
    char_start: Optional[int] = None
    char_end: Optional[int] = None
    overlap: int = 0
    start_time: Optional[float] = None
    end_time: Optional[float] = None


@dataclass(frozen=True)
class TranscriptSegment:
    text: str
    start: float
    end: float


def _validate(max_size: int, overlap: int) -> None:
    if max_size < 1:
        raise InvalidConfiguration("max_size must be at least 1", field="max_size")
    if overlap < 0:
        raise InvalidConfiguration("overlap must not be negative", field="overlap")
    if overlap >= max_size:
        raise InvalidConfiguration("overlap must be smaller than max_size", field="overlap")


def normalize_text(text: str) -> str:
    """Unify line endings, strip each paragraph and join them with one blank line."""
    cleaned = text.replace("\r\n", "\n").replace("\r", "\n")
    paragraphs = (p.strip() for p in _BLANK_LINE.split(cleaned))
    return SEPARATOR.join(p for p in paragraphs if p)


def _paragraph_spans(normalized: str) -> List[Span]:
    spans: List[Span] = []
    start = 0
    for para in normalized.split(SEPARATOR):
        spans.append((start, start + len(para)))
        start += len(para) + len(SEPARATOR)
    return spans


def _safe_boundary(text: str, index: int) -> bool:
    if index <= 0 or index >= len(text):
        return True
    ch = text[index]
    if unicodedata.combining(ch) or ch in _JOINERS:
        return False
    return text[index - 1] != "\u200d"


def _hard_split(text: str, start: int, end: int, width: int) -> List[Span]:
    """Cut text[start:end] into contiguous pieces of at most ``width`` characters."""
    pieces: List[Span] = []
    pos = start
    while end - pos > width:
        limit = pos + width
        cut = limit
        # Prefer to break just after whitespace in the back half of the window.
        floor = pos + width // 2
        ws = max(text.rfind(" ", floor, limit), text.rfind("\n", floor, limit))
        if ws != -1:
            cut = ws + 1
        while cut > pos + 1 and not _safe_boundary(text, cut):
            cut -= 1
        pieces.append((pos, cut))
        pos = cut
    pieces.append((pos, end))
    return pieces


def _seed_start(
    text: str,
    prev: Span,
    unit: Span,
    max_size: int,
    overlap: int,
) -> int:
    """Where the chunk after ``prev`` starts so it carries the trailing overlap."""
    if overlap == 0:
        return unit[0]
    start = max(prev[1] - overlap, prev[0], unit[1] - max_size)
    while start < unit[0] and (text[start].isspace() or not _safe_boundary(text, start)):
        start += 1
    return start


def chunk_text(text: str, max_size: int, overlap: int) -> List[TextChunk]:
    _validate(max_size, overlap)
    normalized = normalize_text(text)
    if not normalized:
        return []

    units: List[Span] = []
    for start, end in _paragraph_spans(normalized):
        if end - start > max_size:
            units.extend(_hard_split(normalized, start, end, max_size - overlap))
        else:
            units.append((start, end))

    spans: List[Tuple[int, int, int]] = []
    start, end = units[0]
    shared = 0
    for unit in units[1:]:
        if unit[1] - start <= max_size:
            end = unit[1]
            continue
        spans.append((start, end, shared))
        new_start = _seed_start(normalized, (start, end), unit, max_size, overlap)
        shared = max(0, end - new_start)
        start, end = new_start, unit[1]
    spans.append((start, end, shared))

    return [
        TextChunk(
            position=i,
            text=normalized[s:e],
            char_start=s,
            char_end=e,
            overlap=sh,
        )
        for i, (s, e, sh) in enumerate(spans)
    ]


def _joined_length(segments: Sequence[TranscriptSegment]) -> int:
    if not segments:
        return 0
    return sum(len(s.text) for s in segments) + len(segments) - 1


def _split_segment(seg: TranscriptSegment, width: int) -> List[TranscriptSegment]:
    if len(seg.text) <= width:
        return [seg]
    duration = seg.end - seg.start
    total = len(seg.text)
    parts = []
    for s, e in _hard_split(seg.text, 0, total, width):
        piece = seg.text[s:e].strip()
        if piece:
            parts.append(
                TranscriptSegment(
                    text=piece,
                    start=seg.start + duration * s / total,
                    end=seg.start + duration * e / total,
                )
            )
    return parts


def chunk_transcript(
    segments: Sequence[TranscriptSegment],
    max_size: int,
    overlap: int,
) -> List[TextChunk]:
    """
    Pack timestamped transcript segments into chunks.

    Overlap is carried as whole trailing segments whose joined length fits in
    ``overlap`` characters, so chunk time ranges stay exact.
    """
    _validate(max_size, overlap)

    cleaned: List[TranscriptSegment] = []
    for seg in segments:
        text = " ".join(seg.text.split())
        if text:
            cleaned.extend(
                _split_segment(TranscriptSegment(text, seg.start, seg.end), max_size)
            )

    chunks: List[TextChunk] = []
    current: List[TranscriptSegment] = []
    carried = 0

    def emit(group: List[TranscriptSegment], shared: int) -> None:
        chunks.append(
            TextChunk(
                position=len(chunks),
                text=" ".join(s.text for s in group),
                overlap=shared,
                start_time=group[0].start,
                end_time=group[-1].end,
            )
        )

    for seg in cleaned:
        if current and _joined_length(current + [seg]) > max_size:
            emit(current, carried)
            carry: List[TranscriptSegment] = []
            for prev in reversed(current):
                if _joined_length([prev] + carry) > overlap:
                    break
                carry.insert(0, prev)
            while carry and _joined_length(carry + [seg]) > max_size:
                carry.pop(0)
            carried = _joined_length(carry) + 1 if carry else 0
            current = carry
        current.append(seg)

    if current:
        emit(current, carried)
    return chunks


__all__ = [
    "SEPARATOR",
    "TextChunk",
    "TranscriptSegment",
    "chunk_text",
    "chunk_transcript",
    "normalize_text",
]
