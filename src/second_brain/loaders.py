"""
Default format loaders: path -> raw bytes, extracted text and typed metadata.

Failures are classified for the queue: content that can never be read
(unsupported type, corrupt PDF, undecodable text, missing file) raises
TerminalFailure; environmental problems (I/O errors, no transcriber
configured) raise TransientFailure so the job is retried.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .chunker import TranscriptSegment
from .errors import TerminalFailure, TransientFailure
from .log import get_logger
from .models import (
    AudioMetadata,
    CodeMetadata,
    DocumentMetadata,
    ItemMetadata,
    ItemType,
    NoteMetadata,
)

logger = get_logger(__name__)

Transcriber = Callable[[Path], Sequence[TranscriptSegment]]

_LANGUAGES = {
    "py": "python",
    "rs": "rust",
    "js": "javascript",
    "ts": "typescript",
    "go": "go",
    "c": "c",
    "cpp": "cpp",
    "h": "c",
    "java": "java",
    "rb": "ruby",
    "sh": "shell",
    "sql": "sql",
    "html": "html",
    "css": "css",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
}

_MARKDOWN = {".md", ".markdown"}


@dataclass
class LoadedContent:
    raw: bytes
    title: str
    metadata: ItemMetadata
    text: Optional[str] = None
    segments: List[TranscriptSegment] = field(default_factory=list)


def _read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        raise TerminalFailure(f"File not found: {path}", {"path": str(path)}) from None
    except OSError as exc:
        raise TransientFailure(f"Could not read {path}: {exc}", {"path": str(path)}) from exc


def _decode(path: Path, raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise TerminalFailure(f"{path.name} is not valid UTF-8", {"path": str(path)}) from exc


def _markdown_title(text: str) -> Optional[str]:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:].strip() or None
    return None


def load_markdown(path: Path) -> LoadedContent:
    raw = _read_bytes(path)
    text = _decode(path, raw)
    fmt = "markdown" if path.suffix.lower() in _MARKDOWN else "text"
    title = (_markdown_title(text) if fmt == "markdown" else None) or path.stem
    return LoadedContent(raw=raw, title=title, text=text, metadata=NoteMetadata(format=fmt))


def load_code(path: Path) -> LoadedContent:
    raw = _read_bytes(path)
    text = _decode(path, raw)
    language = _LANGUAGES.get(path.suffix.lower().lstrip("."))
    return LoadedContent(
        raw=raw,
        title=path.name,
        text=text,
        metadata=CodeMetadata(language=language, lines=len(text.splitlines())),
    )


def load_pdf(path: Path) -> LoadedContent:
    raw = _read_bytes(path)
    try:
        reader = PdfReader(str(path))
        pages = [page.extract_text() or "" for page in reader.pages]
        info = reader.metadata
    except PdfReadError as exc:
        raise TerminalFailure(f"Corrupt PDF {path.name}: {exc}", {"path": str(path)}) from exc

    title = (info.title if info is not None else None) or path.stem
    author = info.author if info is not None else None
    return LoadedContent(
        raw=raw,
        title=title,
        text="\n\n".join(pages),
        metadata=DocumentMetadata(page_count=len(pages), author=author),
    )


def load_audio(path: Path, transcriber: Optional[Transcriber]) -> LoadedContent:
    if transcriber is None:
        raise TransientFailure(
            f"No transcriber configured for {path.name}", {"path": str(path)}
        )
    raw = _read_bytes(path)
    segments = list(transcriber(path))
    duration = max((s.end for s in segments), default=None)
    return LoadedContent(
        raw=raw,
        title=path.stem,
        segments=segments,
        metadata=AudioMetadata(duration_seconds=duration, segment_count=len(segments)),
    )


def detect_type(path: Path) -> Optional[ItemType]:
    return ItemType.from_extension(path.suffix)


def is_supported(path: Path, can_transcribe: bool = True) -> bool:
    """Whether ``path`` has a loader; recordings need a transcriber to count."""
    item_type = detect_type(path)
    if item_type in (ItemType.AUDIO, ItemType.VIDEO):
        return can_transcribe
    if item_type in (ItemType.NOTE, ItemType.CODE):
        return True
    return item_type is ItemType.DOCUMENT and path.suffix.lower() == ".pdf"


def load_path(
    path: Path,
    item_type: Optional[ItemType] = None,
    transcriber: Optional[Transcriber] = None,
) -> LoadedContent:
    """Load ``path`` with the loader for its (declared or detected) type."""
    if item_type is None:
        item_type = detect_type(path)
    if item_type is None:
        raise TerminalFailure(f"Unsupported file type: {path.suffix or path.name}", {"path": str(path)})

    if item_type is ItemType.NOTE:
        return load_markdown(path)
    if item_type is ItemType.CODE:
        return load_code(path)
    if item_type is ItemType.DOCUMENT and path.suffix.lower() == ".pdf":
        return load_pdf(path)
    if item_type in (ItemType.AUDIO, ItemType.VIDEO):
        return load_audio(path, transcriber)

    raise TerminalFailure(
        f"No loader for {item_type.value} content ({path.name})",
        {"path": str(path), "item_type": item_type.value},
    )


__all__ = [
    "LoadedContent",
    "Transcriber",
    "detect_type",
    "is_supported",
    "load_audio",
    "load_code",
    "load_markdown",
    "load_path",
    "load_pdf",
]
