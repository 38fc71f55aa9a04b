"""
Domain records shared by the stores, the chunker and the retrieval layer.

Records are plain dataclasses; per-type item metadata is a pydantic
discriminated union so it survives the JSON column with its shape intact.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # SQLite stores naive timestamps; everything in the database is UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ItemType(str, Enum):
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    NOTE = "note"
    BOOKMARK = "bookmark"
    CODE = "code"
    IMAGE = "image"

    @classmethod
    def from_extension(cls, ext: str) -> Optional["ItemType"]:
        return _EXTENSIONS.get(ext.lower().lstrip("."))


_EXTENSIONS: Dict[str, ItemType] = {
    **{e: ItemType.VIDEO for e in ("mp4", "mov", "mkv", "webm", "avi", "m4v")},
    **{e: ItemType.AUDIO for e in ("mp3", "wav", "m4a", "flac", "ogg", "aac")},
    **{e: ItemType.DOCUMENT for e in ("pdf", "doc", "docx", "odt", "rtf")},
    **{e: ItemType.NOTE for e in ("md", "markdown", "txt", "org", "rst")},
    **{
        e: ItemType.CODE
        for e in (
            "py", "rs", "js", "ts", "go", "c", "cpp", "h", "java", "rb", "sh",
            "json", "yaml", "yml", "toml", "html", "css", "sql",
        )
    },
    **{e: ItemType.IMAGE for e in ("png", "jpg", "jpeg", "gif", "webp", "bmp")},
}


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def retired(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


# --- item metadata -----------------------------------------------------------


class _MetadataBase(BaseModel):
    extensions: Dict[str, Any] = Field(default_factory=dict)


class DocumentMetadata(_MetadataBase):
    kind: Literal["document"] = "document"
    page_count: Optional[int] = Field(default=None, ge=0)
    author: Optional[str] = None


class AudioMetadata(_MetadataBase):
    kind: Literal["audio"] = "audio"
    duration_seconds: Optional[float] = Field(default=None, ge=0)
    language: Optional[str] = None
    segment_count: int = Field(default=0, ge=0)


class NoteMetadata(_MetadataBase):
    kind: Literal["note"] = "note"
    format: str = "text"
    tags: List[str] = Field(default_factory=list)


class CodeMetadata(_MetadataBase):
    kind: Literal["code"] = "code"
    language: Optional[str] = None
    lines: int = Field(default=0, ge=0)


class GenericMetadata(_MetadataBase):
    kind: Literal["generic"] = "generic"


ItemMetadata = Annotated[
    Union[DocumentMetadata, AudioMetadata, NoteMetadata, CodeMetadata, GenericMetadata],
    Field(discriminator="kind"),
]

_metadata_adapter: TypeAdapter = TypeAdapter(ItemMetadata)


def metadata_from_json(raw: Optional[Dict[str, Any]]) -> ItemMetadata:
    if not raw:
        return GenericMetadata()
    return _metadata_adapter.validate_python(raw)


def metadata_to_json(metadata: ItemMetadata) -> Dict[str, Any]:
    return metadata.model_dump(mode="json")


def default_metadata(item_type: ItemType) -> ItemMetadata:
    if item_type is ItemType.DOCUMENT:
        return DocumentMetadata()
    if item_type in (ItemType.AUDIO, ItemType.VIDEO):
        return AudioMetadata()
    if item_type is ItemType.NOTE:
        return NoteMetadata()
    if item_type is ItemType.CODE:
        return CodeMetadata()
    return GenericMetadata()


# --- records -----------------------------------------------------------------


@dataclass
class ContentItem:
    item_type: ItemType
    title: str
    fingerprint: str
    source: Optional[str] = None
    metadata: ItemMetadata = field(default_factory=GenericMetadata)
    summary: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None


@dataclass
class Chunk:
    item_id: str
    position: int
    content: str
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class QueueJob:
    id: str
    source: str
    item_type: ItemType
    status: JobStatus
    priority: int
    attempts: int
    last_error: Optional[str]
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    claim_token: Optional[str] = None


@dataclass(frozen=True)
class RetrievedChunk:
    """A ranked chunk hydrated with the owning item's identity."""

    chunk_id: str
    item_id: str
    item_title: str
    position: int
    content: str
    score: float = 0.0
    start_time: Optional[float] = None
    end_time: Optional[float] = None


__all__ = [
    "AudioMetadata",
    "Chunk",
    "CodeMetadata",
    "ContentItem",
    "DocumentMetadata",
    "GenericMetadata",
    "ItemMetadata",
    "ItemType",
    "JobStatus",
    "NoteMetadata",
    "QueueJob",
    "RetrievedChunk",
    "default_metadata",
    "metadata_from_json",
    "metadata_to_json",
    "new_id",
    "utcnow",
]
