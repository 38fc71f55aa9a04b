"""
Turn sources into items and chunk sets.

Ingestion is idempotent: identical bytes map to the item that already holds
their fingerprint, so re-scanning a directory after a crash is safe. A known
source whose bytes changed is updated in place and its chunks (and, by
cascade, their embeddings) are replaced.
"""

from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .chunker import TextChunk, TranscriptSegment, chunk_text, chunk_transcript
from .db import Database
from .errors import (
    AlreadyExists,
    DuplicateSource,
    InvalidConfiguration,
    NotFound,
    TerminalFailure,
)
from .items import ItemStore, fingerprint
from .job_queue import ProcessingQueue
from .loaders import Transcriber, detect_type, is_supported, load_path
from .log import get_logger
from .models import Chunk, ContentItem, ItemMetadata, ItemType, QueueJob, default_metadata, utcnow

logger = get_logger(__name__)


@dataclass
class IngestResult:
    item: ContentItem
    chunk_count: int
    created: bool = False
    updated: bool = False


@dataclass
class ScanReport:
    queued: int = 0
    unchanged: int = 0
    already_queued: int = 0
    unreadable: int = 0
    removed: int = 0


def should_ignore(path: Path, root: Path, patterns: Sequence[str] = ()) -> bool:
    """
    True for hidden paths under ``root`` and for paths matching a glob pattern.

    Patterns are tried against the file name and against the path relative to
    ``root``, so ``*.tmp`` and ``drafts/*`` both work.
    """
    try:
        relative = path.relative_to(root)
    except ValueError:
        return True
    if any(part.startswith(".") for part in relative.parts):
        return True
    return any(
        fnmatch(path.name, pattern) or fnmatch(relative.as_posix(), pattern)
        for pattern in patterns
    )


class Ingestor:
    def __init__(
        self,
        db: Database,
        chunk_size: int = 1000,
        chunk_overlap: int = 100,
        transcriber: Optional[Transcriber] = None,
        ignore_patterns: Sequence[str] = (),
    ) -> None:
        if chunk_size < 1:
            raise InvalidConfiguration("chunk_size must be at least 1", field="chunk_size")
        if not 0 <= chunk_overlap < chunk_size:
            raise InvalidConfiguration(
                "chunk_overlap must be in [0, chunk_size)", field="chunk_overlap"
            )
        self.db = db
        self.items = ItemStore(db)
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.transcriber = transcriber
        self.ignore_patterns = tuple(ignore_patterns)

    def _split(
        self, text: Optional[str], segments: Optional[Sequence[TranscriptSegment]]
    ) -> List[TextChunk]:
        if segments:
            return chunk_transcript(segments, self.chunk_size, self.chunk_overlap)
        return chunk_text(text or "", self.chunk_size, self.chunk_overlap)

    @staticmethod
    def _to_chunks(item_id: str, pieces: Sequence[TextChunk]) -> List[Chunk]:
        return [
            Chunk(
                item_id=item_id,
                position=piece.position,
                content=piece.text,
                start_time=piece.start_time,
                end_time=piece.end_time,
            )
            for piece in pieces
        ]

    def ingest_content(
        self,
        source: Optional[str],
        item_type: Union[ItemType, str],
        raw: bytes,
        title: Optional[str] = None,
        metadata: Optional[ItemMetadata] = None,
        text: Optional[str] = None,
        segments: Optional[Sequence[TranscriptSegment]] = None,
    ) -> IngestResult:
        """
        Register ``raw`` and its chunks.

        ``text`` (or transcript ``segments``) is what gets chunked; when both
        are omitted ``raw`` is decoded as UTF-8.
        """
        item_type = ItemType(item_type)
        digest = fingerprint(raw)

        existing = self.items.find_by_fingerprint(digest)
        if existing is not None:
            stored = len(self.items.chunks_for(existing.id))
            if stored:
                logger.info(
                    "Unchanged content for %s, already item %s", source or title, existing.id
                )
                return IngestResult(item=existing, chunk_count=stored)

        if text is None and not segments:
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise TerminalFailure(f"Content for {source} is not valid UTF-8") from exc

        pieces = self._split(text, segments)
        if existing is not None:
            return self._restore_chunks(existing, pieces)

        if title is None:
            title = Path(source).stem if source else "Untitled"
        if metadata is None:
            metadata = default_metadata(item_type)

        previous = self.items.find_by_source(source) if source else None
        if previous is not None:
            chunks = self._to_chunks(previous.id, pieces)
            item = self.items.update_content(
                previous.id, digest, chunks, title=title, metadata=metadata
            )
            return IngestResult(item=item, chunk_count=len(chunks), updated=True)

        item = ContentItem(
            item_type=item_type,
            title=title,
            source=source,
            fingerprint=digest,
            metadata=metadata,
            processed_at=utcnow(),
        )
        chunks = self._to_chunks(item.id, pieces)
        try:
            self.items.create_with_chunks(item, chunks)
        except AlreadyExists as exc:
            # Another ingester registered the same bytes first.
            winner = self.items.get(exc.item_id)
            stored = len(self.items.chunks_for(winner.id))
            if stored:
                return IngestResult(item=winner, chunk_count=stored)
            return self._restore_chunks(winner, pieces)

        logger.info("Ingested %s as %s (%d chunks)", title, item.id, len(chunks))
        return IngestResult(item=item, chunk_count=len(chunks), created=True)

    def _restore_chunks(self, item: ContentItem, pieces: Sequence[TextChunk]) -> IngestResult:
        """Give a chunkless item the chunks its bytes should have produced."""
        if not pieces:
            return IngestResult(item=item, chunk_count=0)
        count = self.items.replace_chunks(item.id, self._to_chunks(item.id, pieces))
        logger.warning("Item %s had no chunks, restored %d", item.id, count)
        return IngestResult(item=self.items.get(item.id), chunk_count=count, updated=True)

    def ingest_file(self, path: Path, item_type: Optional[ItemType] = None) -> IngestResult:
        path = Path(path)
        loaded = load_path(path, item_type, self.transcriber)
        return self.ingest_content(
            str(path.resolve()),
            item_type or detect_type(path) or ItemType.NOTE,
            loaded.raw,
            title=loaded.title,
            metadata=loaded.metadata,
            text=loaded.text,
            segments=loaded.segments,
        )

    def process_job(self, job: QueueJob) -> IngestResult:
        """Queue handler: ingest the job's source file."""
        return self.ingest_file(Path(job.source), job.item_type)

    def ignores(self, path: Path, root: Path) -> bool:
        """Hidden files and files matching an ignore pattern are never ingested."""
        return should_ignore(path, root, self.ignore_patterns)

    def enqueue_path(
        self, queue: ProcessingQueue, path: Path, report: ScanReport, priority: int = 0
    ) -> None:
        """Queue one file if it is new or its bytes changed, tallying the outcome."""
        source = str(path)
        try:
            digest = fingerprint(path.read_bytes())
        except OSError as exc:
            logger.warning("Skipping unreadable %s: %s", path, exc)
            report.unreadable += 1
            return

        known = self.items.find_by_source(source)
        if known is not None and known.fingerprint == digest:
            report.unchanged += 1
            return
        try:
            queue.enqueue(source, detect_type(path), priority=priority)
        except DuplicateSource:
            report.already_queued += 1
            return
        report.queued += 1

    def forget_source(self, source: str) -> bool:
        """Soft-delete the item ingested from ``source``; False if there is none."""
        item = self.items.find_by_source(source)
        if item is None:
            return False
        try:
            self.items.delete(item.id)
        except NotFound:
            return False
        logger.info("Source %s is gone, removed item %s", source, item.id)
        return True

    def scan_directory(
        self, queue: ProcessingQueue, root: Path, priority: int = 0
    ) -> ScanReport:
        """
        Sync ``root`` with the store.

        Supported files that are new or changed are queued. Items whose source
        lived under ``root`` but no longer exists are soft-deleted.
        """
        root = Path(root).resolve()
        if not root.is_dir():
            raise InvalidConfiguration(f"Not a directory: {root}", field="root")

        report = ScanReport()
        for path in sorted(root.rglob("*")):
            if not path.is_file() or self.ignores(path, root):
                continue
            if not is_supported(path, can_transcribe=self.transcriber is not None):
                continue
            self.enqueue_path(queue, path, report, priority=priority)

        for item in self.items.find_under(str(root)):
            if not Path(item.source).exists() and self.forget_source(item.source):
                report.removed += 1

        logger.info(
            "Scanned %s: %d queued, %d unchanged, %d already queued, %d removed",
            root,
            report.queued,
            report.unchanged,
            report.already_queued,
            report.removed,
        )
        return report


__all__ = ["IngestResult", "Ingestor", "ScanReport", "should_ignore"]
