"""
Follow a directory and keep the queue in step with it.

watchdog delivers raw filesystem events from its own observer thread. They
are collected per path and only released once the path has been quiet for
the debounce window, so an editor writing a file in several steps produces a
single change. The latest event for a path wins: a delete followed by a
create (atomic save) is a change, a change followed by a delete is a delete.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import InvalidConfiguration
from .ingest import Ingestor, ScanReport
from .job_queue import ProcessingQueue
from .loaders import is_supported
from .log import get_logger

logger = get_logger(__name__)

_CHANGED_EVENTS = {"created", "modified", "closed"}


class ChangeKind(str, Enum):
    CHANGED = "changed"
    DELETED = "deleted"


@dataclass(frozen=True)
class WatchEvent:
    path: Path
    kind: ChangeKind


class ChangeCollector(FileSystemEventHandler):
    """Buffers watchdog events and releases them once they settle."""

    def __init__(self, debounce: float) -> None:
        super().__init__()
        if debounce <= 0:
            raise InvalidConfiguration("debounce must be positive", field="debounce")
        self.debounce = debounce
        self._lock = threading.Lock()
        self._pending: Dict[Path, Tuple[ChangeKind, float]] = {}

    def record(self, path: Path, kind: ChangeKind, at: Optional[float] = None) -> None:
        with self._lock:
            self._pending[path] = (kind, time.monotonic() if at is None else at)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = Path(os.fsdecode(event.src_path))
        if event.event_type == "moved":
            self.record(src, ChangeKind.DELETED)
            self.record(Path(os.fsdecode(event.dest_path)), ChangeKind.CHANGED)
        elif event.event_type == "deleted":
            self.record(src, ChangeKind.DELETED)
        elif event.event_type in _CHANGED_EVENTS:
            self.record(src, ChangeKind.CHANGED)

    def drain(self, now: Optional[float] = None) -> List[WatchEvent]:
        """Remove and return the events that have been quiet for ``debounce`` seconds."""
        now = time.monotonic() if now is None else now
        with self._lock:
            settled = sorted(
                path for path, (_, at) in self._pending.items() if now - at >= self.debounce
            )
            events = [WatchEvent(path, self._pending.pop(path)[0]) for path in settled]
        return events


class DirectoryWatcher:
    """
    Turns settled filesystem events under ``root`` into queue jobs and deletions.

    ``start()`` runs a watchdog observer in the background; call ``poll()``
    periodically from the owning thread to apply what has settled.
    """

    def __init__(
        self,
        ingestor: Ingestor,
        queue: ProcessingQueue,
        root: Path,
        debounce: float = 2.0,
        priority: int = 0,
    ) -> None:
        root = Path(root).resolve()
        if not root.is_dir():
            raise InvalidConfiguration(f"Not a directory: {root}", field="root")
        self.ingestor = ingestor
        self.queue = queue
        self.root = root
        self.priority = priority
        self.collector = ChangeCollector(debounce)
        self._observer: Optional[Observer] = None

    def start(self) -> None:
        if self._observer is not None:
            raise InvalidConfiguration("Watcher is already running")
        observer = Observer()
        observer.schedule(self.collector, str(self.root), recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %s", self.root)

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout)
        self._observer = None
        logger.info("Stopped watching %s", self.root)

    def poll(self, now: Optional[float] = None) -> ScanReport:
        return self.apply(self.collector.drain(now))

    def apply(self, events: List[WatchEvent]) -> ScanReport:
        report = ScanReport()
        can_transcribe = self.ingestor.transcriber is not None
        for event in events:
            path = event.path
            if self.ingestor.ignores(path, self.root):
                logger.debug("Ignoring %s", path)
                continue
            if event.kind is ChangeKind.DELETED or not path.exists():
                if self.ingestor.forget_source(str(path)):
                    report.removed += 1
                continue
            if not path.is_file() or not is_supported(path, can_transcribe=can_transcribe):
                continue
            self.ingestor.enqueue_path(self.queue, path, report, priority=self.priority)

        if events:
            logger.info(
                "Applied %d change(s): %d queued, %d removed",
                len(events),
                report.queued,
                report.removed,
            )
        return report


__all__ = ["ChangeCollector", "ChangeKind", "DirectoryWatcher", "WatchEvent"]
