"""
Bounded pool of worker threads draining the processing queue.

Each worker loops claim -> handler -> complete/fail. The claim is the only
step that needs mutual exclusion and the queue makes it atomic, so workers
share nothing but the queue handle.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .errors import (
    InvalidConfiguration,
    InvalidTransition,
    NotFound,
    SecondBrainError,
    TerminalFailure,
)
from .job_queue import ProcessingQueue
from .log import get_logger
from .models import JobStatus, QueueJob

logger = get_logger(__name__)

Handler = Callable[[QueueJob], Any]


@dataclass
class PoolReport:
    completed: int = 0
    retried: int = 0
    dead_lettered: int = 0

    @property
    def processed(self) -> int:
        return self.completed + self.retried + self.dead_lettered


class WorkerPool:
    def __init__(
        self,
        queue: ProcessingQueue,
        handler: Handler,
        concurrency: int = 2,
        poll_interval: float = 1.0,
    ) -> None:
        if not 1 <= concurrency <= 32:
            raise InvalidConfiguration("concurrency must be between 1 and 32", field="concurrency")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.report = PoolReport()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def _record(self, job: QueueJob) -> None:
        with self._lock:
            if job.status is JobStatus.DONE:
                self.report.completed += 1
            elif job.status is JobStatus.FAILED:
                self.report.dead_lettered += 1
            else:
                self.report.retried += 1

    def _settle(self, job: QueueJob) -> QueueJob:
        token = job.claim_token
        try:
            self.handler(job)
        except TerminalFailure as exc:
            return self.queue.fail(job.id, str(exc), terminal=True, claim_token=token)
        except SecondBrainError as exc:
            return self.queue.fail(job.id, str(exc), claim_token=token)
        except Exception as exc:
            logger.exception("Unexpected error while processing %s", job.source)
            return self.queue.fail(job.id, f"{type(exc).__name__}: {exc}", claim_token=token)
        self.queue.complete(job.id, claim_token=token)
        return self.queue.get(job.id)

    def run_one(self, job: QueueJob) -> Optional[QueueJob]:
        """
        Run the handler for a claimed job and record the outcome on the queue.

        Returns None when the claim was lost meanwhile (the job was requeued as
        stale, or removed); the current owner records the outcome instead.
        """
        try:
            outcome = self._settle(job)
        except (InvalidTransition, NotFound) as exc:
            logger.warning("Dropped result for %s: %s", job.source, exc)
            return None
        self._record(outcome)
        return outcome

    def _drain(self, wait: bool) -> None:
        while not self._stop.is_set():
            job = self.queue.claim_next()
            if job is None:
                if not wait:
                    return
                self._stop.wait(self.poll_interval)
                continue
            self.run_one(job)

    def _spawn(self, wait: bool) -> None:
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._drain, args=(wait,), name=f"second-brain-worker-{n}", daemon=True
            )
            for n in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()

    def run_until_empty(self) -> PoolReport:
        """Process jobs until no pending job is left, then return the tally."""
        self._spawn(wait=False)
        self.join()
        logger.info(
            "Queue drained: %d completed, %d retried, %d dead-lettered",
            self.report.completed,
            self.report.retried,
            self.report.dead_lettered,
        )
        return self.report

    def start(self) -> None:
        """Start long-running workers that poll for new jobs until ``stop()``."""
        if any(thread.is_alive() for thread in self._threads):
            raise InvalidConfiguration("Worker pool is already running")
        self._spawn(wait=True)
        logger.info("Started %d worker(s)", self.concurrency)

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in self._threads:
            thread.join(timeout)


__all__ = ["Handler", "PoolReport", "WorkerPool"]
