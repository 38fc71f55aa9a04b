"""
Durable, priority-ordered ingestion queue.

Every transition is committed before the call returns, so a worker that dies
between ``claim_next`` and ``complete``/``fail`` leaves a ``processing`` row
behind; ``requeue_stale`` (run on every claim scan) hands such jobs back once
their claim is older than ``stale_after``.

Claiming is a conditional ``UPDATE ... WHERE status = 'pending'``: whichever
worker flips the row first owns it, the others move on to the next candidate.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from sqlalchemy import delete, func, literal_column, select, update
from sqlalchemy.exc import IntegrityError

from .db import Database, QueueJobRow
from .errors import (
    ClaimLost,
    DuplicateSource,
    InvalidConfiguration,
    InvalidTransition,
    NotFound,
)
from .log import get_logger
from .models import ItemType, JobStatus, QueueJob, new_id, utcnow

logger = get_logger(__name__)

_FIFO = literal_column("queue_jobs.rowid")


def _to_job(row: QueueJobRow) -> QueueJob:
    return QueueJob(
        id=row.id,
        source=row.source,
        item_type=ItemType(row.item_type),
        status=JobStatus(row.status),
        priority=row.priority,
        attempts=row.attempts,
        last_error=row.last_error,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        claim_token=row.claim_token,
    )


class ProcessingQueue:
    def __init__(
        self,
        db: Database,
        max_attempts: int = 3,
        stale_after: Union[timedelta, float] = timedelta(minutes=30),
    ) -> None:
        if not isinstance(stale_after, timedelta):
            stale_after = timedelta(seconds=stale_after)
        if max_attempts < 1:
            raise InvalidConfiguration("max_attempts must be at least 1", field="max_attempts")
        if stale_after <= timedelta(0):
            raise InvalidConfiguration("stale_after must be positive", field="stale_after")
        self.db = db
        self.max_attempts = max_attempts
        self.stale_after = stale_after

    def enqueue(
        self,
        source: str,
        item_type: Union[ItemType, str],
        priority: int = 0,
    ) -> str:
        """Insert a pending job. Raises DuplicateSource if one is already pending or processing."""
        row = QueueJobRow(
            id=new_id(),
            source=source,
            item_type=ItemType(item_type).value,
            status=JobStatus.PENDING.value,
            priority=priority,
            attempts=0,
            created_at=utcnow(),
        )
        try:
            with self.db.session() as session:
                session.add(row)
        except IntegrityError:
            raise DuplicateSource(source) from None

        logger.info("Queued %s (priority %d)", source, priority)
        return row.id

    def claim_next(self) -> Optional[QueueJob]:
        self.requeue_stale()

        candidates = (
            select(QueueJobRow.id)
            .where(QueueJobRow.status == JobStatus.PENDING.value)
            .order_by(QueueJobRow.priority.desc(), QueueJobRow.created_at.asc(), _FIFO.asc())
            .limit(1)
        )
        while True:
            claimed: Optional[QueueJob] = None
            with self.db.session() as session:
                job_id = session.execute(candidates).scalar_one_or_none()
                if job_id is None:
                    return None
                result = session.execute(
                    update(QueueJobRow)
                    .where(
                        QueueJobRow.id == job_id,
                        QueueJobRow.status == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        started_at=utcnow(),
                        completed_at=None,
                        claim_token=new_id(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed = _to_job(session.get(QueueJobRow, job_id))

            if claimed is not None:
                logger.info("Claimed %s (attempt %d)", claimed.source, claimed.attempts + 1)
                return claimed
            logger.debug("Lost claim race for %s, retrying", job_id)

    def complete(self, job_id: str, claim_token: Optional[str] = None) -> None:
        """
        Mark a processing job done.

        With ``claim_token`` the update only applies while that claim is still
        current; otherwise ClaimLost is raised and the job is left alone.
        """
        conditions = [
            QueueJobRow.id == job_id,
            QueueJobRow.status == JobStatus.PROCESSING.value,
        ]
        if claim_token is not None:
            conditions.append(QueueJobRow.claim_token == claim_token)
        with self.db.session() as session:
            result = session.execute(
                update(QueueJobRow)
                .where(*conditions)
                .values(status=JobStatus.DONE.value, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._raise_for_state(session, job_id, claim_token)
        logger.info("Completed job %s", job_id)

    def fail(
        self,
        job_id: str,
        reason: str,
        terminal: bool = False,
        claim_token: Optional[str] = None,
    ) -> QueueJob:
        """
        Record a failed attempt.

        The job goes back to pending while attempts remain and the failure is
        not terminal; otherwise it is dead-lettered as ``failed``. A stale
        ``claim_token`` raises ClaimLost.
        """
        with self.db.session() as session:
            row = session.get(QueueJobRow, job_id)
            if row is None:
                raise NotFound("job", job_id)
            if claim_token is not None and row.claim_token != claim_token:
                raise ClaimLost(job_id)
            if row.status != JobStatus.PROCESSING.value:
                raise InvalidTransition(job_id, JobStatus.PROCESSING.value, row.status)
            attempts = row.attempts + 1
            values = self._after_failure(attempts, reason, terminal)
            result = session.execute(
                update(QueueJobRow)
                .where(
                    QueueJobRow.id == job_id,
                    QueueJobRow.status == JobStatus.PROCESSING.value,
                    QueueJobRow.attempts == row.attempts,
                    QueueJobRow.claim_token == row.claim_token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ClaimLost(job_id)
            session.expire(row)
            job = _to_job(session.get(QueueJobRow, job_id))

        if job.status is JobStatus.FAILED:
            logger.error(
                "Dead-lettered %s after %d attempt(s): %s", job.source, job.attempts, reason
            )
        else:
            logger.warning(
                "Attempt %d/%d for %s failed, will retry: %s",
                job.attempts,
                self.max_attempts,
                job.source,
                reason,
            )
        return job

    def _after_failure(self, attempts: int, reason: str, terminal: bool) -> Dict[str, object]:
        values: Dict[str, object] = {"attempts": attempts, "last_error": reason}
        if terminal or attempts >= self.max_attempts:
            values.update(status=JobStatus.FAILED.value, completed_at=utcnow())
        else:
            values.update(status=JobStatus.PENDING.value, started_at=None, claim_token=None)
        return values

    def requeue_stale(self, now: Optional[datetime] = None) -> int:
        """
        Return abandoned ``processing`` jobs to the queue.

        An abandoned claim counts as a failed attempt, so a job that keeps
        killing its worker still ends up dead-lettered.
        """
        cutoff = (now or utcnow()) - self.stale_after
        stale = select(QueueJobRow).where(
            QueueJobRow.status == JobStatus.PROCESSING.value,
            QueueJobRow.started_at < cutoff,
        )
        requeued = 0
        with self.db.session() as session:
            for row in session.execute(stale).scalars().all():
                reason = f"abandoned: claimed at {row.started_at.isoformat()} and never finished"
                values = self._after_failure(row.attempts + 1, reason, terminal=False)
                result = session.execute(
                    update(QueueJobRow)
                    .where(
                        QueueJobRow.id == row.id,
                        QueueJobRow.status == JobStatus.PROCESSING.value,
                        QueueJobRow.started_at == row.started_at,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    requeued += 1
                    logger.warning("Requeued stale job %s (%s)", row.id, row.source)
        return requeued

    def retry(self, job_id: str) -> None:
        """Move a dead-lettered job back to pending with a fresh attempt budget."""
        try:
            with self.db.session() as session:
                row = session.get(QueueJobRow, job_id)
                if row is None:
                    raise NotFound("job", job_id)
                if row.status != JobStatus.FAILED.value:
                    raise InvalidTransition(job_id, JobStatus.FAILED.value, row.status)
                row.status = JobStatus.PENDING.value
                row.attempts = 0
                row.last_error = None
                row.started_at = None
                row.completed_at = None
                row.claim_token = None
                source = row.source
        except IntegrityError:
            raise DuplicateSource(source) from None
        logger.info("Retrying job %s", job_id)

    def get(self, job_id: str) -> QueueJob:
        with self.db.session() as session:
            row = session.get(QueueJobRow, job_id)
            if row is None:
                raise NotFound("job", job_id)
            return _to_job(row)

    def list_jobs(
        self, status: Optional[JobStatus] = None, limit: Optional[int] = None
    ) -> List[QueueJob]:
        stmt = select(QueueJobRow)
        if status is not None:
            stmt = stmt.where(QueueJobRow.status == JobStatus(status).value)
        stmt = stmt.order_by(
            QueueJobRow.priority.desc(), QueueJobRow.created_at.asc(), _FIFO.asc()
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.db.session() as session:
            return [_to_job(row) for row in session.execute(stmt).scalars()]

    def counts(self) -> Dict[JobStatus, int]:
        stmt = select(QueueJobRow.status, func.count()).group_by(QueueJobRow.status)
        counts = {status: 0 for status in JobStatus}
        with self.db.session() as session:
            for status, count in session.execute(stmt).all():
                counts[JobStatus(status)] = count
        return counts

    def clear(self, status: JobStatus) -> int:
        """Delete retired (done or failed) jobs."""
        status = JobStatus(status)
        if not status.retired:
            raise InvalidConfiguration(f"Only done or failed jobs can be cleared, not {status.value}")
        with self.db.session() as session:
            result = session.execute(
                delete(QueueJobRow).where(QueueJobRow.status == status.value)
            )
            removed = result.rowcount
        logger.info("Cleared %d %s job(s)", removed, status.value)
        return removed

    def _raise_for_state(self, session, job_id: str, claim_token: Optional[str] = None) -> None:
        row = session.get(QueueJobRow, job_id)
        if row is None:
            raise NotFound("job", job_id)
        if claim_token is not None and row.claim_token != claim_token:
            raise ClaimLost(job_id)
        raise InvalidTransition(job_id, JobStatus.PROCESSING.value, row.status)


__all__ = ["ProcessingQueue"]
