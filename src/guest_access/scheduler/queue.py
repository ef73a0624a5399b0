"""Durable, delay-capable job queue.

Each job is a row in `queued_jobs` keyed by a deterministic id, with an
APScheduler date trigger armed for its run time. The row is the source
of truth: timers are in-memory only and are re-armed from the table on
start, so jobs survive a restart.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from sqlalchemy import delete, select, update

from guest_access.core.results import (
    JobContext,
    JobResult,
    JobSuccess,
    RetriableFailure,
    RetryPolicy,
    TerminalFailure,
)
from guest_access.db.database import Database
from guest_access.db.models import JobKind, JobState, QueuedJob
from guest_access.timeutil import utcnow

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any], JobContext], Awaitable[JobResult]]


def build_scheduler() -> AsyncIOScheduler:
    """APScheduler instance used for job timers.

    Overdue timers still fire: there is no misfire grace cutoff.
    """
    return AsyncIOScheduler(
        timezone=timezone.utc,
        job_defaults={"misfire_grace_time": None, "coalesce": True},
    )


@dataclass
class JobStatus:
    """Snapshot of a queued job."""

    job_id: str
    kind: JobKind
    state: JobState
    run_at: datetime
    attempts: int
    max_attempts: int
    payload: dict[str, Any]
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, row: QueuedJob) -> "JobStatus":
        return cls(
            job_id=row.job_id,
            kind=JobKind(row.kind),
            state=JobState(row.state),
            run_at=row.run_at,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            payload=dict(row.payload or {}),
            last_error=row.last_error,
        )


class JobQueue:
    """At-least-once job queue with retries and cancellation by id."""

    def __init__(
        self,
        db: Database,
        scheduler: AsyncIOScheduler,
        default_policy: Optional[RetryPolicy] = None,
    ):
        self._db = db
        self._scheduler = scheduler
        self._default_policy = default_policy or RetryPolicy()
        self._handlers: dict[JobKind, JobHandler] = {}

    def register_handler(self, kind: JobKind, handler: JobHandler) -> None:
        self._handlers[JobKind(kind)] = handler

    async def start(self) -> None:
        """Re-arm timers for every pending job in the table.

        Jobs left `running` by a crashed process go back to `pending`.
        """
        async with self._db.session() as session:
            stale = await session.execute(
                update(QueuedJob)
                .where(QueuedJob.state == JobState.RUNNING.value)
                .values(state=JobState.PENDING.value, run_token=None)
            )
            result = await session.execute(
                select(QueuedJob).where(QueuedJob.state == JobState.PENDING.value)
            )
            pending = result.scalars().all()

        for job in pending:
            self._arm(job.job_id, job.run_at)

        logger.info(
            f"Job queue started: {len(pending)} pending jobs re-armed "
            f"({stale.rowcount} recovered from interrupted runs)"
        )

    async def stop(self) -> None:
        """Disarm every queue timer. Rows stay in the table for the next `start()`."""
        disarmed = 0
        for job in self._scheduler.get_jobs():
            if job.func == self._fire and self._disarm(job.id):
                disarmed += 1
        logger.info(f"Job queue stopped: {disarmed} timers disarmed")

    # Timers

    def _arm(self, job_id: str, run_at: datetime) -> None:
        self._disarm(job_id)
        self._scheduler.add_job(
            self._fire,
            DateTrigger(run_date=run_at, timezone=timezone.utc),
            args=[job_id],
            id=job_id,
            replace_existing=True,
        )

    def _disarm(self, job_id: str) -> bool:
        try:
            self._scheduler.remove_job(job_id)
            return True
        except JobLookupError:
            return False

    async def _fire(self, job_id: str) -> None:
        """Timer callback. APScheduler drops a date job once it fires."""
        try:
            await self._execute(job_id)
        except Exception:
            logger.exception(f"Error running job {job_id}")

    # Queue operations

    async def enqueue(
        self,
        job_id: str,
        kind: JobKind,
        payload: dict[str, Any],
        delay: Union[timedelta, float] = 0,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> JobStatus:
        """Add a job, replacing any job with the same id.

        The replacement happens in one transaction, so there is never more
        than one row per id. A run already in progress is not interrupted;
        it just cannot settle onto the new row.

        Args:
            job_id: Deterministic job id
            kind: Job kind, selects the handler
            payload: JSON-serializable job data
            delay: Seconds (or timedelta) from now until the job fires
            retry_policy: Overrides the queue's default policy

        Returns:
            Status of the newly queued job
        """
        if not job_id:
            raise ValueError("job_id is required")
        policy = retry_policy or self._default_policy
        if isinstance(delay, timedelta):
            delay = delay.total_seconds()
        run_at = utcnow() + timedelta(seconds=max(0.0, delay))

        async with self._db.session() as session:
            await session.execute(delete(QueuedJob).where(QueuedJob.job_id == job_id))
            row = QueuedJob(
                job_id=job_id,
                kind=JobKind(kind).value,
                payload=payload,
                run_at=run_at,
                attempts=0,
                max_attempts=policy.max_attempts,
                backoff_seconds=policy.backoff_seconds,
                state=JobState.PENDING.value,
            )
            session.add(row)
            await session.flush()
            status = JobStatus.from_row(row)

        self._arm(job_id, run_at)
        logger.info(f"Queued {JobKind(kind).value} job {job_id} for {run_at.isoformat()}")
        return status

    async def cancel(self, job_id: str) -> bool:
        """Remove a pending or running job.

        A run in progress is not interrupted, but its row is gone, so it
        cannot be re-armed for a retry when it settles. Failed and
        dead-lettered rows are left for operators.

        Returns:
            True if a job was removed, False if there was none
        """
        async with self._db.session() as session:
            result = await session.execute(
                delete(QueuedJob).where(
                    QueuedJob.job_id == job_id,
                    QueuedJob.state.in_([JobState.PENDING.value, JobState.RUNNING.value]),
                )
            )
            removed = result.rowcount > 0
        self._disarm(job_id)
        if removed:
            logger.info(f"Cancelled job {job_id}")
        return removed

    async def remove(self, job_id: str) -> bool:
        """Delete a job row in any state except running."""
        async with self._db.session() as session:
            result = await session.execute(
                delete(QueuedJob).where(
                    QueuedJob.job_id == job_id,
                    QueuedJob.state != JobState.RUNNING.value,
                )
            )
            removed = result.rowcount > 0
        if removed:
            self._disarm(job_id)
            logger.info(f"Removed job {job_id}")
        return removed

    async def clear_failed(self, kind: Optional[JobKind] = None) -> int:
        """Delete failed and dead-lettered jobs, optionally of one kind.

        Returns:
            Number of jobs deleted
        """
        async with self._db.session() as session:
            query = delete(QueuedJob).where(
                QueuedJob.state.in_([JobState.FAILED.value, JobState.DEAD_LETTER.value])
            )
            if kind is not None:
                query = query.where(QueuedJob.kind == JobKind(kind).value)
            result = await session.execute(query)
            cleared = result.rowcount
        logger.info(f"Cleared {cleared} failed job(s)")
        return cleared

    async def requeue(self, job_id: str) -> Optional[JobStatus]:
        """Give a failed or dead-lettered job a fresh set of attempts, now.

        Returns:
            The job's new status, or None if no such job has failed
        """
        run_at = utcnow()
        async with self._db.session() as session:
            result = await session.execute(
                update(QueuedJob)
                .where(
                    QueuedJob.job_id == job_id,
                    QueuedJob.state.in_([JobState.FAILED.value, JobState.DEAD_LETTER.value]),
                )
                .values(state=JobState.PENDING.value, attempts=0, run_at=run_at, run_token=None)
            )
            if result.rowcount == 0:
                return None
            row = await session.get(QueuedJob, job_id, populate_existing=True)
            status = JobStatus.from_row(row)

        self._arm(job_id, run_at)
        logger.info(f"Requeued job {job_id}")
        return status

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        async with self._db.session() as session:
            row = await session.get(QueuedJob, job_id)
            return JobStatus.from_row(row) if row else None

    async def list_jobs(
        self,
        states: Optional[Iterable[JobState]] = None,
        kind: Optional[JobKind] = None,
    ) -> list[JobStatus]:
        async with self._db.session() as session:
            query = select(QueuedJob)
            if states is not None:
                query = query.where(QueuedJob.state.in_([JobState(s).value for s in states]))
            if kind is not None:
                query = query.where(QueuedJob.kind == JobKind(kind).value)
            result = await session.execute(query.order_by(QueuedJob.run_at))
            return [JobStatus.from_row(row) for row in result.scalars().all()]

    # Execution

    async def run_job(self, job_id: str) -> Optional[JobResult]:
        """Claim and execute a pending job now.

        Returns:
            The handler's result, or None if the job was not pending
            (cancelled, finished, or claimed by another worker)
        """
        # Drop the timer before claiming; a job enqueued after this keeps its own
        self._disarm(job_id)
        return await self._execute(job_id)

    async def _execute(self, job_id: str) -> Optional[JobResult]:
        token = uuid.uuid4().hex
        async with self._db.session() as session:
            claimed = await session.execute(
                update(QueuedJob)
                .where(QueuedJob.job_id == job_id, QueuedJob.state == JobState.PENDING.value)
                .values(
                    state=JobState.RUNNING.value,
                    run_token=token,
                    attempts=QueuedJob.attempts + 1,
                )
            )
            if claimed.rowcount == 0:
                logger.debug(f"Job {job_id} is not pending, skipping")
                return None
            result = await session.execute(
                select(QueuedJob)
                .where(QueuedJob.job_id == job_id)
                .execution_options(populate_existing=True)
            )
            job = result.scalar_one()

        ctx = JobContext(
            job_id=job.job_id,
            kind=job.kind,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
        )
        handler = self._handlers.get(JobKind(job.kind))
        logger.info(f"Running job {job_id} (attempt {ctx.attempt}/{ctx.max_attempts})")

        if handler is None:
            outcome: JobResult = RetriableFailure(error=f"No handler registered for {job.kind}")
        else:
            try:
                outcome = await handler(dict(job.payload or {}), ctx)
            except Exception as e:
                logger.exception(f"Unhandled error in job {job_id}")
                outcome = RetriableFailure(error=str(e) or type(e).__name__)

        await self._settle(job, token, outcome)
        return outcome

    async def _settle(self, job: QueuedJob, token: str, outcome: JobResult) -> None:
        """Apply a job's outcome to its row."""
        owned = (QueuedJob.job_id == job.job_id, QueuedJob.run_token == token)

        if isinstance(outcome, JobSuccess):
            async with self._db.session() as session:
                await session.execute(delete(QueuedJob).where(*owned))
            logger.info(f"Job {job.job_id} completed")
            return

        if isinstance(outcome, RetriableFailure) and job.attempts < job.max_attempts:
            policy = RetryPolicy(job.max_attempts, job.backoff_seconds)
            run_at = utcnow() + timedelta(seconds=policy.delay_after(job.attempts))
            async with self._db.session() as session:
                result = await session.execute(
                    update(QueuedJob)
                    .where(*owned)
                    .values(
                        state=JobState.PENDING.value,
                        run_token=None,
                        run_at=run_at,
                        last_error=outcome.error,
                    )
                )
                still_ours = result.rowcount > 0
            if still_ours:
                self._arm(job.job_id, run_at)
                logger.warning(
                    f"Job {job.job_id} failed (attempt {job.attempts}/{job.max_attempts}), "
                    f"retrying at {run_at.isoformat()}: {outcome.error}"
                )
            return

        state = JobState.FAILED
        if isinstance(outcome, TerminalFailure) and outcome.dead_letter:
            state = JobState.DEAD_LETTER
        async with self._db.session() as session:
            await session.execute(
                update(QueuedJob)
                .where(*owned)
                .values(state=state.value, run_token=None, last_error=outcome.error)
            )
        logger.error(
            f"Job {job.job_id} {state.value} after {job.attempts} attempt(s): {outcome.error}"
        )
