"""Wires the credential lifecycle components together."""

import logging
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from guest_access.bookings.client import BookingSystemClient
from guest_access.config import MutexBackend, Settings
from guest_access.core.lifecycle import BookingLifecycleHandler, LifecycleOutcome
from guest_access.core.mutex import DatabaseMutex, InMemoryMutex, MutexService
from guest_access.core.processors import GeneratePinProcessor, RevokePinProcessor
from guest_access.core.reconciliation import ReconciliationResult, ReconciliationService
from guest_access.core.results import RetryPolicy
from guest_access.db.database import Database
from guest_access.db.models import Credential, JobKind, JobState
from guest_access.db.store import BookingStore
from guest_access.errors import ConfigurationError, NotFoundError
from guest_access.locks import LockProvider, build_lock_provider
from guest_access.scheduler.pin_jobs import PinJobScheduler, generate_job_id, revoke_job_id
from guest_access.scheduler.queue import JobQueue, JobStatus, build_scheduler

logger = logging.getLogger(__name__)

RECONCILIATION_JOB_ID = "reconciliation"


class Orchestrator:
    """Owns every component and their start/stop order.

    Collaborators can be injected (tests pass an in-memory database,
    a mock provider and a stub booking client); anything not given is
    built from settings.
    """

    def __init__(
        self,
        settings: Settings,
        db: Optional[Database] = None,
        provider: Optional[LockProvider] = None,
        booking_client: Optional[BookingSystemClient] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        mutex: Optional[MutexService] = None,
    ):
        self.settings = settings
        self.db = db or Database(settings.database_url)
        self.store = BookingStore(self.db)
        self.provider = provider or build_lock_provider(settings)
        if mutex is not None:
            self.mutex = mutex
        elif settings.mutex_backend == MutexBackend.MEMORY:
            self.mutex = InMemoryMutex()
        else:
            self.mutex = DatabaseMutex(self.db)

        self.scheduler = scheduler or build_scheduler()
        retry_policy = RetryPolicy(settings.job_max_attempts, settings.job_backoff_seconds)
        self.queue = JobQueue(self.db, self.scheduler, retry_policy)
        self.pin_jobs = PinJobScheduler(self.queue, settings.pin_lead, retry_policy)

        self.generator = GeneratePinProcessor(
            self.store,
            self.provider,
            self.mutex,
            mutex_ttl_seconds=settings.mutex_ttl_seconds,
            provider_timeout=settings.lock_provider_timeout_seconds,
            code_length=settings.code_length,
            hash_rounds=settings.code_hash_rounds,
        )
        self.revoker = RevokePinProcessor(
            self.store,
            self.provider,
            self.mutex,
            mutex_ttl_seconds=settings.mutex_ttl_seconds,
            provider_timeout=settings.lock_provider_timeout_seconds,
        )
        self.queue.register_handler(JobKind.GENERATE_PIN, self.generator)
        self.queue.register_handler(JobKind.REVOKE_PIN, self.revoker)

        self.lifecycle = BookingLifecycleHandler(self.store, self.pin_jobs, self.revoker)

        if booking_client is None and settings.booking_api_url:
            booking_client = BookingSystemClient(
                settings.booking_api_url,
                settings.booking_api_client_id,
                settings.booking_api_client_secret,
                page_limit=settings.booking_api_page_limit,
            )
            logger.info("Booking system client initialized")
        self.booking_client = booking_client
        self.reconciliation: Optional[ReconciliationService] = None
        if booking_client is not None:
            self.reconciliation = ReconciliationService(
                self.store, booking_client, self.lifecycle, self.queue
            )

        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def initialize(self) -> None:
        """Create tables."""
        logger.info("Initializing guest access orchestrator...")
        await self.db.init()
        logger.info("Guest access orchestrator initialized")

    async def start(self) -> None:
        """Re-arm persisted jobs and start timers."""
        if self._running:
            return
        self._running = True

        await self.queue.start()

        if self.reconciliation is not None:
            self.scheduler.add_job(
                self._run_reconciliation,
                IntervalTrigger(minutes=self.settings.reconciliation_interval_minutes),
                id=RECONCILIATION_JOB_ID,
                replace_existing=True,
                max_instances=1,
            )
        else:
            logger.warning("No booking system configured, reconciliation disabled")

        self.scheduler.start()
        logger.info("Guest access orchestrator started")

    async def stop(self) -> None:
        self._running = False

        await self.queue.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        await self.provider.close()
        if self.booking_client is not None:
            await self.booking_client.close()
        await self.db.dispose()

        logger.info("Guest access orchestrator stopped")

    # Operations used by the API

    async def handle_booking_event(self, raw: Any) -> LifecycleOutcome:
        return await self.lifecycle.handle(raw)

    async def reconcile_now(self) -> ReconciliationResult:
        if self.reconciliation is None:
            raise ConfigurationError("No booking system configured")
        return await self.reconciliation.reconcile()

    async def _run_reconciliation(self) -> None:
        """Interval job callback."""
        try:
            await self.reconciliation.reconcile()
        except Exception as e:
            logger.error(f"Error in scheduled reconciliation: {e}")

    async def booking_credentials(self, booking_id: int) -> list[Credential]:
        if await self.store.get_booking(booking_id) is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return await self.store.list_credentials(booking_id)

    async def booking_jobs(self, booking_id: int) -> list[dict[str, Any]]:
        jobs = []
        for job_id in (generate_job_id(booking_id), revoke_job_id(booking_id)):
            status = await self.queue.get_status(job_id)
            if status is not None:
                jobs.append(_job_dict(status))
        return jobs

    # Operator actions on jobs that ran out of attempts

    async def failed_jobs(self, kind: Optional[JobKind] = None) -> list[dict[str, Any]]:
        jobs = await self.queue.list_jobs(states=[JobState.FAILED, JobState.DEAD_LETTER], kind=kind)
        return [_job_dict(status) for status in jobs]

    async def requeue_job(self, job_id: str) -> dict[str, Any]:
        """Retry a failed or dead-lettered job from its first attempt."""
        status = await self.queue.requeue(job_id)
        if status is None:
            raise NotFoundError(f"No failed job {job_id}")
        return _job_dict(status)

    async def clear_failed_jobs(self, kind: Optional[JobKind] = None) -> int:
        return await self.queue.clear_failed(kind)

    async def health_check(self) -> dict[str, Any]:
        failed = await self.queue.list_jobs(states=[JobState.FAILED, JobState.DEAD_LETTER])
        pending = await self.queue.list_jobs(states=[JobState.PENDING])
        return {
            "status": "ok" if self._running else "stopped",
            "lock_provider": self.provider.name,
            "reconciliation_enabled": self.reconciliation is not None,
            "jobs": {
                "pending": len(pending),
                "failed": sum(1 for job in failed if job.state == JobState.FAILED),
                "dead_letter": sum(1 for job in failed if job.state == JobState.DEAD_LETTER),
            },
        }


def _job_dict(status: JobStatus) -> dict[str, Any]:
    return {
        "job_id": status.job_id,
        "kind": status.kind.value,
        "state": status.state.value,
        "run_at": status.run_at.isoformat(),
        "attempts": status.attempts,
        "max_attempts": status.max_attempts,
        "last_error": status.last_error,
        "booking_id": status.payload.get("booking_id"),
    }
