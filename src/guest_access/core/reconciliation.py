"""Periodic reconciliation against the external booking system.

Webhooks can be lost. Every run pulls reservations changed since the
last successful run, brings local bookings and their PIN jobs in line,
and removes queued jobs whose booking no longer exists.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from guest_access.bookings.client import BookingSystemClient, ExternalBooking
from guest_access.core.lifecycle import BookingLifecycleHandler
from guest_access.db.models import Booking, BookingStatus, CredentialStatus, JobState
from guest_access.db.store import BookingStore
from guest_access.scheduler.queue import JobQueue
from guest_access.timeutil import EPOCH, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationStats:
    fetched: int = 0
    created: int = 0
    updated: int = 0
    orphaned: int = 0
    errors: int = 0
    duration_ms: int = 0


@dataclass
class ReconciliationResult:
    """Outcome of one reconciliation run."""

    success: bool
    started_at: datetime
    completed_at: Optional[datetime] = None
    watermark: Optional[datetime] = None
    stats: ReconciliationStats = field(default_factory=ReconciliationStats)
    error: Optional[str] = None
    skipped: bool = False


class ReconciliationService:
    """Brings local bookings in line with the booking system."""

    actor = "system-reconciliation"

    def __init__(
        self,
        store: BookingStore,
        client: BookingSystemClient,
        lifecycle: BookingLifecycleHandler,
        queue: JobQueue,
    ):
        self.store = store
        self.client = client
        self.lifecycle = lifecycle
        self.queue = queue
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def reconcile(self) -> ReconciliationResult:
        """Run one reconciliation pass.

        Only one pass runs at a time; a call made while another is in
        progress returns a skipped result without doing anything.
        """
        started_at = utcnow()
        if self._running:
            logger.info("Reconciliation already in progress, skipping")
            return ReconciliationResult(success=False, started_at=started_at, skipped=True)

        self._running = True
        try:
            return await self._reconcile(started_at)
        finally:
            self._running = False

    async def _reconcile(self, started_at: datetime) -> ReconciliationResult:
        clock = time.monotonic()
        stats = ReconciliationStats()

        last_run = await self.store.last_successful_run()
        since = last_run.watermark if last_run else EPOCH
        logger.info("Starting reconciliation, changes since %s", since.isoformat())

        try:
            changed = await self.client.list_changed_since(since)
            stats.fetched = len(changed)

            for external in changed:
                try:
                    await self._apply(external, stats)
                except Exception as e:
                    stats.errors += 1
                    logger.error("Failed to reconcile booking %s: %s", external.id, e)

            stats.orphaned = await self._cleanup_orphaned_jobs()
        except Exception as e:
            stats.errors += 1
            stats.duration_ms = int((time.monotonic() - clock) * 1000)
            logger.error("Reconciliation failed: %s", e)
            completed_at = utcnow()
            await self._record_run(started_at, completed_at, since, stats, "failed", str(e))
            return ReconciliationResult(
                success=False,
                started_at=started_at,
                completed_at=completed_at,
                watermark=since,
                stats=stats,
                error=str(e),
            )

        stats.duration_ms = int((time.monotonic() - clock) * 1000)
        completed_at = utcnow()
        await self._record_run(started_at, completed_at, started_at, stats, "success")
        logger.info(
            "Reconciliation complete: fetched=%d created=%d updated=%d orphaned=%d errors=%d (%dms)",
            stats.fetched, stats.created, stats.updated, stats.orphaned,
            stats.errors, stats.duration_ms,
        )
        return ReconciliationResult(
            success=True,
            started_at=started_at,
            completed_at=completed_at,
            watermark=started_at,
            stats=stats,
        )

    async def _record_run(
        self,
        started_at: datetime,
        completed_at: datetime,
        watermark: datetime,
        stats: ReconciliationStats,
        status: str,
        error_message: Optional[str] = None,
    ) -> None:
        try:
            await self.store.add_reconciliation_run(
                started_at=started_at,
                completed_at=completed_at,
                watermark=watermark,
                duration_ms=stats.duration_ms,
                fetched=stats.fetched,
                created=stats.created,
                updated=stats.updated,
                orphaned=stats.orphaned,
                errors=stats.errors,
                status=status,
                error_message=error_message,
            )
        except Exception as e:
            if status == "success":
                raise
            logger.error("Failed to record failed reconciliation run: %s", e)

    async def _apply(self, external: ExternalBooking, stats: ReconciliationStats) -> None:
        existing = await self.store.get_booking_by_external_id(external.id)

        if existing is None:
            if external.status == BookingStatus.CANCELLED:
                logger.debug("Ignoring unseen cancelled booking %s", external.id)
                return
            await self.lifecycle.on_created(external, actor=self.actor)
            stats.created += 1
            return

        dates_changed = (
            existing.check_in_at != external.check_in_at
            or existing.check_out_at != external.check_out_at
        )
        details_changed = (
            existing.guest_name != external.guest_name
            or existing.status != external.status.value
        )
        if not dates_changed and not details_changed:
            return

        if external.status == BookingStatus.CANCELLED:
            if existing.status != BookingStatus.CANCELLED.value:
                await self.lifecycle.cancel(existing, actor=self.actor)
            else:
                await self.store.update_booking(existing.id, guest_name=external.guest_name)
        elif dates_changed:
            await self.lifecycle.on_updated(external, actor=self.actor)
        else:
            booking = await self.store.update_booking(
                existing.id, guest_name=external.guest_name, status=external.status
            )
            if external.status == BookingStatus.CONFIRMED:
                await self._schedule_missing(booking)

        stats.updated += 1
        logger.info("Reconciled changes to booking %s", existing.id)

    async def _schedule_missing(self, booking: Booking) -> None:
        """Schedule PIN jobs on mapped locks that have no ACTIVE credential yet."""
        active = {
            credential.lock_id
            for credential in await self.store.list_credentials(booking.id, CredentialStatus.ACTIVE)
        }
        locks = [
            lock for lock in await self.store.list_locks_for_unit(booking.unit_id)
            if lock.id not in active
        ]
        await self.lifecycle.schedule_for_locks(booking, locks)

    async def _cleanup_orphaned_jobs(self) -> int:
        """Remove queued and failed jobs whose booking has been deleted."""
        orphaned = 0
        states = [JobState.PENDING, JobState.FAILED, JobState.DEAD_LETTER]
        for job in await self.queue.list_jobs(states=states):
            booking_id = job.payload.get("booking_id")
            if booking_id is None:
                continue
            if await self.store.get_booking(booking_id) is not None:
                continue
            if await self.queue.remove(job.job_id):
                orphaned += 1
                logger.warning("Removed orphaned job %s", job.job_id)
        return orphaned
