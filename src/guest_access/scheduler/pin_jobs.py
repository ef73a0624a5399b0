"""Scheduling of PIN generation and revocation jobs for bookings."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from guest_access.core.results import RetryPolicy
from guest_access.db.models import JobKind
from guest_access.errors import ValidationError
from guest_access.scheduler.queue import JobQueue, JobStatus
from guest_access.timeutil import isoformat_z, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PIN_LEAD = timedelta(hours=2)

Timestamp = Union[str, datetime]


def generate_job_id(booking_id: int) -> str:
    return f"gen-pin-{booking_id}"


def revoke_job_id(booking_id: int) -> str:
    return f"revoke-pin-{booking_id}"


def compute_generate_delay(check_in: datetime, now: datetime, lead: timedelta) -> timedelta:
    """Delay until a PIN should be generated.

    Codes are created `lead` before check-in, or immediately when check-in
    is already closer than that (or in the past).
    """
    if check_in - now <= lead:
        return timedelta(0)
    return check_in - lead - now


def compute_revoke_delay(check_out: datetime, now: datetime) -> timedelta:
    """Delay until a PIN should be revoked: at check-out, never negative."""
    return max(timedelta(0), check_out - now)


@dataclass
class CancelResult:
    """Which of a booking's jobs were actually removed."""

    generate_cancelled: bool
    revoke_cancelled: bool


def _require_id(name: str, value) -> None:
    if value is None or value == "":
        raise ValidationError(f"{name} is required")


def _parse(name: str, value: Optional[Timestamp]) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {name}: {e}") from e


class PinJobScheduler:
    """Translates booking windows into delayed generate/revoke jobs.

    Job ids are derived from the booking id, so scheduling the same
    booking twice replaces the earlier job instead of adding another.
    """

    def __init__(
        self,
        queue: JobQueue,
        lead: timedelta = DEFAULT_PIN_LEAD,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._queue = queue
        self._lead = lead
        self._retry_policy = retry_policy or RetryPolicy()

    @property
    def lead(self) -> timedelta:
        return self._lead

    async def schedule_generate(
        self,
        booking_id: int,
        lock_id: int,
        check_in: Timestamp,
        check_out: Timestamp,
    ) -> JobStatus:
        _require_id("booking_id", booking_id)
        _require_id("lock_id", lock_id)
        check_in_at = _parse("check_in", check_in)
        check_out_at = _parse("check_out", check_out)
        if check_out_at <= check_in_at:
            raise ValidationError("check_out must be after check_in")

        delay = compute_generate_delay(check_in_at, utcnow(), self._lead)
        status = await self._queue.enqueue(
            generate_job_id(booking_id),
            JobKind.GENERATE_PIN,
            {
                "booking_id": booking_id,
                "lock_id": lock_id,
                "check_out_at": isoformat_z(check_out_at),
            },
            delay=delay,
            retry_policy=self._retry_policy,
        )
        logger.info(
            "Scheduled PIN generation for booking %s in %ds", booking_id, delay.total_seconds()
        )
        return status

    async def schedule_revoke(
        self, booking_id: int, lock_id: int, check_out: Timestamp
    ) -> JobStatus:
        _require_id("booking_id", booking_id)
        _require_id("lock_id", lock_id)
        check_out_at = _parse("check_out", check_out)

        delay = compute_revoke_delay(check_out_at, utcnow())
        status = await self._queue.enqueue(
            revoke_job_id(booking_id),
            JobKind.REVOKE_PIN,
            {
                "booking_id": booking_id,
                "lock_id": lock_id,
                "check_out_at": isoformat_z(check_out_at),
            },
            delay=delay,
            retry_policy=self._retry_policy,
        )
        logger.info(
            "Scheduled PIN revocation for booking %s in %ds", booking_id, delay.total_seconds()
        )
        return status

    async def schedule_pin_jobs(
        self,
        booking_id: int,
        lock_id: int,
        check_in: Timestamp,
        check_out: Timestamp,
    ) -> tuple[JobStatus, JobStatus]:
        """Schedule both jobs for a booking.

        Inputs are validated up front so a bad window enqueues nothing.
        """
        _require_id("booking_id", booking_id)
        _require_id("lock_id", lock_id)
        check_in_at = _parse("check_in", check_in)
        check_out_at = _parse("check_out", check_out)
        if check_out_at <= check_in_at:
            raise ValidationError("check_out must be after check_in")

        generate = await self.schedule_generate(booking_id, lock_id, check_in_at, check_out_at)
        revoke = await self.schedule_revoke(booking_id, lock_id, check_out_at)
        return generate, revoke

    async def cancel(self, booking_id: int) -> CancelResult:
        """Remove a booking's pending jobs. Absent jobs are not an error."""
        _require_id("booking_id", booking_id)
        result = CancelResult(
            generate_cancelled=await self._queue.cancel(generate_job_id(booking_id)),
            revoke_cancelled=await self._queue.cancel(revoke_job_id(booking_id)),
        )
        logger.info(
            "Cancelled PIN jobs for booking %s (generate=%s, revoke=%s)",
            booking_id,
            result.generate_cancelled,
            result.revoke_cancelled,
        )
        return result

    async def status(self, booking_id: int, kind: JobKind) -> Optional[JobStatus]:
        if JobKind(kind) == JobKind.GENERATE_PIN:
            return await self._queue.get_status(generate_job_id(booking_id))
        return await self._queue.get_status(revoke_job_id(booking_id))
