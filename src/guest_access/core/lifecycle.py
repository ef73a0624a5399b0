"""Booking lifecycle handling: turns booking events into PIN jobs."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import pydantic

from guest_access.bookings.schemas import BookingData, BookingEvent, BookingEventType
from guest_access.core.processors import RevokePinProcessor
from guest_access.db.models import Booking, BookingStatus, CredentialStatus, Lock
from guest_access.db.store import BookingStore
from guest_access.errors import ValidationError
from guest_access.scheduler.pin_jobs import PinJobScheduler

logger = logging.getLogger(__name__)

RESERVATION_CREATED = "RESERVATION_CREATED"
RESERVATION_UPDATED = "RESERVATION_UPDATED"
RESERVATION_CANCELLED = "RESERVATION_CANCELLED"


@dataclass
class LifecycleOutcome:
    """Result of handling one booking event."""

    success: bool
    message: str
    booking_id: Optional[int] = None
    scheduled_locks: list[int] = field(default_factory=list)
    failed_locks: list[int] = field(default_factory=list)
    rescheduled: bool = False


def parse_booking_event(raw: Union[BookingEvent, dict[str, Any]]) -> BookingEvent:
    """Validate a raw event payload.

    Raises:
        ValidationError: If the payload is malformed
    """
    if isinstance(raw, BookingEvent):
        return raw
    try:
        return BookingEvent.model_validate(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid booking event: {e}") from e


class BookingLifecycleHandler:
    """Reacts to booking created/updated/cancelled events.

    Scheduling failures on one lock never stop the others, and cleanup
    steps on cancellation are best effort: the booking always ends up
    CANCELLED with no ACTIVE credentials.
    """

    actor = "webhook-handler"
    cancellation_actor = "webhook-handler-cancellation"

    def __init__(
        self,
        store: BookingStore,
        pin_jobs: PinJobScheduler,
        revoker: RevokePinProcessor,
    ):
        self.store = store
        self.pin_jobs = pin_jobs
        self.revoker = revoker

    async def handle(self, raw: Union[BookingEvent, dict[str, Any]]) -> LifecycleOutcome:
        event = parse_booking_event(raw)
        logger.info("Processing booking event %s for %s", event.event.value, event.data.id)

        if event.event == BookingEventType.CREATED:
            return await self.on_created(event.data)
        if event.event == BookingEventType.UPDATED:
            return await self.on_updated(event.data)
        return await self.on_cancelled(event.data)

    # Events

    async def on_created(self, data: BookingData, actor: Optional[str] = None) -> LifecycleOutcome:
        """Record a new booking and schedule PIN jobs for every mapped lock."""
        booking = await self.store.get_booking_by_external_id(data.id)
        if booking is not None:
            # Redelivered event; treat as an update of what we have
            return await self.on_updated(data, actor)
        if data.status == BookingStatus.CANCELLED:
            return LifecycleOutcome(True, f"Booking {data.id} is already cancelled, ignoring")

        unit = await self.store.get_or_create_unit(data.unit_id)
        booking = await self.store.create_booking(
            external_id=data.id,
            unit_id=unit.id,
            check_in_at=data.check_in_at,
            check_out_at=data.check_out_at,
            status=data.status,
            guest_name=data.guest_name,
        )

        locks = await self.store.list_locks_for_unit(unit.id)
        if not locks:
            logger.warning("No locks mapped to unit %s, no PINs scheduled", data.unit_id)

        scheduled, failed = await self.schedule_for_locks(booking, locks)
        await self.store.add_audit(
            action=RESERVATION_CREATED,
            entity="Booking",
            entity_id=booking.id,
            actor=actor or self.actor,
            details={
                "external_id": data.id,
                "lock_count": len(locks),
                "scheduled_locks": scheduled,
                "failed_locks": failed,
                "check_in_at": booking.check_in_at.isoformat(),
                "check_out_at": booking.check_out_at.isoformat(),
            },
            success=not failed,
        )
        return LifecycleOutcome(
            success=True,
            message=f"Booking created, PIN jobs scheduled for {len(scheduled)} lock(s)",
            booking_id=booking.id,
            scheduled_locks=scheduled,
            failed_locks=failed,
        )

    async def on_updated(self, data: BookingData, actor: Optional[str] = None) -> LifecycleOutcome:
        """Apply changes to a booking, rescheduling PIN jobs when its dates move."""
        booking = await self.store.get_booking_by_external_id(data.id)
        if booking is None:
            logger.info("Update for unknown booking %s, creating it", data.id)
            return await self.on_created(data, actor)

        if data.status == BookingStatus.CANCELLED:
            return await self.cancel(booking, actor)

        check_in_changed = booking.check_in_at != data.check_in_at
        check_out_changed = booking.check_out_at != data.check_out_at

        if not check_in_changed and not check_out_changed:
            await self.store.update_booking(
                booking.id, status=data.status, guest_name=data.guest_name
            )
            return LifecycleOutcome(
                True, "Booking updated (dates unchanged)", booking_id=booking.id
            )

        try:
            await self.pin_jobs.cancel(booking.id)
        except Exception as e:
            logger.warning("Failed to cancel previous jobs for booking %s: %s", booking.id, e)

        booking = await self.store.update_booking(
            booking.id,
            check_in_at=data.check_in_at,
            check_out_at=data.check_out_at,
            status=data.status,
            guest_name=data.guest_name,
        )
        locks = await self._locks_to_reschedule(booking)
        scheduled, failed = await self.schedule_for_locks(booking, locks)

        await self.store.add_audit(
            action=RESERVATION_UPDATED,
            entity="Booking",
            entity_id=booking.id,
            actor=actor or self.actor,
            details={
                "check_in_changed": check_in_changed,
                "check_out_changed": check_out_changed,
                "check_in_at": booking.check_in_at.isoformat(),
                "check_out_at": booking.check_out_at.isoformat(),
                "scheduled_locks": scheduled,
                "failed_locks": failed,
            },
            success=not failed,
        )
        return LifecycleOutcome(
            success=True,
            message="Booking updated and PIN jobs rescheduled",
            booking_id=booking.id,
            scheduled_locks=scheduled,
            failed_locks=failed,
            rescheduled=True,
        )

    async def on_cancelled(self, data: BookingData, actor: Optional[str] = None) -> LifecycleOutcome:
        booking = await self.store.get_booking_by_external_id(data.id)
        if booking is None:
            return LifecycleOutcome(True, f"Booking {data.id} not known, nothing to cancel")
        return await self.cancel(booking, actor)

    async def cancel(self, booking: Booking, actor: Optional[str] = None) -> LifecycleOutcome:
        """Cancel a booking's jobs, revoke its PINs and mark it CANCELLED."""
        # Marked first so a PIN generation already in flight sees it and backs out
        await self.store.update_booking(booking.id, status=BookingStatus.CANCELLED)

        try:
            await self.pin_jobs.cancel(booking.id)
        except Exception as e:
            logger.warning("Failed to cancel jobs for booking %s: %s", booking.id, e)

        # Vendor-side revocation first; whatever is left is marked revoked locally
        vendor_revoked: list[int] = []
        try:
            result = await self.revoker.revoke_booking(booking.id, actor=self.cancellation_actor)
            vendor_revoked = list(result.data.get("revoked", []))
            if not result.success:
                logger.warning(
                    "Vendor revocation incomplete for cancelled booking %s: %s",
                    booking.id, result.error,
                )
        except Exception as e:
            logger.error("Vendor revocation failed for cancelled booking %s: %s", booking.id, e)

        marked = await self.store.revoke_active_credentials(booking.id, "booking-cancellation")

        await self.store.add_audit(
            action=RESERVATION_CANCELLED,
            entity="Booking",
            entity_id=booking.id,
            actor=actor or self.actor,
            details={
                "external_id": booking.external_id,
                "vendor_revoked": vendor_revoked,
                "marked_revoked": marked,
            },
        )
        logger.info("Booking %s cancelled", booking.id)
        return LifecycleOutcome(
            True, "Booking cancelled, jobs cancelled and PINs revoked", booking_id=booking.id
        )

    # Helpers

    async def schedule_for_locks(self, booking: Booking, locks: list[Lock]) -> tuple[list[int], list[int]]:
        scheduled: list[int] = []
        failed: list[int] = []
        for lock in locks:
            try:
                await self.pin_jobs.schedule_pin_jobs(
                    booking.id, lock.id, booking.check_in_at, booking.check_out_at
                )
                scheduled.append(lock.id)
            except Exception as e:
                logger.error(
                    "Failed to schedule PIN jobs for booking %s on lock %s: %s",
                    booking.id, lock.id, e,
                )
                failed.append(lock.id)
        return scheduled, failed

    async def _locks_to_reschedule(self, booking: Booking) -> list[Lock]:
        """Locks backing an ACTIVE credential, plus the unit's mapped lock.

        The mapped lock covers bookings whose PIN has not been generated yet.
        """
        locks: dict[int, Lock] = {}
        for credential in await self.store.list_credentials(booking.id, CredentialStatus.ACTIVE):
            lock = await self.store.get_lock(credential.lock_id)
            if lock is not None:
                locks[lock.id] = lock
        for lock in await self.store.list_locks_for_unit(booking.unit_id):
            locks.setdefault(lock.id, lock)
        return list(locks.values())
