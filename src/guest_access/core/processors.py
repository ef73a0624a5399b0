"""Job processors that create and revoke door PINs.

Processors return a JobResult for every business outcome; the queue
decides from it whether to retry, fail or dead-letter the job.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from guest_access.core.codes import generate_access_code, hash_code_async
from guest_access.core.mutex import MutexService, booking_mutex_key
from guest_access.core.results import (
    FailureReason,
    JobContext,
    JobResult,
    JobSuccess,
    RetriableFailure,
    TerminalFailure,
)
from guest_access.db.models import Booking, BookingStatus, Credential, CredentialStatus, Lock
from guest_access.db.store import BookingStore
from guest_access.errors import TransientError, ValidationError
from guest_access.locks.provider import LockProvider
from guest_access.timeutil import isoformat_z, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# Audit actions
CREATE_CREDENTIAL = "CREATE_CREDENTIAL"
CREATE_CREDENTIAL_ERROR = "CREATE_CREDENTIAL_ERROR"
CREATE_CREDENTIAL_DLQ = "CREATE_CREDENTIAL_DLQ"
CREATE_CREDENTIAL_RETRIES_EXHAUSTED = "CREATE_CREDENTIAL_RETRIES_EXHAUSTED"
REVOKE_CREDENTIAL = "REVOKE_CREDENTIAL"
REVOKE_CREDENTIAL_ERROR = "REVOKE_CREDENTIAL_ERROR"
REVOKE_CREDENTIAL_RETRIES_EXHAUSTED = "REVOKE_CREDENTIAL_RETRIES_EXHAUSTED"

# Failures the job queue should retry
TRANSIENT_ERRORS = (TransientError, asyncio.TimeoutError, SQLAlchemyError)


class _CredentialProcessor:
    """Shared plumbing: booking mutex, vendor timeouts and audit writes."""

    actor = "system"

    def __init__(
        self,
        store: BookingStore,
        provider: LockProvider,
        mutex: MutexService,
        mutex_ttl_seconds: float = 60,
        provider_timeout: float = 15.0,
    ):
        self.store = store
        self.provider = provider
        self.mutex = mutex
        self.mutex_ttl_seconds = mutex_ttl_seconds
        self.provider_timeout = provider_timeout

    async def _acquire(self, booking_id: int) -> Optional[str]:
        return await self.mutex.try_acquire(booking_mutex_key(booking_id), self.mutex_ttl_seconds)

    async def _release(self, booking_id: int, token: str) -> None:
        try:
            released = await self.mutex.release(booking_mutex_key(booking_id), token)
        except Exception as e:
            # The lease expires on its own
            logger.error("Failed to release mutex for booking %s: %s", booking_id, e)
            return
        if not released:
            logger.warning("Mutex for booking %s expired before release", booking_id)

    async def _vendor_call(self, coro):
        return await asyncio.wait_for(coro, timeout=self.provider_timeout)

    async def _safe_audit(
        self,
        action: str,
        entity: str,
        entity_id: Any,
        details: Optional[dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> None:
        """Write an audit entry; a failure here is logged and never propagated."""
        try:
            await self.store.add_audit(
                action=action,
                entity=entity,
                entity_id=entity_id,
                actor=actor or self.actor,
                details=details,
                success=success,
                error_message=error_message,
            )
        except Exception as e:
            logger.error("Failed to write %s audit entry for %s %s: %s", action, entity, entity_id, e)


class GeneratePinProcessor(_CredentialProcessor):
    """Creates a timed PIN on a booking's lock and records the credential."""

    actor = "system-pin-generator"

    def __init__(
        self,
        store: BookingStore,
        provider: LockProvider,
        mutex: MutexService,
        mutex_ttl_seconds: float = 60,
        provider_timeout: float = 15.0,
        code_length: int = 6,
        hash_rounds: int = 10,
    ):
        super().__init__(store, provider, mutex, mutex_ttl_seconds, provider_timeout)
        self.code_length = code_length
        self.hash_rounds = hash_rounds

    async def __call__(self, payload: dict[str, Any], ctx: JobContext) -> JobResult:
        return await self.process(payload, ctx)

    async def process(self, payload: dict[str, Any], ctx: Optional[JobContext] = None) -> JobResult:
        """Run a `generate_pin` job.

        Preconditions are checked in order (payload, booking, lock, unit
        mapping) and the first failure decides the outcome.
        """
        booking_id = payload.get("booking_id")
        lock_id = payload.get("lock_id")
        if booking_id is None or lock_id is None or not payload.get("check_out_at"):
            return TerminalFailure(
                FailureReason.INVALID_PAYLOAD,
                "Payload requires booking_id, lock_id and check_out_at",
            )
        try:
            check_out = parse_timestamp(payload["check_out_at"])
        except ValueError as e:
            return TerminalFailure(FailureReason.INVALID_PAYLOAD, str(e))

        booking = await self.store.get_booking(booking_id)
        if booking is None:
            return TerminalFailure(FailureReason.NOT_FOUND, "Booking not found")

        lock = await self.store.get_lock(lock_id)
        if lock is None:
            return TerminalFailure(FailureReason.NOT_FOUND, "Lock not found")

        if not await self.store.is_lock_mapped_to_unit(lock.id, booking.unit_id):
            error = f"Lock {lock.id} is not mapped to unit {booking.unit_id}"
            logger.error("Dead-lettering PIN generation for booking %s: %s", booking.id, error)
            await self._safe_audit(
                CREATE_CREDENTIAL_DLQ,
                "Booking",
                booking.id,
                details={"booking_id": booking.id, "lock_id": lock.id, "unit_id": booking.unit_id},
                success=False,
                error_message=error,
            )
            return TerminalFailure(FailureReason.LOCK_NOT_MAPPED, error)

        return await self.generate(booking, lock, check_out, ctx)

    async def generate(
        self,
        booking: Booking,
        lock: Lock,
        valid_to: datetime,
        ctx: Optional[JobContext] = None,
    ) -> JobResult:
        """Create the PIN under the booking mutex and upsert the credential."""
        valid_from = utcnow()
        if valid_to <= valid_from:
            return TerminalFailure(
                FailureReason.INVALID_PAYLOAD,
                f"Booking {booking.id} has already checked out",
            )

        token = await self._acquire(booking.id)
        if token is None:
            return await self._transient_failure(
                booking, lock, "Booking is being processed by another job", ctx
            )

        try:
            # The booking may have been cancelled since the job was queued
            if await self._is_cancelled(booking.id):
                return await self._cancelled(booking, lock)

            code = generate_access_code(self.code_length)
            code_hash = await hash_code_async(code, self.hash_rounds)
            pin = await self._vendor_call(
                self.provider.create_timed_pin(lock.device_id, code, valid_from, valid_to)
            )
            credential = await self.store.upsert_credential(
                booking_id=booking.id,
                lock_id=lock.id,
                code_hash=code_hash,
                plain_code=code,
                valid_from=valid_from,
                valid_to=valid_to,
                provider_ref=pin.provider_ref,
                created_by=self.actor,
            )

            # Cancellation does not wait for the mutex, so it can land mid-call
            if await self._is_cancelled(booking.id):
                await self._withdraw(credential, lock)
                return await self._cancelled(booking, lock)
        except ValidationError as e:
            logger.error("PIN request for booking %s rejected: %s", booking.id, e)
            await self._safe_audit(
                CREATE_CREDENTIAL_ERROR,
                "Booking",
                booking.id,
                details={"booking_id": booking.id, "lock_id": lock.id},
                success=False,
                error_message=str(e),
            )
            return TerminalFailure(FailureReason.INVALID_PAYLOAD, str(e))
        except TRANSIENT_ERRORS as e:
            error = str(e) or type(e).__name__
            return await self._transient_failure(booking, lock, error, ctx)
        finally:
            await self._release(booking.id, token)

        await self._safe_audit(
            CREATE_CREDENTIAL,
            "Credential",
            credential.id,
            details={
                "booking_id": booking.id,
                "lock_id": lock.id,
                "valid_from": isoformat_z(valid_from),
                "valid_to": isoformat_z(valid_to),
                "provider_ref": pin.provider_ref,
            },
        )
        logger.info(
            "Created PIN for booking %s on lock %s (credential %s)",
            booking.id, lock.id, credential.id,
        )
        return JobSuccess(data={
            "credential_id": credential.id,
            "booking_id": booking.id,
            "lock_id": lock.id,
            "code": code,
        })

    async def _is_cancelled(self, booking_id: int) -> bool:
        current = await self.store.get_booking(booking_id)
        return current is None or current.status == BookingStatus.CANCELLED.value

    async def _withdraw(self, credential: Credential, lock: Lock) -> None:
        """Take back a PIN issued for a booking that was cancelled meanwhile."""
        try:
            await self._vendor_call(self.provider.revoke_pin(lock.device_id, credential.provider_ref))
        except (ValidationError,) + TRANSIENT_ERRORS as e:
            logger.error(
                "Failed to withdraw PIN on lock %s for cancelled booking %s: %s",
                lock.id, credential.booking_id, e,
            )
        await self.store.mark_credential_revoked(credential.id, self.actor)

    async def _cancelled(self, booking: Booking, lock: Lock) -> JobResult:
        error = f"Booking {booking.id} was cancelled"
        logger.info("Skipping PIN generation: %s", error)
        await self._safe_audit(
            CREATE_CREDENTIAL_ERROR,
            "Booking",
            booking.id,
            details={"booking_id": booking.id, "lock_id": lock.id},
            success=False,
            error_message=error,
        )
        return TerminalFailure(FailureReason.BOOKING_CANCELLED, error)

    async def _transient_failure(
        self, booking: Booking, lock: Lock, error: str, ctx: Optional[JobContext]
    ) -> JobResult:
        details = {
            "booking_id": booking.id,
            "lock_id": lock.id,
            "attempt": ctx.attempt if ctx else None,
        }
        if ctx is not None and ctx.is_final_attempt:
            logger.error(
                "PIN generation for booking %s failed after %d attempts: %s",
                booking.id, ctx.attempt, error,
            )
            await self._safe_audit(
                CREATE_CREDENTIAL_RETRIES_EXHAUSTED,
                "Booking",
                booking.id,
                details=details,
                success=False,
                error_message=error,
            )
            return TerminalFailure(FailureReason.RETRIES_EXHAUSTED, error)

        logger.warning("PIN generation for booking %s failed: %s", booking.id, error)
        await self._safe_audit(
            CREATE_CREDENTIAL_ERROR,
            "Booking",
            booking.id,
            details=details,
            success=False,
            error_message=error,
        )
        return RetriableFailure(error)


class RevokePinProcessor(_CredentialProcessor):
    """Revokes every active credential of a booking on the vendor side."""

    actor = "system-pin-revoke"

    async def __call__(self, payload: dict[str, Any], ctx: JobContext) -> JobResult:
        return await self.process(payload, ctx)

    async def process(self, payload: dict[str, Any], ctx: Optional[JobContext] = None) -> JobResult:
        booking_id = payload.get("booking_id")
        if booking_id is None:
            return TerminalFailure(FailureReason.INVALID_PAYLOAD, "Payload requires booking_id")

        booking = await self.store.get_booking(booking_id)
        if booking is None:
            await self._safe_audit(
                REVOKE_CREDENTIAL_ERROR,
                "Booking",
                booking_id,
                details={"booking_id": booking_id},
                success=False,
                error_message="Booking not found",
            )
            return TerminalFailure(FailureReason.NOT_FOUND, "Booking not found")

        return await self.revoke_booking(booking.id, ctx)

    async def revoke_booking(
        self,
        booking_id: int,
        ctx: Optional[JobContext] = None,
        actor: Optional[str] = None,
    ) -> JobResult:
        """Revoke the booking's ACTIVE credentials one by one.

        A failing credential does not stop the loop and successful
        revocations are never rolled back; a retry only sees the
        credentials that are still ACTIVE.
        """
        actor = actor or self.actor
        token = await self._acquire(booking_id)
        if token is None:
            error = "Booking is being processed by another job"
            result = self._retry_or_exhaust(booking_id, error, {}, ctx)
            await self._safe_audit(
                REVOKE_CREDENTIAL_RETRIES_EXHAUSTED
                if isinstance(result, TerminalFailure)
                else REVOKE_CREDENTIAL_ERROR,
                "Booking",
                booking_id,
                details={"booking_id": booking_id},
                success=False,
                error_message=error,
                actor=actor,
            )
            return result

        revoked: list[int] = []
        failed: list[dict[str, Any]] = []
        try:
            credentials = await self.store.list_credentials(booking_id, CredentialStatus.ACTIVE)
            if not credentials:
                logger.info("No active credentials to revoke for booking %s", booking_id)
                return JobSuccess(data={"booking_id": booking_id, "revoked": [], "failed": []})

            for credential in credentials:
                failure = await self._revoke_one(credential, actor)
                if failure is None:
                    revoked.append(credential.id)
                else:
                    failed.append({"credential_id": credential.id, **failure})
        finally:
            await self._release(booking_id, token)

        data = {"booking_id": booking_id, "revoked": revoked, "failed": failed}
        await self._safe_audit(
            REVOKE_CREDENTIAL,
            "Booking",
            booking_id,
            details=data,
            success=not failed,
            error_message=f"{len(failed)} credential(s) could not be revoked" if failed else None,
            actor=actor,
        )

        if not failed:
            logger.info("Revoked %d credential(s) for booking %s", len(revoked), booking_id)
            return JobSuccess(data=data)

        error = f"Failed to revoke {len(failed)} of {len(credentials)} credential(s)"
        if not any(failure["retriable"] for failure in failed):
            logger.error("PIN revocation for booking %s cannot succeed: %s", booking_id, error)
            return TerminalFailure(FailureReason.INVALID_PAYLOAD, error, data)

        result = self._retry_or_exhaust(booking_id, error, data, ctx)
        if isinstance(result, TerminalFailure):
            await self._safe_audit(
                REVOKE_CREDENTIAL_RETRIES_EXHAUSTED,
                "Booking",
                booking_id,
                details=data,
                success=False,
                error_message=error,
                actor=actor,
            )
        return result

    async def _revoke_one(self, credential: Credential, actor: str) -> Optional[dict[str, Any]]:
        """Revoke one credential.

        Returns:
            None on success, otherwise {"error": ..., "retriable": ...}
        """
        try:
            lock = await self.store.get_lock(credential.lock_id)
        except TRANSIENT_ERRORS as e:
            logger.warning("Failed to load lock for credential %s: %s", credential.id, e)
            return {"error": str(e) or type(e).__name__, "retriable": True}
        if lock is None:
            return {"error": "Lock not found", "retriable": False}

        # Older credentials may predate provider references
        reference = credential.provider_ref or credential.plain_code or credential.code_hash
        try:
            result = await self._vendor_call(self.provider.revoke_pin(lock.device_id, reference))
        except ValidationError as e:
            logger.error("Revocation of credential %s rejected: %s", credential.id, e)
            return {"error": str(e), "retriable": False}
        except TRANSIENT_ERRORS as e:
            logger.warning("Failed to revoke credential %s on lock %s: %s", credential.id, lock.id, e)
            return {"error": str(e) or type(e).__name__, "retriable": True}

        if not result.success:
            return {"error": "Provider reported revocation failure", "retriable": True}

        # The PIN is already gone at the vendor; a retry revokes it again harmlessly
        try:
            await self.store.mark_credential_revoked(credential.id, actor)
        except TRANSIENT_ERRORS as e:
            logger.error(
                "PIN for credential %s revoked on lock %s but not recorded: %s",
                credential.id, lock.id, e,
            )
            return {"error": str(e) or type(e).__name__, "retriable": True}
        return None

    @staticmethod
    def _retry_or_exhaust(
        booking_id: int, error: str, data: dict[str, Any], ctx: Optional[JobContext]
    ) -> JobResult:
        if ctx is not None and ctx.is_final_attempt:
            logger.error(
                "PIN revocation for booking %s failed after %d attempts: %s",
                booking_id, ctx.attempt, error,
            )
            return TerminalFailure(FailureReason.RETRIES_EXHAUSTED, error, data)
        logger.warning("PIN revocation for booking %s incomplete: %s", booking_id, error)
        return RetriableFailure(error, data)
