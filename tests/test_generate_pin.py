"""Tests for the PIN generation processor."""

from datetime import timedelta

from helpers import OrchestratorTestCase, job_context

from guest_access.core.codes import verify_code
from guest_access.core.mutex import booking_mutex_key
from guest_access.core.processors import (
    CREATE_CREDENTIAL,
    CREATE_CREDENTIAL_DLQ,
    CREATE_CREDENTIAL_ERROR,
    CREATE_CREDENTIAL_RETRIES_EXHAUSTED,
)
from guest_access.core.results import FailureReason, JobSuccess, RetriableFailure, TerminalFailure
from guest_access.db.models import BookingStatus, CredentialStatus, JobState
from guest_access.errors import ValidationError
from guest_access.scheduler.pin_jobs import generate_job_id
from guest_access.timeutil import isoformat_z, utcnow


class TestGeneratePinProcessor(OrchestratorTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.unit, self.lock = await self.make_unit_with_lock()
        self.booking = await self.make_booking(self.unit)
        self.generator = self.orchestrator.generator

    def payload(self, **overrides):
        payload = {
            "booking_id": self.booking.id,
            "lock_id": self.lock.id,
            "check_out_at": isoformat_z(self.booking.check_out_at),
        }
        payload.update(overrides)
        return payload

    async def test_creates_active_credential(self):
        result = await self.generator.process(self.payload(), job_context())

        self.assertIsInstance(result, JobSuccess)
        code = result.data["code"]
        self.assertEqual(len(code), 6)

        credential = await self.store.get_credential(self.booking.id, self.lock.id)
        self.assertEqual(credential.id, result.data["credential_id"])
        self.assertEqual(credential.status, CredentialStatus.ACTIVE.value)
        self.assertTrue(verify_code(code, credential.code_hash))
        self.assertEqual(credential.valid_to, self.booking.check_out_at)
        self.assertEqual(credential.created_by, "system-pin-generator")

        calls = self.provider.calls_for("create")
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0].lock_id, self.lock.device_id)
        self.assertEqual(calls[0].code, code)
        self.assertEqual(credential.provider_ref, next(iter(self.provider.active_pins)))

        audit = await self.store.list_audit(action=CREATE_CREDENTIAL)
        self.assertEqual(len(audit), 1)
        self.assertEqual(audit[0].entity_id, str(credential.id))
        self.assertNotIn("code", audit[0].details)

    async def test_generation_is_idempotent_per_booking_and_lock(self):
        first = await self.generator.process(self.payload(), job_context())
        second = await self.generator.process(self.payload(), job_context())

        self.assertIsInstance(second, JobSuccess)
        self.assertEqual(first.data["credential_id"], second.data["credential_id"])
        credentials = await self.store.list_credentials(self.booking.id)
        self.assertEqual(len(credentials), 1)
        self.assertTrue(verify_code(second.data["code"], credentials[0].code_hash))

    async def test_reactivates_revoked_credential(self):
        first = await self.generator.process(self.payload(), job_context())
        await self.store.mark_credential_revoked(first.data["credential_id"], "test")

        await self.generator.process(self.payload(), job_context())

        credential = await self.store.get_credential(self.booking.id, self.lock.id)
        self.assertEqual(credential.status, CredentialStatus.ACTIVE.value)
        self.assertIsNone(credential.revoked_at)
        self.assertIsNone(credential.revoked_by)

    async def test_invalid_payload(self):
        for payload in (
            {},
            self.payload(booking_id=None),
            self.payload(check_out_at=None),
            self.payload(check_out_at="yesterday-ish"),
        ):
            with self.subTest(payload=payload):
                result = await self.generator.process(payload, job_context())
                self.assertIsInstance(result, TerminalFailure)
                self.assertEqual(result.reason, FailureReason.INVALID_PAYLOAD)
        self.assertEqual(self.provider.calls, [])

    async def test_booking_not_found(self):
        result = await self.generator.process(self.payload(booking_id=9999), job_context())
        self.assertIsInstance(result, TerminalFailure)
        self.assertEqual(result.reason, FailureReason.NOT_FOUND)
        self.assertEqual(result.error, "Booking not found")

    async def test_lock_not_found(self):
        result = await self.generator.process(self.payload(lock_id=9999), job_context())
        self.assertIsInstance(result, TerminalFailure)
        self.assertEqual(result.reason, FailureReason.NOT_FOUND)
        self.assertEqual(result.error, "Lock not found")

    async def test_lock_not_mapped_is_dead_lettered_on_first_attempt(self):
        other_lock = await self.store.create_lock("mock", "lock-elsewhere")
        await self.pin_jobs.schedule_generate(
            self.booking.id, other_lock.id, self.booking.check_in_at, self.booking.check_out_at
        )

        result = await self.queue.run_job(generate_job_id(self.booking.id))

        self.assertEqual(result.reason, FailureReason.LOCK_NOT_MAPPED)
        status = await self.queue.get_status(generate_job_id(self.booking.id))
        self.assertEqual(status.state, JobState.DEAD_LETTER)
        self.assertEqual(status.attempts, 1)
        self.assertEqual(len(await self.store.list_audit(action=CREATE_CREDENTIAL_DLQ)), 1)
        self.assertEqual(self.provider.calls, [])

    async def test_transient_failure_is_retriable(self):
        self.provider.fail_next("create", self.lock.device_id)

        result = await self.generator.process(self.payload(), job_context(attempt=1))

        self.assertIsInstance(result, RetriableFailure)
        self.assertIsNone(await self.store.get_credential(self.booking.id, self.lock.id))
        errors = await self.store.list_audit(action=CREATE_CREDENTIAL_ERROR)
        self.assertEqual(len(errors), 1)
        self.assertFalse(errors[0].success)

    async def test_three_transient_failures_exhaust_retries(self):
        self.provider.fail_always("create", self.lock.device_id)
        await self.pin_jobs.schedule_generate(
            self.booking.id, self.lock.id, self.booking.check_in_at, self.booking.check_out_at
        )
        job_id = generate_job_id(self.booking.id)

        results = [await self.queue.run_job(job_id) for _ in range(3)]

        self.assertIsInstance(results[0], RetriableFailure)
        self.assertIsInstance(results[1], RetriableFailure)
        self.assertIsInstance(results[2], TerminalFailure)
        self.assertEqual(results[2].reason, FailureReason.RETRIES_EXHAUSTED)
        self.assertEqual((await self.queue.get_status(job_id)).state, JobState.FAILED)
        self.assertEqual(len(self.provider.calls_for("create")), 3)
        self.assertEqual(len(await self.store.list_audit(action=CREATE_CREDENTIAL_ERROR)), 2)
        self.assertEqual(
            len(await self.store.list_audit(action=CREATE_CREDENTIAL_RETRIES_EXHAUSTED)), 1
        )

    async def test_busy_booking_is_retried(self):
        token = await self.orchestrator.mutex.try_acquire(booking_mutex_key(self.booking.id), 60)
        self.assertIsNotNone(token)

        result = await self.generator.process(self.payload(), job_context())

        self.assertIsInstance(result, RetriableFailure)
        self.assertEqual(self.provider.calls, [])

    async def test_mutex_released_after_failure(self):
        self.provider.fail_next("create", self.lock.device_id)
        await self.generator.process(self.payload(), job_context())

        token = await self.orchestrator.mutex.try_acquire(booking_mutex_key(self.booking.id), 60)
        self.assertIsNotNone(token)

    async def test_booking_already_checked_out(self):
        past = utcnow() - timedelta(hours=1)
        await self.store.update_booking(
            self.booking.id, check_in_at=past - timedelta(days=1), check_out_at=past
        )

        result = await self.generator.process(self.payload(check_out_at=isoformat_z(past)), job_context())

        self.assertIsInstance(result, TerminalFailure)
        self.assertEqual(result.reason, FailureReason.INVALID_PAYLOAD)

    async def test_cancelled_booking_gets_no_pin(self):
        await self.store.update_booking(self.booking.id, status=BookingStatus.CANCELLED)

        result = await self.generator.process(self.payload(), job_context())

        self.assertIsInstance(result, TerminalFailure)
        self.assertEqual(result.reason, FailureReason.BOOKING_CANCELLED)
        self.assertEqual(self.provider.calls_for("create"), [])
        self.assertIsNone(await self.store.get_credential(self.booking.id, self.lock.id))

    async def test_rejected_pin_request_is_not_retried(self):
        async def reject(lock_id, code, valid_from, valid_to):
            raise ValidationError("code must be numeric")

        self.provider.create_timed_pin = reject

        result = await self.generator.process(self.payload(), job_context())

        self.assertIsInstance(result, TerminalFailure)
        self.assertEqual(result.reason, FailureReason.INVALID_PAYLOAD)
        self.assertFalse(result.dead_letter)
        token = await self.orchestrator.mutex.try_acquire(booking_mutex_key(self.booking.id), 60)
        self.assertIsNotNone(token)
