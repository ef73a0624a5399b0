"""Tests for reconciliation against the booking system."""

import asyncio
from datetime import timedelta

import httpx
from helpers import OrchestratorTestCase

from guest_access.core.lifecycle import RESERVATION_CANCELLED
from guest_access.db.models import BookingStatus, CredentialStatus, JobKind, JobState
from guest_access.scheduler.pin_jobs import generate_job_id
from guest_access.timeutil import EPOCH, isoformat_z, parse_timestamp, utcnow

# Fixed so repeated calls describe the same reservation
BASE = utcnow().replace(minute=0, second=0, microsecond=0)


def reservation(booking_id="res-1", unit_id="unit-1", days_ahead=1, nights=2,
                status="confirmed", guest="Ada Guest"):
    check_in = BASE + timedelta(days=days_ahead)
    return {
        "id": booking_id,
        "accommodationId": unit_id,
        "guestName": guest,
        "checkInDate": isoformat_z(check_in),
        "checkOutDate": isoformat_z(check_in + timedelta(days=nights)),
        "status": status,
        "updatedAt": isoformat_z(BASE),
    }


class TestReconciliation(OrchestratorTestCase):
    uses_booking_system = True

    async def asyncSetUp(self):
        self.responses = []
        self.requests = []
        await super().asyncSetUp()
        self.unit, self.lock = await self.make_unit_with_lock("unit-1")
        self.reconciliation = self.orchestrator.reconciliation

    def handle_booking_request(self, request):
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(200, json=[])
        response = self.responses.pop(0)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    async def test_run_with_no_changes_is_recorded(self):
        result = await self.reconciliation.reconcile()

        self.assertTrue(result.success)
        self.assertEqual(result.stats.fetched, 0)
        runs = await self.store.list_reconciliation_runs()
        self.assertEqual(len(runs), 1)
        self.assertEqual(runs[0].status, "success")
        self.assertEqual(runs[0].watermark, result.started_at)

    async def test_first_run_queries_since_epoch_with_basic_auth(self):
        await self.reconciliation.reconcile()

        request = self.requests[0]
        self.assertEqual(request.url.path, "/v1/reservations/updated-since")
        self.assertEqual(parse_timestamp(request.url.params["timestamp"]), EPOCH)
        self.assertEqual(request.url.params["limit"], "100")
        self.assertTrue(request.headers["Authorization"].startswith("Basic "))

    async def test_watermark_advances_after_success(self):
        first = await self.reconciliation.reconcile()
        await self.reconciliation.reconcile()

        since = parse_timestamp(self.requests[1].url.params["timestamp"])
        self.assertEqual(since, first.started_at)

    async def test_creates_unseen_bookings(self):
        self.responses.append([reservation("res-1"), reservation("res-2", unit_id="unit-2")])

        result = await self.reconciliation.reconcile()

        self.assertEqual(result.stats.fetched, 2)
        self.assertEqual(result.stats.created, 2)
        booking = await self.store.get_booking_by_external_id("res-1")
        self.assertEqual(booking.guest_name, "Ada Guest")
        self.assertEqual(
            (await self.pin_jobs.status(booking.id, JobKind.GENERATE_PIN)).state, JobState.PENDING
        )
        self.assertIsNotNone(await self.store.get_unit_by_external_id("unit-2"))

    async def test_updates_changed_bookings(self):
        self.responses.append([reservation("res-1")])
        await self.reconciliation.reconcile()
        self.responses.append([reservation("res-1", guest="Ada Lovelace")])

        result = await self.reconciliation.reconcile()

        self.assertEqual(result.stats.updated, 1)
        booking = await self.store.get_booking_by_external_id("res-1")
        self.assertEqual(booking.guest_name, "Ada Lovelace")

    async def test_unchanged_bookings_are_not_counted(self):
        self.responses.append([reservation("res-1")])
        await self.reconciliation.reconcile()
        self.responses.append([reservation("res-1")])

        result = await self.reconciliation.reconcile()

        self.assertEqual(result.stats.fetched, 1)
        self.assertEqual(result.stats.created, 0)
        self.assertEqual(result.stats.updated, 0)

    async def test_moved_dates_reschedule(self):
        self.responses.append([reservation("res-1", days_ahead=1)])
        await self.reconciliation.reconcile()
        self.responses.append([reservation("res-1", days_ahead=4)])

        await self.reconciliation.reconcile()

        booking = await self.store.get_booking_by_external_id("res-1")
        generate = await self.pin_jobs.status(booking.id, JobKind.GENERATE_PIN)
        expected = booking.check_in_at - timedelta(hours=2)
        self.assertAlmostEqual((generate.run_at - expected).total_seconds(), 0, delta=5)

    async def test_cancelled_upstream_runs_cancellation(self):
        self.responses.append([reservation("res-1")])
        await self.reconciliation.reconcile()
        booking = await self.store.get_booking_by_external_id("res-1")
        await self.queue.run_job(generate_job_id(booking.id))
        self.responses.append([reservation("res-1", status="cancelled")])

        result = await self.reconciliation.reconcile()

        self.assertEqual(result.stats.updated, 1)
        booking = await self.store.get_booking(booking.id)
        self.assertEqual(booking.status, BookingStatus.CANCELLED.value)
        self.assertEqual(await self.store.list_credentials(booking.id, CredentialStatus.ACTIVE), [])
        self.assertEqual(await self.queue.list_jobs(states=[JobState.PENDING]), [])
        audit = await self.store.list_audit(action=RESERVATION_CANCELLED)
        self.assertEqual(audit[0].actor, "system-reconciliation")

    async def test_malformed_booking_is_skipped(self):
        bad = reservation("res-bad")
        bad["checkOutDate"] = bad["checkInDate"]
        self.responses.append([bad, reservation("res-1")])

        result = await self.reconciliation.reconcile()

        self.assertTrue(result.success)
        self.assertEqual(result.stats.created, 1)
        self.assertIsNone(await self.store.get_booking_by_external_id("res-bad"))

    async def test_client_failure_records_failed_run_and_keeps_watermark(self):
        first = await self.reconciliation.reconcile()
        self.responses.extend([httpx.Response(503) for _ in range(4)])

        result = await self.reconciliation.reconcile()

        self.assertFalse(result.success)
        self.assertIn("503", result.error)
        runs = await self.store.list_reconciliation_runs()
        self.assertEqual(runs[0].status, "failed")
        self.assertEqual(runs[0].watermark, first.started_at)
        self.assertEqual(runs[0].errors, 1)

        # The next run picks up from the last successful watermark
        await self.reconciliation.reconcile()
        since = parse_timestamp(self.requests[-1].url.params["timestamp"])
        self.assertEqual(since, first.started_at)

    async def test_client_retries_before_giving_up(self):
        self.responses.extend([httpx.Response(500), httpx.Response(502), [reservation("res-1")]])

        result = await self.reconciliation.reconcile()

        self.assertTrue(result.success)
        self.assertEqual(result.stats.created, 1)
        self.assertEqual(len(self.requests), 3)

    async def test_orphaned_jobs_are_removed(self):
        booking = await self.make_booking(self.unit, external_id="res-gone")
        await self.pin_jobs.schedule_pin_jobs(
            booking.id, self.lock.id, booking.check_in_at, booking.check_out_at
        )
        await self.store.delete_booking(booking.id)

        result = await self.reconciliation.reconcile()

        self.assertEqual(result.stats.orphaned, 2)
        self.assertEqual(await self.queue.list_jobs(), [])

    async def test_overlapping_runs_are_skipped(self):
        gate = asyncio.Event()
        original = self.orchestrator.booking_client.list_changed_since

        async def slow(since):
            await gate.wait()
            return await original(since)

        self.orchestrator.booking_client.list_changed_since = slow

        first = asyncio.create_task(self.reconciliation.reconcile())
        await asyncio.sleep(0)
        second = await self.reconciliation.reconcile()
        gate.set()
        await first

        self.assertTrue(second.skipped)
        self.assertTrue(first.result().success)
        self.assertEqual(len(await self.store.list_reconciliation_runs()), 1)

    async def test_reconcile_now_from_orchestrator(self):
        result = await self.orchestrator.reconcile_now()
        self.assertTrue(result.success)

    async def test_orphaned_failed_jobs_are_removed(self):
        booking = await self.make_booking(self.unit, external_id="res-gone")
        unmapped = await self.store.create_lock("mock", "lock-unmapped")
        await self.pin_jobs.schedule_pin_jobs(
            booking.id, unmapped.id, booking.check_in_at, booking.check_out_at
        )
        await self.queue.run_job(generate_job_id(booking.id))
        dead = await self.queue.get_status(generate_job_id(booking.id))
        self.assertEqual(dead.state, JobState.DEAD_LETTER)
        await self.store.delete_booking(booking.id)

        result = await self.reconciliation.reconcile()

        self.assertEqual(result.stats.orphaned, 2)
        self.assertEqual(await self.queue.list_jobs(), [])
