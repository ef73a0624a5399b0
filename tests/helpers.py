"""Shared fixtures for the test suite."""

import unittest
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx
from sqlalchemy.pool import StaticPool

from guest_access.bookings.client import BookingSystemClient
from guest_access.config import Settings
from guest_access.core.orchestrator import Orchestrator
from guest_access.core.results import JobContext
from guest_access.db.database import Database
from guest_access.db.models import Booking, BookingStatus, Lock, Unit
from guest_access.locks.mock import MockLockProvider
from guest_access.timeutil import isoformat_z, utcnow

WEBHOOK_SECRET = "test-webhook-secret"


def make_settings(**overrides: Any) -> Settings:
    values = {
        "database_url": "sqlite+aiosqlite://",
        "job_backoff_seconds": 0.0,
        "code_hash_rounds": 4,
        "webhook_secret": WEBHOOK_SECRET,
        "booking_api_url": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_database() -> Database:
    """In-memory database shared by every session in a test."""
    return Database("sqlite+aiosqlite://", poolclass=StaticPool)


def make_booking_client(handler: Callable[[httpx.Request], httpx.Response]) -> BookingSystemClient:
    return BookingSystemClient(
        "http://bookings.test",
        "client-id",
        "client-secret",
        retry_backoff=0,
        transport=httpx.MockTransport(handler),
    )


def job_context(job_id: str = "job", attempt: int = 1, max_attempts: int = 3) -> JobContext:
    return JobContext(job_id=job_id, kind="test", attempt=attempt, max_attempts=max_attempts)


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    """Base class wiring a full orchestrator over an in-memory database.

    The APScheduler instance is never started; tests drive jobs with
    `queue.run_job` instead of waiting for timers.
    """

    uses_booking_system = False

    def settings_overrides(self) -> dict[str, Any]:
        return {}

    def handle_booking_request(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[])

    async def asyncSetUp(self):
        self.settings = make_settings(**self.settings_overrides())
        self.db = make_database()
        self.provider = MockLockProvider()
        booking_client = None
        if self.uses_booking_system:
            booking_client = make_booking_client(self.handle_booking_request)
        self.orchestrator = Orchestrator(
            self.settings,
            db=self.db,
            provider=self.provider,
            booking_client=booking_client,
        )
        await self.orchestrator.initialize()
        self.store = self.orchestrator.store
        self.queue = self.orchestrator.queue
        self.pin_jobs = self.orchestrator.pin_jobs

    async def asyncTearDown(self):
        await self.orchestrator.stop()

    async def make_unit_with_lock(self, external_id: str = "unit-1", device_id: str = "lock-1") -> tuple[Unit, Lock]:
        unit = await self.store.get_or_create_unit(external_id)
        lock = await self.store.create_lock("mock", device_id, name=f"Front door {external_id}")
        await self.store.map_lock_to_unit(unit.id, lock.id)
        return unit, lock

    async def make_booking(
        self,
        unit: Unit,
        external_id: str = "res-1",
        check_in: Optional[datetime] = None,
        check_out: Optional[datetime] = None,
        status: BookingStatus = BookingStatus.CONFIRMED,
    ) -> Booking:
        now = utcnow()
        return await self.store.create_booking(
            external_id=external_id,
            unit_id=unit.id,
            check_in_at=check_in or now + timedelta(hours=1),
            check_out_at=check_out or now + timedelta(days=2),
            status=status,
            guest_name="Ada Guest",
        )


def booking_event(event="reservation.created", booking_id="res-100", unit_id="unit-1",
                  check_in=None, check_out=None, status="confirmed", guest="Grace Guest"):
    """Webhook payload as sent by the booking system."""
    now = utcnow()
    return {
        "event": event,
        "timestamp": isoformat_z(now),
        "data": {
            "id": booking_id,
            "accommodationId": unit_id,
            "checkInAt": isoformat_z(check_in or now + timedelta(days=1)),
            "checkOutAt": isoformat_z(check_out or now + timedelta(days=3)),
            "status": status,
            "guestName": guest,
        },
    }
