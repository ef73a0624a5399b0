"""Booking store: CRUD access to bookings, locks, credentials and audit records."""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, desc, select, update

from guest_access.db.database import Database
from guest_access.db.models import (
    AuditLog,
    Booking,
    BookingStatus,
    Credential,
    CredentialStatus,
    Lock,
    ReconciliationRun,
    Unit,
    UnitLock,
)
from guest_access.timeutil import utcnow

logger = logging.getLogger(__name__)


class BookingStore:
    """Async CRUD operations used by the orchestrator.

    Each call runs in its own short transaction. Returned rows are
    detached; relationships are not loaded.
    """

    def __init__(self, db: Database):
        self._db = db

    # Units and locks

    async def get_unit_by_external_id(self, external_id: str) -> Optional[Unit]:
        async with self._db.session() as session:
            result = await session.execute(select(Unit).where(Unit.external_id == external_id))
            return result.scalar_one_or_none()

    async def get_or_create_unit(self, external_id: str, name: Optional[str] = None) -> Unit:
        """Return the unit for an external id, creating it on first sight."""
        async with self._db.session() as session:
            result = await session.execute(select(Unit).where(Unit.external_id == external_id))
            unit = result.scalar_one_or_none()
            if unit is None:
                logger.info("Unit %s not seen before, creating it", external_id)
                unit = Unit(external_id=external_id, name=name or f"Unit {external_id}")
                session.add(unit)
                await session.flush()
            return unit

    async def create_lock(self, vendor: str, device_id: str, name: str = "") -> Lock:
        async with self._db.session() as session:
            lock = Lock(vendor=vendor, device_id=device_id, name=name)
            session.add(lock)
            await session.flush()
            return lock

    async def get_lock(self, lock_id: int) -> Optional[Lock]:
        async with self._db.session() as session:
            return await session.get(Lock, lock_id)

    async def map_lock_to_unit(self, unit_id: int, lock_id: int) -> UnitLock:
        async with self._db.session() as session:
            mapping = UnitLock(unit_id=unit_id, lock_id=lock_id)
            session.add(mapping)
            await session.flush()
            return mapping

    async def list_locks_for_unit(self, unit_id: int) -> list[Lock]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Lock).join(UnitLock, UnitLock.lock_id == Lock.id).where(UnitLock.unit_id == unit_id)
            )
            return list(result.scalars().all())

    async def is_lock_mapped_to_unit(self, lock_id: int, unit_id: int) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                select(UnitLock.id).where(UnitLock.lock_id == lock_id, UnitLock.unit_id == unit_id)
            )
            return result.scalar_one_or_none() is not None

    # Bookings

    async def get_booking(self, booking_id: int) -> Optional[Booking]:
        async with self._db.session() as session:
            return await session.get(Booking, booking_id)

    async def get_booking_by_external_id(self, external_id: str) -> Optional[Booking]:
        async with self._db.session() as session:
            result = await session.execute(select(Booking).where(Booking.external_id == external_id))
            return result.scalar_one_or_none()

    async def create_booking(
        self,
        external_id: str,
        unit_id: int,
        check_in_at: datetime,
        check_out_at: datetime,
        status: BookingStatus = BookingStatus.CONFIRMED,
        guest_name: str = "",
    ) -> Booking:
        async with self._db.session() as session:
            booking = Booking(
                external_id=external_id,
                unit_id=unit_id,
                guest_name=guest_name,
                check_in_at=check_in_at,
                check_out_at=check_out_at,
                status=BookingStatus(status).value,
            )
            session.add(booking)
            await session.flush()
            return booking

    async def update_booking(self, booking_id: int, **fields: Any) -> Optional[Booking]:
        """Update the given columns on a booking. Returns None if it does not exist."""
        if "status" in fields:
            fields["status"] = BookingStatus(fields["status"]).value
        async with self._db.session() as session:
            booking = await session.get(Booking, booking_id)
            if booking is None:
                return None
            for name, value in fields.items():
                setattr(booking, name, value)
            await session.flush()
            return booking

    async def delete_booking(self, booking_id: int) -> bool:
        async with self._db.session() as session:
            result = await session.execute(delete(Booking).where(Booking.id == booking_id))
            return result.rowcount > 0

    # Credentials

    async def get_credential(self, booking_id: int, lock_id: int) -> Optional[Credential]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Credential).where(
                    Credential.booking_id == booking_id, Credential.lock_id == lock_id
                )
            )
            return result.scalar_one_or_none()

    async def list_credentials(
        self, booking_id: int, status: Optional[CredentialStatus] = None
    ) -> list[Credential]:
        async with self._db.session() as session:
            query = select(Credential).where(Credential.booking_id == booking_id)
            if status is not None:
                query = query.where(Credential.status == CredentialStatus(status).value)
            result = await session.execute(query.order_by(Credential.id))
            return list(result.scalars().all())

    async def upsert_credential(
        self,
        booking_id: int,
        lock_id: int,
        code_hash: str,
        plain_code: str,
        valid_from: datetime,
        valid_to: datetime,
        provider_ref: Optional[str],
        created_by: str,
    ) -> Credential:
        """Create or overwrite the credential for (booking, lock).

        An existing row, revoked or not, is reused: its code, validity
        and provider reference are replaced and any revocation is cleared.
        """
        async with self._db.session() as session:
            result = await session.execute(
                select(Credential).where(
                    Credential.booking_id == booking_id, Credential.lock_id == lock_id
                )
            )
            credential = result.scalar_one_or_none()
            if credential is None:
                credential = Credential(booking_id=booking_id, lock_id=lock_id)
                session.add(credential)
            credential.code_hash = code_hash
            credential.plain_code = plain_code
            credential.status = CredentialStatus.ACTIVE.value
            credential.valid_from = valid_from
            credential.valid_to = valid_to
            credential.provider_ref = provider_ref
            credential.created_by = created_by
            credential.revoked_at = None
            credential.revoked_by = None
            await session.flush()
            return credential

    async def mark_credential_revoked(
        self, credential_id: int, revoked_by: str, revoked_at: Optional[datetime] = None
    ) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                update(Credential)
                .where(
                    Credential.id == credential_id,
                    Credential.status == CredentialStatus.ACTIVE.value,
                )
                .values(
                    status=CredentialStatus.REVOKED.value,
                    revoked_at=revoked_at or utcnow(),
                    revoked_by=revoked_by,
                    plain_code=None,
                )
            )
            return result.rowcount > 0

    async def revoke_active_credentials(self, booking_id: int, revoked_by: str) -> int:
        """Bulk-mark every ACTIVE credential of a booking as REVOKED. Returns the count."""
        async with self._db.session() as session:
            result = await session.execute(
                update(Credential)
                .where(
                    Credential.booking_id == booking_id,
                    Credential.status == CredentialStatus.ACTIVE.value,
                )
                .values(
                    status=CredentialStatus.REVOKED.value,
                    revoked_at=utcnow(),
                    revoked_by=revoked_by,
                    plain_code=None,
                )
            )
            return result.rowcount

    # Audit log

    async def add_audit(
        self,
        action: str,
        entity: str,
        entity_id: Any,
        actor: str,
        details: Optional[dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> AuditLog:
        async with self._db.session() as session:
            entry = AuditLog(
                action=action,
                entity=entity,
                entity_id=str(entity_id) if entity_id is not None else None,
                actor=actor,
                details=details or {},
                success=success,
                error_message=error_message,
            )
            session.add(entry)
            await session.flush()
            return entry

    async def list_audit(
        self, entity_id: Optional[Any] = None, action: Optional[str] = None, limit: int = 100
    ) -> list[AuditLog]:
        async with self._db.session() as session:
            query = select(AuditLog)
            if entity_id is not None:
                query = query.where(AuditLog.entity_id == str(entity_id))
            if action is not None:
                query = query.where(AuditLog.action == action)
            result = await session.execute(query.order_by(desc(AuditLog.id)).limit(limit))
            return list(result.scalars().all())

    # Reconciliation runs

    async def last_successful_run(self) -> Optional[ReconciliationRun]:
        async with self._db.session() as session:
            result = await session.execute(
                select(ReconciliationRun)
                .where(ReconciliationRun.status == "success")
                .order_by(desc(ReconciliationRun.id))
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def add_reconciliation_run(self, **fields: Any) -> ReconciliationRun:
        async with self._db.session() as session:
            run = ReconciliationRun(**fields)
            session.add(run)
            await session.flush()
            return run

    async def list_reconciliation_runs(self, limit: int = 10) -> list[ReconciliationRun]:
        async with self._db.session() as session:
            result = await session.execute(
                select(ReconciliationRun).order_by(desc(ReconciliationRun.id)).limit(limit)
            )
            return list(result.scalars().all())
