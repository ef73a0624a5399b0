"""Database models for the guest access service."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from guest_access.timeutil import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class BookingStatus(str, Enum):
    """Status of a booking as reported by the booking system."""

    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    PENDING = "PENDING"


class CredentialStatus(str, Enum):
    """Lifecycle of an access credential."""

    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class JobKind(str, Enum):
    """Kind of queued credential job."""

    GENERATE_PIN = "generate_pin"
    REVOKE_PIN = "revoke_pin"


class JobState(str, Enum):
    """State of a queued job row."""

    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class Unit(Base):
    """A rental unit (listing) in the booking system."""

    __tablename__ = "units"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(100), unique=True)
    name: Mapped[str] = mapped_column(String(200))

    # Relationships
    bookings: Mapped[list["Booking"]] = relationship("Booking", back_populates="unit")
    lock_mapping: Mapped[Optional["UnitLock"]] = relationship(
        "UnitLock", back_populates="unit", uselist=False
    )

    def __repr__(self) -> str:
        return f"<Unit {self.external_id}>"


class Lock(Base):
    """A physical lock device."""

    __tablename__ = "locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vendor: Mapped[str] = mapped_column(String(50))  # e.g., "mock", "http"
    device_id: Mapped[str] = mapped_column(String(200))  # Vendor-side lock identifier
    name: Mapped[str] = mapped_column(String(200), default="")

    # Relationships
    unit_mapping: Mapped[Optional["UnitLock"]] = relationship(
        "UnitLock", back_populates="lock", uselist=False
    )

    __table_args__ = (UniqueConstraint("vendor", "device_id", name="uq_lock_device"),)

    def __repr__(self) -> str:
        return f"<Lock {self.vendor}:{self.device_id}>"


class UnitLock(Base):
    """One-to-one mapping between a unit and the lock that guards it."""

    __tablename__ = "unit_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    unit_id: Mapped[int] = mapped_column(
        ForeignKey("units.id", ondelete="CASCADE"), unique=True
    )
    lock_id: Mapped[int] = mapped_column(
        ForeignKey("locks.id", ondelete="CASCADE"), unique=True
    )

    # Relationships
    unit: Mapped["Unit"] = relationship("Unit", back_populates="lock_mapping")
    lock: Mapped["Lock"] = relationship("Lock", back_populates="unit_mapping")


class Booking(Base):
    """A guest stay at a unit."""

    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(100), unique=True)
    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id", ondelete="CASCADE"))
    guest_name: Mapped[str] = mapped_column(String(255), default="")
    check_in_at: Mapped[datetime] = mapped_column(DateTime)
    check_out_at: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(20), default=BookingStatus.CONFIRMED.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    unit: Mapped["Unit"] = relationship("Unit", back_populates="bookings")
    credentials: Mapped[list["Credential"]] = relationship(
        "Credential", back_populates="booking", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint("check_out_at > check_in_at", name="ck_booking_window"),
    )

    def __repr__(self) -> str:
        return f"<Booking {self.external_id} {self.check_in_at}-{self.check_out_at}>"


class Credential(Base):
    """An access code issued on one lock for one booking."""

    __tablename__ = "credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"))
    lock_id: Mapped[int] = mapped_column(ForeignKey("locks.id", ondelete="CASCADE"))
    code_hash: Mapped[str] = mapped_column(String(100))
    # Short-lived, only for delivery to the guest; cleared on revocation
    plain_code: Mapped[Optional[str]] = mapped_column(String(12), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=CredentialStatus.ACTIVE.value)
    valid_from: Mapped[datetime] = mapped_column(DateTime)
    valid_to: Mapped[datetime] = mapped_column(DateTime)
    provider_ref: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_by: Mapped[str] = mapped_column(String(100), default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    revoked_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Relationships
    booking: Mapped["Booking"] = relationship("Booking", back_populates="credentials")
    lock: Mapped["Lock"] = relationship("Lock")

    __table_args__ = (
        UniqueConstraint("booking_id", "lock_id", name="uq_credential_booking_lock"),
    )

    def __repr__(self) -> str:
        return f"<Credential booking={self.booking_id} lock={self.lock_id} {self.status}>"


class AuditLog(Base):
    """Append-only log of credential mutations and error classifications."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    action: Mapped[str] = mapped_column(String(50))  # CREATE_CREDENTIAL, REVOKE_CREDENTIAL, etc.
    entity: Mapped[str] = mapped_column(String(50))  # Credential, Booking
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    actor: Mapped[str] = mapped_column(String(100))
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog {self.timestamp} {self.action}>"


class ReconciliationRun(Base):
    """One execution of the reconciliation loop."""

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    started_at: Mapped[datetime] = mapped_column(DateTime)
    completed_at: Mapped[datetime] = mapped_column(DateTime)
    # Next run queries changes since this instant
    watermark: Mapped[datetime] = mapped_column(DateTime)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    fetched: Mapped[int] = mapped_column(Integer, default=0)
    created: Mapped[int] = mapped_column(Integer, default=0)
    updated: Mapped[int] = mapped_column(Integer, default=0)
    orphaned: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20))  # success, failed
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ReconciliationRun {self.started_at} {self.status}>"


class QueuedJob(Base):
    """Durable record of a scheduled credential job."""

    __tablename__ = "queued_jobs"

    job_id: Mapped[str] = mapped_column(String(100), primary_key=True)  # e.g., "gen-pin-42"
    kind: Mapped[str] = mapped_column(String(20))
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    run_at: Mapped[datetime] = mapped_column(DateTime)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    backoff_seconds: Mapped[float] = mapped_column(default=2.0)
    state: Mapped[str] = mapped_column(String(20), default=JobState.PENDING.value)
    run_token: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<QueuedJob {self.job_id} {self.state}>"


class MutexLease(Base):
    """Expiring exclusive claim on a key, used to serialize per-booking work."""

    __tablename__ = "mutex_leases"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    token: Mapped[str] = mapped_column(String(50))
    expires_at: Mapped[datetime] = mapped_column(DateTime)
