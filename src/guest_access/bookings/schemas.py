"""Booking payloads shared by webhook ingestion and reconciliation."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from guest_access.db.models import BookingStatus
from guest_access.timeutil import to_naive_utc

_CANCELLED_STATUSES = {"CANCELLED", "CANCELED", "NO-SHOW", "NO_SHOW", "DECLINED"}


def normalize_booking_status(value: Any) -> BookingStatus:
    """Map a booking-system status string onto our three statuses."""
    if isinstance(value, BookingStatus):
        return value
    text = str(value or "").strip().upper()
    if text in _CANCELLED_STATUSES:
        return BookingStatus.CANCELLED
    if text == "PENDING":
        return BookingStatus.PENDING
    return BookingStatus.CONFIRMED


class BookingData(BaseModel):
    """A booking as reported by the booking system.

    Accepts the booking system's camelCase field names as well as our own.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    unit_id: str = Field(
        validation_alias=AliasChoices("unit_id", "accommodationId"), min_length=1
    )
    check_in_at: datetime = Field(
        validation_alias=AliasChoices("check_in_at", "checkInAt", "checkInDate")
    )
    check_out_at: datetime = Field(
        validation_alias=AliasChoices("check_out_at", "checkOutAt", "checkOutDate")
    )
    status: BookingStatus = BookingStatus.CONFIRMED
    guest_name: str = Field(
        default="", validation_alias=AliasChoices("guest_name", "guestName")
    )

    @field_validator("id", "unit_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> BookingStatus:
        return normalize_booking_status(value)

    @field_validator("guest_name", mode="before")
    @classmethod
    def _guest_name(cls, value: Any) -> str:
        return value or ""

    @field_validator("check_in_at", "check_out_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @model_validator(mode="after")
    def _check_window(self) -> "BookingData":
        if self.check_out_at <= self.check_in_at:
            raise ValueError("check-out must be after check-in")
        return self


class BookingEventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"


class BookingEvent(BaseModel):
    """A booking lifecycle event, e.g. from the booking system's webhook."""

    event: BookingEventType
    data: BookingData
    timestamp: Optional[datetime] = None

    @field_validator("event", mode="before")
    @classmethod
    def _strip_prefix(cls, value: Any) -> Any:
        # "reservation.created" -> "created"
        if isinstance(value, str):
            return value.rsplit(".", 1)[-1].lower()
        return value
