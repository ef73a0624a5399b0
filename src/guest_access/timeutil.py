"""Timestamp helpers.

All datetimes stored and compared by the service are naive UTC.
"""

from datetime import datetime, timezone
from typing import Union

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Union[str, datetime, None]) -> datetime:
    """Parse an ISO 8601 timestamp (or pass through a datetime) into naive UTC.

    Raises:
        ValueError: If the value is missing or cannot be parsed
    """
    if value is None or value == "":
        raise ValueError("Timestamp is required")
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Invalid timestamp: {value!r}") from e
    return to_naive_utc(parsed)


def isoformat_z(value: datetime) -> str:
    """Render a naive UTC datetime as ISO 8601 with a Z suffix."""
    return to_naive_utc(value).isoformat() + "Z"
