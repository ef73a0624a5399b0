"""Job outcomes and retry policy.

Job processors return one of these instead of raising, and the queue
decides from the tag whether to remove, re-arm or park the job.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class FailureReason(str, Enum):
    """Why a job failed for good."""

    INVALID_PAYLOAD = "invalid_payload"
    NOT_FOUND = "not_found"
    BOOKING_CANCELLED = "booking_cancelled"
    LOCK_NOT_MAPPED = "lock_not_mapped"  # Configuration problem, dead-lettered
    RETRIES_EXHAUSTED = "retries_exhausted"


@dataclass
class JobSuccess:
    """The job did its work."""

    data: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return True


@dataclass
class RetriableFailure:
    """Transient failure; the queue should try again later."""

    error: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return False


@dataclass
class TerminalFailure:
    """Failure that retrying will not fix."""

    reason: FailureReason
    error: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return False

    @property
    def dead_letter(self) -> bool:
        return self.reason == FailureReason.LOCK_NOT_MAPPED


JobResult = Union[JobSuccess, RetriableFailure, TerminalFailure]


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how far apart a job is retried."""

    max_attempts: int = 3
    backoff_seconds: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds cannot be negative")

    def delay_after(self, attempt: int) -> float:
        """Exponential backoff before the attempt following `attempt`."""
        return self.backoff_seconds * (2 ** max(0, attempt - 1))


@dataclass
class JobContext:
    """Execution details handed to a job processor."""

    job_id: str
    kind: str
    attempt: int  # 1-based
    max_attempts: int

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts
