"""Recording lock provider for development and tests."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from guest_access.errors import LockProviderError
from guest_access.locks.provider import (
    LockProvider,
    PinReference,
    RevokeResult,
    validate_pin_request,
    validate_revoke_request,
)

logger = logging.getLogger(__name__)


@dataclass
class ProviderCall:
    """A call recorded by the mock provider."""

    operation: str  # "create" or "revoke"
    lock_id: str
    code: Optional[str] = None
    provider_ref: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None


class MockLockProvider(LockProvider):
    """Provider that touches no hardware.

    Every call is recorded in `calls`. Failures can be primed per
    operation and lock, either a number of times or permanently.
    """

    name = "mock"

    def __init__(self):
        self.calls: list[ProviderCall] = []
        self.active_pins: dict[str, str] = {}  # provider_ref -> lock_id
        # {(operation, lock_id): remaining failures, -1 for always}
        self._failures: dict[tuple[str, str], int] = {}

    def fail_next(self, operation: str, lock_id: str, times: int = 1) -> None:
        """Make the next `times` calls of `operation` on `lock_id` raise."""
        self._failures[(operation, lock_id)] = times

    def fail_always(self, operation: str, lock_id: str) -> None:
        self._failures[(operation, lock_id)] = -1

    def clear_failures(self) -> None:
        self._failures.clear()

    def _maybe_fail(self, operation: str, lock_id: str) -> None:
        remaining = self._failures.get((operation, lock_id), 0)
        if remaining == 0:
            return
        if remaining > 0:
            self._failures[(operation, lock_id)] = remaining - 1
        raise LockProviderError(f"Simulated {operation} failure on lock {lock_id}")

    def calls_for(self, operation: str) -> list[ProviderCall]:
        return [call for call in self.calls if call.operation == operation]

    async def create_timed_pin(
        self, lock_id: str, code: str, valid_from: datetime, valid_to: datetime
    ) -> PinReference:
        validate_pin_request(lock_id, code, valid_from, valid_to)
        self.calls.append(ProviderCall(
            operation="create",
            lock_id=lock_id,
            code=code,
            valid_from=valid_from,
            valid_to=valid_to,
        ))
        self._maybe_fail("create", lock_id)

        provider_ref = str(uuid.uuid4())
        self.active_pins[provider_ref] = lock_id
        logger.info(
            "[mock] PIN created on lock %s valid %s to %s (ref=%s)",
            lock_id, valid_from.isoformat(), valid_to.isoformat(), provider_ref,
        )
        return PinReference(provider_ref=provider_ref)

    async def revoke_pin(self, lock_id: str, provider_ref: str) -> RevokeResult:
        validate_revoke_request(lock_id, provider_ref)
        self.calls.append(ProviderCall(operation="revoke", lock_id=lock_id, provider_ref=provider_ref))
        self._maybe_fail("revoke", lock_id)

        self.active_pins.pop(provider_ref, None)
        logger.info("[mock] PIN revoked on lock %s (ref=%s)", lock_id, provider_ref)
        return RevokeResult(success=True)
