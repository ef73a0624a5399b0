"""Lock provider contract.

Every lock vendor is wrapped in an adapter exposing two operations:
create a time-bounded PIN and revoke it again.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from guest_access.errors import ValidationError


@dataclass
class PinReference:
    """Vendor-side handle for a created PIN."""

    provider_ref: str


@dataclass
class RevokeResult:
    """Outcome of a revocation request."""

    success: bool


class LockProvider(ABC):
    """Adapter for one lock vendor."""

    name: str = "abstract"

    @abstractmethod
    async def create_timed_pin(
        self, lock_id: str, code: str, valid_from: datetime, valid_to: datetime
    ) -> PinReference:
        """Create a PIN valid between `valid_from` and `valid_to`.

        Raises:
            ValidationError: On invalid arguments
            LockProviderError: On vendor failure
        """

    @abstractmethod
    async def revoke_pin(self, lock_id: str, provider_ref: str) -> RevokeResult:
        """Revoke a PIN by the reference returned from `create_timed_pin`.

        Raises:
            ValidationError: On invalid arguments
            LockProviderError: On vendor failure
        """

    async def close(self) -> None:
        """Release any held connections."""


def validate_pin_request(lock_id: str, code: str, valid_from: datetime, valid_to: datetime) -> None:
    """Shared argument checks for `create_timed_pin` implementations."""
    if not lock_id:
        raise ValidationError("lock_id is required")
    if not code or not code.isdigit():
        raise ValidationError("PIN must be a string of digits")
    if not isinstance(valid_from, datetime) or not isinstance(valid_to, datetime):
        raise ValidationError("valid_from and valid_to must be datetimes")
    if valid_from >= valid_to:
        raise ValidationError("valid_from must be before valid_to")


def validate_revoke_request(lock_id: str, provider_ref: str) -> None:
    if not lock_id:
        raise ValidationError("lock_id is required")
    if not provider_ref:
        raise ValidationError("provider_ref is required")
