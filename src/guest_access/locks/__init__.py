"""Lock provider adapters."""

from guest_access.config import HttpLockProviderConfig, MockLockProviderConfig, Settings
from guest_access.locks.http import HttpLockProvider
from guest_access.locks.mock import MockLockProvider
from guest_access.locks.provider import LockProvider, PinReference, RevokeResult


def build_lock_provider(settings: Settings) -> LockProvider:
    """Construct the provider selected in settings."""
    config = settings.lock_provider
    if isinstance(config, HttpLockProviderConfig):
        return HttpLockProvider(
            config.base_url,
            config.api_token,
            timeout=settings.lock_provider_timeout_seconds,
        )
    if isinstance(config, MockLockProviderConfig):
        return MockLockProvider()
    raise TypeError(f"Unsupported lock provider config: {config!r}")


__all__ = [
    "LockProvider",
    "PinReference",
    "RevokeResult",
    "MockLockProvider",
    "HttpLockProvider",
    "build_lock_provider",
]
