"""Configuration for the guest access service."""

from datetime import timedelta
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MutexBackend(str, Enum):
    """Where booking-level mutual exclusion leases live."""

    DATABASE = "database"
    MEMORY = "memory"


class MockLockProviderConfig(BaseModel):
    """Recording provider for development; no hardware is touched."""

    kind: Literal["mock"] = "mock"


class HttpLockProviderConfig(BaseModel):
    """Generic REST lock gateway."""

    kind: Literal["http"] = "http"
    base_url: str
    api_token: str = ""


LockProviderConfig = Annotated[
    Union[MockLockProviderConfig, HttpLockProviderConfig],
    Field(discriminator="kind"),
]


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GUEST_ACCESS_",
        env_nested_delimiter="__",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./guest_access.db"

    # Credential scheduling
    pin_lead_hours: float = 2.0  # Generate codes this long before check-in
    code_length: int = 6
    code_hash_rounds: int = 10

    # Job queue retry settings
    job_max_attempts: int = 3
    job_backoff_seconds: float = 2.0

    # Booking-level mutual exclusion
    mutex_backend: MutexBackend = MutexBackend.DATABASE
    mutex_ttl_seconds: int = 60

    # Lock provider
    lock_provider: LockProviderConfig = Field(default_factory=MockLockProviderConfig)
    lock_provider_timeout_seconds: float = 15.0

    # External booking system
    booking_api_url: str = ""
    booking_api_client_id: str = ""
    booking_api_client_secret: str = ""
    booking_api_page_limit: int = 100

    # Reconciliation with the booking system
    reconciliation_interval_minutes: int = 30

    # Webhook ingestion
    webhook_secret: str = ""
    webhook_verify_signatures: bool = True

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8099
    debug: bool = False

    @property
    def pin_lead(self) -> timedelta:
        return timedelta(hours=self.pin_lead_hours)
