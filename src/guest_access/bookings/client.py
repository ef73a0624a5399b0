"""External booking system API client."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

import httpx
import pydantic
from pydantic import AliasChoices, Field

from guest_access.bookings.schemas import BookingData
from guest_access.errors import BookingSystemError
from guest_access.timeutil import isoformat_z

logger = logging.getLogger(__name__)


class ExternalBooking(BookingData):
    """A reservation returned by the booking system."""

    updated_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("updated_at", "updatedAt")
    )


def parse_external_bookings(items: list[dict[str, Any]]) -> list[ExternalBooking]:
    """Validate raw reservation dicts, skipping ones that are malformed."""
    bookings: list[ExternalBooking] = []
    for item in items:
        try:
            bookings.append(ExternalBooking.model_validate(item))
        except pydantic.ValidationError as e:
            logger.warning(
                "Skipping invalid reservation %s: %s",
                item.get("id") if isinstance(item, dict) else item,
                e.errors()[0]["msg"] if e.errors() else e,
            )
    return bookings


class BookingSystemClient:
    """Client for the booking system's reservation API.

    Uses HTTP basic auth with the client id and secret. Failed requests
    are retried with exponential backoff before giving up.
    """

    MAX_RETRIES = 3

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 10.0,
        page_limit: int = 100,
        retry_backoff: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(client_id, client_secret)
        self._timeout = timeout
        self.page_limit = page_limit
        self._retry_backoff = retry_backoff
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=self._auth,
                timeout=self._timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        client = await self._get_client()
        last_error: Optional[Exception] = None
        for attempt in range(self.MAX_RETRIES + 1):
            try:
                response = await client.get(path, params=params)
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                if attempt < self.MAX_RETRIES:
                    delay = self._retry_backoff * (2 ** attempt)
                    logger.warning(
                        "Booking system request %s failed (%s), retry %d/%d in %.1fs",
                        path, e, attempt + 1, self.MAX_RETRIES, delay,
                    )
                    await asyncio.sleep(delay)
        raise BookingSystemError(f"Booking system request {path} failed: {last_error}") from last_error

    async def list_changed_since(self, since: datetime) -> list[ExternalBooking]:
        """Get reservations created or changed since a timestamp.

        Args:
            since: Naive UTC watermark

        Returns:
            Valid reservations; malformed entries are skipped

        Raises:
            BookingSystemError: If the API cannot be reached after retries
        """
        data = await self._get(
            "/v1/reservations/updated-since",
            {"timestamp": isoformat_z(since), "limit": self.page_limit},
        )
        if isinstance(data, dict):
            data = data.get("data", data.get("reservations", []))
        if not isinstance(data, list):
            raise BookingSystemError("Unexpected response shape from booking system")

        bookings = parse_external_bookings(data)
        logger.info("Booking system returned %d changed reservation(s)", len(bookings))
        return bookings
