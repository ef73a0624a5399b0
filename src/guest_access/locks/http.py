"""REST lock gateway client."""

import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from guest_access.errors import LockProviderError
from guest_access.locks.provider import (
    LockProvider,
    PinReference,
    RevokeResult,
    validate_pin_request,
    validate_revoke_request,
)
from guest_access.timeutil import isoformat_z

logger = logging.getLogger(__name__)


class HttpLockProvider(LockProvider):
    """Provider talking to a lock gateway over HTTP.

    The gateway exposes:
        POST   /locks/{lock_id}/pins                  -> {"providerRef": "..."}
        DELETE /locks/{lock_id}/pins/{provider_ref}   -> {"success": true}
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the provider.

        Args:
            base_url: Gateway URL (e.g., "https://locks.example.com/api")
            api_token: Bearer token, if the gateway requires one
            timeout: Request timeout in seconds
            transport: Custom httpx transport
        """
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._client = httpx.AsyncClient(
                timeout=self.timeout, headers=headers, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(method, f"{self.base_url}{path}", **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise LockProviderError(f"Lock gateway {method} {path} failed: {e}") from e
        return response.json() if response.content else {}

    async def create_timed_pin(
        self, lock_id: str, code: str, valid_from: datetime, valid_to: datetime
    ) -> PinReference:
        validate_pin_request(lock_id, code, valid_from, valid_to)
        data = await self._request(
            "POST",
            f"/locks/{lock_id}/pins",
            json={
                "pin": code,
                "validFrom": isoformat_z(valid_from),
                "validTo": isoformat_z(valid_to),
            },
        )
        provider_ref = data.get("providerRef")
        if not provider_ref:
            raise LockProviderError(f"Lock gateway returned no providerRef for lock {lock_id}")
        logger.info("PIN created on lock %s (ref=%s)", lock_id, provider_ref)
        return PinReference(provider_ref=str(provider_ref))

    async def revoke_pin(self, lock_id: str, provider_ref: str) -> RevokeResult:
        validate_revoke_request(lock_id, provider_ref)
        data = await self._request("DELETE", f"/locks/{lock_id}/pins/{provider_ref}")
        success = bool(data.get("success", True))
        logger.info("PIN revoke on lock %s (ref=%s): success=%s", lock_id, provider_ref, success)
        return RevokeResult(success=success)
