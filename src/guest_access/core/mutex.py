"""Short-lived, expiring exclusive locks keyed by booking.

Job processors take one of these before touching a booking's
credentials so generate and revoke runs for the same booking never
interleave. Leases expire on their own so a crashed worker cannot
block a booking forever.
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from guest_access.db.database import Database
from guest_access.db.models import MutexLease
from guest_access.timeutil import utcnow

logger = logging.getLogger(__name__)


def booking_mutex_key(booking_id: int) -> str:
    return f"booking:{booking_id}"


class MutexService(ABC):
    """Mutual-exclusion service contract."""

    @abstractmethod
    async def try_acquire(self, key: str, ttl_seconds: float) -> Optional[str]:
        """Try to take `key` for `ttl_seconds`.

        Returns:
            A release token, or None if someone else holds the key
        """

    @abstractmethod
    async def release(self, key: str, token: str) -> bool:
        """Release `key` if `token` still owns it.

        Returns:
            True if the lease was released, False if it had expired or
            been taken over
        """


class InMemoryMutex(MutexService):
    """Mutex for a single process."""

    def __init__(self):
        # {key: (token, expires_at monotonic)}
        self._leases: dict[str, tuple[str, float]] = {}
        self._guard = asyncio.Lock()

    async def try_acquire(self, key: str, ttl_seconds: float) -> Optional[str]:
        async with self._guard:
            now = time.monotonic()
            held = self._leases.get(key)
            if held is not None and held[1] > now:
                return None
            token = uuid.uuid4().hex
            self._leases[key] = (token, now + ttl_seconds)
            return token

    async def release(self, key: str, token: str) -> bool:
        async with self._guard:
            held = self._leases.get(key)
            if held is None or held[0] != token:
                return False
            del self._leases[key]
            return True


class DatabaseMutex(MutexService):
    """Mutex backed by a lease table, shared by every process on the database."""

    def __init__(self, db: Database):
        self._db = db

    async def try_acquire(self, key: str, ttl_seconds: float) -> Optional[str]:
        now = utcnow()
        token = uuid.uuid4().hex
        try:
            async with self._db.session() as session:
                # Drop an expired lease before claiming
                await session.execute(
                    delete(MutexLease).where(MutexLease.key == key, MutexLease.expires_at <= now)
                )
                session.add(MutexLease(
                    key=key,
                    token=token,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                ))
        except IntegrityError:
            logger.debug("Mutex %s is held elsewhere", key)
            return None
        return token

    async def release(self, key: str, token: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                delete(MutexLease).where(MutexLease.key == key, MutexLease.token == token)
            )
            return result.rowcount > 0
