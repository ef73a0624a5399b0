"""Tests for booking mutual exclusion."""

import asyncio
import unittest

from helpers import make_database

from guest_access.core.mutex import DatabaseMutex, InMemoryMutex, booking_mutex_key


class MutexContract:
    """Behaviour shared by every mutex implementation."""

    async def make_mutex(self):
        raise NotImplementedError

    async def asyncSetUp(self):
        self.mutex = await self.make_mutex()

    async def test_acquire_and_release(self):
        token = await self.mutex.try_acquire("booking:1", 60)
        self.assertIsNotNone(token)
        self.assertTrue(await self.mutex.release("booking:1", token))

    async def test_second_acquire_is_refused(self):
        token = await self.mutex.try_acquire("booking:1", 60)
        self.assertIsNotNone(token)
        self.assertIsNone(await self.mutex.try_acquire("booking:1", 60))

    async def test_keys_are_independent(self):
        self.assertIsNotNone(await self.mutex.try_acquire("booking:1", 60))
        self.assertIsNotNone(await self.mutex.try_acquire("booking:2", 60))

    async def test_reacquire_after_release(self):
        token = await self.mutex.try_acquire("booking:1", 60)
        await self.mutex.release("booking:1", token)
        self.assertIsNotNone(await self.mutex.try_acquire("booking:1", 60))

    async def test_release_with_wrong_token_is_ignored(self):
        token = await self.mutex.try_acquire("booking:1", 60)
        self.assertFalse(await self.mutex.release("booking:1", "not-the-token"))
        self.assertIsNone(await self.mutex.try_acquire("booking:1", 60))
        self.assertTrue(await self.mutex.release("booking:1", token))

    async def test_expired_lease_can_be_taken(self):
        stale = await self.mutex.try_acquire("booking:1", 0.05)
        await asyncio.sleep(0.1)

        token = await self.mutex.try_acquire("booking:1", 60)
        self.assertIsNotNone(token)
        # The old holder can no longer release it
        self.assertFalse(await self.mutex.release("booking:1", stale))


class TestInMemoryMutex(MutexContract, unittest.IsolatedAsyncioTestCase):
    async def make_mutex(self):
        return InMemoryMutex()


class TestDatabaseMutex(MutexContract, unittest.IsolatedAsyncioTestCase):
    async def make_mutex(self):
        self.db = make_database()
        await self.db.init()
        return DatabaseMutex(self.db)

    async def asyncTearDown(self):
        await self.db.dispose()

    async def test_shared_between_instances(self):
        """Two services on the same database exclude each other."""
        other = DatabaseMutex(self.db)
        token = await self.mutex.try_acquire("booking:1", 60)
        self.assertIsNone(await other.try_acquire("booking:1", 60))
        await self.mutex.release("booking:1", token)
        self.assertIsNotNone(await other.try_acquire("booking:1", 60))


class TestBookingMutexKey(unittest.TestCase):
    def test_key_format(self):
        self.assertEqual(booking_mutex_key(12), "booking:12")
