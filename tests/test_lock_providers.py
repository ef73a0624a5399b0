"""Tests for lock provider adapters."""

import json
import unittest
from datetime import datetime, timedelta

import httpx

from guest_access.config import HttpLockProviderConfig, MockLockProviderConfig
from guest_access.errors import LockProviderError, TransientError, ValidationError
from guest_access.locks import HttpLockProvider, MockLockProvider, build_lock_provider

from helpers import make_settings

VALID_FROM = datetime(2030, 1, 1, 13, 0, 0)
VALID_TO = datetime(2030, 1, 3, 11, 0, 0)


class TestMockLockProvider(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.provider = MockLockProvider()

    async def test_create_and_revoke_are_recorded(self):
        pin = await self.provider.create_timed_pin("lock-1", "123456", VALID_FROM, VALID_TO)
        self.assertIn(pin.provider_ref, self.provider.active_pins)

        result = await self.provider.revoke_pin("lock-1", pin.provider_ref)

        self.assertTrue(result.success)
        self.assertEqual(self.provider.active_pins, {})
        self.assertEqual([call.operation for call in self.provider.calls], ["create", "revoke"])
        self.assertEqual(self.provider.calls[0].valid_to, VALID_TO)

    async def test_fail_next_fails_given_number_of_times(self):
        self.provider.fail_next("create", "lock-1", times=2)

        for _ in range(2):
            with self.assertRaises(LockProviderError):
                await self.provider.create_timed_pin("lock-1", "123456", VALID_FROM, VALID_TO)
        await self.provider.create_timed_pin("lock-1", "123456", VALID_FROM, VALID_TO)

        # Failures are per lock
        await self.provider.create_timed_pin("lock-2", "123456", VALID_FROM, VALID_TO)

    async def test_fail_always_until_cleared(self):
        self.provider.fail_always("revoke", "lock-1")
        for _ in range(3):
            with self.assertRaises(LockProviderError):
                await self.provider.revoke_pin("lock-1", "ref")
        self.provider.clear_failures()
        self.assertTrue((await self.provider.revoke_pin("lock-1", "ref")).success)

    async def test_validates_requests(self):
        cases = [
            ("", "123456", VALID_FROM, VALID_TO),
            ("lock-1", "12ab56", VALID_FROM, VALID_TO),
            ("lock-1", "123456", VALID_TO, VALID_FROM),
        ]
        for args in cases:
            with self.subTest(args=args):
                with self.assertRaises(ValidationError):
                    await self.provider.create_timed_pin(*args)
        with self.assertRaises(ValidationError):
            await self.provider.revoke_pin("lock-1", "")

    def test_provider_errors_are_transient(self):
        self.assertTrue(issubclass(LockProviderError, TransientError))
        self.assertFalse(issubclass(ValidationError, TransientError))


class TestHttpLockProvider(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.requests = []
        self.status_code = 200
        self.provider = HttpLockProvider(
            "http://locks.test/api",
            api_token="token-123",
            transport=httpx.MockTransport(self.handle),
        )

    async def asyncTearDown(self):
        await self.provider.close()

    def handle(self, request):
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code)
        if request.method == "POST":
            return httpx.Response(200, json={"providerRef": "pin-77"})
        return httpx.Response(200, json={"success": True})

    async def test_create_timed_pin(self):
        pin = await self.provider.create_timed_pin("front-door", "482913", VALID_FROM, VALID_TO)

        self.assertEqual(pin.provider_ref, "pin-77")
        request = self.requests[0]
        self.assertEqual(request.url.path, "/api/locks/front-door/pins")
        self.assertEqual(request.headers["Authorization"], "Bearer token-123")
        body = json.loads(request.content)
        self.assertEqual(body, {
            "pin": "482913",
            "validFrom": "2030-01-01T13:00:00Z",
            "validTo": "2030-01-03T11:00:00Z",
        })

    async def test_revoke_pin(self):
        result = await self.provider.revoke_pin("front-door", "pin-77")

        self.assertTrue(result.success)
        self.assertEqual(self.requests[0].method, "DELETE")
        self.assertEqual(self.requests[0].url.path, "/api/locks/front-door/pins/pin-77")

    async def test_http_errors_become_provider_errors(self):
        self.status_code = 500
        with self.assertRaises(LockProviderError):
            await self.provider.create_timed_pin("front-door", "482913", VALID_FROM, VALID_TO)

    async def test_invalid_request_is_not_sent(self):
        with self.assertRaises(ValidationError):
            await self.provider.create_timed_pin(
                "front-door", "482913", VALID_FROM, VALID_FROM - timedelta(hours=1)
            )
        self.assertEqual(self.requests, [])


class TestBuildLockProvider(unittest.TestCase):
    def test_mock_is_default(self):
        provider = build_lock_provider(make_settings())
        self.assertIsInstance(provider, MockLockProvider)

    def test_http_config(self):
        settings = make_settings(
            lock_provider=HttpLockProviderConfig(base_url="http://locks.test", api_token="t"),
            lock_provider_timeout_seconds=5,
        )
        provider = build_lock_provider(settings)
        self.assertIsInstance(provider, HttpLockProvider)
        self.assertEqual(provider.timeout, 5)

    def test_config_discriminator_from_dict(self):
        settings = make_settings(lock_provider={"kind": "http", "base_url": "http://locks.test"})
        self.assertIsInstance(settings.lock_provider, HttpLockProviderConfig)
        settings = make_settings(lock_provider={"kind": "mock"})
        self.assertIsInstance(settings.lock_provider, MockLockProviderConfig)
