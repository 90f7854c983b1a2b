#!/usr/bin/env python3
"""
Tests for the sliding-window rate limiter.

Usage:
    python -m pytest tests/unit/notification/test_rate_limiter.py -v
"""

import unittest
from unittest.mock import AsyncMock

from core.config_loader import RateLimitConfig, RateWindow
from notification.exceptions import StoreError
from notification.models import NotificationType
from notification.rate_limiter import RateLimiter, user_key
from notification.store import MemoryStore
from tests import FakeClock


class TestWindowLimit(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.store = MemoryStore(clock=self.clock)
        self.limiter = RateLimiter(self.store, clock=self.clock)

    async def test_fourth_hit_in_window_is_rejected(self):
        results = [await self.limiter.check_window_limit('k', 60, 3) for _ in range(4)]
        self.assertEqual(results, [True, True, True, False])

    async def test_window_boundary(self):
        for _ in range(3):
            self.assertTrue(await self.limiter.check_window_limit('k', 60, 3))

        self.clock.advance(59.9)
        self.assertFalse(await self.limiter.check_window_limit('k', 60, 3))

        self.clock.advance(0.1)
        self.assertTrue(await self.limiter.check_window_limit('k', 60, 3))

    async def test_store_failure_fails_open(self):
        store = MemoryStore(clock=self.clock)
        store.sliding_window_hit = AsyncMock(side_effect=StoreError("store unavailable"))
        limiter = RateLimiter(store, clock=self.clock)

        self.assertTrue(await limiter.check_window_limit('k', 60, 1))
        self.assertTrue(await limiter.check_limit('user-1', NotificationType.PROMOTIONAL))


class TestLayeredLimits(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.store = MemoryStore(clock=self.clock)
        config = RateLimitConfig(
            per_user=RateWindow(window_seconds=3600, max=5),
            per_channel={'sms': RateWindow(window_seconds=3600, max=1)},
        )
        self.limiter = RateLimiter(self.store, config, clock=self.clock)

    async def test_promotional_type_limited_to_two_per_day(self):
        checks = [
            await self.limiter.check_limit('user-1', NotificationType.PROMOTIONAL)
            for _ in range(3)
        ]
        self.assertEqual(checks, [True, True, False])

        # other types still pass
        self.assertTrue(await self.limiter.check_limit('user-1', NotificationType.BALANCE_UPDATE))

    async def test_channel_limit(self):
        self.assertTrue(await self.limiter.check_limit('user-1', NotificationType.BALANCE_UPDATE, 'sms'))
        self.assertFalse(await self.limiter.check_limit('user-1', NotificationType.BALANCE_UPDATE, 'sms'))
        self.assertTrue(await self.limiter.check_limit('user-1', NotificationType.BALANCE_UPDATE, 'email'))

    async def test_user_limit_rejects_before_other_layers(self):
        for _ in range(5):
            self.assertTrue(await self.limiter.check_limit('user-1', NotificationType.BALANCE_UPDATE))

        self.assertFalse(await self.limiter.check_limit('user-1', NotificationType.BALANCE_UPDATE))
        self.assertTrue(await self.limiter.check_limit('user-2', NotificationType.BALANCE_UPDATE))

    async def test_remaining_limit(self):
        await self.limiter.check_limit('user-1', NotificationType.BALANCE_UPDATE)
        self.clock.advance(10)
        await self.limiter.check_limit('user-1', NotificationType.BALANCE_UPDATE)

        remaining = await self.limiter.get_remaining_limit('user-1')

        self.assertEqual(remaining['remaining'], 3)
        self.assertAlmostEqual(remaining['reset_at'], self.clock.start + 3600, places=3)

    async def test_remaining_limit_for_fresh_user(self):
        remaining = await self.limiter.get_remaining_limit('nobody')
        self.assertEqual(remaining['remaining'], 5)

    async def test_usage_reports_each_channel(self):
        await self.limiter.check_limit('user-1', NotificationType.BALANCE_UPDATE, 'sms')

        usage = await self.limiter.get_usage('user-1')

        self.assertEqual(usage['user']['used'], 1)
        self.assertEqual(usage['channels']['sms'], {'used': 1, 'limit': 1, 'window': 3600})

    async def test_reset_clears_every_window(self):
        await self.limiter.check_limit('user-1', NotificationType.PROMOTIONAL, 'sms')

        await self.limiter.reset('user-1')

        self.assertEqual(await self.store.zcard(user_key('user-1')), 0)
        self.assertTrue(await self.limiter.check_limit('user-1', NotificationType.PROMOTIONAL, 'sms'))


if __name__ == '__main__':
    unittest.main()
