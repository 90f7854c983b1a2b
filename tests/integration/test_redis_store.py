#!/usr/bin/env python3
"""
Integration Test: store, rate limiter and queue against a real Redis

Usage:
    REDIS_URL=redis://localhost:6379/1 \
    python -m pytest tests/integration/test_redis_store.py -v -m redis

The tests are skipped when REDIS_URL is unset or the server does not
answer a ping. Every key is written under a per-run prefix and removed
afterwards; point REDIS_URL at a database you can spare all the same.
"""

import unittest
import uuid

import pytest

from core.config_loader import RateLimitConfig, RateWindow
from notification.models import (
    DeliveryResult,
    NotificationEvent,
    NotificationMessage,
    NotificationPriority,
    NotificationType,
    QueueJob,
)
from notification.queue import PriorityJobQueue, QueueDispatcher
from notification.rate_limiter import RateLimiter
from notification.store import RedisStore
from tests import TEST_REDIS_URL, make_event


@pytest.mark.redis
@unittest.skipUnless(TEST_REDIS_URL, "REDIS_URL not set")
class TestRedisStore(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.store = RedisStore.from_url(TEST_REDIS_URL)
        if not await self.store.ping():
            await self.store.close()
            self.skipTest(f"Redis not reachable at {TEST_REDIS_URL}")
        self.prefix = f"test:{uuid.uuid4().hex[:8]}"

    async def asyncTearDown(self):
        keys = await self.store.scan_keys(f"{self.prefix}*")
        if keys:
            await self.store.delete(*keys)
        await self.store.close()

    async def test_basic_operations(self):
        key = f"{self.prefix}:k"
        await self.store.set(key, 'v', ttl=60)
        self.assertEqual(await self.store.get(key), 'v')

        await self.store.hincrby(f"{self.prefix}:h", 'sent', 2)
        self.assertEqual(await self.store.hgetall(f"{self.prefix}:h"), {'sent': '2'})

        await self.store.zadd(f"{self.prefix}:z", {'a': 1, 'b': 2})
        self.assertEqual(await self.store.zpopmin(f"{self.prefix}:z"), [('a', 1.0)])

        self.assertEqual(await self.store.zpopmin_move(f"{self.prefix}:z", f"{self.prefix}:active", 7), 'b')
        self.assertIsNone(await self.store.zpopmin_move(f"{self.prefix}:z", f"{self.prefix}:active", 8))
        self.assertTrue(await self.store.zmove(f"{self.prefix}:active", f"{self.prefix}:z", 'b', 1))
        self.assertFalse(await self.store.zmove(f"{self.prefix}:active", f"{self.prefix}:z", 'b', 1))

    async def test_sliding_window_script(self):
        key = f"{self.prefix}:window"
        accepted = [
            (await self.store.sliding_window_hit(key, 1000.0 + i, 60, 3, f"m{i}"))[0]
            for i in range(4)
        ]
        self.assertEqual(accepted, [True, True, True, False])

        # the first hit has aged out at t0 + 60
        accepted, count = await self.store.sliding_window_hit(key, 1060.0, 60, 3, 'm-late')
        self.assertTrue(accepted)
        self.assertEqual(count, 3)

    async def test_rate_limiter_over_redis(self):
        config = RateLimitConfig(per_user=RateWindow(window_seconds=60, max=2), per_channel={})
        limiter = RateLimiter(self.store, config)
        user_id = f"{self.prefix}-user"

        checks = [await limiter.check_limit(user_id, NotificationType.BALANCE_UPDATE) for _ in range(3)]
        await limiter.reset(user_id)

        self.assertEqual(checks, [True, True, False])

    async def test_queue_round_trip(self):
        names = {p.value: f"{self.prefix}:{p.value}" for p in NotificationPriority}
        queue = PriorityJobQueue(self.store, queue_names=names)
        event = NotificationEvent.model_validate(make_event())
        job = QueueJob(
            id=f"{self.prefix}-job",
            event=event,
            channel='inApp',
            message=NotificationMessage(
                event_id=event.id, user_id=event.user_id, channel='inApp', type=event.type, body="hi",
            ),
            priority=NotificationPriority.HIGH,
        )
        await queue.enqueue(job)

        handled = []

        async def handler(claimed):
            handled.append(claimed.id)
            return DeliveryResult(success=True)

        await QueueDispatcher(queue, handler, poll_interval_seconds=0.01).run(burst=True)

        self.assertEqual(handled, [job.id])
        counts = await queue.get_counts(NotificationPriority.HIGH)
        self.assertEqual(counts['completed'], 1)
        self.assertEqual(counts['waiting'], 0)
        await self.store.delete(f"notif:job:{job.id}")


if __name__ == '__main__':
    unittest.main()
