#!/usr/bin/env python3
"""
Tests for PriorityJobQueue and QueueDispatcher.

Usage:
    python -m pytest tests/unit/notification/test_queue.py -v
"""

import asyncio
import unittest

from notification.exceptions import StoreError
from notification.models import (
    DeliveryResult,
    NotificationEvent,
    NotificationMessage,
    NotificationPriority,
    QueueJob,
)
from notification.queue import JOB_PREFIX, PriorityJobQueue, QueueDispatcher, job_key
from notification.store import MemoryStore
from tests import FakeClock, make_event


def make_job(job_id, priority=NotificationPriority.NORMAL, max_attempts=3):
    event = NotificationEvent.model_validate(make_event(id=f"evt-{job_id}"))
    return QueueJob(
        id=job_id,
        event=event,
        channel='inApp',
        message=NotificationMessage(
            event_id=event.id, user_id=event.user_id, channel='inApp', type=event.type, body="hello",
        ),
        priority=priority,
        max_attempts=max_attempts,
    )


class _FlakyStore(MemoryStore):
    """MemoryStore whose next job payload write fails once when armed."""

    fail_next_job_write = False

    async def set(self, key, value, ttl=None):
        if self.fail_next_job_write and key.startswith(JOB_PREFIX):
            self.fail_next_job_write = False
            raise StoreError("connection reset")
        await super().set(key, value, ttl=ttl)


class TestPriorityJobQueue(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.store = MemoryStore(clock=self.clock)
        self.queue = PriorityJobQueue(self.store, retry_delay_seconds=1.0, clock=self.clock)

    async def test_fifo_within_a_queue(self):
        for job_id in ('a', 'b', 'c'):
            await self.queue.enqueue(make_job(job_id))

        popped = [(await self.queue.pop(NotificationPriority.NORMAL)).id for _ in range(3)]

        self.assertEqual(popped, ['a', 'b', 'c'])
        self.assertIsNone(await self.queue.pop(NotificationPriority.NORMAL))

    async def test_pop_claims_job(self):
        await self.queue.enqueue(make_job('a'))

        job = await self.queue.pop(NotificationPriority.NORMAL)

        self.assertEqual(job.attempts, 1)
        counts = await self.queue.get_counts(NotificationPriority.NORMAL)
        self.assertEqual(counts['waiting'], 0)
        self.assertEqual(counts['active'], 1)

    async def test_complete_removes_payload(self):
        await self.queue.enqueue(make_job('a'))
        job = await self.queue.pop(NotificationPriority.NORMAL)

        await self.queue.complete(job)

        self.assertIsNone(await self.store.get(job_key('a')))
        counts = await self.queue.get_counts(NotificationPriority.NORMAL)
        self.assertEqual(counts['active'], 0)
        self.assertEqual(counts['completed'], 1)

    async def test_delayed_job_invisible_until_due(self):
        await self.queue.enqueue(make_job('later'), delay=30)

        self.assertIsNone(await self.queue.pop(NotificationPriority.NORMAL))
        self.assertFalse(await self.queue.has_ready_jobs(NotificationPriority.NORMAL))

        self.clock.advance(30)
        self.assertTrue(await self.queue.has_ready_jobs(NotificationPriority.NORMAL))
        self.assertEqual((await self.queue.pop(NotificationPriority.NORMAL)).id, 'later')

    async def test_retry_backoff_then_terminal_failure(self):
        await self.queue.enqueue(make_job('a', max_attempts=3))
        normal = NotificationPriority.NORMAL

        job = await self.queue.pop(normal)
        self.assertTrue(await self.queue.fail(job, "network error"))
        # first retry after 1s
        self.clock.advance(0.9)
        self.assertIsNone(await self.queue.pop(normal))
        self.clock.advance(0.1)
        job = await self.queue.pop(normal)
        self.assertEqual(job.attempts, 2)

        self.assertTrue(await self.queue.fail(job, "network error"))
        # second retry after 2s
        self.clock.advance(1.9)
        self.assertIsNone(await self.queue.pop(normal))
        self.clock.advance(0.1)
        job = await self.queue.pop(normal)
        self.assertEqual(job.attempts, 3)

        self.assertFalse(await self.queue.fail(job, "network error"))
        failed = await self.queue.get_failed(normal)
        self.assertEqual([j.id for j in failed], ['a'])
        self.assertEqual(failed[0].last_error, "network error")
        self.assertEqual((await self.queue.get_counts(normal))['failed'], 1)

    async def test_non_retryable_failure_is_terminal(self):
        await self.queue.enqueue(make_job('a'))
        job = await self.queue.pop(NotificationPriority.NORMAL)

        self.assertFalse(await self.queue.fail(job, "Invalid phone number format", retryable=False))
        self.assertEqual(job.attempts, 1)

    async def test_recover_stalled(self):
        await self.queue.enqueue(make_job('a'))
        await self.queue.pop(NotificationPriority.NORMAL)

        self.assertEqual(await self.queue.recover_stalled(30), 0)
        self.clock.advance(31)
        self.assertEqual(await self.queue.recover_stalled(30), 1)

        job = await self.queue.pop(NotificationPriority.NORMAL)
        self.assertEqual(job.attempts, 2)

    async def test_claim_interrupted_by_store_error_is_recoverable(self):
        store = _FlakyStore(clock=self.clock)
        queue = PriorityJobQueue(store, clock=self.clock)
        await queue.enqueue(make_job('a'))

        store.fail_next_job_write = True
        with self.assertRaises(StoreError):
            await queue.pop(NotificationPriority.NORMAL)

        counts = await queue.get_counts(NotificationPriority.NORMAL)
        self.assertEqual((counts['waiting'], counts['active']), (0, 1))

        self.clock.advance(1)
        self.assertEqual(await queue.recover_stalled(0), 1)
        job = await queue.pop(NotificationPriority.NORMAL)
        self.assertEqual(job.id, 'a')
        self.assertEqual(job.attempts, 1)

    async def test_missing_payload_is_skipped(self):
        await self.queue.enqueue(make_job('gone'))
        await self.queue.enqueue(make_job('kept'))
        await self.store.delete(job_key('gone'))

        self.assertEqual((await self.queue.pop(NotificationPriority.NORMAL)).id, 'kept')

    def test_next_digest_time(self):
        queue = PriorityJobQueue(self.store, digest_interval_seconds=3600, clock=self.clock)
        self.assertEqual(queue.next_digest_time(7200), 10800)
        self.assertEqual(queue.next_digest_time(7201), 10800)
        self.assertTrue(0 < queue.digest_delay() <= 3600)


class TestQueueDispatcher(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.store = MemoryStore(clock=self.clock)
        self.queue = PriorityJobQueue(self.store, clock=self.clock)
        self.handled = []
        self.outcomes = []

    async def _handler(self, job):
        self.handled.append(job.id)
        return DeliveryResult(success=True, message_id=f"m-{job.id}")

    async def _on_outcome(self, job, result, latency_ms):
        self.outcomes.append((job.id, result.success))

    def _dispatcher(self, handler=None, **kwargs):
        return QueueDispatcher(
            self.queue,
            handler or self._handler,
            self._on_outcome,
            poll_interval_seconds=0.01,
            **kwargs,
        )

    async def test_burst_drains_in_priority_order(self):
        await self.queue.enqueue(make_job('low', NotificationPriority.LOW))
        await self.queue.enqueue(make_job('normal', NotificationPriority.NORMAL))
        await self.queue.enqueue(make_job('high', NotificationPriority.HIGH))

        await self._dispatcher(concurrency=1).run(burst=True)

        self.assertEqual(self.handled, ['high', 'normal', 'low'])
        self.assertEqual(sorted(self.outcomes), [('high', True), ('low', True), ('normal', True)])

    async def test_handler_timeout_becomes_failure(self):
        async def slow(job):
            await asyncio.sleep(5)
            return DeliveryResult(success=True)

        await self.queue.enqueue(make_job('slow', max_attempts=1))

        await self._dispatcher(slow, timeout_seconds=0.05).run(burst=True)

        self.assertEqual(self.outcomes, [('slow', False)])
        failed = await self.queue.get_failed(NotificationPriority.NORMAL)
        self.assertIn('timed out', failed[0].last_error)

    async def test_crashing_handler_does_not_stop_dispatch(self):
        async def flaky(job):
            if job.id == 'bad':
                raise RuntimeError("boom")
            return DeliveryResult(success=True)

        await self.queue.enqueue(make_job('bad', max_attempts=1))
        await self.queue.enqueue(make_job('good'))

        await self._dispatcher(flaky).run(burst=True)

        self.assertEqual(sorted(self.outcomes), [('bad', False), ('good', True)])

    async def test_retryable_failure_reports_no_outcome_yet(self):
        async def failing(job):
            return DeliveryResult.failure("network error")

        await self.queue.enqueue(make_job('a', max_attempts=3))

        await self._dispatcher(failing).run(burst=True)

        self.assertEqual(self.outcomes, [])
        self.assertEqual((await self.queue.get_counts(NotificationPriority.NORMAL))['delayed'], 1)

    async def test_start_and_stop(self):
        dispatcher = self._dispatcher()
        dispatcher.start()

        await self.queue.enqueue(make_job('a'))
        for _ in range(100):
            if self.outcomes:
                break
            await asyncio.sleep(0.01)
        await dispatcher.stop()

        self.assertEqual(self.outcomes, [('a', True)])

    async def test_only_selected_priorities_are_served(self):
        await self.queue.enqueue(make_job('high', NotificationPriority.HIGH))
        await self.queue.enqueue(make_job('low', NotificationPriority.LOW))

        await self._dispatcher(priorities=[NotificationPriority.LOW]).run(burst=True)

        self.assertEqual(self.handled, ['low'])

    async def test_running_dispatcher_recovers_stalled_jobs(self):
        attempts = []

        async def handler(job):
            attempts.append(job.attempts)
            return DeliveryResult(success=True)

        dispatcher = self._dispatcher(handler, stalled_after_seconds=5, recovery_interval_seconds=0)
        dispatcher.start()
        await asyncio.sleep(0.03)

        # Claimed by a worker that dies before finishing
        await self.queue.enqueue(make_job('orphan'))
        await self.queue.pop(NotificationPriority.NORMAL)
        self.clock.advance(6)

        for _ in range(100):
            if self.outcomes:
                break
            await asyncio.sleep(0.01)
        await dispatcher.stop()

        self.assertEqual(self.outcomes, [('orphan', True)])
        self.assertEqual(attempts, [2])


if __name__ == '__main__':
    unittest.main()
