#!/usr/bin/env python3
"""
Durable priority job queues and the dispatcher that drains them.

Each named queue keeps its state in the shared NotificationStore:

    {name}:waiting   sorted set, FIFO by sequence number
    {name}:delayed   sorted set scored by ready time (retries, digests)
    {name}:active    sorted set scored by start time
    {name}:failed    sorted set scored by failure time
    {name}:stats     hash with completed/failed counters
    notif:job:{id}   job payload as JSON

Delivery is at-least-once: claiming moves a job from ``waiting`` to
``active`` in one store operation, and a worker that dies mid-job leaves
it in ``active`` until a running dispatcher's periodic recover_stalled()
puts it back in ``waiting``.
"""

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from notification.exceptions import StoreError
from notification.models import (
    PRIORITY_WEIGHTS,
    DeliveryResult,
    NotificationPriority,
    QueueJob,
)
from notification.store import NotificationStore

logger = logging.getLogger(__name__)

JOB_PREFIX = "notif:job"
JOB_TTL_SECONDS = 7 * 86400
PROMOTE_BATCH = 100

DEFAULT_QUEUE_NAMES: Dict[str, str] = {
    'high': 'notifications:high',
    'normal': 'notifications:normal',
    'low': 'notifications:low',
    'digest': 'notifications:digest',
}

JobHandler = Callable[[QueueJob], Awaitable[DeliveryResult]]
OutcomeHandler = Callable[[QueueJob, DeliveryResult, int], Awaitable[None]]


def job_key(job_id: str) -> str:
    return f"{JOB_PREFIX}:{job_id}"


class PriorityJobQueue:
    """Store-backed job queues, one per NotificationPriority."""

    def __init__(
        self,
        store: NotificationStore,
        queue_names: Optional[Dict[str, str]] = None,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        digest_interval_seconds: int = 3600,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.queue_names = {**DEFAULT_QUEUE_NAMES, **(queue_names or {})}
        self.retry_attempts = retry_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.digest_interval_seconds = digest_interval_seconds
        self._clock = clock

    def name(self, priority: NotificationPriority) -> str:
        return self.queue_names[priority.value]

    def _key(self, priority: NotificationPriority, part: str) -> str:
        return f"{self.name(priority)}:{part}"

    async def _next_seq(self, priority: NotificationPriority) -> int:
        return await self.store.incr(self._key(priority, 'seq'))

    async def _push_waiting(self, priority: NotificationPriority, job_id: str) -> None:
        await self.store.zadd(self._key(priority, 'waiting'), {job_id: await self._next_seq(priority)})

    async def _move_to_waiting(self, priority: NotificationPriority, source: str, job_id: str) -> bool:
        # Only the worker whose move succeeds requeues the job
        return await self.store.zmove(source, self._key(priority, 'waiting'), job_id, await self._next_seq(priority))

    async def _save(self, job: QueueJob) -> None:
        await self.store.set(job_key(job.id), job.model_dump_json(), ttl=JOB_TTL_SECONDS)

    # ============ Producer side ============

    async def enqueue(self, job: QueueJob, delay: float = 0) -> str:
        """
        Persist a job and make it visible to workers.

        Raises:
            StoreError: If the store is unavailable
        """
        await self._save(job)
        if delay > 0:
            await self.store.zadd(self._key(job.priority, 'delayed'), {job.id: self._clock() + delay})
            logger.debug(f"Job {job.id} delayed {delay:.1f}s on {self.name(job.priority)}")
        else:
            await self._push_waiting(job.priority, job.id)
            logger.debug(f"Job {job.id} queued on {self.name(job.priority)}")
        return job.id

    def next_digest_time(self, now: Optional[float] = None) -> float:
        """Epoch seconds of the next digest flush boundary."""
        now = self._clock() if now is None else now
        interval = self.digest_interval_seconds
        return (math.floor(now / interval) + 1) * interval

    def digest_delay(self) -> float:
        now = self._clock()
        return self.next_digest_time(now) - now

    # ============ Consumer side ============

    async def _promote_delayed(self, priority: NotificationPriority) -> int:
        delayed = self._key(priority, 'delayed')
        due = await self.store.zrangebyscore(delayed, '-inf', self._clock(), start=0, num=PROMOTE_BATCH)
        promoted = 0
        for job_id in due:
            if await self._move_to_waiting(priority, delayed, job_id):
                promoted += 1
        return promoted

    async def pop(self, priority: NotificationPriority) -> Optional[QueueJob]:
        """Claim the oldest waiting job, or None if the queue is empty."""
        await self._promote_delayed(priority)
        active = self._key(priority, 'active')
        while True:
            # Claimed jobs are never outside both sets, so recover_stalled can find them
            job_id = await self.store.zpopmin_move(self._key(priority, 'waiting'), active, self._clock())
            if job_id is None:
                return None
            raw = await self.store.get(job_key(job_id))
            if raw is None:
                logger.warning(f"Dropping job {job_id}: payload expired or missing")
                await self.store.zrem(active, job_id)
                continue
            try:
                job = QueueJob.model_validate_json(raw)
            except PydanticValidationError as e:
                logger.error(f"Dropping job {job_id}: malformed payload: {e}")
                await self.store.zrem(active, job_id)
                await self.store.delete(job_key(job_id))
                continue

            job.attempts += 1
            await self._save(job)
            return job

    async def complete(self, job: QueueJob) -> None:
        await self.store.zrem(self._key(job.priority, 'active'), job.id)
        await self.store.delete(job_key(job.id))
        await self.store.hincrby(self._key(job.priority, 'stats'), 'completed')

    async def fail(self, job: QueueJob, error: Optional[str], retryable: bool = True) -> bool:
        """
        Record a failed attempt.

        Returns:
            True if the job was rescheduled, False if it is now terminally failed
        """
        active = self._key(job.priority, 'active')
        job.last_error = error

        if retryable and job.attempts < job.max_attempts:
            delay = self.retry_delay_seconds * (2 ** (job.attempts - 1))
            await self._save(job)
            await self.store.zmove(active, self._key(job.priority, 'delayed'), job.id, self._clock() + delay)
            logger.info(f"Job {job.id} attempt {job.attempts}/{job.max_attempts} failed, "
                        f"retrying in {delay:.1f}s: {error}")
            return True

        await self._save(job)
        await self.store.zmove(active, self._key(job.priority, 'failed'), job.id, self._clock())
        await self.store.hincrby(self._key(job.priority, 'stats'), 'failed')
        logger.warning(f"Job {job.id} failed after {job.attempts} attempt(s): {error}")
        return False

    async def recover_stalled(self, max_age_seconds: float) -> int:
        """Move jobs active for longer than ``max_age_seconds`` back to waiting."""
        cutoff = self._clock() - max_age_seconds
        recovered = 0
        for priority in NotificationPriority:
            active = self._key(priority, 'active')
            for job_id in await self.store.zrangebyscore(active, '-inf', cutoff):
                if await self._move_to_waiting(priority, active, job_id):
                    recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stalled job(s)")
        return recovered

    # ============ Introspection ============

    async def has_ready_jobs(self, priority: NotificationPriority) -> bool:
        if await self.store.zcard(self._key(priority, 'waiting')):
            return True
        due = await self.store.zrangebyscore(
            self._key(priority, 'delayed'), '-inf', self._clock(), start=0, num=1
        )
        return bool(due)

    async def get_counts(self, priority: NotificationPriority) -> Dict[str, int]:
        stats = await self.store.hgetall(self._key(priority, 'stats'))
        return {
            'waiting': await self.store.zcard(self._key(priority, 'waiting')),
            'active': await self.store.zcard(self._key(priority, 'active')),
            'completed': int(stats.get('completed', 0)),
            'failed': await self.store.zcard(self._key(priority, 'failed')),
            'delayed': await self.store.zcard(self._key(priority, 'delayed')),
        }

    async def get_failed(self, priority: NotificationPriority, limit: int = 50) -> List[QueueJob]:
        job_ids = await self.store.zrange(self._key(priority, 'failed'), 0, limit - 1, desc=True)
        jobs = []
        for job_id in job_ids:
            raw = await self.store.get(job_key(job_id))
            if raw:
                jobs.append(QueueJob.model_validate_json(raw))
        return jobs


class QueueDispatcher:
    """
    Pulls jobs from the priority queues and runs them through a handler.

    Each priority has its own pool bounded by ``concurrency``; queues are
    polled in weight order so high-priority work is always claimed first.
    A failing or hanging job never stops the loop.
    """

    def __init__(
        self,
        queue: PriorityJobQueue,
        handler: JobHandler,
        on_outcome: Optional[OutcomeHandler] = None,
        concurrency: int = 10,
        timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 0.5,
        priorities: Optional[List[NotificationPriority]] = None,
        stalled_after_seconds: Optional[float] = None,
        recovery_interval_seconds: float = 60.0
    ):
        self.queue = queue
        self.handler = handler
        self.on_outcome = on_outcome
        self.concurrency = concurrency
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        # A live worker finishes or times out a job well inside this age
        self.stalled_after_seconds = stalled_after_seconds if stalled_after_seconds is not None \
            else timeout_seconds * 2
        self.recovery_interval_seconds = recovery_interval_seconds
        self._last_recovery: Optional[float] = None
        self.priorities = sorted(priorities or list(NotificationPriority), key=PRIORITY_WEIGHTS.get)
        self._semaphores = {p: asyncio.Semaphore(concurrency) for p in self.priorities}
        self._tasks: Set[asyncio.Task] = set()
        self._stop = asyncio.Event()
        self._runner: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def start(self) -> asyncio.Task:
        """Run the dispatch loop in the background."""
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self.run())
        return self._runner

    async def stop(self) -> None:
        """Stop claiming jobs and wait for in-flight jobs to finish."""
        self._stop.set()
        if self._runner is not None:
            await self._runner
            self._runner = None

    async def run(self, burst: bool = False) -> None:
        """
        Dispatch until stopped.

        Args:
            burst: Exit once no job is waiting, due or in flight
        """
        self._stop.clear()
        names = ', '.join(self.queue.name(p) for p in self.priorities)
        logger.info(f"Dispatcher started on {names} (concurrency={self.concurrency}, burst={burst})")

        self._last_recovery = None
        while not self._stop.is_set():
            await self._recover_if_due()
            dispatched = await self._dispatch_once()
            if dispatched:
                continue
            if burst and not self._tasks and not await self._has_ready_jobs():
                break
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Dispatcher stopped")

    async def _recover_if_due(self) -> None:
        """Requeue jobs left active by dead workers, at most once per recovery interval."""
        now = time.monotonic()
        if self._last_recovery is not None and now - self._last_recovery < self.recovery_interval_seconds:
            return
        self._last_recovery = now
        try:
            await self.queue.recover_stalled(self.stalled_after_seconds)
        except StoreError as e:
            logger.error(f"Stalled job recovery failed: {e}")

    async def _has_ready_jobs(self) -> bool:
        try:
            for priority in self.priorities:
                if await self.queue.has_ready_jobs(priority):
                    return True
        except StoreError as e:
            logger.error(f"Queue inspection failed: {e}")
        return False

    async def _dispatch_once(self) -> int:
        dispatched = 0
        for priority in self.priorities:
            semaphore = self._semaphores[priority]
            while not semaphore.locked():
                try:
                    job = await self.queue.pop(priority)
                except StoreError as e:
                    logger.error(f"Failed to pop from {self.queue.name(priority)}: {e}")
                    return dispatched
                if job is None:
                    break
                await semaphore.acquire()
                task = asyncio.create_task(self._run_job(job, semaphore))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                dispatched += 1
        return dispatched

    async def _run_job(self, job: QueueJob, semaphore: asyncio.Semaphore) -> None:
        started = time.monotonic()
        try:
            try:
                result = await asyncio.wait_for(self.handler(job), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                result = DeliveryResult.failure(f"Job timed out after {self.timeout_seconds}s")
            except Exception as e:
                logger.exception(f"Handler crashed on job {job.id}")
                result = DeliveryResult.failure(f"Unhandled error: {e}")
            latency_ms = int((time.monotonic() - started) * 1000)

            try:
                if result.success:
                    await self.queue.complete(job)
                    terminal = True
                else:
                    terminal = not await self.queue.fail(job, result.error, result.retryable)
            except StoreError as e:
                logger.error(f"Failed to record outcome of job {job.id}: {e}")
                return

            if terminal and self.on_outcome is not None:
                try:
                    await self.on_outcome(job, result, latency_ms)
                except Exception:
                    logger.exception(f"Outcome callback failed for job {job.id}")
        finally:
            semaphore.release()
