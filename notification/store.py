#!/usr/bin/env python3
"""
Key/value + sorted-set store used for rate-limit windows, preference cache,
analytics counters and the durable job queue.

Two backends implement the same contract:
- RedisStore: redis.asyncio, shared by every worker process
- MemoryStore: in-process, for single-process mode and tests

Usage:
    store = RedisStore.from_url('redis://localhost:6379/0')
    if await store.ping():
        await store.set('key', 'value', ttl=60)
"""

import fnmatch
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from notification.exceptions import StoreError

logger = logging.getLogger(__name__)

Score = Union[float, str]

# Purge, count, record and expire as one atomic step.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
    return {0, count}
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('EXPIRE', key, math.ceil(window))
return {1, count + 1}
"""

# Move the lowest-scored member to another sorted set in one step.
CLAIM_SCRIPT = """
local popped = redis.call('ZPOPMIN', KEYS[1])
if #popped == 0 then
    return false
end
redis.call('ZADD', KEYS[2], ARGV[1], popped[1])
return popped[1]
"""

MOVE_SCRIPT = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 1 then
    redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
    return 1
end
return 0
"""


class NotificationStore(ABC):
    """Storage surface required by the engine. Every operation is scoped to one key."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> None: ...

    @abstractmethod
    async def incr(self, key: str, amount: int = 1) -> int: ...

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int: ...

    @abstractmethod
    async def hget(self, key: str, field: str) -> Optional[str]: ...

    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]: ...

    @abstractmethod
    async def hset(self, key: str, mapping: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def zadd(self, key: str, mapping: Dict[str, float]) -> int: ...

    @abstractmethod
    async def zrem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def zcard(self, key: str) -> int: ...

    @abstractmethod
    async def zrange(
        self, key: str, start: int, end: int, desc: bool = False, withscores: bool = False
    ) -> List[Any]: ...

    @abstractmethod
    async def zrangebyscore(
        self,
        key: str,
        min_score: Score,
        max_score: Score,
        start: Optional[int] = None,
        num: Optional[int] = None,
        withscores: bool = False
    ) -> List[Any]: ...

    @abstractmethod
    async def zremrangebyscore(self, key: str, min_score: Score, max_score: Score) -> int: ...

    @abstractmethod
    async def zremrangebyrank(self, key: str, start: int, end: int) -> int: ...

    @abstractmethod
    async def zpopmin(self, key: str, count: int = 1) -> List[Tuple[str, float]]: ...

    @abstractmethod
    async def zpopmin_move(self, source: str, destination: str, score: float) -> Optional[str]:
        """
        Atomically pop the lowest-scored member of ``source`` and add it to
        ``destination`` at ``score``. Returns the member, or None if empty.
        """

    @abstractmethod
    async def zmove(self, source: str, destination: str, member: str, score: float) -> bool:
        """Atomically move ``member`` from ``source`` to ``destination`` at ``score``. False if absent."""

    @abstractmethod
    async def scan_keys(self, pattern: str) -> List[str]: ...

    @abstractmethod
    async def sliding_window_hit(
        self, key: str, now: float, window_seconds: float, limit: int, member: str
    ) -> Tuple[bool, int]:
        """
        Atomically purge entries with score <= now - window, then either
        reject (count >= limit) or record ``member`` at ``now``.

        Returns:
            (accepted, count after the operation)
        """

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None


class RedisStore(NotificationStore):
    """Store backed by redis.asyncio. Redis errors surface as StoreError."""

    def __init__(self, client: aioredis.Redis):
        self._redis = client
        self._window_script = client.register_script(SLIDING_WINDOW_SCRIPT)
        self._claim_script = client.register_script(CLAIM_SCRIPT)
        self._move_script = client.register_script(MOVE_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisStore":
        return cls(aioredis.from_url(redis_url, decode_responses=True))

    async def _call(self, op: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await factory()
        except RedisError as e:
            raise StoreError(f"Redis {op} failed: {e}") from e

    async def get(self, key: str) -> Optional[str]:
        return await self._call('GET', lambda: self._redis.get(key))

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self._call('SET', lambda: self._redis.set(key, value, ex=ttl))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._call('DEL', lambda: self._redis.delete(*keys))

    async def expire(self, key: str, seconds: int) -> None:
        await self._call('EXPIRE', lambda: self._redis.expire(key, seconds))

    async def incr(self, key: str, amount: int = 1) -> int:
        return await self._call('INCRBY', lambda: self._redis.incrby(key, amount))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return await self._call('HINCRBY', lambda: self._redis.hincrby(key, field, amount))

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self._call('HGET', lambda: self._redis.hget(key, field))

    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self._call('HGETALL', lambda: self._redis.hgetall(key))

    async def hset(self, key: str, mapping: Dict[str, Any]) -> None:
        await self._call('HSET', lambda: self._redis.hset(key, mapping=mapping))

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        return await self._call('ZADD', lambda: self._redis.zadd(key, mapping))

    async def zrem(self, key: str, *members: str) -> int:
        return await self._call('ZREM', lambda: self._redis.zrem(key, *members))

    async def zcard(self, key: str) -> int:
        return await self._call('ZCARD', lambda: self._redis.zcard(key))

    async def zrange(self, key, start, end, desc=False, withscores=False):
        return await self._call(
            'ZRANGE', lambda: self._redis.zrange(key, start, end, desc=desc, withscores=withscores)
        )

    async def zrangebyscore(self, key, min_score, max_score, start=None, num=None, withscores=False):
        return await self._call(
            'ZRANGEBYSCORE',
            lambda: self._redis.zrangebyscore(
                key, min_score, max_score, start=start, num=num, withscores=withscores
            )
        )

    async def zremrangebyscore(self, key, min_score, max_score) -> int:
        return await self._call(
            'ZREMRANGEBYSCORE', lambda: self._redis.zremrangebyscore(key, min_score, max_score)
        )

    async def zremrangebyrank(self, key, start, end) -> int:
        return await self._call(
            'ZREMRANGEBYRANK', lambda: self._redis.zremrangebyrank(key, start, end)
        )

    async def zpopmin(self, key: str, count: int = 1) -> List[Tuple[str, float]]:
        return await self._call('ZPOPMIN', lambda: self._redis.zpopmin(key, count))

    async def zpopmin_move(self, source, destination, score):
        member = await self._call(
            'EVALSHA', lambda: self._claim_script(keys=[source, destination], args=[score])
        )
        return member or None

    async def zmove(self, source, destination, member, score):
        moved = await self._call(
            'EVALSHA', lambda: self._move_script(keys=[source, destination], args=[member, score])
        )
        return bool(moved)

    async def scan_keys(self, pattern: str) -> List[str]:
        async def _scan():
            return [key async for key in self._redis.scan_iter(match=pattern)]
        return await self._call('SCAN', _scan)

    async def sliding_window_hit(self, key, now, window_seconds, limit, member):
        accepted, count = await self._call(
            'EVALSHA',
            lambda: self._window_script(keys=[key], args=[now, window_seconds, limit, member])
        )
        return bool(accepted), int(count)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._redis.aclose()


def _normalize_range(length: int, start: int, end: int) -> Tuple[int, int]:
    """Translate Redis-style inclusive (possibly negative) indices to a slice."""
    if start < 0:
        start += length
    if end < 0:
        end += length
    start = max(start, 0)
    end = min(end, length - 1)
    return start, end + 1


class MemoryStore(NotificationStore):
    """
    In-process store with the same semantics as RedisStore.

    No method awaits between reading and writing its key, so every
    operation is atomic with respect to other tasks on the event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._values: Dict[str, Any] = {}
        self._expires_at: Dict[str, float] = {}

    def _live(self, key: str) -> bool:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._expires_at.pop(key, None)
        return key in self._values

    def _hash(self, key: str) -> Dict[str, str]:
        if not self._live(key):
            self._values[key] = {}
        return self._values[key]

    def _zset(self, key: str) -> Dict[str, float]:
        if not self._live(key):
            self._values[key] = {}
        return self._values[key]

    def _sorted(self, key: str) -> List[Tuple[str, float]]:
        if not self._live(key):
            return []
        return sorted(self._values[key].items(), key=lambda item: (item[1], item[0]))

    def _drop_if_empty(self, key: str) -> None:
        if key in self._values and not self._values[key]:
            self._values.pop(key)
            self._expires_at.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        return self._values.get(key) if self._live(key) else None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self._values[key] = value
        if ttl:
            self._expires_at[key] = self._clock() + ttl
        else:
            self._expires_at.pop(key, None)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key):
                removed += 1
            self._values.pop(key, None)
            self._expires_at.pop(key, None)
        return removed

    async def expire(self, key: str, seconds: int) -> None:
        if self._live(key):
            self._expires_at[key] = self._clock() + seconds

    async def incr(self, key: str, amount: int = 1) -> int:
        value = int(self._values.get(key, 0)) if self._live(key) else 0
        value += amount
        self._values[key] = str(value)
        return value

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        bucket = self._hash(key)
        value = int(bucket.get(field, 0)) + amount
        bucket[field] = str(value)
        return value

    async def hget(self, key: str, field: str) -> Optional[str]:
        if not self._live(key):
            return None
        return self._values[key].get(field)

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self._values[key]) if self._live(key) else {}

    async def hset(self, key: str, mapping: Dict[str, Any]) -> None:
        self._hash(key).update({k: str(v) for k, v in mapping.items()})

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        zset = self._zset(key)
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zrem(self, key: str, *members: str) -> int:
        if not self._live(key):
            return 0
        zset = self._values[key]
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        self._drop_if_empty(key)
        return removed

    async def zcard(self, key: str) -> int:
        return len(self._values[key]) if self._live(key) else 0

    async def zrange(self, key, start, end, desc=False, withscores=False):
        items = self._sorted(key)
        if desc:
            items.reverse()
        lo, hi = _normalize_range(len(items), start, end)
        selected = items[lo:hi]
        return selected if withscores else [member for member, _ in selected]

    async def zrangebyscore(self, key, min_score, max_score, start=None, num=None, withscores=False):
        lo, hi = float(min_score), float(max_score)
        selected = [(m, s) for m, s in self._sorted(key) if lo <= s <= hi]
        if start is not None and num is not None:
            selected = selected[start:start + num]
        return selected if withscores else [member for member, _ in selected]

    async def zremrangebyscore(self, key, min_score, max_score) -> int:
        lo, hi = float(min_score), float(max_score)
        doomed = [m for m, s in self._sorted(key) if lo <= s <= hi]
        for member in doomed:
            del self._values[key][member]
        self._drop_if_empty(key)
        return len(doomed)

    async def zremrangebyrank(self, key, start, end) -> int:
        items = self._sorted(key)
        lo, hi = _normalize_range(len(items), start, end)
        doomed = items[lo:hi]
        for member, _ in doomed:
            del self._values[key][member]
        self._drop_if_empty(key)
        return len(doomed)

    async def zpopmin(self, key: str, count: int = 1) -> List[Tuple[str, float]]:
        popped = self._sorted(key)[:count]
        for member, _ in popped:
            del self._values[key][member]
        self._drop_if_empty(key)
        return popped

    async def zpopmin_move(self, source, destination, score):
        popped = self._sorted(source)[:1]
        if not popped:
            return None
        member = popped[0][0]
        del self._values[source][member]
        self._drop_if_empty(source)
        self._zset(destination)[member] = float(score)
        return member

    async def zmove(self, source, destination, member, score):
        if not self._live(source) or member not in self._values[source]:
            return False
        del self._values[source][member]
        self._drop_if_empty(source)
        self._zset(destination)[member] = float(score)
        return True

    async def scan_keys(self, pattern: str) -> List[str]:
        return [key for key in list(self._values) if self._live(key) and fnmatch.fnmatchcase(key, pattern)]

    async def sliding_window_hit(self, key, now, window_seconds, limit, member):
        zset = self._zset(key)
        cutoff = now - window_seconds
        for stale in [m for m, score in zset.items() if score <= cutoff]:
            del zset[stale]
        if len(zset) >= limit:
            self._drop_if_empty(key)
            return False, len(zset)
        zset[member] = float(now)
        self._expires_at[key] = self._clock() + window_seconds
        return True, len(zset)

    async def ping(self) -> bool:
        return True
