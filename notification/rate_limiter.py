#!/usr/bin/env python3
"""
Sliding-window rate limiter shared by every worker through the store.

Three layers are checked in order: per user, per channel, per notification
type. Any store failure fails open so an unreachable store never blocks
delivery.

Usage:
    limiter = RateLimiter(store, config.rate_limits)
    if not await limiter.check_limit(user_id, NotificationType.PROMOTIONAL):
        ...
"""

import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional

from core.config_loader import RateLimitConfig, RateWindow
from notification.exceptions import StoreError
from notification.models import NotificationType
from notification.store import NotificationStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "notif:ratelimit"

# Tighter limits for noisy or sensitive types
TYPE_LIMITS: Dict[NotificationType, RateWindow] = {
    NotificationType.PROMOTIONAL: RateWindow(window_seconds=86400, max=2),
    NotificationType.EDUCATIONAL: RateWindow(window_seconds=86400, max=3),
    NotificationType.LOGIN_ALERT: RateWindow(window_seconds=3600, max=5),
    NotificationType.SECURITY_ALERT: RateWindow(window_seconds=3600, max=10),
}


def user_key(user_id: str) -> str:
    return f"{KEY_PREFIX}:user:{user_id}"


def channel_key(user_id: str, channel: str) -> str:
    return f"{KEY_PREFIX}:channel:{user_id}:{channel}"


def type_key(user_id: str, notification_type: NotificationType) -> str:
    return f"{KEY_PREFIX}:type:{user_id}:{notification_type.value}"


class RateLimiter:
    """Layered sliding-window limits over sorted sets in the store."""

    def __init__(
        self,
        store: NotificationStore,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.config = config or RateLimitConfig()
        self._clock = clock

    async def check_window_limit(self, key: str, window_seconds: int, max_count: int) -> bool:
        """
        Record a hit against ``key`` unless the live window already holds ``max_count`` hits.

        Rejected hits are not recorded. Store errors allow the hit.
        """
        now = self._clock()
        member = f"{now:.6f}-{uuid.uuid4().hex[:8]}"
        try:
            accepted, count = await self.store.sliding_window_hit(
                key, now, window_seconds, max_count, member
            )
        except StoreError as e:
            logger.error(f"Rate limit check failed for {key}, allowing send: {e}")
            return True

        if not accepted:
            logger.debug(f"Rate limit reached for {key} ({count}/{max_count} in {window_seconds}s)")
        return accepted

    async def check_limit(
        self,
        user_id: str,
        notification_type: NotificationType,
        channel: Optional[str] = None
    ) -> bool:
        """Apply per-user, per-channel and per-type limits. Rejected if any layer rejects."""
        per_user = self.config.per_user
        if not await self.check_window_limit(user_key(user_id), per_user.window_seconds, per_user.max):
            logger.warning(f"User rate limit exceeded for {user_id}")
            return False

        if channel:
            channel_limit = self.config.per_channel.get(channel)
            if channel_limit and not await self.check_window_limit(
                channel_key(user_id, channel), channel_limit.window_seconds, channel_limit.max
            ):
                logger.warning(f"Channel rate limit exceeded for {user_id} on {channel}")
                return False

        type_limit = TYPE_LIMITS.get(notification_type)
        if type_limit and not await self.check_window_limit(
            type_key(user_id, notification_type), type_limit.window_seconds, type_limit.max
        ):
            logger.warning(f"Type rate limit exceeded for {user_id}: {notification_type.value}")
            return False

        return True

    def _limit_for(self, channel: Optional[str]) -> RateWindow:
        if channel and channel in self.config.per_channel:
            return self.config.per_channel[channel]
        return self.config.per_user

    async def get_remaining_limit(self, user_id: str, channel: Optional[str] = None) -> Dict[str, Any]:
        """
        Remaining sends in the current window and when the oldest hit ages out.

        ``reset_at`` is a unix timestamp in seconds.
        """
        limit = self._limit_for(channel)
        key = channel_key(user_id, channel) if channel and channel in self.config.per_channel else user_key(user_id)
        now = self._clock()

        try:
            await self.store.zremrangebyscore(key, '-inf', now - limit.window_seconds)
            count = await self.store.zcard(key)
            oldest = await self.store.zrange(key, 0, 0, withscores=True)
        except StoreError as e:
            logger.error(f"Failed to read remaining limit for {user_id}: {e}")
            return {'remaining': limit.max, 'reset_at': now + limit.window_seconds}

        reset_at = oldest[0][1] + limit.window_seconds if oldest else now + limit.window_seconds
        return {'remaining': max(0, limit.max - count), 'reset_at': reset_at}

    async def get_usage(self, user_id: str) -> Dict[str, Any]:
        """Current window usage for the user and for each configured channel."""
        now = self._clock()

        async def _used(key: str, window: int) -> int:
            await self.store.zremrangebyscore(key, '-inf', now - window)
            return await self.store.zcard(key)

        per_user = self.config.per_user
        usage: Dict[str, Any] = {
            'user': {
                'used': await _used(user_key(user_id), per_user.window_seconds),
                'limit': per_user.max,
                'window': per_user.window_seconds,
            },
            'channels': {},
        }
        for channel, limit in self.config.per_channel.items():
            usage['channels'][channel] = {
                'used': await _used(channel_key(user_id, channel), limit.window_seconds),
                'limit': limit.max,
                'window': limit.window_seconds,
            }
        return usage

    async def reset(self, user_id: str) -> None:
        """Administrative override: clear every window held for the user."""
        keys = [user_key(user_id)]
        keys.extend(channel_key(user_id, channel) for channel in self.config.per_channel)
        keys.extend(type_key(user_id, notification_type) for notification_type in TYPE_LIMITS)
        await self.store.delete(*keys)
        logger.info(f"Rate limits reset for {user_id}")
