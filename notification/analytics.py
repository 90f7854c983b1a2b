#!/usr/bin/env python3
"""
Notification Analytics - counters, delivery outcomes and engagement.

Counters live in store hashes (global, daily, by type/channel/severity/hour)
and a bounded recent-activity feed. Terminal delivery outcomes are also
written to the durable delivery log.

Tracking never raises: an analytics failure must not affect dispatch.
Query methods are side-effect free.
"""

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from database.database import Database
from notification.exceptions import StoreError
from notification.models import NotificationEvent, category_for
from notification.store import NotificationStore

logger = logging.getLogger(__name__)

PREFIX = "notif:metrics"
TOTAL_KEY = f"{PREFIX}:total"
BY_TYPE_KEY = f"{PREFIX}:byType"
BY_CHANNEL_KEY = f"{PREFIX}:byChannel"
BY_SEVERITY_KEY = f"{PREFIX}:bySeverity"
HOURLY_KEY = f"{PREFIX}:hourly"
ERRORS_KEY = f"{PREFIX}:errors"
RECENT_KEY = "notif:recent"

RECENT_LIMIT = 1000
USER_RECENT_LIMIT = 100

ENGAGEMENT_ACTIONS = ('opened', 'clicked', 'unsubscribed')
PERIOD_DAYS = {'today': 1, 'week': 7, 'month': 30}


def categorize_error(error: Optional[str]) -> str:
    """Map a provider error string onto a fixed taxonomy."""
    if not error:
        return 'other'
    text = error.lower()
    if 'rate limit' in text:
        return 'rate_limited'
    if 'invalid' in text and 'email' in text:
        return 'invalid_email'
    if 'invalid' in text and 'phone' in text:
        return 'invalid_phone'
    if 'bounce' in text:
        return 'bounced'
    if 'spam' in text:
        return 'spam_blocked'
    if 'unsubscribed' in text:
        return 'unsubscribed'
    if 'timeout' in text or 'timed out' in text:
        return 'timeout'
    if 'network' in text or 'connection' in text:
        return 'network_error'
    if 'auth' in text or 'unauthorized' in text or 'forbidden' in text:
        return 'auth_error'
    return 'other'


def _daily_key(day: str) -> str:
    return f"{PREFIX}:daily:{day}"


def _as_int_map(raw: Dict[str, str]) -> Dict[str, int]:
    return {key: int(value) for key, value in raw.items()}


class NotificationAnalytics:
    """Records and queries notification metrics."""

    def __init__(
        self,
        store: NotificationStore,
        database: Optional[Database] = None,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.database = database
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ============ Tracking ============

    async def track_event(self, event: NotificationEvent, channels: List[str]) -> None:
        """Count an accepted event and append it to the recent-activity feeds."""
        now = self._now()
        day = now.strftime('%Y-%m-%d')
        try:
            await self.store.hincrby(TOTAL_KEY, 'sent')
            await self.store.hincrby(_daily_key(day), 'sent')
            await self.store.hincrby(BY_TYPE_KEY, event.type.value)
            await self.store.hincrby(f"{BY_TYPE_KEY}:{day}", event.type.value)
            for channel in channels:
                await self.store.hincrby(BY_CHANNEL_KEY, channel)
                await self.store.hincrby(f"{BY_CHANNEL_KEY}:{day}", channel)
            await self.store.hincrby(BY_SEVERITY_KEY, event.severity.value)
            await self.store.hincrby(HOURLY_KEY, str(now.hour))

            activity = json.dumps({
                'event_id': event.id,
                'type': event.type.value,
                'category': category_for(event.type),
                'severity': event.severity.value,
                'user_id': event.user_id,
                'channels': channels,
                'timestamp': now.isoformat(),
            })
            score = now.timestamp()
            await self.store.zadd(RECENT_KEY, {activity: score})
            await self.store.zremrangebyrank(RECENT_KEY, 0, -(RECENT_LIMIT + 1))

            if event.user_id:
                user_key = f"notif:user:{event.user_id}"
                await self.store.hincrby(user_key, 'total')
                await self.store.hincrby(user_key, f"type:{event.type.value}")
                await self.store.zadd(f"{user_key}:recent", {activity: score})
                await self.store.zremrangebyrank(f"{user_key}:recent", 0, -(USER_RECENT_LIMIT + 1))
        except StoreError as e:
            logger.error(f"Failed to track event {event.id}: {e}")

    async def track_delivery(
        self,
        event_id: str,
        channel: str,
        success: bool,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
        user_id: Optional[str] = None,
        notification_type: Optional[str] = None,
        latency_ms: Optional[int] = None
    ) -> None:
        """Count a terminal delivery outcome and write it to the delivery log."""
        outcome = 'delivered' if success else 'failed'
        day = self._now().strftime('%Y-%m-%d')
        error_category = None if success else categorize_error(error)

        try:
            await self.store.hincrby(TOTAL_KEY, outcome)
            await self.store.hincrby(_daily_key(day), outcome)
            await self.store.hincrby(f"{BY_CHANNEL_KEY}:{channel}", outcome)
            if success and latency_ms is not None:
                await self.store.hincrby(TOTAL_KEY, 'delivery_time_ms', max(0, int(latency_ms)))
                await self.store.hincrby(TOTAL_KEY, 'delivery_time_count')
            if error_category:
                await self.store.hincrby(ERRORS_KEY, error_category)
            if user_id:
                await self.store.hincrby(f"notif:user:{user_id}", outcome)
        except StoreError as e:
            logger.error(f"Failed to track delivery of {event_id} via {channel}: {e}")

        if self.database is None:
            return
        try:
            await self.database.run(lambda repo: repo.add_delivery_log(
                event_id=event_id,
                channel=channel,
                status=outcome,
                user_id=user_id,
                notification_type=notification_type,
                message_id=message_id,
                error=error,
                error_category=error_category,
            ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to write delivery log for {event_id}: {e}")

    async def track_engagement(self, event_id: str, action: str) -> None:
        """Record an opened/clicked/unsubscribed funnel event."""
        if action not in ENGAGEMENT_ACTIONS:
            logger.warning(f"Ignoring unknown engagement action: {action}")
            return
        try:
            await self.store.hincrby(TOTAL_KEY, action)
            await self.store.hincrby(f"notif:engagement:{action}", self._now().strftime('%Y-%m-%d'))
        except StoreError as e:
            logger.error(f"Failed to track {action} for {event_id}: {e}")

        if self.database is None:
            return
        try:
            await self.database.run(lambda repo: repo.record_engagement(event_id, action, self._now()))
        except SQLAlchemyError as e:
            logger.error(f"Failed to record {action} for {event_id}: {e}")

    # ============ Queries ============

    async def get_metrics(self, period: Optional[str] = None) -> Dict[str, Any]:
        """
        Aggregate snapshot.

        Args:
            period: "today", "week" or "month" to sum daily counters, None for all-time totals
        """
        if period is not None and period not in PERIOD_DAYS:
            raise ValueError(f"Unknown period: {period}")

        totals = _as_int_map(await self.store.hgetall(TOTAL_KEY))
        if period is None:
            counters = totals
            by_type = _as_int_map(await self.store.hgetall(BY_TYPE_KEY))
            by_channel = _as_int_map(await self.store.hgetall(BY_CHANNEL_KEY))
        else:
            counters, by_type, by_channel = {}, {}, {}
            today = self._now().date()
            for offset in range(PERIOD_DAYS[period]):
                day = (today - timedelta(days=offset)).strftime('%Y-%m-%d')
                for target, key in ((counters, _daily_key(day)),
                                    (by_type, f"{BY_TYPE_KEY}:{day}"),
                                    (by_channel, f"{BY_CHANNEL_KEY}:{day}")):
                    for name, value in (await self.store.hgetall(key)).items():
                        target[name] = target.get(name, 0) + int(value)

        sent = counters.get('sent', 0)
        delivered = counters.get('delivered', 0)
        timed = totals.get('delivery_time_count', 0)
        return {
            'period': period or 'all',
            'sent': sent,
            'delivered': delivered,
            'failed': counters.get('failed', 0),
            'opened': totals.get('opened', 0),
            'clicked': totals.get('clicked', 0),
            'unsubscribed': totals.get('unsubscribed', 0),
            'success_rate': round(delivered / sent, 4) if sent else 0.0,
            'avg_delivery_time_ms': round(totals.get('delivery_time_ms', 0) / timed, 1) if timed else None,
            'by_type': by_type,
            'by_channel': by_channel,
            'by_severity': _as_int_map(await self.store.hgetall(BY_SEVERITY_KEY)),
            'hourly': _as_int_map(await self.store.hgetall(HOURLY_KEY)),
        }

    async def get_channel_metrics(self, channel: str) -> Dict[str, int]:
        raw = _as_int_map(await self.store.hgetall(f"{BY_CHANNEL_KEY}:{channel}"))
        return {'delivered': raw.get('delivered', 0), 'failed': raw.get('failed', 0)}

    async def get_user_metrics(self, user_id: str) -> Dict[str, Any]:
        user_key = f"notif:user:{user_id}"
        raw = _as_int_map(await self.store.hgetall(user_key))
        recent = await self.store.zrange(f"{user_key}:recent", 0, 9, desc=True)
        return {
            'user_id': user_id,
            'total': raw.get('total', 0),
            'delivered': raw.get('delivered', 0),
            'failed': raw.get('failed', 0),
            'by_type': {k.split(':', 1)[1]: v for k, v in raw.items() if k.startswith('type:')},
            'recent': [json.loads(entry) for entry in recent],
        }

    async def get_recent_activity(self, limit: int = 50) -> List[Dict[str, Any]]:
        entries = await self.store.zrange(RECENT_KEY, 0, max(0, limit - 1), desc=True)
        return [json.loads(entry) for entry in entries]

    async def get_error_stats(self) -> Dict[str, Any]:
        by_category = _as_int_map(await self.store.hgetall(ERRORS_KEY))
        total = sum(by_category.values())
        return {
            'total': total,
            'by_category': by_category,
            'percentages': {
                category: round(count * 100 / total, 2) for category, count in by_category.items()
            } if total else {},
        }

    # ============ Maintenance ============

    async def cleanup(self, days_to_keep: int = 30) -> Dict[str, int]:
        """Delete dated counters and delivery log rows older than ``days_to_keep`` days."""
        cutoff = self._now() - timedelta(days=days_to_keep)
        cutoff_day = cutoff.strftime('%Y-%m-%d')

        dated_keys = []
        for pattern in (f"{PREFIX}:daily:*", f"{BY_TYPE_KEY}:*", f"{BY_CHANNEL_KEY}:*"):
            for key in await self.store.scan_keys(pattern):
                suffix = key.rsplit(':', 1)[-1]
                # Only date-suffixed keys; byChannel:{channel} totals are kept
                if len(suffix) == 10 and suffix[4] == '-' and suffix < cutoff_day:
                    dated_keys.append(key)
        removed_keys = await self.store.delete(*dated_keys) if dated_keys else 0
        await self.store.zremrangebyscore(RECENT_KEY, '-inf', cutoff.timestamp())

        removed_logs = 0
        if self.database is not None:
            removed_logs = await self.database.run(lambda repo: repo.delete_delivery_logs_before(cutoff))

        logger.info(f"Analytics cleanup removed {removed_keys} counters and {removed_logs} log records")
        return {'counters': removed_keys, 'logs': removed_logs}
