#!/usr/bin/env python3
"""
Notification Service

Orchestrates delivery of notification events:
- validates the event
- applies user preferences (categories, quiet hours)
- enforces rate limits
- selects channels and renders one message per channel
- enqueues jobs on the priority queues and tracks analytics

Workers drain the queues through process_job(); terminal outcomes are fed
back to analytics and to registered listeners.

Usage:
    from notification.service import NotificationService

    service = NotificationService(config, store, database=database)
    service.start()
    result = await service.send({
        'id': 'evt-1',
        'type': 'TRANSACTION_CONFIRMED',
        'userId': 'user123',
        'data': {'txHash': '0xabc'},
    })
"""

import inspect
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from core.config_loader import NotificationConfig
from database.database import Database
from notification.analytics import NotificationAnalytics
from notification.channels import NotificationChannel, build_channels
from notification.exceptions import NotificationException, RateLimitException, ValidationError
from notification.models import (
    Attachment,
    DeliveryResult,
    NotificationEvent,
    NotificationMessage,
    NotificationPriority,
    NotificationType,
    QueueJob,
    SendResult,
    Severity,
    UserNotificationPreferences,
    category_for,
)
from notification.preferences import PreferenceManager, is_within_quiet_hours
from notification.queue import PriorityJobQueue, QueueDispatcher
from notification.rate_limiter import RateLimiter
from notification.store import NotificationStore
from notification.templates import TemplateEngine

logger = logging.getLogger(__name__)

HIGH_PRIORITY_TYPES = {NotificationType.SECURITY_ALERT, NotificationType.TRANSACTION_FAILED}
LOW_PRIORITY_TYPES = {NotificationType.PROMOTIONAL, NotificationType.EDUCATIONAL, NotificationType.COMMUNITY}

# Key under which each channel reads its destination from message data
ADDRESS_KEYS: Dict[str, str] = {
    'email': 'email',
    'sms': 'phone',
    'push': 'deviceToken',
    'webhook': 'webhookUrl',
}

DEFAULT_CHANNELS = ['inApp']


class NoticeKind(str, Enum):
    QUEUED = "queued"
    SKIPPED = "skipped"
    RATE_LIMITED = "rate_limited"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class DispatchNotice:
    """What a listener receives for each dispatch decision or terminal delivery."""
    kind: NoticeKind
    event_id: str
    user_id: Optional[str] = None
    notification_type: Optional[NotificationType] = None
    channels: List[str] = field(default_factory=list)
    priority: Optional[NotificationPriority] = None
    reason: Optional[str] = None
    result: Optional[DeliveryResult] = None


Listener = Callable[[DispatchNotice], Any]


class NotificationService:
    """Entry point for producers and handler for queue workers."""

    def __init__(
        self,
        config: Optional[NotificationConfig] = None,
        store: Optional[NotificationStore] = None,
        database: Optional[Database] = None,
        channels: Optional[Dict[str, NotificationChannel]] = None,
        template_engine: Optional[TemplateEngine] = None,
        preference_manager: Optional[PreferenceManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        analytics: Optional[NotificationAnalytics] = None,
        queue: Optional[PriorityJobQueue] = None,
        now: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the notification service.

        Args:
            config: Notification settings (defaults apply when omitted)
            store: Shared store for rate limits, caches, analytics and queues
            database: Persistence for preferences, delivery logs and in-app records
            channels: Channel handlers by name; built from config when omitted
            now: Clock used for quiet-hours checks
        """
        if store is None:
            raise ValueError("NotificationService requires a store")
        self.config = config or NotificationConfig()
        self.store = store
        self.database = database
        self.channels = channels if channels is not None else build_channels(self.config, database=database)
        self.template_engine = template_engine or TemplateEngine(self.config.templates)
        self.preference_manager = preference_manager or PreferenceManager(
            store, database=database, cache_ttl_seconds=self.config.preferences.cache_ttl_seconds
        )
        self.rate_limiter = rate_limiter or RateLimiter(store, self.config.rate_limits)
        self.analytics = analytics or NotificationAnalytics(store, database=database)

        queue_config = self.config.queue
        self.queue = queue or PriorityJobQueue(
            store,
            queue_names=queue_config.names,
            retry_attempts=queue_config.retry_attempts,
            retry_delay_seconds=queue_config.retry_delay_seconds,
            digest_interval_seconds=queue_config.digest_interval_seconds,
        )
        self.dispatcher = self.create_dispatcher()
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._listeners: List[Listener] = []

    # ============ Observers ============

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """Register a callback for DispatchNotice updates. Returns a function that removes it."""
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    async def _notify(self, notice: DispatchNotice) -> None:
        for callback in list(self._listeners):
            try:
                outcome = callback(notice)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(f"Listener failed on {notice.kind.value} notice for {notice.event_id}")

    # ============ Producer API ============

    def validate_event(self, event: Union[NotificationEvent, Mapping[str, Any]]) -> NotificationEvent:
        """
        Coerce and validate an incoming event.

        Raises:
            ValidationError: If id, type or data is missing or malformed
        """
        if isinstance(event, NotificationEvent):
            validated = event
        elif isinstance(event, Mapping):
            try:
                validated = NotificationEvent.model_validate(dict(event))
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid notification event: {e}") from e
        else:
            raise ValidationError(f"Invalid notification event: expected a mapping, got {type(event).__name__}")

        if not validated.id.strip():
            raise ValidationError("Invalid notification event: id must not be blank")
        self._attachments(validated)
        return validated

    @staticmethod
    def _attachments(event: NotificationEvent) -> List[Attachment]:
        raw = event.data.get('attachments')
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise ValidationError("Invalid notification event: attachments must be a list")
        try:
            return [Attachment.model_validate(item) for item in raw]
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid attachment: {e}") from e

    async def send(self, event: Union[NotificationEvent, Mapping[str, Any]]) -> SendResult:
        """
        Dispatch an event to every channel the recipient accepts it on.

        Returns:
            SendResult with status "queued" or "skipped"

        Raises:
            ValidationError: If the event is malformed (nothing is queued)
            RateLimitException: If the user's rate limit rejects the event
            StoreError: If the queue cannot be written
        """
        event = self.validate_event(event)

        prefs: Optional[UserNotificationPreferences] = None
        if event.user_id:
            prefs = await self.preference_manager.get(event.user_id)
            reason = self._suppression_reason(event, prefs)
            if reason:
                logger.info(f"Notification {event.id} ({event.type.value}) for {event.user_id} skipped: {reason}")
                await self._notify(DispatchNotice(
                    NoticeKind.SKIPPED, event.id, event.user_id, event.type, reason=reason,
                ))
                return SendResult(event_id=event.id, status='skipped', reason=reason)

            if not await self.rate_limiter.check_limit(event.user_id, event.type):
                retry_after = await self._retry_after(event.user_id)
                logger.warning(f"Notification {event.id} for {event.user_id} rate limited")
                await self._notify(DispatchNotice(
                    NoticeKind.RATE_LIMITED, event.id, event.user_id, event.type, reason='rate_limited',
                ))
                raise RateLimitException(
                    f"Rate limit exceeded for user {event.user_id}",
                    retry_after=retry_after,
                    user_id=event.user_id,
                    event_id=event.id,
                )

        channels = self.select_channels(event, prefs)
        if not channels:
            logger.info(f"Notification {event.id} ({event.type.value}) has no deliverable channel")
            await self._notify(DispatchNotice(
                NoticeKind.SKIPPED, event.id, event.user_id, event.type, reason='no_channels',
            ))
            return SendResult(event_id=event.id, status='skipped', reason='no_channels')

        priority = self.get_priority(event)
        locale = prefs.language if prefs else 'en'
        job_ids = []
        for channel in channels:
            message = self._prepare_message(event, channel, prefs, locale)
            queue_priority = self._queue_priority(event, channel, prefs, priority)
            job = QueueJob(
                id=uuid.uuid4().hex,
                event=event,
                channel=channel,
                message=message,
                priority=queue_priority,
                max_attempts=self.config.queue.retry_attempts,
            )
            delay = self.queue.digest_delay() if queue_priority == NotificationPriority.DIGEST else 0
            job_ids.append(await self.queue.enqueue(job, delay=delay))

        await self.analytics.track_event(event, channels)
        logger.info(f"Notification {event.id} ({event.type.value}) queued on "
                    f"{', '.join(channels)} at {priority.value} priority")
        await self._notify(DispatchNotice(
            NoticeKind.QUEUED, event.id, event.user_id, event.type, channels=channels, priority=priority,
        ))
        return SendResult(event_id=event.id, status='queued', channels=channels, priority=priority, job_ids=job_ids)

    async def _retry_after(self, user_id: str) -> Optional[int]:
        remaining = await self.rate_limiter.get_remaining_limit(user_id)
        if remaining['remaining'] > 0:
            return None
        return max(0, math.ceil(remaining['reset_at'] - time.time()))

    def _suppression_reason(self, event: NotificationEvent, prefs: UserNotificationPreferences) -> Optional[str]:
        category = category_for(event.type)
        if prefs.categories.get(category) is False:
            return 'category_disabled'
        if event.severity != Severity.CRITICAL and is_within_quiet_hours(prefs.quiet_hours, self._now()):
            return 'quiet_hours'
        return None

    def select_channels(
        self,
        event: NotificationEvent,
        prefs: Optional[UserNotificationPreferences] = None
    ) -> List[str]:
        """Channels the event goes to, restricted to channels with a configured handler."""
        if event.user_id and prefs is not None:
            candidates = [name for name, pref in prefs.channels.items() if pref.accepts(event.type)]
        else:
            explicit = event.data.get('channels')
            candidates = [str(name) for name in explicit] if isinstance(explicit, list) else list(DEFAULT_CHANNELS)

        selected = []
        for name in candidates:
            if name not in self.channels:
                logger.warning(f"Channel '{name}' is not configured, skipping for event {event.id}")
                continue
            if name not in selected:
                selected.append(name)
        return selected

    @staticmethod
    def get_priority(event: NotificationEvent) -> NotificationPriority:
        if event.severity == Severity.CRITICAL or event.type in HIGH_PRIORITY_TYPES:
            return NotificationPriority.HIGH
        if event.type in LOW_PRIORITY_TYPES:
            return NotificationPriority.LOW
        return NotificationPriority.NORMAL

    @staticmethod
    def _queue_priority(
        event: NotificationEvent,
        channel: str,
        prefs: Optional[UserNotificationPreferences],
        priority: NotificationPriority
    ) -> NotificationPriority:
        if priority == NotificationPriority.HIGH or prefs is None:
            return priority
        pref = prefs.channels.get(channel)
        if pref is not None and pref.is_digest(event.type):
            return NotificationPriority.DIGEST
        return priority

    def _prepare_message(
        self,
        event: NotificationEvent,
        channel: str,
        prefs: Optional[UserNotificationPreferences],
        locale: str = 'en'
    ) -> NotificationMessage:
        rendered = self.template_engine.render(event.type, channel, event.data, locale)

        data = {k: v for k, v in event.data.items() if k != 'attachments'}
        data['type'] = event.type.value
        if prefs is not None:
            pref = prefs.channels.get(channel)
            address_key = ADDRESS_KEYS.get(channel)
            if pref is not None and pref.address and address_key:
                data[address_key] = pref.address

        metadata = event.metadata.model_dump(mode='json', by_alias=True, exclude_none=True)
        metadata['severity'] = event.severity.value
        if rendered.template_id:
            metadata['templateId'] = rendered.template_id

        return NotificationMessage(
            event_id=event.id,
            user_id=event.user_id,
            channel=channel,
            type=event.type,
            subject=rendered.subject,
            title=rendered.title or rendered.subject,
            body=rendered.body or "",
            html=rendered.html,
            data=data,
            attachments=self._attachments(event),
            metadata=metadata,
        )

    # ============ Worker side ============

    async def process_job(self, job: QueueJob) -> DeliveryResult:
        """Deliver one queued message through its channel."""
        handler = self.channels.get(job.channel)
        if handler is None:
            logger.error(f"Channel handler not found: {job.channel}")
            return DeliveryResult.failure(f"Channel handler not found: {job.channel}", retryable=False)

        try:
            return await handler.send(job.message)
        except ValidationError as e:
            logger.error(f"Job {job.id} rejected by {job.channel}: {e}")
            return DeliveryResult.failure(str(e), retryable=False)
        except NotificationException as e:
            logger.error(f"Job {job.id} failed on {job.channel}: {e}")
            return DeliveryResult.failure(str(e))
        except Exception as e:
            logger.exception(f"Unexpected error delivering job {job.id} via {job.channel}")
            return DeliveryResult.failure(f"{job.channel} send failed: {e}")

    async def _on_job_outcome(self, job: QueueJob, result: DeliveryResult, latency_ms: int) -> None:
        await self.analytics.track_delivery(
            job.event.id,
            job.channel,
            result.success,
            message_id=result.message_id,
            error=result.error,
            user_id=job.event.user_id,
            notification_type=job.event.type.value,
            latency_ms=latency_ms,
        )
        await self._notify(DispatchNotice(
            NoticeKind.DELIVERED if result.success else NoticeKind.FAILED,
            job.event.id,
            job.event.user_id,
            job.event.type,
            channels=[job.channel],
            priority=job.priority,
            reason=result.error,
            result=result,
        ))

    def create_dispatcher(self, priorities: Optional[List[NotificationPriority]] = None) -> QueueDispatcher:
        queue_config = self.config.queue
        return QueueDispatcher(
            self.queue,
            self.process_job,
            on_outcome=self._on_job_outcome,
            concurrency=queue_config.concurrency,
            timeout_seconds=queue_config.timeout_seconds,
            poll_interval_seconds=queue_config.poll_interval_seconds,
            priorities=priorities,
            stalled_after_seconds=queue_config.stalled_after_seconds,
            recovery_interval_seconds=queue_config.recovery_interval_seconds,
        )

    async def get_queue_status(self) -> Dict[str, Dict[str, int]]:
        return {priority.value: await self.queue.get_counts(priority) for priority in NotificationPriority}

    async def cleanup_analytics(self) -> Dict[str, int]:
        """Drop analytics counters and delivery logs past the configured retention."""
        return await self.analytics.cleanup(self.config.analytics_retention_days)

    # ============ Lifecycle ============

    def start(self) -> None:
        """Start the in-process dispatcher."""
        self.dispatcher.start()

    async def shutdown(self) -> None:
        logger.info("Shutting down notification service")
        await self.dispatcher.stop()
        for name, channel in self.channels.items():
            try:
                await channel.aclose()
            except Exception as e:
                logger.warning(f"Error closing channel {name}: {e}")
        await self.store.close()
        logger.info("Notification service shutdown complete")
