"""
Notification Module

A multi-channel notification dispatch engine: preference-aware channel
selection, rate limiting, localized templates, priority queues with retry,
and delivery analytics.

Usage:
    from notification import NotificationService, MemoryStore

    service = NotificationService(store=MemoryStore())
    service.start()
    await service.send({
        'id': 'evt-1',
        'type': 'TRANSACTION_CONFIRMED',
        'userId': 'user123',
        'data': {'txHash': '0xabc'},
    })
"""

from notification.exceptions import (
    NotificationException,
    ValidationError,
    PreferenceValidationError,
    RateLimitException,
    ProviderError,
    InfrastructureError,
    StoreError,
)

from notification.models import (
    NotificationType,
    Severity,
    ChannelType,
    NotificationPriority,
    NotificationEvent,
    NotificationMessage,
    UserNotificationPreferences,
    ChannelPreference,
    DeliveryResult,
    QueueJob,
    SendResult,
)

from notification.store import NotificationStore, RedisStore, MemoryStore

from notification.channels import (
    CHANNEL_CLASSES,
    NotificationChannel,
    EmailChannel,
    SmsChannel,
    PushChannel,
    WebhookChannel,
    InAppChannel,
    build_channels,
)

from notification.templates import TemplateEngine
from notification.preferences import PreferenceManager
from notification.rate_limiter import RateLimiter
from notification.analytics import NotificationAnalytics
from notification.queue import PriorityJobQueue, QueueDispatcher

from notification.service import (
    NotificationService,
    DispatchNotice,
    NoticeKind,
)

__all__ = [
    # Errors
    'NotificationException',
    'ValidationError',
    'PreferenceValidationError',
    'RateLimitException',
    'ProviderError',
    'InfrastructureError',
    'StoreError',
    # Models
    'NotificationType',
    'Severity',
    'ChannelType',
    'NotificationPriority',
    'NotificationEvent',
    'NotificationMessage',
    'UserNotificationPreferences',
    'ChannelPreference',
    'DeliveryResult',
    'QueueJob',
    'SendResult',
    # Store
    'NotificationStore',
    'RedisStore',
    'MemoryStore',
    # Channels
    'CHANNEL_CLASSES',
    'NotificationChannel',
    'EmailChannel',
    'SmsChannel',
    'PushChannel',
    'WebhookChannel',
    'InAppChannel',
    'build_channels',
    # Components
    'TemplateEngine',
    'PreferenceManager',
    'RateLimiter',
    'NotificationAnalytics',
    'PriorityJobQueue',
    'QueueDispatcher',
    # Service
    'NotificationService',
    'DispatchNotice',
    'NoticeKind',
]
