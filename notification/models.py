"""
Domain types shared by the notification engine.

Events, preferences, rendered messages and queue jobs are pydantic models
because they cross a serialization boundary (queue payloads, cached
preference documents). Results returned in-process are dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationType(str, Enum):
    # Transactions
    TRANSACTION_SENT = "TRANSACTION_SENT"
    TRANSACTION_CONFIRMED = "TRANSACTION_CONFIRMED"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    GAS_PRICE_ALERT = "GAS_PRICE_ALERT"
    BALANCE_UPDATE = "BALANCE_UPDATE"

    # Security
    LOGIN_ALERT = "LOGIN_ALERT"
    SECURITY_ALERT = "SECURITY_ALERT"
    WALLET_RECOVERY = "WALLET_RECOVERY"

    # Governance
    NEW_PROPOSAL = "NEW_PROPOSAL"
    VOTING_REMINDER = "VOTING_REMINDER"
    PROPOSAL_OUTCOME = "PROPOSAL_OUTCOME"
    PROPOSAL_EXECUTION = "PROPOSAL_EXECUTION"

    # System
    MAINTENANCE_NOTICE = "MAINTENANCE_NOTICE"
    FEATURE_UPDATE = "FEATURE_UPDATE"
    SECURITY_UPDATE = "SECURITY_UPDATE"
    NETWORK_STATUS = "NETWORK_STATUS"

    # Marketing
    PROMOTIONAL = "PROMOTIONAL"
    EDUCATIONAL = "EDUCATIONAL"
    COMMUNITY = "COMMUNITY"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ChannelType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"
    IN_APP = "inApp"


class NotificationPriority(str, Enum):
    """Named work queues. Lower weight is serviced first."""
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"
    DIGEST = "digest"


PRIORITY_WEIGHTS: Dict[NotificationPriority, int] = {
    NotificationPriority.HIGH: 1,
    NotificationPriority.NORMAL: 2,
    NotificationPriority.LOW: 3,
    NotificationPriority.DIGEST: 4,
}

CATEGORY_TYPES: Dict[str, List[NotificationType]] = {
    'transactions': [
        NotificationType.TRANSACTION_SENT,
        NotificationType.TRANSACTION_CONFIRMED,
        NotificationType.TRANSACTION_FAILED,
        NotificationType.GAS_PRICE_ALERT,
        NotificationType.BALANCE_UPDATE,
    ],
    'security': [
        NotificationType.LOGIN_ALERT,
        NotificationType.SECURITY_ALERT,
        NotificationType.WALLET_RECOVERY,
    ],
    'governance': [
        NotificationType.NEW_PROPOSAL,
        NotificationType.VOTING_REMINDER,
        NotificationType.PROPOSAL_OUTCOME,
        NotificationType.PROPOSAL_EXECUTION,
    ],
    'system': [
        NotificationType.MAINTENANCE_NOTICE,
        NotificationType.FEATURE_UPDATE,
        NotificationType.SECURITY_UPDATE,
        NotificationType.NETWORK_STATUS,
    ],
    'marketing': [
        NotificationType.PROMOTIONAL,
        NotificationType.EDUCATIONAL,
        NotificationType.COMMUNITY,
    ],
}

_TYPE_CATEGORY = {t: category for category, types in CATEGORY_TYPES.items() for t in types}


def category_for(notification_type: NotificationType) -> str:
    """Return the preference category a notification type belongs to."""
    return _TYPE_CATEGORY.get(notification_type, 'system')


class EventMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    source: str = "unknown"
    timestamp: datetime = Field(default_factory=utcnow)
    correlation_id: Optional[str] = None
    retry_count: Optional[int] = None


class NotificationEvent(BaseModel):
    """An abstract notification produced outside the engine. Immutable."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    id: str = Field(min_length=1)
    type: NotificationType
    severity: Severity = Severity.INFO
    user_id: Optional[str] = None
    data: Dict[str, Any]
    metadata: EventMetadata = Field(default_factory=EventMetadata)


class ChannelTypePreferences(BaseModel):
    """Per-type classification lists. A type may appear in at most one list."""
    instant: List[NotificationType] = Field(default_factory=list)
    digest: List[NotificationType] = Field(default_factory=list)
    disabled: List[NotificationType] = Field(default_factory=list)

    def overlapping_types(self) -> List[NotificationType]:
        seen = set()
        overlap = []
        for bucket in (self.instant, self.digest, self.disabled):
            for notification_type in set(bucket):
                if notification_type in seen:
                    overlap.append(notification_type)
                seen.add(notification_type)
        return overlap


class ChannelPreference(BaseModel):
    enabled: bool = False
    address: Optional[str] = None
    verified: bool = False
    preferences: ChannelTypePreferences = Field(default_factory=ChannelTypePreferences)

    def accepts(self, notification_type: NotificationType) -> bool:
        """True if this channel should deliver the given type."""
        if not (self.enabled and self.verified):
            return False
        if notification_type in self.preferences.disabled:
            return False
        return (notification_type in self.preferences.instant
                or notification_type in self.preferences.digest)

    def is_digest(self, notification_type: NotificationType) -> bool:
        return (notification_type in self.preferences.digest
                and notification_type not in self.preferences.instant)


class QuietHours(BaseModel):
    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "UTC"


class UserNotificationPreferences(BaseModel):
    user_id: str
    channels: Dict[str, ChannelPreference] = Field(default_factory=dict)
    categories: Dict[str, bool] = Field(default_factory=dict)
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    language: str = "en"


class Attachment(BaseModel):
    filename: str
    content: str  # base64
    content_type: str = "application/octet-stream"


class NotificationMessage(BaseModel):
    """Rendered payload for one (event, channel) pair."""
    event_id: str
    user_id: Optional[str] = None
    channel: str
    type: NotificationType
    subject: Optional[str] = None
    title: Optional[str] = None
    body: str = ""
    html: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    attachments: List[Attachment] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QueueJob(BaseModel):
    id: str
    event: NotificationEvent
    channel: str
    message: NotificationMessage
    priority: NotificationPriority
    attempts: int = 0
    max_attempts: int = 3
    enqueued_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None


@dataclass
class DeliveryResult:
    """Outcome of a single Channel.send() call."""
    success: bool
    message_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return not self.success and self.details.get('retryable', True)

    @classmethod
    def failure(cls, error: str, retryable: bool = True, **details: Any) -> "DeliveryResult":
        details['retryable'] = retryable
        return cls(success=False, error=error, details=details)


@dataclass
class SendResult:
    """What NotificationService.send() did with an event."""
    event_id: str
    status: str  # "queued" or "skipped"
    channels: List[str] = field(default_factory=list)
    priority: Optional[NotificationPriority] = None
    job_ids: List[str] = field(default_factory=list)
    reason: Optional[str] = None
