import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Text, String, DateTime, Boolean, JSON, Index

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class NotificationLog(Base):
    """
    Durable delivery log, one row per terminal (event, channel) outcome.

    Engagement timestamps are filled in later by tracked opens/clicks.
    """
    __tablename__ = 'notification_log'

    id = Column(String(36), primary_key=True, default=_uuid)

    event_id = Column(Text, nullable=False, index=True)
    user_id = Column(Text, nullable=True)
    notification_type = Column(Text, nullable=True)
    channel = Column(Text, nullable=False)

    status = Column(Text, nullable=False)  # delivered, failed
    message_id = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    error_category = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    unsubscribed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_notification_log_created', 'created_at'),
    )


class InAppNotification(Base):
    """Notification stored for in-app display, pulled by the presentation layer."""
    __tablename__ = 'in_app_notification'

    id = Column(String(64), primary_key=True)
    user_id = Column(Text, nullable=False)
    notification_type = Column(Text, nullable=False)
    title = Column(Text, nullable=True)
    body = Column(Text, nullable=False)
    data = Column(JSON, default=dict)

    read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_in_app_user_created', 'user_id', 'created_at'),
    )


class UserPreferenceRecord(Base):
    """Stored preference document. Merged over defaults on read, never deleted."""
    __tablename__ = 'user_notification_preference'

    user_id = Column(Text, primary_key=True)
    document = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
