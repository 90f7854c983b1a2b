import logging
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy import select, delete, update, func, and_, or_

from database.models import NotificationLog, InAppNotification, UserPreferenceRecord

logger = logging.getLogger(__name__)

ENGAGEMENT_COLUMNS = {
    'opened': 'opened_at',
    'clicked': 'clicked_at',
    'unsubscribed': 'unsubscribed_at',
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _in_app_to_dict(row: InAppNotification) -> Dict[str, Any]:
    return {
        'id': row.id,
        'user_id': row.user_id,
        'type': row.notification_type,
        'title': row.title,
        'body': row.body,
        'data': row.data or {},
        'read': row.read,
        'read_at': _iso(row.read_at),
        'created_at': _iso(row.created_at),
        'expires_at': _iso(row.expires_at),
    }


class NotificationRepository:
    """Persistence for preference documents, delivery logs and in-app notifications."""

    def __init__(self, db: Session):
        self.db = db

    # ============ Preferences ============

    def get_preference_document(self, user_id: str) -> Optional[Dict[str, Any]]:
        record = self.db.get(UserPreferenceRecord, user_id)
        return dict(record.document) if record else None

    def save_preference_document(self, user_id: str, document: Dict[str, Any]) -> None:
        record = self.db.get(UserPreferenceRecord, user_id)
        if record:
            record.document = document
            record.updated_at = datetime.now(timezone.utc)
        else:
            self.db.add(UserPreferenceRecord(user_id=user_id, document=document))
        self.db.flush()

    # ============ Delivery log ============

    def add_delivery_log(
        self,
        event_id: str,
        channel: str,
        status: str,
        user_id: Optional[str] = None,
        notification_type: Optional[str] = None,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
        error_category: Optional[str] = None
    ) -> str:
        log = NotificationLog(
            event_id=event_id,
            user_id=user_id,
            notification_type=notification_type,
            channel=channel,
            status=status,
            message_id=message_id,
            error=error,
            error_category=error_category,
        )
        self.db.add(log)
        self.db.flush()
        return log.id

    def record_engagement(self, event_id: str, action: str, at: Optional[datetime] = None) -> int:
        """Stamp the engagement time on every log row of the event. Returns rows updated."""
        column = ENGAGEMENT_COLUMNS.get(action)
        if column is None:
            return 0
        stmt = (
            update(NotificationLog)
            .where(NotificationLog.event_id == event_id)
            .values({column: at or datetime.now(timezone.utc)})
        )
        return self.db.execute(stmt).rowcount

    def get_delivery_logs(self, event_id: str) -> List[Dict[str, Any]]:
        stmt = select(NotificationLog).where(NotificationLog.event_id == event_id)
        return [
            {
                'id': row.id,
                'event_id': row.event_id,
                'channel': row.channel,
                'status': row.status,
                'message_id': row.message_id,
                'error': row.error,
                'error_category': row.error_category,
                'opened_at': _iso(row.opened_at),
                'clicked_at': _iso(row.clicked_at),
            }
            for row in self.db.execute(stmt).scalars()
        ]

    def delete_delivery_logs_before(self, cutoff: datetime) -> int:
        stmt = delete(NotificationLog).where(NotificationLog.created_at < cutoff)
        return self.db.execute(stmt).rowcount

    # ============ In-app notifications ============

    def add_in_app_notification(self, record: Dict[str, Any]) -> None:
        self.db.add(InAppNotification(
            id=record['id'],
            user_id=record['user_id'],
            notification_type=record['type'],
            title=record.get('title'),
            body=record['body'],
            data=record.get('data') or {},
            read=record.get('read', False),
            created_at=record['created_at'],
            expires_at=record.get('expires_at'),
        ))
        self.db.flush()

    def trim_in_app_notifications(self, user_id: str, keep: int) -> int:
        """Delete the user's oldest notifications beyond ``keep``."""
        stale_ids = select(InAppNotification.id).where(
            InAppNotification.user_id == user_id
        ).order_by(InAppNotification.created_at.desc()).offset(keep)
        ids = list(self.db.execute(stale_ids).scalars())
        if not ids:
            return 0
        stmt = delete(InAppNotification).where(InAppNotification.id.in_(ids))
        return self.db.execute(stmt).rowcount

    def delete_expired_in_app_notifications(self, now: datetime) -> int:
        stmt = delete(InAppNotification).where(
            and_(InAppNotification.expires_at.is_not(None), InAppNotification.expires_at <= now)
        )
        return self.db.execute(stmt).rowcount

    def _live_filter(self, user_id: str, now: datetime):
        return and_(
            InAppNotification.user_id == user_id,
            or_(InAppNotification.expires_at.is_(None), InAppNotification.expires_at > now),
        )

    def list_in_app_notifications(
        self,
        user_id: str,
        now: datetime,
        limit: int = 50,
        offset: int = 0,
        unread_only: bool = False,
        notification_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        stmt = select(InAppNotification).where(self._live_filter(user_id, now))
        if unread_only:
            stmt = stmt.where(InAppNotification.read.is_(False))
        if notification_type:
            stmt = stmt.where(InAppNotification.notification_type == notification_type)
        stmt = stmt.order_by(InAppNotification.created_at.desc()).offset(offset).limit(limit)
        return [_in_app_to_dict(row) for row in self.db.execute(stmt).scalars()]

    def count_unread_in_app(self, user_id: str, now: datetime) -> int:
        stmt = select(func.count()).select_from(InAppNotification).where(
            self._live_filter(user_id, now), InAppNotification.read.is_(False)
        )
        return self.db.execute(stmt).scalar_one()

    def mark_in_app_read(self, user_id: str, notification_id: str, at: datetime) -> bool:
        stmt = (
            update(InAppNotification)
            .where(InAppNotification.id == notification_id, InAppNotification.user_id == user_id)
            .values(read=True, read_at=at)
        )
        return self.db.execute(stmt).rowcount > 0

    def mark_all_in_app_read(self, user_id: str, at: datetime) -> int:
        stmt = (
            update(InAppNotification)
            .where(InAppNotification.user_id == user_id, InAppNotification.read.is_(False))
            .values(read=True, read_at=at)
        )
        return self.db.execute(stmt).rowcount

    def delete_in_app_notification(self, user_id: str, notification_id: str) -> bool:
        stmt = delete(InAppNotification).where(
            InAppNotification.id == notification_id, InAppNotification.user_id == user_id
        )
        return self.db.execute(stmt).rowcount > 0
