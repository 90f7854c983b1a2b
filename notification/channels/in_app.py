#!/usr/bin/env python3
"""
In-app channel: persists notifications for the application's notification
centre and pushes them to connected clients.

The realtime socket server lives outside this package; it is reached
through the RealtimeTransport protocol.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from core.config_loader import InAppChannelConfig
from database.database import Database
from notification.channels.base import NotificationChannel
from notification.exceptions import InfrastructureError
from notification.models import DeliveryResult, NotificationMessage

logger = logging.getLogger(__name__)

Subscriber = Callable[[Dict[str, Any]], None]


class RealtimeTransport(Protocol):
    """Connection registry of the realtime server (e.g. a WebSocket hub)."""

    def is_connected(self, user_id: str) -> bool:
        ...

    async def send_to_user(self, user_id: str, payload: Dict[str, Any]) -> bool:
        ...


class InAppChannel(NotificationChannel):
    """In-app notification channel."""

    def __init__(
        self,
        config: Optional[InAppChannelConfig] = None,
        database: Optional[Database] = None,
        transport: Optional[RealtimeTransport] = None,
        sandbox: bool = False
    ):
        super().__init__(sandbox=sandbox)
        self.config = config or InAppChannelConfig()
        self.database = database
        self.transport = transport
        self._subscribers: Dict[str, List[Subscriber]] = {}

    @property
    def channel_type(self) -> str:
        return 'inApp'

    def validate_config(self) -> bool:
        return self.database is not None

    def _require_database(self) -> Database:
        if self.database is None:
            raise InfrastructureError("In-app notifications require a database")
        return self.database

    def build_record(self, message: NotificationMessage, now: datetime) -> Dict[str, Any]:
        expires_at = None
        if self.config.default_expiry_days:
            expires_at = now + timedelta(days=self.config.default_expiry_days)
        return {
            'id': uuid.uuid4().hex,
            'user_id': message.user_id,
            'type': message.type.value,
            'title': message.title or message.subject,
            'body': message.body,
            'data': {k: v for k, v in message.data.items() if k != 'channels'},
            'read': False,
            'created_at': now,
            'expires_at': expires_at,
        }

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        if not message.user_id:
            return DeliveryResult.failure("In-app notification requires a user_id", retryable=False)

        if self.sandbox:
            return self._sandbox_result(user_id=message.user_id)

        now = datetime.now(timezone.utc)
        record = self.build_record(message, now)

        persisted = False
        if self.database is not None:
            keep = self.config.max_notifications_per_user

            def _persist(repo):
                repo.add_in_app_notification(record)
                repo.trim_in_app_notifications(message.user_id, keep)
                repo.delete_expired_in_app_notifications(now)

            await self.database.run(_persist)
            persisted = True
        else:
            logger.warning("No database configured; in-app notification will not be stored")

        payload = self._serialize(record)
        delivered = await self._push(message.user_id, payload)
        if delivered and self.config.auto_mark_as_read and persisted:
            await self.mark_as_read(message.user_id, record['id'])

        self._notify_subscribers(message.user_id, payload)

        logger.info(f"In-app notification {record['id']} for user {message.user_id} "
                    f"({'websocket' if delivered else 'stored'})")
        return DeliveryResult(
            success=True,
            message_id=record['id'],
            details={
                'persisted': persisted,
                'delivered': delivered,
                'method': 'websocket' if delivered else 'stored',
            },
        )

    @staticmethod
    def _serialize(record: Dict[str, Any]) -> Dict[str, Any]:
        payload = dict(record)
        for key in ('created_at', 'expires_at'):
            if isinstance(payload.get(key), datetime):
                payload[key] = payload[key].isoformat()
        return payload

    async def _push(self, user_id: str, payload: Dict[str, Any]) -> bool:
        if self.transport is None or not self.transport.is_connected(user_id):
            return False
        try:
            return bool(await self.transport.send_to_user(user_id, {'type': 'notification', 'data': payload}))
        except Exception as e:
            # The record is already stored; the client will pick it up on reconnect
            logger.warning(f"Realtime push to user {user_id} failed: {e}")
            return False

    def _notify_subscribers(self, user_id: str, payload: Dict[str, Any]) -> None:
        for callback in list(self._subscribers.get(user_id, [])):
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"In-app subscriber for user {user_id} failed: {e}")

    def subscribe(self, user_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register a local callback for a user's new notifications. Returns an unsubscribe function."""
        self._subscribers.setdefault(user_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(user_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(user_id, None)

        return unsubscribe

    # ============ Notification centre ============

    async def mark_as_read(self, user_id: str, notification_id: str) -> bool:
        at = datetime.now(timezone.utc)
        return await self._require_database().run(
            lambda repo: repo.mark_in_app_read(user_id, notification_id, at)
        )

    async def mark_all_as_read(self, user_id: str) -> int:
        at = datetime.now(timezone.utc)
        return await self._require_database().run(lambda repo: repo.mark_all_in_app_read(user_id, at))

    async def get_unread_count(self, user_id: str) -> int:
        now = datetime.now(timezone.utc)
        return await self._require_database().run(lambda repo: repo.count_unread_in_app(user_id, now))

    async def get_notifications(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        unread_only: bool = False,
        notification_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        now = datetime.now(timezone.utc)
        return await self._require_database().run(
            lambda repo: repo.list_in_app_notifications(
                user_id, now, limit=limit, offset=offset,
                unread_only=unread_only, notification_type=notification_type,
            )
        )

    async def delete_notification(self, user_id: str, notification_id: str) -> bool:
        return await self._require_database().run(
            lambda repo: repo.delete_in_app_notification(user_id, notification_id)
        )
