#!/usr/bin/env python3
"""
Preference Manager - per-user channel, category and quiet-hours settings.

Reads go through a store cache (TTL ~1h) over a persistent document. The
stored document is always deep-merged over hard-coded defaults, so fields
added later get a safe value even for documents written long ago. Any
infrastructure failure on read falls back to the defaults.

Usage:
    manager = PreferenceManager(store, database)
    prefs = await manager.get("user-1")
    await manager.subscribe("user-1", "email", NotificationType.NEW_PROPOSAL)
"""

import copy
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from database.database import Database
from notification.exceptions import InfrastructureError, PreferenceValidationError, StoreError
from notification.models import (
    CATEGORY_TYPES,
    ChannelType,
    NotificationType,
    QuietHours,
    UserNotificationPreferences,
)
from notification.store import NotificationStore

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ('en', 'es', 'zh', 'ja', 'ko', 'fr', 'de')
TIME_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")
MASKED_ADDRESS = "***"

CACHE_PREFIX = "notif:prefs"
DOCUMENT_PREFIX = "notif:prefs:doc"


def cache_key(user_id: str) -> str:
    return f"{CACHE_PREFIX}:{user_id}"


def derived_cache_keys(user_id: str) -> List[str]:
    return [f"notif:digest:{user_id}", f"notif:channels:{user_id}"]


def default_document(user_id: str) -> Dict[str, Any]:
    """Hard-coded defaults as a plain document."""
    T = NotificationType
    return {
        'user_id': user_id,
        'channels': {
            ChannelType.EMAIL.value: {
                'enabled': True,
                'address': None,
                'verified': False,
                'preferences': {
                    'instant': [T.TRANSACTION_CONFIRMED.value, T.TRANSACTION_FAILED.value,
                                T.SECURITY_ALERT.value, T.LOGIN_ALERT.value],
                    'digest': [T.FEATURE_UPDATE.value, T.NEW_PROPOSAL.value],
                    'disabled': [T.PROMOTIONAL.value],
                },
            },
            ChannelType.SMS.value: {
                'enabled': False,
                'address': None,
                'verified': False,
                'preferences': {
                    'instant': [T.SECURITY_ALERT.value, T.TRANSACTION_FAILED.value],
                    'digest': [],
                    'disabled': [],
                },
            },
            ChannelType.PUSH.value: {
                'enabled': True,
                'address': None,
                'verified': False,
                'preferences': {
                    'instant': [T.TRANSACTION_CONFIRMED.value, T.TRANSACTION_FAILED.value,
                                T.SECURITY_ALERT.value, T.BALANCE_UPDATE.value],
                    'digest': [],
                    'disabled': [],
                },
            },
            ChannelType.IN_APP.value: {
                'enabled': True,
                'address': None,
                'verified': True,
                'preferences': {
                    'instant': [t.value for t in NotificationType],
                    'digest': [],
                    'disabled': [],
                },
            },
        },
        'categories': {category: category != 'marketing' for category in CATEGORY_TYPES},
        'quiet_hours': QuietHours().model_dump(),
        'language': 'en',
    }


def default_preferences(user_id: str) -> UserNotificationPreferences:
    return UserNotificationPreferences.model_validate(default_document(user_id))


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``. Lists and scalars replace."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(':')
    return int(hours) * 60 + int(minutes)


def is_within_quiet_hours(quiet_hours: QuietHours, now: datetime) -> bool:
    """
    True if ``now`` falls in the quiet window, evaluated in the user's timezone.

    The window is [start, end). start > end means it crosses midnight.
    A naive ``now`` is taken as already being the user's wall-clock time.
    """
    if not quiet_hours.enabled:
        return False

    if now.tzinfo is not None:
        try:
            now = now.astimezone(ZoneInfo(quiet_hours.timezone))
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown quiet hours timezone {quiet_hours.timezone!r}, using UTC")
            now = now.astimezone(timezone.utc)

    current = now.hour * 60 + now.minute
    start = _minutes(quiet_hours.start)
    end = _minutes(quiet_hours.end)

    if start > end:
        return current >= start or current < end
    return start <= current < end


class PreferenceManager:
    """Stores and retrieves user notification preferences."""

    def __init__(
        self,
        store: NotificationStore,
        database: Optional[Database] = None,
        cache_ttl_seconds: int = 3600
    ):
        """
        Args:
            store: Shared store used for the read cache (and as the document
                store when no database is configured)
            database: Persistent document store
            cache_ttl_seconds: Cache TTL for preference reads
        """
        self.store = store
        self.database = database
        self.cache_ttl_seconds = cache_ttl_seconds

    # ============ Persistence ============

    async def _load_document(self, user_id: str) -> Optional[Dict[str, Any]]:
        if self.database is not None:
            return await self.database.run(lambda repo: repo.get_preference_document(user_id))
        raw = await self.store.get(f"{DOCUMENT_PREFIX}:{user_id}")
        return UserNotificationPreferences.model_validate_json(raw).model_dump(mode='json') if raw else None

    async def _save_document(self, prefs: UserNotificationPreferences) -> None:
        document = prefs.model_dump(mode='json')
        try:
            if self.database is not None:
                await self.database.run(
                    lambda repo: repo.save_preference_document(prefs.user_id, document)
                )
            else:
                await self.store.set(f"{DOCUMENT_PREFIX}:{prefs.user_id}", prefs.model_dump_json())
        except (SQLAlchemyError, StoreError) as e:
            raise InfrastructureError(f"Failed to persist preferences for {prefs.user_id}: {e}") from e

    async def _cache(self, prefs: UserNotificationPreferences) -> None:
        try:
            await self.store.set(cache_key(prefs.user_id), prefs.model_dump_json(), ttl=self.cache_ttl_seconds)
        except StoreError as e:
            logger.warning(f"Failed to cache preferences for {prefs.user_id}: {e}")

    # ============ Reads ============

    async def get(self, user_id: str) -> UserNotificationPreferences:
        """Return the user's preferences, creating them from defaults on first read."""
        try:
            cached = await self.store.get(cache_key(user_id))
            if cached:
                return UserNotificationPreferences.model_validate_json(cached)
        except StoreError as e:
            logger.warning(f"Preference cache unavailable for {user_id}: {e}")
        except PydanticValidationError as e:
            logger.warning(f"Discarding malformed cached preferences for {user_id}: {e}")

        try:
            stored = await self._load_document(user_id)
        except (SQLAlchemyError, StoreError, PydanticValidationError) as e:
            logger.error(f"Failed to load preferences for {user_id}, using defaults: {e}")
            return default_preferences(user_id)

        try:
            prefs = UserNotificationPreferences.model_validate(
                deep_merge(default_document(user_id), stored or {})
            )
        except PydanticValidationError as e:
            logger.error(f"Stored preferences for {user_id} are invalid, using defaults: {e}")
            return default_preferences(user_id)

        await self._cache(prefs)
        return prefs

    # ============ Writes ============

    def _validate(self, document: Dict[str, Any]) -> UserNotificationPreferences:
        try:
            prefs = UserNotificationPreferences.model_validate(document)
        except PydanticValidationError as e:
            raise PreferenceValidationError(f"Invalid preferences: {e}") from e

        if prefs.language not in SUPPORTED_LANGUAGES:
            raise PreferenceValidationError(f"Unsupported language: {prefs.language}")

        quiet_hours = prefs.quiet_hours
        for label, value in (('start', quiet_hours.start), ('end', quiet_hours.end)):
            if not TIME_PATTERN.match(value):
                raise PreferenceValidationError(f"Invalid quiet hours {label} time: {value}")
        try:
            ZoneInfo(quiet_hours.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise PreferenceValidationError(f"Unknown timezone: {quiet_hours.timezone}")

        known_channels = {c.value for c in ChannelType}
        for name, channel in prefs.channels.items():
            if name not in known_channels:
                raise PreferenceValidationError(f"Unknown channel: {name}")
            if channel.address:
                if name == ChannelType.EMAIL.value and '@' not in channel.address:
                    raise PreferenceValidationError("Invalid email address")
                if name == ChannelType.SMS.value and not channel.address.startswith('+'):
                    raise PreferenceValidationError("Phone number must include country code")
            overlap = channel.preferences.overlapping_types()
            if overlap:
                names = ', '.join(sorted(t.value for t in overlap))
                raise PreferenceValidationError(f"Types in more than one list for {name}: {names}")

        return prefs

    async def set(self, user_id: str, partial: Dict[str, Any]) -> UserNotificationPreferences:
        """
        Merge ``partial`` into the current preferences, validate, persist,
        refresh the cache and invalidate derived caches.

        Raises:
            PreferenceValidationError: If the merged preferences are invalid
            InfrastructureError: If the document cannot be persisted
        """
        current = await self.get(user_id)
        merged = deep_merge(current.model_dump(mode='json'), partial)
        merged['user_id'] = user_id
        prefs = self._validate(merged)

        await self._save_document(prefs)
        await self._cache(prefs)
        try:
            await self.store.delete(*derived_cache_keys(user_id))
        except StoreError as e:
            logger.warning(f"Failed to invalidate derived caches for {user_id}: {e}")

        logger.info(f"Updated notification preferences for {user_id}")
        return prefs

    async def update_channel(self, user_id: str, channel: str, partial: Dict[str, Any]) -> UserNotificationPreferences:
        """Update one channel. A changed address must be verified again."""
        update = dict(partial)
        if 'address' in update and 'verified' not in update:
            current = (await self.get(user_id)).channels.get(channel)
            if current is None or current.address != update['address']:
                update['verified'] = False
        return await self.set(user_id, {'channels': {channel: update}})

    async def verify_channel(self, user_id: str, channel: str) -> UserNotificationPreferences:
        return await self.set(user_id, {'channels': {channel: {'verified': True}}})

    async def subscribe(self, user_id: str, channel: str, notification_type: NotificationType) -> UserNotificationPreferences:
        """Move ``notification_type`` out of ``disabled``; add it to ``instant`` unless it is a digest type."""
        prefs = await self.get(user_id)
        lists = prefs.channels[channel].preferences if channel in prefs.channels else None
        instant = [t.value for t in lists.instant] if lists else []
        digest = [t.value for t in lists.digest] if lists else []
        disabled = [t.value for t in lists.disabled if t != notification_type] if lists else []
        if notification_type.value not in digest and notification_type.value not in instant:
            instant.append(notification_type.value)
        return await self.set(user_id, {'channels': {channel: {'preferences': {
            'instant': instant, 'digest': digest, 'disabled': disabled,
        }}}})

    async def unsubscribe(self, user_id: str, channel: str, notification_type: NotificationType) -> UserNotificationPreferences:
        """Remove ``notification_type`` from ``instant`` and ``digest`` and add it to ``disabled``."""
        prefs = await self.get(user_id)
        lists = prefs.channels[channel].preferences if channel in prefs.channels else None
        instant = [t.value for t in lists.instant if t != notification_type] if lists else []
        digest = [t.value for t in lists.digest if t != notification_type] if lists else []
        disabled = [t.value for t in lists.disabled] if lists else []
        if notification_type.value not in disabled:
            disabled.append(notification_type.value)
        return await self.set(user_id, {'channels': {channel: {'preferences': {
            'instant': instant, 'digest': digest, 'disabled': disabled,
        }}}})

    async def unsubscribe_all(self, user_id: str) -> UserNotificationPreferences:
        return await self.set(user_id, {'categories': {category: False for category in CATEGORY_TYPES}})

    # ============ Export / import ============

    async def export_preferences(self, user_id: str) -> Dict[str, Any]:
        """Preferences with every channel address masked."""
        document = (await self.get(user_id)).model_dump(mode='json')
        for channel in document['channels'].values():
            if channel.get('address'):
                channel['address'] = MASKED_ADDRESS
        document['exported_at'] = datetime.now(timezone.utc).isoformat()
        return document

    async def import_preferences(self, user_id: str, data: Dict[str, Any]) -> UserNotificationPreferences:
        """
        Apply exported preferences. Addresses are never imported and every
        imported channel must be verified again.
        """
        if not isinstance(data.get('channels'), dict) or not isinstance(data.get('categories'), dict):
            raise PreferenceValidationError("Import requires 'channels' and 'categories'")

        channels = {}
        for name, channel in data['channels'].items():
            imported = {k: v for k, v in (channel or {}).items() if k != 'address'}
            imported['verified'] = False
            channels[name] = imported

        partial: Dict[str, Any] = {'channels': channels, 'categories': data['categories']}
        for key in ('quiet_hours', 'language'):
            if key in data:
                partial[key] = data[key]
        return await self.set(user_id, partial)
