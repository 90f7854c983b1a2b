#!/usr/bin/env python3
"""
Tests for the notification domain types.

Usage:
    python -m pytest tests/unit/notification/test_models.py -v
"""

import unittest

from pydantic import ValidationError as PydanticValidationError

from notification.models import (
    CATEGORY_TYPES,
    ChannelPreference,
    ChannelTypePreferences,
    DeliveryResult,
    NotificationEvent,
    NotificationType,
    Severity,
    category_for,
)


class TestNotificationEvent(unittest.TestCase):

    def test_camel_case_payload_is_accepted(self):
        event = NotificationEvent.model_validate({
            'id': 'evt-1',
            'type': 'LOGIN_ALERT',
            'userId': 'user-1',
            'data': {'location': 'Berlin'},
            'metadata': {'source': 'auth', 'correlationId': 'c-1'},
        })

        self.assertEqual(event.user_id, 'user-1')
        self.assertEqual(event.type, NotificationType.LOGIN_ALERT)
        self.assertEqual(event.severity, Severity.INFO)
        self.assertEqual(event.metadata.correlation_id, 'c-1')

    def test_event_is_immutable(self):
        event = NotificationEvent(id='evt-1', type=NotificationType.NEW_PROPOSAL, data={})
        with self.assertRaises(PydanticValidationError):
            event.id = 'other'

    def test_unknown_type_rejected(self):
        with self.assertRaises(PydanticValidationError):
            NotificationEvent.model_validate({'id': 'evt-1', 'type': 'NOT_A_TYPE', 'data': {}})

    def test_empty_id_rejected(self):
        with self.assertRaises(PydanticValidationError):
            NotificationEvent.model_validate({'id': '', 'type': 'NEW_PROPOSAL', 'data': {}})

    def test_null_data_rejected(self):
        with self.assertRaises(PydanticValidationError):
            NotificationEvent.model_validate({'id': 'evt-1', 'type': 'NEW_PROPOSAL', 'data': None})


class TestCategories(unittest.TestCase):

    def test_every_type_belongs_to_exactly_one_category(self):
        seen = [t for types in CATEGORY_TYPES.values() for t in types]
        self.assertEqual(len(seen), len(set(seen)))
        self.assertEqual(set(seen), set(NotificationType))
        self.assertEqual(len(NotificationType), 19)

    def test_category_lookup(self):
        self.assertEqual(category_for(NotificationType.BALANCE_UPDATE), 'transactions')
        self.assertEqual(category_for(NotificationType.WALLET_RECOVERY), 'security')
        self.assertEqual(category_for(NotificationType.PROPOSAL_EXECUTION), 'governance')
        self.assertEqual(category_for(NotificationType.COMMUNITY), 'marketing')


class TestChannelPreference(unittest.TestCase):

    def _pref(self, **kwargs):
        defaults = {
            'enabled': True,
            'verified': True,
            'preferences': ChannelTypePreferences(
                instant=[NotificationType.TRANSACTION_CONFIRMED],
                digest=[NotificationType.NEW_PROPOSAL],
                disabled=[NotificationType.PROMOTIONAL],
            ),
        }
        defaults.update(kwargs)
        return ChannelPreference(**defaults)

    def test_accepts_instant_and_digest_types(self):
        pref = self._pref()
        self.assertTrue(pref.accepts(NotificationType.TRANSACTION_CONFIRMED))
        self.assertTrue(pref.accepts(NotificationType.NEW_PROPOSAL))

    def test_rejects_disabled_and_unlisted_types(self):
        pref = self._pref()
        self.assertFalse(pref.accepts(NotificationType.PROMOTIONAL))
        self.assertFalse(pref.accepts(NotificationType.LOGIN_ALERT))

    def test_rejects_when_disabled_or_unverified(self):
        self.assertFalse(self._pref(enabled=False).accepts(NotificationType.TRANSACTION_CONFIRMED))
        self.assertFalse(self._pref(verified=False).accepts(NotificationType.TRANSACTION_CONFIRMED))

    def test_is_digest(self):
        pref = self._pref()
        self.assertTrue(pref.is_digest(NotificationType.NEW_PROPOSAL))
        self.assertFalse(pref.is_digest(NotificationType.TRANSACTION_CONFIRMED))

    def test_overlapping_types(self):
        lists = ChannelTypePreferences(
            instant=[NotificationType.LOGIN_ALERT],
            disabled=[NotificationType.LOGIN_ALERT],
        )
        self.assertEqual(lists.overlapping_types(), [NotificationType.LOGIN_ALERT])


class TestDeliveryResult(unittest.TestCase):

    def test_failure_defaults_to_retryable(self):
        result = DeliveryResult.failure("network error")
        self.assertFalse(result.success)
        self.assertTrue(result.retryable)

    def test_non_retryable_failure(self):
        result = DeliveryResult.failure("Invalid phone number format", retryable=False, provider='twilio')
        self.assertFalse(result.retryable)
        self.assertEqual(result.details['provider'], 'twilio')

    def test_success_is_never_retryable(self):
        self.assertFalse(DeliveryResult(success=True, message_id='m-1').retryable)


if __name__ == '__main__':
    unittest.main()
