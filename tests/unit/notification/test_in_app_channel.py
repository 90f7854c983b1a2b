#!/usr/bin/env python3
"""
Tests for InAppChannel persistence, realtime push and the notification centre.

Usage:
    python -m pytest tests/unit/notification/test_in_app_channel.py -v
"""

import unittest
from unittest.mock import AsyncMock, MagicMock

from core.config_loader import InAppChannelConfig
from database.database import Database
from notification.channels.in_app import InAppChannel
from notification.exceptions import InfrastructureError
from notification.models import NotificationMessage, NotificationType


def _message(user_id='user-1', notification_type=NotificationType.TRANSACTION_CONFIRMED, body="Tx 0xabc confirmed."):
    return NotificationMessage(
        event_id='evt-1',
        user_id=user_id,
        channel='inApp',
        type=notification_type,
        title="Transaction confirmed",
        body=body,
        data={'txHash': '0xabc', 'channels': ['inApp']},
    )


def _transport(connected=True, delivered=True):
    transport = MagicMock()
    transport.is_connected.return_value = connected
    transport.send_to_user = AsyncMock(return_value=delivered)
    return transport


class TestInAppChannel(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.database = Database("sqlite://")
        self.database.create_tables()
        self.channel = InAppChannel(InAppChannelConfig(), database=self.database)

    def tearDown(self):
        self.database.dispose()

    async def test_send_persists_notification(self):
        result = await self.channel.send(_message())

        self.assertTrue(result.success)
        self.assertTrue(result.details['persisted'])
        self.assertEqual(result.details['method'], 'stored')

        notifications = await self.channel.get_notifications('user-1')
        self.assertEqual(len(notifications), 1)
        stored = notifications[0]
        self.assertEqual(stored['id'], result.message_id)
        self.assertEqual(stored['title'], "Transaction confirmed")
        self.assertEqual(stored['data'], {'txHash': '0xabc'})
        self.assertFalse(stored['read'])
        self.assertIsNotNone(stored['expires_at'])

    async def test_oldest_notifications_trimmed(self):
        channel = InAppChannel(InAppChannelConfig(max_notifications_per_user=2), database=self.database)
        for i in range(3):
            await channel.send(_message(body=f"message {i}"))

        bodies = [n['body'] for n in await channel.get_notifications('user-1')]

        self.assertEqual(bodies, ["message 2", "message 1"])

    async def test_unread_count_and_mark_read(self):
        first = await self.channel.send(_message())
        await self.channel.send(_message())
        self.assertEqual(await self.channel.get_unread_count('user-1'), 2)

        self.assertTrue(await self.channel.mark_as_read('user-1', first.message_id))
        self.assertEqual(await self.channel.get_unread_count('user-1'), 1)

        # another user's notification id does not match
        self.assertFalse(await self.channel.mark_as_read('user-2', first.message_id))

        self.assertEqual(await self.channel.mark_all_as_read('user-1'), 1)
        self.assertEqual(await self.channel.get_unread_count('user-1'), 0)

    async def test_filters_and_delete(self):
        await self.channel.send(_message())
        alert = await self.channel.send(_message(notification_type=NotificationType.SECURITY_ALERT))
        await self.channel.mark_as_read('user-1', alert.message_id)

        unread = await self.channel.get_notifications('user-1', unread_only=True)
        alerts = await self.channel.get_notifications('user-1', notification_type='SECURITY_ALERT')

        self.assertEqual([n['type'] for n in unread], ['TRANSACTION_CONFIRMED'])
        self.assertEqual([n['id'] for n in alerts], [alert.message_id])

        self.assertTrue(await self.channel.delete_notification('user-1', alert.message_id))
        self.assertEqual(len(await self.channel.get_notifications('user-1')), 1)

    async def test_connected_user_gets_realtime_push(self):
        transport = _transport()
        channel = InAppChannel(InAppChannelConfig(auto_mark_as_read=True), self.database, transport)

        result = await channel.send(_message())

        self.assertTrue(result.details['delivered'])
        self.assertEqual(result.details['method'], 'websocket')
        user_id, payload = transport.send_to_user.call_args[0]
        self.assertEqual(user_id, 'user-1')
        self.assertEqual(payload['type'], 'notification')
        self.assertEqual(payload['data']['id'], result.message_id)
        self.assertEqual(await channel.get_unread_count('user-1'), 0)

    async def test_push_failure_still_succeeds(self):
        transport = _transport()
        transport.send_to_user.side_effect = ConnectionError("socket closed")
        channel = InAppChannel(InAppChannelConfig(), self.database, transport)

        result = await channel.send(_message())

        self.assertTrue(result.success)
        self.assertFalse(result.details['delivered'])

    async def test_subscribers_notified_until_unsubscribed(self):
        received = []
        unsubscribe = self.channel.subscribe('user-1', received.append)

        await self.channel.send(_message())
        unsubscribe()
        await self.channel.send(_message())

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0]['body'], "Tx 0xabc confirmed.")

    async def test_missing_user_id_fails(self):
        result = await self.channel.send(_message(user_id=None))
        self.assertFalse(result.success)
        self.assertFalse(result.retryable)


class TestInAppWithoutDatabase(unittest.IsolatedAsyncioTestCase):

    async def test_send_succeeds_without_persisting(self):
        channel = InAppChannel()

        result = await channel.send(_message())

        self.assertTrue(result.success)
        self.assertFalse(result.details['persisted'])
        self.assertFalse(channel.validate_config())

    async def test_notification_centre_requires_database(self):
        with self.assertRaises(InfrastructureError):
            await InAppChannel().get_unread_count('user-1')


if __name__ == '__main__':
    unittest.main()
