#!/usr/bin/env python3
"""
Tests for EmailChannel (SendGrid over a mocked transport, SMTP patched).

Usage:
    python -m pytest tests/unit/notification/test_email_channel.py -v
"""

import json
import unittest
from unittest.mock import MagicMock, patch

import httpx

from core.config_loader import EmailChannelConfig
from notification.channels.email import SENDGRID_SEND_URL, EmailChannel
from notification.models import Attachment, NotificationMessage, NotificationType


def _message(**overrides):
    fields = {
        'event_id': 'evt-1',
        'user_id': 'user-1',
        'channel': 'email',
        'type': NotificationType.TRANSACTION_CONFIRMED,
        'subject': "Transaction confirmed",
        'body': "Your transaction 0xabc has been confirmed.",
        'html': "<p>Your transaction 0xabc has been confirmed.</p>",
        'data': {'email': 'alice@example.com', 'txHash': '0xabc'},
    }
    fields.update(overrides)
    return NotificationMessage(**fields)


class TestSendGrid(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(202, headers={'X-Message-Id': 'sg-123'})

        self.http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.config = EmailChannelConfig(provider='sendgrid', api_key='SG.test')
        self.channel = EmailChannel(self.config, http_client=self.http)

    async def asyncTearDown(self):
        await self.http.aclose()

    async def test_send_posts_rendered_content(self):
        result = await self.channel.send(_message())

        self.assertTrue(result.success)
        self.assertEqual(result.message_id, 'sg-123')
        request = self.requests[0]
        self.assertEqual(str(request.url), SENDGRID_SEND_URL)
        self.assertEqual(request.headers['Authorization'], 'Bearer SG.test')

        payload = json.loads(request.content)
        self.assertEqual(payload['personalizations'][0]['to'], [{'email': 'alice@example.com'}])
        self.assertEqual(payload['subject'], "Transaction confirmed")
        self.assertEqual([c['type'] for c in payload['content']], ['text/plain', 'text/html'])

    async def test_provider_template_replaces_content(self):
        self.config.template_ids = {'TRANSACTION_CONFIRMED': 'd-123'}

        await self.channel.send(_message())

        payload = json.loads(self.requests[0].content)
        self.assertEqual(payload['template_id'], 'd-123')
        self.assertNotIn('content', payload)
        dynamic = payload['personalizations'][0]['dynamic_template_data']
        self.assertEqual(dynamic['txHash'], '0xabc')
        self.assertNotIn('email', dynamic)

    async def test_attachments_are_forwarded(self):
        message = _message(attachments=[Attachment(filename='receipt.txt', content='aGVsbG8=', content_type='text/plain')])

        await self.channel.send(message)

        payload = json.loads(self.requests[0].content)
        self.assertEqual(payload['attachments'][0]['filename'], 'receipt.txt')

    async def test_malformed_attachment_not_retryable(self):
        message = _message(attachments=[Attachment(filename='receipt.pdf', content='not base64!', content_type='application/pdf')])

        result = await self.channel.send(message)

        self.assertFalse(result.success)
        self.assertFalse(result.retryable)
        self.assertIn('receipt.pdf', result.error)
        self.assertEqual(self.requests, [])

    async def test_server_error_is_retryable(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503, text="busy")))
        channel = EmailChannel(self.config, http_client=http)

        result = await channel.send(_message())
        await http.aclose()

        self.assertFalse(result.success)
        self.assertTrue(result.retryable)

    async def test_client_error_is_not_retryable(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(400, text="bad")))
        channel = EmailChannel(self.config, http_client=http)

        result = await channel.send(_message())
        await http.aclose()

        self.assertFalse(result.success)
        self.assertFalse(result.retryable)
        self.assertEqual(result.details['status_code'], 400)


class TestEmailValidation(unittest.IsolatedAsyncioTestCase):

    async def test_invalid_address_rejected_without_sending(self):
        channel = EmailChannel(EmailChannelConfig(provider='sendgrid', api_key='SG.test'))

        result = await channel.send(_message(data={'email': 'not-an-email'}))

        self.assertFalse(result.success)
        self.assertFalse(result.retryable)
        self.assertIn('Invalid email address', result.error)

    async def test_missing_recipient(self):
        result = await EmailChannel().send(_message(data={}))
        self.assertFalse(result.success)
        self.assertFalse(result.retryable)

    async def test_sandbox_skips_provider(self):
        channel = EmailChannel(EmailChannelConfig(provider='sendgrid'), sandbox=True)

        result = await channel.send(_message())

        self.assertTrue(result.success)
        self.assertTrue(result.message_id.startswith('sandbox-email-'))

    async def test_unconfigured_provider_fails(self):
        channel = EmailChannel(EmailChannelConfig(provider='sendgrid'))

        result = await channel.send(_message())

        self.assertFalse(result.success)
        self.assertFalse(result.retryable)

    async def test_verify(self):
        channel = EmailChannel()
        self.assertTrue(await channel.verify('alice@example.com'))
        self.assertFalse(await channel.verify('alice@example'))


class TestSmtp(unittest.IsolatedAsyncioTestCase):

    @patch('notification.channels.email.smtplib.SMTP')
    async def test_smtp_send(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value.__enter__.return_value = server
        config = EmailChannelConfig(provider='smtp', smtp_host='mail.local', smtp_username='u', smtp_password='p')

        result = await EmailChannel(config).send(_message())

        self.assertTrue(result.success)
        mock_smtp.assert_called_once_with('mail.local', 587, timeout=10.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('u', 'p')
        sent = server.send_message.call_args[0][0]
        self.assertEqual(sent['To'], 'alice@example.com')
        self.assertEqual(sent['X-Event-ID'], 'evt-1')
        self.assertEqual(result.message_id, sent['Message-ID'])


if __name__ == '__main__':
    unittest.main()
