#!/usr/bin/env python3
"""
Email channel: SendGrid (HTTP API), Amazon SES (boto3) or SMTP.

The recipient is read from ``data["email"]`` (or ``data["to"]``).
"""

import asyncio
import base64
import logging
import re
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Dict, Optional

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from core.config_loader import EmailChannelConfig
from notification.channels.base import (
    NotificationChannel,
    _mask_email,
    failure_from_exception,
    raise_for_provider_status,
)
from notification.exceptions import ProviderError
from notification.models import DeliveryResult, NotificationMessage

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class EmailChannel(NotificationChannel):
    """Email notification channel."""

    def __init__(
        self,
        config: Optional[EmailChannelConfig] = None,
        sandbox: bool = False,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(sandbox=sandbox, http_client=http_client)
        self.config = config or EmailChannelConfig()
        self._ses = None

    @property
    def channel_type(self) -> str:
        return 'email'

    def validate_config(self) -> bool:
        if self.config.provider == 'sendgrid':
            return bool(self.config.api_key)
        if self.config.provider == 'smtp':
            return bool(self.config.smtp_host)
        return True  # SES picks up AWS credentials from the environment

    async def verify(self, address: str) -> bool:
        return bool(EMAIL_PATTERN.match(address or ""))

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        recipient = message.data.get('email') or message.data.get('to')
        if not recipient:
            return DeliveryResult.failure("Recipient email address missing", retryable=False)
        if not EMAIL_PATTERN.match(recipient):
            return DeliveryResult.failure(f"Invalid email address: {_mask_email(recipient)}", retryable=False)
        for attachment in message.attachments:
            try:
                base64.b64decode(attachment.content, validate=True)
            except ValueError:
                return DeliveryResult.failure(
                    f"Attachment {attachment.filename} is not valid base64", retryable=False
                )

        if self.sandbox:
            return self._sandbox_result(provider=self.config.provider)

        if not self.validate_config():
            logger.error(f"Email provider {self.config.provider} is not configured")
            return DeliveryResult.failure("Email provider not configured (auth)", retryable=False)

        provider = self.config.provider
        try:
            if provider == 'sendgrid':
                message_id = await self._send_sendgrid(recipient, message)
            elif provider == 'ses':
                message_id = await asyncio.to_thread(self._send_ses, recipient, message)
            else:
                message_id = await asyncio.to_thread(self._send_smtp, recipient, message)
        except (ProviderError, httpx.HTTPError, BotoCoreError, ClientError, smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {_mask_email(recipient)} via {provider}: {e}")
            return failure_from_exception(e, 'email')

        logger.info(f"Email sent to {_mask_email(recipient)} via {provider}")
        return DeliveryResult(success=True, message_id=message_id, details={'provider': provider})

    # ============ SendGrid ============

    def build_sendgrid_payload(self, recipient: str, message: NotificationMessage) -> Dict[str, Any]:
        content = [{'type': 'text/plain', 'value': message.body}]
        if message.html:
            content.append({'type': 'text/html', 'value': message.html})

        payload: Dict[str, Any] = {
            'personalizations': [{
                'to': [{'email': recipient}],
                'custom_args': {'event_id': message.event_id, 'type': message.type.value},
            }],
            'from': {'email': self.config.from_email, 'name': self.config.from_name},
            'subject': message.subject or "",
            'content': content,
            'tracking_settings': message.data.get('trackingSettings') or {
                'click_tracking': {'enable': self.config.click_tracking},
                'open_tracking': {'enable': self.config.open_tracking},
            },
        }
        if self.config.reply_to:
            payload['reply_to'] = {'email': self.config.reply_to}
        if message.attachments:
            payload['attachments'] = [
                {
                    'content': attachment.content,
                    'filename': attachment.filename,
                    'type': attachment.content_type,
                    'disposition': 'attachment',
                }
                for attachment in message.attachments
            ]

        template_id = message.data.get('templateId') or self.config.template_ids.get(message.type.value)
        if template_id:
            # Provider-side template replaces locally rendered content
            payload['template_id'] = template_id
            payload['personalizations'][0]['dynamic_template_data'] = {
                **{k: v for k, v in message.data.items() if k not in ('email', 'to', 'templateId')},
                'subject': message.subject,
            }
            del payload['subject']
            del payload['content']
        return payload

    async def _send_sendgrid(self, recipient: str, message: NotificationMessage) -> Optional[str]:
        response = await self._client(self.config.timeout_seconds).post(
            SENDGRID_SEND_URL,
            json=self.build_sendgrid_payload(recipient, message),
            headers={'Authorization': f"Bearer {self.config.api_key}"},
        )
        raise_for_provider_status(response, 'SendGrid')
        return response.headers.get('X-Message-Id')

    # ============ SES / SMTP ============

    def build_mime_message(self, recipient: str, message: NotificationMessage) -> EmailMessage:
        msg = EmailMessage()
        msg['From'] = formataddr((self.config.from_name, self.config.from_email))
        msg['To'] = recipient
        msg['Subject'] = message.subject or ""
        msg['Message-ID'] = make_msgid()
        msg['X-Event-ID'] = message.event_id
        if self.config.reply_to:
            msg['Reply-To'] = self.config.reply_to

        msg.set_content(message.body)
        if message.html:
            msg.add_alternative(message.html, subtype='html')
        for attachment in message.attachments:
            maintype, _, subtype = attachment.content_type.partition('/')
            msg.add_attachment(
                base64.b64decode(attachment.content),
                maintype=maintype,
                subtype=subtype or 'octet-stream',
                filename=attachment.filename,
            )
        return msg

    def _ses_client(self):
        if self._ses is None:
            self._ses = boto3.client('ses', region_name=self.config.region)
        return self._ses

    def _send_ses(self, recipient: str, message: NotificationMessage) -> str:
        client = self._ses_client()
        if message.attachments:
            raw = self.build_mime_message(recipient, message)
            response = client.send_raw_email(RawMessage={'Data': raw.as_bytes()})
            return response['MessageId']

        body = {'Text': {'Data': message.body, 'Charset': 'UTF-8'}}
        if message.html:
            body['Html'] = {'Data': message.html, 'Charset': 'UTF-8'}
        kwargs: Dict[str, Any] = {
            'Source': formataddr((self.config.from_name, self.config.from_email)),
            'Destination': {'ToAddresses': [recipient]},
            'Message': {'Subject': {'Data': message.subject or "", 'Charset': 'UTF-8'}, 'Body': body},
        }
        if self.config.reply_to:
            kwargs['ReplyToAddresses'] = [self.config.reply_to]
        response = client.send_email(**kwargs)
        return response['MessageId']

    def _send_smtp(self, recipient: str, message: NotificationMessage) -> str:
        msg = self.build_mime_message(recipient, message)
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=self.config.timeout_seconds) as server:
            if self.config.smtp_use_tls:
                server.starttls()
            if self.config.smtp_username:
                server.login(self.config.smtp_username, self.config.smtp_password or "")
            server.send_message(msg)
        return msg['Message-ID']
