#!/usr/bin/env python3
"""
SMS channel: Twilio, Amazon SNS or MessageBird.

The destination is read from ``data["phone"]`` (or ``phoneNumber``/``to``)
and must be an E.164 number. Bodies longer than ``max_length`` are cut
with a trailing ellipsis.
"""

import asyncio
import logging
import re
from typing import Optional

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from core.config_loader import SmsChannelConfig
from notification.channels.base import (
    NotificationChannel,
    _mask_phone,
    failure_from_exception,
    raise_for_provider_status,
)
from notification.exceptions import ProviderError
from notification.models import DeliveryResult, NotificationMessage

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"
MESSAGEBIRD_MESSAGES_URL = "https://rest.messagebird.com/messages"

PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
_PHONE_NOISE = re.compile(r"[\s\-()]")

ELLIPSIS = "..."


def normalize_phone(phone: str) -> str:
    return _PHONE_NOISE.sub("", phone or "")


def truncate_body(body: str, max_length: int) -> str:
    if len(body) <= max_length:
        return body
    return body[:max_length - len(ELLIPSIS)] + ELLIPSIS


class SmsChannel(NotificationChannel):
    """SMS notification channel."""

    def __init__(
        self,
        config: Optional[SmsChannelConfig] = None,
        sandbox: bool = False,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(sandbox=sandbox, http_client=http_client)
        self.config = config or SmsChannelConfig()
        self._sns = None

    @property
    def channel_type(self) -> str:
        return 'sms'

    def validate_config(self) -> bool:
        if self.config.provider == 'twilio':
            return all([self.config.account_sid, self.config.auth_token, self.config.from_number])
        if self.config.provider == 'messagebird':
            return bool(self.config.access_key)
        return True

    async def verify(self, address: str) -> bool:
        return bool(PHONE_PATTERN.match(normalize_phone(address)))

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        raw_phone = message.data.get('phone') or message.data.get('phoneNumber') or message.data.get('to')
        phone = normalize_phone(raw_phone) if raw_phone else ""
        if not PHONE_PATTERN.match(phone):
            return DeliveryResult.failure("Invalid phone number format", retryable=False)

        body = truncate_body(message.body, self.config.max_length)
        if self.sandbox:
            return self._sandbox_result(provider=self.config.provider, length=len(body))

        if not self.validate_config():
            logger.error(f"SMS provider {self.config.provider} is not configured")
            return DeliveryResult.failure("SMS provider not configured (auth)", retryable=False)

        provider = self.config.provider
        try:
            if provider == 'twilio':
                message_id = await self._send_twilio(phone, body)
            elif provider == 'messagebird':
                message_id = await self._send_messagebird(phone, body)
            else:
                message_id = await asyncio.to_thread(self._send_sns, phone, body)
        except (ProviderError, httpx.HTTPError, BotoCoreError, ClientError) as e:
            logger.error(f"Failed to send SMS to {_mask_phone(phone)} via {provider}: {e}")
            return failure_from_exception(e, 'sms')

        logger.info(f"SMS sent to {_mask_phone(phone)} via {provider}")
        return DeliveryResult(
            success=True,
            message_id=message_id,
            details={'provider': provider, 'length': len(body)},
        )

    async def _send_twilio(self, phone: str, body: str) -> Optional[str]:
        response = await self._client(self.config.timeout_seconds).post(
            TWILIO_MESSAGES_URL.format(account_sid=self.config.account_sid),
            data={'To': phone, 'From': self.config.from_number, 'Body': body},
            auth=(self.config.account_sid, self.config.auth_token),
        )
        raise_for_provider_status(response, 'Twilio')
        return response.json().get('sid')

    async def _send_messagebird(self, phone: str, body: str) -> Optional[str]:
        response = await self._client(self.config.timeout_seconds).post(
            MESSAGEBIRD_MESSAGES_URL,
            json={
                'originator': self.config.from_number or 'ZKFair',
                'recipients': [phone.lstrip('+')],
                'body': body,
            },
            headers={'Authorization': f"AccessKey {self.config.access_key}"},
        )
        raise_for_provider_status(response, 'MessageBird')
        return response.json().get('id')

    def _send_sns(self, phone: str, body: str) -> str:
        if self._sns is None:
            self._sns = boto3.client('sns', region_name=self.config.region)
        response = self._sns.publish(
            PhoneNumber=phone,
            Message=body,
            MessageAttributes={
                'AWS.SNS.SMS.SMSType': {'DataType': 'String', 'StringValue': 'Transactional'},
            },
        )
        return response['MessageId']
