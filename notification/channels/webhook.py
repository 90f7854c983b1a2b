#!/usr/bin/env python3
"""
Webhook channel: HTTPS POST of a JSON envelope to ``data["webhookUrl"]``.

When a secret is configured the body is signed with HMAC-SHA256 and the
signature sent as ``sha256=<hex>``. Network errors and 5xx responses are
retried with exponential backoff; 4xx responses are never retried.
"""

import asyncio
import hashlib
import hmac
import ipaddress
import json
import logging
import socket
import urllib.parse
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.config_loader import WebhookChannelConfig
from notification.channels.base import NotificationChannel
from notification.models import DeliveryResult, NotificationMessage

logger = logging.getLogger(__name__)

# Keys consumed by the channel, not forwarded in the payload
_ROUTING_KEYS = {'webhookUrl', 'url', 'headers'}


def _is_retryable_error(exc: BaseException) -> bool:
    """
    Determine if a webhook delivery error is retryable.

    Only retries on:
    - Timeouts
    - Server errors (5xx)
    - Connection errors without a response

    Does NOT retry on client errors (4xx).
    """
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    if isinstance(exc, httpx.TransportError):
        return True
    return False


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _safe_url(url: str) -> str:
    parsed = urllib.parse.urlparse(url)
    return f"{parsed.scheme}://{parsed.hostname}{parsed.path}"


async def _resolves_to_public_address(hostname: str) -> bool:
    """Reject hosts that resolve to private, loopback, reserved or link-local addresses."""
    loop = asyncio.get_running_loop()
    try:
        addrinfo = await loop.getaddrinfo(hostname, None)
    except socket.gaierror:
        logger.error(f"Could not resolve hostname: {hostname}")
        return False
    for _, _, _, _, sockaddr in addrinfo:
        ip = ipaddress.ip_address(sockaddr[0])
        if ip.is_private or ip.is_loopback or ip.is_reserved or ip.is_link_local:
            logger.error(f"URL resolves to private/reserved IP: {ip}")
            return False
    return True


class WebhookChannel(NotificationChannel):
    """Generic webhook notification channel."""

    def __init__(
        self,
        config: Optional[WebhookChannelConfig] = None,
        sandbox: bool = False,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(sandbox=sandbox, http_client=http_client)
        self.config = config or WebhookChannelConfig()

    @property
    def channel_type(self) -> str:
        return 'webhook'

    @staticmethod
    def _is_http_url(address: str) -> bool:
        parsed = urllib.parse.urlparse(address or "")
        return parsed.scheme in ('http', 'https') and bool(parsed.hostname)

    async def verify(self, address: str) -> bool:
        if not self._is_http_url(address):
            return False
        if self.config.verify_public_host:
            return await _resolves_to_public_address(urllib.parse.urlparse(address).hostname)
        return True

    def build_payload(self, message: NotificationMessage) -> Dict[str, Any]:
        data = {k: v for k, v in message.data.items() if k not in _ROUTING_KEYS}
        return {
            'id': message.event_id,
            'type': message.type.value,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'data': {'subject': message.subject, 'body': message.body, **data},
            'metadata': message.metadata,
        }

    async def send(self, message: NotificationMessage) -> DeliveryResult:
        url = message.data.get('webhookUrl') or message.data.get('url')
        if not url:
            return DeliveryResult.failure("Webhook URL missing", retryable=False)
        # Sandbox checks the URL shape only, the host is never resolved
        if self.sandbox:
            if not self._is_http_url(url):
                return DeliveryResult.failure("Invalid webhook URL", retryable=False)
            return self._sandbox_result(url=_safe_url(url))

        if not await self.verify(url):
            return DeliveryResult.failure("Invalid webhook URL", retryable=False)

        # Serialize once so the signature covers exactly the bytes sent
        body = json.dumps(self.build_payload(message), default=str).encode('utf-8')
        headers = {'Content-Type': 'application/json', 'User-Agent': 'notification-webhook/1.0'}
        custom_headers = message.data.get('headers')
        if isinstance(custom_headers, dict):
            headers.update({str(k): str(v) for k, v in custom_headers.items()})
        if self.config.secret:
            headers[self.config.signature_header] = sign_payload(body, self.config.secret)

        try:
            response = await self._post_with_retry(url, body, headers)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"Webhook {_safe_url(url)} returned {status}")
            return DeliveryResult.failure(
                f"Webhook returned HTTP {status}",
                retryable=status >= 500,
                status_code=status,
            )
        except httpx.TimeoutException as e:
            logger.error(f"Webhook {_safe_url(url)} timeout: {e}")
            return DeliveryResult.failure(f"Webhook request timeout: {e}")
        except httpx.HTTPError as e:
            logger.error(f"Webhook {_safe_url(url)} network error: {e}")
            return DeliveryResult.failure(f"Webhook network error: {e}")

        logger.info(f"Webhook sent to {_safe_url(url)}")
        return DeliveryResult(
            success=True,
            message_id=response.headers.get('X-Request-ID'),
            details={'status_code': response.status_code},
        )

    async def _post_with_retry(self, url: str, body: bytes, headers: Dict[str, str]) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.retry_attempts + 1),
            wait=wait_exponential(multiplier=self.config.retry_delay_seconds, max=60),
            retry=retry_if_exception(_is_retryable_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._client(self.config.timeout_seconds).post(
                    url, content=body, headers=headers
                )
                response.raise_for_status()
        return response
