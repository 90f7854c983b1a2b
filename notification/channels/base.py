#!/usr/bin/env python3
"""
Notification channel interface and helpers shared by every channel.

Every channel returns a DeliveryResult from send() and never raises for a
provider failure; the queue decides whether to retry from
``DeliveryResult.retryable``.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from notification.exceptions import ProviderError
from notification.models import DeliveryResult, NotificationMessage

logger = logging.getLogger(__name__)


def _mask_email(email: str) -> str:
    """
    Mask email address for safe logging (PII protection).

    Shows only domain, e.g., "***@example.com"
    """
    if '@' not in email:
        return "***"
    local, domain = email.rsplit('@', 1)
    return f"***@{domain}"


def _mask_phone(phone: str) -> str:
    """Keep only the last four digits, e.g., "***1234"."""
    return f"***{phone[-4:]}" if len(phone) > 4 else "***"


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """Raise ProviderError for a non-2xx provider response. 5xx and 429 stay retryable."""
    if response.is_success:
        return
    status = response.status_code
    detail = response.text[:200]
    if status == 429:
        message = f"{provider} rate limit exceeded (429): {detail}"
    elif status in (401, 403):
        message = f"{provider} auth failed ({status}): {detail}"
    else:
        message = f"{provider} returned {status}: {detail}"
    raise ProviderError(message, status_code=status, retryable=status >= 500 or status == 429)


def failure_from_exception(exc: Exception, channel: str) -> DeliveryResult:
    """Convert a provider-side exception into a failed DeliveryResult."""
    if isinstance(exc, ProviderError):
        return DeliveryResult.failure(str(exc), retryable=exc.retryable, status_code=exc.status_code)
    if isinstance(exc, httpx.TimeoutException):
        return DeliveryResult.failure(f"{channel} request timeout: {exc}")
    if isinstance(exc, httpx.HTTPError):
        return DeliveryResult.failure(f"{channel} network error: {exc}")
    return DeliveryResult.failure(f"{channel} send failed: {exc}")


class NotificationChannel(ABC):
    """
    Abstract base class for all notification channels.

    All notification channels must implement this interface so the
    dispatcher can use any of them interchangeably.
    """

    def __init__(self, sandbox: bool = False, http_client: Optional[httpx.AsyncClient] = None):
        self.sandbox = sandbox
        self._http = http_client
        self._owns_http = http_client is None

    @property
    @abstractmethod
    def channel_type(self) -> str:
        """Return the channel type identifier."""
        pass

    @abstractmethod
    async def send(self, message: NotificationMessage) -> DeliveryResult:
        """
        Deliver a rendered message.

        Returns:
            DeliveryResult; provider failures are reported, not raised
        """
        pass

    async def verify(self, address: str) -> bool:
        """Check that ``address`` is usable on this channel."""
        return True

    def validate_config(self) -> bool:
        """
        Validate that the channel is properly configured.

        Returns:
            True if configured correctly, False otherwise
        """
        return True

    def _client(self, timeout: float = 10.0) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=timeout)
        return self._http

    def _sandbox_result(self, **details: Any) -> DeliveryResult:
        message_id = f"sandbox-{self.channel_type}-{uuid.uuid4().hex}"
        logger.info(f"[SANDBOX] {self.channel_type} delivery simulated ({message_id})")
        return DeliveryResult(success=True, message_id=message_id, details={'sandbox': True, **details})

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def describe(self) -> Dict[str, Any]:
        return {
            'channel': self.channel_type,
            'sandbox': self.sandbox,
            'configured': self.validate_config(),
        }
