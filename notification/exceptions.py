#!/usr/bin/env python3
"""
Exceptions raised by the notification dispatch engine.

Policy skips (category disabled, quiet hours) are not exceptions; they are
reported through ``SendResult`` with status ``skipped``.
"""

from typing import Optional


class NotificationException(Exception):
    """Base exception for notification engine errors."""
    pass


class ValidationError(NotificationException):
    """Raised when an event is malformed. The event is never queued."""
    pass


class PreferenceValidationError(ValidationError):
    """Raised when a preference update fails validation."""
    pass


class RateLimitException(NotificationException):
    """Raised when a send is rejected by the rate limiter."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        user_id: Optional[str] = None,
        event_id: Optional[str] = None
    ):
        super().__init__(message)
        self.retry_after = retry_after
        self.user_id = user_id
        self.event_id = event_id


class ProviderError(NotificationException):
    """Raised by a channel when its external provider rejects or fails a send."""

    def __init__(
        self,
        message: str,
        channel: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = True
    ):
        super().__init__(message)
        self.channel = channel
        self.status_code = status_code
        self.retryable = retryable


class InfrastructureError(NotificationException):
    """Raised when a backing service (store, database) is unreachable."""
    pass


class StoreError(InfrastructureError):
    """Raised when a key/value store operation fails."""
    pass
