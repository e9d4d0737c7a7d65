#!/usr/bin/env python3
"""
Notification engine exceptions.

Every error raised by the engine derives from NotificationError so callers
can catch the whole family at once. The delivery errors carry enough
information for the worker to decide between retrying and giving up.
"""

from typing import Optional


class NotificationError(Exception):
    """Base exception for the notification engine."""
    pass


class ValidationError(NotificationError):
    """Raised when a submission is rejected before any side effect."""
    pass


class NotificationNotFound(NotificationError):
    """Raised when a notification does not exist for the given user."""
    pass


class InvalidTransitionError(NotificationError):
    """Raised on a delivery attempt state change that is not allowed."""
    pass


class AttemptCancelled(NotificationError):
    """Raised inside a worker when its attempt was cancelled while a try was in flight."""
    pass


class TemplateError(NotificationError):
    """Raised when a template cannot be rendered. Fatal for the attempt."""
    pass


class SchedulingError(NotificationError):
    """Raised when dispatch timing cannot be evaluated (e.g. bad timezone)."""
    pass


class DeduplicationUnavailable(SchedulingError):
    """Raised when the dedup index cannot be consulted."""
    pass


class DeliveryError(NotificationError):
    """Base class for errors reported by a channel sink."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Network timeout, 5xx or rate limit. Retried with backoff."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class RateLimitException(TransientDeliveryError):
    """Raised when a transport reports a rate limit."""

    def __init__(self, message: str, retry_after: Optional[float] = None, status_code: Optional[int] = 429):
        super().__init__(message, status_code=status_code, retry_after=retry_after)


class PermanentDeliveryError(DeliveryError):
    """Invalid recipient or a 4xx other than rate limit. Never retried."""
    pass
