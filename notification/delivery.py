#!/usr/bin/env python3
"""
Delivery Worker

One worker per channel. A worker renders the notification's template for
its channel, looks up the destination address, hands the message to the
channel sink and records the outcome on the DeliveryAttempt.

Error handling:
- TemplateError / missing address / PermanentDeliveryError: the attempt
  fails terminally, no retry
- TransientDeliveryError: retried with exponential backoff and jitter
  (base 2s, cap 5 min, 6 attempts). A sink's retry-after hint is a lower
  bound on the delay. After the last attempt the failure is terminal.

Usage:
    worker = DeliveryWorker(Channel.EMAIL, sink, templates, store, recipients)
    result = worker.deliver(attempt)        # full retry loop
    outcome = worker.send(attempt)          # one try: SENT / RETRY / FAILED / CANCELLED
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt
from tenacity.wait import wait_base

from notification.exceptions import (
    AttemptCancelled,
    DeliveryError,
    PermanentDeliveryError,
    RateLimitException,
    TemplateError,
    TransientDeliveryError,
)
from notification.models import (
    AttemptState,
    Channel,
    DeliveryAttempt,
    DeliveryResult,
    Notification,
    utcnow,
)
from notification.rate_limit import ChannelRateLimiter
from notification.recipients import RecipientDirectory
from notification.sinks import ChannelSink
from notification.store import NotificationStore
from notification.templates import TemplateStore

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """Exponential backoff with jitter."""
    model_config = ConfigDict(frozen=True)

    base_seconds: float = 2.0
    cap_seconds: float = 300.0
    max_attempts: int = 6
    jitter: bool = True

    def backoff(self, attempt_number: int) -> float:
        """Delay after the `attempt_number`-th failed try (1-based)."""
        delay = min(self.cap_seconds, self.base_seconds * (2 ** max(0, attempt_number - 1)))
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        return delay

    def delay_for(self, attempt_number: int, retry_after: Optional[float] = None) -> float:
        delay = self.backoff(attempt_number)
        if retry_after:
            delay = max(delay, min(retry_after, self.cap_seconds))
        return delay


class wait_backoff_with_hint(wait_base):
    """tenacity wait strategy backed by a RetryPolicy and sink retry-after hints."""

    def __init__(self, policy: RetryPolicy, attempts_before: int = 0):
        self.policy = policy
        self.attempts_before = attempts_before

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(exc, 'retry_after', None)
        return self.policy.delay_for(self.attempts_before + retry_state.attempt_number, hint)


class OutcomeKind(str, Enum):
    SENT = "sent"
    RETRY = "retry"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class DeliveryOutcome:
    kind: OutcomeKind
    delay: Optional[float] = None
    error: Optional[str] = None


class DeliveryWorker:
    """
    Sends attempts for a single channel.

    Every write the worker makes is conditional on the stored attempt still
    being pending, so a cancel that lands mid-send is never overwritten. A
    retryable failure is persisted once, directly as pending with its
    next_retry_at; only a terminal failure is ever stored as failed.
    """

    def __init__(
        self,
        channel: Channel,
        sink: ChannelSink,
        templates: TemplateStore,
        store: NotificationStore,
        recipients: RecipientDirectory,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[ChannelRateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        if sink.channel != channel:
            raise ValueError(f"Sink for {sink.channel.value} cannot serve channel {channel.value}")
        self.channel = channel
        self.sink = sink
        self.templates = templates
        self.store = store
        self.recipients = recipients
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter
        self.sleep = sleep
        self.clock = clock

    def _load(self, attempt: DeliveryAttempt) -> Optional[Notification]:
        notification = self.store.get_notification(attempt.notification_id)
        if notification is None:
            raise PermanentDeliveryError(f"Notification {attempt.notification_id} no longer exists")
        return notification

    def _commit(self, attempt: DeliveryAttempt) -> None:
        if not self.store.save_attempt_if_pending(attempt):
            logger.info(f"Attempt {attempt.id} on {self.channel.value} was cancelled; dropping its result")
            raise AttemptCancelled(attempt.id)

    def _fail(self, attempt: DeliveryAttempt, error: str) -> None:
        attempt.transition(AttemptState.FAILED, error=error)
        self._commit(attempt)

    def _is_cancelled(self, attempt: DeliveryAttempt) -> bool:
        stored = self.store.get_attempt(attempt.id)
        return stored is not None and stored.state == AttemptState.SUPPRESSED

    def _try_once(self, attempt: DeliveryAttempt) -> None:
        """
        One delivery try. Returns on success, raises on failure.

        A transient failure is only recorded in memory unless it used the
        last try; the caller persists it together with the retry schedule.

        Raises:
            TransientDeliveryError: caller may retry
            PermanentDeliveryError, TemplateError: terminal
            AttemptCancelled: the attempt was cancelled during the try
        """
        if self.rate_limiter is not None:
            wait = self.rate_limiter.get_wait_time(self.channel)
            if wait > 0:
                logger.info(f"Channel {self.channel.value} cooling down. Waiting {wait:.1f}s...")
                self.sleep(wait)

        attempt.record_try()
        try:
            notification = self._load(attempt)
            message = self.templates.render(notification.template_ref, notification.template_data, self.channel)
            address = self.recipients.get_address(notification.recipient_id, self.channel)
            if not address:
                raise PermanentDeliveryError(
                    f"No {self.channel.value} address for user {notification.recipient_id}"
                )
        except TemplateError as e:
            logger.error(f"Template error for attempt {attempt.id} ({self.channel.value}): {e}")
            self._fail(attempt, f"TemplateError: {e}")
            raise
        except PermanentDeliveryError as e:
            self._fail(attempt, f"PermanentDeliveryError: {e}")
            raise

        try:
            result = self.sink.deliver(message, address)
            error = result.error
            if not result.ok and error is None:
                error = TransientDeliveryError("Sink reported failure without an error")
        except DeliveryError as e:
            error = e
        except Exception as e:
            logger.error(f"Unexpected {self.channel.value} sink error: {e}", exc_info=True)
            error = TransientDeliveryError(f"{type(e).__name__}: {e}")

        if error is None:
            attempt.transition(AttemptState.SENT)
            self._commit(attempt)
            logger.info(f"Attempt {attempt.id} sent via {self.channel.value} (try {attempt.attempt_count})")
            return

        if isinstance(error, RateLimitException) and self.rate_limiter is not None:
            self.rate_limiter.set_rate_limit(self.channel, error.retry_after or 60)

        attempt.transition(AttemptState.FAILED, error=f"{type(error).__name__}: {error}")
        if not isinstance(error, TransientDeliveryError) or attempt.attempt_count >= self.retry_policy.max_attempts:
            self._commit(attempt)
        elif self._is_cancelled(attempt):
            raise AttemptCancelled(attempt.id)
        raise error

    def _schedule_retry(self, attempt: DeliveryAttempt, delay: float) -> None:
        attempt.transition(
            AttemptState.PENDING,
            next_retry_at=self.clock() + timedelta(seconds=delay),
            max_attempts=self.retry_policy.max_attempts,
        )
        self._commit(attempt)
        logger.warning(
            f"Attempt {attempt.id} on {self.channel.value} failed "
            f"({attempt.attempt_count}/{self.retry_policy.max_attempts}): {attempt.last_error}. "
            f"Retrying in {delay:.1f}s"
        )

    def _reload(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        return self.store.get_attempt(attempt.id) or attempt

    def send(self, attempt: DeliveryAttempt) -> DeliveryOutcome:
        """Make exactly one try and report SENT, RETRY(delay), FAILED or CANCELLED."""
        if attempt.state != AttemptState.PENDING:
            raise ValueError(f"Attempt {attempt.id} is {attempt.state.value}, not pending")
        try:
            try:
                self._try_once(attempt)
            except TransientDeliveryError as e:
                if attempt.attempt_count >= self.retry_policy.max_attempts:
                    return DeliveryOutcome(OutcomeKind.FAILED, error=attempt.last_error)
                delay = self.retry_policy.delay_for(attempt.attempt_count, e.retry_after)
                self._schedule_retry(attempt, delay)
                return DeliveryOutcome(OutcomeKind.RETRY, delay=delay, error=attempt.last_error)
            except (PermanentDeliveryError, TemplateError):
                return DeliveryOutcome(OutcomeKind.FAILED, error=attempt.last_error)
        except AttemptCancelled:
            return DeliveryOutcome(OutcomeKind.CANCELLED, error=self._reload(attempt).last_error)
        return DeliveryOutcome(OutcomeKind.SENT)

    def deliver(self, attempt: DeliveryAttempt) -> DeliveryResult:
        """Run the attempt to a terminal state, sleeping between retries."""
        attempt = self._reload(attempt)

        remaining = self.retry_policy.max_attempts - attempt.attempt_count
        try:
            if attempt.state == AttemptState.PENDING and remaining > 0:
                if attempt.next_retry_at is not None:
                    # Resumed after a restart: keep the backoff already scheduled
                    wait = (attempt.next_retry_at - self.clock()).total_seconds()
                    if wait > 0:
                        self.sleep(min(wait, self.retry_policy.cap_seconds))

                def before_sleep(retry_state: RetryCallState) -> None:
                    self._schedule_retry(attempt, retry_state.next_action.sleep)

                retrying = Retrying(
                    stop=stop_after_attempt(remaining),
                    wait=wait_backoff_with_hint(self.retry_policy, attempt.attempt_count),
                    retry=retry_if_exception_type(TransientDeliveryError),
                    sleep=self.sleep,
                    before_sleep=before_sleep,
                    reraise=True,
                )
                try:
                    for try_state in retrying:
                        with try_state:
                            if self._is_cancelled(attempt):
                                raise AttemptCancelled(attempt.id)
                            self._try_once(attempt)
                except (TransientDeliveryError, PermanentDeliveryError, TemplateError):
                    logger.error(
                        f"Delivery of {attempt.notification_id} via {self.channel.value} failed "
                        f"after {attempt.attempt_count} attempt(s): {attempt.last_error}"
                    )
            elif attempt.state == AttemptState.PENDING:
                self._fail(attempt, f"Retry ceiling of {self.retry_policy.max_attempts} attempts reached")
        except AttemptCancelled:
            logger.info(f"Attempt {attempt.id} cancelled; not sending via {self.channel.value}")
            attempt = self._reload(attempt)

        return DeliveryResult(
            notification_id=attempt.notification_id,
            attempt_id=attempt.id,
            channel=self.channel,
            state=attempt.state,
            attempt_count=attempt.attempt_count,
            error=attempt.last_error,
        )
