#!/usr/bin/env python3
"""
Tests for the per-channel delivery worker.

The sink is scripted and sleeping is recorded, so the retry loop runs
instantly and its backoff schedule can be asserted exactly.
"""

import unittest
from datetime import timedelta

from notification.delivery import DeliveryWorker, OutcomeKind, RetryPolicy
from notification.exceptions import PermanentDeliveryError, RateLimitException, TransientDeliveryError
from notification.models import (
    AttemptState,
    Channel,
    DeliveryAttempt,
    Notification,
    NotificationStatus,
    NotificationType,
    utcnow,
)
from notification.rate_limit import ChannelRateLimiter
from notification.service import aggregate_status
from notification.sinks import classify_http_status
from notification.store import InMemoryNotificationStore
from tests.mocks.notification_mocks import ScriptedSink, SleepRecorder, build_recipients, build_templates


class DeliveryWorkerTestCase(unittest.TestCase):

    channel = Channel.EMAIL

    def setUp(self):
        self.store = InMemoryNotificationStore()
        self.sleep = SleepRecorder()
        self.notification = Notification(
            type=NotificationType.TASK,
            template_ref="task_assigned",
            template_data={"task_name": "Review PR", "assigner": "Ana"},
            recipient_id="user-1",
        )
        self.store.save_notification(self.notification)
        self.attempt = DeliveryAttempt(notification_id=self.notification.id, channel=self.channel)
        self.store.save_attempt(self.attempt)

    def make_worker(self, script=None, policy=None, rate_limiter=None, recipients=None):
        self.sink = ScriptedSink(self.channel, script)
        return DeliveryWorker(
            self.channel,
            self.sink,
            build_templates(),
            self.store,
            recipients or build_recipients(),
            retry_policy=policy or RetryPolicy(jitter=False),
            rate_limiter=rate_limiter,
            sleep=self.sleep,
        )


class TestRetryLoop(DeliveryWorkerTestCase):

    def test_three_server_errors_then_success(self):
        worker = self.make_worker([classify_http_status(500)] * 3)
        result = worker.deliver(self.attempt)

        self.assertEqual(result.state, AttemptState.SENT)
        self.assertEqual(result.attempt_count, 4)
        self.assertEqual(self.sleep.delays, [2.0, 4.0, 8.0])
        stored = self.store.get_attempt(self.attempt.id)
        self.assertEqual(stored.state, AttemptState.SENT)
        self.assertEqual(stored.attempt_count, 4)
        self.assertEqual(len(self.sink.delivered), 1)

    def test_always_unavailable_fails_after_six_attempts(self):
        worker = self.make_worker([classify_http_status(503)] * 10)
        result = worker.deliver(self.attempt)

        self.assertEqual(result.state, AttemptState.FAILED)
        self.assertEqual(result.attempt_count, 6)
        self.assertEqual(self.sleep.delays, [2.0, 4.0, 8.0, 16.0, 32.0])
        self.assertIn("HTTP 503", result.error)
        stored = self.store.get_attempt(self.attempt.id)
        self.assertTrue(stored.is_terminal)
        self.assertIsNone(stored.next_retry_at)

    def test_permanent_error_not_retried(self):
        worker = self.make_worker([classify_http_status(400, "bad address")])
        result = worker.deliver(self.attempt)

        self.assertEqual(result.state, AttemptState.FAILED)
        self.assertEqual(result.attempt_count, 1)
        self.assertEqual(self.sleep.delays, [])
        self.assertIn("PermanentDeliveryError", result.error)

    def test_missing_address_is_permanent(self):
        self.notification = Notification(type=NotificationType.TASK, template_ref="task_assigned",
                                         template_data={"task_name": "x", "assigner": "y"},
                                         recipient_id="stranger")
        self.store.save_notification(self.notification)
        attempt = DeliveryAttempt(notification_id=self.notification.id, channel=self.channel)
        self.store.save_attempt(attempt)

        result = self.make_worker().deliver(attempt)
        self.assertEqual(result.state, AttemptState.FAILED)
        self.assertIn("No email address", result.error)
        self.assertEqual(self.sink.calls, 0)

    def test_template_error_is_terminal(self):
        notification = Notification(type=NotificationType.TASK, template_ref="task_assigned",
                                    template_data={}, recipient_id="user-1")
        self.store.save_notification(notification)
        attempt = DeliveryAttempt(notification_id=notification.id, channel=self.channel)
        self.store.save_attempt(attempt)

        result = self.make_worker().deliver(attempt)
        self.assertEqual(result.state, AttemptState.FAILED)
        self.assertIn("TemplateError", result.error)
        self.assertEqual(self.sleep.delays, [])

    def test_retry_after_hint_is_lower_bound(self):
        worker = self.make_worker([RateLimitException("slow down", retry_after=30)])
        result = worker.deliver(self.attempt)
        self.assertEqual(result.state, AttemptState.SENT)
        self.assertEqual(self.sleep.delays, [30])

    def test_retry_persists_next_retry_at(self):
        seen = []

        def sleep(seconds):
            seen.append(self.store.get_attempt(self.attempt.id))

        worker = self.make_worker([TransientDeliveryError("timeout")])
        worker.sleep = sleep
        worker.deliver(self.attempt)

        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0].state, AttemptState.PENDING)
        self.assertIsNotNone(seen[0].next_retry_at)
        self.assertEqual(seen[0].attempt_count, 1)

    def test_resume_waits_for_persisted_retry(self):
        self.attempt.attempt_count = 2
        self.attempt.next_retry_at = utcnow() + timedelta(seconds=60)
        self.store.save_attempt(self.attempt)

        result = self.make_worker().deliver(self.attempt)
        self.assertEqual(result.state, AttemptState.SENT)
        self.assertEqual(result.attempt_count, 3)
        self.assertEqual(len(self.sleep.delays), 1)
        self.assertTrue(55 < self.sleep.delays[0] <= 60)

    def test_exhausted_pending_attempt_is_failed(self):
        self.attempt.attempt_count = 6
        self.store.save_attempt(self.attempt)
        result = self.make_worker().deliver(self.attempt)
        self.assertEqual(result.state, AttemptState.FAILED)
        self.assertEqual(self.sink.calls, 0)

    def test_cancelled_attempt_not_sent(self):
        stored = self.store.get_attempt(self.attempt.id)
        stored.transition(AttemptState.SUPPRESSED, error="cancelled")
        self.store.save_attempt(stored)

        result = self.make_worker().deliver(self.attempt)
        self.assertEqual(result.state, AttemptState.SUPPRESSED)
        self.assertEqual(self.sink.calls, 0)

    def test_sink_exception_treated_as_transient(self):
        worker = self.make_worker()
        calls = {"n": 0}
        original = self.sink.deliver

        def flaky(message, address):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("socket closed")
            return original(message, address)

        self.sink.deliver = flaky
        result = worker.deliver(self.attempt)
        self.assertEqual(result.state, AttemptState.SENT)
        self.assertEqual(result.attempt_count, 2)


class SnapshotStore(InMemoryNotificationStore):
    """In-memory store that records every attempt the worker writes."""

    def __init__(self):
        super().__init__()
        self.snapshots = []

    def save_attempt_if_pending(self, attempt):
        saved = super().save_attempt_if_pending(attempt)
        if saved:
            self.snapshots.append(attempt.model_copy(deep=True))
        return saved


class TestCancelDuringSend(DeliveryWorkerTestCase):

    def cancel_during_send(self, worker):
        original = self.sink.deliver

        def cancelling(message, address):
            stored = self.store.get_attempt(self.attempt.id)
            stored.transition(AttemptState.SUPPRESSED, error="cancelled")
            self.store.save_attempt(stored)
            return original(message, address)

        self.sink.deliver = cancelling
        return worker

    def test_cancel_then_server_error_stays_cancelled(self):
        worker = self.cancel_during_send(self.make_worker([classify_http_status(500)] * 3))
        result = worker.deliver(self.attempt)

        self.assertEqual(self.sink.calls, 1)
        self.assertEqual(result.state, AttemptState.SUPPRESSED)
        self.assertEqual(self.sleep.delays, [])
        stored = self.store.get_attempt(self.attempt.id)
        self.assertEqual(stored.state, AttemptState.SUPPRESSED)
        self.assertEqual(stored.last_error, "cancelled")

    def test_cancel_then_success_is_not_overwritten(self):
        worker = self.cancel_during_send(self.make_worker())
        result = worker.deliver(self.attempt)

        self.assertEqual(result.state, AttemptState.SUPPRESSED)
        self.assertEqual(self.store.get_attempt(self.attempt.id).state, AttemptState.SUPPRESSED)

    def test_cancel_then_permanent_error_is_not_overwritten(self):
        worker = self.cancel_during_send(self.make_worker([classify_http_status(400)]))
        result = worker.deliver(self.attempt)

        self.assertEqual(result.state, AttemptState.SUPPRESSED)
        self.assertEqual(self.store.get_attempt(self.attempt.id).state, AttemptState.SUPPRESSED)

    def test_single_send_reports_cancelled(self):
        worker = self.cancel_during_send(self.make_worker([classify_http_status(500)]))
        outcome = worker.send(self.attempt)

        self.assertEqual(outcome.kind, OutcomeKind.CANCELLED)
        self.assertEqual(outcome.error, "cancelled")
        self.assertEqual(self.store.get_attempt(self.attempt.id).state, AttemptState.SUPPRESSED)


class TestRetryPersistence(DeliveryWorkerTestCase):

    def setUp(self):
        super().setUp()
        self.store = SnapshotStore()
        self.store.save_notification(self.notification)
        self.store.save_attempt(self.attempt)

    def test_retryable_failure_written_once_as_pending(self):
        pending_ids = []
        statuses = []

        def sleep(seconds):
            pending_ids.extend(a.id for a in self.store.query_pending())
            statuses.append(aggregate_status([self.store.get_attempt(self.attempt.id)]))

        worker = self.make_worker([classify_http_status(500)])
        worker.sleep = sleep
        result = worker.deliver(self.attempt)

        self.assertEqual(result.state, AttemptState.SENT)
        states = [s.state for s in self.store.snapshots]
        self.assertEqual(states, [AttemptState.PENDING, AttemptState.SENT])
        first = self.store.snapshots[0]
        self.assertEqual(first.attempt_count, 1)
        self.assertIsNotNone(first.next_retry_at)
        self.assertIn("HTTP 500", first.last_error)
        self.assertEqual(pending_ids, [self.attempt.id])
        self.assertEqual(statuses, [NotificationStatus.DISPATCHING])

    def test_single_send_retry_written_once(self):
        worker = self.make_worker([classify_http_status(503)])
        outcome = worker.send(self.attempt)

        self.assertEqual(outcome.kind, OutcomeKind.RETRY)
        self.assertEqual([s.state for s in self.store.snapshots], [AttemptState.PENDING])

    def test_last_try_written_as_terminal_failure(self):
        worker = self.make_worker([classify_http_status(503)] * 10)
        worker.deliver(self.attempt)

        states = [s.state for s in self.store.snapshots]
        self.assertEqual(states, [AttemptState.PENDING] * 5 + [AttemptState.FAILED])
        self.assertTrue(self.store.snapshots[-1].is_terminal)


class TestSingleSend(DeliveryWorkerTestCase):

    def test_send_reports_retry_with_delay(self):
        worker = self.make_worker([TransientDeliveryError("timeout")])
        outcome = worker.send(self.attempt)
        self.assertEqual(outcome.kind, OutcomeKind.RETRY)
        self.assertEqual(outcome.delay, 2.0)
        self.assertEqual(self.attempt.state, AttemptState.PENDING)

    def test_send_reports_failed_on_permanent(self):
        worker = self.make_worker([PermanentDeliveryError("invalid recipient")])
        outcome = worker.send(self.attempt)
        self.assertEqual(outcome.kind, OutcomeKind.FAILED)
        self.assertEqual(self.attempt.state, AttemptState.FAILED)

    def test_send_rejects_non_pending(self):
        self.attempt.transition(AttemptState.SENT)
        with self.assertRaises(ValueError):
            self.make_worker().send(self.attempt)


class TestRateLimitCooldown(DeliveryWorkerTestCase):

    def test_rate_limit_pauses_channel(self):
        now = [1000.0]
        limiter = ChannelRateLimiter(max_wait_seconds=120, clock=lambda: now[0])
        worker = self.make_worker([RateLimitException("429", retry_after=45)], rate_limiter=limiter)
        worker.deliver(self.attempt)

        # Backoff raised to the hint, then the channel cooldown before the retry
        self.assertEqual(limiter.get_wait_time(Channel.EMAIL), 45)
        self.assertEqual(self.sleep.delays, [45, 45])


class TestRetryPolicy(unittest.TestCase):

    def test_backoff_capped(self):
        policy = RetryPolicy(jitter=False)
        self.assertEqual([policy.backoff(n) for n in range(1, 10)],
                         [2, 4, 8, 16, 32, 64, 128, 256, 300])

    def test_jitter_within_bounds(self):
        policy = RetryPolicy()
        for n in range(1, 8):
            full = min(300, 2 * 2 ** (n - 1))
            delay = policy.backoff(n)
            self.assertTrue(full / 2 <= delay <= full)

    def test_retry_after_capped(self):
        policy = RetryPolicy(jitter=False)
        self.assertEqual(policy.delay_for(1, retry_after=3600), 300)


if __name__ == "__main__":
    unittest.main()
