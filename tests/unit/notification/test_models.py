#!/usr/bin/env python3
"""
Tests for the notification domain models.

Covers the delivery attempt lifecycle, quiet-hours windows and the
immutability of a notification's recipient and type.
"""

import unittest
from datetime import time

import pydantic

from notification.exceptions import InvalidTransitionError
from notification.models import (
    AttemptState,
    Channel,
    DeliveryAttempt,
    Notification,
    NotificationPriority,
    NotificationType,
    Preference,
    QuietHours,
)


class TestDeliveryAttemptLifecycle(unittest.TestCase):

    def setUp(self):
        self.attempt = DeliveryAttempt(notification_id="n1", channel=Channel.EMAIL)

    def test_pending_to_sent(self):
        self.attempt.transition(AttemptState.SENT)
        self.assertEqual(self.attempt.state, AttemptState.SENT)
        self.assertTrue(self.attempt.is_terminal)

    def test_sent_is_terminal(self):
        self.attempt.transition(AttemptState.SENT)
        with self.assertRaises(InvalidTransitionError):
            self.attempt.transition(AttemptState.PENDING)
        with self.assertRaises(InvalidTransitionError):
            self.attempt.transition(AttemptState.FAILED)

    def test_suppressed_is_terminal(self):
        self.attempt.transition(AttemptState.SUPPRESSED, error="cancelled")
        self.assertTrue(self.attempt.is_terminal)
        with self.assertRaises(InvalidTransitionError):
            self.attempt.transition(AttemptState.SENT)

    def test_failed_can_retry_below_ceiling(self):
        self.attempt.record_try()
        self.attempt.transition(AttemptState.FAILED, error="HTTP 503")
        self.attempt.transition(AttemptState.PENDING, max_attempts=6)
        self.assertEqual(self.attempt.state, AttemptState.PENDING)
        self.assertEqual(self.attempt.last_error, "HTTP 503")

    def test_failed_cannot_retry_at_ceiling(self):
        for _ in range(6):
            self.attempt.record_try()
        self.attempt.transition(AttemptState.FAILED, error="HTTP 503")
        with self.assertRaises(InvalidTransitionError):
            self.attempt.transition(AttemptState.PENDING, max_attempts=6)

    def test_failed_with_retry_scheduled_is_not_terminal(self):
        from notification.models import utcnow
        self.attempt.transition(AttemptState.FAILED, error="timeout", next_retry_at=utcnow())
        self.assertFalse(self.attempt.is_terminal)

    def test_failed_to_sent_not_allowed(self):
        self.attempt.transition(AttemptState.FAILED, error="boom")
        with self.assertRaises(InvalidTransitionError):
            self.attempt.transition(AttemptState.SENT)

    def test_record_try_increments_count(self):
        self.attempt.record_try()
        self.attempt.record_try()
        self.assertEqual(self.attempt.attempt_count, 2)


class TestQuietHours(unittest.TestCase):

    def test_same_day_window(self):
        quiet = QuietHours(start=time(13, 0), end=time(14, 0))
        self.assertTrue(quiet.contains(time(13, 30)))
        self.assertFalse(quiet.contains(time(14, 0)))
        self.assertFalse(quiet.contains(time(12, 59)))

    def test_window_wrapping_midnight(self):
        quiet = QuietHours(start=time(22, 0), end=time(7, 0))
        self.assertTrue(quiet.wraps_midnight)
        self.assertTrue(quiet.contains(time(23, 0)))
        self.assertTrue(quiet.contains(time(3, 0)))
        self.assertFalse(quiet.contains(time(7, 0)))
        self.assertFalse(quiet.contains(time(12, 0)))

    def test_empty_window_never_matches(self):
        quiet = QuietHours(start=time(8, 0), end=time(8, 0))
        self.assertFalse(quiet.contains(time(8, 0)))

    def test_preference_timezone_prefers_quiet_hours_zone(self):
        pref = Preference(
            quiet_hours=QuietHours(start=time(22, 0), end=time(7, 0), timezone="Asia/Taipei"),
            timezone="Europe/London",
        )
        self.assertEqual(pref.effective_timezone, "Asia/Taipei")
        self.assertEqual(Preference(timezone="Europe/London").effective_timezone, "Europe/London")
        self.assertEqual(Preference().effective_timezone, "UTC")


class TestNotificationModel(unittest.TestCase):

    def _notification(self):
        return Notification(type=NotificationType.TASK, template_ref="task_assigned", recipient_id="user-1")

    def test_recipient_is_frozen(self):
        notification = self._notification()
        with self.assertRaises(pydantic.ValidationError):
            notification.recipient_id = "someone-else"

    def test_type_is_frozen(self):
        notification = self._notification()
        with self.assertRaises(pydantic.ValidationError):
            notification.type = NotificationType.SYSTEM

    def test_defaults(self):
        notification = self._notification()
        self.assertEqual(notification.priority, NotificationPriority.NORMAL)
        self.assertEqual(notification.dedup_key, "")
        self.assertEqual(len(notification.id), 32)

    def test_priority_rank_order(self):
        ranks = [p.rank for p in (NotificationPriority.URGENT, NotificationPriority.HIGH,
                                  NotificationPriority.NORMAL, NotificationPriority.LOW)]
        self.assertEqual(ranks, sorted(ranks))


if __name__ == "__main__":
    unittest.main()
