#!/usr/bin/env python3
"""Tests for the deduplicator and its in-memory index."""

import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from notification.dedup import Deduplicator, InMemoryDedupIndex, RedisDedupIndex, generate_dedup_key
from notification.exceptions import DeduplicationUnavailable
from notification.models import DedupDecision, Notification, NotificationType

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _notification(recipient="user-1", notification_type=NotificationType.TASK, dedup_key="k1"):
    return Notification(type=notification_type, template_ref="task_assigned",
                        recipient_id=recipient, dedup_key=dedup_key)


class TestGenerateDedupKey(unittest.TestCase):

    def test_stable_for_same_inputs(self):
        a = generate_dedup_key(NotificationType.TASK, "user-1", "task-42")
        b = generate_dedup_key(NotificationType.TASK, "user-1", "task-42")
        self.assertEqual(a, b)
        self.assertEqual(len(a), 32)

    def test_differs_by_recipient_and_type(self):
        base = generate_dedup_key(NotificationType.TASK, "user-1", "task-42")
        self.assertNotEqual(base, generate_dedup_key(NotificationType.TASK, "user-2", "task-42"))
        self.assertNotEqual(base, generate_dedup_key(NotificationType.PROJECT, "user-1", "task-42"))

    def test_empty_correlation_means_no_key(self):
        self.assertEqual(generate_dedup_key(NotificationType.TASK, "user-1", ""), "")


class TestDeduplicator(unittest.TestCase):

    def setUp(self):
        self.dedup = Deduplicator(InMemoryDedupIndex(), default_window_seconds=300)

    def test_repeat_within_window_suppressed(self):
        self.assertEqual(self.dedup.check_and_record(_notification(), T0), DedupDecision.ACCEPT)
        self.assertEqual(
            self.dedup.check_and_record(_notification(), T0 + timedelta(seconds=2)),
            DedupDecision.SUPPRESS
        )

    def test_repeat_after_window_accepted(self):
        self.dedup.check_and_record(_notification(), T0)
        self.assertEqual(
            self.dedup.check_and_record(_notification(), T0 + timedelta(seconds=301)),
            DedupDecision.ACCEPT
        )

    def test_suppression_does_not_extend_window(self):
        self.dedup.check_and_record(_notification(), T0)
        self.dedup.check_and_record(_notification(), T0 + timedelta(seconds=299))
        self.assertEqual(
            self.dedup.check_and_record(_notification(), T0 + timedelta(seconds=300)),
            DedupDecision.ACCEPT
        )

    def test_same_key_other_recipient_is_independent(self):
        self.dedup.check_and_record(_notification(recipient="user-1"), T0)
        self.assertEqual(
            self.dedup.check_and_record(_notification(recipient="user-2"), T0),
            DedupDecision.ACCEPT
        )

    def test_empty_key_never_deduplicated(self):
        for _ in range(3):
            self.assertEqual(self.dedup.check_and_record(_notification(dedup_key=""), T0), DedupDecision.ACCEPT)

    def test_per_type_window(self):
        dedup = Deduplicator(InMemoryDedupIndex(), default_window_seconds=300,
                             windows_by_type={NotificationType.SECURITY: 60})
        notification = _notification(notification_type=NotificationType.SECURITY)
        dedup.check_and_record(notification, T0)
        self.assertEqual(dedup.check_and_record(notification, T0 + timedelta(seconds=61)), DedupDecision.ACCEPT)

    def test_forget_releases_key(self):
        notification = _notification()
        self.dedup.check_and_record(notification, T0)
        self.dedup.forget(notification)
        self.assertEqual(self.dedup.check_and_record(notification, T0), DedupDecision.ACCEPT)

    def test_index_failure_raises_unavailable(self):
        index = Mock()
        index.check_and_set.side_effect = ConnectionError("redis down")
        dedup = Deduplicator(index)
        with self.assertRaises(DeduplicationUnavailable):
            dedup.check_and_record(_notification(), T0)

    def test_forget_swallows_index_failure(self):
        index = Mock()
        index.release.side_effect = ConnectionError("redis down")
        Deduplicator(index).forget(_notification())
        index.release.assert_called_once()

    def test_concurrent_submissions_accept_exactly_one(self):
        decisions = []
        lock = threading.Lock()
        barrier = threading.Barrier(16)

        def submit():
            barrier.wait()
            decision = self.dedup.check_and_record(_notification(), T0)
            with lock:
                decisions.append(decision)

        threads = [threading.Thread(target=submit) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(decisions.count(DedupDecision.ACCEPT), 1)
        self.assertEqual(decisions.count(DedupDecision.SUPPRESS), 15)


class TestInMemoryDedupIndex(unittest.TestCase):

    def test_expired_entry_evicted_on_access(self):
        index = InMemoryDedupIndex(stripes=1)
        index.check_and_set("a", 0.0, 10)
        self.assertTrue(index.check_and_set("a", 11.0, 10))
        self.assertEqual(len(index), 1)

    def test_full_stripe_evicts_expired_then_oldest(self):
        index = InMemoryDedupIndex(stripes=1, max_entries_per_stripe=2)
        index.check_and_set("a", 0.0, 5)
        index.check_and_set("b", 0.0, 100)
        index.check_and_set("c", 10.0, 100)
        self.assertEqual(len(index), 2)
        self.assertFalse(index.check_and_set("b", 10.0, 100))


class TestRedisDedupIndex(unittest.TestCase):

    def test_uses_set_nx_with_window(self):
        client = Mock()
        client.set.return_value = True
        index = RedisDedupIndex(client=client)
        self.assertTrue(index.check_and_set("k", 1.0, 2.5))
        client.set.assert_called_once_with("notification:dedup:k", "1.0", nx=True, px=2500)

    def test_existing_key_suppresses(self):
        client = Mock()
        client.set.return_value = None
        self.assertFalse(RedisDedupIndex(client=client).check_and_set("k", 1.0, 300))

    def test_release_deletes_key(self):
        client = Mock()
        RedisDedupIndex(client=client).release("k")
        client.delete.assert_called_once_with("notification:dedup:k")


if __name__ == "__main__":
    unittest.main()
