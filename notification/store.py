#!/usr/bin/env python3
"""
Notification Store

The store is the system of record for notifications, delivery attempts,
read state and unread counters. Every state transition made by the engine
is written through this interface. In-memory structures elsewhere (dedup
index, scheduler heap) are working sets rebuilt from the store.

Implementations:
- InMemoryNotificationStore: process-local, used by tests and sync mode
- database.store.SqlAlchemyNotificationStore: SQL backed

Read state rules:
- create_read_state() registers an unread notification and increments the
  user's counter by one
- mark_read() / mark_all_read() decrement the counter only for the rows
  they actually transition
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from notification.models import (
    AttemptState,
    DeliveryAttempt,
    Notification,
    NotificationFilter,
    NotificationStatus,
    ReadState,
)


class NotificationStore(ABC):
    """Abstract persistence interface used by every engine component."""

    @abstractmethod
    def save_notification(self, notification: Notification) -> None:
        pass

    @abstractmethod
    def get_notification(self, notification_id: str) -> Optional[Notification]:
        pass

    @abstractmethod
    def save_attempt(self, attempt: DeliveryAttempt) -> None:
        pass

    @abstractmethod
    def save_attempts(self, attempts: List[DeliveryAttempt]) -> None:
        """Persist several attempts in one write."""
        pass

    @abstractmethod
    def save_attempt_if_pending(self, attempt: DeliveryAttempt) -> bool:
        """
        Overwrite the stored attempt only while it is still pending.

        Returns False (and writes nothing) when the stored attempt has left
        the pending state, e.g. because it was cancelled.
        """
        pass

    @abstractmethod
    def get_attempt(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        pass

    @abstractmethod
    def get_attempts(self, notification_id: str) -> List[DeliveryAttempt]:
        pass

    @abstractmethod
    def query_pending(self, older_than: Optional[datetime] = None) -> List[DeliveryAttempt]:
        """Pending attempts, optionally only those not updated since `older_than`."""
        pass

    @abstractmethod
    def query_by_status(self, status: NotificationStatus) -> List[Notification]:
        pass

    @abstractmethod
    def list_notifications(self, user_id: str, notification_filter: NotificationFilter) -> List[Notification]:
        """Visible notifications for a user, newest first."""
        pass

    @abstractmethod
    def create_read_state(self, user_id: str, notification_id: str) -> None:
        pass

    @abstractmethod
    def get_read_state(self, user_id: str, notification_id: str) -> Optional[ReadState]:
        pass

    @abstractmethod
    def mark_read(self, user_id: str, notification_id: str, read_at: datetime) -> bool:
        """Returns True only when the notification transitioned to read."""
        pass

    @abstractmethod
    def mark_all_read(self, user_id: str, read_at: datetime) -> int:
        """Returns the number of notifications that transitioned to read."""
        pass

    @abstractmethod
    def get_unread_count(self, user_id: str) -> int:
        pass


class InMemoryNotificationStore(NotificationStore):
    """Dict-backed store. Returns copies so callers never alias stored rows."""

    def __init__(self, user_stripes: int = 32):
        self._records_lock = threading.Lock()
        self._notifications: Dict[str, Notification] = {}
        self._attempts: Dict[str, DeliveryAttempt] = {}
        self._attempts_by_notification: Dict[str, List[str]] = {}

        # Read state and counters are striped per user
        self._user_locks = [threading.Lock() for _ in range(user_stripes)]
        self._read_states: Dict[Tuple[str, str], ReadState] = {}
        self._user_notifications: Dict[str, List[str]] = {}
        self._unread_counts: Dict[str, int] = {}

    def _user_lock(self, user_id: str) -> threading.Lock:
        return self._user_locks[hash(user_id) % len(self._user_locks)]

    def save_notification(self, notification: Notification) -> None:
        with self._records_lock:
            self._notifications[notification.id] = notification.model_copy(deep=True)

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        stored = self._notifications.get(notification_id)
        return stored.model_copy(deep=True) if stored else None

    def save_attempt(self, attempt: DeliveryAttempt) -> None:
        self.save_attempts([attempt])

    def save_attempts(self, attempts: List[DeliveryAttempt]) -> None:
        with self._records_lock:
            for attempt in attempts:
                if attempt.id not in self._attempts:
                    self._attempts_by_notification.setdefault(attempt.notification_id, []).append(attempt.id)
                self._attempts[attempt.id] = attempt.model_copy(deep=True)

    def save_attempt_if_pending(self, attempt: DeliveryAttempt) -> bool:
        with self._records_lock:
            stored = self._attempts.get(attempt.id)
            if stored is None or stored.state != AttemptState.PENDING:
                return False
            self._attempts[attempt.id] = attempt.model_copy(deep=True)
            return True

    def get_attempt(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        stored = self._attempts.get(attempt_id)
        return stored.model_copy(deep=True) if stored else None

    def get_attempts(self, notification_id: str) -> List[DeliveryAttempt]:
        with self._records_lock:
            ids = list(self._attempts_by_notification.get(notification_id, []))
            return [self._attempts[i].model_copy(deep=True) for i in ids]

    def query_pending(self, older_than: Optional[datetime] = None) -> List[DeliveryAttempt]:
        with self._records_lock:
            pending = [
                a for a in self._attempts.values()
                if a.state == AttemptState.PENDING and (older_than is None or a.updated_at < older_than)
            ]
            return [a.model_copy(deep=True) for a in sorted(pending, key=lambda a: a.created_at)]

    def query_by_status(self, status: NotificationStatus) -> List[Notification]:
        with self._records_lock:
            matches = [n for n in self._notifications.values() if n.status == status]
            return [n.model_copy(deep=True) for n in sorted(matches, key=lambda n: n.created_at)]

    def list_notifications(self, user_id: str, notification_filter: NotificationFilter) -> List[Notification]:
        with self._user_lock(user_id):
            ids = list(self._user_notifications.get(user_id, []))
            unread = {i for i in ids if not self._read_states[(user_id, i)].read}

        results = []
        for notification_id in ids:
            notification = self._notifications.get(notification_id)
            if notification is None:
                continue
            if notification_filter.unread_only and notification_id not in unread:
                continue
            if notification_filter.type is not None and notification.type != notification_filter.type:
                continue
            if notification_filter.status is not None and notification.status != notification_filter.status:
                continue
            results.append(notification)

        results.sort(key=lambda n: n.created_at, reverse=True)
        page = results[notification_filter.offset:notification_filter.offset + notification_filter.limit]
        return [n.model_copy(deep=True) for n in page]

    def create_read_state(self, user_id: str, notification_id: str) -> None:
        with self._user_lock(user_id):
            key = (user_id, notification_id)
            if key in self._read_states:
                return
            self._read_states[key] = ReadState(user_id=user_id, notification_id=notification_id)
            self._user_notifications.setdefault(user_id, []).append(notification_id)
            self._unread_counts[user_id] = self._unread_counts.get(user_id, 0) + 1

    def get_read_state(self, user_id: str, notification_id: str) -> Optional[ReadState]:
        state = self._read_states.get((user_id, notification_id))
        return state.model_copy() if state else None

    def mark_read(self, user_id: str, notification_id: str, read_at: datetime) -> bool:
        with self._user_lock(user_id):
            state = self._read_states.get((user_id, notification_id))
            if state is None or state.read:
                return False
            state.read = True
            state.read_at = read_at
            self._unread_counts[user_id] = self._unread_counts.get(user_id, 0) - 1
            return True

    def mark_all_read(self, user_id: str, read_at: datetime) -> int:
        with self._user_lock(user_id):
            changed = 0
            for notification_id in self._user_notifications.get(user_id, []):
                state = self._read_states[(user_id, notification_id)]
                if not state.read:
                    state.read = True
                    state.read_at = read_at
                    changed += 1
            self._unread_counts[user_id] = self._unread_counts.get(user_id, 0) - changed
            return changed

    def get_unread_count(self, user_id: str) -> int:
        return self._unread_counts.get(user_id, 0)
