#!/usr/bin/env python3
"""
Priority Scheduler

Orders queued notifications by (dispatch_at, priority rank, created_at):
notifications due now before those due later, urgent before high before
normal before low, FIFO within the same priority.

A single dispatch thread pops every entry whose dispatch_at has passed and
hands it to the `on_due` callback (the engine, which routes it to the
channel pools). When nothing is due it sleeps until the next known
dispatch_at, or at most `max_poll_interval` seconds, and is woken early
when an earlier entry is pushed.

Usage:
    scheduler = PriorityScheduler(on_due=engine.dispatch)
    scheduler.start()
    scheduler.push(notification)
    ...
    scheduler.stop()
"""

import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from notification.models import Notification, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_POLL_INTERVAL = 30.0


@dataclass(order=True)
class ScheduledEntry:
    dispatch_at: datetime
    rank: int
    created_at: datetime
    seq: int
    notification_id: str = field(compare=False)


class PriorityScheduler:
    """Priority queue plus the dispatch loop that drains it."""

    def __init__(
        self,
        on_due: Optional[Callable[[str], None]] = None,
        max_poll_interval: float = DEFAULT_MAX_POLL_INTERVAL,
        clock: Callable[[], datetime] = utcnow
    ):
        self.on_due = on_due
        self.max_poll_interval = max_poll_interval
        self.clock = clock

        self._heap: List[ScheduledEntry] = []
        self._queued: Dict[str, ScheduledEntry] = {}
        self._seq = itertools.count()
        self._condition = threading.Condition()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def push(self, notification: Notification) -> bool:
        """
        Queue a notification for dispatch at notification.dispatch_at.

        Returns False if the notification is already queued.
        """
        dispatch_at = notification.dispatch_at or notification.created_at
        entry = ScheduledEntry(
            dispatch_at=dispatch_at,
            rank=notification.priority.rank,
            created_at=notification.created_at,
            seq=next(self._seq),
            notification_id=notification.id,
        )
        with self._condition:
            if notification.id in self._queued:
                return False
            earliest = self._heap[0] if self._heap else None
            heapq.heappush(self._heap, entry)
            self._queued[notification.id] = entry
            if earliest is None or entry < earliest:
                self._condition.notify_all()
        logger.debug(f"Scheduled {notification.id} for {dispatch_at.isoformat()}")
        return True

    def cancel(self, notification_id: str) -> bool:
        """Drop a queued notification. The heap entry is skipped when popped."""
        with self._condition:
            return self._queued.pop(notification_id, None) is not None

    def is_queued(self, notification_id: str) -> bool:
        return notification_id in self._queued

    def pop_due(self, now: Optional[datetime] = None) -> List[str]:
        """Pop every queued notification whose dispatch_at <= now, in order."""
        now = now or self.clock()
        due = []
        with self._condition:
            while self._heap and self._heap[0].dispatch_at <= now:
                entry = heapq.heappop(self._heap)
                if self._queued.get(entry.notification_id) is not entry:
                    continue
                del self._queued[entry.notification_id]
                due.append(entry.notification_id)
        return due

    def next_dispatch_at(self) -> Optional[datetime]:
        with self._condition:
            while self._heap and self._queued.get(self._heap[0].notification_id) is not self._heap[0]:
                heapq.heappop(self._heap)
            return self._heap[0].dispatch_at if self._heap else None

    def __len__(self) -> int:
        return len(self._queued)

    def _seconds_until_next(self) -> float:
        next_at = self.next_dispatch_at()
        if next_at is None:
            return self.max_poll_interval
        delay = (next_at - self.clock()).total_seconds()
        return min(max(delay, 0.0), self.max_poll_interval)

    def run_once(self, now: Optional[datetime] = None) -> int:
        """Dispatch everything due. Returns the number of notifications handed off."""
        due = self.pop_due(now)
        for notification_id in due:
            try:
                self.on_due(notification_id)
            except Exception as e:
                logger.error(f"Failed to dispatch notification {notification_id}: {e}", exc_info=True)
        return len(due)

    def run(self) -> None:
        logger.info("Dispatch loop started")
        while not self._stop_event.is_set():
            self.run_once()
            with self._condition:
                if self._stop_event.is_set():
                    break
                timeout = self._seconds_until_next()
                if timeout > 0:
                    self._condition.wait(timeout)
        logger.info("Dispatch loop stopped")

    def start(self) -> None:
        if self.on_due is None:
            raise RuntimeError("PriorityScheduler.start() requires an on_due callback")
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="notification-dispatch", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        with self._condition:
            self._condition.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
