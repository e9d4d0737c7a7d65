#!/usr/bin/env python3
"""
Deduplicator

Suppresses a notification when an equivalent one (same recipient, type and
dedup key) was accepted within the suppression window. Prevents
notification fatigue when the same event is submitted more than once.

The index is a TTL map: an accepted key is recorded with an expiry, and an
expired entry is evicted lazily the next time its key (or its stripe) is
touched. There is no sweeper thread.

Two index backends are provided:
- InMemoryDedupIndex: lock-striped dict, one lock per stripe of keys
- RedisDedupIndex: a single atomic ``SET key NX PX window`` per check

Usage:
    dedup = Deduplicator(InMemoryDedupIndex(), default_window_seconds=300)
    if dedup.check_and_record(notification) == DedupDecision.ACCEPT:
        ...
"""

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from notification.exceptions import DeduplicationUnavailable
from notification.models import DedupDecision, Notification, NotificationType, utcnow

try:
    from redis import Redis
    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False
    Redis = None

logger = logging.getLogger(__name__)

DEFAULT_SUPPRESSION_WINDOW_SECONDS = 300


def generate_dedup_key(notification_type: NotificationType, recipient_id: str, correlation_id: str) -> str:
    """
    Derive a dedup key from type, recipient and a caller correlation id.

    An empty correlation id yields an empty key, which means never dedup.
    """
    if not correlation_id:
        return ""
    key = f"{notification_type.value}:{recipient_id}:{correlation_id}"
    return hashlib.sha256(key.encode('utf-8')).hexdigest()[:32]


class DedupIndex(ABC):
    """Time-window index of recently accepted dedup keys."""

    @abstractmethod
    def check_and_set(self, key: str, now: float, window_seconds: float) -> bool:
        """
        Atomically record `key` unless a live entry exists.

        Returns:
            True if the key was recorded (accept), False if a live entry
            already existed (suppress)
        """
        pass

    @abstractmethod
    def release(self, key: str) -> None:
        """Drop `key` so the next check accepts it."""
        pass


class InMemoryDedupIndex(DedupIndex):
    """
    Process-local dedup index.

    Keys are spread over `stripes` independent dicts, each guarded by its
    own lock, so submissions for different users do not contend.
    """

    def __init__(self, stripes: int = 64, max_entries_per_stripe: int = 10000):
        self._stripes: List[Dict[str, float]] = [{} for _ in range(stripes)]
        self._locks = [threading.Lock() for _ in range(stripes)]
        self.max_entries_per_stripe = max_entries_per_stripe

    def _stripe(self, key: str) -> int:
        return hash(key) % len(self._stripes)

    def check_and_set(self, key: str, now: float, window_seconds: float) -> bool:
        idx = self._stripe(key)
        entries = self._stripes[idx]
        with self._locks[idx]:
            expires_at = entries.get(key)
            if expires_at is not None:
                if expires_at > now:
                    return False
                del entries[key]

            if len(entries) >= self.max_entries_per_stripe:
                self._evict(entries, now)

            entries[key] = now + window_seconds
            return True

    def release(self, key: str) -> None:
        idx = self._stripe(key)
        with self._locks[idx]:
            self._stripes[idx].pop(key, None)

    def _evict(self, entries: Dict[str, float], now: float) -> None:
        expired = [k for k, expires_at in entries.items() if expires_at <= now]
        for k in expired:
            del entries[k]
        # Still full: drop the entry closest to expiry
        if len(entries) >= self.max_entries_per_stripe:
            oldest = min(entries, key=entries.get)
            del entries[oldest]

    def __len__(self) -> int:
        return sum(len(s) for s in self._stripes)


class RedisDedupIndex(DedupIndex):
    """Dedup index shared by every engine process through Redis."""

    KEY_PREFIX = "notification:dedup:"

    def __init__(self, redis_url: str = 'redis://localhost:6379/0', client: Optional["Redis"] = None):
        if client is not None:
            self._redis = client
        elif REDIS_AVAILABLE:
            self._redis = Redis.from_url(redis_url, socket_connect_timeout=5, socket_timeout=5)
        else:
            raise RuntimeError("redis package is not installed")

    def check_and_set(self, key: str, now: float, window_seconds: float) -> bool:
        window_ms = max(1, int(window_seconds * 1000))
        return bool(self._redis.set(f"{self.KEY_PREFIX}{key}", str(now), nx=True, px=window_ms))

    def release(self, key: str) -> None:
        self._redis.delete(f"{self.KEY_PREFIX}{key}")


class Deduplicator:
    """
    Decides Accept or Suppress for every submitted notification.

    Args:
        index: Backing time-window index
        default_window_seconds: Suppression window when the type has none
        windows_by_type: Per-type suppression window overrides
    """

    def __init__(
        self,
        index: Optional[DedupIndex] = None,
        default_window_seconds: float = DEFAULT_SUPPRESSION_WINDOW_SECONDS,
        windows_by_type: Optional[Mapping[NotificationType, float]] = None
    ):
        self.index = index or InMemoryDedupIndex()
        self.default_window_seconds = default_window_seconds
        self.windows_by_type = dict(windows_by_type or {})

    def window_for(self, notification_type: NotificationType) -> float:
        return self.windows_by_type.get(notification_type, self.default_window_seconds)

    @staticmethod
    def index_key(notification: Notification) -> str:
        key = f"{notification.recipient_id}:{notification.type.value}:{notification.dedup_key}"
        return hashlib.sha256(key.encode('utf-8')).hexdigest()[:32]

    def check_and_record(self, notification: Notification, now: Optional[datetime] = None) -> DedupDecision:
        """
        Check the index and record the notification if it is new.

        Raises:
            DeduplicationUnavailable: the index could not be consulted
        """
        if not notification.dedup_key:
            return DedupDecision.ACCEPT

        now = now or utcnow()
        window = self.window_for(notification.type)
        try:
            recorded = self.index.check_and_set(self.index_key(notification), now.timestamp(), window)
        except Exception as e:
            raise DeduplicationUnavailable(f"Dedup index unavailable: {e}") from e

        if recorded:
            return DedupDecision.ACCEPT

        logger.info(
            f"Suppressing duplicate {notification.type.value} notification for "
            f"{notification.recipient_id} (window {window:.0f}s)"
        )
        return DedupDecision.SUPPRESS

    def forget(self, notification: Notification) -> None:
        """Release an accepted key, e.g. when the notification could not be stored."""
        if not notification.dedup_key:
            return
        try:
            self.index.release(self.index_key(notification))
        except Exception as e:
            logger.warning(f"Could not release dedup key for {notification.id}: {e}")
