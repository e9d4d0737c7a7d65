#!/usr/bin/env python3
"""
Channel rate limiter.

When any worker hits a rate limit on a channel, it stores a "wait until"
timestamp for that channel. Every other worker of the channel checks it and
waits before its next send. Redis shares the cooldown across processes;
without Redis the cooldown is process-local.
"""

import logging
import threading
import time
from typing import Dict, Optional

from notification.models import Channel

try:
    from redis import Redis
    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False
    Redis = None

logger = logging.getLogger(__name__)

DEFAULT_MAX_WAIT_SECONDS = 300


class ChannelRateLimiter:
    """Process-local channel cooldowns."""

    def __init__(self, max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS, clock=time.time):
        self.max_wait_seconds = max_wait_seconds
        self.clock = clock
        self._wait_until: Dict[Channel, float] = {}
        self._lock = threading.Lock()

    def set_rate_limit(self, channel: Channel, retry_after: float) -> None:
        wait = min(max(retry_after, 0.0), self.max_wait_seconds)
        with self._lock:
            until = self.clock() + wait
            self._wait_until[channel] = max(until, self._wait_until.get(channel, 0.0))
        logger.warning(f"Rate limit on {channel.value}: pausing sends for {wait:.1f}s")

    def get_wait_time(self, channel: Channel) -> float:
        """Seconds to wait before the next send on `channel` (0 if none)."""
        wait_until = self._wait_until.get(channel)
        if wait_until is None:
            return 0.0
        return min(max(0.0, wait_until - self.clock()), self.max_wait_seconds)


class RedisChannelRateLimiter(ChannelRateLimiter):
    """Channel cooldowns shared by every worker through Redis."""

    RATE_LIMIT_PREFIX = "notification:rate_limit:"

    def __init__(
        self,
        redis_url: str = 'redis://localhost:6379/0',
        max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
        client: Optional["Redis"] = None
    ):
        super().__init__(max_wait_seconds)
        self.redis_url = redis_url
        self._redis = client

    def _get_redis(self) -> Optional["Redis"]:
        """Get Redis connection (lazy init)."""
        if self._redis is None and REDIS_AVAILABLE:
            self._redis = Redis.from_url(self.redis_url)
        return self._redis

    def set_rate_limit(self, channel: Channel, retry_after: float) -> None:
        redis = self._get_redis()
        if redis is None:
            return super().set_rate_limit(channel, retry_after)
        wait = min(max(retry_after, 0.0), self.max_wait_seconds)
        key = f"{self.RATE_LIMIT_PREFIX}{channel.value}"
        wait_until = time.time() + wait
        redis.setex(key, int(wait) + 5, str(wait_until))  # Store +5s buffer
        logger.warning(f"Rate limit on {channel.value}: pausing sends for {wait:.1f}s")

    def get_wait_time(self, channel: Channel) -> float:
        redis = self._get_redis()
        if redis is None:
            return super().get_wait_time(channel)

        wait_until = redis.get(f"{self.RATE_LIMIT_PREFIX}{channel.value}")
        if not wait_until:
            return 0.0
        try:
            # Redis returns bytes
            wait_time = float(wait_until) - time.time()
        except (ValueError, TypeError):
            return 0.0
        return min(max(0.0, wait_time), self.max_wait_seconds)
