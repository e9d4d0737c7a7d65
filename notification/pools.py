#!/usr/bin/env python3
"""
Delivery pools - one bounded pool per channel.

Each channel gets its own pool so a slow or failing transport (e.g. email)
never holds up another (e.g. in-app). Workers report every finished attempt
as a DeliveryResult message on the `results` queue; nothing waits on the
whole set of channels for a notification.

Backends:
- InlinePools: runs the attempt in the caller's thread (tests, sync mode)
- ThreadPools: a ThreadPoolExecutor per channel, sized independently
- RQPools: one Redis queue per channel ("notifications:<channel>"),
  consumed by `python -m notification.worker --channel <channel>`
"""

import logging
import queue
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Mapping, Optional, Set

from notification.delivery import DeliveryWorker
from notification.models import Channel, DeliveryAttempt, DeliveryResult

try:
    from redis import Redis
    from rq import Queue
    RQ_AVAILABLE = True
except ImportError:
    RQ_AVAILABLE = False

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZES: Dict[Channel, int] = {
    Channel.IN_APP: 4,
    Channel.EMAIL: 8,
    Channel.PUSH: 8,
    Channel.SMS: 4,
    Channel.WEBHOOK: 8,
}

RQ_QUEUE_PREFIX = "notifications:"


def rq_queue_name(channel: Channel) -> str:
    return f"{RQ_QUEUE_PREFIX}{channel.value}"


class DeliveryPools(ABC):
    """Routes attempts to the pool of their channel."""

    mode = "abstract"

    def __init__(self, workers: Mapping[Channel, DeliveryWorker], results: Optional[queue.Queue] = None):
        self.workers = dict(workers)
        self.results: queue.Queue = results if results is not None else queue.Queue()
        self._in_flight: Set[str] = set()
        self._in_flight_lock = threading.Lock()

    def has_channel(self, channel: Channel) -> bool:
        return channel in self.workers

    def is_in_flight(self, attempt_id: str) -> bool:
        return attempt_id in self._in_flight

    def _claim(self, attempt_id: str) -> bool:
        with self._in_flight_lock:
            if attempt_id in self._in_flight:
                return False
            self._in_flight.add(attempt_id)
            return True

    def _release(self, attempt_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(attempt_id)

    def _run(self, attempt: DeliveryAttempt) -> DeliveryResult:
        try:
            result = self.workers[attempt.channel].deliver(attempt)
            self.results.put(result)
            return result
        finally:
            self._release(attempt.id)

    def submit(self, attempt: DeliveryAttempt) -> bool:
        """Hand an attempt to its channel pool. False if already in flight."""
        if not self.has_channel(attempt.channel):
            raise ValueError(f"No delivery pool for channel {attempt.channel.value}")
        if not self._claim(attempt.id):
            logger.debug(f"Attempt {attempt.id} already in flight")
            return False
        try:
            self._submit(attempt)
        except Exception:
            self._release(attempt.id)
            raise
        return True

    @abstractmethod
    def _submit(self, attempt: DeliveryAttempt) -> None:
        pass

    def start(self) -> None:
        pass

    def shutdown(self, wait: bool = True) -> None:
        pass

    def status(self) -> Dict[str, Any]:
        return {'mode': self.mode, 'in_flight': len(self._in_flight)}


class InlinePools(DeliveryPools):
    mode = "inline"

    def _submit(self, attempt: DeliveryAttempt) -> None:
        self._run(attempt)


class ThreadPools(DeliveryPools):
    """One ThreadPoolExecutor per channel."""

    mode = "thread"

    def __init__(
        self,
        workers: Mapping[Channel, DeliveryWorker],
        sizes: Optional[Mapping[Channel, int]] = None,
        results: Optional[queue.Queue] = None
    ):
        super().__init__(workers, results)
        self.sizes = {c: (sizes or {}).get(c, DEFAULT_POOL_SIZES.get(c, 4)) for c in self.workers}
        self._executors: Dict[Channel, ThreadPoolExecutor] = {}

    def start(self) -> None:
        for channel, size in self.sizes.items():
            if channel not in self._executors:
                self._executors[channel] = ThreadPoolExecutor(
                    max_workers=size, thread_name_prefix=f"deliver-{channel.value}"
                )
        logger.info("Delivery pools started: " + ", ".join(f"{c.value}={s}" for c, s in self.sizes.items()))

    def _on_done(self, attempt: DeliveryAttempt) -> Callable[[Future], None]:
        def callback(future: Future) -> None:
            exc = future.exception()
            if exc is not None:
                logger.error(f"Worker crashed on attempt {attempt.id} ({attempt.channel.value}): {exc}",
                             exc_info=exc)
        return callback

    def _submit(self, attempt: DeliveryAttempt) -> None:
        if not self._executors:
            self.start()
        future = self._executors[attempt.channel].submit(self._run, attempt)
        future.add_done_callback(self._on_done(attempt))

    def shutdown(self, wait: bool = True) -> None:
        for executor in self._executors.values():
            executor.shutdown(wait=wait)
        self._executors.clear()

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status['pool_sizes'] = {c.value: s for c, s in self.sizes.items()}
        return status


class RQPools(DeliveryPools):
    """
    Distributed pools on Redis Queue.

    The enqueued task only carries the attempt id; the RQ worker process
    loads the attempt from the store, delivers it and updates the
    notification itself. Pool size is the number of workers started per
    channel queue.
    """

    mode = "rq"

    def __init__(
        self,
        workers: Mapping[Channel, DeliveryWorker],
        redis_conn: "Redis",
        task: Callable[[str], Any],
        job_timeout: str = '30m',
        results: Optional[queue.Queue] = None
    ):
        if not RQ_AVAILABLE:
            raise RuntimeError("rq is not installed")
        super().__init__(workers, results)
        self.redis_conn = redis_conn
        self.task = task
        self.job_timeout = job_timeout
        self.queues = {c: Queue(rq_queue_name(c), connection=redis_conn) for c in self.workers}

    def _submit(self, attempt: DeliveryAttempt) -> None:
        try:
            job = self.queues[attempt.channel].enqueue(
                self.task,
                attempt.id,
                job_timeout=self.job_timeout,
                result_ttl=86400,
            )
            logger.info(f"Queued attempt {attempt.id} on {rq_queue_name(attempt.channel)} as job {job.id}")
        finally:
            # The RQ worker owns the attempt from here
            self._release(attempt.id)

    def status(self) -> Dict[str, Any]:
        status = super().status()
        try:
            status['queue_lengths'] = {c.value: len(q) for c, q in self.queues.items()}
            status['redis_connected'] = bool(self.redis_conn.ping())
        except Exception as e:
            status['error'] = str(e)
        return status
