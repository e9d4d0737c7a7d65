#!/usr/bin/env python3
"""
Notification Engine

Main service that turns one logical notification event into deliveries:
- Deduplicator: suppresses repeats of the same event inside a window
- PreferenceEvaluator: channels and dispatch time per user preference
- PriorityScheduler: holds notifications until their dispatch time
- ChannelRouter + DeliveryPools: fan-out to one pool per channel
- NotificationStore: system of record for every transition

Usage:
    from notification.service import NotificationEngine

    engine = NotificationEngine.from_config(load_config('config.yaml'))
    engine.start()

    notification_id = engine.notify(
        recipient_id="user123",
        notification_type=NotificationType.TASK,
        template_ref="task_assigned",
        template_data={"task_name": "Review PR"},
        correlation_id="task-42",
    )

    engine.get_unread_count("user123")
    engine.mark_read("user123", notification_id)
"""

import logging
import os
import queue
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from notification.config import NotificationEngineSettings, SinksConfig
from notification.dedup import (
    DedupIndex,
    Deduplicator,
    InMemoryDedupIndex,
    RedisDedupIndex,
    generate_dedup_key,
)
from notification.delivery import DeliveryWorker
from notification.exceptions import NotificationNotFound, ValidationError
from notification.models import (
    AttemptState,
    Channel,
    DedupDecision,
    DeliveryAttempt,
    DeliveryResult,
    Notification,
    NotificationFilter,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    utcnow,
)
from notification.pools import RQ_AVAILABLE, DeliveryPools, InlinePools, RQPools, ThreadPools
from notification.preferences import InMemoryPreferenceSource, PreferenceEvaluator, PreferenceSource
from notification.rate_limit import ChannelRateLimiter, RedisChannelRateLimiter
from notification.read_state import ReadStateService
from notification.recipients import RecipientDirectory, StaticRecipientDirectory
from notification.router import ChannelRouter
from notification.scheduler import PriorityScheduler
from notification.sinks import EmailSink, GatewaySink, InAppSink, SinkRegistry, WebhookSink
from notification.store import InMemoryNotificationStore, NotificationStore
from notification.templates import TemplateStore

try:
    from redis import Redis
except ImportError:
    Redis = None

logger = logging.getLogger(__name__)

__all__ = ['NotificationEngine', 'NotificationPriority', 'process_delivery_task', 'aggregate_status']

# Statuses a cancel() can still change
_CANCELLABLE = {NotificationStatus.CREATED, NotificationStatus.QUEUED, NotificationStatus.DISPATCHING}


def aggregate_status(attempts: List[DeliveryAttempt]) -> Optional[NotificationStatus]:
    """Fold per-channel attempt states into the notification status."""
    if not attempts:
        return None
    if any(not a.is_terminal for a in attempts):
        return NotificationStatus.DISPATCHING

    sent = any(a.state == AttemptState.SENT for a in attempts)
    failed = any(a.state == AttemptState.FAILED for a in attempts)
    if failed:
        return NotificationStatus.PARTIALLY_FAILED if sent else NotificationStatus.FAILED
    if sent:
        return NotificationStatus.DELIVERED
    return NotificationStatus.CANCELLED


def build_sink_registry(config: Optional[SinksConfig] = None) -> SinkRegistry:
    """Built-in sinks for every channel, then any custom overrides."""
    config = config or SinksConfig()
    timeout = config.timeout_seconds
    registry = SinkRegistry([
        InAppSink(),
        EmailSink(**config.email.model_dump(), timeout=timeout),
        GatewaySink(Channel.PUSH, **config.push.model_dump(), timeout=timeout),
        GatewaySink(Channel.SMS, **config.sms.model_dump(), timeout=timeout),
        WebhookSink(timeout=timeout),
    ])
    for module_path in config.custom:
        registry.load_from_module(module_path)
    registry.load_from_environment()
    return registry


class NotificationEngine:
    """
    Submit and Query API of the notification engine.

    The engine owns the scheduler, the per-channel pools and a result
    collector. Every collaborator can be injected; anything not given is
    built from `settings`.

    Modes (settings.engine.backend):
    - inline: submit() dispatches due notifications and delivers them in
      the caller's thread. Used by tests and scripts.
    - thread: background dispatch loop plus one thread pool per channel.
    - rq: background dispatch loop, delivery on per-channel RQ queues.
      Falls back to thread pools if Redis is unreachable.
    """

    def __init__(
        self,
        store: Optional[NotificationStore] = None,
        templates: Optional[TemplateStore] = None,
        preference_source: Optional[PreferenceSource] = None,
        sinks: Optional[SinkRegistry] = None,
        recipients: Optional[RecipientDirectory] = None,
        settings: Optional[NotificationEngineSettings] = None,
        dedup_index: Optional[DedupIndex] = None,
        rate_limiter: Optional[ChannelRateLimiter] = None,
        redis_conn: Optional["Redis"] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.settings = settings or NotificationEngineSettings()
        engine_config = self.settings.engine
        self.clock = clock

        self.store = store or InMemoryNotificationStore()
        if templates is None:
            templates = (TemplateStore.from_yaml(self.settings.templates_file)
                         if self.settings.templates_file else TemplateStore())
        self.templates = templates
        self.recipients = recipients or StaticRecipientDirectory(self.settings.recipients)
        self.sinks = sinks or build_sink_registry(self.settings.sinks)

        self.policy = self.settings.channels.build()
        self.evaluator = PreferenceEvaluator(
            preference_source or InMemoryPreferenceSource(),
            default_preference=self.settings.default_preference,
            policy=self.policy,
            digest_hour=engine_config.digest_hour,
            digest_weekday=engine_config.digest_weekday,
        )

        if dedup_index is None:
            if engine_config.dedup_backend == 'redis':
                dedup_index = RedisDedupIndex(self.settings.redis_url or 'redis://localhost:6379/0', client=redis_conn)
            else:
                dedup_index = InMemoryDedupIndex()
        self.deduplicator = Deduplicator(
            dedup_index,
            default_window_seconds=engine_config.default_suppression_window_seconds,
            windows_by_type=engine_config.suppression_windows,
        )

        if rate_limiter is None:
            if self.settings.redis_url:
                rate_limiter = RedisChannelRateLimiter(
                    self.settings.redis_url, engine_config.rate_limit_max_wait_seconds, client=redis_conn
                )
            else:
                rate_limiter = ChannelRateLimiter(engine_config.rate_limit_max_wait_seconds)
        self.rate_limiter = rate_limiter

        self.workers: Dict[Channel, DeliveryWorker] = {
            channel: DeliveryWorker(
                channel,
                self.sinks.get(channel),
                self.templates,
                self.store,
                self.recipients,
                retry_policy=engine_config.retry,
                rate_limiter=self.rate_limiter,
                sleep=sleep,
                clock=clock,
            )
            for channel in self.sinks.channels()
        }

        self.results: queue.Queue = queue.Queue()
        self.pools = self._build_pools(engine_config.backend, redis_conn)
        self.router = ChannelRouter(self.store, self.pools, self.policy)
        self.scheduler = PriorityScheduler(
            on_due=self.dispatch,
            max_poll_interval=engine_config.max_poll_interval_seconds,
            clock=clock,
        )
        self.read_state = ReadStateService(self.store)

        self._status_locks = [threading.Lock() for _ in range(64)]
        self._collector: Optional[threading.Thread] = None
        self._collector_stop = threading.Event()

    @classmethod
    def from_config(
        cls,
        config: Any,
        store: Optional[NotificationStore] = None,
        preference_source: Optional[PreferenceSource] = None,
        backend: Optional[str] = None,
        **kwargs
    ) -> "NotificationEngine":
        """
        Build an engine from an AppConfig (core.config_loader).

        A configured database URL selects the SQL store and preference
        source unless they are passed in.
        """
        settings = config.engine_settings()
        if backend is not None:
            settings.engine.backend = backend

        if config.database.url and (store is None or preference_source is None):
            from database.database import init_database
            from database.preferences import SqlPreferenceSource
            from database.store import SqlAlchemyNotificationStore

            init_database(config.database.url, echo=config.database.echo)
            store = store or SqlAlchemyNotificationStore()
            preference_source = preference_source or SqlPreferenceSource()

        return cls(store=store, preference_source=preference_source, settings=settings, **kwargs)

    def _build_pools(self, backend: str, redis_conn: Optional["Redis"]) -> DeliveryPools:
        sizes = self.settings.engine.pool_sizes
        if backend == 'inline':
            logger.info("Notification engine running inline. Deliveries happen in the caller's thread.")
            return InlinePools(self.workers, results=self.results)

        if backend == 'rq':
            if not RQ_AVAILABLE:
                logger.warning("RQ not available. Using thread pools.")
            else:
                try:
                    redis_conn = redis_conn or Redis.from_url(self.settings.redis_url or 'redis://localhost:6379/0')
                    # Validate connection with ping before using
                    redis_conn.ping()
                    logger.info("Notification engine connected to Redis")
                    return RQPools(self.workers, redis_conn, task=process_delivery_task, results=self.results)
                except Exception as e:
                    logger.error(f"Redis connection failed: {e}. Falling back to thread pools.")

        return ThreadPools(self.workers, sizes=sizes, results=self.results)

    @property
    def mode(self) -> str:
        return self.pools.mode

    def _status_lock(self, notification_id: str) -> threading.Lock:
        return self._status_locks[hash(notification_id) % len(self._status_locks)]

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    def _validate(self, notification: Notification) -> None:
        if not notification.recipient_id:
            raise ValidationError("recipient_id is required")
        if not isinstance(notification.type, NotificationType):
            raise ValidationError(f"Invalid notification type: {notification.type}")
        if not notification.template_ref:
            raise ValidationError("template_ref is required")
        if not self.templates.has(notification.template_ref):
            raise ValidationError(f"Unknown template: {notification.template_ref}")
        if notification.status != NotificationStatus.CREATED:
            raise ValidationError(f"Notification {notification.id} was already submitted")

    def submit(self, notification: Notification, now: Optional[datetime] = None) -> str:
        """
        Accept a notification for delivery.

        Returns:
            The notification id. A suppressed duplicate is stored for audit
            and its id returned as well.

        Raises:
            ValidationError: missing or invalid recipient, type or template ref
            DeduplicationUnavailable: the dedup index could not be consulted
        """
        self._validate(notification)
        now = now or self.clock()

        if self.deduplicator.check_and_record(notification, now) == DedupDecision.SUPPRESS:
            self._record_suppressed(notification)
            return notification.id

        try:
            resolution = self.evaluator.resolve(notification.recipient_id, notification.type,
                                                notification.priority, now)
            if resolution.reason == "never":
                channels = []
            else:
                channels = self.router.channels_for(notification, resolution.channels)

            notification.channels = channels
            notification.dispatch_at = resolution.dispatch_at
            notification.status = NotificationStatus.QUEUED if channels else NotificationStatus.NOT_DISPATCHED
            self.store.save_notification(notification)
            self.store.create_read_state(notification.recipient_id, notification.id)
        except Exception:
            # Let a retried submit of the same event through
            self.deduplicator.forget(notification)
            raise

        if notification.status == NotificationStatus.QUEUED:
            self.scheduler.push(notification)
            logger.info(
                f"Queued {notification.type.value} notification {notification.id} for "
                f"{notification.recipient_id} ({resolution.reason}, dispatch at "
                f"{notification.dispatch_at.isoformat()})"
            )
        else:
            logger.info(f"Notification {notification.id} not dispatched ({resolution.reason})")

        if self.mode == 'inline':
            self.run_pending(now)
        return notification.id

    def notify(
        self,
        recipient_id: str,
        notification_type: NotificationType,
        template_ref: str,
        template_data: Optional[Dict[str, Any]] = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        title: str = "",
        correlation_id: Optional[str] = None,
        dedup_key: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> str:
        """Build a Notification from plain values and submit it."""
        try:
            notification_type = NotificationType(notification_type)
            notification = Notification(
                type=notification_type,
                priority=NotificationPriority(priority),
                title=title,
                template_ref=template_ref,
                template_data=template_data or {},
                recipient_id=recipient_id,
                dedup_key=dedup_key or generate_dedup_key(notification_type, recipient_id, correlation_id or ""),
            )
        except (PydanticValidationError, ValueError) as e:
            raise ValidationError(str(e)) from e
        return self.submit(notification, now)

    def _record_suppressed(self, notification: Notification) -> None:
        notification.status = NotificationStatus.SUPPRESSED
        self.store.save_notification(notification)
        audit = DeliveryAttempt(
            notification_id=notification.id,
            channel=Channel.IN_APP,
            state=AttemptState.SUPPRESSED,
            last_error="duplicate within suppression window",
        )
        self.store.save_attempt(audit)

    # ------------------------------------------------------------------
    # Dispatch and results
    # ------------------------------------------------------------------

    def dispatch(self, notification_id: str) -> List[DeliveryAttempt]:
        """Expand a due notification into channel attempts (scheduler callback)."""
        with self._status_lock(notification_id):
            notification = self.store.get_notification(notification_id)
            if notification is None:
                logger.warning(f"Due notification {notification_id} no longer exists")
                return []
            if notification.status != NotificationStatus.QUEUED:
                logger.debug(f"Skipping dispatch of {notification_id}: {notification.status.value}")
                return []
            notification.status = NotificationStatus.DISPATCHING
            self.store.save_notification(notification)

        attempts = self.router.expand(notification, notification.channels)
        self._refresh_status(notification_id)
        return attempts

    def _refresh_status(self, notification_id: str) -> Optional[Notification]:
        with self._status_lock(notification_id):
            notification = self.store.get_notification(notification_id)
            if notification is None:
                return None
            attempts = self.store.get_attempts(notification_id)
            degraded = [a.channel for a in attempts if a.state == AttemptState.FAILED and a.is_terminal]
            status = aggregate_status(attempts)

            changed = degraded != notification.degraded_channels
            notification.degraded_channels = degraded
            if status is not None and notification.status != NotificationStatus.CANCELLED \
                    and status != notification.status:
                notification.status = status
                changed = True
            if changed:
                self.store.save_notification(notification)
        if degraded and changed:
            logger.warning(
                f"Notification {notification_id} degraded on {', '.join(c.value for c in degraded)}"
            )
        return notification

    def handle_result(self, result: DeliveryResult) -> None:
        logger.debug(
            f"Attempt {result.attempt_id} ({result.channel.value}) finished {result.state.value} "
            f"after {result.attempt_count} tries"
        )
        self._refresh_status(result.notification_id)

    def process_results(self) -> int:
        """Drain the result queue without blocking. Returns the number handled."""
        handled = 0
        while True:
            try:
                result = self.results.get_nowait()
            except queue.Empty:
                return handled
            self.handle_result(result)
            handled += 1

    def _collect_results(self) -> None:
        while not self._collector_stop.is_set():
            try:
                result = self.results.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.handle_result(result)
            except Exception as e:
                logger.error(f"Failed to apply delivery result {result.attempt_id}: {e}", exc_info=True)

    def run_pending(self, now: Optional[datetime] = None) -> int:
        """Dispatch everything due at `now` and apply finished results."""
        dispatched = self.scheduler.run_once(now)
        self.process_results()
        return dispatched

    # ------------------------------------------------------------------
    # Cancellation, recovery
    # ------------------------------------------------------------------

    def cancel(self, notification_id: str) -> int:
        """
        Cancel every still-pending attempt of a notification.

        Attempts already sent or failed are left alone. Returns the number
        of attempts cancelled.
        """
        with self._status_lock(notification_id):
            notification = self.store.get_notification(notification_id)
            if notification is None:
                raise NotificationNotFound(f"Notification {notification_id} not found")

            self.scheduler.cancel(notification_id)
            cancelled = 0
            for attempt in self.store.get_attempts(notification_id):
                if attempt.state == AttemptState.PENDING:
                    attempt.transition(AttemptState.SUPPRESSED, error="cancelled")
                    # A worker may finish the attempt between the read and this write
                    if self.store.save_attempt_if_pending(attempt):
                        cancelled += 1

            if notification.status in _CANCELLABLE:
                notification.status = NotificationStatus.CANCELLED
                self.store.save_notification(notification)

        logger.info(f"Cancelled notification {notification_id} ({cancelled} pending attempts)")
        return cancelled

    def recover(self) -> Dict[str, int]:
        """
        Rebuild working state from the store after a restart.

        Re-queues every queued notification, re-routes notifications that
        were mid-dispatch without attempts, and re-submits every pending
        attempt.
        """
        requeued = 0
        for notification in self.store.query_by_status(NotificationStatus.QUEUED):
            if self.scheduler.push(notification):
                requeued += 1

        rerouted = 0
        for notification in self.store.query_by_status(NotificationStatus.DISPATCHING):
            if not self.store.get_attempts(notification.id):
                self.router.expand(notification, notification.channels)
                rerouted += 1

        resubmitted = self._resubmit(self.store.query_pending())
        logger.info(
            f"Recovery: {requeued} notifications re-queued, {rerouted} re-routed, "
            f"{resubmitted} pending attempts re-submitted"
        )
        return {'requeued': requeued, 'rerouted': rerouted, 'resubmitted': resubmitted}

    def reconcile(self, stale_after: Optional[float] = None, now: Optional[datetime] = None) -> int:
        """Re-dispatch pending attempts not touched for `stale_after` seconds."""
        now = now or self.clock()
        stale_after = stale_after if stale_after is not None else self.settings.engine.stale_pending_seconds
        stale = [
            a for a in self.store.query_pending(older_than=now - timedelta(seconds=stale_after))
            if not self.pools.is_in_flight(a.id)
        ]
        resubmitted = self._resubmit(stale)
        if resubmitted:
            logger.warning(f"Reconcile re-dispatched {resubmitted} stale pending attempts")
        return resubmitted

    def _resubmit(self, attempts: List[DeliveryAttempt]) -> int:
        count = 0
        for attempt in attempts:
            if not self.pools.has_channel(attempt.channel):
                logger.error(f"No delivery pool for {attempt.channel.value}; leaving attempt {attempt.id}")
                continue
            if self.pools.submit(attempt):
                count += 1
        return count

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------

    def get_notification(self, notification_id: str, user_id: Optional[str] = None) -> Notification:
        notification = self.store.get_notification(notification_id)
        if notification is None or (user_id is not None and notification.recipient_id != user_id):
            raise NotificationNotFound(f"Notification {notification_id} not found")
        return notification

    def get_attempts(self, notification_id: str) -> List[DeliveryAttempt]:
        self.get_notification(notification_id)
        return self.store.get_attempts(notification_id)

    def list_notifications(
        self,
        user_id: str,
        notification_filter: Optional[NotificationFilter] = None
    ) -> List[Notification]:
        return self.store.list_notifications(user_id, notification_filter or NotificationFilter())

    def get_unread_count(self, user_id: str) -> int:
        return self.read_state.get_unread_count(user_id)

    def mark_read(self, user_id: str, notification_id: str, now: Optional[datetime] = None) -> bool:
        return self.read_state.mark_read(user_id, notification_id, now or self.clock())

    def mark_all_read(self, user_id: str, now: Optional[datetime] = None) -> int:
        return self.read_state.mark_all_read(user_id, now or self.clock())

    def get_status(self) -> Dict[str, Any]:
        """Get engine status."""
        next_at = self.scheduler.next_dispatch_at()
        return {
            'mode': self.mode,
            'scheduled': len(self.scheduler),
            'next_dispatch_at': next_at.isoformat() if next_at else None,
            'results_pending': self.results.qsize(),
            'channels': [c.value for c in self.workers],
            'pools': self.pools.status(),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start pools, the dispatch loop and the result collector."""
        if self.mode == 'inline':
            return
        self.pools.start()
        self.scheduler.start()
        if self._collector is None or not self._collector.is_alive():
            self._collector_stop.clear()
            self._collector = threading.Thread(
                target=self._collect_results, name="notification-results", daemon=True
            )
            self._collector.start()
        logger.info(f"Notification engine started ({self.mode})")

    def stop(self, wait: bool = True) -> None:
        self.scheduler.stop()
        self.pools.shutdown(wait=wait)
        self._collector_stop.set()
        if self._collector is not None:
            self._collector.join(timeout=5.0)
            self._collector = None
        self.process_results()
        logger.info("Notification engine stopped")


_worker_engine: Optional[NotificationEngine] = None
_worker_engine_lock = threading.Lock()


def set_worker_engine(engine: Optional[NotificationEngine]) -> None:
    """Engine used by process_delivery_task in this process."""
    global _worker_engine
    _worker_engine = engine


def get_worker_engine() -> NotificationEngine:
    global _worker_engine
    with _worker_engine_lock:
        if _worker_engine is None:
            from core.config_loader import load_config

            config = load_config(os.environ.get('NOTIFICATION_CONFIG', 'config.yaml'))
            if not config.database.url:
                logger.warning("No database configured; RQ worker results will not be visible to the engine")
            _worker_engine = NotificationEngine.from_config(config, backend='inline')
        return _worker_engine


# Worker task - must be at module level for RQ
def process_delivery_task(attempt_id: str) -> Optional[str]:
    """
    Deliver one attempt (called by RQ worker).

    Loads the attempt from the shared store, runs the channel worker's
    retry loop and updates the notification's aggregate status.
    """
    engine = get_worker_engine()
    attempt = engine.store.get_attempt(attempt_id)
    if attempt is None:
        logger.error(f"Attempt {attempt_id} not found")
        return None

    worker = engine.workers.get(attempt.channel)
    if worker is None:
        logger.error(f"No worker for channel {attempt.channel.value}")
        return None

    logger.info(f"Processing attempt {attempt_id} via {attempt.channel.value}")
    result = worker.deliver(attempt)
    engine.handle_result(result)
    return result.state.value
