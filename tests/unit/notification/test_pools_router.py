#!/usr/bin/env python3
"""Tests for channel policy, routing and the per-channel delivery pools."""

import queue
import threading
from unittest.mock import Mock, patch

import pytest

from notification.delivery import DeliveryWorker, RetryPolicy
from notification.models import (
    AttemptState,
    Channel,
    DeliveryAttempt,
    DeliveryResult,
    Notification,
    NotificationStatus,
    NotificationType,
)
from notification.policy import ChannelPolicy
from notification.pools import InlinePools, RQPools, ThreadPools, rq_queue_name
from notification.router import ChannelRouter
from notification.store import InMemoryNotificationStore
from tests.mocks.notification_mocks import (
    ScriptedSink,
    SleepRecorder,
    build_recipients,
    build_templates,
    make_engine,
)


@pytest.fixture
def store():
    return InMemoryNotificationStore()


def _workers(store, channels, sinks=None):
    sinks = sinks or {}
    return {
        channel: DeliveryWorker(
            channel,
            sinks.get(channel) or ScriptedSink(channel),
            build_templates(),
            store,
            build_recipients(),
            retry_policy=RetryPolicy(jitter=False),
            sleep=SleepRecorder(),
        )
        for channel in channels
    }


def _saved_notification(store, notification_type=NotificationType.TASK):
    notification = Notification(
        type=notification_type,
        template_ref="security_alert" if notification_type == NotificationType.SECURITY else "task_assigned",
        template_data={"task_name": "Review PR", "assigner": "Ana", "event": "New login"},
        recipient_id="user-1",
    )
    store.save_notification(notification)
    return notification


class TestChannelPolicy:

    def test_security_forced_channels_added(self):
        policy = ChannelPolicy()
        final = policy.with_forced(NotificationType.SECURITY, {Channel.SMS})
        assert final == {Channel.SMS, Channel.IN_APP, Channel.EMAIL}

    def test_filter_drops_invalid_channels(self):
        policy = ChannelPolicy()
        assert policy.filter(NotificationType.ACHIEVEMENT, {Channel.SMS, Channel.PUSH}) == {Channel.PUSH}

    def test_custom_tables(self):
        policy = ChannelPolicy(valid={NotificationType.TEAM: [Channel.EMAIL]}, forced={})
        assert policy.valid_for(NotificationType.TEAM) == {Channel.EMAIL}
        assert policy.forced_for(NotificationType.SECURITY) == frozenset()


class TestChannelRouter:

    def test_security_with_only_sms_enabled_routes_three_channels(self, store):
        results = queue.Queue()
        pools = InlinePools(_workers(store, Channel), results=results)
        router = ChannelRouter(store, pools, ChannelPolicy())
        notification = _saved_notification(store, NotificationType.SECURITY)

        attempts = router.expand(notification, {Channel.SMS})

        assert [a.channel for a in attempts] == [Channel.IN_APP, Channel.EMAIL, Channel.SMS]
        assert {a.state for a in store.get_attempts(notification.id)} == {AttemptState.SENT}
        assert results.qsize() == 3

    def test_channel_without_pool_fails_attempt(self, store):
        pools = InlinePools(_workers(store, [Channel.IN_APP]))
        router = ChannelRouter(store, pools, ChannelPolicy())
        notification = _saved_notification(store)

        router.expand(notification, {Channel.IN_APP, Channel.PUSH})

        by_channel = {a.channel: a for a in store.get_attempts(notification.id)}
        assert by_channel[Channel.IN_APP].state == AttemptState.SENT
        assert by_channel[Channel.PUSH].state == AttemptState.FAILED
        assert "no pool" in by_channel[Channel.PUSH].last_error

    def test_attempts_persisted_before_submit(self, store):
        pools = Mock()
        pools.has_channel.return_value = True
        seen = []
        pools.submit.side_effect = lambda attempt: seen.append(store.get_attempt(attempt.id))
        router = ChannelRouter(store, pools, ChannelPolicy())

        router.expand(_saved_notification(store), {Channel.EMAIL, Channel.PUSH})

        assert len(seen) == 2
        assert all(a is not None and a.state == AttemptState.PENDING for a in seen)


class TestThreadPools:

    def test_slow_channel_does_not_block_others(self, store):
        release = threading.Event()

        class BlockingSink(ScriptedSink):
            def deliver(self, message, address):
                release.wait(timeout=10)
                return super().deliver(message, address)

        results = queue.Queue()
        workers = _workers(store, [Channel.EMAIL, Channel.IN_APP], sinks={Channel.EMAIL: BlockingSink(Channel.EMAIL)})
        pools = ThreadPools(workers, sizes={Channel.EMAIL: 1, Channel.IN_APP: 1}, results=results)
        pools.start()
        try:
            notification = _saved_notification(store)
            email = DeliveryAttempt(notification_id=notification.id, channel=Channel.EMAIL)
            in_app = DeliveryAttempt(notification_id=notification.id, channel=Channel.IN_APP)
            store.save_attempts([email, in_app])

            pools.submit(email)
            pools.submit(in_app)

            first = results.get(timeout=5)
            assert first.channel == Channel.IN_APP
            assert pools.is_in_flight(email.id)

            release.set()
            second = results.get(timeout=5)
            assert second.channel == Channel.EMAIL
            assert second.state == AttemptState.SENT
        finally:
            release.set()
            pools.shutdown()

    def test_duplicate_submit_while_in_flight(self, store):
        release = threading.Event()

        class BlockingSink(ScriptedSink):
            def deliver(self, message, address):
                release.wait(timeout=10)
                return super().deliver(message, address)

        results = queue.Queue()
        workers = _workers(store, [Channel.EMAIL], sinks={Channel.EMAIL: BlockingSink(Channel.EMAIL)})
        pools = ThreadPools(workers, results=results)
        try:
            notification = _saved_notification(store)
            attempt = DeliveryAttempt(notification_id=notification.id, channel=Channel.EMAIL)
            store.save_attempt(attempt)

            assert pools.submit(attempt)
            assert not pools.submit(attempt)
            release.set()
            assert isinstance(results.get(timeout=5), DeliveryResult)
        finally:
            release.set()
            pools.shutdown()

    def test_pool_sizes_default_per_channel(self, store):
        pools = ThreadPools(_workers(store, [Channel.EMAIL, Channel.SMS]), sizes={Channel.SMS: 2})
        assert pools.sizes == {Channel.EMAIL: 8, Channel.SMS: 2}
        assert pools.status()['pool_sizes'] == {'email': 8, 'sms': 2}


class TestRQPools:

    def test_enqueue_on_channel_queue(self, store, monkeypatch):
        queues = {}

        class FakeQueue:
            def __init__(self, name, connection=None):
                self.name = name
                self.jobs = []
                queues[name] = self

            def enqueue(self, func, *args, **kwargs):
                self.jobs.append((func, args, kwargs))
                return Mock(id="job-1")

            def __len__(self):
                return len(self.jobs)

        monkeypatch.setattr("notification.pools.Queue", FakeQueue)
        task = Mock()
        pools = RQPools(_workers(store, [Channel.EMAIL, Channel.SMS]), redis_conn=Mock(), task=task)

        attempt = DeliveryAttempt(notification_id="n1", channel=Channel.SMS)
        assert pools.submit(attempt)

        sms_queue = queues[rq_queue_name(Channel.SMS)]
        assert sms_queue.jobs[0][0] is task
        assert sms_queue.jobs[0][1] == (attempt.id,)
        assert not pools.is_in_flight(attempt.id)
        assert queues[rq_queue_name(Channel.EMAIL)].jobs == []


class TestRQWorkerEntryPoints:

    @pytest.fixture
    def worker_engine(self):
        from notification.service import set_worker_engine

        engine = make_engine()
        set_worker_engine(engine)
        yield engine
        set_worker_engine(None)

    def test_process_delivery_task_delivers_stored_attempt(self, worker_engine):
        from notification.service import process_delivery_task

        notification = _saved_notification(worker_engine.store)
        attempt = DeliveryAttempt(notification_id=notification.id, channel=Channel.EMAIL)
        worker_engine.store.save_attempt(attempt)

        assert process_delivery_task(attempt.id) == "sent"
        assert worker_engine.store.get_attempt(attempt.id).state == AttemptState.SENT
        assert worker_engine.get_notification(notification.id).status == NotificationStatus.DELIVERED

    def test_process_delivery_task_unknown_attempt(self, worker_engine):
        from notification.service import process_delivery_task

        assert process_delivery_task("missing") is None

    def test_start_worker_listens_on_channel_queues(self, worker_engine):
        from notification import worker

        with patch.object(worker, "Redis") as redis_cls, patch.object(worker, "Worker") as worker_cls:
            worker.start_worker(burst=True, channels=[Channel.EMAIL, Channel.SMS])

        redis_cls.from_url.assert_called_once_with(worker.DEFAULT_REDIS_URL)
        queues = worker_cls.call_args[0][0]
        assert queues == [rq_queue_name(Channel.EMAIL), rq_queue_name(Channel.SMS)]
        worker_cls.return_value.work.assert_called_once_with(burst=True)
