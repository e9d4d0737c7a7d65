#!/usr/bin/env python3
"""
Tests for the preference and quiet-hours evaluator.

All times are fixed so the expected dispatch instants can be written out:
2026-03-10 is a Tuesday.
"""

from datetime import datetime, time, timezone

import pytest

from notification.models import (
    Channel,
    Frequency,
    NotificationPriority,
    NotificationType,
    Preference,
    QuietHours,
)
from notification.preferences import InMemoryPreferenceSource, PreferenceEvaluator

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def source():
    return InMemoryPreferenceSource()


@pytest.fixture
def evaluator(source):
    return PreferenceEvaluator(source)


def _quiet(start, end, tz="UTC"):
    return QuietHours(start=start, end=end, timezone=tz)


class TestChannelResolution:

    def test_default_preference_enables_all_valid_channels(self, evaluator):
        resolution = evaluator.resolve("user-1", NotificationType.TASK, NotificationPriority.NORMAL, NOW)
        assert resolution.channels == frozenset(Channel)
        assert resolution.dispatch_at == NOW
        assert resolution.reason == "immediate"

    def test_channels_limited_to_those_valid_for_type(self, evaluator):
        resolution = evaluator.resolve("user-1", NotificationType.ACHIEVEMENT, NotificationPriority.NORMAL, NOW)
        assert resolution.channels == {Channel.IN_APP, Channel.EMAIL, Channel.PUSH}

    def test_enabled_channels_respected(self, source, evaluator):
        source.set_preference("user-1", NotificationType.TASK,
                              Preference(enabled_channels=frozenset({Channel.EMAIL, Channel.SMS})))
        resolution = evaluator.resolve("user-1", NotificationType.TASK, NotificationPriority.NORMAL, NOW)
        assert resolution.channels == {Channel.EMAIL, Channel.SMS}

    def test_never_frequency_yields_no_channels(self, source, evaluator):
        source.set_preference("user-1", NotificationType.PROJECT, Preference(frequency=Frequency.NEVER))
        resolution = evaluator.resolve("user-1", NotificationType.PROJECT, NotificationPriority.URGENT, NOW)
        assert resolution.channels == frozenset()
        assert resolution.reason == "never"

    def test_custom_default_preference(self, source):
        evaluator = PreferenceEvaluator(source, default_preference=Preference(
            enabled_channels=frozenset({Channel.IN_APP})))
        resolution = evaluator.resolve("nobody", NotificationType.SYSTEM, NotificationPriority.NORMAL, NOW)
        assert resolution.channels == {Channel.IN_APP}


class TestQuietHours:

    def test_taipei_quiet_hours_defer_to_local_morning(self, source, evaluator):
        # 15:00 UTC is 23:00 in Taipei, inside 22:00-07:00 local
        source.set_preference("user-tw", NotificationType.TASK, Preference(
            quiet_hours=_quiet(time(22, 0), time(7, 0), "Asia/Taipei")))
        resolution = evaluator.resolve("user-tw", NotificationType.TASK, NotificationPriority.NORMAL, NOW)
        assert resolution.dispatch_at == datetime(2026, 3, 10, 23, 0, tzinfo=timezone.utc)
        assert resolution.reason == "quiet_hours"

    def test_early_morning_inside_wrapped_window(self, source, evaluator):
        source.set_preference("user-1", NotificationType.TASK, Preference(
            quiet_hours=_quiet(time(22, 0), time(7, 0))))
        now = datetime(2026, 3, 10, 3, 30, tzinfo=timezone.utc)
        resolution = evaluator.resolve("user-1", NotificationType.TASK, NotificationPriority.NORMAL, now)
        assert resolution.dispatch_at == datetime(2026, 3, 10, 7, 0, tzinfo=timezone.utc)

    def test_outside_quiet_hours_is_immediate(self, source, evaluator):
        source.set_preference("user-1", NotificationType.TASK, Preference(
            quiet_hours=_quiet(time(22, 0), time(7, 0))))
        resolution = evaluator.resolve("user-1", NotificationType.TASK, NotificationPriority.NORMAL, NOW)
        assert resolution.dispatch_at == NOW

    def test_urgent_ignores_quiet_hours(self, source, evaluator):
        source.set_preference("user-tw", NotificationType.SECURITY, Preference(
            quiet_hours=_quiet(time(22, 0), time(7, 0), "Asia/Taipei")))
        resolution = evaluator.resolve("user-tw", NotificationType.SECURITY, NotificationPriority.URGENT, NOW)
        assert resolution.dispatch_at == NOW
        assert resolution.reason == "urgent"

    def test_invalid_timezone_does_not_block(self, source, evaluator):
        source.set_preference("user-1", NotificationType.TASK, Preference(
            quiet_hours=_quiet(time(0, 0), time(23, 59), "Mars/Olympus_Mons")))
        resolution = evaluator.resolve("user-1", NotificationType.TASK, NotificationPriority.NORMAL, NOW)
        assert resolution.dispatch_at == NOW


class TestDigests:

    def test_daily_digest_next_morning(self, source, evaluator):
        source.set_preference("user-1", NotificationType.PROJECT, Preference(frequency=Frequency.DAILY))
        resolution = evaluator.resolve("user-1", NotificationType.PROJECT, NotificationPriority.NORMAL, NOW)
        assert resolution.dispatch_at == datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc)
        assert resolution.reason == "daily_digest"

    def test_daily_digest_same_day_before_boundary(self, source, evaluator):
        source.set_preference("user-1", NotificationType.PROJECT, Preference(frequency=Frequency.DAILY))
        now = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)
        resolution = evaluator.resolve("user-1", NotificationType.PROJECT, NotificationPriority.NORMAL, now)
        assert resolution.dispatch_at == datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)

    def test_daily_digest_in_user_timezone(self, source, evaluator):
        source.set_preference("user-tw", NotificationType.PROJECT, Preference(
            frequency=Frequency.DAILY, timezone="Asia/Taipei"))
        resolution = evaluator.resolve("user-tw", NotificationType.PROJECT, NotificationPriority.NORMAL, NOW)
        # 09:00 Taipei on 2026-03-11 is 01:00 UTC
        assert resolution.dispatch_at == datetime(2026, 3, 11, 1, 0, tzinfo=timezone.utc)

    def test_weekly_digest_next_monday(self, source, evaluator):
        source.set_preference("user-1", NotificationType.TEAM, Preference(frequency=Frequency.WEEKLY))
        resolution = evaluator.resolve("user-1", NotificationType.TEAM, NotificationPriority.NORMAL, NOW)
        assert resolution.dispatch_at == datetime(2026, 3, 16, 9, 0, tzinfo=timezone.utc)
        assert resolution.reason == "weekly_digest"

    def test_urgent_skips_digest(self, source, evaluator):
        source.set_preference("user-1", NotificationType.TEAM, Preference(frequency=Frequency.WEEKLY))
        resolution = evaluator.resolve("user-1", NotificationType.TEAM, NotificationPriority.URGENT, NOW)
        assert resolution.dispatch_at == NOW

    def test_digest_boundary_inside_quiet_hours_is_deferred(self, source):
        evaluator = PreferenceEvaluator(source, digest_hour=6)
        source.set_preference("user-1", NotificationType.PROJECT, Preference(
            frequency=Frequency.DAILY, quiet_hours=_quiet(time(22, 0), time(7, 0))))
        resolution = evaluator.resolve("user-1", NotificationType.PROJECT, NotificationPriority.NORMAL, NOW)
        assert resolution.dispatch_at == datetime(2026, 3, 11, 7, 0, tzinfo=timezone.utc)
        assert resolution.reason == "quiet_hours"
