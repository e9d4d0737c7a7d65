#!/usr/bin/env python3
"""
Preference & Quiet-Hours Evaluator

Decides which channels a notification goes to and when it may be
dispatched, from the recipient's preference for the notification type.

Rules, in order:
    1. frequency == never: no channels at all.
    2. urgent priority: dispatch now, ignoring batching and quiet hours.
    3. daily / weekly: wait for the next digest boundary in the user's zone.
    4. quiet hours: a candidate time inside [start, end) moves to `end`.

A broken timezone never blocks dispatch; it is logged and the evaluator
behaves as if the user had no quiet hours.

Usage:
    evaluator = PreferenceEvaluator(InMemoryPreferenceSource())
    resolution = evaluator.resolve('user-1', NotificationType.TASK,
                                   NotificationPriority.NORMAL)
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from notification.exceptions import SchedulingError
from notification.models import (
    Frequency,
    NotificationPriority,
    NotificationType,
    Preference,
    QuietHours,
    Resolution,
    utcnow,
)
from notification.policy import ChannelPolicy

logger = logging.getLogger(__name__)

DEFAULT_PREFERENCE = Preference()
DEFAULT_DIGEST_HOUR = 9
DEFAULT_DIGEST_WEEKDAY = 0  # Monday


class PreferenceSource(ABC):
    """Read-only source of user preferences."""

    @abstractmethod
    def get_preference(self, user_id: str, notification_type: NotificationType) -> Optional[Preference]:
        """Return the stored preference, or None when the user has none."""
        pass


class InMemoryPreferenceSource(PreferenceSource):
    def __init__(self, preferences: Optional[Dict[Tuple[str, NotificationType], Preference]] = None):
        self._preferences = dict(preferences or {})
        self._lock = threading.Lock()

    def set_preference(self, user_id: str, notification_type: NotificationType, preference: Preference) -> None:
        with self._lock:
            self._preferences[(user_id, notification_type)] = preference

    def get_preference(self, user_id: str, notification_type: NotificationType) -> Optional[Preference]:
        return self._preferences.get((user_id, notification_type))


def load_zone(name: str) -> tzinfo:
    """Resolve an IANA zone name, raising SchedulingError when unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise SchedulingError(f"Invalid timezone '{name}': {e}") from e


def next_daily_boundary(now: datetime, zone: tzinfo, hour: int) -> datetime:
    local = now.astimezone(zone)
    boundary = datetime.combine(local.date(), time(hour=hour), tzinfo=zone)
    if boundary < local:
        boundary = datetime.combine(local.date() + timedelta(days=1), boundary.timetz())
    return boundary.astimezone(timezone.utc)


def next_weekly_boundary(now: datetime, zone: tzinfo, weekday: int, hour: int) -> datetime:
    local = now.astimezone(zone)
    days_ahead = (weekday - local.weekday()) % 7
    at = time(hour=hour, tzinfo=zone)
    boundary = datetime.combine(local.date() + timedelta(days=days_ahead), at)
    if boundary < local:
        boundary = datetime.combine(local.date() + timedelta(days=days_ahead + 7), at)
    return boundary.astimezone(timezone.utc)


def defer_past_quiet_hours(candidate: datetime, quiet_hours: QuietHours, zone: tzinfo) -> datetime:
    """Move `candidate` to the end of the quiet window if it falls inside it."""
    local = candidate.astimezone(zone)
    if not quiet_hours.contains(local.time()):
        return candidate

    end_date = local.date()
    if quiet_hours.wraps_midnight and local.time() >= quiet_hours.start:
        end_date = end_date + timedelta(days=1)
    end = datetime.combine(end_date, quiet_hours.end, tzinfo=zone)
    return end.astimezone(timezone.utc)


class PreferenceEvaluator:
    """
    Resolves (user, type, priority, now) into channels and a dispatch time.

    Args:
        source: Where user preferences are read from
        default_preference: Used when the source has no entry for the user
        policy: Per-type valid channel table
        digest_hour: Local hour for daily and weekly digests
        digest_weekday: Weekday for weekly digests (0 = Monday)
    """

    def __init__(
        self,
        source: PreferenceSource,
        default_preference: Preference = DEFAULT_PREFERENCE,
        policy: Optional[ChannelPolicy] = None,
        digest_hour: int = DEFAULT_DIGEST_HOUR,
        digest_weekday: int = DEFAULT_DIGEST_WEEKDAY
    ):
        self.source = source
        self.default_preference = default_preference
        self.policy = policy or ChannelPolicy()
        self.digest_hour = digest_hour
        self.digest_weekday = digest_weekday

    def preference_for(self, user_id: str, notification_type: NotificationType) -> Preference:
        preference = self.source.get_preference(user_id, notification_type)
        return preference if preference is not None else self.default_preference

    def resolve(
        self,
        user_id: str,
        notification_type: NotificationType,
        priority: NotificationPriority,
        now: Optional[datetime] = None
    ) -> Resolution:
        now = now or utcnow()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        preference = self.preference_for(user_id, notification_type)

        if preference.frequency == Frequency.NEVER:
            return Resolution(channels=frozenset(), dispatch_at=now, reason="never")

        channels = self.policy.filter(notification_type, preference.enabled_channels)

        if priority == NotificationPriority.URGENT:
            return Resolution(channels=channels, dispatch_at=now, reason="urgent")

        try:
            zone = load_zone(preference.effective_timezone)
        except SchedulingError as e:
            logger.warning(f"Ignoring quiet hours for {user_id}: {e}")
            zone = None

        dispatch_at = now
        reason = "immediate"
        if preference.frequency == Frequency.DAILY:
            dispatch_at = next_daily_boundary(now, zone or timezone.utc, self.digest_hour)
            reason = "daily_digest"
        elif preference.frequency == Frequency.WEEKLY:
            dispatch_at = next_weekly_boundary(now, zone or timezone.utc, self.digest_weekday, self.digest_hour)
            reason = "weekly_digest"

        if preference.quiet_hours is not None and zone is not None:
            deferred = defer_past_quiet_hours(dispatch_at, preference.quiet_hours, zone)
            if deferred != dispatch_at:
                dispatch_at = deferred
                reason = "quiet_hours"

        return Resolution(channels=channels, dispatch_at=dispatch_at, reason=reason)
