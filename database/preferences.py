"""Preference source backed by the notification_preference table."""
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from database.models import NotificationPreferenceRecord
from database.uow import notification_uow
from notification.models import NotificationType, Preference, QuietHours
from notification.preferences import PreferenceSource

logger = logging.getLogger(__name__)


def row_to_preference(record: NotificationPreferenceRecord) -> Preference:
    quiet_hours = None
    if record.quiet_start is not None and record.quiet_end is not None:
        quiet_hours = QuietHours(
            start=record.quiet_start,
            end=record.quiet_end,
            timezone=record.quiet_timezone or record.timezone or "UTC",
        )
    return Preference(
        enabled_channels=frozenset(record.enabled_channels or []),
        frequency=record.frequency,
        quiet_hours=quiet_hours,
        timezone=record.timezone,
    )


def preference_to_row(preference: Preference) -> dict:
    quiet = preference.quiet_hours
    return {
        'enabled_channels': sorted(c.value for c in preference.enabled_channels),
        'frequency': preference.frequency.value,
        'quiet_start': quiet.start if quiet else None,
        'quiet_end': quiet.end if quiet else None,
        'quiet_timezone': quiet.timezone if quiet else None,
        'timezone': preference.timezone,
    }


class SqlPreferenceSource(PreferenceSource):
    """Read-only for the engine; `set_preference` is for admin tooling and tests."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self.session_factory = session_factory

    def get_preference(self, user_id: str, notification_type: NotificationType) -> Optional[Preference]:
        with notification_uow(self.session_factory) as uow:
            record = uow.preferences.get(user_id, notification_type.value)
            return row_to_preference(record) if record else None

    def set_preference(self, user_id: str, notification_type: NotificationType, preference: Preference) -> None:
        with notification_uow(self.session_factory) as uow:
            uow.preferences.upsert(user_id, notification_type.value, preference_to_row(preference))
        logger.info(f"Saved {notification_type.value} preference for {user_id}")
