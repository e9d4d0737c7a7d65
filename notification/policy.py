"""Declarative per-type channel tables.

``valid`` lists the channels a notification type may ever use. ``forced``
lists channels the router always adds for a type, whatever the user
enabled, because those notices are not user-suppressible.
"""
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from notification.models import ALL_CHANNELS, Channel, NotificationType

DEFAULT_VALID_CHANNELS: Dict[NotificationType, FrozenSet[Channel]] = {
    NotificationType.PROJECT: ALL_CHANNELS,
    NotificationType.TASK: ALL_CHANNELS,
    NotificationType.TEAM: ALL_CHANNELS,
    NotificationType.SYSTEM: ALL_CHANNELS,
    NotificationType.ACHIEVEMENT: frozenset({Channel.IN_APP, Channel.EMAIL, Channel.PUSH}),
    NotificationType.SECURITY: ALL_CHANNELS,
}

DEFAULT_FORCED_CHANNELS: Dict[NotificationType, FrozenSet[Channel]] = {
    NotificationType.SECURITY: frozenset({Channel.IN_APP, Channel.EMAIL}),
}


class ChannelPolicy:
    def __init__(
        self,
        valid: Optional[Mapping[NotificationType, Iterable[Channel]]] = None,
        forced: Optional[Mapping[NotificationType, Iterable[Channel]]] = None
    ):
        valid = DEFAULT_VALID_CHANNELS if valid is None else valid
        forced = DEFAULT_FORCED_CHANNELS if forced is None else forced
        self._valid = {t: frozenset(c) for t, c in valid.items()}
        self._forced = {t: frozenset(c) for t, c in forced.items()}

    def valid_for(self, notification_type: NotificationType) -> FrozenSet[Channel]:
        return self._valid.get(notification_type, ALL_CHANNELS)

    def forced_for(self, notification_type: NotificationType) -> FrozenSet[Channel]:
        return self._forced.get(notification_type, frozenset())

    def filter(self, notification_type: NotificationType, channels: Iterable[Channel]) -> FrozenSet[Channel]:
        return frozenset(channels) & self.valid_for(notification_type)

    def with_forced(self, notification_type: NotificationType, channels: Iterable[Channel]) -> FrozenSet[Channel]:
        return frozenset(channels) | self.forced_for(notification_type)
