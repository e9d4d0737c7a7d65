"""Channel Router: expands a due notification into per-channel attempts."""
import logging
from typing import Iterable, List

from notification.models import AttemptState, Channel, DeliveryAttempt, Notification
from notification.policy import ChannelPolicy
from notification.pools import DeliveryPools
from notification.store import NotificationStore

logger = logging.getLogger(__name__)

_CHANNEL_ORDER = {channel: i for i, channel in enumerate(Channel)}


class ChannelRouter:
    """
    Creates one pending DeliveryAttempt per channel and hands each to the
    pool for that channel.

    Attempts are persisted before any of them is submitted, so a crash
    between the two leaves pending rows that recovery re-enqueues.
    """

    def __init__(self, store: NotificationStore, pools: DeliveryPools, policy: ChannelPolicy):
        self.store = store
        self.pools = pools
        self.policy = policy

    def channels_for(self, notification: Notification, channels: Iterable[Channel]) -> List[Channel]:
        final = self.policy.with_forced(notification.type, channels)
        return sorted(final, key=_CHANNEL_ORDER.get)

    def expand(self, notification: Notification, channels: Iterable[Channel]) -> List[DeliveryAttempt]:
        attempts = [
            DeliveryAttempt(notification_id=notification.id, channel=channel)
            for channel in self.channels_for(notification, channels)
        ]
        self.store.save_attempts(attempts)

        for attempt in attempts:
            if not self.pools.has_channel(attempt.channel):
                logger.error(f"No delivery pool for {attempt.channel.value}; failing attempt {attempt.id}")
                attempt.transition(AttemptState.FAILED, error="PermanentDeliveryError: no pool for channel")
                self.store.save_attempt(attempt)
                continue
            self.pools.submit(attempt)

        logger.info(
            f"Routed {notification.id} ({notification.type.value}/{notification.priority.value}) to "
            f"{', '.join(a.channel.value for a in attempts) or 'no channels'}"
        )
        return attempts
