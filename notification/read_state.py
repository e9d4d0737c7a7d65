"""Read state and unread counters."""
import logging
from datetime import datetime
from typing import Optional

from notification.exceptions import NotificationNotFound
from notification.models import utcnow
from notification.store import NotificationStore

logger = logging.getLogger(__name__)


class ReadStateService:
    """
    MarkRead / MarkAllRead on top of the store's atomic read-state ops.

    Both operations are idempotent: the unread counter moves only for
    notifications that actually transition from unread to read.
    """

    def __init__(self, store: NotificationStore):
        self.store = store

    def mark_read(self, user_id: str, notification_id: str, now: Optional[datetime] = None) -> bool:
        if self.store.get_read_state(user_id, notification_id) is None:
            raise NotificationNotFound(f"Notification {notification_id} not found for user {user_id}")

        changed = self.store.mark_read(user_id, notification_id, now or utcnow())
        if changed:
            logger.debug(f"Marked {notification_id} read for {user_id}")
        return changed

    def mark_all_read(self, user_id: str, now: Optional[datetime] = None) -> int:
        changed = self.store.mark_all_read(user_id, now or utcnow())
        if changed:
            logger.info(f"Marked {changed} notifications read for {user_id}")
        return changed

    def get_unread_count(self, user_id: str) -> int:
        return max(0, self.store.get_unread_count(user_id))
