import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update

from database.models import NotificationReadState, UnreadCounter
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class ReadStateRepository(BaseRepository):
    """
    Read flags and unread counters.

    Counters only move through conditional UPDATEs whose row count says how
    many read flags actually changed, so concurrent mark-read calls never
    double count.
    """

    def get(self, user_id: str, notification_id: str) -> Optional[NotificationReadState]:
        return self.db.get(NotificationReadState, (user_id, notification_id))

    def create(self, user_id: str, notification_id: str) -> bool:
        """Register an unread notification. Returns False if it already exists."""
        if self.get(user_id, notification_id) is not None:
            return False

        self.db.add(NotificationReadState(user_id=user_id, notification_id=notification_id, read=False))
        bumped = self.db.execute(
            update(UnreadCounter)
            .where(UnreadCounter.user_id == user_id)
            .values(unread_count=UnreadCounter.unread_count + 1)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not bumped:
            self.db.add(UnreadCounter(user_id=user_id, unread_count=1))
        self.db.flush()
        return True

    def _decrement(self, user_id: str, by: int) -> None:
        self.db.execute(
            update(UnreadCounter)
            .where(UnreadCounter.user_id == user_id)
            .values(unread_count=UnreadCounter.unread_count - by)
            .execution_options(synchronize_session=False)
        )

    def mark_read(self, user_id: str, notification_id: str, read_at: datetime) -> bool:
        changed = self.db.execute(
            update(NotificationReadState)
            .where(
                NotificationReadState.user_id == user_id,
                NotificationReadState.notification_id == notification_id,
                NotificationReadState.read.is_(False)
            )
            .values(read=True, read_at=read_at)
            .execution_options(synchronize_session=False)
        ).rowcount
        if changed:
            self._decrement(user_id, changed)
        return bool(changed)

    def mark_all_read(self, user_id: str, read_at: datetime) -> int:
        changed = self.db.execute(
            update(NotificationReadState)
            .where(
                NotificationReadState.user_id == user_id,
                NotificationReadState.read.is_(False)
            )
            .values(read=True, read_at=read_at)
            .execution_options(synchronize_session=False)
        ).rowcount
        if changed:
            self._decrement(user_id, changed)
            logger.debug(f"Marked {changed} notifications read for {user_id}")
        return changed

    def unread_count(self, user_id: str) -> int:
        stmt = select(UnreadCounter.unread_count).where(UnreadCounter.user_id == user_id)
        return self.db.execute(stmt).scalar_one_or_none() or 0
