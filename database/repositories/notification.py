import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update

from database.models import DeliveryAttemptRecord, NotificationReadState, NotificationRecord
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class NotificationRepository(BaseRepository):
    def get_by_id(self, notification_id: str) -> Optional[NotificationRecord]:
        return self.db.get(NotificationRecord, notification_id)

    def upsert(self, values: Dict[str, Any]) -> NotificationRecord:
        # recipient and type are fixed at insert
        return self._upsert(NotificationRecord, values['id'], values, immutable=('recipient_id', 'type'))

    def get_by_status(self, status: str) -> List[NotificationRecord]:
        stmt = select(NotificationRecord).where(
            NotificationRecord.status == status
        ).order_by(NotificationRecord.created_at)
        return self.db.execute(stmt).scalars().all()

    def get_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        notification_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[NotificationRecord]:
        """Notifications with a read state for `user_id`, newest first."""
        stmt = select(NotificationRecord).join(
            NotificationReadState,
            (NotificationReadState.notification_id == NotificationRecord.id)
            & (NotificationReadState.user_id == user_id)
        )

        if unread_only:
            stmt = stmt.where(NotificationReadState.read.is_(False))
        if notification_type is not None:
            stmt = stmt.where(NotificationRecord.type == notification_type)
        if status is not None:
            stmt = stmt.where(NotificationRecord.status == status)

        stmt = stmt.order_by(NotificationRecord.created_at.desc()).offset(offset).limit(limit)
        return self.db.execute(stmt).scalars().all()


class DeliveryAttemptRepository(BaseRepository):
    def get_by_id(self, attempt_id: str) -> Optional[DeliveryAttemptRecord]:
        return self.db.get(DeliveryAttemptRecord, attempt_id)

    def upsert(self, values: Dict[str, Any]) -> DeliveryAttemptRecord:
        return self._upsert(DeliveryAttemptRecord, values['id'], values, flush=False)

    def update_if_pending(self, values: Dict[str, Any]) -> bool:
        """Conditional UPDATE; False when the row is missing or no longer pending."""
        changes = {k: v for k, v in values.items() if k not in ('id', 'notification_id', 'channel', 'created_at')}
        result = self.db.execute(
            update(DeliveryAttemptRecord)
            .where(DeliveryAttemptRecord.id == values['id'])
            .where(DeliveryAttemptRecord.state == 'pending')
            .values(**changes)
        )
        return result.rowcount == 1

    def get_for_notification(self, notification_id: str) -> List[DeliveryAttemptRecord]:
        stmt = select(DeliveryAttemptRecord).where(
            DeliveryAttemptRecord.notification_id == notification_id
        ).order_by(DeliveryAttemptRecord.created_at)
        return self.db.execute(stmt).scalars().all()

    def get_pending(self, older_than: Optional[datetime] = None) -> List[DeliveryAttemptRecord]:
        stmt = select(DeliveryAttemptRecord).where(DeliveryAttemptRecord.state == 'pending')
        if older_than is not None:
            stmt = stmt.where(DeliveryAttemptRecord.updated_at < older_than)
        stmt = stmt.order_by(DeliveryAttemptRecord.created_at)
        return self.db.execute(stmt).scalars().all()
