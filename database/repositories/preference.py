from typing import Any, Dict, List, Optional

from sqlalchemy import select

from database.models import NotificationPreferenceRecord
from database.repositories.base import BaseRepository


class PreferenceRepository(BaseRepository):
    def get(self, user_id: str, notification_type: str) -> Optional[NotificationPreferenceRecord]:
        return self.db.get(NotificationPreferenceRecord, (user_id, notification_type))

    def get_for_user(self, user_id: str) -> List[NotificationPreferenceRecord]:
        stmt = select(NotificationPreferenceRecord).where(
            NotificationPreferenceRecord.user_id == user_id
        ).order_by(NotificationPreferenceRecord.notification_type)
        return self.db.execute(stmt).scalars().all()

    def upsert(self, user_id: str, notification_type: str, values: Dict[str, Any]) -> NotificationPreferenceRecord:
        key = (user_id, notification_type)
        return self._upsert(
            NotificationPreferenceRecord, key,
            dict(values, user_id=user_id, notification_type=notification_type),
        )
