from .base import Base
from .notification import (
    NotificationRecord,
    DeliveryAttemptRecord,
    NotificationReadState,
    UnreadCounter,
)
from .preference import NotificationPreferenceRecord

__all__ = [
    'Base',
    'NotificationRecord',
    'DeliveryAttemptRecord',
    'NotificationReadState',
    'UnreadCounter',
    'NotificationPreferenceRecord',
]
