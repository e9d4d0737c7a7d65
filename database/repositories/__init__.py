from database.repositories.base import BaseRepository
from database.repositories.notification import NotificationRepository, DeliveryAttemptRepository
from database.repositories.read_state import ReadStateRepository
from database.repositories.preference import PreferenceRepository

__all__ = [
    'BaseRepository',
    'NotificationRepository',
    'DeliveryAttemptRepository',
    'ReadStateRepository',
    'PreferenceRepository',
]
