"""Destination address lookup per (user, channel)."""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from notification.models import Channel

logger = logging.getLogger(__name__)


class RecipientDirectory(ABC):
    @abstractmethod
    def get_address(self, user_id: str, channel: Channel) -> Optional[str]:
        """Email, phone number, device token or URL; None if the user has none."""
        pass


class StaticRecipientDirectory(RecipientDirectory):
    """
    Addresses held in memory, usually loaded from config.

    In-app delivery is addressed by user id, so it never needs an entry.
    """

    def __init__(self, addresses: Optional[Dict[str, Dict[Channel, str]]] = None):
        self._addresses: Dict[str, Dict[Channel, str]] = {
            user_id: dict(by_channel) for user_id, by_channel in (addresses or {}).items()
        }
        self._lock = threading.Lock()

    def set_address(self, user_id: str, channel: Channel, address: str) -> None:
        with self._lock:
            self._addresses.setdefault(user_id, {})[channel] = address

    def get_address(self, user_id: str, channel: Channel) -> Optional[str]:
        if channel == Channel.IN_APP:
            return user_id
        return self._addresses.get(user_id, {}).get(channel)
