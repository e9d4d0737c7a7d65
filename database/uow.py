import contextlib
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from database.database import SessionLocal
from database.repositories import (
    DeliveryAttemptRepository,
    NotificationRepository,
    PreferenceRepository,
    ReadStateRepository,
)

logger = logging.getLogger(__name__)


class NotificationUnitOfWork:
    """Repositories sharing one Session."""

    def __init__(self, session: Session):
        self.session = session
        self.notifications = NotificationRepository(session)
        self.attempts = DeliveryAttemptRepository(session)
        self.read_states = ReadStateRepository(session)
        self.preferences = PreferenceRepository(session)


@contextlib.contextmanager
def notification_uow(session_factory: Optional[Callable[[], Session]] = None):
    """Per-unit-of-work transaction scope.

    Yields a NotificationUnitOfWork bound to a fresh Session. Commits on
    success, rolls back on exception, always closes.

    Usage:
        with notification_uow() as uow:
            record = uow.notifications.get_by_id(notification_id)
            # perform operations...
        # commit happens automatically on successful exit
    """
    session = (session_factory or SessionLocal)()
    try:
        yield NotificationUnitOfWork(session)
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
