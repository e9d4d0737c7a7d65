from sqlalchemy import TIMESTAMP, Column, Text, Time, func
from sqlalchemy.sql import text as sql_text

from .base import Base
from .notification import JsonType


class NotificationPreferenceRecord(Base):
    """Per (user, notification type) channel preference."""
    __tablename__ = 'notification_preference'

    user_id = Column(Text, primary_key=True)
    notification_type = Column(Text, primary_key=True)
    enabled_channels = Column(JsonType, nullable=False, default=list)
    frequency = Column(Text, nullable=False, default='immediate')

    # Quiet hours are optional; all three are set together
    quiet_start = Column(Time, nullable=True)
    quiet_end = Column(Time, nullable=True)
    quiet_timezone = Column(Text, nullable=True)
    timezone = Column(Text, nullable=True)

    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=sql_text("CURRENT_TIMESTAMP"),
                        onupdate=func.now())
