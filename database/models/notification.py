from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .base import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), 'postgresql')


class NotificationRecord(Base):
    """
    One logical notification event.

    recipient_id and type never change after insert; status, dispatch_at
    and degraded_channels are updated by the engine.
    """
    __tablename__ = 'notification'

    id = Column(Text, primary_key=True)
    type = Column(Text, nullable=False)
    priority = Column(Text, nullable=False, default='normal')
    title = Column(Text, nullable=False, default='')
    template_ref = Column(Text, nullable=False)
    template_data = Column(JsonType, nullable=False, default=dict)
    recipient_id = Column(Text, nullable=False)
    dedup_key = Column(Text, nullable=False, default='')
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    status = Column(Text, nullable=False, default='created')
    dispatch_at = Column(TIMESTAMP(timezone=True), nullable=True)
    channels = Column(JsonType, nullable=False, default=list)
    degraded_channels = Column(JsonType, nullable=False, default=list)

    attempts = relationship("DeliveryAttemptRecord", back_populates="notification",
                            cascade="all, delete-orphan", order_by="DeliveryAttemptRecord.created_at")

    __table_args__ = (
        Index('idx_notification_recipient', 'recipient_id', 'created_at'),
        Index('idx_notification_status', 'status'),
    )


class DeliveryAttemptRecord(Base):
    """Delivery state of one notification on one channel."""
    __tablename__ = 'delivery_attempt'

    id = Column(Text, primary_key=True)
    notification_id = Column(Text, ForeignKey('notification.id', ondelete='CASCADE'), nullable=False, index=True)
    channel = Column(Text, nullable=False)
    state = Column(Text, nullable=False, default='pending')
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_retry_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)

    notification = relationship("NotificationRecord", back_populates="attempts")

    __table_args__ = (
        # Recovery and reconcile scan pending attempts by age
        Index('idx_attempt_state_updated', 'state', 'updated_at'),
    )


class NotificationReadState(Base):
    __tablename__ = 'notification_read_state'

    user_id = Column(Text, primary_key=True)
    notification_id = Column(Text, ForeignKey('notification.id', ondelete='CASCADE'), primary_key=True)
    read = Column(Boolean, nullable=False, default=False)
    read_at = Column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_read_state_unread', 'user_id', 'read'),
    )


class UnreadCounter(Base):
    """Per-user unread count, maintained with conditional updates."""
    __tablename__ = 'notification_unread_counter'

    user_id = Column(Text, primary_key=True)
    unread_count = Column(Integer, nullable=False, default=0)
