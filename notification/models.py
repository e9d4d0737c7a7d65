#!/usr/bin/env python3
"""
Domain models for the notification engine.

Notification is the unit of work, DeliveryAttempt records one channel's
outcome for one notification, Preference is the per-user/per-type channel
configuration and ReadState tracks whether the recipient has seen it.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from notification.exceptions import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class Channel(str, Enum):
    """Delivery medium."""
    IN_APP = "in_app"
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"
    WEBHOOK = "webhook"


ALL_CHANNELS: FrozenSet[Channel] = frozenset(Channel)


class NotificationType(str, Enum):
    PROJECT = "project"
    TASK = "task"
    TEAM = "team"
    SYSTEM = "system"
    ACHIEVEMENT = "achievement"
    SECURITY = "security"


class NotificationPriority(str, Enum):
    """Priority levels for notifications."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Sort rank, lower is served first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    NotificationPriority.URGENT: 0,
    NotificationPriority.HIGH: 1,
    NotificationPriority.NORMAL: 2,
    NotificationPriority.LOW: 3,
}


class Frequency(str, Enum):
    IMMEDIATE = "immediate"
    DAILY = "daily"
    WEEKLY = "weekly"
    NEVER = "never"


class AttemptState(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SUPPRESSED = "suppressed"


class NotificationStatus(str, Enum):
    """Aggregate delivery state of a notification."""
    CREATED = "created"
    QUEUED = "queued"
    DISPATCHING = "dispatching"
    DELIVERED = "delivered"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    SUPPRESSED = "suppressed"
    CANCELLED = "cancelled"
    NOT_DISPATCHED = "not_dispatched"


class DedupDecision(str, Enum):
    ACCEPT = "accept"
    SUPPRESS = "suppress"


class QuietHours(BaseModel):
    """Local time window [start, end) during which non-urgent sends wait."""
    model_config = ConfigDict(frozen=True)

    start: time
    end: time
    timezone: str = "UTC"

    @property
    def wraps_midnight(self) -> bool:
        return self.start > self.end

    def contains(self, local_time: time) -> bool:
        if self.start == self.end:
            return False
        if self.wraps_midnight:
            return local_time >= self.start or local_time < self.end
        return self.start <= local_time < self.end


class Preference(BaseModel):
    """Per (user, notification type) delivery configuration."""
    model_config = ConfigDict(frozen=True)

    enabled_channels: FrozenSet[Channel] = ALL_CHANNELS
    frequency: Frequency = Frequency.IMMEDIATE
    quiet_hours: Optional[QuietHours] = None
    # Used for digest alignment when no quiet hours are set
    timezone: Optional[str] = None

    @property
    def effective_timezone(self) -> str:
        if self.quiet_hours is not None:
            return self.quiet_hours.timezone
        return self.timezone or "UTC"


class Notification(BaseModel):
    """
    A single logical notification event.

    recipient_id and type are frozen after creation; status, dispatch_at and
    degraded_channels are owned by the engine.
    """
    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(default_factory=new_id)
    type: NotificationType = Field(frozen=True)
    priority: NotificationPriority = NotificationPriority.NORMAL
    title: str = ""
    template_ref: str
    template_data: Dict[str, Any] = Field(default_factory=dict)
    recipient_id: str = Field(frozen=True)
    dedup_key: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    status: NotificationStatus = NotificationStatus.CREATED
    dispatch_at: Optional[datetime] = None
    # Resolved at submit time, expanded into attempts at dispatch time
    channels: List[Channel] = Field(default_factory=list)
    degraded_channels: List[Channel] = Field(default_factory=list)


_ALLOWED_TRANSITIONS = {
    AttemptState.PENDING: {AttemptState.SENT, AttemptState.FAILED, AttemptState.SUPPRESSED},
    AttemptState.FAILED: {AttemptState.PENDING},
}


class DeliveryAttempt(BaseModel):
    """Delivery outcome of one notification on one channel."""

    id: str = Field(default_factory=new_id)
    notification_id: str
    channel: Channel
    state: AttemptState = AttemptState.PENDING
    attempt_count: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state in (AttemptState.SENT, AttemptState.SUPPRESSED) or (
            self.state == AttemptState.FAILED and self.next_retry_at is None
        )

    def record_try(self) -> None:
        self.attempt_count += 1
        self.updated_at = utcnow()

    def transition(
        self,
        state: AttemptState,
        error: Optional[str] = None,
        next_retry_at: Optional[datetime] = None,
        max_attempts: Optional[int] = None
    ) -> None:
        """
        Move to a new state, enforcing the attempt lifecycle.

        failed -> pending is only allowed while attempt_count is below
        max_attempts; after that failed is terminal.
        """
        if state not in _ALLOWED_TRANSITIONS.get(self.state, set()):
            raise InvalidTransitionError(
                f"Attempt {self.id}: {self.state.value} -> {state.value} not allowed"
            )
        if (self.state == AttemptState.FAILED and state == AttemptState.PENDING
                and max_attempts is not None and self.attempt_count >= max_attempts):
            raise InvalidTransitionError(
                f"Attempt {self.id} exhausted {max_attempts} attempts"
            )
        self.state = state
        if error is not None:
            self.last_error = error
        self.next_retry_at = next_retry_at
        self.updated_at = utcnow()


class ReadState(BaseModel):
    user_id: str
    notification_id: str
    read: bool = False
    read_at: Optional[datetime] = None


class RenderedMessage(BaseModel):
    channel: Channel
    subject: str
    body: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class NotificationFilter(BaseModel):
    """Query filter for listing a user's notifications."""
    unread_only: bool = False
    type: Optional[NotificationType] = None
    status: Optional[NotificationStatus] = None
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class Resolution:
    """Result of preference evaluation: where and when to deliver."""
    channels: FrozenSet[Channel]
    dispatch_at: datetime
    reason: str = "immediate"


@dataclass(frozen=True)
class DeliveryResult:
    """Completion message emitted by a delivery worker."""
    notification_id: str
    attempt_id: str
    channel: Channel
    state: AttemptState
    attempt_count: int
    error: Optional[str] = None
