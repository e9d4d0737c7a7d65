#!/usr/bin/env python3
"""
Response models for API endpoints.
"""

from pydantic import BaseModel, ConfigDict
from typing import Any, Dict, List, Optional

from notification.models import DeliveryAttempt, Notification


class NotificationSummary(BaseModel):
    """A notification as shown in a user's list."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "9f1c2d3e4b5a69788796a5b4c3d2e1f0",
                "type": "task",
                "priority": "normal",
                "title": "New task assigned",
                "template_ref": "task_assigned",
                "status": "delivered",
                "channels": ["in_app", "email"],
                "degraded_channels": [],
                "created_at": "2026-03-10T15:00:00+00:00",
                "dispatch_at": "2026-03-10T15:00:00+00:00"
            }
        }
    )

    id: str
    type: str
    priority: str
    title: str
    template_ref: str
    status: str
    channels: List[str]
    degraded_channels: List[str]
    created_at: Optional[str]
    dispatch_at: Optional[str]

    @classmethod
    def from_notification(cls, notification: Notification) -> "NotificationSummary":
        return cls(
            id=notification.id,
            type=notification.type.value,
            priority=notification.priority.value,
            title=notification.title,
            template_ref=notification.template_ref,
            status=notification.status.value,
            channels=[c.value for c in notification.channels],
            degraded_channels=[c.value for c in notification.degraded_channels],
            created_at=notification.created_at.isoformat() if notification.created_at else None,
            dispatch_at=notification.dispatch_at.isoformat() if notification.dispatch_at else None,
        )


class AttemptSummary(BaseModel):
    id: str
    channel: str
    state: str
    attempt_count: int
    last_error: Optional[str]
    next_retry_at: Optional[str]

    @classmethod
    def from_attempt(cls, attempt: DeliveryAttempt) -> "AttemptSummary":
        return cls(
            id=attempt.id,
            channel=attempt.channel.value,
            state=attempt.state.value,
            attempt_count=attempt.attempt_count,
            last_error=attempt.last_error,
            next_retry_at=attempt.next_retry_at.isoformat() if attempt.next_retry_at else None,
        )


class NotificationDetailResponse(BaseModel):
    success: bool
    notification: NotificationSummary
    recipient_id: str
    template_data: Dict[str, Any]
    attempts: List[AttemptSummary]


class NotificationListResponse(BaseModel):
    success: bool
    count: int
    notifications: List[NotificationSummary]


class SubmitResponse(BaseModel):
    """Response after submitting a notification."""
    success: bool
    notification_id: str
    status: str
    message: str


class UnreadCountResponse(BaseModel):
    success: bool
    user_id: str
    unread_count: int


class MarkReadResponse(BaseModel):
    success: bool
    changed: int


class CancelResponse(BaseModel):
    success: bool
    notification_id: str
    cancelled_attempts: int


class EngineStatusResponse(BaseModel):
    """Response for engine status."""
    success: bool
    mode: str
    scheduled: int
    next_dispatch_at: Optional[str]
    results_pending: int
    channels: List[str]
    pools: Dict[str, Any]
