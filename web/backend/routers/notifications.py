#!/usr/bin/env python3
"""
Notification endpoints - submit, list and manage notifications.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from notification.exceptions import ValidationError
from notification.models import NotificationFilter, NotificationStatus, NotificationType
from notification.service import NotificationEngine

from ..dependencies import get_engine
from ..models.requests import MarkReadRequest, NotificationRequest
from ..models.responses import (
    AttemptSummary,
    CancelResponse,
    EngineStatusResponse,
    MarkReadResponse,
    NotificationDetailResponse,
    NotificationListResponse,
    NotificationSummary,
    SubmitResponse,
    UnreadCountResponse,
)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _parse_enum(enum_cls, value: Optional[str], name: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {name} '{value}'. Valid options: {valid}")


@router.post("", response_model=SubmitResponse)
def submit_notification(
    request: NotificationRequest,
    engine: NotificationEngine = Depends(get_engine)
):
    """
    Submit a notification for delivery.

    Channels and dispatch time follow the recipient's preferences.
    """
    notification_id = engine.notify(
        recipient_id=request.recipient_id,
        notification_type=request.type,
        template_ref=request.template_ref,
        template_data=request.template_data,
        priority=request.priority,
        title=request.title,
        correlation_id=request.correlation_id,
    )
    status = engine.get_notification(notification_id).status

    return SubmitResponse(
        success=True,
        notification_id=notification_id,
        status=status.value,
        message=f"Notification {status.value}"
    )


@router.get("", response_model=NotificationListResponse)
def list_notifications(
    user_id: str = Query(..., description="Owner of the notifications"),
    unread_only: bool = Query(False),
    type: Optional[str] = Query(None, description="Filter by notification type"),
    status: Optional[str] = Query(None, description="Filter by delivery status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    engine: NotificationEngine = Depends(get_engine)
):
    """List a user's notifications, newest first."""
    notification_filter = NotificationFilter(
        unread_only=unread_only,
        type=_parse_enum(NotificationType, type, "type"),
        status=_parse_enum(NotificationStatus, status, "status"),
        limit=limit,
        offset=offset,
    )
    notifications = engine.list_notifications(user_id, notification_filter)

    return NotificationListResponse(
        success=True,
        count=len(notifications),
        notifications=[NotificationSummary.from_notification(n) for n in notifications]
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
def get_unread_count(
    user_id: str = Query(...),
    engine: NotificationEngine = Depends(get_engine)
):
    return UnreadCountResponse(success=True, user_id=user_id, unread_count=engine.get_unread_count(user_id))


@router.get("/status", response_model=EngineStatusResponse)
def get_engine_status(engine: NotificationEngine = Depends(get_engine)):
    """
    Get the status of the notification engine.

    Shows backend mode, scheduled notifications and pool state.
    """
    status = engine.get_status()
    return EngineStatusResponse(success=True, **status)


@router.post("/read-all", response_model=MarkReadResponse)
def mark_all_read(
    request: MarkReadRequest,
    engine: NotificationEngine = Depends(get_engine)
):
    return MarkReadResponse(success=True, changed=engine.mark_all_read(request.user_id))


@router.get("/{notification_id}", response_model=NotificationDetailResponse)
def get_notification(
    notification_id: str,
    user_id: Optional[str] = Query(None, description="Only return the notification if it belongs to this user"),
    engine: NotificationEngine = Depends(get_engine)
):
    notification = engine.get_notification(notification_id, user_id=user_id)
    attempts = engine.get_attempts(notification_id)

    return NotificationDetailResponse(
        success=True,
        notification=NotificationSummary.from_notification(notification),
        recipient_id=notification.recipient_id,
        template_data=notification.template_data,
        attempts=[AttemptSummary.from_attempt(a) for a in attempts]
    )


@router.post("/{notification_id}/read", response_model=MarkReadResponse)
def mark_read(
    notification_id: str,
    request: MarkReadRequest,
    engine: NotificationEngine = Depends(get_engine)
):
    changed = engine.mark_read(request.user_id, notification_id)
    return MarkReadResponse(success=True, changed=int(changed))


@router.post("/{notification_id}/cancel", response_model=CancelResponse)
def cancel_notification(
    notification_id: str,
    engine: NotificationEngine = Depends(get_engine)
):
    cancelled = engine.cancel(notification_id)
    return CancelResponse(success=True, notification_id=notification_id, cancelled_attempts=cancelled)
