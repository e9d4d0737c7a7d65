#!/usr/bin/env python3
"""
Request models for API endpoints.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class NotificationRequest(BaseModel):
    """Request to submit a notification."""
    recipient_id: str = Field(..., description="User the notification is for")
    type: str = Field(..., description="Notification type: project, task, team, system, achievement, security")
    template_ref: str = Field(..., description="Registered template to render")
    template_data: Dict[str, Any] = Field(default_factory=dict, description="Template variables")
    title: str = Field(default="", description="Short title shown in lists")
    priority: str = Field(default="normal", description="Priority: low, normal, high, urgent")
    correlation_id: Optional[str] = Field(
        None,
        description="Caller event id; repeated submits with the same id are deduplicated"
    )


class MarkReadRequest(BaseModel):
    user_id: str = Field(..., description="Owner of the notification")
