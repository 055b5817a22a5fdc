"""Notification records emitted as side effects of workflow operations."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationType(str, Enum):
    STARTUP_STATUS_CHANGED = "startup_status_changed"
    MENTORSHIP_REQUEST_CREATED = "mentorship_request_created"
    MENTOR_SELECTED = "mentor_selected"
    SESSION_SCHEDULED = "session_scheduled"
    SESSION_CANCELLED = "session_cancelled"
    FEEDBACK_RECEIVED = "feedback_received"
    FUNDING_APPLICATION_SUBMITTED = "funding_application_submitted"
    FUNDING_STATUS_CHANGED = "funding_status_changed"
    SYSTEM_ANNOUNCEMENT = "system_announcement"
    OTHER = "other"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RelatedModel(str, Enum):
    STARTUP = "Startup"
    USER = "User"
    MENTOR = "Mentor"
    MENTORSHIP_REQUEST = "MentorshipRequest"
    FUNDING_APPLICATION = "FundingApplication"


class Notification(BaseModel):
    """Persisted notification addressed to a single user."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    recipient_id: str
    type: NotificationType
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=1000)
    related_model: RelatedModel | None = None
    related_id: str | None = None
    priority: NotificationPriority = NotificationPriority.MEDIUM
    read: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
