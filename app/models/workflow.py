"""Input payloads and result envelopes for the workflow API."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field, confloat, field_validator

from app.models.funding import Currency, FundingApplication, RoundType
from app.models.mentor import Mentor
from app.models.mentorship import MentorshipRequest, Urgency
from app.models.notification import Notification, NotificationPriority, NotificationType
from app.models.startup import Startup, StartupStatus


class SessionSpec(BaseModel):
    """Scheduling details for a new session."""

    scheduled_at: datetime
    duration_minutes: int | None = Field(
        default=None,
        ge=15,
        le=240,
        description="Defaults to 60 minutes when omitted.",
    )
    meeting_link: str | None = None
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("scheduled_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class FeedbackInput(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=1000)


class NotificationSpec(BaseModel):
    """Caller-provided notification content; type and priority have defaults."""

    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=1000)
    type: NotificationType = NotificationType.STARTUP_STATUS_CHANGED
    priority: NotificationPriority = NotificationPriority.MEDIUM


class FundingApplicationDraft(BaseModel):
    """Application data supplied at submission time.

    ``id`` is optional; when given it doubles as an idempotency key so a retried
    submission does not count the same amount twice.
    """

    id: str | None = None
    applicant_id: str | None = None
    round_type: RoundType = RoundType.OTHER
    amount_requested: confloat(gt=0)  # type: ignore[valid-type]
    currency: Currency = Currency.USD
    purpose: str | None = Field(default=None, max_length=2000)


class MentorshipRequestDraft(BaseModel):
    """Founder input for a new request; a supplied ``id`` makes creation retry-safe."""

    id: str | None = None
    topic: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=1000)
    skills: list[str] = Field(min_length=1)
    domains: list[str] = Field(default_factory=list)
    urgency: Urgency = Urgency.MEDIUM


class StartupStatusUpdate(BaseModel):
    startup_id: str
    new_status: StartupStatus


class SkippedUpdate(BaseModel):
    startup_id: str
    reason: str


class MentorAssignmentResult(BaseModel):
    request: MentorshipRequest
    mentor: Mentor


class MentorSelectionResult(BaseModel):
    request: MentorshipRequest
    mentor: Mentor
    notification: Notification | None = None


class StartupStatusChangeResult(BaseModel):
    startup: Startup
    notification: Notification | None = None


class FundingSubmissionResult(BaseModel):
    application: FundingApplication
    startup: Startup


class SessionCompletionResult(BaseModel):
    request: MentorshipRequest
    mentor: Mentor | None = None


class BulkStatusUpdateResult(BaseModel):
    updated: list[Startup] = Field(default_factory=list)
    skipped: list[SkippedUpdate] = Field(default_factory=list)
    notifications: list[Notification] = Field(default_factory=list)


class MentorshipRequestCreationResult(BaseModel):
    request: MentorshipRequest
    notifications: list[Notification] = Field(default_factory=list)


class RequestCancellationResult(BaseModel):
    request: MentorshipRequest
    mentor: Mentor | None = None
    released_slots: int = 0
