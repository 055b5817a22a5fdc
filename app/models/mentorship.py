"""Domain models for mentorship requests and their embedded sessions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Final
from uuid import uuid4

from pydantic import BaseModel, Field, conint


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Urgency(str, Enum):
    """Ordered urgency levels: Low < Medium < High < Critical."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def level(self) -> int:
        return _URGENCY_LEVELS[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Urgency):
            return NotImplemented
        return self.level < other.level

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Urgency):
            return NotImplemented
        return self.level <= other.level

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Urgency):
            return NotImplemented
        return self.level > other.level

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Urgency):
            return NotImplemented
        return self.level >= other.level


_URGENCY_LEVELS: Final[dict[Urgency, int]] = {
    Urgency.LOW: 0,
    Urgency.MEDIUM: 1,
    Urgency.HIGH: 2,
    Urgency.CRITICAL: 3,
}


class RequestStatus(str, Enum):
    PENDING = "Pending"
    MATCHED = "Matched"
    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.CANCELLED)


# Statuses that require exactly one selected mentor.
MENTOR_BOUND_STATUSES: Final[frozenset[RequestStatus]] = frozenset(
    {RequestStatus.MATCHED, RequestStatus.SCHEDULED, RequestStatus.COMPLETED}
)


class SessionStatus(str, Enum):
    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class CandidateStatus(str, Enum):
    SUGGESTED = "Suggested"
    ACCEPTED = "Accepted"
    DECLINED = "Declined"
    PENDING = "Pending"


class Feedback(BaseModel):
    """Rating left by one side of a session."""

    rating: conint(ge=1, le=5)  # type: ignore[valid-type]
    comment: str | None = Field(default=None, max_length=1000)
    submitted_at: datetime = Field(default_factory=_utcnow)


class Session(BaseModel):
    """A scheduled meeting owned by a mentorship request."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    mentor_id: str
    scheduled_at: datetime
    duration_minutes: int = Field(default=60, ge=15, le=240)
    meeting_link: str | None = None
    notes: str | None = Field(default=None, max_length=2000)
    status: SessionStatus = SessionStatus.SCHEDULED
    founder_feedback: Feedback | None = None
    mentor_feedback: Feedback | None = None


class CandidateMatch(BaseModel):
    """Scored mentor suggestion embedded in a request."""

    mentor_id: str
    score: float = Field(ge=0, le=100)
    skill_match_score: float
    availability_score: float
    rating_score: float
    domain_match_score: float
    semantic_score: float | None = None
    available: bool
    status: CandidateStatus = CandidateStatus.SUGGESTED


class MentorshipRequest(BaseModel):
    """Mentorship request aggregate.

    Sessions are an owned, ordered collection: they are only ever changed by
    saving the whole request inside a transactional unit.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    startup_id: str
    requested_by: str
    topic: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=1000)
    skills: list[str] = Field(default_factory=list)
    domains: list[str] = Field(default_factory=list)
    urgency: Urgency = Urgency.MEDIUM
    status: RequestStatus = RequestStatus.PENDING
    matched_mentors: list[CandidateMatch] = Field(default_factory=list)
    selected_mentor_id: str | None = None
    sessions: list[Session] = Field(default_factory=list)
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime | None = None
    version: int = 0

    def find_session(self, session_id: str) -> Session | None:
        return next((session for session in self.sessions if session.id == session_id), None)

    @property
    def completed_session_count(self) -> int:
        return sum(1 for session in self.sessions if session.status == SessionStatus.COMPLETED)
