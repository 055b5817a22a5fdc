"""SQLModel mappings for the relational entity store."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import expression
from sqlmodel import Field, SQLModel

from app.models.funding import Currency, FundingApplication, FundingStatus, RoundType
from app.models.mentor import Mentor
from app.models.mentorship import (
    CandidateMatch,
    Feedback,
    MentorshipRequest,
    RequestStatus,
    Session,
    SessionStatus,
    Urgency,
)
from app.models.notification import (
    Notification,
    NotificationPriority,
    NotificationType,
    RelatedModel,
)
from app.models.startup import Startup, StartupKpis, StartupStatus, StatusChange
from app.models.user import User, UserRole

JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")

ID_TYPE = String(length=64)


class UtcNow(expression.FunctionElement):
    """Dialect-aware server default that pins timestamps to UTC."""

    type = DateTime(timezone=True)
    inherit_cache = True


@compiles(UtcNow)
def _utc_now_default(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "CURRENT_TIMESTAMP"


@compiles(UtcNow, "postgresql")
def _utc_now_default_postgres(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "timezone('utc', now())"


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on round-trip; stored values are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _timestamp_column(*, nullable: bool = False) -> Column:
    if nullable:
        return Column(DateTime(timezone=True), nullable=True)
    return Column(DateTime(timezone=True), nullable=False, server_default=UtcNow())


class UserRecord(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(sa_column=Column(ID_TYPE, primary_key=True, nullable=False))
    name: str = Field(sa_column=Column(String(length=100), nullable=False))
    email: str = Field(sa_column=Column(String(length=320), nullable=False))
    role: str = Field(sa_column=Column(String(length=32), nullable=False))

    @classmethod
    def from_domain(cls, user: User) -> UserRecord:
        return cls(id=user.id, name=user.name, email=user.email, role=user.role.value)

    def to_domain(self) -> User:
        return User(id=self.id, name=self.name, email=self.email, role=UserRole(self.role))


class StartupRecord(SQLModel, table=True):
    """Startup row; KPIs are flat columns so funding can be incremented in SQL."""

    __tablename__ = "startups"
    __table_args__ = (
        sa.CheckConstraint("funding >= 0", name="ck_startups_funding_non_negative"),
        sa.Index("ix_startups_founder_id", "founder_id"),
    )

    id: str = Field(sa_column=Column(ID_TYPE, primary_key=True, nullable=False))
    name: str = Field(sa_column=Column(String(length=200), nullable=False))
    founder_id: str = Field(sa_column=Column(ID_TYPE, nullable=False))
    domain: str | None = Field(default=None, sa_column=Column(String(length=100), nullable=True))
    status: str = Field(sa_column=Column(String(length=32), nullable=False))
    revenue: float = Field(default=0.0, sa_column=Column(Float, nullable=False))
    users: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    growth: float = Field(default=0.0, sa_column=Column(Float, nullable=False))
    funding: float = Field(default=0.0, sa_column=Column(Float, nullable=False))
    status_history: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    created_at: datetime = Field(sa_column=_timestamp_column())
    updated_at: datetime | None = Field(default=None, sa_column=_timestamp_column(nullable=True))
    version: int = Field(default=0, sa_column=Column(Integer, nullable=False))

    @classmethod
    def from_domain(cls, startup: Startup) -> StartupRecord:
        return cls(
            id=startup.id,
            name=startup.name,
            founder_id=startup.founder_id,
            domain=startup.domain,
            status=startup.status.value,
            revenue=startup.kpis.revenue,
            users=startup.kpis.users,
            growth=startup.kpis.growth,
            funding=startup.kpis.funding,
            status_history=[entry.model_dump(mode="json") for entry in startup.status_history],
            created_at=startup.created_at,
            updated_at=startup.updated_at,
            version=startup.version,
        )

    def to_domain(self) -> Startup:
        return Startup(
            id=self.id,
            name=self.name,
            founder_id=self.founder_id,
            domain=self.domain,
            status=StartupStatus(self.status),
            kpis=StartupKpis(
                revenue=self.revenue,
                users=self.users,
                growth=self.growth,
                funding=self.funding,
            ),
            status_history=[StatusChange.model_validate(entry) for entry in self.status_history],
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
            version=self.version,
        )


class MentorRecord(SQLModel, table=True):
    __tablename__ = "mentors"
    __table_args__ = (
        sa.CheckConstraint("slots_available >= 0", name="ck_mentors_slots_non_negative"),
        sa.Index("ix_mentors_is_active", "is_active"),
    )

    id: str = Field(sa_column=Column(ID_TYPE, primary_key=True, nullable=False))
    user_id: str = Field(sa_column=Column(ID_TYPE, nullable=False))
    name: str = Field(sa_column=Column(String(length=100), nullable=False))
    expertise: list[str] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    domains: list[str] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    bio: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False))
    slots_available: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    max_mentees: int = Field(default=5, sa_column=Column(Integer, nullable=False))
    current_mentees: list[str] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    rating: float = Field(default=0.0, sa_column=Column(Float, nullable=False))
    total_ratings: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    sessions_completed: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    version: int = Field(default=0, sa_column=Column(Integer, nullable=False))

    @classmethod
    def from_domain(cls, mentor: Mentor) -> MentorRecord:
        return cls(**mentor.model_dump())

    def to_domain(self) -> Mentor:
        return Mentor.model_validate(self.model_dump())


class MentorshipRequestRecord(SQLModel, table=True):
    """Request row; its sessions live in ``mentorship_sessions``."""

    __tablename__ = "mentorship_requests"
    __table_args__ = (sa.Index("ix_mentorship_requests_startup_id", "startup_id"),)

    id: str = Field(sa_column=Column(ID_TYPE, primary_key=True, nullable=False))
    startup_id: str = Field(sa_column=Column(ID_TYPE, nullable=False))
    requested_by: str = Field(sa_column=Column(ID_TYPE, nullable=False))
    topic: str = Field(sa_column=Column(String(length=200), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    skills: list[str] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    domains: list[str] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    urgency: str = Field(sa_column=Column(String(length=16), nullable=False))
    status: str = Field(sa_column=Column(String(length=16), nullable=False))
    matched_mentors: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    selected_mentor_id: str | None = Field(default=None, sa_column=Column(ID_TYPE, nullable=True))
    cancelled_at: datetime | None = Field(
        default=None, sa_column=_timestamp_column(nullable=True)
    )
    cancelled_by: str | None = Field(default=None, sa_column=Column(ID_TYPE, nullable=True))
    cancellation_reason: str | None = Field(
        default=None, sa_column=Column(String(length=500), nullable=True)
    )
    created_at: datetime = Field(sa_column=_timestamp_column())
    updated_at: datetime | None = Field(default=None, sa_column=_timestamp_column(nullable=True))
    version: int = Field(default=0, sa_column=Column(Integer, nullable=False))

    @classmethod
    def from_domain(cls, request: MentorshipRequest) -> MentorshipRequestRecord:
        return cls(
            id=request.id,
            startup_id=request.startup_id,
            requested_by=request.requested_by,
            topic=request.topic,
            description=request.description,
            skills=list(request.skills),
            domains=list(request.domains),
            urgency=request.urgency.value,
            status=request.status.value,
            matched_mentors=[match.model_dump(mode="json") for match in request.matched_mentors],
            selected_mentor_id=request.selected_mentor_id,
            cancelled_at=request.cancelled_at,
            cancelled_by=request.cancelled_by,
            cancellation_reason=request.cancellation_reason,
            created_at=request.created_at,
            updated_at=request.updated_at,
            version=request.version,
        )

    def to_domain(self, sessions: list[MentorshipSessionRecord]) -> MentorshipRequest:
        return MentorshipRequest(
            id=self.id,
            startup_id=self.startup_id,
            requested_by=self.requested_by,
            topic=self.topic,
            description=self.description,
            skills=list(self.skills),
            domains=list(self.domains),
            urgency=Urgency(self.urgency),
            status=RequestStatus(self.status),
            matched_mentors=[CandidateMatch.model_validate(entry) for entry in self.matched_mentors],
            selected_mentor_id=self.selected_mentor_id,
            sessions=[record.to_domain() for record in sessions],
            cancelled_at=as_utc(self.cancelled_at),
            cancelled_by=self.cancelled_by,
            cancellation_reason=self.cancellation_reason,
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
            version=self.version,
        )


class MentorshipSessionRecord(SQLModel, table=True):
    """Session row; ``founder_rating`` is denormalised so ratings aggregate in SQL."""

    __tablename__ = "mentorship_sessions"
    __table_args__ = (
        sa.Index("ix_mentorship_sessions_request_id", "request_id"),
        sa.Index("ix_mentorship_sessions_mentor_id", "mentor_id"),
    )

    id: str = Field(sa_column=Column(ID_TYPE, primary_key=True, nullable=False))
    request_id: str = Field(
        sa_column=Column(
            ID_TYPE,
            ForeignKey("mentorship_requests.id", ondelete="CASCADE"),
            nullable=False,
        )
    )
    position: int = Field(sa_column=Column(Integer, nullable=False))
    mentor_id: str = Field(sa_column=Column(ID_TYPE, nullable=False))
    scheduled_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    duration_minutes: int = Field(sa_column=Column(Integer, nullable=False))
    meeting_link: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    notes: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(sa_column=Column(String(length=16), nullable=False))
    founder_rating: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    founder_feedback: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON_BACKING_TYPE, nullable=True)
    )
    mentor_feedback: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON_BACKING_TYPE, nullable=True)
    )

    @classmethod
    def from_domain(
        cls, session: Session, *, request_id: str, position: int
    ) -> MentorshipSessionRecord:
        return cls(
            id=session.id,
            request_id=request_id,
            position=position,
            mentor_id=session.mentor_id,
            scheduled_at=session.scheduled_at,
            duration_minutes=session.duration_minutes,
            meeting_link=session.meeting_link,
            notes=session.notes,
            status=session.status.value,
            founder_rating=session.founder_feedback.rating if session.founder_feedback else None,
            founder_feedback=(
                session.founder_feedback.model_dump(mode="json")
                if session.founder_feedback
                else None
            ),
            mentor_feedback=(
                session.mentor_feedback.model_dump(mode="json") if session.mentor_feedback else None
            ),
        )

    def to_domain(self) -> Session:
        return Session(
            id=self.id,
            mentor_id=self.mentor_id,
            scheduled_at=as_utc(self.scheduled_at),
            duration_minutes=self.duration_minutes,
            meeting_link=self.meeting_link,
            notes=self.notes,
            status=SessionStatus(self.status),
            founder_feedback=(
                Feedback.model_validate(self.founder_feedback) if self.founder_feedback else None
            ),
            mentor_feedback=(
                Feedback.model_validate(self.mentor_feedback) if self.mentor_feedback else None
            ),
        )


class FundingApplicationRecord(SQLModel, table=True):
    __tablename__ = "funding_applications"
    __table_args__ = (sa.Index("ix_funding_applications_startup_id", "startup_id"),)

    id: str = Field(sa_column=Column(ID_TYPE, primary_key=True, nullable=False))
    startup_id: str = Field(sa_column=Column(ID_TYPE, nullable=False))
    applicant_id: str | None = Field(default=None, sa_column=Column(ID_TYPE, nullable=True))
    round_type: str = Field(sa_column=Column(String(length=32), nullable=False))
    amount_requested: float = Field(sa_column=Column(Float, nullable=False))
    currency: str = Field(sa_column=Column(String(length=8), nullable=False))
    purpose: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(sa_column=Column(String(length=32), nullable=False))
    submitted_at: datetime | None = Field(
        default=None, sa_column=_timestamp_column(nullable=True)
    )
    withdrawn_at: datetime | None = Field(
        default=None, sa_column=_timestamp_column(nullable=True)
    )
    withdrawal_reason: str | None = Field(
        default=None, sa_column=Column(String(length=500), nullable=True)
    )
    created_at: datetime = Field(sa_column=_timestamp_column())
    version: int = Field(default=0, sa_column=Column(Integer, nullable=False))

    @classmethod
    def from_domain(cls, application: FundingApplication) -> FundingApplicationRecord:
        return cls(
            id=application.id,
            startup_id=application.startup_id,
            applicant_id=application.applicant_id,
            round_type=application.round_type.value,
            amount_requested=application.amount_requested,
            currency=application.currency.value,
            purpose=application.purpose,
            status=application.status.value,
            submitted_at=application.submitted_at,
            withdrawn_at=application.withdrawn_at,
            withdrawal_reason=application.withdrawal_reason,
            created_at=application.created_at,
            version=application.version,
        )

    def to_domain(self) -> FundingApplication:
        return FundingApplication(
            id=self.id,
            startup_id=self.startup_id,
            applicant_id=self.applicant_id,
            round_type=RoundType(self.round_type),
            amount_requested=self.amount_requested,
            currency=Currency(self.currency),
            purpose=self.purpose,
            status=FundingStatus(self.status),
            submitted_at=as_utc(self.submitted_at),
            withdrawn_at=as_utc(self.withdrawn_at),
            withdrawal_reason=self.withdrawal_reason,
            created_at=as_utc(self.created_at),
            version=self.version,
        )


class NotificationRecord(SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (
        sa.Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
    )

    id: str = Field(sa_column=Column(ID_TYPE, primary_key=True, nullable=False))
    recipient_id: str = Field(sa_column=Column(ID_TYPE, nullable=False))
    type: str = Field(sa_column=Column(String(length=64), nullable=False))
    title: str = Field(sa_column=Column(String(length=200), nullable=False))
    message: str = Field(sa_column=Column(String(length=1000), nullable=False))
    related_model: str | None = Field(
        default=None, sa_column=Column(String(length=32), nullable=True)
    )
    related_id: str | None = Field(default=None, sa_column=Column(ID_TYPE, nullable=True))
    priority: str = Field(sa_column=Column(String(length=16), nullable=False))
    read: bool = Field(default=False, sa_column=Column(Boolean, nullable=False))
    # ``metadata`` is reserved on declarative models.
    payload: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON_BACKING_TYPE, nullable=False)
    )
    created_at: datetime = Field(sa_column=_timestamp_column())

    @classmethod
    def from_domain(cls, notification: Notification) -> NotificationRecord:
        return cls(
            id=notification.id,
            recipient_id=notification.recipient_id,
            type=notification.type.value,
            title=notification.title,
            message=notification.message,
            related_model=notification.related_model.value if notification.related_model else None,
            related_id=notification.related_id,
            priority=notification.priority.value,
            read=notification.read,
            payload=dict(notification.metadata),
            created_at=notification.created_at,
        )

    def to_domain(self) -> Notification:
        return Notification(
            id=self.id,
            recipient_id=self.recipient_id,
            type=NotificationType(self.type),
            title=self.title,
            message=self.message,
            related_model=RelatedModel(self.related_model) if self.related_model else None,
            related_id=self.related_id,
            priority=NotificationPriority(self.priority),
            read=self.read,
            metadata=dict(self.payload or {}),
            created_at=as_utc(self.created_at),
        )


ENTITY_TABLES = [
    UserRecord.__table__,
    StartupRecord.__table__,
    MentorRecord.__table__,
    MentorshipRequestRecord.__table__,
    MentorshipSessionRecord.__table__,
    FundingApplicationRecord.__table__,
    NotificationRecord.__table__,
]
