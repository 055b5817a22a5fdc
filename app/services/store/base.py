"""Typed repository contracts for the entity store."""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from app.models.funding import FundingApplication
from app.models.mentor import Mentor
from app.models.mentorship import MentorshipRequest
from app.models.notification import Notification
from app.models.startup import Startup
from app.models.user import User
from app.services.store.errors import TransientError


@dataclass(frozen=True)
class RatingSummary:
    """Founder-feedback aggregate for one mentor across all requests."""

    average: float | None
    rating_count: int
    completed_sessions: int


class UserRepository(Protocol):
    def get(self, user_id: str) -> User | None:
        ...

    def insert(self, user: User) -> User:
        ...


class StartupRepository(Protocol):
    def get(self, startup_id: str) -> Startup | None:
        ...

    def insert(self, startup: Startup) -> Startup:
        ...

    def save(self, startup: Startup) -> Startup:
        ...

    def increment_funding(self, startup_id: str, amount: float) -> Startup | None:
        """Add ``amount`` to ``kpis.funding``; returns None if the startup is missing."""
        ...


class MentorRepository(Protocol):
    def get(self, mentor_id: str) -> Mentor | None:
        ...

    def insert(self, mentor: Mentor) -> Mentor:
        ...

    def save(self, mentor: Mentor) -> Mentor:
        ...

    def list_active(self) -> list[Mentor]:
        ...

    def decrement_slots(self, mentor_id: str) -> Mentor | None:
        """Consume one slot only while ``slots_available > 0``.

        Returns None if the mentor is missing and raises InvariantViolation when
        no slot is left.
        """
        ...

    def release_slots(self, mentor_id: str, count: int) -> Mentor | None:
        ...


class MentorshipRequestRepository(Protocol):
    def get(self, request_id: str) -> MentorshipRequest | None:
        ...

    def insert(self, request: MentorshipRequest) -> MentorshipRequest:
        ...

    def save(self, request: MentorshipRequest) -> MentorshipRequest:
        ...

    def founder_rating_summary(self, mentor_id: str) -> RatingSummary:
        ...


class FundingApplicationRepository(Protocol):
    def get(self, application_id: str) -> FundingApplication | None:
        ...

    def insert(self, application: FundingApplication) -> FundingApplication:
        ...


class NotificationRepository(Protocol):
    def insert(self, notification: Notification) -> Notification:
        ...

    def insert_many(self, notifications: Sequence[Notification]) -> list[Notification]:
        ...

    def list_for_recipient(self, recipient_id: str) -> list[Notification]:
        ...


class StoreTransaction(Protocol):
    """Handle for one transactional unit; writes are invisible until commit."""

    users: UserRepository
    startups: StartupRepository
    mentors: MentorRepository
    requests: MentorshipRequestRepository
    funding_applications: FundingApplicationRepository
    notifications: NotificationRepository

    @property
    def closed(self) -> bool:
        ...

    def commit(self) -> None:
        ...

    def abort(self) -> None:
        ...


class EntityStore(Protocol):
    """Persistent collections able to join multi-record atomic units."""

    def begin(self, *, timeout_seconds: float | None = None) -> StoreTransaction:
        ...

    def ping(self) -> bool:
        ...

    def dispose(self) -> None:
        ...


class Deadline:
    """Monotonic deadline for a transactional unit."""

    def __init__(self, timeout_seconds: float | None) -> None:
        self._timeout = timeout_seconds
        self._expires_at = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() > self._expires_at

    def check(self) -> None:
        if self.expired:
            raise TransientError(
                f"Transaction exceeded its {self._timeout:.3f}s time limit.",
                code="TRANSACTION_TIMEOUT",
            )
