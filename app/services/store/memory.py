"""In-process entity store with optimistic multi-record transactions.

Each record carries a version. A transaction buffers its writes and claims a
write intent on every record it touches; a second open transaction touching the
same record, or a write against a record committed since it was read, fails with
TransientError so the coordinator can retry the whole unit on fresh state. The
store lock only guards individual store calls and is never held across caller
code.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from threading import Lock
from typing import Generic, NamedTuple, TypeVar
from uuid import uuid4

from pydantic import BaseModel

from app.models.funding import FundingApplication
from app.models.mentor import Mentor
from app.models.mentorship import MentorshipRequest, SessionStatus
from app.models.notification import Notification
from app.models.startup import Startup
from app.models.user import User
from app.observability.metrics import metrics
from app.services.store.base import Deadline, RatingSummary
from app.services.store.errors import (
    ConflictError,
    InvariantViolation,
    NotFound,
    StoreError,
    TransientError,
)
from app.services.store.invariants import (
    check_funding_application,
    check_mentor,
    check_request,
    check_startup,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_MISSING = -1


class _Row(NamedTuple):
    version: int
    entity: BaseModel


class _Pending(NamedTuple):
    table: _Table
    entity: BaseModel
    inserted: bool


class _Table:
    def __init__(self, name: str) -> None:
        self.name = name
        self.rows: dict[str, _Row] = {}
        self.intents: dict[str, str] = {}


class InMemoryEntityStore:
    """Thread-safe store used for local development and tests."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._users = _Table("users")
        self._startups = _Table("startups")
        self._mentors = _Table("mentors")
        self._requests = _Table("mentorship_requests")
        self._funding_applications = _Table("funding_applications")
        self._notifications = _Table("notifications")

    def begin(self, *, timeout_seconds: float | None = None) -> InMemoryTransaction:
        return InMemoryTransaction(self, Deadline(timeout_seconds))

    def ping(self) -> bool:
        return True

    def dispose(self) -> None:
        with self._lock:
            for table in self._tables():
                table.rows.clear()
                table.intents.clear()

    def _tables(self) -> tuple[_Table, ...]:
        return (
            self._users,
            self._startups,
            self._mentors,
            self._requests,
            self._funding_applications,
            self._notifications,
        )


class InMemoryTransaction:
    """One transactional unit over an :class:`InMemoryEntityStore`."""

    def __init__(self, store: InMemoryEntityStore, deadline: Deadline) -> None:
        self.id = uuid4().hex
        self._store = store
        self._deadline = deadline
        self._reads: dict[tuple[str, str], int] = {}
        self._writes: dict[tuple[str, str], _Pending] = {}
        self._closed = False

        self.users = _MemoryUsers(self, store._users)
        self.startups = _MemoryStartups(self, store._startups)
        self.mentors = _MemoryMentors(self, store._mentors)
        self.requests = _MemoryRequests(self, store._requests)
        self.funding_applications = _MemoryFundingApplications(
            self, store._funding_applications
        )
        self.notifications = _MemoryNotifications(self, store._notifications)

    @property
    def closed(self) -> bool:
        return self._closed

    def commit(self) -> None:
        self._ensure_open()
        with self._store._lock:
            for pending in self._writes.values():
                entity_id = pending.entity.id  # type: ignore[attr-defined]
                version = pending.entity.version if hasattr(pending.entity, "version") else 0
                pending.table.rows[entity_id] = _Row(version, pending.entity)
            self._release_intents_locked()
        written = len(self._writes)
        self._writes.clear()
        self._closed = True
        metrics.increment("store.commit", tags={"backend": "memory", "writes": written})

    def abort(self) -> None:
        if self._closed:
            return
        with self._store._lock:
            self._release_intents_locked()
        self._writes.clear()
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreError("Transaction is already closed.", code="TRANSACTION_CLOSED")
        self._deadline.check()

    def _release_intents_locked(self) -> None:
        for (_, entity_id), pending in self._writes.items():
            if pending.table.intents.get(entity_id) == self.id:
                del pending.table.intents[entity_id]

    def _read(self, table: _Table, entity_id: str) -> BaseModel | None:
        self._ensure_open()
        key = (table.name, entity_id)
        pending = self._writes.get(key)
        if pending is not None:
            return pending.entity.model_copy(deep=True)
        with self._store._lock:
            row = table.rows.get(entity_id)
            self._reads.setdefault(key, row.version if row else _MISSING)
            return row.entity.model_copy(deep=True) if row else None

    def _scan(self, table: _Table, predicate: Callable[[BaseModel], bool]) -> list[BaseModel]:
        self._ensure_open()
        with self._store._lock:
            visible = {
                entity_id: row.entity.model_copy(deep=True)
                for entity_id, row in table.rows.items()
            }
        for (table_name, entity_id), pending in self._writes.items():
            if table_name == table.name:
                visible[entity_id] = pending.entity.model_copy(deep=True)
        return [entity for entity in visible.values() if predicate(entity)]

    def _write(
        self,
        table: _Table,
        entity: ModelT,
        *,
        inserted: bool,
        check: Callable[[ModelT, ModelT | None], None],
    ) -> ModelT:
        self._ensure_open()
        entity_id: str = entity.id  # type: ignore[attr-defined]
        key = (table.name, entity_id)
        with self._store._lock:
            owner = table.intents.get(entity_id)
            if owner is not None and owner != self.id:
                raise TransientError(
                    f"{table.name}/{entity_id} is being modified by another transaction.",
                    code="WRITE_CONFLICT",
                )
            row = table.rows.get(entity_id)
            pending = self._writes.get(key)
            if inserted:
                if row is not None or pending is not None:
                    raise ConflictError(
                        f"{table.name}/{entity_id} already exists.", code="DUPLICATE_ID"
                    )
                previous = None
                new_version = 0
            elif pending is not None and pending.inserted:
                previous = pending.entity
                new_version = 0
            elif row is None:
                raise NotFound(f"{table.name}/{entity_id} does not exist.")
            else:
                read_version = self._reads.get(key)
                if read_version is not None and read_version != row.version:
                    raise TransientError(
                        f"{table.name}/{entity_id} changed after it was read.",
                        code="WRITE_CONFLICT",
                    )
                held_version = getattr(entity, "version", row.version)
                if read_version is None and held_version != row.version:
                    raise ConflictError(
                        f"{table.name}/{entity_id} is at version {row.version}, "
                        f"caller holds {held_version}.",
                        code="STALE_VERSION",
                    )
                self._reads[key] = row.version
                previous = pending.entity if pending is not None else row.entity
                new_version = row.version + 1
            check(entity, previous)  # type: ignore[arg-type]
            if hasattr(entity, "version"):
                entity.version = new_version  # type: ignore[attr-defined]
            table.intents[entity_id] = self.id
            self._writes[key] = _Pending(table, entity.model_copy(deep=True), inserted)
        return entity


class _MemoryRepository(Generic[ModelT]):
    def __init__(self, tx: InMemoryTransaction, table: _Table) -> None:
        self._tx = tx
        self._table = table

    def get(self, entity_id: str) -> ModelT | None:
        return self._tx._read(self._table, entity_id)  # type: ignore[return-value]

    def insert(self, entity: ModelT) -> ModelT:
        return self._tx._write(self._table, entity, inserted=True, check=self._check)

    def save(self, entity: ModelT) -> ModelT:
        return self._tx._write(self._table, entity, inserted=False, check=self._check)

    def _check(self, entity: ModelT, previous: ModelT | None) -> None:
        return None

    def _scan(self, predicate: Callable[[ModelT], bool]) -> list[ModelT]:
        return self._tx._scan(self._table, predicate)  # type: ignore[arg-type,return-value]


class _MemoryUsers(_MemoryRepository[User]):
    pass


class _MemoryStartups(_MemoryRepository[Startup]):
    def _check(self, entity: Startup, previous: Startup | None) -> None:
        check_startup(entity, previous)

    def increment_funding(self, startup_id: str, amount: float) -> Startup | None:
        if amount < 0:
            raise InvariantViolation(
                "Funding can only be incremented by a non-negative amount.",
                code="NEGATIVE_FUNDING_DELTA",
            )
        startup = self.get(startup_id)
        if startup is None:
            return None
        startup.kpis.funding += amount
        return self.save(startup)


class _MemoryMentors(_MemoryRepository[Mentor]):
    def _check(self, entity: Mentor, previous: Mentor | None) -> None:
        check_mentor(entity)

    def list_active(self) -> list[Mentor]:
        mentors = self._scan(lambda mentor: mentor.is_active)
        return sorted(mentors, key=lambda mentor: mentor.id)

    def decrement_slots(self, mentor_id: str) -> Mentor | None:
        mentor = self.get(mentor_id)
        if mentor is None:
            return None
        if mentor.slots_available <= 0:
            raise InvariantViolation(
                f"Mentor {mentor_id} has no slots available.", code="NO_SLOTS_AVAILABLE"
            )
        mentor.slots_available -= 1
        return self.save(mentor)

    def release_slots(self, mentor_id: str, count: int) -> Mentor | None:
        if count < 0:
            raise ValueError("count must be >= 0")
        mentor = self.get(mentor_id)
        if mentor is None:
            return None
        if count:
            mentor.slots_available += count
            mentor = self.save(mentor)
        return mentor


class _MemoryRequests(_MemoryRepository[MentorshipRequest]):
    def _check(self, entity: MentorshipRequest, previous: MentorshipRequest | None) -> None:
        check_request(entity)

    def founder_rating_summary(self, mentor_id: str) -> RatingSummary:
        return summarize_founder_ratings(self._scan(lambda request: True), mentor_id)


class _MemoryFundingApplications(_MemoryRepository[FundingApplication]):
    def _check(self, entity: FundingApplication, previous: FundingApplication | None) -> None:
        check_funding_application(entity)


class _MemoryNotifications(_MemoryRepository[Notification]):
    def insert_many(self, notifications: Sequence[Notification]) -> list[Notification]:
        return [self.insert(notification) for notification in notifications]

    def list_for_recipient(self, recipient_id: str) -> list[Notification]:
        matches = self._scan(lambda notification: notification.recipient_id == recipient_id)
        return sorted(matches, key=lambda notification: (notification.created_at, notification.id))


def summarize_founder_ratings(
    requests: Sequence[MentorshipRequest], mentor_id: str
) -> RatingSummary:
    """Average founder rating over every session the mentor ran, across requests."""
    ratings: list[int] = []
    completed = 0
    for request in requests:
        for session in request.sessions:
            if session.mentor_id != mentor_id:
                continue
            if session.status == SessionStatus.COMPLETED:
                completed += 1
            if session.founder_feedback is not None:
                ratings.append(session.founder_feedback.rating)
    average = sum(ratings) / len(ratings) if ratings else None
    return RatingSummary(average=average, rating_count=len(ratings), completed_sessions=completed)
