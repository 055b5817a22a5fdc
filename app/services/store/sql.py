"""SQLModel-backed entity store for Postgres/Supabase (and SQLite in tests)."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from sqlalchemy import case, delete, func, insert, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from app.config import settings
from app.models.funding import FundingApplication
from app.models.mentor import Mentor
from app.models.mentorship import MentorshipRequest, SessionStatus
from app.models.notification import Notification
from app.models.records import (
    ENTITY_TABLES,
    FundingApplicationRecord,
    MentorRecord,
    MentorshipRequestRecord,
    MentorshipSessionRecord,
    NotificationRecord,
    StartupRecord,
    UserRecord,
)
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
    WorkflowError,
)
from app.services.store.invariants import (
    check_funding_application,
    check_mentor,
    check_request,
    check_startup,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class SqlEntityStore:
    """Entity store where each transactional unit is one database transaction."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
    ) -> None:
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlEntityStore.")

        parsed_url = make_url(database_url)
        sync_url, connect_args, drivername = _coerce_sync_database_url(parsed_url)
        pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
        pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
        max_overflow = max(pool_max - pool_min, 0)
        is_sqlite = drivername.startswith("sqlite")
        engine_kwargs: dict[str, Any] = {
            "echo": settings.debug,
            "connect_args": connect_args,
            "pool_pre_ping": not is_sqlite,
        }
        if not is_sqlite:
            engine_kwargs["pool_size"] = pool_min
            engine_kwargs["max_overflow"] = max_overflow

        self._engine: Engine = create_engine(sync_url, **engine_kwargs)
        if auto_create_schema:
            self.create_schema()
        self.metrics_tags = {"backend": _resolve_metrics_tag(parsed_url, drivername)}

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        SQLModel.metadata.create_all(self._engine, tables=ENTITY_TABLES)

    def begin(self, *, timeout_seconds: float | None = None) -> SqlTransaction:
        return SqlTransaction(self, Session(self._engine), Deadline(timeout_seconds))

    def ping(self) -> bool:
        try:
            with self._engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.warning("store.ping.failed", extra=self.metrics_tags, exc_info=True)
            return False

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()


class SqlTransaction:
    """One database transaction exposed through the typed repositories."""

    def __init__(self, store: SqlEntityStore, session: Session, deadline: Deadline) -> None:
        self._store = store
        self._session = session
        self._deadline = deadline
        # Version of each record as first observed by this unit.
        self._versions: dict[tuple[str, str], int] = {}
        self._closed = False

        self.users = _SqlUsers(self)
        self.startups = _SqlStartups(self)
        self.mentors = _SqlMentors(self)
        self.requests = _SqlRequests(self)
        self.funding_applications = _SqlFundingApplications(self)
        self.notifications = _SqlNotifications(self)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def session(self) -> Session:
        return self._session

    def commit(self) -> None:
        with self.translate("commit"):
            self._session.commit()
        self._session.close()
        self._closed = True
        metrics.increment("store.commit", tags=self._store.metrics_tags)

    def abort(self) -> None:
        if self._closed:
            return
        try:
            self._session.rollback()
        except SQLAlchemyError:
            logger.warning("store.rollback.failed", extra=self._store.metrics_tags, exc_info=True)
        finally:
            self._session.close()
            self._closed = True

    @contextmanager
    def translate(self, operation: str) -> Iterator[None]:
        """Map driver failures onto the workflow error taxonomy."""
        if self._closed:
            raise StoreError("Transaction is already closed.", code="TRANSACTION_CLOSED")
        self._deadline.check()
        backend = self._store.metrics_tags["backend"]
        try:
            yield
        except WorkflowError:
            raise
        except IntegrityError as exc:
            logger.warning("store.conflict", extra={"operation": operation, "backend": backend})
            raise ConflictError(
                f"{operation} violated an integrity constraint.", code="INTEGRITY_CONFLICT"
            ) from exc
        except OperationalError as exc:
            logger.warning("store.unavailable", extra={"operation": operation, "backend": backend})
            raise TransientError(
                f"{operation} failed because the database is busy or unreachable.",
                code="STORE_UNAVAILABLE",
            ) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                logger.warning(
                    "store.connection_lost", extra={"operation": operation, "backend": backend}
                )
                raise TransientError(
                    f"{operation} lost its database connection.", code="CONNECTION_LOST"
                ) from exc
            logger.exception("store.error", extra={"operation": operation, "backend": backend})
            raise StoreError(f"{operation} failed.") from exc
        except SQLAlchemyError as exc:
            logger.exception("store.error", extra={"operation": operation, "backend": backend})
            raise StoreError(f"{operation} failed.") from exc

    def observe(self, table: str, entity: BaseModel) -> None:
        version = getattr(entity, "version", None)
        if version is not None:
            self._versions.setdefault((table, entity.id), version)  # type: ignore[attr-defined]

    def observed_version(self, table: str, entity_id: str) -> int | None:
        return self._versions.get((table, entity_id))

    def advance(self, table: str, entity_id: str, version: int) -> None:
        self._versions[(table, entity_id)] = version


class _SqlRepository(Generic[ModelT]):
    record_type: type[SQLModel]

    def __init__(self, tx: SqlTransaction) -> None:
        self._tx = tx

    @property
    def _table(self) -> str:
        return self.record_type.__tablename__  # type: ignore[return-value]

    def get(self, entity_id: str) -> ModelT | None:
        with self._tx.translate(f"{self._table}.get"):
            record = self._load(entity_id)
            if record is None:
                return None
            entity = self._to_domain(record)
        self._tx.observe(self._table, entity)
        return entity

    def insert(self, entity: ModelT) -> ModelT:
        self._check(entity, None)
        with self._tx.translate(f"{self._table}.insert"):
            if self._load(entity.id) is not None:  # type: ignore[attr-defined]
                raise ConflictError(
                    f"{self._table}/{entity.id} already exists.",  # type: ignore[attr-defined]
                    code="DUPLICATE_ID",
                )
            if hasattr(entity, "version"):
                entity.version = 0  # type: ignore[attr-defined]
            self._insert_rows(entity)
        self._tx.observe(self._table, entity)
        return entity

    def save(self, entity: ModelT) -> ModelT:
        entity_id: str = entity.id  # type: ignore[attr-defined]
        with self._tx.translate(f"{self._table}.save"):
            current = self._load(entity_id)
            if current is None:
                raise NotFound(f"{self._table}/{entity_id} does not exist.")
            previous = self._to_domain(current)
            held = entity.version  # type: ignore[attr-defined]
            observed = self._tx.observed_version(self._table, entity_id)
            if previous.version != held:  # type: ignore[attr-defined]
                if observed == held:
                    raise TransientError(
                        f"{self._table}/{entity_id} changed after it was read.",
                        code="WRITE_CONFLICT",
                    )
                raise ConflictError(
                    f"{self._table}/{entity_id} is at version "
                    f"{previous.version}, caller holds {held}.",  # type: ignore[attr-defined]
                    code="STALE_VERSION",
                )
            self._check(entity, previous)
            values = self._row_values(entity)
            values["version"] = held + 1
            record_type = self.record_type
            statement = (
                update(record_type)
                .where(record_type.id == entity_id)  # type: ignore[attr-defined]
                .where(record_type.version == held)  # type: ignore[attr-defined]
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = self._tx.session.execute(statement)
            if result.rowcount != 1:
                raise TransientError(
                    f"{self._table}/{entity_id} changed concurrently.", code="WRITE_CONFLICT"
                )
            self._after_save(entity)
        entity.version = held + 1  # type: ignore[attr-defined]
        self._tx.advance(self._table, entity_id, held + 1)
        return entity

    def _load(self, entity_id: str) -> SQLModel | None:
        return self._tx.session.get(self.record_type, entity_id, populate_existing=True)

    def _to_domain(self, record: Any) -> ModelT:
        return record.to_domain()

    def _row_values(self, entity: ModelT) -> dict[str, Any]:
        record = self.record_type.from_domain(entity)  # type: ignore[attr-defined]
        return record.model_dump(exclude={"id"})

    def _insert_rows(self, entity: ModelT) -> None:
        record = self.record_type.from_domain(entity)  # type: ignore[attr-defined]
        self._tx.session.execute(insert(self.record_type), [record.model_dump()])

    def _after_save(self, entity: ModelT) -> None:
        return None

    def _check(self, entity: ModelT, previous: ModelT | None) -> None:
        return None

    def _increment(self, entity_id: str, guard: Any = None, **deltas: Any) -> bool:
        record_type = self.record_type
        statement = update(record_type).where(record_type.id == entity_id)  # type: ignore[attr-defined]
        if guard is not None:
            statement = statement.where(guard)
        values = {name: getattr(record_type, name) + delta for name, delta in deltas.items()}
        values["version"] = record_type.version + 1  # type: ignore[attr-defined]
        statement = statement.values(**values).execution_options(synchronize_session=False)
        return self._tx.session.execute(statement).rowcount == 1


class _SqlUsers(_SqlRepository[User]):
    record_type = UserRecord


class _SqlStartups(_SqlRepository[Startup]):
    record_type = StartupRecord

    def _check(self, entity: Startup, previous: Startup | None) -> None:
        check_startup(entity, previous)

    def increment_funding(self, startup_id: str, amount: float) -> Startup | None:
        if amount < 0:
            raise InvariantViolation(
                "Funding can only be incremented by a non-negative amount.",
                code="NEGATIVE_FUNDING_DELTA",
            )
        with self._tx.translate("startups.increment_funding"):
            if not self._increment(startup_id, funding=amount):
                return None
        return self._refresh(startup_id)

    def _refresh(self, startup_id: str) -> Startup | None:
        startup = self.get(startup_id)
        if startup is not None:
            self._tx.advance(self._table, startup_id, startup.version)
        return startup


class _SqlMentors(_SqlRepository[Mentor]):
    record_type = MentorRecord

    def _check(self, entity: Mentor, previous: Mentor | None) -> None:
        check_mentor(entity)

    def list_active(self) -> list[Mentor]:
        with self._tx.translate("mentors.list_active"):
            statement = (
                select(MentorRecord)
                .where(MentorRecord.is_active.is_(True))  # type: ignore[attr-defined]
                .order_by(MentorRecord.id)
                .execution_options(populate_existing=True)
            )
            mentors = [record.to_domain() for record in self._tx.session.exec(statement).all()]
        for mentor in mentors:
            self._tx.observe(self._table, mentor)
        return mentors

    def decrement_slots(self, mentor_id: str) -> Mentor | None:
        with self._tx.translate("mentors.decrement_slots"):
            consumed = self._increment(
                mentor_id,
                guard=MentorRecord.slots_available > 0,
                slots_available=-1,
            )
            if not consumed:
                if self._load(mentor_id) is None:
                    return None
                raise InvariantViolation(
                    f"Mentor {mentor_id} has no slots available.", code="NO_SLOTS_AVAILABLE"
                )
        return self._refresh(mentor_id)

    def release_slots(self, mentor_id: str, count: int) -> Mentor | None:
        if count < 0:
            raise ValueError("count must be >= 0")
        if count:
            with self._tx.translate("mentors.release_slots"):
                if not self._increment(mentor_id, slots_available=count):
                    return None
        return self._refresh(mentor_id)

    def _refresh(self, mentor_id: str) -> Mentor | None:
        mentor = self.get(mentor_id)
        if mentor is not None:
            self._tx.advance(self._table, mentor_id, mentor.version)
        return mentor


class _SqlRequests(_SqlRepository[MentorshipRequest]):
    record_type = MentorshipRequestRecord

    def _check(self, entity: MentorshipRequest, previous: MentorshipRequest | None) -> None:
        check_request(entity)

    def _to_domain(self, record: MentorshipRequestRecord) -> MentorshipRequest:
        statement = (
            select(MentorshipSessionRecord)
            .where(MentorshipSessionRecord.request_id == record.id)
            .order_by(MentorshipSessionRecord.position)
            .execution_options(populate_existing=True)
        )
        return record.to_domain(list(self._tx.session.exec(statement).all()))

    def _insert_rows(self, entity: MentorshipRequest) -> None:
        super()._insert_rows(entity)
        self._insert_sessions(entity)

    def _after_save(self, entity: MentorshipRequest) -> None:
        # Sessions are owned by the request and rewritten with it.
        self._tx.session.execute(
            delete(MentorshipSessionRecord)
            .where(MentorshipSessionRecord.request_id == entity.id)
            .execution_options(synchronize_session=False)
        )
        self._insert_sessions(entity)

    def _insert_sessions(self, entity: MentorshipRequest) -> None:
        rows = [
            MentorshipSessionRecord.from_domain(session, request_id=entity.id, position=index)
            .model_dump()
            for index, session in enumerate(entity.sessions)
        ]
        if rows:
            self._tx.session.execute(insert(MentorshipSessionRecord), rows)

    def founder_rating_summary(self, mentor_id: str) -> RatingSummary:
        completed = case(
            (MentorshipSessionRecord.status == SessionStatus.COMPLETED.value, 1), else_=0
        )
        statement = select(
            func.avg(MentorshipSessionRecord.founder_rating),
            func.count(MentorshipSessionRecord.founder_rating),
            func.coalesce(func.sum(completed), 0),
        ).where(MentorshipSessionRecord.mentor_id == mentor_id)
        with self._tx.translate("mentorship_sessions.founder_rating_summary"):
            average, rating_count, completed_sessions = self._tx.session.exec(statement).one()
        return RatingSummary(
            average=float(average) if average is not None else None,
            rating_count=int(rating_count or 0),
            completed_sessions=int(completed_sessions or 0),
        )


class _SqlFundingApplications(_SqlRepository[FundingApplication]):
    record_type = FundingApplicationRecord

    def _check(self, entity: FundingApplication, previous: FundingApplication | None) -> None:
        check_funding_application(entity)


class _SqlNotifications(_SqlRepository[Notification]):
    record_type = NotificationRecord

    def insert_many(self, notifications: Sequence[Notification]) -> list[Notification]:
        if not notifications:
            return []
        rows = [NotificationRecord.from_domain(item).model_dump() for item in notifications]
        with self._tx.translate("notifications.insert_many"):
            self._tx.session.execute(insert(NotificationRecord), rows)
        return list(notifications)

    def list_for_recipient(self, recipient_id: str) -> list[Notification]:
        statement = (
            select(NotificationRecord)
            .where(NotificationRecord.recipient_id == recipient_id)
            .order_by(NotificationRecord.created_at, NotificationRecord.id)
            .execution_options(populate_existing=True)
        )
        with self._tx.translate("notifications.list_for_recipient"):
            return [record.to_domain() for record in self._tx.session.exec(statement).all()]


def _coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+psycopg"):
        drivername = drivername.replace("+psycopg", "+psycopg2")
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = False
    if "ssl" in query:
        query.pop("ssl", None)
        removed_ssl = True
    sync_url = sync_url.set(query=query)

    host = (url.host or "").lower()
    if drivername.startswith("postgresql"):
        if "sslmode" not in query and (removed_ssl or "supabase.co" in host):
            connect_args["sslmode"] = "require"
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def _resolve_metrics_tag(url: URL, drivername: str) -> str:
    host = (url.host or "").lower()
    if "supabase.co" in host:
        return "supabase"
    if drivername.startswith("sqlite"):
        return "sqlite"
    return "postgres"
