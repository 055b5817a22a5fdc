"""Business workflows, each executed as one atomic transactional unit."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from typing import TypeVar
from uuid import uuid4

from app.config import settings
from app.models.funding import FundingApplication, FundingStatus
from app.models.mentor import Mentor
from app.models.mentorship import (
    CandidateStatus,
    Feedback,
    MentorshipRequest,
    RequestStatus,
    Session,
    SessionStatus,
)
from app.models.notification import Notification
from app.models.startup import Startup, StartupStatus, StatusChange
from app.models.workflow import (
    BulkStatusUpdateResult,
    FeedbackInput,
    FundingApplicationDraft,
    FundingSubmissionResult,
    MentorAssignmentResult,
    MentorSelectionResult,
    MentorshipRequestCreationResult,
    MentorshipRequestDraft,
    NotificationSpec,
    RequestCancellationResult,
    SessionCompletionResult,
    SessionSpec,
    SkippedUpdate,
    StartupStatusChangeResult,
    StartupStatusUpdate,
)
from app.observability.metrics import metrics
from app.services.matching.engine import MatchWeights, rank_mentors
from app.services.notifications import (
    LoggingNotificationSink,
    NotificationSink,
    build_mentor_selected_notification,
    build_request_created_notification,
    build_status_notification,
    default_status_notification,
    dispatch_notifications,
)
from app.services.store.base import EntityStore, StoreTransaction
from app.services.store.errors import (
    ConflictError,
    InvariantViolation,
    NotFound,
    TransientError,
    WorkflowError,
)
from app.services.store.factory import build_entity_store
from app.services.transactions.coordinator import TransactionCoordinator

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")

Clock = Callable[[], datetime]

DEFAULT_SESSION_MINUTES = 60
MENTORSHIP_ELIGIBLE_STATUSES = frozenset({StartupStatus.APPROVED, StartupStatus.ACTIVE})

# Failures that describe the caller's request rather than a fault in the core.
_EXPECTED_ERRORS = (NotFound, InvariantViolation, ConflictError, TransientError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowService:
    """Entry point for every multi-record operation of the incubator core."""

    def __init__(
        self,
        *,
        store: EntityStore | None = None,
        coordinator: TransactionCoordinator | None = None,
        clock: Clock | None = None,
        notification_sink: NotificationSink | None = None,
        match_weights: MatchWeights | None = None,
    ) -> None:
        if coordinator is None:
            coordinator = TransactionCoordinator(store or build_entity_store())
        self._coordinator = coordinator
        self._clock = clock or _utcnow
        self._sink = notification_sink or LoggingNotificationSink()
        self._match_weights = match_weights

    @property
    def store(self) -> EntityStore:
        return self._coordinator.store

    @property
    def coordinator(self) -> TransactionCoordinator:
        return self._coordinator

    def assign_mentor_and_create_session(
        self, request_id: str, mentor_id: str, session_spec: SessionSpec
    ) -> MentorAssignmentResult:
        """Select ``mentor_id`` for the request, schedule a session and consume one slot."""

        def work(tx: StoreTransaction) -> MentorAssignmentResult:
            request = _require(tx.requests.get(request_id), "Mentorship request", request_id)
            mentor = _require(tx.mentors.get(mentor_id), "Mentor", mentor_id)
            if _has_scheduled_session(request, mentor_id, session_spec.scheduled_at):
                return MentorAssignmentResult(request=request, mentor=mentor)
            _ensure_open_request(request)
            if request.selected_mentor_id not in (None, mentor_id):
                raise InvariantViolation(
                    f"Request {request_id} already has mentor {request.selected_mentor_id}.",
                    code="MENTOR_ALREADY_SELECTED",
                )
            now = self._clock()
            request.selected_mentor_id = mentor_id
            request.status = RequestStatus.SCHEDULED
            request.sessions.append(
                Session(
                    mentor_id=mentor_id,
                    scheduled_at=session_spec.scheduled_at,
                    duration_minutes=session_spec.duration_minutes or DEFAULT_SESSION_MINUTES,
                    meeting_link=session_spec.meeting_link,
                    notes=session_spec.notes,
                )
            )
            request.updated_at = now
            request = tx.requests.save(request)
            mentor = _require(tx.mentors.decrement_slots(mentor_id), "Mentor", mentor_id)
            return MentorAssignmentResult(request=request, mentor=mentor)

        return self._execute("assign_mentor_and_create_session", work)

    def update_startup_status_with_notification(
        self,
        startup_id: str,
        new_status: StartupStatus,
        notification_spec: NotificationSpec | None = None,
        *,
        changed_by: str | None = None,
        reason: str | None = None,
        admin_override: bool = False,
    ) -> StartupStatusChangeResult:
        """Move a startup to ``new_status`` and notify its founder in the same unit."""

        def work(tx: StoreTransaction) -> StartupStatusChangeResult:
            startup = _require(tx.startups.get(startup_id), "Startup", startup_id)
            if startup.status == new_status:
                return StartupStatusChangeResult(startup=startup, notification=None)
            _ensure_transition(startup, new_status, admin_override=admin_override)
            now = self._clock()
            previous_status = startup.status
            _apply_status(startup, new_status, now=now, changed_by=changed_by, reason=reason)
            startup = tx.startups.save(startup)
            notification = tx.notifications.insert(
                build_status_notification(
                    startup,
                    notification_spec or default_status_notification(new_status),
                    previous_status=previous_status,
                    now=now,
                )
            )
            return StartupStatusChangeResult(startup=startup, notification=notification)

        return self._execute(
            "update_startup_status",
            work,
            notifications_of=lambda result: [result.notification] if result.notification else [],
        )

    def submit_funding_application(
        self, application_data: FundingApplicationDraft, startup_id: str
    ) -> FundingSubmissionResult:
        """Submit an application and add its amount to the startup's funding.

        ``application_data.id`` either names an existing Draft to submit or the id
        to create the application under. The id is fixed before the unit starts,
        so a retried unit finds its own committed write and does not count the
        amount again.
        """
        application_id = application_data.id or str(uuid4())

        def work(tx: StoreTransaction) -> FundingSubmissionResult:
            now = self._clock()
            existing = tx.funding_applications.get(application_id)
            if existing is None:
                application = tx.funding_applications.insert(
                    FundingApplication(
                        id=application_id,
                        startup_id=startup_id,
                        applicant_id=application_data.applicant_id,
                        round_type=application_data.round_type,
                        amount_requested=application_data.amount_requested,
                        currency=application_data.currency,
                        purpose=application_data.purpose,
                        status=FundingStatus.SUBMITTED,
                        submitted_at=now,
                        created_at=now,
                    )
                )
            elif existing.status == FundingStatus.DRAFT:
                if existing.startup_id != startup_id:
                    raise ConflictError(
                        f"Application {existing.id} belongs to another startup.",
                        code="IDEMPOTENCY_KEY_REUSED",
                    )
                existing.applicant_id = application_data.applicant_id or existing.applicant_id
                existing.round_type = application_data.round_type
                existing.amount_requested = application_data.amount_requested
                existing.currency = application_data.currency
                existing.purpose = application_data.purpose or existing.purpose
                existing.status = FundingStatus.SUBMITTED
                existing.submitted_at = now
                application = tx.funding_applications.save(existing)
            else:
                if not _same_submission(existing, application_data, startup_id):
                    raise ConflictError(
                        f"Application {existing.id} was submitted with different details.",
                        code="IDEMPOTENCY_KEY_REUSED",
                    )
                if existing.status == FundingStatus.WITHDRAWN:
                    raise InvariantViolation(
                        f"Application {existing.id} has been withdrawn.",
                        code="APPLICATION_WITHDRAWN",
                    )
                startup = _require(tx.startups.get(startup_id), "Startup", startup_id)
                return FundingSubmissionResult(application=existing, startup=startup)
            startup = _require(
                tx.startups.increment_funding(startup_id, application.amount_requested),
                "Startup",
                startup_id,
            )
            return FundingSubmissionResult(application=application, startup=startup)

        return self._execute("submit_funding_application", work)

    def withdraw_funding_application(
        self, application_id: str, *, reason: str | None = None
    ) -> FundingApplication:
        """Withdraw an application that is still open.

        The startup's cumulative funding is left as is; it only moves forward.
        """

        def work(tx: StoreTransaction) -> FundingApplication:
            application = _require(
                tx.funding_applications.get(application_id), "Funding application", application_id
            )
            if application.status == FundingStatus.WITHDRAWN:
                return application
            if application.is_closed:
                raise InvariantViolation(
                    f"Application {application_id} is {application.status.value} "
                    "and can no longer be withdrawn.",
                    code="APPLICATION_CLOSED",
                )
            application.status = FundingStatus.WITHDRAWN
            application.withdrawn_at = self._clock()
            application.withdrawal_reason = reason or "No reason provided"
            return tx.funding_applications.save(application)

        return self._execute("withdraw_funding_application", work)

    def complete_session_with_feedback(
        self,
        request_id: str,
        session_id: str,
        founder_feedback: FeedbackInput,
        mentor_feedback: FeedbackInput | None = None,
    ) -> SessionCompletionResult:
        """Complete a session and recompute the mentor's rating from all founder feedback."""

        def work(tx: StoreTransaction) -> SessionCompletionResult:
            request = _require(tx.requests.get(request_id), "Mentorship request", request_id)
            session = _require(request.find_session(session_id), "Session", session_id)
            if request.status == RequestStatus.CANCELLED:
                raise InvariantViolation(
                    f"Request {request_id} is cancelled.", code="REQUEST_CANCELLED"
                )
            if session.status == SessionStatus.CANCELLED:
                raise InvariantViolation(
                    f"Session {session_id} is cancelled.", code="SESSION_CANCELLED"
                )
            now = self._clock()
            session.status = SessionStatus.COMPLETED
            session.founder_feedback = Feedback(
                rating=founder_feedback.rating, comment=founder_feedback.comment, submitted_at=now
            )
            if mentor_feedback is not None:
                session.mentor_feedback = Feedback(
                    rating=mentor_feedback.rating, comment=mentor_feedback.comment, submitted_at=now
                )
            request.updated_at = now
            request = tx.requests.save(request)

            mentor = tx.mentors.get(session.mentor_id)
            if mentor is None:
                logger.warning(
                    "workflows.feedback.mentor_missing",
                    extra={"request_id": request_id, "mentor_id": session.mentor_id},
                )
                return SessionCompletionResult(request=request, mentor=None)
            summary = tx.requests.founder_rating_summary(mentor.id)
            if summary.average is None:
                return SessionCompletionResult(request=request, mentor=mentor)
            mentor.rating = summary.average
            mentor.total_ratings = summary.rating_count
            mentor.sessions_completed = summary.completed_sessions
            mentor = tx.mentors.save(mentor)
            return SessionCompletionResult(request=request, mentor=mentor)

        return self._execute("complete_session_with_feedback", work)

    def bulk_update_startups_with_notifications(
        self,
        updates: Sequence[StartupStatusUpdate],
        *,
        admin_override: bool = False,
        changed_by: str | None = None,
    ) -> BulkStatusUpdateResult:
        """Apply many status changes at once; one invalid transition aborts the batch.

        Unknown startups and no-op updates are skipped and reported rather than
        failing the batch.
        """

        def work(tx: StoreTransaction) -> BulkStatusUpdateResult:
            now = self._clock()
            result = BulkStatusUpdateResult()
            staged: list[Notification] = []
            for update in updates:
                startup = tx.startups.get(update.startup_id)
                if startup is None:
                    result.skipped.append(
                        SkippedUpdate(startup_id=update.startup_id, reason="not_found")
                    )
                    continue
                if startup.status == update.new_status:
                    result.skipped.append(
                        SkippedUpdate(startup_id=update.startup_id, reason="unchanged")
                    )
                    continue
                _ensure_transition(startup, update.new_status, admin_override=admin_override)
                previous_status = startup.status
                _apply_status(startup, update.new_status, now=now, changed_by=changed_by)
                startup = tx.startups.save(startup)
                result.updated.append(startup)
                staged.append(
                    build_status_notification(
                        startup,
                        default_status_notification(update.new_status),
                        previous_status=previous_status,
                        now=now,
                    )
                )
            if staged:
                result.notifications = tx.notifications.insert_many(staged)
            return result

        return self._execute(
            "bulk_update_startups",
            work,
            notifications_of=lambda result: result.notifications,
        )

    def create_mentorship_request(
        self,
        draft: MentorshipRequestDraft,
        startup_id: str,
        requested_by: str,
        *,
        semantic_scores: Mapping[str, float] | None = None,
    ) -> MentorshipRequestCreationResult:
        """Open a request, rank active mentors for it and notify the best available ones."""
        request_id = draft.id or str(uuid4())

        def work(tx: StoreTransaction) -> MentorshipRequestCreationResult:
            existing = tx.requests.get(request_id)
            if existing is not None:
                if (existing.startup_id, existing.requested_by, existing.topic) != (
                    startup_id,
                    requested_by,
                    draft.topic,
                ):
                    raise ConflictError(
                        f"Request {request_id} already exists with different details.",
                        code="IDEMPOTENCY_KEY_REUSED",
                    )
                return MentorshipRequestCreationResult(request=existing, notifications=[])
            startup = _require(tx.startups.get(startup_id), "Startup", startup_id)
            if startup.status not in MENTORSHIP_ELIGIBLE_STATUSES:
                raise InvariantViolation(
                    f"Startup {startup_id} must be approved to request mentorship.",
                    code="STARTUP_NOT_ELIGIBLE",
                )
            now = self._clock()
            domains = draft.domains or ([startup.domain] if startup.domain else [])
            request = MentorshipRequest(
                id=request_id,
                startup_id=startup_id,
                requested_by=requested_by,
                topic=draft.topic,
                description=draft.description,
                skills=list(draft.skills),
                domains=list(domains),
                urgency=draft.urgency,
                created_at=now,
            )
            mentors = {mentor.id: mentor for mentor in tx.mentors.list_active()}
            ranked = rank_mentors(
                request,
                mentors.values(),
                weights=self._match_weights,
                semantic_scores=semantic_scores,
                max_results=settings.matching_max_candidates,
            )
            request.matched_mentors = [match.to_candidate() for match in ranked]
            request = tx.requests.insert(request)

            notify = [match for match in ranked if match.available][: settings.matching_notify_top]
            staged = [
                build_request_created_notification(
                    mentors[match.mentor_id], request, startup, now=now
                )
                for match in notify
            ]
            notifications = tx.notifications.insert_many(staged) if staged else []
            return MentorshipRequestCreationResult(request=request, notifications=notifications)

        return self._execute(
            "create_mentorship_request",
            work,
            notifications_of=lambda result: result.notifications,
        )

    def select_mentor(self, request_id: str, mentor_id: str) -> MentorSelectionResult:
        """Accept one mentor for a pending request and take the startup on as a mentee."""

        def work(tx: StoreTransaction) -> MentorSelectionResult:
            request = _require(tx.requests.get(request_id), "Mentorship request", request_id)
            mentor = _require(tx.mentors.get(mentor_id), "Mentor", mentor_id)
            if request.selected_mentor_id == mentor_id and request.status != RequestStatus.PENDING:
                return MentorSelectionResult(request=request, mentor=mentor, notification=None)
            if request.status not in (RequestStatus.PENDING, RequestStatus.MATCHED):
                raise InvariantViolation(
                    f"Request {request_id} is {request.status.value}; "
                    "a mentor can only be selected while it is Pending.",
                    code="REQUEST_NOT_SELECTABLE",
                )
            if request.selected_mentor_id not in (None, mentor_id):
                raise InvariantViolation(
                    f"Request {request_id} already has mentor {request.selected_mentor_id}.",
                    code="MENTOR_ALREADY_SELECTED",
                )
            if not mentor.is_active:
                raise InvariantViolation(f"Mentor {mentor_id} is inactive.", code="MENTOR_INACTIVE")
            if request.startup_id not in mentor.current_mentees:
                if mentor.is_at_capacity:
                    raise InvariantViolation(
                        f"Mentor {mentor_id} already has {mentor.max_mentees} mentees.",
                        code="MENTOR_AT_CAPACITY",
                    )
                mentor.current_mentees.append(request.startup_id)
                mentor = tx.mentors.save(mentor)

            now = self._clock()
            _accept_candidate(request, mentor)
            request.selected_mentor_id = mentor_id
            request.status = RequestStatus.MATCHED
            request.updated_at = now
            request = tx.requests.save(request)
            notification = tx.notifications.insert(
                build_mentor_selected_notification(mentor, request, now=now)
            )
            return MentorSelectionResult(request=request, mentor=mentor, notification=notification)

        return self._execute(
            "select_mentor",
            work,
            notifications_of=lambda result: [result.notification] if result.notification else [],
        )

    def cancel_mentorship_request(
        self,
        request_id: str,
        *,
        cancelled_by: str | None = None,
        reason: str | None = None,
    ) -> RequestCancellationResult:
        """Cancel a request, its scheduled sessions, and hand the mentor's slots back."""

        def work(tx: StoreTransaction) -> RequestCancellationResult:
            request = _require(tx.requests.get(request_id), "Mentorship request", request_id)
            _ensure_open_request(request)
            now = self._clock()
            released = 0
            for session in request.sessions:
                if session.status == SessionStatus.SCHEDULED:
                    session.status = SessionStatus.CANCELLED
                    released += 1
            request.status = RequestStatus.CANCELLED
            request.cancelled_at = now
            request.cancelled_by = cancelled_by
            request.cancellation_reason = reason
            request.updated_at = now
            request = tx.requests.save(request)

            mentor: Mentor | None = None
            if request.selected_mentor_id:
                mentor = tx.mentors.release_slots(request.selected_mentor_id, released)
            return RequestCancellationResult(
                request=request,
                mentor=mentor,
                released_slots=released if mentor is not None else 0,
            )

        return self._execute("cancel_mentorship_request", work)

    def complete_mentorship_request(self, request_id: str) -> MentorshipRequest:
        def work(tx: StoreTransaction) -> MentorshipRequest:
            request = _require(tx.requests.get(request_id), "Mentorship request", request_id)
            if request.status == RequestStatus.COMPLETED:
                return request
            if request.status != RequestStatus.SCHEDULED:
                raise InvariantViolation(
                    f"Request {request_id} is {request.status.value}, not Scheduled.",
                    code="REQUEST_NOT_SCHEDULED",
                )
            if request.completed_session_count == 0:
                raise InvariantViolation(
                    f"Request {request_id} has no completed session.",
                    code="NO_COMPLETED_SESSION",
                )
            request.status = RequestStatus.COMPLETED
            request.updated_at = self._clock()
            return tx.requests.save(request)

        return self._execute("complete_mentorship_request", work)

    def create_startup(self, startup: Startup) -> Startup:
        return self._execute("create_startup", lambda tx: tx.startups.insert(startup))

    def create_mentor(self, mentor: Mentor) -> Mentor:
        return self._execute("create_mentor", lambda tx: tx.mentors.insert(mentor))

    def get_startup(self, startup_id: str) -> Startup:
        return self._execute(
            "get_startup",
            lambda tx: _require(tx.startups.get(startup_id), "Startup", startup_id),
        )

    def get_mentor(self, mentor_id: str) -> Mentor:
        return self._execute(
            "get_mentor", lambda tx: _require(tx.mentors.get(mentor_id), "Mentor", mentor_id)
        )

    def get_mentorship_request(self, request_id: str) -> MentorshipRequest:
        return self._execute(
            "get_mentorship_request",
            lambda tx: _require(tx.requests.get(request_id), "Mentorship request", request_id),
        )

    def list_active_mentors(self) -> list[Mentor]:
        return self._execute("list_active_mentors", lambda tx: tx.mentors.list_active())

    def list_notifications(self, recipient_id: str) -> list[Notification]:
        return self._execute(
            "list_notifications", lambda tx: tx.notifications.list_for_recipient(recipient_id)
        )

    def _execute(
        self,
        operation: str,
        work: Callable[[StoreTransaction], ResultT],
        *,
        notifications_of: Callable[[ResultT], Sequence[Notification]] | None = None,
    ) -> ResultT:
        tags = {"operation": operation}
        try:
            with metrics.timer("workflows.latency_ms", tags=tags):
                result = self._coordinator.run_in_transaction(work, operation=operation)
        except _EXPECTED_ERRORS as exc:
            logger.warning(
                "workflows.failed",
                extra={"operation": operation, "code": exc.code, "error": str(exc)},
            )
            metrics.increment("workflows.errors", tags={**tags, "code": exc.code})
            raise
        except WorkflowError as exc:
            logger.exception("workflows.error", extra={"operation": operation, "code": exc.code})
            metrics.increment("workflows.errors", tags={**tags, "code": exc.code})
            raise
        metrics.increment("workflows.success", tags=tags)
        if notifications_of is not None:
            dispatch_notifications(self._sink, notifications_of(result))
        return result


def _require(value: ResultT | None, label: str, identifier: str) -> ResultT:
    if value is None:
        raise NotFound(f"{label} {identifier} not found.")
    return value


def _same_submission(
    application: FundingApplication, draft: FundingApplicationDraft, startup_id: str
) -> bool:
    """True when ``draft`` describes the already stored ``application``.

    Optional fields left empty on the retry are not compared.
    """
    return (
        application.startup_id == startup_id
        and application.amount_requested == draft.amount_requested
        and application.round_type == draft.round_type
        and application.currency == draft.currency
        and draft.applicant_id in (None, application.applicant_id)
        and draft.purpose in (None, application.purpose)
    )


def _ensure_open_request(request: MentorshipRequest) -> None:
    if request.status.is_terminal:
        raise InvariantViolation(
            f"Request {request.id} is already {request.status.value}.", code="REQUEST_CLOSED"
        )


def _ensure_transition(
    startup: Startup, new_status: StartupStatus, *, admin_override: bool
) -> None:
    if admin_override or startup.can_transition_to(new_status):
        return
    raise InvariantViolation(
        f"Startup {startup.id} cannot move from {startup.status.value} to {new_status.value}.",
        code="INVALID_TRANSITION",
    )


def _apply_status(
    startup: Startup,
    new_status: StartupStatus,
    *,
    now: datetime,
    changed_by: str | None = None,
    reason: str | None = None,
) -> None:
    startup.status = new_status
    startup.status_history.append(
        StatusChange(status=new_status, changed_at=now, changed_by=changed_by, reason=reason)
    )
    startup.updated_at = now


def _has_scheduled_session(
    request: MentorshipRequest, mentor_id: str, scheduled_at: datetime
) -> bool:
    return request.selected_mentor_id == mentor_id and any(
        session.mentor_id == mentor_id
        and session.status == SessionStatus.SCHEDULED
        and session.scheduled_at == scheduled_at
        for session in request.sessions
    )


def _accept_candidate(request: MentorshipRequest, mentor: Mentor) -> None:
    for candidate in request.matched_mentors:
        if candidate.mentor_id == mentor.id:
            candidate.status = CandidateStatus.ACCEPTED
            return
    match = rank_mentors(request, [mentor])[0]
    candidate = match.to_candidate()
    candidate.status = CandidateStatus.ACCEPTED
    request.matched_mentors.append(candidate)


_SERVICE_INSTANCE: WorkflowService | None = None


def get_workflow_service() -> WorkflowService:
    """Singleton accessor used by API routes."""
    global _SERVICE_INSTANCE  # noqa: PLW0603
    if _SERVICE_INSTANCE is None:
        _SERVICE_INSTANCE = WorkflowService()
    return _SERVICE_INSTANCE


def shutdown_workflow_service() -> None:
    """Release the singleton's store resources, if it was ever created."""
    global _SERVICE_INSTANCE  # noqa: PLW0603
    if _SERVICE_INSTANCE is not None:
        _SERVICE_INSTANCE.store.dispose()
        _SERVICE_INSTANCE = None
