"""Explicit invariant checks run by the store before every write.

Models are mutated in place by workflows, so field constraints declared on the
pydantic models are not re-validated automatically; these checks are the last
gate before anything reaches storage.
"""

from __future__ import annotations

from app.models.funding import FundingApplication, FundingStatus
from app.models.mentor import Mentor
from app.models.mentorship import MENTOR_BOUND_STATUSES, MentorshipRequest, RequestStatus
from app.models.startup import Startup
from app.services.store.errors import InvariantViolation


def check_startup(startup: Startup, previous: Startup | None = None) -> None:
    kpis = startup.kpis
    if kpis.funding < 0 or kpis.revenue < 0 or kpis.users < 0:
        raise InvariantViolation(
            f"Startup {startup.id} has negative KPI values.", code="NEGATIVE_KPI"
        )
    if previous is not None and kpis.funding < previous.kpis.funding:
        raise InvariantViolation(
            f"Startup {startup.id} funding may not decrease "
            f"({previous.kpis.funding} -> {kpis.funding}).",
            code="FUNDING_DECREASED",
        )


def check_mentor(mentor: Mentor) -> None:
    if mentor.slots_available < 0:
        raise InvariantViolation(
            f"Mentor {mentor.id} cannot have a negative slot count.", code="NEGATIVE_SLOTS"
        )
    if mentor.mentee_count > mentor.max_mentees:
        raise InvariantViolation(
            f"Mentor {mentor.id} exceeds max mentees ({mentor.max_mentees}).",
            code="MENTOR_AT_CAPACITY",
        )
    if not 0 <= mentor.rating <= 5:
        raise InvariantViolation(
            f"Mentor {mentor.id} rating {mentor.rating} is outside 0-5.", code="INVALID_RATING"
        )


def check_request(request: MentorshipRequest) -> None:
    if request.status in MENTOR_BOUND_STATUSES and not request.selected_mentor_id:
        raise InvariantViolation(
            f"Request {request.id} is {request.status.value} without a selected mentor.",
            code="MENTOR_REQUIRED",
        )
    session_ids: set[str] = set()
    for session in request.sessions:
        if session.id in session_ids:
            raise InvariantViolation(
                f"Request {request.id} has duplicate session {session.id}.",
                code="DUPLICATE_SESSION",
            )
        session_ids.add(session.id)
        if session.mentor_id != request.selected_mentor_id:
            raise InvariantViolation(
                f"Session {session.id} does not reference the selected mentor.",
                code="SESSION_MENTOR_MISMATCH",
            )
    if request.status == RequestStatus.COMPLETED and request.completed_session_count == 0:
        raise InvariantViolation(
            f"Request {request.id} cannot complete without a completed session.",
            code="NO_COMPLETED_SESSION",
        )


def check_funding_application(application: FundingApplication) -> None:
    if application.amount_requested <= 0:
        raise InvariantViolation(
            "Funding applications must request a positive amount.", code="INVALID_AMOUNT"
        )
    if application.status == FundingStatus.SUBMITTED and application.submitted_at is None:
        raise InvariantViolation(
            f"Application {application.id} is Submitted without a submission time.",
            code="MISSING_SUBMITTED_AT",
        )
