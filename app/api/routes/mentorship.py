"""API endpoints for mentors and the mentorship request lifecycle."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from app.api.errors import to_http_error
from app.models.mentor import Mentor
from app.models.mentorship import MentorshipRequest
from app.models.workflow import (
    FeedbackInput,
    MentorAssignmentResult,
    MentorSelectionResult,
    MentorshipRequestCreationResult,
    MentorshipRequestDraft,
    RequestCancellationResult,
    SessionCompletionResult,
    SessionSpec,
)
from app.services.store.errors import WorkflowError
from app.services.workflows.service import WorkflowService, get_workflow_service

router = APIRouter()


class MentorCreate(BaseModel):
    user_id: str
    name: str = Field(min_length=1, max_length=100)
    expertise: list[str] = Field(default_factory=list)
    domains: list[str] = Field(default_factory=list)
    bio: str | None = Field(default=None, max_length=1000)
    is_active: bool = True
    slots_available: int = Field(default=0, ge=0)
    max_mentees: int = Field(default=5, ge=1, le=20)


class MentorshipRequestCreate(MentorshipRequestDraft):
    startup_id: str
    requested_by: str
    semantic_scores: dict[str, float] | None = Field(
        default=None,
        description="Optional per-mentor similarity scores (0-100) from an embedding service.",
    )


class MentorSelection(BaseModel):
    mentor_id: str


class SessionAssignment(BaseModel):
    mentor_id: str
    session: SessionSpec


class SessionFeedback(BaseModel):
    founder_feedback: FeedbackInput
    mentor_feedback: FeedbackInput | None = None


class CancellationRequest(BaseModel):
    cancelled_by: str | None = None
    reason: str | None = Field(default=None, max_length=500)


@router.post("/mentors", response_model=Mentor, status_code=status.HTTP_201_CREATED)
def create_mentor(
    payload: MentorCreate,
    service: WorkflowService = Depends(get_workflow_service),
) -> Mentor:
    try:
        return service.create_mentor(Mentor(**payload.model_dump()))
    except WorkflowError as exc:
        raise to_http_error(exc, route="mentors.create") from exc


@router.get("/mentors", response_model=list[Mentor])
def list_mentors(service: WorkflowService = Depends(get_workflow_service)) -> list[Mentor]:
    try:
        return service.list_active_mentors()
    except WorkflowError as exc:
        raise to_http_error(exc, route="mentors.list") from exc


@router.get("/mentors/{mentor_id}", response_model=Mentor)
def get_mentor(
    mentor_id: str,
    service: WorkflowService = Depends(get_workflow_service),
) -> Mentor:
    try:
        return service.get_mentor(mentor_id)
    except WorkflowError as exc:
        raise to_http_error(exc, route="mentors.get") from exc


@router.post(
    "/mentorship-requests",
    response_model=MentorshipRequestCreationResult,
    status_code=status.HTTP_201_CREATED,
)
def create_mentorship_request(
    payload: MentorshipRequestCreate,
    service: WorkflowService = Depends(get_workflow_service),
) -> MentorshipRequestCreationResult:
    """Open a request and attach ranked mentor suggestions."""
    draft = MentorshipRequestDraft(
        **payload.model_dump(exclude={"startup_id", "requested_by", "semantic_scores"})
    )
    try:
        return service.create_mentorship_request(
            draft,
            payload.startup_id,
            payload.requested_by,
            semantic_scores=payload.semantic_scores,
        )
    except WorkflowError as exc:
        raise to_http_error(exc, route="mentorship.create") from exc


@router.get("/mentorship-requests/{request_id}", response_model=MentorshipRequest)
def get_mentorship_request(
    request_id: str,
    service: WorkflowService = Depends(get_workflow_service),
) -> MentorshipRequest:
    try:
        return service.get_mentorship_request(request_id)
    except WorkflowError as exc:
        raise to_http_error(exc, route="mentorship.get") from exc


@router.post("/mentorship-requests/{request_id}/select", response_model=MentorSelectionResult)
def select_mentor(
    request_id: str,
    payload: MentorSelection,
    service: WorkflowService = Depends(get_workflow_service),
) -> MentorSelectionResult:
    try:
        return service.select_mentor(request_id, payload.mentor_id)
    except WorkflowError as exc:
        raise to_http_error(exc, route="mentorship.select") from exc


@router.post(
    "/mentorship-requests/{request_id}/sessions",
    response_model=MentorAssignmentResult,
    status_code=status.HTTP_201_CREATED,
)
def schedule_session(
    request_id: str,
    payload: SessionAssignment,
    service: WorkflowService = Depends(get_workflow_service),
) -> MentorAssignmentResult:
    """Assign the mentor (if needed) and book a session against one of their slots."""
    try:
        return service.assign_mentor_and_create_session(
            request_id, payload.mentor_id, payload.session
        )
    except WorkflowError as exc:
        raise to_http_error(exc, route="mentorship.schedule") from exc


@router.post(
    "/mentorship-requests/{request_id}/sessions/{session_id}/complete",
    response_model=SessionCompletionResult,
)
def complete_session(
    request_id: str,
    session_id: str,
    payload: SessionFeedback,
    service: WorkflowService = Depends(get_workflow_service),
) -> SessionCompletionResult:
    try:
        return service.complete_session_with_feedback(
            request_id, session_id, payload.founder_feedback, payload.mentor_feedback
        )
    except WorkflowError as exc:
        raise to_http_error(exc, route="mentorship.feedback") from exc


@router.post("/mentorship-requests/{request_id}/cancel", response_model=RequestCancellationResult)
def cancel_mentorship_request(
    request_id: str,
    payload: CancellationRequest,
    service: WorkflowService = Depends(get_workflow_service),
) -> RequestCancellationResult:
    try:
        return service.cancel_mentorship_request(
            request_id, cancelled_by=payload.cancelled_by, reason=payload.reason
        )
    except WorkflowError as exc:
        raise to_http_error(exc, route="mentorship.cancel") from exc


@router.post("/mentorship-requests/{request_id}/complete", response_model=MentorshipRequest)
def complete_mentorship_request(
    request_id: str,
    service: WorkflowService = Depends(get_workflow_service),
) -> MentorshipRequest:
    try:
        return service.complete_mentorship_request(request_id)
    except WorkflowError as exc:
        raise to_http_error(exc, route="mentorship.complete") from exc
