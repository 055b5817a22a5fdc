"""API endpoints for startup lifecycle and funding workflows."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from app.api.errors import to_http_error
from app.models.funding import FundingApplication
from app.models.notification import Notification
from app.models.startup import Startup, StartupKpis, StartupStatus
from app.models.workflow import (
    BulkStatusUpdateResult,
    FundingApplicationDraft,
    FundingSubmissionResult,
    NotificationSpec,
    StartupStatusChangeResult,
    StartupStatusUpdate,
)
from app.services.store.errors import WorkflowError
from app.services.workflows.service import WorkflowService, get_workflow_service

router = APIRouter()


class StartupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    founder_id: str
    domain: str | None = None
    kpis: StartupKpis = Field(default_factory=StartupKpis)


class StatusChangeRequest(BaseModel):
    new_status: StartupStatus
    notification: NotificationSpec | None = None
    changed_by: str | None = None
    reason: str | None = Field(default=None, max_length=500)
    admin_override: bool = False


class BulkStatusRequest(BaseModel):
    updates: list[StartupStatusUpdate] = Field(min_length=1)
    admin_override: bool = False
    changed_by: str | None = None


class WithdrawalRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


@router.post("/startups", response_model=Startup, status_code=status.HTTP_201_CREATED)
def create_startup(
    payload: StartupCreate,
    service: WorkflowService = Depends(get_workflow_service),
) -> Startup:
    try:
        return service.create_startup(Startup(**payload.model_dump()))
    except WorkflowError as exc:
        raise to_http_error(exc, route="startups.create") from exc


@router.get("/startups/{startup_id}", response_model=Startup)
def get_startup(
    startup_id: str,
    service: WorkflowService = Depends(get_workflow_service),
) -> Startup:
    try:
        return service.get_startup(startup_id)
    except WorkflowError as exc:
        raise to_http_error(exc, route="startups.get") from exc


@router.post("/startups/bulk-status", response_model=BulkStatusUpdateResult)
def bulk_update_status(
    payload: BulkStatusRequest,
    service: WorkflowService = Depends(get_workflow_service),
) -> BulkStatusUpdateResult:
    """Apply a batch of status changes atomically."""
    try:
        return service.bulk_update_startups_with_notifications(
            payload.updates,
            admin_override=payload.admin_override,
            changed_by=payload.changed_by,
        )
    except WorkflowError as exc:
        raise to_http_error(exc, route="startups.bulk_status") from exc


@router.post("/startups/{startup_id}/status", response_model=StartupStatusChangeResult)
def update_status(
    startup_id: str,
    payload: StatusChangeRequest,
    service: WorkflowService = Depends(get_workflow_service),
) -> StartupStatusChangeResult:
    try:
        return service.update_startup_status_with_notification(
            startup_id,
            payload.new_status,
            payload.notification,
            changed_by=payload.changed_by,
            reason=payload.reason,
            admin_override=payload.admin_override,
        )
    except WorkflowError as exc:
        raise to_http_error(exc, route="startups.status") from exc


@router.post(
    "/startups/{startup_id}/funding-applications",
    response_model=FundingSubmissionResult,
    status_code=status.HTTP_201_CREATED,
)
def submit_funding_application(
    startup_id: str,
    payload: FundingApplicationDraft,
    service: WorkflowService = Depends(get_workflow_service),
) -> FundingSubmissionResult:
    """Submit an application; a client-supplied id makes retries safe."""
    try:
        return service.submit_funding_application(payload, startup_id)
    except WorkflowError as exc:
        raise to_http_error(exc, route="startups.funding") from exc


@router.post("/funding-applications/{application_id}/withdraw", response_model=FundingApplication)
def withdraw_funding_application(
    application_id: str,
    payload: WithdrawalRequest,
    service: WorkflowService = Depends(get_workflow_service),
) -> FundingApplication:
    try:
        return service.withdraw_funding_application(application_id, reason=payload.reason)
    except WorkflowError as exc:
        raise to_http_error(exc, route="funding.withdraw") from exc


@router.get("/users/{user_id}/notifications", response_model=list[Notification])
def list_notifications(
    user_id: str,
    service: WorkflowService = Depends(get_workflow_service),
) -> list[Notification]:
    try:
        return service.list_notifications(user_id)
    except WorkflowError as exc:
        raise to_http_error(exc, route="notifications.list") from exc
