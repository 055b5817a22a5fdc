"""Translation of workflow failures into HTTP responses."""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from app.services.store.errors import (
    ConflictError,
    InvariantViolation,
    NotFound,
    TransientError,
    WorkflowError,
)

logger = logging.getLogger(__name__)


def status_for(exc: WorkflowError) -> int:
    if isinstance(exc, NotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (InvariantViolation, ConflictError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, TransientError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_error(exc: WorkflowError, *, route: str) -> HTTPException:
    status_code = status_for(exc)
    logger.error("workflows.api_error", extra={"route": route, "code": exc.code})
    detail = {"code": exc.code, "message": str(exc)}
    if status_code >= 500 and not isinstance(exc, TransientError):
        detail["message"] = "Internal error while processing the request."
    return HTTPException(status_code=status_code, detail=detail)
