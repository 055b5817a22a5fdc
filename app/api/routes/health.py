from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.config import settings
from app.services.workflows.service import WorkflowService, get_workflow_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
def readiness_check(service: WorkflowService = Depends(get_workflow_service)):
    """Readiness check endpoint that includes entity store connectivity."""
    if not service.store.ping():
        logger.warning("health.store_unavailable")
        raise HTTPException(status_code=503, detail="Entity store is not available")

    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if settings.database_url else "in-memory",
    }
