"""Read-only mentor ranking endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.errors import to_http_error
from app.models.mentorship import CandidateMatch
from app.services.matching.engine import rank_mentors
from app.services.store.errors import WorkflowError
from app.services.workflows.service import WorkflowService, get_workflow_service

router = APIRouter()


class RankMentorsRequest(BaseModel):
    skills: list[str] = Field(default_factory=list)
    domains: list[str] = Field(default_factory=list)
    semantic_scores: dict[str, float] | None = None
    min_score: float | None = Field(default=None, ge=0, le=100)
    max_results: int | None = Field(default=None, ge=1, le=100)


@router.post("/matching/rank", response_model=list[CandidateMatch])
def rank(
    payload: RankMentorsRequest,
    service: WorkflowService = Depends(get_workflow_service),
) -> list[CandidateMatch]:
    """Rank every active mentor for the given skills without creating a request."""
    try:
        mentors = service.list_active_mentors()
    except WorkflowError as exc:
        raise to_http_error(exc, route="matching.rank") from exc
    ranked = rank_mentors(
        payload,
        mentors,
        semantic_scores=payload.semantic_scores,
        min_score=payload.min_score,
        max_results=payload.max_results,
    )
    return [match.to_candidate() for match in ranked]
