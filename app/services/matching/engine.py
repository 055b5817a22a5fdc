"""Deterministic mentor ranking for mentorship requests.

Pure functions only: the engine never touches the store, so callers can rank
inside or outside a transactional unit.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Final, Protocol

from app.config import settings
from app.models.mentor import Mentor
from app.models.mentorship import CandidateMatch, CandidateStatus

NEUTRAL_SCORE: Final[float] = 50.0
MAX_SCORE: Final[float] = 100.0
MAX_RATING: Final[float] = 5.0


@dataclass(frozen=True)
class MatchWeights:
    """Relative importance of each sub-score in the total."""

    skill: float = 0.4
    availability: float = 0.2
    rating: float = 0.2
    semantic: float = 0.2
    domain: float = 0.0

    def __post_init__(self) -> None:
        for name in ("skill", "availability", "rating", "semantic", "domain"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} weight must be >= 0")
        if self.skill + self.availability + self.rating + self.semantic + self.domain <= 0:
            raise ValueError("at least one weight must be positive")

    @classmethod
    def from_settings(cls) -> MatchWeights:
        return cls(
            skill=settings.matching_weight_skill,
            availability=settings.matching_weight_availability,
            rating=settings.matching_weight_rating,
            semantic=settings.matching_weight_semantic,
            domain=settings.matching_weight_domain,
        )

    def without_semantic(self) -> MatchWeights:
        """Spread the semantic weight over the others in proportion to their size."""
        remaining = self.skill + self.availability + self.rating + self.domain
        if self.semantic == 0 or remaining == 0:
            return self
        scale = (remaining + self.semantic) / remaining
        return MatchWeights(
            skill=self.skill * scale,
            availability=self.availability * scale,
            rating=self.rating * scale,
            semantic=0.0,
            domain=self.domain * scale,
        )


@dataclass(frozen=True)
class MatchSubscores:
    skill: float
    availability: float
    rating: float
    domain: float
    semantic: float | None = None


@dataclass(frozen=True)
class MentorMatch:
    """One ranked mentor with its score breakdown."""

    mentor_id: str
    score: float
    subscores: MatchSubscores
    available: bool

    def to_candidate(self) -> CandidateMatch:
        return CandidateMatch(
            mentor_id=self.mentor_id,
            score=self.score,
            skill_match_score=self.subscores.skill,
            availability_score=self.subscores.availability,
            rating_score=self.subscores.rating,
            domain_match_score=self.subscores.domain,
            semantic_score=self.subscores.semantic,
            available=self.available,
            status=CandidateStatus.SUGGESTED,
        )


class RankableRequest(Protocol):
    """Anything carrying required skills and requested domains."""

    @property
    def skills(self) -> Sequence[str]:
        ...

    @property
    def domains(self) -> Sequence[str]:
        ...


def rank_mentors(
    request: RankableRequest,
    mentor_pool: Iterable[Mentor],
    *,
    weights: MatchWeights | None = None,
    semantic_scores: Mapping[str, float] | None = None,
    min_score: float | None = None,
    max_results: int | None = None,
) -> list[MentorMatch]:
    """Score and order ``mentor_pool`` against a request's skills and domains.

    A MentorshipRequest or its draft both qualify as ``request``. Mentors
    without capacity stay in the result flagged ``available=False`` and always
    sort after every mentor with capacity. Ties break on the rating sub-score,
    then mentor id.
    """
    resolved = weights or MatchWeights.from_settings()
    fallback = resolved.without_semantic()
    semantic_scores = semantic_scores or {}
    required_skills = _normalize_terms(request.skills)
    requested_domains = _normalize_terms(request.domains)

    matches: list[MentorMatch] = []
    seen: set[str] = set()
    for mentor in mentor_pool:
        if mentor.id in seen:
            continue
        seen.add(mentor.id)
        raw_semantic = semantic_scores.get(mentor.id)
        subscores = MatchSubscores(
            skill=_coverage(required_skills, mentor.expertise),
            availability=MAX_SCORE if mentor.has_capacity else 0.0,
            rating=_round(_clamp(mentor.rating / MAX_RATING * MAX_SCORE)),
            domain=_coverage(requested_domains, mentor.domains),
            semantic=_round(_clamp(raw_semantic)) if raw_semantic is not None else None,
        )
        applied = resolved if subscores.semantic is not None else fallback
        total = (
            subscores.skill * applied.skill
            + subscores.availability * applied.availability
            + subscores.rating * applied.rating
            + subscores.domain * applied.domain
            + (subscores.semantic or 0.0) * applied.semantic
        )
        weight_mass = (
            applied.skill + applied.availability + applied.rating + applied.domain + applied.semantic
        )
        score = _round(_clamp(total / weight_mass))
        if min_score is not None and score < min_score:
            continue
        matches.append(
            MentorMatch(
                mentor_id=mentor.id,
                score=score,
                subscores=subscores,
                available=mentor.has_capacity,
            )
        )

    matches.sort(
        key=lambda match: (
            not match.available,
            -match.score,
            -match.subscores.rating,
            match.mentor_id,
        )
    )
    if max_results is not None:
        return matches[: max(0, max_results)]
    return matches


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    """Cosine similarity of two embedding vectors; 0.0 for empty or zero vectors."""
    if len(left) != len(right):
        raise ValueError("vectors must have the same dimension")
    dot = sum(a * b for a, b in zip(left, right))
    norm_left = math.sqrt(sum(a * a for a in left))
    norm_right = math.sqrt(sum(b * b for b in right))
    if norm_left == 0 or norm_right == 0:
        return 0.0
    return dot / (norm_left * norm_right)


def similarity_to_score(similarity: float) -> float:
    """Map a cosine similarity in [-1, 1] onto the 0-100 sub-score scale."""
    return _round(_clamp((similarity + 1) / 2 * MAX_SCORE))


def _normalize_terms(terms: Iterable[str]) -> list[str]:
    normalized: list[str] = []
    for term in terms:
        cleaned = term.strip().lower()
        if cleaned and cleaned not in normalized:
            normalized.append(cleaned)
    return normalized


def _coverage(wanted: list[str], offered: Iterable[str]) -> float:
    if not wanted:
        return NEUTRAL_SCORE
    available = {term.strip().lower() for term in offered}
    hits = sum(1 for term in wanted if term in available)
    return _round(hits / len(wanted) * MAX_SCORE)


def _clamp(value: float, lower: float = 0.0, upper: float = MAX_SCORE) -> float:
    return max(lower, min(upper, value))


def _round(value: float) -> float:
    return round(value, 2)
