"""Domain model for mentor profiles."""

from __future__ import annotations

from uuid import uuid4

from pydantic import BaseModel, Field, confloat


class Mentor(BaseModel):
    """Mentor profile with capacity counters and a feedback-derived rating.

    ``rating`` is derived data: it is recomputed from founder feedback and is
    never edited directly. ``slots_available`` is consumed one per scheduled
    session and may never go negative.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    name: str = Field(min_length=1, max_length=100)
    expertise: list[str] = Field(default_factory=list)
    domains: list[str] = Field(default_factory=list)
    bio: str | None = Field(default=None, max_length=1000)
    is_active: bool = True
    slots_available: int = Field(default=0, ge=0)
    max_mentees: int = Field(default=5, ge=1, le=20)
    current_mentees: list[str] = Field(
        default_factory=list,
        description="Startup ids currently mentored.",
    )
    rating: confloat(ge=0, le=5) = 0.0  # type: ignore[valid-type]
    total_ratings: int = Field(default=0, ge=0)
    sessions_completed: int = Field(default=0, ge=0)
    version: int = 0

    @property
    def mentee_count(self) -> int:
        return len(self.current_mentees)

    @property
    def is_at_capacity(self) -> bool:
        return self.mentee_count >= self.max_mentees

    @property
    def has_capacity(self) -> bool:
        return self.is_active and self.slots_available > 0 and not self.is_at_capacity
