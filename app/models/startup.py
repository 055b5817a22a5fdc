"""Domain models for incubated startups."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Final
from uuid import uuid4

from pydantic import BaseModel, Field, confloat


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StartupStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    ACTIVE = "Active"
    REJECTED = "Rejected"
    GRADUATED = "Graduated"
    INACTIVE = "Inactive"


# Forward-only lifecycle; anything else needs an explicit admin override.
STARTUP_TRANSITIONS: Final[dict[StartupStatus, frozenset[StartupStatus]]] = {
    StartupStatus.PENDING: frozenset({StartupStatus.APPROVED, StartupStatus.REJECTED}),
    StartupStatus.APPROVED: frozenset({StartupStatus.ACTIVE, StartupStatus.REJECTED}),
    StartupStatus.ACTIVE: frozenset({StartupStatus.GRADUATED, StartupStatus.INACTIVE}),
    StartupStatus.REJECTED: frozenset(),
    StartupStatus.GRADUATED: frozenset(),
    StartupStatus.INACTIVE: frozenset(),
}


class StartupKpis(BaseModel):
    """Key performance indicators tracked for a startup."""

    revenue: confloat(ge=0) = 0.0  # type: ignore[valid-type]
    users: int = Field(default=0, ge=0)
    growth: float = Field(default=0.0, description="Growth rate in percent.")
    funding: confloat(ge=0) = 0.0  # type: ignore[valid-type]


class StatusChange(BaseModel):
    status: StartupStatus
    changed_at: datetime = Field(default_factory=_utcnow)
    changed_by: str | None = None
    reason: str | None = None


class Startup(BaseModel):
    """Startup aggregate as persisted by the entity store."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(min_length=1, max_length=200)
    founder_id: str
    domain: str | None = None
    status: StartupStatus = StartupStatus.PENDING
    kpis: StartupKpis = Field(default_factory=StartupKpis)
    status_history: list[StatusChange] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime | None = None
    version: int = 0

    def can_transition_to(self, new_status: StartupStatus) -> bool:
        return new_status in STARTUP_TRANSITIONS[self.status]
