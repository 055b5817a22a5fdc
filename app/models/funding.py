"""Domain models for funding applications."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, confloat


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FundingStatus(str, Enum):
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    UNDER_REVIEW = "Under Review"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    WITHDRAWN = "Withdrawn"


CLOSED_FUNDING_STATUSES = frozenset(
    {FundingStatus.APPROVED, FundingStatus.REJECTED, FundingStatus.WITHDRAWN}
)


class RoundType(str, Enum):
    PRE_SEED = "Pre-Seed"
    SEED = "Seed"
    SERIES_A = "Series A"
    SERIES_B = "Series B"
    SERIES_C = "Series C"
    BRIDGE = "Bridge"
    GRANT = "Grant"
    OTHER = "Other"


class Currency(str, Enum):
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    INR = "INR"
    OTHER = "Other"


class FundingApplication(BaseModel):
    """Funding request linked to a startup."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    startup_id: str
    applicant_id: str | None = None
    round_type: RoundType = RoundType.OTHER
    amount_requested: confloat(gt=0)  # type: ignore[valid-type]
    currency: Currency = Currency.USD
    purpose: str | None = Field(default=None, max_length=2000)
    status: FundingStatus = FundingStatus.DRAFT
    submitted_at: datetime | None = None
    withdrawn_at: datetime | None = None
    withdrawal_reason: str | None = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=_utcnow)
    version: int = 0

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_FUNDING_STATUSES
