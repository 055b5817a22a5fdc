"""Platform user accounts referenced by the incubator core."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    FOUNDER = "founder"
    MENTOR = "mentor"
    INVESTOR = "investor"
    ADMIN = "admin"


class User(BaseModel):
    """Account owning startups, mentor profiles and notifications."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(min_length=1, max_length=100)
    email: str
    role: UserRole = UserRole.FOUNDER
