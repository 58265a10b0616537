"""Pydantic DTOs for profile and match inputs and outputs.

These models define the public contract for the matching module.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

Side = Literal["offering", "seeking"]
RemoteMode = Literal["remote", "onsite", "hybrid"]

# Keys ProfileParams knows about; everything else lands in `extra`
_KNOWN_PARAMS = {
    "skills",
    "rate_min",
    "rate_max",
    "currency",
    "availability",
    "hours_min",
    "hours_max",
    "duration_min_weeks",
    "duration_max_weeks",
    "remote",
    "location",
    "extra",
}


# --- Profiles ---


class ProfileParams(BaseModel):
    """Typed attribute bag of a profile, with an open extension map."""

    skills: list[str] = []
    rate_min: float | None = None
    rate_max: float | None = None
    currency: str | None = None
    availability: str | None = None
    hours_min: float | None = None
    hours_max: float | None = None
    duration_min_weeks: float | None = None
    duration_max_weeks: float | None = None
    remote: RemoteMode | None = None
    location: str | None = None
    extra: dict[str, Any] = {}

    @model_validator(mode="before")
    @classmethod
    def _collect_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = {k: v for k, v in data.items() if k in _KNOWN_PARAMS}
        unknown = {k: v for k, v in data.items() if k not in _KNOWN_PARAMS}
        if unknown:
            known["extra"] = {**known.get("extra", {}), **unknown}
        return known

    @model_validator(mode="after")
    def _check_rate_range(self) -> ProfileParams:
        if self.rate_min is not None and self.rate_max is not None and self.rate_min > self.rate_max:
            raise ValueError("rate_min must be <= rate_max")
        return self

    @property
    def has_rate_range(self) -> bool:
        return self.rate_min is not None and self.rate_max is not None

    def to_storage(self) -> dict[str, Any]:
        """Flatten for the JSON column: known fields plus extra keys at top level."""
        data = self.model_dump(exclude={"extra"}, exclude_none=True)
        if not data.get("skills"):
            data.pop("skills", None)
        return {**self.extra, **data}


class ProfileInput(BaseModel):
    """Input for publishing a profile."""

    agent_id: str = Field(min_length=1)
    side: Side
    category: str = Field(min_length=1)
    params: ProfileParams = ProfileParams()
    description: str | None = None
    expires_at: datetime | None = None


class ProfileDetail(BaseModel):
    """Full profile with all fields."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agent_id: str
    side: Side
    category: str
    params: ProfileParams
    description: str | None
    active: bool
    created_at: datetime
    expires_at: datetime | None = None


# --- Matches ---


class RateOverlap(BaseModel):
    min: float
    max: float


class OverlapSummary(BaseModel):
    """Computed compatibility between two profiles."""

    matching_skills: list[str]
    rate_overlap: RateOverlap | None
    remote_compatible: bool
    score: int = Field(ge=0, le=100)


class MatchCandidate(BaseModel):
    """One row of a match lookup: {match_id, counterpart, overlap}."""

    match_id: UUID
    counterpart: ProfileDetail
    overlap: OverlapSummary


class MatchDetail(BaseModel):
    """A match with both participants resolved."""

    id: UUID
    profile_a_id: UUID
    profile_b_id: UUID
    agent_a_id: str
    agent_b_id: str
    overlap: OverlapSummary
    status: str
    created_at: datetime
    expires_at: datetime | None
