"""Pydantic DTOs for negotiation inputs and outputs.

Result models dump to the exact shapes agents see, e.g.
`VoteResult.model_dump(exclude_none=True)` gives
{status, message, contact_exchange?}.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

MatchStatus = Literal[
    "matched",
    "negotiating",
    "proposed",
    "approved",
    "rejected",
    "in_progress",
    "completed",
    "cancelled",
    "expired",
    "disputed",
]
MessageType = Literal["negotiation", "proposal", "system"]
MilestoneStatus = Literal["pending", "in_progress", "completed", "cancelled"]
DisputeResolution = Literal["resolved_refund", "resolved_complete", "resolved_split", "dismissed"]
DisputeStatus = Literal["open", "resolved_refund", "resolved_complete", "resolved_split", "dismissed"]


# --- Messages ---


class MessageResult(BaseModel):
    message_id: int
    status: MatchStatus


class MessageDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    match_id: UUID
    sender_agent_id: str
    content: str
    message_type: MessageType
    proposed_terms: dict[str, Any] | None
    created_at: datetime


# --- Consensus votes ---


class ContactExchange(BaseModel):
    agent_a: str
    agent_b: str


class VoteResult(BaseModel):
    """Outcome of an approve or complete call."""

    status: Literal["waiting", "approved", "completed", "rejected"]
    message: str
    contact_exchange: ContactExchange | None = None


# --- Lifecycle ---


class StartResult(BaseModel):
    status: Literal["in_progress"] = "in_progress"
    message: str = "Deal is now in progress."


class CancelResult(BaseModel):
    status: Literal["cancelled"] = "cancelled"
    message: str = "Deal has been cancelled."
    counterpart_agent_id: str


# --- Disputes ---


class DisputeInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    match_id: UUID
    filed_by_agent_id: str
    reason: str
    status: DisputeStatus


class DisputeResult(BaseModel):
    dispute: DisputeInfo
    message: str


class ResolvedDispute(BaseModel):
    id: UUID
    status: DisputeResolution
    resolution_note: str | None
    resolved_by: str


class DisputeResolutionResult(BaseModel):
    dispute: ResolvedDispute
    deal_status: MatchStatus
    message: str


# --- Milestones ---


class MilestoneInput(BaseModel):
    """Input for adding a milestone."""

    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    order_index: int | None = None
    due_date: datetime | None = None


class MilestonePatch(BaseModel):
    """Partial update of a milestone. At least one field must be set."""

    status: MilestoneStatus | None = None
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    due_date: datetime | None = None


class MilestoneDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    match_id: UUID
    title: str
    description: str | None
    status: MilestoneStatus
    order_index: int
    due_date: datetime | None
    completed_at: datetime | None
    created_by: str | None
    created_at: datetime


class MilestoneProgressCounts(BaseModel):
    completed: int
    total: int
    percentage: int


class MilestoneProgress(BaseModel):
    match_id: UUID
    milestones: list[MilestoneDetail]
    progress: MilestoneProgressCounts


# --- Expiry ---


class ExpiredDeal(BaseModel):
    id: UUID
    status: MatchStatus
    created_at: datetime
    agent_a_id: str
    agent_b_id: str
    hours_stale: float


class ExpiryResult(BaseModel):
    expired_count: int
    expired_deals: list[ExpiredDeal]
    timeout_hours: int
    swept_at: datetime


class ExpiryPreview(BaseModel):
    stale_count: int
    stale_deals: list[ExpiredDeal]
    timeout_hours: int
