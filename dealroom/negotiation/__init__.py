"""Negotiation module — the deal lifecycle state machine and milestones.

Public API: NegotiationStateMachine, MilestoneTracker + result schemas.
"""

from dealroom.negotiation.machine import NegotiationStateMachine
from dealroom.negotiation.milestones import MilestoneTracker
from dealroom.negotiation.schemas import (
    CancelResult,
    ContactExchange,
    DisputeResolutionResult,
    DisputeResult,
    ExpiredDeal,
    ExpiryPreview,
    ExpiryResult,
    MessageDetail,
    MessageResult,
    MilestoneDetail,
    MilestoneInput,
    MilestonePatch,
    MilestoneProgress,
    StartResult,
    VoteResult,
)

__all__ = [
    "MilestoneTracker",
    "NegotiationStateMachine",
    # Results
    "CancelResult",
    "ContactExchange",
    "DisputeResolutionResult",
    "DisputeResult",
    "ExpiredDeal",
    "ExpiryPreview",
    "ExpiryResult",
    "MessageDetail",
    "MessageResult",
    "StartResult",
    "VoteResult",
    # Milestones
    "MilestoneDetail",
    "MilestoneInput",
    "MilestonePatch",
    "MilestoneProgress",
]
