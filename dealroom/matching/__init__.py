"""Matching module — profiles, overlap scoring and match discovery.

Public API:
    ProfileManager  - publish/get/withdraw profiles
    MatchRegistry   - find-or-create matches for a profile
    compute_overlap - pure compatibility scorer
"""

from dealroom.matching.profiles import ProfileManager
from dealroom.matching.registry import MatchRegistry, canonical_pair
from dealroom.matching.schemas import (
    MatchCandidate,
    MatchDetail,
    OverlapSummary,
    ProfileDetail,
    ProfileInput,
    ProfileParams,
    RateOverlap,
)
from dealroom.matching.scorer import compute_overlap

__all__ = [
    "MatchRegistry",
    "ProfileManager",
    "canonical_pair",
    "compute_overlap",
    # Schemas
    "MatchCandidate",
    "MatchDetail",
    "OverlapSummary",
    "ProfileDetail",
    "ProfileInput",
    "ProfileParams",
    "RateOverlap",
]
