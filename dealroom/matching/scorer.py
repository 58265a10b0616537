"""Overlap scoring between an offering and a seeking profile.

Pure and deterministic: the same two profiles always produce the same
summary, and swapping them changes nothing but the order of
matching_skills.
"""

from __future__ import annotations

import math
from typing import Protocol

from dealroom.matching.schemas import OverlapSummary, ProfileParams, RateOverlap

CATEGORY_WEIGHT = 0.15
SKILL_WEIGHT = 0.45
RATE_WEIGHT = 0.25
REMOTE_WEIGHT = 0.05
DESCRIPTION_WEIGHT = 0.05
NEUTRAL_SCORE = 0.5  # used when a signal is absent rather than conflicting


class Scorable(Protocol):
    category: str
    description: str | None
    params: ProfileParams | dict


def _params(profile: Scorable) -> ProfileParams:
    params = profile.params
    if isinstance(params, ProfileParams):
        return params
    return ProfileParams.model_validate(params or {})


def _normalize_skills(skills: list[str]) -> list[str]:
    """Lower-case and de-duplicate, keeping first-seen order."""
    return list(dict.fromkeys(s.strip().lower() for s in skills if s and s.strip()))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def remote_compatible(a: ProfileParams, b: ProfileParams) -> bool:
    """Modes conflict only when both are declared, differ, and neither is hybrid."""
    if a.remote is None or b.remote is None:
        return True
    if a.remote == b.remote:
        return True
    return a.remote == "hybrid" or b.remote == "hybrid"


def compute_overlap(a: Scorable, b: Scorable) -> OverlapSummary | None:
    """Score two profiles. Returns None when they are incompatible."""
    a_params = _params(a)
    b_params = _params(b)

    # Skills: empty intersection is a veto only if both sides list skills
    a_skills = _normalize_skills(a_params.skills)
    b_skills = _normalize_skills(b_params.skills)
    b_skill_set = set(b_skills)
    matching_skills = [s for s in a_skills if s in b_skill_set]
    if a_skills and b_skills and not matching_skills:
        return None

    # Rate: both full ranges must intersect
    rate_overlap: RateOverlap | None = None
    if a_params.has_rate_range and b_params.has_rate_range:
        overlap_min = max(a_params.rate_min, b_params.rate_min)
        overlap_max = min(a_params.rate_max, b_params.rate_max)
        if overlap_min > overlap_max:
            return None
        rate_overlap = RateOverlap(min=overlap_min, max=overlap_max)

    if not remote_compatible(a_params, b_params):
        return None

    category_bonus = CATEGORY_WEIGHT if a.category == b.category else 0.0

    min_skill_set = min(len(a_skills), len(b_skills))
    skill_score = len(matching_skills) / min_skill_set if min_skill_set > 0 else NEUTRAL_SCORE

    rate_score = NEUTRAL_SCORE
    if rate_overlap is not None:
        total_range = max(a_params.rate_max, b_params.rate_max) - min(a_params.rate_min, b_params.rate_min)
        if total_range > 0:
            rate_score = (rate_overlap.max - rate_overlap.min) / total_range

    remote_bonus = REMOTE_WEIGHT
    description_bonus = DESCRIPTION_WEIGHT if (a.description or "").strip() and (b.description or "").strip() else 0.0

    raw = (
        category_bonus
        + skill_score * SKILL_WEIGHT
        + rate_score * RATE_WEIGHT
        + remote_bonus
        + description_bonus
    )
    score = min(100, _round_half_up(raw * 100))

    return OverlapSummary(
        matching_skills=matching_skills,
        rate_overlap=rate_overlap,
        remote_compatible=True,
        score=score,
    )
