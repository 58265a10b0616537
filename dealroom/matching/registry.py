"""Match registry — find-or-create matches between opposite-side profiles.

Match creation is an idempotent get-or-insert keyed on the canonical
(profile_a_id, profile_b_id) pair, where A is the lexically smaller id.
Concurrent callers racing on the same pair converge on one row: the losing
insert trips the uq_matches_pair constraint, rolls back, and re-reads the
winner's row instead of surfacing an error.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from dealroom.config import Settings
from dealroom.errors import NotFoundError
from dealroom.events import Event, EventBus, publish_effects
from dealroom.matching.profiles import is_live, to_profile_detail
from dealroom.matching.schemas import MatchCandidate, MatchDetail, OverlapSummary
from dealroom.matching.scorer import compute_overlap
from dealroom.storage.database import Database
from dealroom.storage.models import Match, Profile

logger = logging.getLogger(__name__)

_OPPOSITE_SIDE = {"offering": "seeking", "seeking": "offering"}


def canonical_pair(first: UUID, second: UUID) -> tuple[UUID, UUID]:
    """Order two profile ids so the lexically smaller one comes first."""
    return (first, second) if str(first) <= str(second) else (second, first)


def to_match_detail(match: Match) -> MatchDetail:
    return MatchDetail(
        id=match.id,
        profile_a_id=match.profile_a_id,
        profile_b_id=match.profile_b_id,
        agent_a_id=match.profile_a.agent_id,
        agent_b_id=match.profile_b.agent_id,
        overlap=OverlapSummary.model_validate(match.overlap_summary),
        status=match.status,
        created_at=match.created_at,
        expires_at=match.expires_at,
    )


class MatchRegistry:
    """Discovers compatible counterparts and persists Match records."""

    def __init__(self, db: Database, settings: Settings, bus: EventBus | None = None) -> None:
        self.db = db
        self.settings = settings
        self.bus = bus

    async def find_or_create_matches(self, profile_id: UUID) -> list[MatchCandidate]:
        """Match a profile against every compatible active counterpart.

        Returns an empty list when the profile is unknown, inactive or
        expired. Expired counterparts are never candidates.
        Results are sorted by descending overlap score.
        """
        now = datetime.now(UTC)
        async with self.db.session() as session:
            profile = await session.get(Profile, profile_id)
            if profile is None or not is_live(profile, now):
                return []

            # Category is a scoring bonus, not a filter
            result = await session.execute(
                select(Profile)
                .where(Profile.side == _OPPOSITE_SIDE[profile.side])
                .where(Profile.active.is_(True))
                .where(or_(Profile.expires_at.is_(None), Profile.expires_at > now))
                .where(Profile.agent_id != profile.agent_id)
            )
            candidates = list(result.scalars().all())

        matches: list[MatchCandidate] = []
        events: list[Event] = []
        for candidate in candidates:
            overlap = compute_overlap(profile, candidate)
            if overlap is None:
                continue

            a_id, b_id = canonical_pair(profile.id, candidate.id)
            match_id, created = await self._get_or_insert(a_id, b_id, overlap)
            if created:
                events.extend(_new_match_events(match_id, profile, candidate, overlap))
            matches.append(
                MatchCandidate(
                    match_id=match_id,
                    counterpart=to_profile_detail(candidate),
                    overlap=overlap,
                )
            )

        await publish_effects(self.bus, events)
        matches.sort(key=lambda m: m.overlap.score, reverse=True)
        logger.info(
            "Profile %s: %d match(es), %d new",
            profile_id,
            len(matches),
            len(events) // 2,
        )
        return matches

    async def require_matches(self, profile_id: UUID) -> list[MatchCandidate]:
        """Like find_or_create_matches, but raises NotFoundError for unknown, inactive or expired profiles."""
        async with self.db.session() as session:
            profile = await session.get(Profile, profile_id)
            if profile is None or not is_live(profile):
                raise NotFoundError("Profile", profile_id)
        return await self.find_or_create_matches(profile_id)

    async def get_match(self, match_id: UUID) -> MatchDetail:
        """Fetch a match with both participants. Raises NotFoundError."""
        async with self.db.session() as session:
            match = await session.get(Match, match_id)
            if match is None:
                raise NotFoundError("Match", match_id)
            return to_match_detail(match)

    # ------------------------------------------------------------------
    # get-or-insert
    # ------------------------------------------------------------------

    async def _get_or_insert(
        self, a_id: UUID, b_id: UUID, overlap: OverlapSummary
    ) -> tuple[UUID, bool]:
        """Return (match_id, created) for the canonical pair."""
        existing = await self._find_pair(a_id, b_id)
        if existing is not None:
            return existing, False
        return await self._insert_match(a_id, b_id, overlap)

    async def _find_pair(self, a_id: UUID, b_id: UUID) -> UUID | None:
        async with self.db.session() as session:
            return await session.scalar(
                select(Match.id)
                .where(Match.profile_a_id == a_id)
                .where(Match.profile_b_id == b_id)
            )

    async def _insert_match(
        self, a_id: UUID, b_id: UUID, overlap: OverlapSummary
    ) -> tuple[UUID, bool]:
        """Insert the pair; on a uniqueness conflict fall back to the existing row."""
        now = datetime.now(UTC)
        async with self.db.session() as session:
            match = Match(
                profile_a_id=a_id,
                profile_b_id=b_id,
                overlap_summary=overlap.model_dump(mode="json"),
                status="matched",
                created_at=now,
                # The deadline the periodic sweeper enforces
                expires_at=now + timedelta(hours=self.settings.expiry_timeout_hours),
            )
            session.add(match)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("Lost insert race for pair %s/%s, reusing existing match", a_id, b_id)
            else:
                logger.info("Created match %s for pair %s/%s (score=%d)", match.id, a_id, b_id, overlap.score)
                return match.id, True

        existing = await self._find_pair(a_id, b_id)
        if existing is None:
            raise RuntimeError(f"Match for pair {a_id}/{b_id} vanished after conflict")
        return existing, False


def _new_match_events(
    match_id: UUID, profile: Profile, candidate: Profile, overlap: OverlapSummary
) -> list[Event]:
    return [
        Event(
            type="new_match",
            agent_id=candidate.agent_id,
            match_id=match_id,
            from_agent_id=profile.agent_id,
            summary=f"New match found with {profile.agent_id} ({overlap.score}% compatibility)",
        ),
        Event(
            type="new_match",
            agent_id=profile.agent_id,
            match_id=match_id,
            from_agent_id=candidate.agent_id,
            summary=f"New match found with {candidate.agent_id} ({overlap.score}% compatibility)",
        ),
    ]
