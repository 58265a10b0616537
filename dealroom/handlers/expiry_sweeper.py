"""Expiry Sweeper — force-expires matches that stalled before negotiation got going.

A match still in matched or negotiating status long after creation is
abandoned. Each sweep selects the oldest such matches, flips them to
expired with a status-guarded update, and notifies both participants.
A match that moved on between the select and the update is left alone.
Profiles past their own expires_at are deactivated on the same schedule.

Runs either on demand (sweep/preview) or as a periodic background loop
(start/stop).
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import UTC, datetime, timedelta

from sqlalchemy import select, update

from dealroom.config import Settings
from dealroom.errors import ValidationError
from dealroom.events import Event, EventBus, publish_effects
from dealroom.matching.profiles import ProfileManager
from dealroom.matching.schemas import ProfileDetail
from dealroom.negotiation.schemas import ExpiredDeal, ExpiryPreview, ExpiryResult
from dealroom.negotiation.transitions import EXPIRABLE_STATUSES, Participants, expiry_effects
from dealroom.storage.database import Database
from dealroom.storage.models import Match, as_utc

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_HOURS = 168
DEFAULT_LIMIT = 100
MIN_TIMEOUT_HOURS = 1
MAX_TIMEOUT_HOURS = 8760
MAX_LIMIT = 500


def validate_expiry_config(
    timeout_hours: float | None = None, limit: float | None = None
) -> tuple[int, int]:
    """Apply defaults and bounds. Returns (timeout_hours, limit) as ints."""
    t = DEFAULT_TIMEOUT_HOURS if timeout_hours is None else timeout_hours
    n = DEFAULT_LIMIT if limit is None else limit
    if isinstance(t, bool) or not isinstance(t, (int, float)):
        raise ValidationError("timeout_hours must be a number")
    if isinstance(n, bool) or not isinstance(n, (int, float)):
        raise ValidationError("limit must be a number")
    if not MIN_TIMEOUT_HOURS <= t <= MAX_TIMEOUT_HOURS:
        raise ValidationError(
            f"timeout_hours must be between {MIN_TIMEOUT_HOURS} and {MAX_TIMEOUT_HOURS}",
            details={"timeout_hours": t},
        )
    if not 1 <= n <= MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}", details={"limit": n})
    return math.floor(t), math.floor(n)


class ExpirySweeper:
    """Expires stale matches, on demand or every expiry_sweep_interval seconds."""

    def __init__(self, db: Database, settings: Settings, bus: EventBus | None = None) -> None:
        self._db = db
        self._settings = settings
        self._bus = bus
        self._profiles = ProfileManager(db)
        self._task: asyncio.Task | None = None

    async def _find_stale(self, session, timeout_hours: int, limit: int) -> list[Match]:
        cutoff = datetime.now(UTC) - timedelta(hours=timeout_hours)
        result = await session.execute(
            select(Match)
            .where(Match.status.in_(EXPIRABLE_STATUSES))
            .where(Match.created_at < cutoff)
            .order_by(Match.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    def _describe(match: Match, now: datetime) -> ExpiredDeal:
        created_at = as_utc(match.created_at)
        return ExpiredDeal(
            id=match.id,
            status=match.status,
            created_at=created_at,
            agent_a_id=match.profile_a.agent_id,
            agent_b_id=match.profile_b.agent_id,
            hours_stale=round((now - created_at).total_seconds() / 3600, 1),
        )

    async def preview(
        self, timeout_hours: float | None = None, limit: float | None = None
    ) -> ExpiryPreview:
        """List the matches a sweep would expire, without touching them."""
        timeout_hours, limit = validate_expiry_config(timeout_hours, limit)
        now = datetime.now(UTC)
        async with self._db.session() as session:
            stale = await self._find_stale(session, timeout_hours, limit)
            deals = [self._describe(m, now) for m in stale]
        return ExpiryPreview(stale_count=len(deals), stale_deals=deals, timeout_hours=timeout_hours)

    async def sweep(
        self, timeout_hours: float | None = None, limit: float | None = None
    ) -> ExpiryResult:
        """Expire stale matches and notify their participants."""
        timeout_hours, limit = validate_expiry_config(timeout_hours, limit)
        now = datetime.now(UTC)
        expired: list[ExpiredDeal] = []
        effects: list[Event] = []

        async with self._db.session() as session:
            for match in await self._find_stale(session, timeout_hours, limit):
                deal = self._describe(match, now)
                result = await session.execute(
                    update(Match)
                    .where(Match.id == match.id)
                    .where(Match.status == deal.status)
                    .values(status="expired")
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.debug("Match %s moved on before it could expire", match.id)
                    continue
                expired.append(deal)
                participants = Participants(deal.agent_a_id, deal.agent_b_id)
                effects.extend(expiry_effects(match.id, participants, timeout_hours, deal.status))
            await session.commit()

        if expired:
            logger.info("Expired %d stale match(es) older than %dh", len(expired), timeout_hours)
        await publish_effects(self._bus, effects)
        return ExpiryResult(
            expired_count=len(expired),
            expired_deals=expired,
            timeout_hours=timeout_hours,
            swept_at=datetime.now(UTC),
        )

    async def expire_profiles(self) -> list[ProfileDetail]:
        """Deactivate profiles past their expires_at and tell each owner."""
        expired = await self._profiles.expire_stale()
        await publish_effects(
            self._bus,
            [
                Event(
                    type="listing_expired",
                    agent_id=p.agent_id,
                    summary=f'Your {p.side} listing in "{p.category}" has expired. Renew it to stay visible.',
                )
                for p in expired
            ],
        )
        return expired

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic sweep."""
        validate_expiry_config(self._settings.expiry_timeout_hours, self._settings.expiry_sweep_limit)
        self._task = asyncio.create_task(self._check_loop(), name="expiry-sweeper")
        logger.info(
            "Expiry sweeper started (timeout=%dh, limit=%d, interval=%gs)",
            self._settings.expiry_timeout_hours,
            self._settings.expiry_sweep_limit,
            self._settings.expiry_sweep_interval,
        )

    async def stop(self) -> None:
        """Stop the sweeper."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _check_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._settings.expiry_sweep_interval)
                await self.sweep(self._settings.expiry_timeout_hours, self._settings.expiry_sweep_limit)
                await self.expire_profiles()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Expiry sweep failed")
