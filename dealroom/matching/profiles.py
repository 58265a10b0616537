"""Profile management — the standing offers and requests agents publish.

Profiles are never hard-deleted: publishing a new profile deactivates the
agent's previous active profile with the same side and category, and
withdrawing simply flips the active flag.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from dealroom.errors import ForbiddenError, NotFoundError, ValidationError
from dealroom.matching.schemas import ProfileDetail, ProfileInput
from dealroom.storage.database import Database
from dealroom.storage.models import Profile, as_utc

logger = logging.getLogger(__name__)


def to_profile_detail(profile: Profile) -> ProfileDetail:
    return ProfileDetail.model_validate(profile)


def is_live(profile: Profile, now: datetime | None = None) -> bool:
    """Active and not past its expires_at."""
    if not profile.active:
        return False
    if profile.expires_at is None:
        return True
    return as_utc(profile.expires_at) > (now or datetime.now(UTC))


class ProfileManager:
    """Publishes, reads, withdraws and expires profiles."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def publish(
        self, input: ProfileInput | dict, session: AsyncSession | None = None
    ) -> ProfileDetail:
        """Publish a profile, replacing the agent's active one for the same side and category."""
        if isinstance(input, dict):
            try:
                input = ProfileInput.model_validate(input)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid profile: {e.errors()[0]['msg']}") from e

        if session is None:
            async with self.db.session() as session:
                result = await self._publish(input, session)
                await session.commit()
                return result
        return await self._publish(input, session)

    async def _publish(self, input: ProfileInput, session: AsyncSession) -> ProfileDetail:
        replaced = await session.execute(
            update(Profile)
            .where(Profile.agent_id == input.agent_id)
            .where(Profile.side == input.side)
            .where(Profile.category == input.category)
            .where(Profile.active.is_(True))
            .values(active=False)
        )
        if replaced.rowcount:
            logger.info(
                "Deactivated %d previous %s/%s profile(s) for %s",
                replaced.rowcount,
                input.side,
                input.category,
                input.agent_id,
            )

        profile = Profile(
            agent_id=input.agent_id,
            side=input.side,
            category=input.category,
            params=input.params.to_storage(),
            description=input.description,
            expires_at=as_utc(input.expires_at) if input.expires_at else None,
        )
        session.add(profile)
        await session.flush()
        logger.info("Published profile %s (%s, %s) for %s", profile.id, input.side, input.category, input.agent_id)
        return to_profile_detail(profile)

    async def get(self, profile_id: UUID, session: AsyncSession | None = None) -> ProfileDetail:
        """Fetch a profile. Raises NotFoundError if it does not exist."""
        if session is None:
            async with self.db.session() as session:
                return await self._get(profile_id, session)
        return await self._get(profile_id, session)

    async def _get(self, profile_id: UUID, session: AsyncSession) -> ProfileDetail:
        profile = await session.get(Profile, profile_id)
        if profile is None:
            raise NotFoundError("Profile", profile_id)
        return to_profile_detail(profile)

    async def withdraw(
        self, profile_id: UUID, agent_id: str, session: AsyncSession | None = None
    ) -> bool:
        """Deactivate a profile. Returns False if it was already inactive."""
        if session is None:
            async with self.db.session() as session:
                result = await self._withdraw(profile_id, agent_id, session)
                await session.commit()
                return result
        return await self._withdraw(profile_id, agent_id, session)

    async def _withdraw(self, profile_id: UUID, agent_id: str, session: AsyncSession) -> bool:
        profile = await session.get(Profile, profile_id)
        if profile is None:
            raise NotFoundError("Profile", profile_id)
        if profile.agent_id != agent_id:
            raise ForbiddenError("Only the owning agent can withdraw a profile")
        if not profile.active:
            return False
        profile.active = False
        await session.flush()
        logger.info("Withdrew profile %s for %s", profile_id, agent_id)
        return True

    async def list_active(
        self, agent_id: str, session: AsyncSession | None = None
    ) -> list[ProfileDetail]:
        """List an agent's active profiles, newest first."""
        if session is None:
            async with self.db.session() as session:
                return await self._list_active(agent_id, session)
        return await self._list_active(agent_id, session)

    async def _list_active(self, agent_id: str, session: AsyncSession) -> list[ProfileDetail]:
        result = await session.execute(
            select(Profile)
            .where(Profile.agent_id == agent_id)
            .where(Profile.active.is_(True))
            .order_by(Profile.created_at.desc())
        )
        return [to_profile_detail(p) for p in result.scalars().all()]

    async def expire_stale(self, session: AsyncSession | None = None) -> list[ProfileDetail]:
        """Deactivate active profiles whose expires_at has passed. Returns the ones deactivated."""
        if session is None:
            async with self.db.session() as session:
                result = await self._expire_stale(session)
                await session.commit()
                return result
        return await self._expire_stale(session)

    async def _expire_stale(self, session: AsyncSession) -> list[ProfileDetail]:
        now = datetime.now(UTC)
        result = await session.execute(
            select(Profile)
            .where(Profile.active.is_(True))
            .where(Profile.expires_at.is_not(None))
            .where(Profile.expires_at <= now)
            .order_by(Profile.expires_at.asc())
        )
        expired: list[ProfileDetail] = []
        for profile in result.scalars().all():
            # Skip profiles withdrawn or replaced since the select
            flipped = await session.execute(
                update(Profile)
                .where(Profile.id == profile.id)
                .where(Profile.active.is_(True))
                .values(active=False)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                continue
            set_committed_value(profile, "active", False)
            expired.append(to_profile_detail(profile))
        if expired:
            logger.info("Expired %d stale profile(s)", len(expired))
        return expired
