"""Milestone tracker — an ordered sub-ledger of work items on a deal."""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select

from dealroom.config import Settings
from dealroom.errors import NotFoundError, ValidationError
from dealroom.events import Event, EventBus, publish_effects
from dealroom.negotiation.machine import add_system_message, check_identity, load_participant_match
from dealroom.negotiation.schemas import (
    MilestoneDetail,
    MilestoneInput,
    MilestonePatch,
    MilestoneProgress,
    MilestoneProgressCounts,
)
from dealroom.negotiation.transitions import MILESTONE_EDITABLE_STATUSES, require_status
from dealroom.storage.database import Database
from dealroom.storage.models import Milestone

logger = logging.getLogger(__name__)

ALL_COMPLETED_SUMMARY = "All milestones completed! Confirm completion to finalize the deal."


def _coerce(model: type, value: object):
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except PydanticValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err["loc"]) or "input"
        raise ValidationError(f"Invalid {field}: {err['msg']}") from e


class MilestoneTracker:
    """Adds, updates and lists milestones for a match."""

    def __init__(self, db: Database, settings: Settings, bus: EventBus | None = None) -> None:
        self.db = db
        self.settings = settings
        self.bus = bus

    async def add_milestones(
        self,
        match_id: UUID,
        agent_id: str,
        milestones: list[MilestoneInput | dict],
        *,
        authenticated_agent_id: str | None = None,
    ) -> list[MilestoneDetail]:
        """Append pending milestones to a deal that is still being shaped.

        Unspecified order indexes continue after the milestones already on
        the deal, in input order.
        """
        check_identity(agent_id, authenticated_agent_id)
        items = [_coerce(MilestoneInput, m) for m in milestones]
        if not items:
            raise ValidationError("At least one milestone is required")
        for item in items:
            if not item.title.strip():
                raise ValidationError("title is required")

        async with self.db.session() as session:
            match, participants = await load_participant_match(session, match_id, agent_id)
            require_status(match.status, MILESTONE_EDITABLE_STATUSES, "add milestones to")

            existing = await session.scalar(
                select(func.count()).select_from(Milestone).where(Milestone.match_id == match.id)
            ) or 0
            cap = self.settings.max_milestones
            if existing + len(items) > cap:
                raise ValidationError(
                    f"A deal can have at most {cap} milestones ({existing} already exist)",
                    details={"existing": existing, "requested": len(items), "max": cap},
                )

            rows = []
            for position, item in enumerate(items):
                row = Milestone(
                    match_id=match.id,
                    title=item.title.strip(),
                    description=item.description.strip() if item.description else None,
                    status="pending",
                    order_index=item.order_index if item.order_index is not None else existing + position,
                    due_date=item.due_date,
                    created_by=agent_id,
                )
                session.add(row)
                rows.append(row)
            await session.flush()
            created = [MilestoneDetail.model_validate(r) for r in rows]
            await session.commit()

        logger.info("Added %d milestone(s) to %s by %s", len(created), match_id, agent_id)
        noun = "milestone" if len(created) == 1 else "milestones"
        await publish_effects(
            self.bus,
            [
                Event(
                    type="milestone_created",
                    agent_id=participants.counterpart(agent_id),
                    match_id=match_id,
                    from_agent_id=agent_id,
                    summary=f"{agent_id} added {len(created)} {noun}",
                )
            ],
        )
        return created

    async def update_milestone(
        self,
        match_id: UUID,
        milestone_id: UUID,
        agent_id: str,
        patch: MilestonePatch | dict,
        *,
        authenticated_agent_id: str | None = None,
    ) -> MilestoneDetail:
        """Patch a milestone's status, title, description or due date."""
        check_identity(agent_id, authenticated_agent_id)
        patch = _coerce(MilestonePatch, patch)
        changes = patch.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError("No fields to update")
        if "status" in changes and changes["status"] is None:
            raise ValidationError("status cannot be null")
        if "title" in changes and (changes["title"] is None or not changes["title"].strip()):
            raise ValidationError("title must be a non-empty string")

        async with self.db.session() as session:
            match, participants = await load_participant_match(session, match_id, agent_id)
            milestone = await session.scalar(
                select(Milestone)
                .where(Milestone.id == milestone_id)
                .where(Milestone.match_id == match.id)
            )
            if milestone is None:
                raise NotFoundError("Milestone", milestone_id)

            if "title" in changes:
                milestone.title = changes["title"].strip()
            if "description" in changes:
                description = changes["description"]
                milestone.description = description.strip() if description else None
            if "due_date" in changes:
                milestone.due_date = changes["due_date"]
            new_status = changes.get("status")
            if new_status is not None:
                milestone.status = new_status
                if new_status == "completed" and milestone.completed_at is None:
                    milestone.completed_at = datetime.now(UTC)

            if new_status is not None:
                summary = f'Milestone "{milestone.title}" updated to {new_status}'
            else:
                summary = f'Milestone "{milestone.title}" updated'
            add_system_message(session, match.id, agent_id, summary)
            await session.flush()

            all_done = False
            if new_status == "completed" and match.status in ("approved", "in_progress"):
                result = await session.execute(
                    select(Milestone.status).where(Milestone.match_id == match.id)
                )
                remaining = [s for s in result.scalars().all() if s != "cancelled"]
                all_done = bool(remaining) and all(s == "completed" for s in remaining)

            detail = MilestoneDetail.model_validate(milestone)
            await session.commit()

        effects = [
            Event(
                type="milestone_updated",
                agent_id=participants.counterpart(agent_id),
                match_id=match_id,
                from_agent_id=agent_id,
                summary=summary,
            )
        ]
        if all_done:
            effects.extend(
                Event(type="milestone_updated", agent_id=agent, match_id=match_id, summary=ALL_COMPLETED_SUMMARY)
                for agent in participants.distinct
            )
        logger.info("Milestone %s on %s updated by %s: %s", milestone_id, match_id, agent_id, sorted(changes))
        await publish_effects(self.bus, effects)
        return detail

    async def list_milestones(
        self,
        match_id: UUID,
        agent_id: str,
        *,
        authenticated_agent_id: str | None = None,
    ) -> MilestoneProgress:
        """Milestones in order, with progress over the non-cancelled ones."""
        check_identity(agent_id, authenticated_agent_id)
        async with self.db.session() as session:
            await load_participant_match(session, match_id, agent_id, lock=False)
            result = await session.execute(
                select(Milestone)
                .where(Milestone.match_id == match_id)
                .order_by(Milestone.order_index, Milestone.created_at)
            )
            milestones = [MilestoneDetail.model_validate(m) for m in result.scalars().all()]

        completed = sum(1 for m in milestones if m.status == "completed")
        total = sum(1 for m in milestones if m.status != "cancelled")
        percentage = math.floor(completed * 100 / total + 0.5) if total else 0
        return MilestoneProgress(
            match_id=match_id,
            milestones=milestones,
            progress=MilestoneProgressCounts(completed=completed, total=total, percentage=percentage),
        )
