"""Negotiation state machine — advances a match through its deal lifecycle.

Every operation runs one read-decide-write transaction against the match
row: the row is loaded with SELECT ... FOR UPDATE (a no-op on SQLite), the
pure rules in transitions.py decide the outcome, and the status write is a
compare-and-swap guarded on the status that was read. Notification effects
are handed to the bus only after the transaction commits, and a failure to
publish never undoes or fails the transition.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from dealroom.config import Settings
from dealroom.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from dealroom.events import EventBus, publish_effects
from dealroom.negotiation import transitions as rules
from dealroom.negotiation.schemas import (
    CancelResult,
    ContactExchange,
    DisputeInfo,
    DisputeResolutionResult,
    DisputeResult,
    MessageDetail,
    MessageResult,
    ResolvedDispute,
    StartResult,
    VoteResult,
)
from dealroom.negotiation.transitions import Participants
from dealroom.storage.database import Database
from dealroom.storage.models import Approval, Completion, Dispute, Match, Message

logger = logging.getLogger(__name__)

_MESSAGE_TYPE_ALIASES = {"text": "negotiation"}
_VALID_MESSAGE_TYPES = ("negotiation", "proposal", "system")
MAX_REASON_LENGTH = 2000

_VOTE_MESSAGES = {
    "waiting": "Your approval has been recorded. Waiting for the other party.",
    "approved": "Both parties approved! Deal is finalized.",
    "rejected": "Deal rejected.",
}
_COMPLETION_MESSAGES = {
    "waiting": "Your completion confirmed. Waiting for the other party.",
    "completed": "Both parties confirmed! Deal is completed.",
}


def check_identity(agent_id: str, authenticated_agent_id: str | None) -> None:
    """The claimed agent id must match the authenticated identity, when one is given."""
    if not agent_id:
        raise ValidationError("agent_id is required")
    if authenticated_agent_id is not None and agent_id != authenticated_agent_id:
        raise ForbiddenError(
            "agent_id does not match authenticated identity",
            details={"agent_id": agent_id},
        )


async def load_participant_match(
    session: AsyncSession, match_id: UUID, agent_id: str, *, lock: bool = True
) -> tuple[Match, Participants]:
    """Load the match, locking its row unless lock=False, and verify the agent participates in it."""
    stmt = select(Match).where(Match.id == match_id)
    if lock:
        stmt = stmt.with_for_update(of=Match)
    result = await session.execute(stmt)
    match = result.scalar_one_or_none()
    if match is None:
        raise NotFoundError("Match", match_id)

    participants = Participants(match.profile_a.agent_id, match.profile_b.agent_id)
    if not participants.includes(agent_id):
        raise ForbiddenError(
            "agent_id is not part of this deal",
            details={"agent_id": agent_id, "match_id": str(match_id)},
        )
    return match, participants


async def swap_status(session: AsyncSession, match: Match, expected: str, new: str) -> None:
    """Compare-and-swap the match status. Raises if someone else moved it first."""
    if expected == new:
        return
    result = await session.execute(
        update(Match)
        .where(Match.id == match.id)
        .where(Match.status == expected)
        .values(status=new)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransitionError(
            f"Deal status changed concurrently (expected '{expected}')", status=expected
        )
    set_committed_value(match, "status", new)
    logger.info("Match %s: %s -> %s", match.id, expected, new)


def add_system_message(session: AsyncSession, match_id: UUID, agent_id: str, content: str) -> Message:
    message = Message(
        match_id=match_id,
        sender_agent_id=agent_id,
        content=content,
        message_type="system",
    )
    session.add(message)
    return message


class NegotiationStateMachine:
    """Message, proposal, approval, start, completion, cancellation and dispute operations."""

    def __init__(self, db: Database, settings: Settings, bus: EventBus | None = None) -> None:
        self.db = db
        self.settings = settings
        self.bus = bus

    # ------------------------------------------------------------------
    # post_message()
    # ------------------------------------------------------------------

    async def post_message(
        self,
        match_id: UUID,
        agent_id: str,
        content: str,
        message_type: str = "negotiation",
        proposed_terms: dict[str, Any] | None = None,
        *,
        authenticated_agent_id: str | None = None,
    ) -> MessageResult:
        """Append a message. Proposals move the deal to proposed and reset votes."""
        check_identity(agent_id, authenticated_agent_id)
        message_type = _MESSAGE_TYPE_ALIASES.get(message_type, message_type)
        if message_type not in _VALID_MESSAGE_TYPES:
            raise ValidationError(
                "message_type must be 'negotiation', 'proposal', 'system', or 'text'"
            )
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content is required and must be a non-empty string")
        if message_type == "proposal" and (not isinstance(proposed_terms, dict) or not proposed_terms):
            raise ValidationError("proposed_terms is required when message_type is 'proposal'")

        async with self.db.session() as session:
            match, participants = await load_participant_match(session, match_id, agent_id)
            previous = match.status
            transition = rules.message_transition(previous, message_type, participants, agent_id, match.id)

            message = Message(
                match_id=match.id,
                sender_agent_id=agent_id,
                content=content,
                message_type=message_type,
                proposed_terms=proposed_terms if message_type == "proposal" else None,
            )
            session.add(message)

            if message_type == "proposal":
                # Votes on earlier terms no longer count
                await session.execute(delete(Approval).where(Approval.match_id == match.id))
                await session.execute(delete(Completion).where(Completion.match_id == match.id))

            await swap_status(session, match, previous, transition.status)
            await session.flush()
            message_id = message.id
            await session.commit()

        await publish_effects(self.bus, transition.effects)
        return MessageResult(message_id=message_id, status=transition.status)

    async def list_messages(
        self,
        match_id: UUID,
        agent_id: str,
        *,
        authenticated_agent_id: str | None = None,
    ) -> list[MessageDetail]:
        """The negotiation log, oldest first. Participants only."""
        check_identity(agent_id, authenticated_agent_id)
        async with self.db.session() as session:
            await load_participant_match(session, match_id, agent_id, lock=False)
            result = await session.execute(
                select(Message).where(Message.match_id == match_id).order_by(Message.id)
            )
            return [MessageDetail.model_validate(m) for m in result.scalars().all()]

    # ------------------------------------------------------------------
    # approve()
    # ------------------------------------------------------------------

    async def approve(
        self,
        match_id: UUID,
        agent_id: str,
        approved: bool,
        *,
        authenticated_agent_id: str | None = None,
    ) -> VoteResult:
        """Cast or overwrite this agent's vote on the current proposal.

        Consensus is evaluated after the upsert, against every vote for the
        match, inside the same transaction.
        """
        check_identity(agent_id, authenticated_agent_id)
        if not isinstance(approved, bool):
            raise ValidationError("approved must be a boolean")

        async with self.db.session() as session:
            match, participants = await load_participant_match(session, match_id, agent_id)
            rules.require_status(match.status, ("proposed",), "approve")

            await session.execute(
                self.db.insert(Approval)
                .values(match_id=match.id, agent_id=agent_id, approved=approved)
                .on_conflict_do_update(
                    index_elements=["match_id", "agent_id"],
                    set_={"approved": approved, "created_at": datetime.now(UTC)},
                )
            )

            result = await session.execute(
                select(Approval.agent_id, Approval.approved).where(Approval.match_id == match.id)
            )
            votes = {row.agent_id: bool(row.approved) for row in result}

            transition = rules.approval_transition(votes, participants, agent_id, match.id)
            await swap_status(session, match, "proposed", transition.status)
            await session.commit()

        await publish_effects(self.bus, transition.effects)
        logger.info("Vote on %s by %s (approved=%s): %s", match_id, agent_id, approved, transition.outcome)

        outcome = transition.outcome
        contact = None
        if outcome == "approved":
            contact = ContactExchange(agent_a=participants.agent_a, agent_b=participants.agent_b)
        return VoteResult(status=outcome, message=_VOTE_MESSAGES[outcome], contact_exchange=contact)

    # ------------------------------------------------------------------
    # start()
    # ------------------------------------------------------------------

    async def start(
        self,
        match_id: UUID,
        agent_id: str,
        *,
        authenticated_agent_id: str | None = None,
    ) -> StartResult:
        """Move an approved deal to in_progress. Either participant may do it, once."""
        check_identity(agent_id, authenticated_agent_id)
        async with self.db.session() as session:
            match, participants = await load_participant_match(session, match_id, agent_id)
            transition = rules.start_transition(match.status, participants, agent_id, match.id)
            await swap_status(session, match, "approved", transition.status)
            add_system_message(session, match.id, agent_id, f"Deal started by {agent_id}")
            await session.commit()

        await publish_effects(self.bus, transition.effects)
        return StartResult()

    # ------------------------------------------------------------------
    # complete()
    # ------------------------------------------------------------------

    async def complete(
        self,
        match_id: UUID,
        agent_id: str,
        *,
        authenticated_agent_id: str | None = None,
    ) -> VoteResult:
        """Confirm completion. The deal completes once both participants confirm."""
        check_identity(agent_id, authenticated_agent_id)
        async with self.db.session() as session:
            match, participants = await load_participant_match(session, match_id, agent_id)
            rules.require_status(match.status, ("in_progress",), "complete")

            inserted = await session.execute(
                self.db.insert(Completion)
                .values(match_id=match.id, agent_id=agent_id)
                .on_conflict_do_nothing(index_elements=["match_id", "agent_id"])
            )
            newly_confirmed = inserted.rowcount == 1

            result = await session.execute(
                select(Completion.agent_id).where(Completion.match_id == match.id)
            )
            confirmed = set(result.scalars().all())

            transition = rules.completion_transition(
                confirmed, participants, agent_id, match.id, newly_confirmed=newly_confirmed
            )
            if transition.outcome == "completed":
                await swap_status(session, match, "in_progress", "completed")
                add_system_message(session, match.id, agent_id, "Deal completed! Both parties confirmed.")
            await session.commit()

        await publish_effects(self.bus, transition.effects)
        return VoteResult(status=transition.outcome, message=_COMPLETION_MESSAGES[transition.outcome])

    # ------------------------------------------------------------------
    # cancel()
    # ------------------------------------------------------------------

    async def cancel(
        self,
        match_id: UUID,
        agent_id: str,
        reason: str | None = None,
        *,
        authenticated_agent_id: str | None = None,
    ) -> CancelResult:
        """Cancel a deal that has not been approved yet. Not reversible."""
        check_identity(agent_id, authenticated_agent_id)
        reason = reason.strip() if isinstance(reason, str) else None
        async with self.db.session() as session:
            match, participants = await load_participant_match(session, match_id, agent_id)
            previous = match.status
            transition = rules.cancel_transition(previous, participants, agent_id, match.id, reason)
            await swap_status(session, match, previous, transition.status)
            content = f"Deal cancelled by {agent_id}."
            if reason:
                content += f" Reason: {reason}"
            add_system_message(session, match.id, agent_id, content)
            await session.commit()

        await publish_effects(self.bus, transition.effects)
        return CancelResult(counterpart_agent_id=participants.counterpart(agent_id))

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def file_dispute(
        self,
        match_id: UUID,
        agent_id: str,
        reason: str,
        *,
        authenticated_agent_id: str | None = None,
    ) -> DisputeResult:
        """Open a dispute on an approved or in-progress deal."""
        check_identity(agent_id, authenticated_agent_id)
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("reason is required")
        reason = reason.strip()
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"reason must be under {MAX_REASON_LENGTH} characters")

        async with self.db.session() as session:
            match, participants = await load_participant_match(session, match_id, agent_id)
            previous = match.status
            open_dispute = await session.scalar(
                select(Dispute.id)
                .where(Dispute.match_id == match.id)
                .where(Dispute.status == "open")
            )
            transition = rules.dispute_transition(
                previous, participants, agent_id, match.id, reason, has_open_dispute=open_dispute is not None
            )

            dispute = Dispute(match_id=match.id, filed_by_agent_id=agent_id, reason=reason)
            session.add(dispute)
            try:
                await session.flush()
            except IntegrityError as e:
                raise InvalidTransitionError(
                    "An open dispute already exists for this deal", status=previous
                ) from e

            await swap_status(session, match, previous, transition.status)
            add_system_message(session, match.id, agent_id, f"Dispute filed by {agent_id}: {reason}")
            info = DisputeInfo.model_validate(dispute)
            await session.commit()

        await publish_effects(self.bus, transition.effects)
        logger.info("Dispute %s filed on %s by %s", info.id, match_id, agent_id)
        return DisputeResult(dispute=info, message="Dispute filed. Deal is now in disputed status.")

    async def resolve_dispute(
        self,
        match_id: UUID,
        agent_id: str,
        resolution: str,
        note: str | None = None,
        *,
        authenticated_agent_id: str | None = None,
    ) -> DisputeResolutionResult:
        """Close the open dispute and move the deal according to the resolution."""
        check_identity(agent_id, authenticated_agent_id)
        if resolution not in rules.RESOLUTION_OUTCOMES:
            raise ValidationError(
                f"Invalid resolution. Valid values: {', '.join(rules.RESOLUTION_OUTCOMES)}"
            )
        note = note.strip()[:MAX_REASON_LENGTH] if isinstance(note, str) and note.strip() else None

        async with self.db.session() as session:
            match, participants = await load_participant_match(session, match_id, agent_id)
            transition = rules.resolution_transition(match.status, participants, agent_id, match.id, resolution)

            dispute = await session.scalar(
                select(Dispute)
                .where(Dispute.match_id == match.id)
                .where(Dispute.status == "open")
                .order_by(Dispute.created_at.desc())
                .limit(1)
            )
            if dispute is None:
                raise NotFoundError("Open dispute for match", match_id)

            dispute.status = resolution
            dispute.resolution_note = note
            dispute.resolved_by = agent_id
            dispute.resolved_at = datetime.now(UTC)

            await swap_status(session, match, "disputed", transition.status)
            _, summary = rules.RESOLUTION_OUTCOMES[resolution]
            add_system_message(
                session, match.id, agent_id, summary + (f" Note: {note}" if note else "")
            )
            dispute_id = dispute.id
            await session.commit()

        await publish_effects(self.bus, transition.effects)
        return DisputeResolutionResult(
            dispute=ResolvedDispute(
                id=dispute_id, status=resolution, resolution_note=note, resolved_by=agent_id
            ),
            deal_status=transition.status,
            message=summary,
        )
