"""Pure transition rules for the deal state machine.

Nothing here touches the database. Each function takes the current state
and returns a Transition: the status the match should move to plus the
notification effects to emit once the write has committed.

    matched -> negotiating -> proposed -> approved -> in_progress -> completed
                                       \\-> rejected
    matched | negotiating | proposed            -> cancelled
    matched | negotiating                       -> expired   (sweeper only)
    approved | in_progress                      -> disputed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from dealroom.errors import InvalidTransitionError
from dealroom.events import Event

MESSAGE_BLOCKED_STATUSES = frozenset({"rejected", "expired", "cancelled"})
CANCELLABLE_STATUSES = ("matched", "negotiating", "proposed")
DISPUTABLE_STATUSES = ("approved", "in_progress")
EXPIRABLE_STATUSES = ("matched", "negotiating")
MILESTONE_EDITABLE_STATUSES = ("negotiating", "proposed", "approved")

# resolution -> (new match status, system message)
RESOLUTION_OUTCOMES: dict[str, tuple[str, str]] = {
    "resolved_complete": ("completed", "Dispute resolved: deal marked as completed."),
    "resolved_refund": ("cancelled", "Dispute resolved: deal cancelled (refund)."),
    "resolved_split": ("completed", "Dispute resolved: deal completed with split resolution."),
    "dismissed": ("in_progress", "Dispute dismissed: deal returned to in_progress."),
}


@dataclass(frozen=True)
class Participants:
    """The owning agents of a match's two profiles."""

    agent_a: str
    agent_b: str

    def includes(self, agent_id: str) -> bool:
        return agent_id in (self.agent_a, self.agent_b)

    def counterpart(self, agent_id: str) -> str:
        return self.agent_b if agent_id == self.agent_a else self.agent_a

    @property
    def distinct(self) -> tuple[str, ...]:
        if self.agent_a == self.agent_b:
            return (self.agent_a,)
        return (self.agent_a, self.agent_b)


@dataclass
class Transition:
    status: str
    outcome: str | None = None
    effects: list[Event] = field(default_factory=list)


def require_status(current: str, allowed: tuple[str, ...] | frozenset[str], action: str) -> None:
    """Raise InvalidTransitionError unless current is one of allowed."""
    if current not in allowed:
        raise InvalidTransitionError(
            f"Cannot {action} a deal in '{current}' status. Allowed statuses: {', '.join(allowed)}",
            status=current,
        )


# ----------------------------------------------------------------------
# Messages
# ----------------------------------------------------------------------


def message_transition(
    current: str,
    message_type: str,
    participants: Participants,
    sender: str,
    match_id: UUID,
) -> Transition:
    """A proposal always moves to proposed; the first plain message starts negotiating."""
    if current in MESSAGE_BLOCKED_STATUSES:
        raise InvalidTransitionError(
            f"Deal is {current}, no further messages allowed", status=current
        )

    if message_type == "proposal":
        status = "proposed"
    elif current == "matched":
        status = "negotiating"
    else:
        status = current

    is_proposal = message_type == "proposal"
    effect = Event(
        type="deal_proposed" if is_proposal else "message_received",
        agent_id=participants.counterpart(sender),
        match_id=match_id,
        from_agent_id=sender,
        summary=f"Deal proposed by {sender}" if is_proposal else f"New message from {sender}",
    )
    return Transition(status=status, effects=[effect])


# ----------------------------------------------------------------------
# Consensus votes
# ----------------------------------------------------------------------


def approval_transition(
    votes: dict[str, bool],
    participants: Participants,
    voter: str,
    match_id: UUID,
) -> Transition:
    """Decide a proposal from every vote cast so far.

    Any rejection is final regardless of order. Approval needs a true
    vote from every distinct participant. Otherwise the proposal waits.
    """
    if any(approved is False for approved in votes.values()):
        return Transition(
            status="rejected",
            outcome="rejected",
            effects=[
                Event(
                    type="deal_rejected",
                    agent_id=participants.counterpart(voter),
                    match_id=match_id,
                    from_agent_id=voter,
                    summary=f"Deal rejected by {voter}",
                )
            ],
        )

    if all(votes.get(agent) is True for agent in participants.distinct):
        return Transition(
            status="approved",
            outcome="approved",
            effects=[
                Event(
                    type="deal_approved",
                    agent_id=agent,
                    match_id=match_id,
                    from_agent_id=participants.counterpart(agent),
                    summary="Deal approved! Both parties agreed.",
                )
                for agent in participants.distinct
            ],
        )

    return Transition(status="proposed", outcome="waiting")


def completion_transition(
    confirmed: set[str],
    participants: Participants,
    confirmer: str,
    match_id: UUID,
    newly_confirmed: bool = True,
) -> Transition:
    """Completion is monotonic: it waits until every participant has confirmed."""
    if all(agent in confirmed for agent in participants.distinct):
        return Transition(
            status="completed",
            outcome="completed",
            effects=[
                Event(
                    type="deal_completed",
                    agent_id=agent,
                    match_id=match_id,
                    from_agent_id=participants.counterpart(agent),
                    summary="Deal completed! Both parties confirmed.",
                )
                for agent in participants.distinct
            ],
        )

    effects = []
    if newly_confirmed:
        effects.append(
            Event(
                type="deal_completion_requested",
                agent_id=participants.counterpart(confirmer),
                match_id=match_id,
                from_agent_id=confirmer,
                summary=f"{confirmer} has confirmed deal completion. Please confirm too.",
            )
        )
    return Transition(status="in_progress", outcome="waiting", effects=effects)


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------


def start_transition(current: str, participants: Participants, starter: str, match_id: UUID) -> Transition:
    require_status(current, ("approved",), "start")
    return Transition(
        status="in_progress",
        effects=[
            Event(
                type="deal_started",
                agent_id=participants.counterpart(starter),
                match_id=match_id,
                from_agent_id=starter,
                summary=f"Deal started by {starter}",
            )
        ],
    )


def cancel_transition(
    current: str,
    participants: Participants,
    canceller: str,
    match_id: UUID,
    reason: str | None = None,
) -> Transition:
    require_status(current, CANCELLABLE_STATUSES, "cancel")
    summary = f"Deal cancelled by {canceller}."
    if reason:
        summary += f" Reason: {reason}"
    return Transition(
        status="cancelled",
        effects=[
            Event(
                type="deal_cancelled",
                agent_id=participants.counterpart(canceller),
                match_id=match_id,
                from_agent_id=canceller,
                summary=summary,
            )
        ],
    )


def dispute_transition(
    current: str,
    participants: Participants,
    filer: str,
    match_id: UUID,
    reason: str,
    has_open_dispute: bool,
) -> Transition:
    require_status(current, DISPUTABLE_STATUSES, "dispute")
    if has_open_dispute:
        raise InvalidTransitionError("An open dispute already exists for this deal", status=current)
    return Transition(
        status="disputed",
        effects=[
            Event(
                type="deal_disputed",
                agent_id=participants.counterpart(filer),
                match_id=match_id,
                from_agent_id=filer,
                summary=f"{filer} has filed a dispute: {reason[:100]}",
            )
        ],
    )


def resolution_transition(
    current: str,
    participants: Participants,
    resolver: str,
    match_id: UUID,
    resolution: str,
) -> Transition:
    require_status(current, ("disputed",), "resolve a dispute on")
    status, summary = RESOLUTION_OUTCOMES[resolution]
    return Transition(
        status=status,
        effects=[
            Event(
                type="dispute_resolved",
                agent_id=participants.counterpart(resolver),
                match_id=match_id,
                from_agent_id=resolver,
                summary=summary,
            )
        ],
    )


def expiry_effects(
    match_id: UUID, participants: Participants, timeout_hours: int, previous_status: str
) -> list[Event]:
    """One deal_expired per distinct participant."""
    summary = f"Deal auto-expired after {timeout_hours}h of inactivity (was {previous_status})"
    return [
        Event(
            type="deal_expired",
            agent_id=agent,
            match_id=match_id,
            from_agent_id=participants.counterpart(agent),
            summary=summary,
        )
        for agent in participants.distinct
    ]
