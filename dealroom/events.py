"""In-process async notification bus for dealroom.

State transitions hand their notification effects to the bus after the
database transaction commits. Events are dispatched to registered sinks
asynchronously; sinks run concurrently and errors are isolated, so one
broken sink never crashes the bus, blocks other sinks, or reaches the
caller whose transition produced the event.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Literal
from uuid import UUID

logger = logging.getLogger(__name__)

NotificationType = Literal[
    "new_match",
    "message_received",
    "deal_proposed",
    "deal_approved",
    "deal_rejected",
    "deal_expired",
    "deal_cancelled",
    "deal_started",
    "deal_completed",
    "deal_completion_requested",
    "deal_disputed",
    "dispute_resolved",
    "listing_expired",
    "milestone_updated",
    "milestone_created",
]

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]


@dataclass
class Event:
    """One outbound notification addressed to a single agent."""

    type: NotificationType
    agent_id: str
    summary: str
    match_id: UUID | None = None
    from_agent_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Wire shape: {type, agent_id, match_id?, from_agent_id?, summary}."""
        data: dict[str, Any] = {"type": self.type, "agent_id": self.agent_id}
        if self.match_id is not None:
            data["match_id"] = str(self.match_id)
        if self.from_agent_id is not None:
            data["from_agent_id"] = self.from_agent_id
        data["summary"] = self.summary
        return data


class EventBus:
    """In-process async event bus with error isolation.

    Events are queued and processed by a background asyncio task.
    Sinks registered via add_sink() receive every event; handlers
    registered via on() receive only their event type. Errors are
    logged but never propagate.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._sinks: list[EventHandler] = []
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type. Can register multiple."""
        self._handlers[event_type].append(handler)
        logger.debug("Registered handler for '%s': %r", event_type, handler)

    def add_sink(self, sink: EventHandler) -> None:
        """Register a sink that receives every event."""
        self._sinks.append(sink)

    async def emit(self, event: Event) -> None:
        """Emit an event. Non-blocking — queued for async processing.

        If queue is full, logs warning and drops event (never blocks caller).
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping event: %s", event.type)

    async def emit_all(self, events: list[Event]) -> None:
        for event in events:
            await self.emit(event)

    async def start(self) -> None:
        """Start the background processing loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the bus. Cancels the loop first, then drains remaining events."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        logger.info("Event bus stopped")

    async def drain(self) -> int:
        """Dispatch everything currently queued. Returns the number dispatched."""
        count = 0
        while not self._queue.empty():
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._dispatch(event)
            count += 1
        return count

    async def _process_loop(self) -> None:
        """Main processing loop — runs as background task."""
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event bus loop")

    async def _dispatch(self, event: Event) -> None:
        """Dispatch event to all sinks and type handlers concurrently."""
        handlers = [*self._sinks, *self._handlers.get(event.type, [])]
        if not handlers:
            return

        tasks = [self._safe_handle(h, event) for h in handlers]
        await asyncio.gather(*tasks)

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        """Run handler with error isolation. Never propagates (except CancelledError)."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except BaseException:
            logger.exception(
                "Handler %s failed for event %s",
                getattr(handler, "__qualname__", repr(handler)),
                event.type,
            )

    @property
    def pending(self) -> int:
        """Number of events waiting in queue."""
        return self._queue.qsize()


async def publish_effects(bus: EventBus | None, events: list[Event]) -> None:
    """Hand committed effects to the bus. Failures are logged and swallowed."""
    if bus is None or not events:
        return
    try:
        await bus.emit_all(events)
    except Exception:
        logger.warning(
            "Failed to publish %d notification(s): %s",
            len(events),
            ", ".join(e.type for e in events),
        )
