"""dealroom entry point.

Initializes all components in dependency order:
  Settings -> Database -> EventBus + sinks -> Profiles -> Registry
  -> NegotiationStateMachine -> MilestoneTracker -> ExpirySweeper

Running the module starts the bus and the expiry sweeper and keeps them
alive until interrupted. Collaborators that expose the core over a
transport call create_components() themselves.
"""

from __future__ import annotations

import asyncio
import logging

from dealroom.config import Settings
from dealroom.events import EventBus
from dealroom.handlers.expiry_sweeper import ExpirySweeper
from dealroom.handlers.notifier import DatabaseSink, HttpSink
from dealroom.matching.profiles import ProfileManager
from dealroom.matching.registry import MatchRegistry
from dealroom.negotiation.machine import NegotiationStateMachine
from dealroom.negotiation.milestones import MilestoneTracker
from dealroom.storage.database import Database

logger = logging.getLogger(__name__)


async def create_components(settings: Settings, *, start_sweeper: bool | None = None) -> dict:
    """Initialize all components in dependency order.

    Returns a dict of the components so the caller can shut them down.
    The sweeper loop starts when start_sweeper is true, or when it is None
    and expiry_sweep_enabled is set.
    """
    database = Database(settings)
    await database.connect()
    await database.create_schema()

    bus = EventBus(max_queue=settings.notification_queue_size)
    bus.add_sink(DatabaseSink(database))
    http_sink = None
    if settings.notify_webhook_url:
        http_sink = HttpSink(settings)
        bus.add_sink(http_sink)
    await bus.start()

    profiles = ProfileManager(database)
    registry = MatchRegistry(database, settings, bus)
    machine = NegotiationStateMachine(database, settings, bus)
    milestones = MilestoneTracker(database, settings, bus)
    sweeper = ExpirySweeper(database, settings, bus)

    if start_sweeper is None:
        start_sweeper = settings.expiry_sweep_enabled
    if start_sweeper:
        await sweeper.start()

    return {
        "database": database,
        "bus": bus,
        "http_sink": http_sink,
        "profiles": profiles,
        "registry": registry,
        "machine": machine,
        "milestones": milestones,
        "sweeper": sweeper,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down dealroom...")

    sweeper = components.get("sweeper")
    if sweeper:
        await sweeper.stop()

    # Stopping the bus drains queued events into the sinks
    bus = components.get("bus")
    if bus:
        await bus.stop()

    http_sink = components.get("http_sink")
    if http_sink:
        await http_sink.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("dealroom shutdown complete.")


async def run(settings: Settings) -> None:
    """Run the background services until cancelled."""
    components = await create_components(settings)
    logger.info("dealroom started (db=%s)", components["database"].dialect)
    try:
        await asyncio.Event().wait()
    finally:
        await shutdown_components(components)


def main() -> None:
    """Entry point — load settings, configure logging, run the sweeper daemon."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
