"""Test fixtures backed by a real database.

Uses a throwaway SQLite file (aiosqlite) per test by default. Set
DEALROOM_TEST_DB_URL to a postgresql+asyncpg URL to run the same suite
against Postgres; the schema is dropped and recreated around every test.
"""

import os
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update

from dealroom.config import Settings
from dealroom.events import Event, EventBus
from dealroom.handlers.expiry_sweeper import ExpirySweeper
from dealroom.matching.profiles import ProfileManager
from dealroom.matching.registry import MatchRegistry
from dealroom.negotiation.machine import NegotiationStateMachine
from dealroom.negotiation.milestones import MilestoneTracker
from dealroom.storage.database import Database
from dealroom.storage.models import Match

ALICE = "alice"
BOB = "bob"
MALLORY = "mallory"


class RecordingSink:
    """Collects every event the bus dispatches."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    async def __call__(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type == event_type]

    def clear(self) -> None:
        self.events.clear()


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    url = os.environ.get("DEALROOM_TEST_DB_URL") or f"sqlite+aiosqlite:///{tmp_path / 'dealroom.db'}"
    return Settings(DATABASE_URL=url, expiry_sweep_enabled=False)


@pytest_asyncio.fixture
async def db(settings):
    """Function-scoped database with a fresh schema."""
    database = Database(settings)
    await database.connect()
    await database.drop_schema()
    await database.create_schema()
    yield database
    await database.drop_schema()
    await database.disconnect()


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def bus(sink) -> EventBus:
    """Bus that is never started; tests call drain() to dispatch."""
    b = EventBus()
    b.add_sink(sink)
    return b


@pytest.fixture
def profiles(db) -> ProfileManager:
    return ProfileManager(db)


@pytest.fixture
def registry(db, settings, bus) -> MatchRegistry:
    return MatchRegistry(db, settings, bus)


@pytest.fixture
def machine(db, settings, bus) -> NegotiationStateMachine:
    return NegotiationStateMachine(db, settings, bus)


@pytest.fixture
def tracker(db, settings, bus) -> MilestoneTracker:
    return MilestoneTracker(db, settings, bus)


@pytest.fixture
def sweeper(db, settings, bus) -> ExpirySweeper:
    return ExpirySweeper(db, settings, bus)


# ---------------------------------------------------------------------------
# Scenario helpers
# ---------------------------------------------------------------------------


def offering(agent_id: str = ALICE, **params) -> dict:
    return {
        "agent_id": agent_id,
        "side": "offering",
        "category": "development",
        "params": params or {"skills": ["react", "ts"], "rate_min": 50, "rate_max": 70},
    }


def seeking(agent_id: str = BOB, **params) -> dict:
    return {
        "agent_id": agent_id,
        "side": "seeking",
        "category": "development",
        "params": params or {"skills": ["react"], "rate_min": 40, "rate_max": 60},
    }


async def create_match(profiles: ProfileManager, registry: MatchRegistry, a: dict | None = None, b: dict | None = None):
    """Publish an offering and a seeking profile and return the match id between them."""
    first = await profiles.publish(a or offering())
    await profiles.publish(b or seeking())
    matches = await registry.find_or_create_matches(first.id)
    assert len(matches) == 1
    return matches[0].match_id


async def set_match_state(db: Database, match_id, *, status: str | None = None, age_hours: float | None = None) -> None:
    """Force a match's status or creation time, bypassing the state machine."""
    values: dict = {}
    if status is not None:
        values["status"] = status
    if age_hours is not None:
        values["created_at"] = datetime.now(UTC) - timedelta(hours=age_hours)
    async with db.session() as session:
        await session.execute(update(Match).where(Match.id == match_id).values(**values))
        await session.commit()


@pytest_asyncio.fixture
async def match_id(profiles, registry, bus, sink):
    """A fresh match between ALICE (offering) and BOB (seeking), with its events drained."""
    mid = await create_match(profiles, registry)
    await bus.drain()
    sink.clear()
    return mid


async def to_proposed(machine: NegotiationStateMachine, match_id, proposer: str = ALICE) -> None:
    await machine.post_message(match_id, proposer, "Here are my terms", "proposal", {"rate": 55})


async def to_approved(machine: NegotiationStateMachine, match_id) -> None:
    await to_proposed(machine, match_id)
    await machine.approve(match_id, ALICE, True)
    await machine.approve(match_id, BOB, True)


async def to_in_progress(machine: NegotiationStateMachine, match_id) -> None:
    await to_approved(machine, match_id)
    await machine.start(match_id, ALICE)
