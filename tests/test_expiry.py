"""Tests for the expiry sweeper."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from dealroom.errors import ValidationError
from dealroom.handlers.expiry_sweeper import ExpirySweeper, validate_expiry_config
from tests.conftest import ALICE, BOB, MALLORY, create_match, offering, seeking, set_match_state


async def _status(registry, match_id) -> str:
    return (await registry.get_match(match_id)).status


class TestValidateExpiryConfig:
    def test_defaults(self):
        assert validate_expiry_config() == (168, 100)

    def test_floors_fractions(self):
        assert validate_expiry_config(24.9, 10.5) == (24, 10)

    @pytest.mark.parametrize(
        "timeout_hours, limit",
        [(0, 10), (8761, 10), (24, 0), (24, 501), ("24", 10), (True, 10)],
    )
    def test_out_of_range(self, timeout_hours, limit):
        with pytest.raises(ValidationError):
            validate_expiry_config(timeout_hours, limit)


class TestSweep:
    async def test_expires_stale_negotiation_only(self, db, machine, profiles, registry, sweeper, bus, sink):
        stale = await create_match(profiles, registry)
        await machine.post_message(stale, ALICE, "hello?")
        approved = await create_match(
            profiles, registry, offering(MALLORY, skills=["rust"]), seeking("carol", skills=["rust"])
        )
        await set_match_state(db, stale, age_hours=200)
        await set_match_state(db, approved, status="approved", age_hours=200)
        await bus.drain()
        sink.clear()

        result = await sweeper.sweep(168)

        assert result.expired_count == 1
        assert result.timeout_hours == 168
        [deal] = result.expired_deals
        assert deal.id == stale
        assert deal.status == "negotiating"
        assert {deal.agent_a_id, deal.agent_b_id} == {ALICE, BOB}
        assert 199 <= deal.hours_stale <= 201
        assert await _status(registry, stale) == "expired"
        assert await _status(registry, approved) == "approved"

        await bus.drain()
        events = sink.of_type("deal_expired")
        assert sorted(e.agent_id for e in events) == [ALICE, BOB]
        assert events[0].summary == "Deal auto-expired after 168h of inactivity (was negotiating)"

    async def test_fresh_matches_untouched(self, db, profiles, registry, sweeper):
        match_id = await create_match(profiles, registry)
        await set_match_state(db, match_id, age_hours=100)

        result = await sweeper.sweep(168)

        assert result.expired_count == 0
        assert await _status(registry, match_id) == "matched"

    async def test_oldest_first_with_limit(self, db, profiles, registry, sweeper):
        older = await create_match(profiles, registry)
        newer = await create_match(profiles, registry, offering(MALLORY, skills=["rust"]), seeking("carol", skills=["rust"]))
        await set_match_state(db, older, age_hours=300)
        await set_match_state(db, newer, age_hours=200)

        result = await sweeper.sweep(168, 1)

        assert [d.id for d in result.expired_deals] == [older]
        assert await _status(registry, newer) == "matched"

    async def test_second_sweep_is_noop(self, db, profiles, registry, sweeper):
        match_id = await create_match(profiles, registry)
        await set_match_state(db, match_id, age_hours=200)

        assert (await sweeper.sweep()).expired_count == 1
        assert (await sweeper.sweep()).expired_count == 0

    async def test_validation_happens_before_reading(self, sweeper):
        with pytest.raises(ValidationError):
            await sweeper.sweep(0)
        with pytest.raises(ValidationError):
            await sweeper.preview(limit=1000)


class TestPreview:
    async def test_preview_does_not_expire(self, db, profiles, registry, sweeper, bus, sink):
        match_id = await create_match(profiles, registry)
        await set_match_state(db, match_id, age_hours=200)
        await bus.drain()
        sink.clear()

        preview = await sweeper.preview(168)

        assert preview.stale_count == 1
        assert preview.stale_deals[0].id == match_id
        assert preview.timeout_hours == 168
        assert await _status(registry, match_id) == "matched"
        await bus.drain()
        assert sink.events == []


class TestExpireProfiles:
    async def test_deactivates_and_notifies_owner(self, profiles, sweeper, bus, sink):
        stale = await profiles.publish({**seeking(), "expires_at": datetime.now(UTC) - timedelta(minutes=5)})
        await profiles.publish(offering())

        expired = await sweeper.expire_profiles()

        assert [p.id for p in expired] == [stale.id]
        assert (await profiles.get(stale.id)).active is False
        await bus.drain()
        [event] = sink.events
        assert event.to_dict() == {
            "type": "listing_expired",
            "agent_id": BOB,
            "summary": 'Your seeking listing in "development" has expired. Renew it to stay visible.',
        }

    async def test_nothing_to_expire(self, profiles, sweeper, bus, sink):
        await profiles.publish(offering())

        assert await sweeper.expire_profiles() == []
        await bus.drain()
        assert sink.events == []


class TestSweeperLoop:
    async def test_loop_sweeps_periodically(self, db, settings, profiles, registry, bus):
        match_id = await create_match(profiles, registry)
        await set_match_state(db, match_id, age_hours=200)
        sweeper = ExpirySweeper(db, settings.model_copy(update={"expiry_sweep_interval": 0.01}), bus)

        await sweeper.start()
        try:
            for _ in range(200):
                if await _status(registry, match_id) == "expired":
                    break
                await asyncio.sleep(0.01)
        finally:
            await sweeper.stop()

        assert await _status(registry, match_id) == "expired"
        assert sweeper.running is False

    async def test_loop_expires_profiles(self, db, settings, profiles, bus):
        stale = await profiles.publish({**offering(), "expires_at": datetime.now(UTC) - timedelta(minutes=5)})
        sweeper = ExpirySweeper(db, settings.model_copy(update={"expiry_sweep_interval": 0.01}), bus)

        await sweeper.start()
        try:
            for _ in range(200):
                if not (await profiles.get(stale.id)).active:
                    break
                await asyncio.sleep(0.01)
        finally:
            await sweeper.stop()

        assert (await profiles.get(stale.id)).active is False

    async def test_stop_without_start(self, sweeper):
        await sweeper.stop()
        assert sweeper.running is False
