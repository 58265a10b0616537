"""Tests for the milestone tracker."""

import uuid

import pytest

from dealroom.errors import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from dealroom.negotiation.schemas import MilestoneInput
from tests.conftest import ALICE, BOB, MALLORY, set_match_state, to_approved, to_in_progress


class TestAddMilestones:
    async def test_add_during_negotiation(self, machine, tracker, match_id, bus, sink):
        await machine.post_message(match_id, ALICE, "let's plan")
        await bus.drain()
        sink.clear()

        created = await tracker.add_milestones(
            match_id,
            ALICE,
            [{"title": "Design"}, MilestoneInput(title="  Build  ", description="MVP")],
        )

        assert [m.title for m in created] == ["Design", "Build"]
        assert [m.order_index for m in created] == [0, 1]
        assert all(m.status == "pending" for m in created)
        assert all(m.created_by == ALICE for m in created)

        await bus.drain()
        [event] = sink.events
        assert (event.type, event.agent_id, event.from_agent_id) == ("milestone_created", BOB, ALICE)
        assert "2 milestones" in event.summary

    async def test_order_continues_after_existing(self, machine, tracker, match_id):
        await to_approved(machine, match_id)
        await tracker.add_milestones(match_id, ALICE, [{"title": "One"}, {"title": "Two"}])

        [third] = await tracker.add_milestones(match_id, BOB, [{"title": "Three"}])
        [custom] = await tracker.add_milestones(match_id, BOB, [{"title": "First", "order_index": -1}])

        assert third.order_index == 2
        assert custom.order_index == -1
        listing = await tracker.list_milestones(match_id, ALICE)
        assert [m.title for m in listing.milestones] == ["First", "One", "Two", "Three"]

    async def test_not_allowed_in_matched_or_in_progress(self, machine, tracker, match_id):
        with pytest.raises(InvalidTransitionError):
            await tracker.add_milestones(match_id, ALICE, [{"title": "Too early"}])

        await to_in_progress(machine, match_id)
        with pytest.raises(InvalidTransitionError):
            await tracker.add_milestones(match_id, ALICE, [{"title": "Too late"}])

    async def test_cap_of_twenty(self, machine, tracker, match_id):
        await machine.post_message(match_id, ALICE, "plan")
        await tracker.add_milestones(match_id, ALICE, [{"title": f"Step {i}"} for i in range(19)])

        with pytest.raises(ValidationError):
            await tracker.add_milestones(match_id, ALICE, [{"title": "a"}, {"title": "b"}])

        await tracker.add_milestones(match_id, ALICE, [{"title": "Last"}])
        with pytest.raises(ValidationError):
            await tracker.add_milestones(match_id, ALICE, [{"title": "One too many"}])

    @pytest.mark.parametrize("items", [[], [{"title": ""}], [{"title": "   "}], [{"description": "no title"}]])
    async def test_invalid_input(self, machine, tracker, match_id, items):
        await machine.post_message(match_id, ALICE, "plan")
        with pytest.raises(ValidationError):
            await tracker.add_milestones(match_id, ALICE, items)

    async def test_non_participant(self, machine, tracker, match_id):
        await machine.post_message(match_id, ALICE, "plan")
        with pytest.raises(ForbiddenError):
            await tracker.add_milestones(match_id, MALLORY, [{"title": "Sneaky"}])


class TestUpdateMilestone:
    async def test_complete_stamps_time_and_notifies(self, machine, tracker, match_id, bus, sink):
        await to_approved(machine, match_id)
        first, second = await tracker.add_milestones(match_id, ALICE, [{"title": "A"}, {"title": "B"}])
        await bus.drain()
        sink.clear()

        updated = await tracker.update_milestone(match_id, first.id, BOB, {"status": "completed"})

        assert updated.status == "completed"
        assert updated.completed_at is not None
        await bus.drain()
        [event] = sink.events
        assert (event.type, event.agent_id) == ("milestone_updated", ALICE)
        assert event.summary == 'Milestone "A" updated to completed'

        messages = await machine.list_messages(match_id, ALICE)
        assert messages[-1].message_type == "system"
        assert messages[-1].content == 'Milestone "A" updated to completed'

    async def test_all_completed_reminds_both(self, machine, tracker, match_id, bus, sink):
        await to_approved(machine, match_id)
        a, b, c = await tracker.add_milestones(match_id, ALICE, [{"title": "A"}, {"title": "B"}, {"title": "C"}])
        await machine.start(match_id, ALICE)
        await tracker.update_milestone(match_id, c.id, ALICE, {"status": "cancelled"})
        await tracker.update_milestone(match_id, a.id, ALICE, {"status": "completed"})
        await bus.drain()
        sink.clear()

        await tracker.update_milestone(match_id, b.id, ALICE, {"status": "completed"})

        await bus.drain()
        reminders = [e for e in sink.of_type("milestone_updated") if e.from_agent_id is None]
        assert sorted(e.agent_id for e in reminders) == [ALICE, BOB]

    async def test_patch_other_fields(self, machine, tracker, match_id):
        await to_approved(machine, match_id)
        [m] = await tracker.add_milestones(match_id, ALICE, [{"title": "Draft"}])

        updated = await tracker.update_milestone(
            match_id, m.id, BOB, {"title": "Final draft", "description": "with review"}
        )

        assert updated.title == "Final draft"
        assert updated.description == "with review"
        assert updated.status == "pending"

    async def test_empty_patch_rejected(self, machine, tracker, match_id):
        await to_approved(machine, match_id)
        [m] = await tracker.add_milestones(match_id, ALICE, [{"title": "Draft"}])

        with pytest.raises(ValidationError):
            await tracker.update_milestone(match_id, m.id, ALICE, {})
        with pytest.raises(ValidationError):
            await tracker.update_milestone(match_id, m.id, ALICE, {"status": "blocked"})

    async def test_unknown_milestone(self, machine, tracker, match_id):
        await to_approved(machine, match_id)
        with pytest.raises(NotFoundError):
            await tracker.update_milestone(match_id, uuid.uuid4(), ALICE, {"status": "completed"})

    async def test_update_allowed_after_deal_moves_on(self, db, machine, tracker, match_id):
        await to_approved(machine, match_id)
        [m] = await tracker.add_milestones(match_id, ALICE, [{"title": "Ship"}])
        await set_match_state(db, match_id, status="completed")

        updated = await tracker.update_milestone(match_id, m.id, BOB, {"status": "in_progress"})

        assert updated.status == "in_progress"


class TestListMilestones:
    async def test_progress_excludes_cancelled(self, machine, tracker, match_id):
        await to_approved(machine, match_id)
        a, b, c, d = await tracker.add_milestones(
            match_id, ALICE, [{"title": t} for t in ("A", "B", "C", "D")]
        )
        await tracker.update_milestone(match_id, a.id, ALICE, {"status": "completed"})
        await tracker.update_milestone(match_id, d.id, ALICE, {"status": "cancelled"})

        listing = await tracker.list_milestones(match_id, BOB)

        assert listing.match_id == match_id
        assert len(listing.milestones) == 4
        assert listing.progress.model_dump() == {"completed": 1, "total": 3, "percentage": 33}

    async def test_empty(self, tracker, match_id):
        listing = await tracker.list_milestones(match_id, ALICE)

        assert listing.milestones == []
        assert listing.progress.percentage == 0

    async def test_non_participant(self, tracker, match_id):
        with pytest.raises(ForbiddenError):
            await tracker.list_milestones(match_id, MALLORY)
