"""Tests for target draw resolution and the draw helper rules."""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from prizedraws.database.repositories import MajorDrawRepository
from prizedraws.utils.draw_helpers import (
    VALID_TRANSITIONS,
    get_current_major_draw_for_display,
    get_display_status,
    get_target_mini_draw,
    is_major_draw_frozen,
    resolve_target_draw,
    should_lock_configuration,
    source_for_package_type,
    validate_status_transition,
)
from prizedraws.utils.exceptions import (
    DrawNotFoundError,
    InvalidTransitionError,
    MiniDrawClosedError,
    NoActiveDrawError,
)
from prizedraws.utils.timezone import calculate_activation_date, calculate_next_draw_date

from conftest import DRAW_DATE, FREEZE_AT

NEXT_DRAW_DATE = calculate_next_draw_date(DRAW_DATE)


def payment_created(at):
    return {"created": int(at.timestamp()), "type": "payment_intent", "package_type": "subscription"}


async def make_queued(make_major_draw, draw_date=NEXT_DRAW_DATE):
    return await make_major_draw(
        status="queued",
        draw_date=draw_date,
        activation_date=calculate_activation_date(draw_date - timedelta(days=30)),
    )


class TestResolveTargetDraw:
    async def test_active_draw_without_metadata(self, session, make_major_draw):
        active = await make_major_draw(status="active")
        await make_queued(make_major_draw)

        target = await resolve_target_draw(session)
        assert target.id == active.id

    async def test_frozen_draw_routes_to_queued(self, session, make_major_draw):
        await make_major_draw(status="frozen")
        queued = await make_queued(make_major_draw)

        target = await resolve_target_draw(session)
        assert target.id == queued.id
        assert target.status == "queued"

    async def test_frozen_draw_without_queued_raises(self, session, make_major_draw):
        await make_major_draw(status="frozen")

        with pytest.raises(NoActiveDrawError):
            await resolve_target_draw(session)

    async def test_payment_after_freeze_routes_to_queued(self, session, make_major_draw):
        await make_major_draw(status="active")
        queued = await make_queued(make_major_draw)

        target = await resolve_target_draw(session, payment_created(FREEZE_AT + timedelta(minutes=5)))
        assert target.id == queued.id

    async def test_payment_at_freeze_boundary_routes_to_queued(self, session, make_major_draw):
        await make_major_draw(status="active")
        queued = await make_queued(make_major_draw)

        target = await resolve_target_draw(session, payment_created(FREEZE_AT))
        assert target.id == queued.id

    async def test_payment_after_freeze_without_queued_raises(self, session, make_major_draw):
        await make_major_draw(status="active")

        with pytest.raises(NoActiveDrawError):
            await resolve_target_draw(session, payment_created(FREEZE_AT + timedelta(minutes=5)))

    async def test_payment_before_freeze_stays_on_active_draw(self, session, make_major_draw):
        # payment created 40 minutes before the draw, processed inside the freeze window
        # while the sweep has not frozen the draw yet
        active = await make_major_draw(status="active")
        await make_queued(make_major_draw)

        target = await resolve_target_draw(session, payment_created(DRAW_DATE - timedelta(minutes=40)))
        assert target.id == active.id

    async def test_stored_frozen_status_wins_over_early_payment(self, session, make_major_draw):
        await make_major_draw(status="frozen")
        queued = await make_queued(make_major_draw)

        target = await resolve_target_draw(session, payment_created(DRAW_DATE - timedelta(minutes=40)))
        assert target.id == queued.id

    async def test_gap_routes_to_earliest_queued(self, session, make_major_draw):
        await make_major_draw(status="completed")
        later = await make_queued(make_major_draw, draw_date=calculate_next_draw_date(NEXT_DRAW_DATE))
        earlier = await make_queued(make_major_draw)

        target = await resolve_target_draw(session)
        assert target.id == earlier.id
        assert target.id != later.id

    async def test_no_draws_raises(self, session):
        with pytest.raises(NoActiveDrawError):
            await resolve_target_draw(session)

    async def test_only_completed_draw_raises(self, session, make_major_draw):
        await make_major_draw(status="completed")

        with pytest.raises(NoActiveDrawError):
            await resolve_target_draw(session)

    async def test_never_returns_frozen_draw(self, session, make_major_draw):
        await make_major_draw(status="frozen")
        await make_queued(make_major_draw)

        for metadata in (None, payment_created(FREEZE_AT - timedelta(days=1)), payment_created(FREEZE_AT)):
            target = await resolve_target_draw(session, metadata)
            assert target.status != "frozen"

    async def test_reads_current_state_on_every_call(self, session, make_major_draw):
        active = await make_major_draw(status="active")
        queued = await make_queued(make_major_draw)
        assert (await resolve_target_draw(session)).id == active.id

        await MajorDrawRepository(session).transition(active.id, ("active",), "frozen")

        assert (await resolve_target_draw(session)).id == queued.id


class TestTargetMiniDraw:
    async def test_active_mini_draw(self, session, make_mini_draw):
        draw = await make_mini_draw()
        assert (await get_target_mini_draw(session, draw.id)).id == draw.id

    async def test_unknown_mini_draw(self, session):
        with pytest.raises(DrawNotFoundError):
            await get_target_mini_draw(session, 999)

    async def test_completed_mini_draw(self, session, make_mini_draw):
        from prizedraws.database.repositories import MiniDrawRepository

        draw = await make_mini_draw()
        await MiniDrawRepository(session).transition(draw.id, ("active",), "completed")

        with pytest.raises(MiniDrawClosedError):
            await get_target_mini_draw(session, draw.id)


class TestDisplayDraw:
    async def test_prefers_active_draw(self, session, make_major_draw):
        await make_major_draw(status="completed", draw_date=DRAW_DATE - timedelta(days=30))
        active = await make_major_draw(status="active")

        draw = await get_current_major_draw_for_display(session, now=DRAW_DATE - timedelta(days=3))
        assert draw.id == active.id

    async def test_falls_back_to_latest_completed(self, session, make_major_draw):
        await make_major_draw(status="completed", draw_date=DRAW_DATE - timedelta(days=30))
        latest = await make_major_draw(status="completed")
        await make_queued(make_major_draw)

        draw = await get_current_major_draw_for_display(session, now=DRAW_DATE + timedelta(hours=1))
        assert draw.id == latest.id

    async def test_queued_draw_when_nothing_else(self, session, make_major_draw):
        queued = await make_queued(make_major_draw)

        assert (await get_current_major_draw_for_display(session, now=DRAW_DATE)).id == queued.id
        assert await get_current_major_draw_for_display(session, include_queued_during_gap=False,
                                                        now=DRAW_DATE) is None


class TestDrawRules:
    def test_package_type_sources(self):
        assert source_for_package_type("subscription") == "membership"
        assert source_for_package_type("one-time") == "one-time-package"
        assert source_for_package_type("upsell") == "upsell"
        assert source_for_package_type("mini-draw") == "mini-draw"
        assert source_for_package_type("cancellation-upsell") == "cancellation-upsell"
        assert source_for_package_type("referral") == "referral"
        assert source_for_package_type("something-else") == "membership"
        assert source_for_package_type(None) == "membership"

    @pytest.mark.parametrize("current,new", [
        ("queued", "active"),
        ("queued", "cancelled"),
        ("active", "frozen"),
        ("active", "completed"),
        ("active", "cancelled"),
        ("frozen", "completed"),
        ("frozen", "cancelled"),
    ])
    def test_allowed_transitions(self, current, new):
        validate_status_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        ("queued", "frozen"),
        ("queued", "completed"),
        ("active", "queued"),
        ("frozen", "active"),
        ("completed", "active"),
        ("completed", "cancelled"),
        ("cancelled", "active"),
        ("cancelled", "queued"),
    ])
    def test_rejected_transitions(self, current, new):
        with pytest.raises(InvalidTransitionError):
            validate_status_transition(current, new)

    def test_terminal_statuses(self):
        assert VALID_TRANSITIONS["completed"] == ()
        assert VALID_TRANSITIONS["cancelled"] == ()

    def test_is_major_draw_frozen(self):
        draw = SimpleNamespace(status="active", freeze_entries_at=FREEZE_AT, draw_date=DRAW_DATE)
        assert not is_major_draw_frozen(draw, now=FREEZE_AT - timedelta(minutes=1))
        assert is_major_draw_frozen(draw, now=FREEZE_AT + timedelta(minutes=1))
        assert is_major_draw_frozen(SimpleNamespace(status="frozen", freeze_entries_at=None, draw_date=None))

    def test_should_lock_configuration(self):
        draw = SimpleNamespace(configuration_locked=False, status="active", freeze_entries_at=FREEZE_AT)
        assert not should_lock_configuration(draw, now=FREEZE_AT - timedelta(hours=1))
        assert should_lock_configuration(draw, now=FREEZE_AT)
        assert should_lock_configuration(
            SimpleNamespace(configuration_locked=True, status="queued", freeze_entries_at=None)
        )
        assert should_lock_configuration(
            SimpleNamespace(configuration_locked=False, status="completed", freeze_entries_at=None)
        )

    def test_display_status(self):
        def draw(status, winner=None):
            return SimpleNamespace(status=status, freeze_entries_at=FREEZE_AT, activation_date=DRAW_DATE,
                                   winner_user_id=winner)

        before_freeze = FREEZE_AT - timedelta(hours=1)
        assert get_display_status(draw("queued"), before_freeze)["status"] == "Coming Soon"
        assert get_display_status(draw("active"), before_freeze)["status"] == "Active"
        assert get_display_status(draw("active"), FREEZE_AT)["status"] == "Closing Soon"
        assert get_display_status(draw("frozen"), before_freeze)["status"] == "Entries Closed"
        assert get_display_status(draw("completed"), before_freeze)["message"] == "Winner to be announced"
        assert get_display_status(draw("completed", "user-1"), before_freeze)["message"] == "Winner announced"
        assert get_display_status(draw("cancelled"), before_freeze)["color"] == "red"
