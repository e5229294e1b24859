"""
Major and mini draw helpers: target-draw resolution, lock checks, status
transition rules and display status.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from prizedraws.database.models import MajorDraw, MiniDraw
from prizedraws.database.repositories import MajorDrawRepository, MiniDrawRepository
from prizedraws.utils.exceptions import (
    DrawNotFoundError,
    InvalidTransitionError,
    MiniDrawClosedError,
    NoActiveDrawError,
)
from prizedraws.utils.timezone import (
    ensure_utc,
    is_in_freeze_period,
    payment_created_at,
    utcnow,
    was_payment_before_freeze,
)

VALID_TRANSITIONS = {
    "queued": ("active", "cancelled"),
    "active": ("frozen", "completed", "cancelled"),
    "frozen": ("completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}

MINI_DRAW_TRANSITIONS = {
    "active": ("completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}

PACKAGE_TYPE_SOURCES = {
    "subscription": "membership",
    "one-time": "one-time-package",
    "upsell": "upsell",
    "mini-draw": "mini-draw",
    "cancellation-upsell": "cancellation-upsell",
    "referral": "referral",
}


def source_for_package_type(package_type: Optional[str]) -> str:
    """Entry source for a purchased package type; unknown types count as membership."""
    return PACKAGE_TYPE_SOURCES.get(package_type or "", "membership")


async def resolve_target_draw(session: AsyncSession, payment_metadata: Optional[Dict[str, Any]] = None) -> MajorDraw:
    """
    Picks the major draw that a new batch of entries belongs to.

    Logic:
        1. Find the active or frozen draw
        2. Frozen -> next queued draw
        3. Payment created at or after the freeze boundary -> next queued draw
        4. Active -> current draw
        5. Gap between draws -> next queued draw

    The current draw is looked up on every call.

    Args:
        session (AsyncSession): Database session
        payment_metadata (Optional[Dict[str, Any]]): {"created": unix seconds, "type", "package_type"}

    Returns:
        MajorDraw: Draw to credit

    Raises:
        NoActiveDrawError: No draw can take the entries
    """
    repo = MajorDrawRepository(session)
    current = await repo.get_current_draw()
    created = (payment_metadata or {}).get("created")

    if current is not None and current.status == "frozen":
        logging.info(f"Major draw {current.id} is frozen, routing entries to the next queued draw")
        next_draw = await repo.get_next_queued_draw()
        if next_draw is None:
            raise NoActiveDrawError("No queued draw available during freeze period")
        return next_draw

    if current is not None and created and current.freeze_entries_at is not None:
        if not was_payment_before_freeze(created, current.freeze_entries_at):
            logging.info(
                f"Payment created at {payment_created_at(created).isoformat()} is not before the freeze "
                f"boundary {ensure_utc(current.freeze_entries_at).isoformat()} of draw {current.id}, "
                f"routing to the next queued draw"
            )
            next_draw = await repo.get_next_queued_draw()
            if next_draw is None:
                raise NoActiveDrawError("No queued draw available for deferred entries")
            return next_draw

    if current is not None and current.status == "active":
        return current

    logging.info("No active major draw (gap period), using the next queued draw")
    next_draw = await repo.get_next_queued_draw()
    if next_draw is None:
        logging.error("No queued major draw found during gap period, entries cannot be allocated")
        raise NoActiveDrawError("No active or queued major draw found for entry allocation")
    return next_draw


async def get_target_mini_draw(session: AsyncSession, mini_draw_id: int) -> MiniDraw:
    """
    Validates that a mini draw exists, is active and still has room.

    Raises:
        DrawNotFoundError: Unknown draw
        MiniDrawClosedError: Draw is not active or already reached its threshold
    """
    repo = MiniDrawRepository(session)
    draw = await repo.get_by_id(mini_draw_id, refresh=True)
    if draw is None:
        raise DrawNotFoundError(f"Mini draw {mini_draw_id} not found")
    if draw.status != "active":
        raise MiniDrawClosedError(f"Mini draw {draw.name} is {draw.status} and cannot accept new entries")
    if draw.total_entries >= draw.minimum_entries:
        raise MiniDrawClosedError(
            f"Mini draw {draw.name} has reached its minimum entries limit ({draw.minimum_entries}) and is now closed"
        )
    return draw


async def get_current_major_draw_for_display(session: AsyncSession, include_queued_during_gap: bool = True,
                                             now: Optional[datetime] = None) -> Optional[MajorDraw]:
    """
    Draw shown on the site: the active/frozen one, else the latest completed,
    else (optionally) the upcoming queued draw.
    """
    now = ensure_utc(now) if now else utcnow()
    repo = MajorDrawRepository(session)

    draw = await repo.get_current_draw()
    if draw is not None and draw.activation_date is not None and ensure_utc(draw.activation_date) > now:
        draw = None

    if draw is None:
        draw = await repo.get_latest_completed()

    if draw is None and include_queued_during_gap:
        draw = await repo.get_next_queued_draw(after=now)

    return draw


def is_major_draw_frozen(draw: MajorDraw, now: Optional[datetime] = None) -> bool:
    if draw.status == "frozen":
        return True
    if draw.freeze_entries_at is None or draw.draw_date is None:
        return False
    return is_in_freeze_period(draw.freeze_entries_at, draw.draw_date, now)


def should_lock_configuration(draw, now: Optional[datetime] = None) -> bool:
    """
    Draw configuration is locked once flagged, once the draw is frozen or
    closed, or (major draws) once the freeze boundary has passed.
    """
    if draw.configuration_locked:
        return True
    if draw.status in ("frozen", "completed", "cancelled"):
        return True
    freeze_at = getattr(draw, "freeze_entries_at", None)
    if freeze_at is None:
        return False
    now = ensure_utc(now) if now else utcnow()
    return now >= ensure_utc(freeze_at)


def validate_status_transition(current_status: str, new_status: str, transitions: Dict = None) -> None:
    """
    Raises:
        InvalidTransitionError: new_status is not reachable from current_status
    """
    transitions = transitions or VALID_TRANSITIONS
    if new_status not in transitions.get(current_status, ()):
        raise InvalidTransitionError(f"Cannot transition from {current_status} to {new_status}")


def get_display_status(draw, now: Optional[datetime] = None) -> Dict[str, str]:
    """User-facing status label for a major or mini draw."""
    now = ensure_utc(now) if now else utcnow()

    if draw.status == "queued":
        starts = ensure_utc(draw.activation_date).date().isoformat() if draw.activation_date else "soon"
        return {"status": "Coming Soon", "color": "blue", "message": f"Starts {starts}"}

    if draw.status == "active":
        freeze_at = getattr(draw, "freeze_entries_at", None)
        if freeze_at is not None and now >= ensure_utc(freeze_at):
            # freeze boundary passed, sweep has not caught up yet
            return {"status": "Closing Soon", "color": "yellow", "message": "Entries closing soon!"}
        return {"status": "Active", "color": "green", "message": "Enter now to win!"}

    if draw.status == "frozen":
        return {"status": "Entries Closed", "color": "yellow", "message": "Draw happening soon!"}

    if draw.status == "completed":
        message = "Winner announced" if draw.winner_user_id else "Winner to be announced"
        return {"status": "Completed", "color": "gray", "message": message}

    if draw.status == "cancelled":
        return {"status": "Cancelled", "color": "red", "message": "This draw has been cancelled"}

    return {"status": "Unknown", "color": "gray", "message": ""}
