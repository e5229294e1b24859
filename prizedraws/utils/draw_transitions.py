"""
Draw lifecycle transitions.

The sweep moves major draws along queued -> active -> frozen -> completed as their
boundaries pass and materialises the next queued draw when the current one is
close to its draw date. Every status write is conditional, so the sweep can run
from the request middleware, the daily task and the cron endpoint at the same
time without corrupting anything.
"""

import asyncio
import logging
import time as time_module
from datetime import datetime, timedelta, time, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from prizedraws.config import settings
from prizedraws.database.models import MajorDraw, MiniDraw
from prizedraws.database.repositories import MajorDrawRepository, MiniDrawRepository
from prizedraws.utils.cache import invalidate_draw_cache
from prizedraws.utils.draw_helpers import MINI_DRAW_TRANSITIONS, validate_status_transition
from prizedraws.utils.exceptions import DrawNotFoundError, InvalidTransitionError
from prizedraws.utils.timezone import (
    calculate_activation_date,
    calculate_freeze_time,
    calculate_next_draw_creation_date,
    calculate_next_draw_date,
    ensure_utc,
    utcnow,
)


async def run_transition_sweep(session: AsyncSession, now: Optional[datetime] = None,
                               create_successor: bool = True) -> Dict[str, Any]:
    """
    Applies every status transition whose boundary has passed.

    Order:
        1. active|frozen past draw_date -> completed
        2. queued past activation_date -> active
        3. active inside the freeze window -> frozen
        4. successor draw for the current draw, if due

    Args:
        session (AsyncSession): Database session
        now (Optional[datetime]): Clock override
        create_successor (bool): Whether to materialise the next draw

    Returns:
        Dict[str, Any]: frozen, completed, activated (lists of draw ids),
        next_draw_created (id or None), duration (seconds)
    """
    started = time_module.monotonic()
    now = ensure_utc(now) if now else utcnow()
    repo = MajorDrawRepository(session)

    completed = await repo.complete_due(now)
    for draw_id in completed:
        logging.info(f"Major draw {draw_id} completed")

    activated = await repo.activate_due(now)
    for draw_id in activated:
        logging.info(f"Major draw {draw_id} activated")

    frozen = await repo.freeze_due(now)
    for draw_id in frozen:
        logging.info(f"Major draw {draw_id} frozen, entries now go to the next draw")

    next_draw = None
    if create_successor:
        next_draw = await ensure_successor_draw(session, now)

    if completed or activated or frozen or next_draw is not None:
        await invalidate_draw_cache("major")

    summary = {
        "frozen": frozen,
        "completed": completed,
        "activated": activated,
        "next_draw_created": next_draw.id if next_draw is not None else None,
        "duration": round(time_module.monotonic() - started, 4),
    }
    if completed or activated or frozen or next_draw is not None:
        logging.info(f"Transition sweep finished: {summary}")
    return summary


async def ensure_successor_draw(session: AsyncSession, now: Optional[datetime] = None) -> Optional[MajorDraw]:
    """
    Creates the queued successor of the current draw once it is within
    SUCCESSOR_LOOKAHEAD_DAYS of its draw date and no draw is queued yet.

    Returns:
        Optional[MajorDraw]: The created draw, None if nothing was created
    """
    now = ensure_utc(now) if now else utcnow()
    repo = MajorDrawRepository(session)

    current = await repo.get_current_draw()
    if current is None or current.draw_date is None:
        return None

    if now < calculate_next_draw_creation_date(current.draw_date):
        return None

    # any queued draw, including one an admin created by hand, is the next draw
    queued = await repo.get_next_queued_draw()
    if queued is not None:
        return None

    draw_date = calculate_next_draw_date(current.draw_date)
    successor = await repo.create_successor(
        current,
        draw_date=draw_date,
        activation_date=calculate_activation_date(current.draw_date),
        freeze_entries_at=calculate_freeze_time(draw_date),
    )
    if successor is not None:
        logging.info(
            f"Created major draw {successor.id} as successor of {current.id}, "
            f"draw date {successor.draw_date.isoformat()}"
        )
    return successor


async def _move_major_draw(session: AsyncSession, draw_id: int, to_status: str, lock: bool,
                           now: Optional[datetime] = None) -> MajorDraw:
    repo = MajorDrawRepository(session)
    draw = await repo.get_by_id(draw_id, refresh=True)
    if draw is None:
        raise DrawNotFoundError(f"Major draw {draw_id} not found")

    from_status = draw.status
    validate_status_transition(from_status, to_status)
    if not await repo.transition(draw_id, (from_status,), to_status, lock=lock, now=now):
        raise InvalidTransitionError(f"Major draw {draw_id} changed status concurrently, cannot move to {to_status}")

    logging.info(f"Major draw {draw_id}: {from_status} -> {to_status}")
    await invalidate_draw_cache("major")
    return await repo.get_by_id(draw_id, refresh=True)


async def _move_mini_draw(session: AsyncSession, draw_id: int, to_status: str,
                          now: Optional[datetime] = None) -> MiniDraw:
    repo = MiniDrawRepository(session)
    draw = await repo.get_by_id(draw_id, refresh=True)
    if draw is None:
        raise DrawNotFoundError(f"Mini draw {draw_id} not found")

    from_status = draw.status
    validate_status_transition(from_status, to_status, MINI_DRAW_TRANSITIONS)
    if not await repo.transition(draw_id, (from_status,), to_status, lock=True, now=now):
        raise InvalidTransitionError(f"Mini draw {draw_id} changed status concurrently, cannot move to {to_status}")

    logging.info(f"Mini draw {draw_id}: {from_status} -> {to_status}")
    await invalidate_draw_cache("mini")
    return await repo.get_by_id(draw_id, refresh=True)


async def cancel_major_draw(session: AsyncSession, draw_id: int, now: Optional[datetime] = None) -> MajorDraw:
    """Admin cancellation. Completed and cancelled draws cannot be cancelled."""
    return await _move_major_draw(session, draw_id, "cancelled", lock=True, now=now)


async def complete_major_draw_for_winner(session: AsyncSession, draw_id: int,
                                         now: Optional[datetime] = None) -> MajorDraw:
    """Completes a frozen draw once its winner is recorded; completed draws are returned as is."""
    repo = MajorDrawRepository(session)
    draw = await repo.get_by_id(draw_id, refresh=True)
    if draw is None:
        raise DrawNotFoundError(f"Major draw {draw_id} not found")
    if draw.status == "completed":
        return draw
    return await _move_major_draw(session, draw_id, "completed", lock=True, now=now)


async def cancel_mini_draw(session: AsyncSession, draw_id: int, now: Optional[datetime] = None) -> MiniDraw:
    return await _move_mini_draw(session, draw_id, "cancelled", now=now)


async def complete_mini_draw(session: AsyncSession, draw_id: int, now: Optional[datetime] = None) -> MiniDraw:
    return await _move_mini_draw(session, draw_id, "completed", now=now)


async def close_mini_draw_if_full(session: AsyncSession, draw_id: int, now: Optional[datetime] = None) -> bool:
    """
    Completes an active mini draw whose total reached minimum_entries.

    Returns:
        bool: True if this call closed the draw
    """
    repo = MiniDrawRepository(session)
    closed = await repo.transition(
        draw_id,
        ("active",),
        "completed",
        lock=True,
        now=now,
        extra_conditions=(MiniDraw.total_entries >= MiniDraw.minimum_entries,),
    )
    if closed:
        logging.info(f"Mini draw {draw_id} reached its minimum entries and was closed")
        await invalidate_draw_cache("mini")
    return closed


async def run_sweep_once(session_factory=None) -> Dict[str, Any]:
    """Runs one sweep in a fresh session."""
    if session_factory is None:
        from prizedraws.database.db import async_session as session_factory

    async with session_factory() as session:
        return await run_transition_sweep(session)


def seconds_until_next_sweep(now: Optional[datetime] = None) -> float:
    """Seconds until the next DAILY_SWEEP_HOUR_UTC (14:00 UTC is midnight AEST)."""
    now = ensure_utc(now) if now else utcnow()
    target = datetime.combine(now.date(), time(settings.DAILY_SWEEP_HOUR_UTC), tzinfo=timezone.utc)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def schedule_daily_sweep():
    """
    Runs the transition sweep once a day as a fallback to the request middleware.
    """
    try:
        while True:
            seconds_left = seconds_until_next_sweep()

            hours, remainder = divmod(seconds_left, 3600)
            minutes, seconds = divmod(remainder, 60)
            logging.info(f"Next daily transition sweep in {int(hours)}:{int(minutes):02d}:{int(seconds):02d}")

            await asyncio.sleep(seconds_left)

            try:
                summary = await run_sweep_once()
                logging.info(f"Daily transition sweep finished: {summary}")
            except Exception as e:
                logging.error(f"Daily transition sweep failed: {e}")

            # guard against running twice within the same second
            await asyncio.sleep(5)
    except asyncio.CancelledError:
        logging.info("Daily transition sweep task cancelled")
    except Exception as e:
        logging.error(f"Error in daily transition sweep task: {e}")
        await asyncio.sleep(300)
        asyncio.create_task(schedule_daily_sweep())
