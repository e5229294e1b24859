import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from prizedraws.database.models import MajorDraw, MiniDraw
from prizedraws.database.repositories import MajorDrawRepository, MiniDrawRepository
from prizedraws.utils.cache import invalidate_draw_cache
from prizedraws.utils.draw_transitions import complete_major_draw_for_winner
from prizedraws.utils.exceptions import DrawNotFoundError, WinnerSelectionError

SELECTION_METHODS = ("manual", "government-app")


async def _validate_winner(repo, draw, user_id: str, entry_number: int, selection_method: str) -> None:
    if selection_method not in SELECTION_METHODS:
        raise WinnerSelectionError(f"Unknown selection method '{selection_method}'")
    if draw.winner_user_id:
        raise WinnerSelectionError(f"Winner already selected for draw {draw.id}")
    if entry_number < 1 or entry_number > (draw.total_entries or 0):
        raise WinnerSelectionError(
            f"Entry number {entry_number} is outside the valid range 1-{draw.total_entries or 0}"
        )
    if await repo.get_user_entry(draw.id, user_id) is None:
        raise WinnerSelectionError(f"User {user_id} has no entries in draw {draw.id}")
    owner = await repo.find_entry_owner(draw.id, entry_number)
    if owner != user_id:
        raise WinnerSelectionError(f"Entry number {entry_number} does not belong to user {user_id}")


async def select_major_draw_winner(session: AsyncSession, draw_id: int, user_id: str, entry_number: int,
                                   selection_method: str = "government-app",
                                   now: Optional[datetime] = None) -> MajorDraw:
    """
    Records the winner of a frozen or completed major draw and completes it.

    Entry numbers run 1..total_entries in the order users first entered, so
    entry_number must fall inside the winner's own range.

    Raises:
        DrawNotFoundError: Unknown draw
        WinnerSelectionError: Wrong status, winner already set, or entry number not held by the user
    """
    repo = MajorDrawRepository(session)
    draw = await repo.get_by_id(draw_id, refresh=True)
    if draw is None:
        raise DrawNotFoundError(f"Major draw {draw_id} not found")
    if draw.status not in ("frozen", "completed"):
        raise WinnerSelectionError(f"Can only select a winner after the freeze period starts (status {draw.status})")

    await _validate_winner(repo, draw, user_id, entry_number, selection_method)

    if not await repo.record_winner(draw_id, user_id, entry_number, selection_method, now):
        raise WinnerSelectionError(f"Winner already selected for major draw {draw_id}")

    logging.info(f"Winner of major draw {draw_id}: user {user_id}, entry {entry_number} ({selection_method})")
    draw = await complete_major_draw_for_winner(session, draw_id, now)
    await invalidate_draw_cache("major")
    return draw


async def select_mini_draw_winner(session: AsyncSession, draw_id: int, user_id: str, entry_number: int,
                                  selection_method: str = "manual",
                                  now: Optional[datetime] = None) -> MiniDraw:
    """Records the winner of a completed mini draw."""
    repo = MiniDrawRepository(session)
    draw = await repo.get_by_id(draw_id, refresh=True)
    if draw is None:
        raise DrawNotFoundError(f"Mini draw {draw_id} not found")
    if draw.status != "completed":
        raise WinnerSelectionError(f"Winner can only be selected for completed mini draws (status {draw.status})")

    await _validate_winner(repo, draw, user_id, entry_number, selection_method)

    if not await repo.record_winner(draw_id, user_id, entry_number, selection_method, now):
        raise WinnerSelectionError(f"Winner already selected for mini draw {draw_id}")

    logging.info(f"Winner of mini draw {draw_id}: user {user_id}, entry {entry_number} ({selection_method})")
    await invalidate_draw_cache("mini")
    return await repo.get_by_id(draw_id, refresh=True)
