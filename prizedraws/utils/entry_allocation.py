"""
Allocation of purchased entries to major and mini draws.

Called by the payments router once a payment has settled. Each call resolves the
target draw from the current store state and credits the entries in a single
transaction keyed by (payment_id, user_id).
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from prizedraws.database.repositories import MajorDrawRepository, MiniDrawRepository, find_credit, duplicate_result
from prizedraws.utils.cache import invalidate_draw_cache
from prizedraws.utils.draw_helpers import resolve_target_draw, source_for_package_type, get_target_mini_draw
from prizedraws.utils.draw_transitions import close_mini_draw_if_full
from prizedraws.utils.exceptions import (
    DrawClosedError,
    DrawNotFoundError,
    MiniDrawCapacityError,
    MiniDrawClosedError,
)

MINI_DRAW_PACKAGE_SOURCES = {
    "mini-draw": "mini-draw-package",
    "mini-draw-package": "mini-draw-package",
    "free-entry": "free-entry",
}


def replay_result(credit) -> Dict[str, Any]:
    result = duplicate_result(credit)
    result["draw_kind"] = credit.draw_kind
    result["draw_status"] = None
    return result


async def _lost_replay_race(session: AsyncSession, result: Dict[str, Any], payment_id: str, user_id: str,
                            draw_kind: str) -> Dict[str, Any]:
    """
    Result for a delivery whose ledger insert collided with a concurrent delivery
    of the same payment. The session was rolled back, so no ORM state is read.
    """
    credit = await find_credit(session, payment_id, user_id)
    if credit is not None:
        return replay_result(credit)
    result["draw_kind"] = draw_kind
    result["draw_status"] = None
    return result


async def add_to_major_draw(session: AsyncSession, user_id: str, entries: int, package_type: Optional[str] = None,
                            payment_id: Optional[str] = None,
                            payment_metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Credits entries to whichever major draw should receive them.

    If the resolved draw closes between resolution and the credit (a sweep ran in
    between), the draw is resolved once more and the credit retried.

    Args:
        session (AsyncSession): Database session
        user_id (str): User receiving the entries
        entries (int): Number of entries
        package_type (Optional[str]): Purchased package type, mapped to an entry source
        payment_id (Optional[str]): Settled payment id, used to ignore replays
        payment_metadata (Optional[Dict[str, Any]]): {"created": unix seconds, ...}

    Returns:
        Dict[str, Any]: Credit result plus "draw_kind" and "draw_status"

    Raises:
        NoActiveDrawError: No draw can take the entries
    """
    source = source_for_package_type(package_type)
    repo = MajorDrawRepository(session)

    credit = await find_credit(session, payment_id, user_id)
    if credit is not None:
        logging.warning(f"Payment {payment_id} already credited to user {user_id} on {credit.draw_kind} draw {credit.draw_id}")
        return replay_result(credit)

    # a failed credit rolls the session back and expires draw, so read it up front
    draw = await resolve_target_draw(session, payment_metadata)
    draw_id, draw_status = draw.id, draw.status
    try:
        result = await repo.apply_entry(draw_id, user_id, entries, source, payment_id=payment_id)
    except DrawClosedError:
        logging.warning(f"Major draw {draw_id} closed while crediting user {user_id}, resolving the target draw again")
        draw = await resolve_target_draw(session, payment_metadata)
        draw_id, draw_status = draw.id, draw.status
        result = await repo.apply_entry(draw_id, user_id, entries, source, payment_id=payment_id)

    if result["duplicate"]:
        return await _lost_replay_race(session, result, payment_id, user_id, "major")

    if result["applied"]:
        logging.info(
            f"Added {entries} {source} entries for user {user_id} to major draw {draw_id} "
            f"({draw_status}), draw total {result['total_entries']}"
        )
        await invalidate_draw_cache("major")

    result["draw_kind"] = "major"
    result["draw_status"] = draw_status
    return result


async def add_to_mini_draw(session: AsyncSession, mini_draw_id: int, user_id: str, entries: int,
                           package_type: Optional[str] = "mini-draw",
                           payment_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Credits entries to a specific mini draw and closes it once the entry threshold is reached.

    Raises:
        DrawNotFoundError: Unknown mini draw
        MiniDrawClosedError: Mini draw is not active or is already full
        MiniDrawCapacityError: The entries would exceed the remaining capacity
    """
    source = MINI_DRAW_PACKAGE_SOURCES.get(package_type or "", "mini-draw-package")
    repo = MiniDrawRepository(session)

    credit = await find_credit(session, payment_id, user_id)
    if credit is not None:
        logging.warning(f"Payment {payment_id} already credited to user {user_id} on {credit.draw_kind} draw {credit.draw_id}")
        return replay_result(credit)

    draw = await get_target_mini_draw(session, mini_draw_id)
    if entries > draw.remaining_entries:
        raise MiniDrawCapacityError(
            f"Mini draw {draw.name} has only {draw.remaining_entries} entries remaining, cannot add {entries}"
        )

    draw_id, draw_name, minimum_entries = draw.id, draw.name, draw.minimum_entries
    try:
        result = await repo.apply_entry(draw_id, user_id, entries, source, payment_id=payment_id)
    except DrawClosedError:
        # the conditional update failed, work out which condition
        draw = await repo.get_by_id(mini_draw_id, refresh=True)
        if draw is None:
            raise DrawNotFoundError(f"Mini draw {mini_draw_id} not found")
        if draw.status != "active" or draw.remaining_entries <= 0:
            raise MiniDrawClosedError(f"Mini draw {draw.name} is no longer accepting entries")
        raise MiniDrawCapacityError(
            f"Mini draw {draw.name} has only {draw.remaining_entries} entries remaining, cannot add {entries}"
        )

    if result["duplicate"]:
        return await _lost_replay_race(session, result, payment_id, user_id, "mini")

    result["draw_kind"] = "mini"
    result["draw_status"] = "active"

    if result["applied"]:
        logging.info(
            f"Added {entries} {source} entries for user {user_id} to mini draw {draw_id} ({draw_name}), "
            f"total {result['total_entries']}/{minimum_entries}"
        )
        if await close_mini_draw_if_full(session, draw_id):
            result["draw_status"] = "completed"
        await invalidate_draw_cache("mini")

    return result
