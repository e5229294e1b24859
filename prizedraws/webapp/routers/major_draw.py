from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional, Dict, Any
from datetime import datetime

from prizedraws.database.db import get_session
from prizedraws.database.models import MajorDraw, MAJOR_DRAW_SOURCE_COLUMNS
from prizedraws.database.repositories import MajorDrawRepository
from prizedraws.utils.cache import cached, MAJOR_DRAW_PREFIX
from prizedraws.utils.draw_helpers import get_current_major_draw_for_display, get_display_status, is_major_draw_frozen
from prizedraws.utils.timezone import format_countdown, get_time_until_draw, get_time_until_freeze, utcnow


class WinnerOut(BaseModel):
    user_id: str
    entry_number: int
    selected_at: Optional[datetime] = None
    selection_method: Optional[str] = None


class MajorDrawOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    prize_name: Optional[str] = None
    prize_value: Optional[int] = None
    prize_details: Optional[Dict[str, Any]] = None
    status: str
    activation_date: Optional[datetime] = None
    freeze_entries_at: Optional[datetime] = None
    draw_date: Optional[datetime] = None
    configuration_locked: bool = False
    locked_at: Optional[datetime] = None
    total_entries: int = 0
    predecessor_id: Optional[int] = None
    winner: Optional[WinnerOut] = None


class CurrentMajorDrawOut(BaseModel):
    draw: Optional[MajorDrawOut] = None
    display_status: Dict[str, str]
    is_frozen: bool = Field(False, description="Entries are closed for this draw")
    seconds_until_freeze: int = 0
    seconds_until_draw: int = 0
    time_until_freeze: Optional[str] = Field(None, description="Human readable countdown to the freeze")
    time_until_draw: Optional[str] = Field(None, description="Human readable countdown to the draw")


class UserEntryOut(BaseModel):
    draw_id: int
    user_id: str
    total_entries: int
    entries_by_source: Dict[str, int]
    first_added_date: Optional[datetime] = None
    last_updated_date: Optional[datetime] = None


def major_draw_out(draw: MajorDraw) -> MajorDrawOut:
    winner = None
    if draw.winner_user_id:
        winner = WinnerOut(
            user_id=draw.winner_user_id,
            entry_number=draw.winner_entry_number,
            selected_at=draw.winner_selected_at,
            selection_method=draw.winner_selection_method,
        )
    return MajorDrawOut(
        id=draw.id, name=draw.name, description=draw.description,
        prize_name=draw.prize_name, prize_value=draw.prize_value, prize_details=draw.prize_details,
        status=draw.status, activation_date=draw.activation_date, freeze_entries_at=draw.freeze_entries_at,
        draw_date=draw.draw_date, configuration_locked=bool(draw.configuration_locked), locked_at=draw.locked_at,
        total_entries=draw.total_entries or 0, predecessor_id=draw.predecessor_id, winner=winner,
    )


def user_entry_out(entry) -> UserEntryOut:
    return UserEntryOut(
        draw_id=entry.draw_id,
        user_id=entry.user_id,
        total_entries=entry.total_entries,
        entries_by_source=entry.entries_by_source,
        first_added_date=entry.first_added_date,
        last_updated_date=entry.last_updated_date,
    )


router = APIRouter(prefix="/api/major-draw", tags=["major-draw"])


@cached(key_prefix=f"{MAJOR_DRAW_PREFIX}:current")
async def load_current_major_draw(session: AsyncSession) -> Dict[str, Any]:
    draw = await get_current_major_draw_for_display(session)
    if draw is None:
        return {"draw": None}

    now = utcnow()
    until_freeze = get_time_until_freeze(draw.freeze_entries_at, now)
    until_draw = get_time_until_draw(draw.draw_date, now)
    return CurrentMajorDrawOut(
        draw=major_draw_out(draw),
        display_status=get_display_status(draw, now),
        is_frozen=is_major_draw_frozen(draw, now),
        seconds_until_freeze=int(until_freeze.total_seconds()),
        seconds_until_draw=int(until_draw.total_seconds()),
        time_until_freeze=format_countdown(until_freeze),
        time_until_draw=format_countdown(until_draw),
    ).model_dump()


@router.get("/current", response_model=CurrentMajorDrawOut)
async def current_major_draw(session: AsyncSession = Depends(get_session)):
    data = await load_current_major_draw(session)
    if data.get("draw") is None:
        raise HTTPException(status_code=404, detail="No major draw found")
    return data


@router.get("/completed", response_model=List[MajorDrawOut])
async def completed_major_draws(limit: int = Query(6, ge=1, le=50), session: AsyncSession = Depends(get_session)):
    repo = MajorDrawRepository(session)
    return [major_draw_out(d) for d in await repo.list_completed(limit)]


@router.get("/{draw_id}", response_model=MajorDrawOut)
async def get_major_draw(draw_id: int, session: AsyncSession = Depends(get_session)):
    repo = MajorDrawRepository(session)
    draw = await repo.get_by_id(draw_id, refresh=True)
    if draw is None:
        raise HTTPException(status_code=404, detail="Major draw not found")
    return major_draw_out(draw)


@router.get("/{draw_id}/entries/{user_id}", response_model=UserEntryOut)
async def user_major_draw_entries(draw_id: int, user_id: str, session: AsyncSession = Depends(get_session)):
    repo = MajorDrawRepository(session)
    if await repo.get_by_id(draw_id) is None:
        raise HTTPException(status_code=404, detail="Major draw not found")

    entry = await repo.get_user_entry(draw_id, user_id)
    if entry is None:
        return UserEntryOut(
            draw_id=draw_id, user_id=user_id, total_entries=0,
            entries_by_source={source: 0 for source in MAJOR_DRAW_SOURCE_COLUMNS},
        )
    return user_entry_out(entry)
