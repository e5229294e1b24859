from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional, Dict
from datetime import datetime

from prizedraws.database.db import get_session
from prizedraws.database.models import MiniDraw, MINI_DRAW_STATUSES
from prizedraws.database.repositories import MiniDrawRepository
from prizedraws.utils.cache import cached, MINI_DRAW_PREFIX
from prizedraws.utils.draw_helpers import get_display_status
from prizedraws.webapp.routers.major_draw import WinnerOut


class MiniDrawOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    prize_name: Optional[str] = None
    prize_value: Optional[int] = None
    prize_category: Optional[str] = None
    status: str
    minimum_entries: int
    total_entries: int = 0
    remaining_entries: int = Field(0, description="Entries left before the draw closes")
    configuration_locked: bool = False
    locked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    display_status: Optional[Dict[str, str]] = None
    winner: Optional[WinnerOut] = None


def mini_draw_out(draw: MiniDraw) -> MiniDrawOut:
    winner = None
    if draw.winner_user_id:
        winner = WinnerOut(
            user_id=draw.winner_user_id,
            entry_number=draw.winner_entry_number,
            selected_at=draw.winner_selected_at,
            selection_method=draw.winner_selection_method,
        )
    return MiniDrawOut(
        id=draw.id, name=draw.name, description=draw.description,
        prize_name=draw.prize_name, prize_value=draw.prize_value, prize_category=draw.prize_category,
        status=draw.status, minimum_entries=draw.minimum_entries, total_entries=draw.total_entries or 0,
        remaining_entries=draw.remaining_entries, configuration_locked=bool(draw.configuration_locked),
        locked_at=draw.locked_at, created_at=draw.created_at, display_status=get_display_status(draw),
        winner=winner,
    )


router = APIRouter(prefix="/api/mini-draws", tags=["mini-draws"])


@cached(key_prefix=f"{MINI_DRAW_PREFIX}:list")
async def load_mini_draws(session: AsyncSession, status: str, limit: int) -> List[dict]:
    repo = MiniDrawRepository(session)
    return [mini_draw_out(d).model_dump() for d in await repo.list_by_status(status, limit)]


@router.get("", response_model=List[MiniDrawOut])
async def list_mini_draws(
    status: str = Query("active"),
    limit: int = Query(50, ge=1, le=100),
    session: AsyncSession = Depends(get_session)
):
    if status not in MINI_DRAW_STATUSES:
        raise HTTPException(status_code=422, detail=f"Unknown mini draw status '{status}'")
    return await load_mini_draws(session, status, limit)


@router.get("/{draw_id}", response_model=MiniDrawOut)
async def get_mini_draw(draw_id: int, session: AsyncSession = Depends(get_session)):
    repo = MiniDrawRepository(session)
    draw = await repo.get_by_id(draw_id, refresh=True)
    if draw is None:
        raise HTTPException(status_code=404, detail="Mini draw not found")
    return mini_draw_out(draw)
