from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, Dict, Any
from datetime import datetime
import logging

from prizedraws.database.db import get_session
from prizedraws.database.repositories import MajorDrawRepository, MiniDrawRepository
from prizedraws.utils.cache import invalidate_draw_cache
from prizedraws.utils.draw_helpers import should_lock_configuration
from prizedraws.utils.draw_transitions import (
    cancel_major_draw,
    cancel_mini_draw,
    close_mini_draw_if_full,
    complete_mini_draw,
)
from prizedraws.utils.exceptions import ConfigurationLockedError, DrawNotFoundError
from prizedraws.utils.timezone import calculate_freeze_time, ensure_utc, utcnow, validate_draw_dates
from prizedraws.utils.winner_selection import select_major_draw_winner, select_mini_draw_winner
from prizedraws.webapp.routers.major_draw import MajorDrawOut, major_draw_out
from prizedraws.webapp.routers.mini_draws import MiniDrawOut, mini_draw_out


class MajorDrawCreateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    prize_name: Optional[str] = None
    prize_value: Optional[int] = Field(None, ge=0)
    prize_details: Optional[Dict[str, Any]] = None
    draw_date: datetime
    activation_date: Optional[datetime] = Field(None, description="Defaults to now")
    freeze_entries_at: Optional[datetime] = Field(None, description="Defaults to 30 minutes before the draw")


class MajorDrawUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    prize_name: Optional[str] = None
    prize_value: Optional[int] = Field(None, ge=0)
    prize_details: Optional[Dict[str, Any]] = None
    draw_date: Optional[datetime] = None
    activation_date: Optional[datetime] = None
    freeze_entries_at: Optional[datetime] = None


class MiniDrawCreateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    minimum_entries: int = Field(..., gt=0)
    prize_name: Optional[str] = None
    prize_value: Optional[int] = Field(None, ge=0)
    prize_category: Optional[str] = None


class MiniDrawUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    minimum_entries: Optional[int] = Field(None, gt=0)
    prize_name: Optional[str] = None
    prize_value: Optional[int] = Field(None, ge=0)
    prize_category: Optional[str] = None


class WinnerIn(BaseModel):
    user_id: str = Field(..., min_length=1)
    entry_number: int = Field(..., ge=1)
    selection_method: str = Field("government-app", pattern="^(manual|government-app)$")


router = APIRouter(prefix="/api/admin", tags=["admin"])


def _check_dates(activation_date: datetime, freeze_entries_at: datetime, draw_date: datetime) -> None:
    valid, error = validate_draw_dates(activation_date, freeze_entries_at, draw_date)
    if not valid:
        raise HTTPException(status_code=422, detail=error)


@router.post("/major-draw", response_model=MajorDrawOut, status_code=201)
async def create_major_draw(data: MajorDrawCreateIn, session: AsyncSession = Depends(get_session)):
    draw_date = ensure_utc(data.draw_date)
    activation_date = ensure_utc(data.activation_date) if data.activation_date else utcnow()
    freeze_entries_at = ensure_utc(data.freeze_entries_at) if data.freeze_entries_at else calculate_freeze_time(draw_date)
    _check_dates(activation_date, freeze_entries_at, draw_date)

    repo = MajorDrawRepository(session)
    draw = await repo.create(
        name=data.name,
        description=data.description,
        draw_date=draw_date,
        activation_date=activation_date,
        freeze_entries_at=freeze_entries_at,
        prize_name=data.prize_name,
        prize_value=data.prize_value,
        prize_details=data.prize_details,
    )
    logging.info(f"Admin created major draw {draw.id} ({draw.name}), draw date {draw_date.isoformat()}")
    await invalidate_draw_cache("major")
    return major_draw_out(draw)


@router.patch("/major-draw/{draw_id}", response_model=MajorDrawOut)
async def update_major_draw(draw_id: int, data: MajorDrawUpdateIn, session: AsyncSession = Depends(get_session)):
    repo = MajorDrawRepository(session)
    draw = await repo.get_by_id(draw_id, refresh=True)
    if draw is None:
        raise DrawNotFoundError(f"Major draw {draw_id} not found")
    if should_lock_configuration(draw):
        raise ConfigurationLockedError(f"Major draw {draw_id} configuration is locked")

    fields = {key: value for key, value in data.model_dump(exclude_unset=True).items() if value is not None}
    for key in ("draw_date", "activation_date", "freeze_entries_at"):
        if fields.get(key) is not None:
            fields[key] = ensure_utc(fields[key])
    if "draw_date" in fields and "freeze_entries_at" not in fields:
        fields["freeze_entries_at"] = calculate_freeze_time(fields["draw_date"])

    if {"draw_date", "activation_date", "freeze_entries_at"} & fields.keys():
        _check_dates(
            fields.get("activation_date") or draw.activation_date,
            fields.get("freeze_entries_at") or draw.freeze_entries_at,
            fields.get("draw_date") or draw.draw_date,
        )

    draw = await repo.update_fields(draw, fields)
    logging.info(f"Admin updated major draw {draw_id}: {sorted(fields.keys())}")
    await invalidate_draw_cache("major")
    return major_draw_out(draw)


@router.post("/major-draw/{draw_id}/cancel", response_model=MajorDrawOut)
async def admin_cancel_major_draw(draw_id: int, session: AsyncSession = Depends(get_session)):
    draw = await cancel_major_draw(session, draw_id)
    return major_draw_out(draw)


@router.post("/major-draw/{draw_id}/winner", response_model=MajorDrawOut)
async def admin_select_major_draw_winner(draw_id: int, data: WinnerIn, session: AsyncSession = Depends(get_session)):
    draw = await select_major_draw_winner(session, draw_id, data.user_id, data.entry_number, data.selection_method)
    return major_draw_out(draw)


@router.post("/mini-draw", response_model=MiniDrawOut, status_code=201)
async def create_mini_draw(data: MiniDrawCreateIn, session: AsyncSession = Depends(get_session)):
    repo = MiniDrawRepository(session)
    draw = await repo.create(
        name=data.name,
        description=data.description,
        minimum_entries=data.minimum_entries,
        prize_name=data.prize_name,
        prize_value=data.prize_value,
        prize_category=data.prize_category,
    )
    logging.info(f"Admin created mini draw {draw.id} ({draw.name}), minimum entries {draw.minimum_entries}")
    await invalidate_draw_cache("mini")
    return mini_draw_out(draw)


@router.patch("/mini-draw/{draw_id}", response_model=MiniDrawOut)
async def update_mini_draw(draw_id: int, data: MiniDrawUpdateIn, session: AsyncSession = Depends(get_session)):
    repo = MiniDrawRepository(session)
    draw = await repo.get_by_id(draw_id, refresh=True)
    if draw is None:
        raise DrawNotFoundError(f"Mini draw {draw_id} not found")
    if should_lock_configuration(draw):
        raise ConfigurationLockedError(f"Mini draw {draw_id} configuration is locked")

    fields = {key: value for key, value in data.model_dump(exclude_unset=True).items() if value is not None}
    if fields.get("minimum_entries") is not None and fields["minimum_entries"] < (draw.total_entries or 0):
        raise HTTPException(
            status_code=422,
            detail=f"minimum_entries cannot be below the current total of {draw.total_entries}",
        )

    draw = await repo.update_fields(draw, fields)
    logging.info(f"Admin updated mini draw {draw_id}: {sorted(fields.keys())}")
    if "minimum_entries" in fields and await close_mini_draw_if_full(session, draw_id):
        draw = await repo.get_by_id(draw_id, refresh=True)
    await invalidate_draw_cache("mini")
    return mini_draw_out(draw)


@router.post("/mini-draw/{draw_id}/cancel", response_model=MiniDrawOut)
async def admin_cancel_mini_draw(draw_id: int, session: AsyncSession = Depends(get_session)):
    draw = await cancel_mini_draw(session, draw_id)
    return mini_draw_out(draw)


@router.post("/mini-draw/{draw_id}/complete", response_model=MiniDrawOut)
async def admin_complete_mini_draw(draw_id: int, session: AsyncSession = Depends(get_session)):
    draw = await complete_mini_draw(session, draw_id)
    return mini_draw_out(draw)


@router.post("/mini-draw/{draw_id}/winner", response_model=MiniDrawOut)
async def admin_select_mini_draw_winner(draw_id: int, data: WinnerIn, session: AsyncSession = Depends(get_session)):
    draw = await select_mini_draw_winner(session, draw_id, data.user_id, data.entry_number, data.selection_method)
    return mini_draw_out(draw)
