from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
import logging

from prizedraws.database.db import get_session
from prizedraws.utils.draw_transitions import run_transition_sweep
from prizedraws.utils.timezone import utcnow


class TransitionSummaryOut(BaseModel):
    success: bool = True
    timestamp: str
    frozen: List[int]
    completed: List[int]
    activated: List[int]
    next_draw_created: Optional[int] = None
    duration: float


router = APIRouter(prefix="/api/cron", tags=["cron"])


@router.get("/major-draw-transition", response_model=TransitionSummaryOut)
async def major_draw_transition(session: AsyncSession = Depends(get_session)):
    logging.info("Cron-triggered major draw transition sweep")
    summary = await run_transition_sweep(session)
    return TransitionSummaryOut(timestamp=utcnow().isoformat(), **summary)
