from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from prizedraws.database.db import get_session
from prizedraws.utils.entry_allocation import add_to_major_draw, add_to_mini_draw, MINI_DRAW_PACKAGE_SOURCES


class PaymentEntriesIn(BaseModel):
    payment_id: str = Field(..., min_length=1, max_length=255, description="Settled payment id")
    user_id: str = Field(..., min_length=1, max_length=64)
    entries: int = Field(..., gt=0, description="Number of entries bought")
    package_type: str = Field("subscription", description="subscription, one-time, upsell, mini-draw, ...")
    created: Optional[int] = Field(None, ge=0, description="Payment creation time, Unix seconds")
    mini_draw_id: Optional[int] = Field(None, description="Target mini draw for mini-draw packages")


class PaymentEntriesOut(BaseModel):
    success: bool = True
    applied: bool
    duplicate: bool = False
    draw_kind: Optional[str] = None
    draw_id: Optional[int] = None
    draw_status: Optional[str] = None
    entries: int
    total_entries: Optional[int] = None
    user_total_entries: Optional[int] = None


router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/entries", response_model=PaymentEntriesOut)
async def credit_payment_entries(data: PaymentEntriesIn, session: AsyncSession = Depends(get_session)):
    """
    Credits the entries of a settled payment. Replays of the same (payment_id, user_id)
    return duplicate=true and change nothing.
    """
    if data.mini_draw_id is not None and data.package_type in MINI_DRAW_PACKAGE_SOURCES:
        result = await add_to_mini_draw(
            session, data.mini_draw_id, data.user_id, data.entries,
            package_type=data.package_type, payment_id=data.payment_id,
        )
    else:
        metadata = {"created": data.created, "type": "payment_intent", "package_type": data.package_type}
        result = await add_to_major_draw(
            session, data.user_id, data.entries,
            package_type=data.package_type, payment_id=data.payment_id, payment_metadata=metadata,
        )

    if result["duplicate"]:
        logging.info(f"Payment {data.payment_id} replay ignored for user {data.user_id}")
    return PaymentEntriesOut(**result)
