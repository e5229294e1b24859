from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, List, Optional
from datetime import datetime

from prizedraws.database.models import MiniDraw, MiniDrawEntry, MINI_DRAW_SOURCE_COLUMNS
from prizedraws.database.repositories.credit import credit_entries
from prizedraws.utils.timezone import utcnow

EDITABLE_FIELDS = ("name", "description", "prize_name", "prize_value", "prize_category", "minimum_entries")


class MiniDrawRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, draw_id: int, refresh: bool = False) -> Optional[MiniDraw]:
        query = select(MiniDraw).where(MiniDraw.id == draw_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_by_status(self, status: str = "active", limit: int = 50) -> List[MiniDraw]:
        result = await self.session.execute(
            select(MiniDraw)
            .where(MiniDraw.status == status)
            .order_by(MiniDraw.created_at.desc(), MiniDraw.id.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def get_user_entry(self, draw_id: int, user_id: str) -> Optional[MiniDrawEntry]:
        result = await self.session.execute(
            select(MiniDrawEntry)
            .where(MiniDrawEntry.draw_id == draw_id, MiniDrawEntry.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(self, name: str, description: str, minimum_entries: int, prize_name: str | None = None,
                     prize_value: int | None = None, prize_category: str | None = None) -> MiniDraw:
        """Mini draws start out active."""
        draw = MiniDraw(
            name=name,
            description=description,
            minimum_entries=minimum_entries,
            prize_name=prize_name,
            prize_value=prize_value,
            prize_category=prize_category,
            status="active",
            total_entries=0,
            configuration_locked=False,
        )
        self.session.add(draw)
        await self.session.commit()
        await self.session.refresh(draw)
        return draw

    async def update_fields(self, draw: MiniDraw, fields: Dict[str, Any]) -> MiniDraw:
        for key, value in fields.items():
            if key not in EDITABLE_FIELDS:
                raise ValueError(f"Field '{key}' cannot be edited")
            setattr(draw, key, value)
        self.session.add(draw)
        await self.session.commit()
        await self.session.refresh(draw)
        return draw

    async def apply_entry(self, draw_id: int, user_id: str, entry_count: int, source: str = "mini-draw-package",
                          payment_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Credits entries to an active mini draw without overshooting its threshold.
        """
        return await credit_entries(
            self.session,
            draw_model=MiniDraw,
            entry_model=MiniDrawEntry,
            source_columns=MINI_DRAW_SOURCE_COLUMNS,
            draw_kind="mini",
            draw_id=draw_id,
            user_id=user_id,
            entry_count=entry_count,
            source=source,
            payment_id=payment_id,
            draw_conditions=(
                MiniDraw.status == "active",
                MiniDraw.total_entries + entry_count <= MiniDraw.minimum_entries,
            ),
            now=now,
        )

    async def find_entry_owner(self, draw_id: int, entry_number: int) -> Optional[str]:
        result = await self.session.execute(
            select(MiniDrawEntry.user_id, MiniDrawEntry.total_entries)
            .where(MiniDrawEntry.draw_id == draw_id)
            .order_by(MiniDrawEntry.first_added_date, MiniDrawEntry.id)
        )
        upper = 0
        for user_id, total in result.all():
            upper += total
            if entry_number <= upper:
                return user_id
        return None

    async def transition(self, draw_id: int, from_statuses, to_status: str, lock: bool = False,
                         now: Optional[datetime] = None, extra_conditions=()) -> bool:
        now = now or utcnow()
        values = {"status": to_status}
        if lock:
            values["configuration_locked"] = True
            values["locked_at"] = func.coalesce(MiniDraw.locked_at, now)

        result = await self.session.execute(
            update(MiniDraw)
            .where(MiniDraw.id == draw_id, MiniDraw.status.in_(tuple(from_statuses)), *extra_conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def record_winner(self, draw_id: int, user_id: str, entry_number: int, selection_method: str,
                            now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        result = await self.session.execute(
            update(MiniDraw)
            .where(MiniDraw.id == draw_id, MiniDraw.winner_user_id.is_(None))
            .values(
                winner_user_id=user_id,
                winner_entry_number=entry_number,
                winner_selected_at=now,
                winner_selection_method=selection_method,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount > 0
