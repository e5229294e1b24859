from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from prizedraws.database.models import MajorDraw, MajorDrawEntry, MAJOR_DRAW_SOURCE_COLUMNS
from prizedraws.database.repositories.credit import credit_entries
from prizedraws.utils.timezone import utcnow

# statuses in which a major draw still takes entries
OPEN_STATUSES = ("queued", "active")

# fields an admin may edit while the configuration is unlocked
EDITABLE_FIELDS = (
    "name", "description", "prize_name", "prize_value", "prize_details",
    "activation_date", "freeze_entries_at", "draw_date",
)


class MajorDrawRepository:
    """
    Queries and writes for major draws.

    Status writes are conditional UPDATEs so that concurrent sweeps converge;
    entry writes go through credit_entries.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, draw_id: int, refresh: bool = False) -> Optional[MajorDraw]:
        query = select(MajorDraw).where(MajorDraw.id == draw_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_current_draw(self) -> Optional[MajorDraw]:
        """The draw currently active or frozen, latest activation first."""
        result = await self.session.execute(
            select(MajorDraw)
            .where(MajorDraw.status.in_(("active", "frozen")))
            .order_by(MajorDraw.activation_date.desc(), MajorDraw.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_next_queued_draw(self, after: Optional[datetime] = None) -> Optional[MajorDraw]:
        """
        Earliest queued draw by activation date.

        Args:
            after (Optional[datetime]): Only draws activating after this instant
        """
        query = select(MajorDraw).where(MajorDraw.status == "queued")
        if after is not None:
            query = query.where(MajorDraw.activation_date > after)
        result = await self.session.execute(
            query.order_by(MajorDraw.activation_date.asc(), MajorDraw.id.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_latest_completed(self) -> Optional[MajorDraw]:
        result = await self.session.execute(
            select(MajorDraw)
            .where(MajorDraw.status == "completed")
            .order_by(MajorDraw.draw_date.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def list_completed(self, limit: int = 6) -> List[MajorDraw]:
        result = await self.session.execute(
            select(MajorDraw)
            .where(MajorDraw.status == "completed")
            .order_by(MajorDraw.draw_date.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def list_by_status(self, *statuses: str) -> List[MajorDraw]:
        result = await self.session.execute(
            select(MajorDraw).where(MajorDraw.status.in_(statuses)).order_by(MajorDraw.id)
        )
        return result.scalars().all()

    async def get_user_entry(self, draw_id: int, user_id: str) -> Optional[MajorDrawEntry]:
        result = await self.session.execute(
            select(MajorDrawEntry)
            .where(MajorDrawEntry.draw_id == draw_id, MajorDrawEntry.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(self, name: str, description: str, draw_date: datetime, activation_date: datetime,
                     freeze_entries_at: datetime, status: str = "queued", prize_name: str | None = None,
                     prize_value: int | None = None, prize_details: dict | None = None,
                     predecessor_id: int | None = None) -> MajorDraw:
        draw = MajorDraw(
            name=name,
            description=description,
            prize_name=prize_name,
            prize_value=prize_value,
            prize_details=prize_details,
            status=status,
            draw_date=draw_date,
            activation_date=activation_date,
            freeze_entries_at=freeze_entries_at,
            configuration_locked=False,
            total_entries=0,
            predecessor_id=predecessor_id,
        )
        self.session.add(draw)
        await self.session.commit()
        await self.session.refresh(draw)
        return draw

    async def create_successor(self, predecessor: MajorDraw, draw_date: datetime, activation_date: datetime,
                               freeze_entries_at: datetime) -> Optional[MajorDraw]:
        """
        Inserts the queued successor of a draw, copying its name and prize.

        Returns:
            Optional[MajorDraw]: The new draw, or None if a successor already exists
        """
        predecessor_id = predecessor.id
        successor = MajorDraw(
            name=predecessor.name,
            description=predecessor.description,
            prize_name=predecessor.prize_name,
            prize_value=predecessor.prize_value,
            prize_details=dict(predecessor.prize_details) if predecessor.prize_details else None,
            status="queued",
            draw_date=draw_date,
            activation_date=activation_date,
            freeze_entries_at=freeze_entries_at,
            configuration_locked=False,
            total_entries=0,
            predecessor_id=predecessor_id,
        )
        self.session.add(successor)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logging.info(f"Successor of major draw {predecessor_id} already exists, skipping creation")
            return None
        await self.session.refresh(successor)
        return successor

    async def update_fields(self, draw: MajorDraw, fields: Dict[str, Any]) -> MajorDraw:
        for key, value in fields.items():
            if key not in EDITABLE_FIELDS:
                raise ValueError(f"Field '{key}' cannot be edited")
            setattr(draw, key, value)
        self.session.add(draw)
        await self.session.commit()
        await self.session.refresh(draw)
        return draw

    async def apply_entry(self, draw_id: int, user_id: str, entry_count: int, source: str,
                          payment_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Credits entries to a user on a major draw (queued or active only).
        """
        return await credit_entries(
            self.session,
            draw_model=MajorDraw,
            entry_model=MajorDrawEntry,
            source_columns=MAJOR_DRAW_SOURCE_COLUMNS,
            draw_kind="major",
            draw_id=draw_id,
            user_id=user_id,
            entry_count=entry_count,
            source=source,
            payment_id=payment_id,
            draw_conditions=(MajorDraw.status.in_(OPEN_STATUSES),),
            now=now,
        )

    async def reconcile_total(self, draw_id: int) -> int:
        """
        Recomputes total_entries from the entry rows in a single statement.

        Returns:
            int: The reconciled total
        """
        entries_sum = (
            select(func.coalesce(func.sum(MajorDrawEntry.total_entries), 0))
            .where(MajorDrawEntry.draw_id == draw_id)
            .scalar_subquery()
        )
        await self.session.execute(
            update(MajorDraw)
            .where(MajorDraw.id == draw_id)
            .values(total_entries=entries_sum)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        result = await self.session.execute(select(MajorDraw.total_entries).where(MajorDraw.id == draw_id))
        return result.scalar() or 0

    async def find_entry_owner(self, draw_id: int, entry_number: int) -> Optional[str]:
        """
        Maps an entry number (1..total_entries) onto the user holding it.
        Entry numbers are allocated in the order users first entered.
        """
        result = await self.session.execute(
            select(MajorDrawEntry.user_id, MajorDrawEntry.total_entries)
            .where(MajorDrawEntry.draw_id == draw_id)
            .order_by(MajorDrawEntry.first_added_date, MajorDrawEntry.id)
        )
        upper = 0
        for user_id, total in result.all():
            upper += total
            if entry_number <= upper:
                return user_id
        return None

    # --- conditional status writes ---------------------------------------

    async def complete_due(self, now: Optional[datetime] = None) -> List[int]:
        """active|frozen draws whose draw date has passed -> completed."""
        now = now or utcnow()
        due = await self._ids_where(
            MajorDraw.status.in_(("active", "frozen")),
            MajorDraw.draw_date <= now,
        )
        completed = []
        for draw_id in due:
            if await self.transition(draw_id, ("active", "frozen"), "completed", lock=True, now=now,
                                     extra_conditions=(MajorDraw.draw_date <= now,)):
                completed.append(draw_id)
        return completed

    async def activate_due(self, now: Optional[datetime] = None) -> List[int]:
        """queued draws whose activation date has passed -> active."""
        now = now or utcnow()
        due = await self._ids_where(
            MajorDraw.status == "queued",
            MajorDraw.activation_date <= now,
        )
        activated = []
        for draw_id in due:
            if await self.transition(draw_id, ("queued",), "active", now=now,
                                     extra_conditions=(MajorDraw.activation_date <= now,)):
                activated.append(draw_id)
        return activated

    async def freeze_due(self, now: Optional[datetime] = None) -> List[int]:
        """active draws inside their freeze window -> frozen."""
        now = now or utcnow()
        conditions = (MajorDraw.freeze_entries_at <= now, MajorDraw.draw_date > now)
        due = await self._ids_where(MajorDraw.status == "active", *conditions)
        frozen = []
        for draw_id in due:
            if await self.transition(draw_id, ("active",), "frozen", lock=True, now=now,
                                     extra_conditions=conditions):
                frozen.append(draw_id)
        return frozen

    async def transition(self, draw_id: int, from_statuses, to_status: str, lock: bool = False,
                         now: Optional[datetime] = None, extra_conditions=()) -> bool:
        """
        UPDATE ... SET status = to_status WHERE status IN from_statuses.

        Returns:
            bool: True if this call moved the draw
        """
        now = now or utcnow()
        values = {"status": to_status}
        if lock:
            values["configuration_locked"] = True
            values["locked_at"] = func.coalesce(MajorDraw.locked_at, now)

        result = await self.session.execute(
            update(MajorDraw)
            .where(MajorDraw.id == draw_id, MajorDraw.status.in_(tuple(from_statuses)), *extra_conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def record_winner(self, draw_id: int, user_id: str, entry_number: int, selection_method: str,
                            now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        result = await self.session.execute(
            update(MajorDraw)
            .where(MajorDraw.id == draw_id, MajorDraw.winner_user_id.is_(None))
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

    async def _ids_where(self, *conditions) -> List[int]:
        result = await self.session.execute(select(MajorDraw.id).where(*conditions).order_by(MajorDraw.id))
        return [row[0] for row in result.all()]
