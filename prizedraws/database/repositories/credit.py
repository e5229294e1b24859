from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from typing import Any, Dict, Iterable, Optional
from datetime import datetime
import asyncio
import logging

from prizedraws.database.models import EntryCredit
from prizedraws.utils.exceptions import DrawClosedError
from prizedraws.utils.timezone import utcnow

MAX_RETRIES = 3
RETRY_DELAY = 0.1


async def credit_entries(
    session: AsyncSession,
    *,
    draw_model,
    entry_model,
    source_columns: Dict[str, str],
    draw_kind: str,
    draw_id: int,
    user_id: str,
    entry_count: int,
    source: str,
    payment_id: Optional[str] = None,
    draw_conditions: Iterable = (),
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Credits entries to a user's tally on a draw in one transaction.

    Steps:
        1. ledger row for (payment_id, user_id); a unique violation is a replay
        2. draw total += entry_count, guarded by draw_conditions
        3. user row += entry_count (and the source counter), or a new row

    Args:
        session (AsyncSession): Database session
        draw_model: MajorDraw or MiniDraw
        entry_model: MajorDrawEntry or MiniDrawEntry
        source_columns (Dict[str, str]): Entry source -> counter column
        draw_kind (str): "major" | "mini", stored on the ledger row
        draw_id (int): Target draw
        user_id (str): User receiving the entries
        entry_count (int): Number of entries
        source (str): Entry source, a key of source_columns
        payment_id (Optional[str]): Payment that paid for the entries
        draw_conditions (Iterable): Extra WHERE clauses for the draw total update
        now (Optional[datetime]): Clock override

    Returns:
        Dict[str, Any]: applied, duplicate, draw_id, entries, total_entries, user_total_entries

    Raises:
        DrawClosedError: The draw did not satisfy draw_conditions
        ValueError: Unknown source
    """
    if source not in source_columns:
        raise ValueError(f"Unknown entry source '{source}' for {draw_kind} draw")

    result = {
        "applied": False,
        "duplicate": False,
        "draw_id": draw_id,
        "entries": entry_count,
        "total_entries": None,
        "user_total_entries": None,
    }

    if entry_count <= 0:
        logging.info(f"No entries to credit to {draw_kind} draw {draw_id} for user {user_id}")
        return result

    source_column = getattr(entry_model, source_columns[source])
    retry_count = 0

    while True:
        now_ts = now or utcnow()
        try:
            if payment_id:
                session.add(EntryCredit(
                    payment_id=payment_id,
                    user_id=user_id,
                    draw_kind=draw_kind,
                    draw_id=draw_id,
                    entries=entry_count,
                    source=source,
                    created_at=now_ts,
                ))
                try:
                    await session.flush()
                except IntegrityError:
                    await session.rollback()
                    logging.warning(f"Payment {payment_id} already credited to user {user_id}, skipping replay")
                    result["duplicate"] = True
                    return result

            draw_update = await session.execute(
                update(draw_model)
                .where(draw_model.id == draw_id, *draw_conditions)
                .values({draw_model.total_entries: draw_model.total_entries + entry_count})
                .execution_options(synchronize_session=False)
            )
            if draw_update.rowcount == 0:
                await session.rollback()
                raise DrawClosedError(f"{draw_kind.capitalize()} draw {draw_id} is not accepting entries")

            entry_update = await session.execute(
                update(entry_model)
                .where(entry_model.draw_id == draw_id, entry_model.user_id == user_id)
                .values({
                    entry_model.total_entries: entry_model.total_entries + entry_count,
                    source_column: source_column + entry_count,
                    entry_model.last_updated_date: now_ts,
                })
                .execution_options(synchronize_session=False)
            )
            if entry_update.rowcount == 0:
                session.add(entry_model(
                    draw_id=draw_id,
                    user_id=user_id,
                    total_entries=entry_count,
                    first_added_date=now_ts,
                    last_updated_date=now_ts,
                    **{source_columns[source]: entry_count},
                ))
                await session.flush()
                logging.info(f"Created {draw_kind} draw {draw_id} entry for user {user_id} (+{entry_count} {source})")
            else:
                logging.info(f"Updated {draw_kind} draw {draw_id} entry for user {user_id} (+{entry_count} {source})")

            await session.commit()
            break

        except IntegrityError as e:
            # concurrent first credit for the same user inserted the row first
            await session.rollback()
            retry_count += 1
            if retry_count >= MAX_RETRIES:
                logging.error(f"Crediting {draw_kind} draw {draw_id} for user {user_id} failed after {retry_count} attempts: {e}")
                raise
            logging.warning(f"Attempt {retry_count}/{MAX_RETRIES} to credit {draw_kind} draw {draw_id} hit a conflict: {e}")
            await asyncio.sleep(RETRY_DELAY * retry_count)

        except SQLAlchemyError as e:
            await session.rollback()
            logging.error(f"Database error while crediting {draw_kind} draw {draw_id}: {e}")
            raise

    totals = await session.execute(
        select(draw_model.total_entries, entry_model.total_entries)
        .join(entry_model, entry_model.draw_id == draw_model.id)
        .where(draw_model.id == draw_id, entry_model.user_id == user_id)
    )
    draw_total, user_total = totals.one()

    result["applied"] = True
    result["total_entries"] = draw_total
    result["user_total_entries"] = user_total
    return result


async def find_credit(session: AsyncSession, payment_id: Optional[str], user_id: str) -> Optional[EntryCredit]:
    """Ledger row for an already credited (payment_id, user_id), if any."""
    if not payment_id:
        return None
    result = await session.execute(
        select(EntryCredit).where(EntryCredit.payment_id == payment_id, EntryCredit.user_id == user_id)
    )
    return result.scalar_one_or_none()


def duplicate_result(credit: EntryCredit) -> Dict[str, Any]:
    return {
        "applied": False,
        "duplicate": True,
        "draw_id": credit.draw_id,
        "entries": credit.entries,
        "total_entries": None,
        "user_total_entries": None,
    }
