"""
Timezone and freeze-window helpers for the draw cycle.

All timestamps are stored in UTC. Draw times are set in Sydney local time
(AEST/AEDT), so the cycle arithmetic that pins a wall-clock hour happens in
that zone and is converted back to UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import pytz

from prizedraws.config import settings

DRAW_TZ = pytz.timezone(settings.DRAW_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Tags naive datetimes as UTC and converts aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_draw_tz(utc_date: datetime) -> datetime:
    return ensure_utc(utc_date).astimezone(DRAW_TZ)


def from_draw_tz(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    """Builds a Sydney wall-clock time and returns it in UTC."""
    local = DRAW_TZ.localize(datetime(year, month, day, hour, minute))
    return local.astimezone(timezone.utc)


def create_aest_date_as_utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    """
    Converts an admin-entered Sydney date/time into UTC for storage.

    Example:
        create_aest_date_as_utc(2024, 9, 30, 20, 0)  # Sept 30 2024 8:00 PM AEST
    """
    return from_draw_tz(year, month, day, hour, minute)


def format_date_in_aest(utc_date: datetime, format_string: str = "%Y-%m-%d %H:%M:%S") -> str:
    return to_draw_tz(utc_date).strftime(format_string)


def format_date_readable(utc_date: datetime) -> str:
    local = to_draw_tz(utc_date)
    return local.strftime("%b %d, %Y %I:%M %p ") + local.tzname()


def calculate_freeze_time(draw_date: datetime) -> datetime:
    """Entries freeze FREEZE_MINUTES (30) before the draw."""
    return ensure_utc(draw_date) - timedelta(minutes=settings.FREEZE_MINUTES)


def calculate_activation_date(draw_date: datetime) -> datetime:
    """
    Midnight (Sydney time) after the draw date; the next draw opens then.

    Draw at Sept 30, 8:00 PM AEST activates the next draw at Oct 1, 12:00 AM AEST.
    """
    local = to_draw_tz(draw_date)
    next_day = local.date() + timedelta(days=1)
    return from_draw_tz(next_day.year, next_day.month, next_day.day, 0, 0)


def calculate_next_draw_date(current_draw_date: datetime) -> datetime:
    """
    DRAW_CYCLE_DAYS (30) after the current draw, at DRAW_HOUR (8 PM) Sydney time.
    """
    local = to_draw_tz(current_draw_date)
    target = local.date() + timedelta(days=settings.DRAW_CYCLE_DAYS)
    return from_draw_tz(target.year, target.month, target.day, settings.DRAW_HOUR, 0)


def calculate_next_draw_creation_date(current_draw_date: datetime) -> datetime:
    """When the successor of a draw should be materialised."""
    return ensure_utc(current_draw_date) - timedelta(days=settings.SUCCESSOR_LOOKAHEAD_DAYS)


def is_in_freeze_period(freeze_entries_at: datetime, draw_date: datetime, now: Optional[datetime] = None) -> bool:
    now = ensure_utc(now) if now else utcnow()
    return ensure_utc(freeze_entries_at) <= now < ensure_utc(draw_date)


def payment_created_at(created_unix_seconds: int) -> datetime:
    return datetime.fromtimestamp(created_unix_seconds, tz=timezone.utc)


def was_payment_before_freeze(created_unix_seconds: int, freeze_entries_at: datetime) -> bool:
    """
    True when the payment was created strictly before the freeze boundary.

    Args:
        created_unix_seconds (int): Payment intent creation time, Unix seconds
        freeze_entries_at (datetime): Freeze boundary of the current draw
    """
    return payment_created_at(created_unix_seconds) < ensure_utc(freeze_entries_at)


def get_time_until_freeze(freeze_entries_at: datetime, now: Optional[datetime] = None) -> timedelta:
    now = ensure_utc(now) if now else utcnow()
    return max(ensure_utc(freeze_entries_at) - now, timedelta(0))


def get_time_until_draw(draw_date: datetime, now: Optional[datetime] = None) -> timedelta:
    now = ensure_utc(now) if now else utcnow()
    return max(ensure_utc(draw_date) - now, timedelta(0))


def format_countdown(remaining: timedelta) -> str:
    """
    Human readable countdown, e.g. "2 hours 15 minutes" or "4 minutes 30 seconds".
    Seconds are shown only when fewer than 5 minutes remain.
    """
    total_seconds = max(int(remaining.total_seconds()), 0)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
    if minutes > 0 or hours > 0:
        parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
    if not parts or (hours == 0 and minutes < 5):
        parts.append(f"{seconds} second{'s' if seconds != 1 else ''}")

    return " ".join(parts)


def validate_draw_dates(
    activation_date: datetime,
    freeze_entries_at: datetime,
    draw_date: datetime,
) -> Tuple[bool, Optional[str]]:
    """
    Checks activation < freeze < draw.

    Returns:
        Tuple[bool, Optional[str]]: (valid, error message)
    """
    if ensure_utc(activation_date) >= ensure_utc(freeze_entries_at):
        return False, "Activation date must be before freeze date"
    if ensure_utc(freeze_entries_at) >= ensure_utc(draw_date):
        return False, "Freeze date must be before draw date"
    return True, None
