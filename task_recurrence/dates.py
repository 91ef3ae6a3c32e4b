from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_RECURRENCE_TZ = "America/New_York"

PATTERNS = ("daily", "weekly", "monthly", "yearly")

# Noon exists on every local calendar day, including DST transition days.
_ANCHOR_HOUR = 12


class RecurrenceConfigError(ValueError):
    pass


def get_zone(time_zone: str) -> ZoneInfo:
    try:
        return ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RecurrenceConfigError(f"Invalid time_zone: {time_zone}") from exc


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC, the way they are persisted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_date_key(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise RecurrenceConfigError(f"Invalid date key: {value!r}") from exc


def date_key_of(instant: datetime, time_zone: str = DEFAULT_RECURRENCE_TZ) -> str:
    """Return the YYYY-MM-DD calendar day ``instant`` falls on in ``time_zone``."""
    local = ensure_aware(instant).astimezone(get_zone(time_zone))
    return local.date().isoformat()


def _last_day_of_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - timedelta(days=1)).day


def _month_index(value: date) -> int:
    return value.year * 12 + (value.month - 1)


def _add_months(value: date, months: int) -> date:
    index = _month_index(value) + months
    year = index // 12
    month = (index % 12) + 1
    day = min(value.day, _last_day_of_month(year, month))
    return date(year, month, day)


def _combine_local(value: date, hour: int, tz: ZoneInfo) -> datetime:
    return datetime(value.year, value.month, value.day, hour, tzinfo=tz)


def next_date_key(
    pattern: str,
    interval: int,
    base_instant: datetime,
    time_zone: str = DEFAULT_RECURRENCE_TZ,
) -> str:
    """Date key ``interval`` periods of ``pattern`` after ``base_instant``.

    The base day is re-anchored at local noon before the calendar units are
    added, so a day that gains or loses an hour still advances by exactly one
    date. Unknown patterns advance by days. Month and year steps clamp to the
    last day of the target month.
    """
    tz = get_zone(time_zone)
    steps = max(1, interval or 1)
    base_day = parse_date_key(date_key_of(base_instant, time_zone))
    anchor = _combine_local(base_day, _ANCHOR_HOUR, tz)

    if pattern == "weekly":
        advanced = anchor + timedelta(weeks=steps)
    elif pattern == "monthly":
        advanced = _combine_local(_add_months(base_day, steps), _ANCHOR_HOUR, tz)
    elif pattern == "yearly":
        advanced = _combine_local(_add_months(base_day, steps * 12), _ANCHOR_HOUR, tz)
    else:
        advanced = anchor + timedelta(days=steps)

    return date_key_of(advanced, time_zone)


def end_of_day_instant(date_key: str, time_zone: str = DEFAULT_RECURRENCE_TZ) -> datetime:
    """UTC instant of 23:59:59.999 local time on ``date_key``."""
    tz = get_zone(time_zone)
    day = parse_date_key(date_key)
    local = datetime(day.year, day.month, day.day, 23, 59, 59, 999_000, tzinfo=tz)
    return local.astimezone(timezone.utc)


def advance_until(
    pattern: str,
    interval: int,
    base_key: str,
    target_key: str,
    *,
    time_zone: str = DEFAULT_RECURRENCE_TZ,
    max_steps: int = 400,
) -> tuple[str, bool]:
    """Step from ``base_key`` by the interval until the key reaches ``target_key``.

    Always takes at least one step. Returns the key and whether it reached the
    target before ``max_steps`` extra steps ran out.
    """
    key = next_date_key(pattern, interval, end_of_day_instant(base_key, time_zone), time_zone)
    steps = 0
    while key < target_key and steps < max_steps:
        steps += 1
        key = next_date_key(pattern, interval, end_of_day_instant(key, time_zone), time_zone)
    return key, key >= target_key
