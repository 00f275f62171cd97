from __future__ import annotations

import datetime
from typing import Any, Mapping, Optional, Tuple

UTC = datetime.timezone.utc


def shift_value(shift: Any, key: str, default: Any = None) -> Any:
    """Read ``key`` from a shift given either as a mapping or as an ORM row."""
    if isinstance(shift, Mapping):
        return shift.get(key, default)
    return getattr(shift, key, default)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    # Naive timestamps come back from the store and are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def shift_bounds(shift: Any) -> Tuple[datetime.datetime, datetime.datetime]:
    start = shift_value(shift, "start_time")
    end = shift_value(shift, "end_time")
    if start is None or end is None:
        raise ValueError("Shift requires both start_time and end_time.")
    return as_utc(start), as_utc(end)


def net_minutes(shift: Any) -> int:
    """Worked minutes for a shift: whole elapsed minutes minus the unpaid break, never negative."""
    start, end = shift_bounds(shift)
    elapsed = int((end - start).total_seconds() / 60)
    break_minutes = int(shift_value(shift, "break_minutes", 0) or 0)
    return max(elapsed - break_minutes, 0)


def intervals_overlap(
    a_start: datetime.datetime,
    a_end: datetime.datetime,
    b_start: datetime.datetime,
    b_end: datetime.datetime,
) -> bool:
    return as_utc(a_start) < as_utc(b_end) and as_utc(b_start) < as_utc(a_end)


def shifts_overlap(first: Any, second: Any) -> bool:
    """True when the half-open intervals intersect; back-to-back shifts do not overlap."""
    a_start, a_end = shift_bounds(first)
    b_start, b_end = shift_bounds(second)
    return intervals_overlap(a_start, a_end, b_start, b_end)


def within(moment: datetime.datetime, start: datetime.datetime, end: datetime.datetime) -> bool:
    return as_utc(start) <= as_utc(moment) < as_utc(end)


def local_date(moment: datetime.datetime, tz: datetime.tzinfo = UTC) -> datetime.date:
    return as_utc(moment).astimezone(tz).date()


def local_midnight(date_: datetime.date, tz: datetime.tzinfo = UTC) -> datetime.datetime:
    return datetime.datetime.combine(date_, datetime.time.min, tzinfo=tz).astimezone(UTC)


def date_span_bounds(
    start_date: datetime.date,
    end_date: datetime.date,
    tz: datetime.tzinfo = UTC,
) -> Tuple[datetime.datetime, datetime.datetime]:
    """Half-open UTC window covering the local days ``start_date`` through ``end_date`` inclusive."""
    return local_midnight(start_date, tz), local_midnight(end_date + datetime.timedelta(days=1), tz)


def day_bounds(moment: datetime.datetime, tz: datetime.tzinfo = UTC) -> Tuple[datetime.datetime, datetime.datetime]:
    day = local_date(moment, tz)
    return date_span_bounds(day, day, tz)


def week_start_date(day: datetime.date) -> datetime.date:
    # Weeks start on Sunday.
    return day - datetime.timedelta(days=(day.weekday() + 1) % 7)


def week_bounds(moment: datetime.datetime, tz: datetime.tzinfo = UTC) -> Tuple[datetime.datetime, datetime.datetime]:
    start = week_start_date(local_date(moment, tz))
    return date_span_bounds(start, start + datetime.timedelta(days=6), tz)


def parse_timestamp(value: Any, field: str = "timestamp") -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return as_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return as_utc(datetime.datetime.fromisoformat(text))
        except ValueError as exc:
            raise ValueError(f"Invalid {field}: {value!r}") from exc
    raise TypeError(f"{field} must be a datetime or ISO-8601 string, not {type(value).__name__}")


def parse_date(value: Any, field: str = "date") -> Optional[datetime.date]:
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value.strip()[:10])
        except ValueError as exc:
            raise ValueError(f"Invalid {field}: {value!r}") from exc
    raise TypeError(f"{field} must be a date or ISO-8601 string, not {type(value).__name__}")
