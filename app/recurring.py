from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from sqlalchemy import and_

from database import Shift, series_clause
from intervals import UTC, parse_timestamp, shift_value


class SeriesScope(str, enum.Enum):
    THIS = "this"
    FOLLOWING = "following"
    ALL = "all"

    @classmethod
    def parse(cls, value: Any) -> "SeriesScope":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown series scope {value!r}; expected this, following or all") from exc


def is_recurring_shift(shift: Any) -> bool:
    return bool(shift_value(shift, "is_recurring", False))


def series_parent_id(shift: Any) -> Any:
    """Series key: the parent's own id, which every child references."""
    parent_id = shift_value(shift, "recurrence_parent_id")
    return parent_id if parent_id is not None else shift_value(shift, "id")


def is_series_parent(shift: Any) -> bool:
    return is_recurring_shift(shift) and shift_value(shift, "recurrence_parent_id") is None


def _in_series(shift: Any, parent_id: Any) -> bool:
    # A parent detached by a single-shift edit no longer belongs to its old series.
    if str(shift_value(shift, "id")) == str(parent_id):
        return is_recurring_shift(shift)
    return (
        shift_value(shift, "recurrence_parent_id") is not None
        and str(shift_value(shift, "recurrence_parent_id")) == str(parent_id)
    )


def _start_of(shift: Any) -> datetime.datetime:
    return parse_timestamp(shift_value(shift, "start_time"), "start_time")


def _by_start(shifts: Iterable[Any]) -> List[Any]:
    return sorted(shifts, key=_start_of)


def get_series_shifts(shift: Any, all_shifts: Iterable[Any]) -> List[Any]:
    if not is_recurring_shift(shift):
        return [shift]
    parent_id = series_parent_id(shift)
    return _by_start(item for item in all_shifts if _in_series(item, parent_id))


def get_following_shifts(shift: Any, all_shifts: Iterable[Any]) -> List[Any]:
    start = _start_of(shift)
    return [item for item in get_series_shifts(shift, all_shifts) if _start_of(item) >= start]


def get_past_shifts(shift: Any, all_shifts: Iterable[Any]) -> List[Any]:
    start = _start_of(shift)
    return [item for item in get_series_shifts(shift, all_shifts) if _start_of(item) < start]


def count_locked_shifts(shifts: Iterable[Any]) -> int:
    return sum(1 for item in shifts if shift_value(item, "locked", False))


def get_unlocked_shifts(shifts: Iterable[Any]) -> List[Any]:
    return [item for item in shifts if not shift_value(item, "locked", False)]


def get_shifts_for_scope(shift: Any, all_shifts: Iterable[Any], scope: Any) -> Dict[str, Any]:
    """Preview which shifts a scoped action touches; unknown scopes act on this shift only."""
    all_shifts = list(all_shifts)
    try:
        resolved = SeriesScope.parse(scope)
    except ValueError:
        resolved = SeriesScope.THIS
    if resolved is SeriesScope.FOLLOWING:
        members = get_following_shifts(shift, all_shifts)
    elif resolved is SeriesScope.ALL:
        members = get_series_shifts(shift, all_shifts)
    else:
        members = [shift]
    return {
        "to_operate": get_unlocked_shifts(members),
        "locked_count": count_locked_shifts(members),
    }


def get_scope_description(scope: Any, shift: Any, series_count: int, tz: datetime.tzinfo = UTC) -> str:
    try:
        resolved = SeriesScope.parse(scope)
    except ValueError:
        return ""
    if resolved is SeriesScope.THIS:
        start = _start_of(shift).astimezone(tz)
        return f"Only this shift ({start:%a}, {start:%b} {start.day})"
    if resolved is SeriesScope.FOLLOWING:
        return "This and all future shifts"
    return f"All {series_count} shifts in the series"


def build_shift_change_description(change_count: int, locked_count: int, action: str) -> str:
    label = "shift" if change_count == 1 else "shifts"
    description = f"{change_count} {label} {action}."
    if locked_count > 0:
        locked_label = "locked shift was" if locked_count == 1 else "locked shifts were"
        outcome = "preserved" if action == "deleted" else "unchanged"
        description += f" {locked_count} {locked_label} {outcome}."
    return description


@dataclass(frozen=True)
class SeriesScopeFilter:
    """One predicate for a scoped mutation, evaluated in memory and in SQL alike.

    ``matches`` drives the speculative cache update; ``clause`` is the row filter
    sent to the store. Both exclude locked shifts.
    """

    parent_id: int
    scope: SeriesScope
    shift_id: int
    since: datetime.datetime

    @classmethod
    def for_shift(cls, shift: Any, scope: Any) -> "SeriesScopeFilter":
        resolved = SeriesScope.parse(scope)
        # A standalone shift is a series of one.
        if not is_recurring_shift(shift):
            resolved = SeriesScope.THIS
        return cls(
            parent_id=series_parent_id(shift),
            scope=resolved,
            shift_id=shift_value(shift, "id"),
            since=_start_of(shift),
        )

    def in_scope(self, shift: Any) -> bool:
        if self.scope is SeriesScope.THIS:
            return str(shift_value(shift, "id")) == str(self.shift_id)
        if not _in_series(shift, self.parent_id):
            return False
        if self.scope is SeriesScope.FOLLOWING:
            return _start_of(shift) >= self.since
        return True

    def matches(self, shift: Any) -> bool:
        return self.in_scope(shift) and not shift_value(shift, "locked", False)

    def _scope_clause(self):
        if self.scope is SeriesScope.THIS:
            return Shift.id == self.shift_id
        if self.scope is SeriesScope.FOLLOWING:
            return and_(series_clause(self.parent_id), Shift.start_time >= self.since)
        return series_clause(self.parent_id)

    def clause(self):
        return and_(self._scope_clause(), Shift.locked.is_(False))

    def locked_clause(self):
        return and_(self._scope_clause(), Shift.locked.is_(True))


def apply_updates_in_memory(shift: Dict[str, Any], scope: SeriesScope, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a cached shift with ``updates`` applied the way the store applies them."""
    updated = dict(shift)
    updated.update(updates)
    if scope is SeriesScope.THIS:
        updated.update({"is_recurring": False, "recurrence_pattern": None, "recurrence_parent_id": None})
    return updated
