from __future__ import annotations

import datetime
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from database import (
    SHIFT_STATUS_CHOICES,
    Shift,
    get_shift,
    record_audit_log,
    series_clause,
    shift_to_dict,
)
from intervals import UTC, parse_timestamp
from policy import load_active_policy, recurrence_limit, schedule_timezone
from query_cache import ShiftQueryCache
from recurrence import generate_recurring_dates, parse_recurrence_pattern
from recurring import (
    SeriesScope,
    SeriesScopeFilter,
    apply_updates_in_memory,
    build_shift_change_description,
    series_parent_id,
)

logger = logging.getLogger(__name__)

UPDATE_LOCKED_MESSAGE = "Cannot update a locked shift. The schedule has been published."
DELETE_LOCKED_MESSAGE = "Cannot delete a locked shift. The schedule has been published."
CREATE_LOCKED_MESSAGE = "Cannot create a locked shift. Shifts are locked only when the schedule is published."
TEMPORAL_FIELDS = {"start_time", "end_time"}
UPDATABLE_FIELDS = {
    "employee_id",
    "start_time",
    "end_time",
    "break_minutes",
    "position",
    "notes",
    "status",
    "recurrence_pattern",
}


class LockedShiftError(RuntimeError):
    """Raised when a published (locked) shift is mutated directly."""

    def __init__(self, message: str, shift_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.shift_id = shift_id


class SeriesCreationError(RuntimeError):
    """Raised when a recurring series cannot be written in full."""


def _coerce_break(value: Any) -> int:
    try:
        minutes = int(value or 0)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"break_minutes must be an integer, got {value!r}") from exc
    if minutes < 0:
        raise ValueError("break_minutes cannot be negative.")
    return minutes


def _coerce_status(value: Any) -> str:
    status = str(value or "scheduled").strip().lower()
    if status not in SHIFT_STATUS_CHOICES:
        raise ValueError(f"Unknown shift status {value!r}.")
    return status


def _coerce_employee(value: Any) -> int:
    if value is None:
        raise ValueError("Shift requires an employee_id.")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid employee_id {value!r}") from exc


def _normalize_create_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    start = parse_timestamp(payload.get("start_time"), "start_time")
    end = parse_timestamp(payload.get("end_time"), "end_time")
    if end <= start:
        raise ValueError("Shift end_time must be after start_time.")
    raw_pattern = payload.get("recurrence_pattern")
    is_recurring = bool(payload.get("is_recurring")) and bool(raw_pattern)
    return {
        "employee_id": _coerce_employee(payload.get("employee_id")),
        "start_time": start,
        "end_time": end,
        "break_minutes": _coerce_break(payload.get("break_minutes")),
        "position": str(payload.get("position") or ""),
        "notes": str(payload.get("notes") or ""),
        "status": _coerce_status(payload.get("status")),
        "locked": bool(payload.get("locked", False)),
        "pattern": parse_recurrence_pattern(raw_pattern) if is_recurring else None,
    }


def _normalize_updates(updates: Mapping[str, Any], *, allow_temporal: bool) -> Dict[str, Any]:
    unknown = set(updates) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported shift field(s): {', '.join(sorted(unknown))}")
    changes: Dict[str, Any] = {}
    for key, value in updates.items():
        if key in TEMPORAL_FIELDS:
            if allow_temporal:
                changes[key] = parse_timestamp(value, key)
        elif key == "employee_id":
            changes[key] = _coerce_employee(value)
        elif key == "break_minutes":
            changes[key] = _coerce_break(value)
        elif key == "status":
            changes[key] = _coerce_status(value)
        elif key == "recurrence_pattern":
            changes[key] = parse_recurrence_pattern(value).to_dict() if value else None
        else:
            changes[key] = str(value or "")
    return changes


def _column_values(changes: Dict[str, Any]) -> Dict[str, Any]:
    values = {key: value for key, value in changes.items() if key != "recurrence_pattern"}
    if "recurrence_pattern" in changes:
        pattern = changes["recurrence_pattern"]
        values["recurrence_pattern_json"] = json.dumps(pattern) if pattern else None
    return values


def _check_interval(shift: Shift, changes: Dict[str, Any]) -> None:
    start = changes.get("start_time", shift.start_time)
    end = changes.get("end_time", shift.end_time)
    if parse_timestamp(end, "end_time") <= parse_timestamp(start, "start_time"):
        raise ValueError("Shift end_time must be after start_time.")


def _policy(session, policy: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return policy if policy is not None else load_active_policy(session)


def _series_children(parent: Shift, data: Dict[str, Any], policy: Dict[str, Any]) -> List[Shift]:
    """Children carry the parent's local time of day and its exact elapsed duration."""
    tz = schedule_timezone(policy)
    local_start = data["start_time"].astimezone(tz)
    duration = data["end_time"] - data["start_time"]
    dates = generate_recurring_dates(local_start.date(), data["pattern"], recurrence_limit(policy))
    children: List[Shift] = []
    for day in dates[1:]:
        child_start = datetime.datetime.combine(day, local_start.time(), tzinfo=tz).astimezone(UTC)
        children.append(
            Shift(
                employee_id=data["employee_id"],
                start_time=child_start,
                end_time=child_start + duration,
                break_minutes=data["break_minutes"],
                position=data["position"],
                notes=data["notes"],
                status=data["status"],
                locked=False,
                is_recurring=True,
                recurrence_parent_id=parent.id,
            )
        )
    return children


def create_shift(
    session,
    payload: Mapping[str, Any],
    *,
    policy: Optional[Dict[str, Any]] = None,
    cache: Optional[ShiftQueryCache] = None,
    actor: str = "system",
) -> Shift:
    """Persist a shift, expanding a recurring payload into a parent and its children.

    The whole series is written in one transaction; a failure after the parent
    is staged raises ``SeriesCreationError`` and leaves nothing behind.
    """
    data = _normalize_create_payload(payload)
    if data["locked"]:
        raise LockedShiftError(CREATE_LOCKED_MESSAGE)
    policy_payload = _policy(session, policy)
    snapshot = cache.snapshot() if cache is not None else None
    succeeded = False
    try:
        pattern = data["pattern"]
        parent = Shift(
            employee_id=data["employee_id"],
            start_time=data["start_time"],
            end_time=data["end_time"],
            break_minutes=data["break_minutes"],
            position=data["position"],
            notes=data["notes"],
            status=data["status"],
            locked=False,
            is_recurring=pattern is not None,
            recurrence_parent_id=None,
        )
        parent.recurrence_pattern = pattern.to_dict() if pattern is not None else None
        session.add(parent)
        session.flush()
        children: List[Shift] = []
        if pattern is not None:
            children = _series_children(parent, data, policy_payload)
            try:
                session.add_all(children)
                session.flush()
            except SQLAlchemyError as exc:
                raise SeriesCreationError(
                    f"Recurring series for shift {parent.id} could not be created: {exc}"
                ) from exc
        record_audit_log(
            session,
            actor,
            "shift_create",
            target_id=parent.id,
            payload={"children": len(children), "recurring": pattern is not None},
            commit=False,
        )
        session.commit()
        succeeded = True
        logger.info("Created shift %s with %d recurring child shift(s)", parent.id, len(children))
        return parent
    except Exception:
        session.rollback()
        logger.warning("Rolled back shift creation for employee %s", data["employee_id"])
        raise
    finally:
        if cache is not None:
            cache.settle(snapshot, succeeded)


def _count(session, clause) -> int:
    return int(session.scalar(select(func.count()).select_from(Shift).where(clause)) or 0)


def _scope_result(affected: int, locked: int, action: str) -> Dict[str, Any]:
    return {
        "affected_count": affected,
        "locked_skipped_count": locked,
        "message": build_shift_change_description(affected, locked, action),
    }


def update_shift_series(
    session,
    shift_id: int,
    scope: Any,
    updates: Mapping[str, Any],
    *,
    cache: Optional[ShiftQueryCache] = None,
    actor: str = "system",
) -> Dict[str, Any]:
    """Update one shift, the following occurrences, or a whole series.

    ``this`` detaches the shift from its series and is the only scope that moves
    start and end times. Wider scopes skip locked members and report them.
    """
    resolved = SeriesScope.parse(scope)
    changes = _normalize_updates(updates, allow_temporal=resolved is SeriesScope.THIS)
    shift = get_shift(session, shift_id)
    if resolved is SeriesScope.THIS:
        if shift.locked:
            logger.warning("Refused update of locked shift %s", shift_id)
            raise LockedShiftError(UPDATE_LOCKED_MESSAGE, shift_id)
        _check_interval(shift, changes)
    scope_filter = SeriesScopeFilter.for_shift(shift, resolved)
    values = _column_values(changes)
    if resolved is SeriesScope.THIS:
        values.update({"is_recurring": False, "recurrence_pattern_json": None, "recurrence_parent_id": None})
    elif not values:
        raise ValueError("No series-wide fields to update; start and end times change only with scope 'this'.")

    snapshot = cache.snapshot() if cache is not None else None
    succeeded = False
    try:
        if cache is not None:
            cache.apply(
                lambda entries: [
                    apply_updates_in_memory(entry, resolved, changes) if scope_filter.matches(entry) else entry
                    for entry in entries
                ]
            )
        locked_count = 0 if resolved is SeriesScope.THIS else _count(session, scope_filter.locked_clause())
        result = session.execute(
            update(Shift)
            .where(scope_filter.clause())
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        affected = result.rowcount or 0
        if resolved is SeriesScope.THIS and affected == 0:
            raise LockedShiftError(UPDATE_LOCKED_MESSAGE, shift_id)
        record_audit_log(
            session,
            actor,
            "shift_series_update",
            target_id=shift_id,
            payload={"scope": resolved.value, "fields": sorted(changes), "affected": affected, "locked": locked_count},
            commit=False,
        )
        session.commit()
        session.expire_all()
        succeeded = True
    except Exception:
        session.rollback()
        logger.warning("Rolled back %s-scope update of shift %s", resolved.value, shift_id)
        raise
    finally:
        if cache is not None:
            cache.settle(snapshot, succeeded)
    logger.info(
        "Updated %d shift(s) in series %s (scope=%s, locked skipped=%d)",
        affected,
        scope_filter.parent_id,
        resolved.value,
        locked_count,
    )
    return _scope_result(affected, locked_count, "updated")


def delete_shift_series(
    session,
    shift_id: int,
    scope: Any,
    *,
    cache: Optional[ShiftQueryCache] = None,
    actor: str = "system",
) -> Dict[str, Any]:
    resolved = SeriesScope.parse(scope)
    shift = get_shift(session, shift_id)
    if resolved is SeriesScope.THIS and shift.locked:
        logger.warning("Refused delete of locked shift %s", shift_id)
        raise LockedShiftError(DELETE_LOCKED_MESSAGE, shift_id)
    scope_filter = SeriesScopeFilter.for_shift(shift, resolved)

    snapshot = cache.snapshot() if cache is not None else None
    succeeded = False
    try:
        if cache is not None:
            cache.apply(lambda entries: [entry for entry in entries if not scope_filter.matches(entry)])
        locked_count = 0 if resolved is SeriesScope.THIS else _count(session, scope_filter.locked_clause())
        result = session.execute(
            delete(Shift).where(scope_filter.clause()).execution_options(synchronize_session=False)
        )
        affected = result.rowcount or 0
        if resolved is SeriesScope.THIS and affected == 0:
            raise LockedShiftError(DELETE_LOCKED_MESSAGE, shift_id)
        record_audit_log(
            session,
            actor,
            "shift_series_delete",
            target_id=shift_id,
            payload={"scope": resolved.value, "affected": affected, "locked": locked_count},
            commit=False,
        )
        session.commit()
        session.expire_all()
        succeeded = True
    except Exception:
        session.rollback()
        logger.warning("Rolled back %s-scope delete of shift %s", resolved.value, shift_id)
        raise
    finally:
        if cache is not None:
            cache.settle(snapshot, succeeded)
    logger.info(
        "Deleted %d shift(s) in series %s (scope=%s, locked preserved=%d)",
        affected,
        scope_filter.parent_id,
        resolved.value,
        locked_count,
    )
    return _scope_result(affected, locked_count, "deleted")


def update_shift(session, shift_id: int, updates: Mapping[str, Any], *, actor: str = "system") -> Dict[str, Any]:
    """Edit a single shift in place without touching its series membership."""
    changes = _normalize_updates(updates, allow_temporal=True)
    shift = get_shift(session, shift_id)
    if shift.locked:
        raise LockedShiftError(UPDATE_LOCKED_MESSAGE, shift_id)
    _check_interval(shift, changes)
    try:
        result = session.execute(
            update(Shift)
            .where(Shift.id == shift_id, Shift.locked.is_(False))
            .values(**_column_values(changes))
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise LockedShiftError(UPDATE_LOCKED_MESSAGE, shift_id)
        record_audit_log(session, actor, "shift_update", target_id=shift_id, payload={"fields": sorted(changes)}, commit=False)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.expire_all()
    return shift_to_dict(get_shift(session, shift_id))


def delete_shift(session, shift_id: int, *, actor: str = "system") -> None:
    shift = get_shift(session, shift_id)
    if shift.locked:
        raise LockedShiftError(DELETE_LOCKED_MESSAGE, shift_id)
    try:
        result = session.execute(
            delete(Shift)
            .where(Shift.id == shift_id, Shift.locked.is_(False))
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise LockedShiftError(DELETE_LOCKED_MESSAGE, shift_id)
        record_audit_log(session, actor, "shift_delete", target_id=shift_id, commit=False)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.expire_all()


def detach_from_series(session, shift_id: int, *, actor: str = "system") -> Dict[str, Any]:
    """Make a series member a standalone shift without changing anything else."""
    return update_shift_series(session, shift_id, SeriesScope.THIS, {}, actor=actor)


def get_series_info(session, shift_id: int) -> Dict[str, int]:
    """Member and locked-member counts for the series containing ``shift_id``."""
    shift = get_shift(session, shift_id)
    clause = series_clause(series_parent_id(shift)) if shift.is_recurring else Shift.id == shift.id
    return {
        "series_count": _count(session, clause),
        "locked_count": _count(session, and_(clause, Shift.locked.is_(True))),
    }
