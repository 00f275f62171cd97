from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, Iterable, List, Optional

from intervals import (
    UTC,
    date_span_bounds,
    parse_date,
    shift_bounds,
    shift_value,
    shifts_overlap,
    within,
)

logger = logging.getLogger(__name__)

ACTIVE_EXCLUDED_STATUS = "cancelled"


def _same_identity(left: Any, right: Any) -> bool:
    return left is not None and right is not None and str(left) == str(right)


def active_shifts_for(
    employee_id: Any,
    shifts: Iterable[Any],
    exclude_shift_id: Any = None,
) -> List[Any]:
    """Non-cancelled shifts of ``employee_id``, minus the one being re-validated."""
    return [
        shift
        for shift in shifts
        if shift_value(shift, "status") != ACTIVE_EXCLUDED_STATUS
        and not _same_identity(shift_value(shift, "id"), exclude_shift_id)
        and _same_identity(shift_value(shift, "employee_id"), employee_id)
    ]


def shift_conflicts_with_time_off(
    candidate: Any,
    time_off_requests: Iterable[Any],
    tz: datetime.tzinfo = UTC,
) -> Optional[Any]:
    """Return the first approved time-off request whose days contain the shift's start or end."""
    start, end = shift_bounds(candidate)
    employee_id = shift_value(candidate, "employee_id")
    for request in time_off_requests:
        if shift_value(request, "status") != "approved":
            continue
        if not _same_identity(shift_value(request, "employee_id"), employee_id):
            continue
        first_day = parse_date(shift_value(request, "start_date"), "start_date")
        last_day = parse_date(shift_value(request, "end_date"), "end_date")
        if first_day is None or last_day is None:
            continue
        window_start, window_end = date_span_bounds(first_day, last_day, tz)
        if within(start, window_start, window_end) or within(end, window_start, window_end):
            return request
    return None


def _format_clock(value: datetime.datetime, tz: datetime.tzinfo) -> str:
    return value.astimezone(tz).strftime("%H:%M")


def detect_shift_conflicts(
    candidate: Any,
    existing_shifts: Iterable[Any],
    time_off_requests: Iterable[Any],
    exclude_shift_id: Any = None,
    tz: datetime.tzinfo = UTC,
) -> List[Dict[str, Any]]:
    """Return every blocking conflict for ``candidate`` in a stable order.

    An exact double booking is reported alone in place of overlap findings.
    Time-off collisions are checked independently of both.
    """
    start, end = shift_bounds(candidate)
    employee_id = shift_value(candidate, "employee_id")
    active = active_shifts_for(employee_id, existing_shifts, exclude_shift_id)
    conflicts: List[Dict[str, Any]] = []

    double_booked = next((shift for shift in active if shift_bounds(shift) == (start, end)), None)
    if double_booked is not None:
        conflicts.append(
            {
                "type": "double_booking",
                "severity": "error",
                "message": "Employee is already scheduled for this exact time.",
                "shift_id": shift_value(double_booked, "id"),
            }
        )

    overlapping = [] if double_booked is not None else [shift for shift in active if shifts_overlap(candidate, shift)]
    for shift in overlapping:
        other_start, other_end = shift_bounds(shift)
        conflicts.append(
            {
                "type": "overlapping_shift",
                "severity": "error",
                "message": (
                    "Overlaps with another shift "
                    f"({_format_clock(other_start, tz)} - {_format_clock(other_end, tz)})."
                ),
                "shift_id": shift_value(shift, "id"),
            }
        )

    time_off = shift_conflicts_with_time_off(candidate, time_off_requests, tz)
    if time_off is not None:
        conflicts.append(
            {
                "type": "time_off_conflict",
                "severity": "error",
                "message": "Employee has approved time-off during this period.",
                "time_off_id": shift_value(time_off, "id"),
            }
        )
    if conflicts:
        logger.debug("Shift for employee %s has %d conflict(s)", employee_id, len(conflicts))
    return conflicts
