from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from intervals import UTC, date_span_bounds, day_bounds, net_minutes, shift_value, week_bounds, week_start_date, within

logger = logging.getLogger(__name__)

DAILY_SEVERITY_BREAKPOINTS = (60, 120)
WEEKLY_SEVERITY_BREAKPOINTS = (120, 240)
APPROACHING_WINDOW_MINUTES = 120


@dataclass(frozen=True)
class OvertimeRules:
    enabled: bool = True
    daily_threshold_minutes: int = 480
    weekly_threshold_minutes: int = 2400


def _severity(overtime_minutes: int, breakpoints) -> str:
    info_limit, warning_limit = breakpoints
    if overtime_minutes > warning_limit:
        return "error"
    if overtime_minutes > info_limit:
        return "warning"
    return "info"


def _hours_label(minutes: float) -> str:
    return f"{minutes / 60:.1f}h"


def _threshold_label(minutes: int) -> str:
    hours = minutes / 60
    return f"{hours:g}h"


def calculate_employee_minutes(
    employee_id: Any,
    shifts: Iterable[Any],
    start: datetime.datetime,
    end: datetime.datetime,
) -> int:
    """Net minutes of the employee's non-cancelled shifts starting in ``[start, end)``."""
    total = 0
    for shift in shifts:
        if str(shift_value(shift, "employee_id")) != str(employee_id):
            continue
        if shift_value(shift, "status") == "cancelled":
            continue
        if within(shift_value(shift, "start_time"), start, end):
            total += net_minutes(shift)
    return total


def calculate_daily_overtime(
    employee_id: Any,
    moment: datetime.datetime,
    shifts: Iterable[Any],
    rules: OvertimeRules,
    tz: datetime.tzinfo = UTC,
) -> Optional[Dict[str, Any]]:
    if not rules.enabled:
        return None
    day_start, day_end = day_bounds(moment, tz)
    daily_minutes = calculate_employee_minutes(employee_id, shifts, day_start, day_end)
    threshold = rules.daily_threshold_minutes
    if daily_minutes <= threshold:
        return None
    overtime_minutes = daily_minutes - threshold
    return {
        "type": "daily",
        "employee_id": employee_id,
        "current_minutes": daily_minutes,
        "threshold_minutes": threshold,
        "overtime_minutes": overtime_minutes,
        "severity": _severity(overtime_minutes, DAILY_SEVERITY_BREAKPOINTS),
        "message": f"Daily OT: {_hours_label(overtime_minutes)} over {_threshold_label(threshold)} threshold",
    }


def calculate_weekly_overtime(
    employee_id: Any,
    moment: datetime.datetime,
    shifts: Iterable[Any],
    rules: OvertimeRules,
    tz: datetime.tzinfo = UTC,
    include_new_shift: Any = None,
) -> Optional[Dict[str, Any]]:
    """Weekly exposure for the Sunday-based week containing ``moment``.

    ``include_new_shift`` previews an unsaved shift; it is counted only when it
    belongs to the employee and is not already part of ``shifts``.
    """
    if not rules.enabled:
        return None
    shifts = list(shifts)
    week_start, week_end = week_bounds(moment, tz)
    weekly_minutes = calculate_employee_minutes(employee_id, shifts, week_start, week_end)
    if include_new_shift is not None and str(shift_value(include_new_shift, "employee_id")) == str(employee_id):
        new_id = shift_value(include_new_shift, "id")
        already_present = new_id is not None and any(
            str(shift_value(shift, "id")) == str(new_id) for shift in shifts
        )
        if not already_present and shift_value(include_new_shift, "status") != "cancelled":
            weekly_minutes += net_minutes(include_new_shift)

    threshold = rules.weekly_threshold_minutes
    if weekly_minutes > threshold:
        overtime_minutes = weekly_minutes - threshold
        return {
            "type": "weekly",
            "employee_id": employee_id,
            "current_minutes": weekly_minutes,
            "threshold_minutes": threshold,
            "overtime_minutes": overtime_minutes,
            "severity": _severity(overtime_minutes, WEEKLY_SEVERITY_BREAKPOINTS),
            "message": f"Weekly OT: {_hours_label(overtime_minutes)} over {_threshold_label(threshold)} threshold",
        }

    remaining = threshold - weekly_minutes
    if 0 < remaining <= APPROACHING_WINDOW_MINUTES:
        return {
            "type": "weekly",
            "employee_id": employee_id,
            "current_minutes": weekly_minutes,
            "threshold_minutes": threshold,
            "overtime_minutes": 0,
            "severity": "info",
            "message": f"Approaching weekly threshold: {_hours_label(remaining)} remaining",
        }
    return None


def calculate_weekly_hours_for_employees(
    employees: Iterable[Any],
    shifts: Iterable[Any],
    week_start: datetime.date,
    rules: OvertimeRules,
    tz: datetime.tzinfo = UTC,
) -> List[Dict[str, Any]]:
    """Summarize regular and overtime minutes per employee for one week."""
    shifts = list(shifts)
    first_day = week_start_date(week_start)
    window_start, window_end = date_span_bounds(first_day, first_day + datetime.timedelta(days=6), tz)
    summary: List[Dict[str, Any]] = []
    for employee in employees:
        employee_id = shift_value(employee, "id")
        total = calculate_employee_minutes(employee_id, shifts, window_start, window_end)
        threshold = rules.weekly_threshold_minutes
        overtime = max(total - threshold, 0)
        summary.append(
            {
                "employee_id": employee_id,
                "employee_name": shift_value(employee, "full_name") or shift_value(employee, "name", ""),
                "total_minutes": total,
                "regular_minutes": min(total, threshold),
                "overtime_minutes": overtime,
                "projected_overtime_minutes": overtime,
            }
        )
    logger.debug("Summarized weekly hours for %d employee(s) starting %s", len(summary), first_day)
    return summary


def merge_candidate(shifts: Iterable[Any], candidate: Any, exclude_shift_id: Any = None) -> List[Any]:
    """Shift set with ``candidate`` replacing its stored copy and the excluded shift."""
    candidate_id = shift_value(candidate, "id")
    skip = {str(value) for value in (candidate_id, exclude_shift_id) if value is not None}
    merged = [shift for shift in shifts if str(shift_value(shift, "id")) not in skip]
    merged.append(candidate)
    return merged
