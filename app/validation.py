from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, Iterable, List, Optional

from conflicts import detect_shift_conflicts
from database import get_approved_time_off, get_shifts_touching_window, shift_to_dict
from intervals import UTC, local_date, shift_bounds, shift_value, week_bounds
from overtime import OvertimeRules, calculate_daily_overtime, calculate_weekly_overtime, merge_candidate
from policy import load_active_policy, overtime_rules, schedule_timezone

logger = logging.getLogger(__name__)

VALIDATED_STATUSES = {"scheduled", "confirmed"}


def validate_shift(
    candidate: Any,
    existing_shifts: Iterable[Any],
    time_off_requests: Iterable[Any],
    rules: OvertimeRules,
    exclude_shift_id: Any = None,
    tz: datetime.tzinfo = UTC,
) -> Dict[str, Any]:
    """Return ``{"valid", "conflicts", "overtime_warnings"}`` for a new or edited shift.

    Hard conflicts short-circuit the overtime checks. Overtime warnings are
    advisory and never make the result invalid.
    """
    existing = list(existing_shifts)
    conflicts = detect_shift_conflicts(candidate, existing, list(time_off_requests), exclude_shift_id, tz)
    if conflicts:
        return {"valid": False, "conflicts": conflicts, "overtime_warnings": []}

    warnings: List[Dict[str, Any]] = []
    if rules.enabled:
        employee_id = shift_value(candidate, "employee_id")
        start, _ = shift_bounds(candidate)
        merged = merge_candidate(existing, candidate, exclude_shift_id)
        daily = calculate_daily_overtime(employee_id, start, merged, rules, tz)
        if daily:
            warnings.append(daily)
        weekly = calculate_weekly_overtime(
            employee_id,
            start,
            merged[:-1],
            rules,
            tz,
            include_new_shift=candidate,
        )
        if weekly:
            warnings.append(weekly)
    return {"valid": True, "conflicts": [], "overtime_warnings": warnings}


def bulk_validate_shifts(
    shifts: Iterable[Any],
    time_off_requests: Iterable[Any],
    rules: OvertimeRules,
    tz: datetime.tzinfo = UTC,
) -> Dict[Any, Dict[str, Any]]:
    """Validate every scheduled or confirmed shift against the rest of the set.

    Only shifts with conflicts or overtime warnings appear in the result.
    """
    shifts = list(shifts)
    time_off = list(time_off_requests)
    findings: Dict[Any, Dict[str, Any]] = {}
    for shift in shifts:
        if shift_value(shift, "status") not in VALIDATED_STATUSES:
            continue
        shift_id = shift_value(shift, "id")
        result = validate_shift(shift, shifts, time_off, rules, shift_id, tz)
        if not result["valid"] or result["overtime_warnings"]:
            findings[shift_id] = result
    logger.info("Bulk validation flagged %d of %d shift(s)", len(findings), len(shifts))
    return findings


def validate_shift_against_store(
    session,
    candidate: Any,
    *,
    policy: Optional[Dict[str, Any]] = None,
    exclude_shift_id: Any = None,
) -> Dict[str, Any]:
    """Validate ``candidate`` against the employee's stored shifts and approved time-off."""
    policy_payload = policy if policy is not None else load_active_policy(session)
    rules = overtime_rules(policy_payload)
    tz = schedule_timezone(policy_payload)
    employee_id = shift_value(candidate, "employee_id")
    if employee_id is None:
        raise ValueError("Shift requires an employee_id.")
    start, end = shift_bounds(candidate)
    week_start, week_end = week_bounds(start, tz)
    rows = get_shifts_touching_window(session, employee_id, min(week_start, start), max(week_end, end))
    existing = [shift_to_dict(row) for row in rows]
    time_off = [
        {
            "id": request.id,
            "employee_id": request.employee_id,
            "start_date": request.start_date,
            "end_date": request.end_date,
            "status": request.status,
        }
        for request in get_approved_time_off(
            session,
            employee_id,
            start_date=local_date(start, tz),
            end_date=local_date(end, tz),
        )
    ]
    return validate_shift(candidate, existing, time_off, rules, exclude_shift_id, tz)
