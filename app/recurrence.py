from __future__ import annotations

import calendar
import datetime
import itertools
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from intervals import parse_date

DEFAULT_MAX_OCCURRENCES = 365
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
ORDINALS = ["first", "second", "third", "fourth", "fifth"]


def sunday_index(day: datetime.date) -> int:
    """Day of week with 0 = Sunday."""
    return (day.weekday() + 1) % 7


@dataclass(frozen=True)
class DailyRule:
    interval: int = 1
    kind = "daily"


@dataclass(frozen=True)
class WeekdayRule:
    kind = "weekday"


@dataclass(frozen=True)
class WeeklyRule:
    interval: int = 1
    days_of_week: Tuple[int, ...] = ()
    kind = "weekly"


@dataclass(frozen=True)
class MonthlyRule:
    interval: int = 1
    day_of_week: Optional[int] = None
    week_of_month: Optional[int] = None
    kind = "monthly"

    @property
    def by_weekday(self) -> bool:
        return self.day_of_week is not None and self.week_of_month is not None


@dataclass(frozen=True)
class YearlyRule:
    interval: int = 1
    kind = "yearly"


@dataclass(frozen=True)
class NeverEnds:
    kind = "never"


@dataclass(frozen=True)
class EndsOnDate:
    end_date: datetime.date
    kind = "on"


@dataclass(frozen=True)
class EndsAfterCount:
    occurrences: int
    kind = "after"


RecurrenceRule = Union[DailyRule, WeekdayRule, WeeklyRule, MonthlyRule, YearlyRule]
EndCondition = Union[NeverEnds, EndsOnDate, EndsAfterCount]


@dataclass(frozen=True)
class RecurrencePattern:
    rule: RecurrenceRule
    end: EndCondition = NeverEnds()

    def to_dict(self) -> Dict[str, Any]:
        """Stored JSON shape of the pattern."""
        rule = self.rule
        payload: Dict[str, Any] = {"type": rule.kind, "interval": getattr(rule, "interval", 1)}
        if isinstance(rule, WeeklyRule) and rule.days_of_week:
            payload["daysOfWeek"] = list(rule.days_of_week)
        if isinstance(rule, MonthlyRule) and rule.by_weekday:
            payload["daysOfWeek"] = [rule.day_of_week]
            payload["weekOfMonth"] = rule.week_of_month
        payload["endType"] = self.end.kind
        if isinstance(self.end, EndsOnDate):
            payload["endDate"] = self.end.end_date.isoformat()
        if isinstance(self.end, EndsAfterCount):
            payload["occurrences"] = self.end.occurrences
        return payload


def _pick(payload: Mapping[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in payload:
        return payload[camel]
    return payload.get(snake, default)


def _positive_int(value: Any, field: str, default: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise TypeError(f"{field} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field} must be a positive integer, got {value!r}") from exc
    if number < 1:
        raise ValueError(f"{field} must be a positive integer, got {value!r}")
    return number


def _days_of_week(value: Any) -> Tuple[int, ...]:
    if value in (None, ""):
        return ()
    if not isinstance(value, (list, tuple, set)):
        raise TypeError("daysOfWeek must be a list of integers 0-6")
    days = set()
    for entry in value:
        try:
            day = int(entry)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid day of week {entry!r}") from exc
        if not 0 <= day <= 6:
            raise ValueError(f"Day of week must be between 0 (Sunday) and 6 (Saturday), got {day}")
        days.add(day)
    return tuple(sorted(days))


def parse_recurrence_pattern(payload: Any) -> RecurrencePattern:
    """Validate a stored or submitted pattern; accepts camelCase or snake_case keys."""
    if isinstance(payload, RecurrencePattern):
        return payload
    if not isinstance(payload, Mapping):
        raise TypeError("Recurrence pattern must be a mapping")
    kind = str(payload.get("type") or "").strip().lower()
    interval = _positive_int(payload.get("interval"), "interval")
    days = _days_of_week(_pick(payload, "daysOfWeek", "days_of_week"))

    rule: RecurrenceRule
    if kind == "daily":
        rule = DailyRule(interval=interval)
    elif kind == "weekday":
        rule = WeekdayRule()
    elif kind in {"weekly", "custom"}:
        rule = WeeklyRule(interval=interval, days_of_week=days)
    elif kind == "monthly":
        week_of_month = _pick(payload, "weekOfMonth", "week_of_month")
        if week_of_month is not None and days:
            nth = _positive_int(week_of_month, "weekOfMonth")
            if nth > 5:
                raise ValueError("weekOfMonth must be between 1 and 5")
            rule = MonthlyRule(interval=interval, day_of_week=days[0], week_of_month=nth)
        else:
            rule = MonthlyRule(interval=interval)
    elif kind == "yearly":
        rule = YearlyRule(interval=interval)
    else:
        raise ValueError(f"Unknown recurrence type {payload.get('type')!r}")

    end_kind = str(_pick(payload, "endType", "end_type", "never") or "never").strip().lower()
    end: EndCondition
    if end_kind == "never":
        end = NeverEnds()
    elif end_kind == "on":
        end_date = parse_date(_pick(payload, "endDate", "end_date"), "endDate")
        if end_date is None:
            raise ValueError("endType 'on' requires an endDate")
        end = EndsOnDate(end_date=end_date)
    elif end_kind == "after":
        if payload.get("occurrences") is None:
            raise ValueError("endType 'after' requires occurrences")
        end = EndsAfterCount(occurrences=_positive_int(payload["occurrences"], "occurrences"))
    else:
        raise ValueError(f"Unknown recurrence end type {end_kind!r}")
    return RecurrencePattern(rule=rule, end=end)


def _add_months(anchor: datetime.date, months: int, day: int) -> datetime.date:
    index = anchor.month - 1 + months
    year, month = anchor.year + index // 12, index % 12 + 1
    return datetime.date(year, month, min(day, calendar.monthrange(year, month)[1]))


def nth_weekday_of_month(year: int, month: int, day_of_week: int, nth: int) -> datetime.date:
    """``nth`` occurrence of ``day_of_week`` (0 = Sunday); the last one when the month has fewer."""
    first = datetime.date(year, month, 1)
    offset = (day_of_week - sunday_index(first)) % 7
    candidate = first + datetime.timedelta(days=offset + (nth - 1) * 7)
    while candidate.month != month:
        candidate -= datetime.timedelta(days=7)
    return candidate


def _next_weekly(current: datetime.date, rule: WeeklyRule) -> datetime.date:
    if not rule.days_of_week:
        return current + datetime.timedelta(weeks=rule.interval)
    today = sunday_index(current)
    later = [day for day in rule.days_of_week if day > today]
    if later:
        return current + datetime.timedelta(days=later[0] - today)
    to_next_week = (7 - today) + rule.days_of_week[0]
    return current + datetime.timedelta(days=to_next_week, weeks=rule.interval - 1)


def _next_weekday(current: datetime.date) -> datetime.date:
    following = current + datetime.timedelta(days=1)
    while following.weekday() >= 5:
        following += datetime.timedelta(days=1)
    return following


def _rule_dates(anchor: datetime.date, rule: RecurrenceRule) -> Iterator[datetime.date]:
    yield anchor
    if isinstance(rule, DailyRule):
        for step in itertools.count(1):
            yield anchor + datetime.timedelta(days=step * rule.interval)
    elif isinstance(rule, WeekdayRule):
        current = anchor
        while True:
            current = _next_weekday(current)
            yield current
    elif isinstance(rule, WeeklyRule):
        current = anchor
        while True:
            current = _next_weekly(current, rule)
            yield current
    elif isinstance(rule, MonthlyRule):
        for step in itertools.count(1):
            if rule.by_weekday:
                month_start = _add_months(anchor.replace(day=1), step * rule.interval, 1)
                yield nth_weekday_of_month(month_start.year, month_start.month, rule.day_of_week, rule.week_of_month)
            else:
                yield _add_months(anchor, step * rule.interval, anchor.day)
    elif isinstance(rule, YearlyRule):
        for step in itertools.count(1):
            yield _add_months(anchor, 12 * step * rule.interval, anchor.day)
    else:
        raise TypeError(f"Unsupported recurrence rule {rule!r}")


def iter_occurrences(
    anchor: datetime.date,
    pattern: Any,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> Iterator[datetime.date]:
    """Yield ordered, distinct occurrence dates starting with ``anchor``.

    ``max_occurrences`` caps every pattern, including ones that never end.
    """
    pattern = parse_recurrence_pattern(pattern)
    if isinstance(anchor, datetime.datetime):
        anchor = anchor.date()
    limit = max(1, int(max_occurrences))
    if isinstance(pattern.end, EndsAfterCount):
        limit = min(limit, max(1, pattern.end.occurrences))
    previous: Optional[datetime.date] = None
    produced = 0
    for occurrence in _rule_dates(anchor, pattern.rule):
        if produced >= limit:
            return
        if previous is not None:
            if occurrence <= previous:
                continue
            if isinstance(pattern.end, EndsOnDate) and occurrence > pattern.end.end_date:
                return
        yield occurrence
        previous = occurrence
        produced += 1


def generate_recurring_dates(
    anchor: datetime.date,
    pattern: Any,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> List[datetime.date]:
    return list(iter_occurrences(anchor, pattern, max_occurrences))


def describe_recurrence(pattern: Any) -> str:
    pattern = parse_recurrence_pattern(pattern)
    rule = pattern.rule
    if isinstance(rule, DailyRule):
        text = "Daily" if rule.interval == 1 else f"Every {rule.interval} days"
    elif isinstance(rule, WeekdayRule):
        text = "Every weekday (Monday to Friday)"
    elif isinstance(rule, WeeklyRule):
        if rule.days_of_week:
            text = "Weekly on " + ", ".join(DAY_NAMES[day] for day in rule.days_of_week)
        else:
            text = "Weekly" if rule.interval == 1 else f"Every {rule.interval} weeks"
    elif isinstance(rule, MonthlyRule):
        if rule.by_weekday:
            text = f"Monthly on the {ORDINALS[rule.week_of_month - 1]} {DAY_NAMES[rule.day_of_week]}"
        else:
            text = "Monthly" if rule.interval == 1 else f"Every {rule.interval} months"
    else:
        text = "Annually" if rule.interval == 1 else f"Every {rule.interval} years"

    if isinstance(pattern.end, EndsOnDate):
        end_date = pattern.end.end_date
        text += f", until {end_date:%b} {end_date.day}, {end_date.year}"
    elif isinstance(pattern.end, EndsAfterCount):
        text += f", {pattern.end.occurrences} times"
    return text
