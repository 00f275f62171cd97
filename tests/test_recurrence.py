from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from recurrence import (  # noqa: E402
    EndsAfterCount,
    EndsOnDate,
    MonthlyRule,
    NeverEnds,
    WeeklyRule,
    describe_recurrence,
    generate_recurring_dates,
    iter_occurrences,
    nth_weekday_of_month,
    parse_recurrence_pattern,
)

D = datetime.date


def test_daily_with_interval_and_count() -> None:
    dates = generate_recurring_dates(D(2024, 4, 1), {"type": "daily", "interval": 2, "endType": "after", "occurrences": 4})
    assert dates == [D(2024, 4, 1), D(2024, 4, 3), D(2024, 4, 5), D(2024, 4, 7)]


def test_anchor_is_always_first() -> None:
    dates = generate_recurring_dates(D(2024, 4, 10), {"type": "weekly", "endType": "on", "endDate": "2024-04-01"})
    assert dates == [D(2024, 4, 10)]


def test_weekday_skips_weekends() -> None:
    # 2024-04-05 is a Friday.
    dates = generate_recurring_dates(D(2024, 4, 5), {"type": "weekday", "endType": "after", "occurrences": 3})
    assert dates == [D(2024, 4, 5), D(2024, 4, 8), D(2024, 4, 9)]


def test_weekly_on_selected_days() -> None:
    # Monday and Wednesday, starting Monday 2024-04-01.
    pattern = {"type": "weekly", "daysOfWeek": [3, 1], "endType": "on", "endDate": "2024-04-10"}
    assert generate_recurring_dates(D(2024, 4, 1), pattern) == [
        D(2024, 4, 1),
        D(2024, 4, 3),
        D(2024, 4, 8),
        D(2024, 4, 10),
    ]


def test_biweekly_days_skip_a_week() -> None:
    pattern = {"type": "weekly", "interval": 2, "days_of_week": [1], "end_type": "after", "occurrences": 3}
    assert generate_recurring_dates(D(2024, 4, 1), pattern) == [D(2024, 4, 1), D(2024, 4, 15), D(2024, 4, 29)]


def test_monthly_same_day_clamps_short_months() -> None:
    pattern = {"type": "monthly", "endType": "after", "occurrences": 4}
    assert generate_recurring_dates(D(2024, 1, 31), pattern) == [
        D(2024, 1, 31),
        D(2024, 2, 29),
        D(2024, 3, 31),
        D(2024, 4, 30),
    ]


def test_monthly_nth_weekday_falls_back_to_last() -> None:
    # Fifth Friday: March 2024 has one (29th), April 2024 does not.
    pattern = {"type": "monthly", "daysOfWeek": [5], "weekOfMonth": 5, "endType": "after", "occurrences": 2}
    assert generate_recurring_dates(D(2024, 3, 29), pattern) == [D(2024, 3, 29), D(2024, 4, 26)]
    assert nth_weekday_of_month(2024, 4, 0, 3) == D(2024, 4, 21)


def test_yearly_leap_day_clamps() -> None:
    pattern = {"type": "yearly", "endType": "after", "occurrences": 2}
    assert generate_recurring_dates(D(2024, 2, 29), pattern) == [D(2024, 2, 29), D(2025, 2, 28)]


def test_never_ending_pattern_is_capped() -> None:
    dates = generate_recurring_dates(D(2024, 1, 1), {"type": "daily", "endType": "never"}, max_occurrences=10)
    assert len(dates) == 10
    assert len(generate_recurring_dates(D(2024, 1, 1), {"type": "daily"})) == 365


def test_count_means_total_dates_but_respects_cap() -> None:
    pattern = {"type": "daily", "endType": "after", "occurrences": 50}
    assert len(generate_recurring_dates(D(2024, 1, 1), pattern, max_occurrences=20)) == 20


def test_occurrences_are_restartable_and_strictly_increasing() -> None:
    pattern = parse_recurrence_pattern({"type": "weekly", "daysOfWeek": [0, 2, 4], "endType": "after", "occurrences": 9})
    first = list(iter_occurrences(D(2024, 4, 2), pattern))
    second = list(iter_occurrences(D(2024, 4, 2), pattern))
    assert first == second
    assert all(earlier < later for earlier, later in zip(first, first[1:]))


def test_parse_builds_typed_pattern() -> None:
    pattern = parse_recurrence_pattern(
        {"type": "custom", "interval": 1, "daysOfWeek": [2], "endType": "on", "endDate": "2024-06-01"}
    )
    assert pattern.rule == WeeklyRule(interval=1, days_of_week=(2,))
    assert pattern.end == EndsOnDate(D(2024, 6, 1))
    assert parse_recurrence_pattern({"type": "monthly"}).rule == MonthlyRule()
    assert parse_recurrence_pattern({"type": "daily"}).end == NeverEnds()


def test_to_dict_round_trips_stored_shape() -> None:
    payload = {"type": "monthly", "interval": 1, "daysOfWeek": [0], "weekOfMonth": 3, "endType": "after", "occurrences": 6}
    pattern = parse_recurrence_pattern(payload)
    assert pattern.end == EndsAfterCount(6)
    assert pattern.to_dict() == payload


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "hourly"},
        {"type": "daily", "interval": 0},
        {"type": "weekly", "daysOfWeek": [7]},
        {"type": "daily", "endType": "on"},
        {"type": "daily", "endType": "after"},
        {"type": "daily", "endType": "sometime"},
    ],
)
def test_parse_rejects_malformed_patterns(payload) -> None:
    with pytest.raises(ValueError):
        parse_recurrence_pattern(payload)


def test_parse_rejects_non_mapping() -> None:
    with pytest.raises(TypeError):
        parse_recurrence_pattern(["daily"])


def test_descriptions() -> None:
    assert describe_recurrence({"type": "daily"}) == "Daily"
    assert describe_recurrence({"type": "daily", "interval": 3}) == "Every 3 days"
    assert describe_recurrence({"type": "weekly", "daysOfWeek": [1, 3]}) == "Weekly on Monday, Wednesday"
    assert (
        describe_recurrence({"type": "monthly", "daysOfWeek": [0], "weekOfMonth": 3})
        == "Monthly on the third Sunday"
    )
    assert describe_recurrence({"type": "yearly", "endType": "after", "occurrences": 5}) == "Annually, 5 times"
    assert (
        describe_recurrence({"type": "weekday", "endType": "on", "endDate": "2024-06-01"})
        == "Every weekday (Monday to Friday), until Jun 1, 2024"
    )
