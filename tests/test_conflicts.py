from __future__ import annotations

import datetime
import sys
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from conflicts import detect_shift_conflicts, shift_conflicts_with_time_off  # noqa: E402

UTC = datetime.timezone.utc


def _shift(shift_id, start, end, *, employee_id=1, status="scheduled") -> dict:
    return {
        "id": shift_id,
        "employee_id": employee_id,
        "start_time": start,
        "end_time": end,
        "break_minutes": 0,
        "status": status,
    }


def _at(day: int, hour: int, minute: int = 0) -> datetime.datetime:
    return datetime.datetime(2024, 4, day, hour, minute, tzinfo=UTC)


class ConflictDetectionTests(unittest.TestCase):
    def test_exact_match_reports_single_double_booking(self) -> None:
        existing = [_shift(1, _at(1, 9), _at(1, 17))]
        candidate = _shift(None, _at(1, 9), _at(1, 17))

        conflicts = detect_shift_conflicts(candidate, existing, [])

        self.assertEqual([conflict["type"] for conflict in conflicts], ["double_booking"])
        self.assertEqual(conflicts[0]["severity"], "error")
        self.assertEqual(conflicts[0]["shift_id"], 1)

    def test_double_booking_suppresses_overlap_findings(self) -> None:
        existing = [
            _shift(1, _at(1, 9), _at(1, 17)),
            _shift(2, _at(1, 12), _at(1, 20)),
        ]
        candidate = _shift(None, _at(1, 9), _at(1, 17))

        conflicts = detect_shift_conflicts(candidate, existing, [])

        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0]["type"], "double_booking")

    def test_every_overlapping_shift_is_reported(self) -> None:
        existing = [
            _shift(1, _at(1, 8), _at(1, 11)),
            _shift(2, _at(1, 15), _at(1, 19)),
            _shift(3, _at(1, 20), _at(1, 23)),
        ]
        candidate = _shift(None, _at(1, 10), _at(1, 16))

        conflicts = detect_shift_conflicts(candidate, existing, [])

        self.assertEqual([conflict["shift_id"] for conflict in conflicts], [1, 2])
        self.assertTrue(all(conflict["type"] == "overlapping_shift" for conflict in conflicts))

    def test_touching_shifts_do_not_conflict(self) -> None:
        existing = [_shift(1, _at(1, 9), _at(1, 17))]
        candidate = _shift(None, _at(1, 17), _at(1, 22))

        self.assertEqual(detect_shift_conflicts(candidate, existing, []), [])

    def test_cancelled_other_employee_and_excluded_shifts_are_ignored(self) -> None:
        existing = [
            _shift(1, _at(1, 9), _at(1, 17), status="cancelled"),
            _shift(2, _at(1, 9), _at(1, 17), employee_id=2),
            _shift(3, _at(1, 10), _at(1, 12)),
        ]
        candidate = _shift(3, _at(1, 9), _at(1, 17))

        self.assertEqual(detect_shift_conflicts(candidate, existing, [], exclude_shift_id=3), [])

    def test_time_off_collision_is_reported_alongside_overlap(self) -> None:
        existing = [_shift(1, _at(3, 8), _at(3, 12))]
        time_off = [
            {
                "id": 7,
                "employee_id": 1,
                "start_date": datetime.date(2024, 4, 3),
                "end_date": datetime.date(2024, 4, 4),
                "status": "approved",
            }
        ]
        candidate = _shift(None, _at(3, 10), _at(3, 14))

        conflicts = detect_shift_conflicts(candidate, existing, time_off)

        self.assertEqual([conflict["type"] for conflict in conflicts], ["overlapping_shift", "time_off_conflict"])
        self.assertEqual(conflicts[-1]["time_off_id"], 7)

    def test_time_off_covers_whole_last_day(self) -> None:
        request = {
            "id": 1,
            "employee_id": 1,
            "start_date": "2024-04-03",
            "end_date": "2024-04-04",
            "status": "approved",
        }
        late_shift = _shift(None, _at(4, 22), _at(4, 23, 59))
        next_day = _shift(None, _at(5, 0), _at(5, 6))

        self.assertIs(shift_conflicts_with_time_off(late_shift, [request]), request)
        self.assertIsNone(shift_conflicts_with_time_off(next_day, [request]))

    def test_shift_ending_inside_time_off_collides(self) -> None:
        request = {
            "id": 1,
            "employee_id": 1,
            "start_date": datetime.date(2024, 4, 5),
            "end_date": datetime.date(2024, 4, 5),
            "status": "approved",
        }
        overnight = _shift(None, _at(4, 22), _at(5, 2))

        self.assertIs(shift_conflicts_with_time_off(overnight, [request]), request)

    def test_pending_and_denied_time_off_are_ignored(self) -> None:
        requests = [
            {"id": 1, "employee_id": 1, "start_date": "2024-04-03", "end_date": "2024-04-03", "status": "pending"},
            {"id": 2, "employee_id": 1, "start_date": "2024-04-03", "end_date": "2024-04-03", "status": "denied"},
        ]
        candidate = _shift(None, _at(3, 9), _at(3, 17))

        self.assertEqual(detect_shift_conflicts(candidate, [], requests), [])


if __name__ == "__main__":
    unittest.main()
