import unittest
from datetime import date, time, timedelta

from lessongrid.errors import GridSuperseded, ValidationError
from lessongrid.grid import ColumnKind, GridBuilder, GridView, RowKind
from lessongrid.models import SessionStatus
from lessongrid.recurrence import Occurrence
from lessongrid.tickets import GridRequestRegistry


MONDAY = date(2025, 3, 10)


def occurrence(session_id: int, day: date, start: time, end: time, **kwargs) -> Occurrence:
    fields = {
        "teacher_name": "Иванов",
        "branch": "Центр",
        "classroom": "101",
        "lesson_date": day,
        "start_time": start,
        "end_time": end,
        "session_id": session_id,
    }
    fields.update(kwargs)
    return Occurrence(**fields)


class DayAxisGridTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.builder = GridBuilder()
        self.view = GridView(RowKind.TEACHER, ColumnKind.DAY, MONDAY + timedelta(days=3))

    def test_view_normalises_to_monday(self) -> None:
        self.assertEqual(self.view.week_start, MONDAY)
        self.assertEqual(self.view.week_end, date(2025, 3, 16))

    def test_each_session_lands_in_its_weekday_column(self) -> None:
        occurrences = [
            occurrence(index + 1, MONDAY + timedelta(days=index), time(9, 0), time(10, 0))
            for index in range(7)
        ]
        grid = self.builder.build(occurrences, self.view)
        self.assertEqual(len(grid.columns), 7)
        for index, item in enumerate(occurrences):
            column = grid.columns[index].key
            self.assertEqual(grid.cell("Иванов", column), [item])
            self.assertEqual(grid.placements_of(item.key), [("Иванов", column)])

    def test_session_outside_week_is_not_placed(self) -> None:
        outside = occurrence(1, MONDAY + timedelta(days=7), time(9, 0), time(10, 0))
        grid = self.builder.build([outside], self.view)
        self.assertEqual(grid.placements_of(outside.key), [])
        self.assertEqual(grid.rows, [])

    def test_rows_are_seeded_and_sorted(self) -> None:
        grid = self.builder.build(
            [occurrence(1, MONDAY, time(9, 0), time(10, 0), teacher_name="петрова")],
            self.view,
            rows=["Иванов", "Смит"],
        )
        self.assertEqual(grid.rows, ["Иванов", "петрова", "Смит"])

    def test_equal_start_times_keep_input_order(self) -> None:
        first = occurrence(7, MONDAY, time(9, 0), time(10, 0), classroom="102")
        second = occurrence(3, MONDAY, time(9, 0), time(9, 45))
        grid = self.builder.build([first, second], self.view)
        self.assertEqual(grid.cell("Иванов", MONDAY.isoformat()), [first, second])

    def test_row_hours_skip_cancelled(self) -> None:
        occurrences = [
            occurrence(1, MONDAY, time(9, 0), time(10, 30)),
            occurrence(2, MONDAY, time(11, 0), time(12, 0), status=SessionStatus.CANCELLED),
        ]
        grid = self.builder.build(occurrences, self.view)
        self.assertAlmostEqual(grid.row_hours["Иванов"], 1.5)

    def test_conflicting_entries_are_flagged(self) -> None:
        occurrences = [
            occurrence(1, MONDAY, time(9, 0), time(10, 0)),
            occurrence(2, MONDAY, time(9, 30), time(10, 30), classroom="102"),
        ]
        payload = self.builder.build(occurrences, self.view).as_payload()
        cell = payload["rows"][0]["cells"][MONDAY.isoformat()]
        self.assertTrue(all(entry["conflict"] for entry in cell))
        self.assertEqual(payload["conflicts"], ["session:1", "session:2"])

    def test_shared_students_are_flagged_apart_from_conflicts(self) -> None:
        occurrences = [
            occurrence(1, MONDAY, time(9, 0), time(10, 0), student_ids=(5,)),
            occurrence(
                2, MONDAY, time(9, 30), time(10, 30), teacher_name="Петрова", classroom="102",
                student_ids=(5, 6),
            ),
        ]
        payload = self.builder.build(occurrences, self.view).as_payload()
        self.assertEqual(payload["conflicts"], [])
        self.assertEqual(payload["student_conflicts"], ["session:1", "session:2"])
        cell = payload["rows"][0]["cells"][MONDAY.isoformat()]
        self.assertTrue(all(entry["student_conflict"] for entry in cell))
        self.assertFalse(any(entry["conflict"] for entry in cell))

    def test_student_rows_repeat_group_sessions(self) -> None:
        view = GridView(RowKind.STUDENT, ColumnKind.DAY, MONDAY)
        lesson = occurrence(1, MONDAY, time(9, 0), time(10, 0), student_names=("Анна", "Борис"))
        grid = self.builder.build([lesson], view)
        self.assertEqual(grid.rows, ["Анна", "Борис"])
        self.assertEqual(len(grid.placements_of(lesson.key)), 2)


class TimeBucketGridTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.builder = GridBuilder()

    def test_half_past_start_falls_in_hour_bucket(self) -> None:
        view = GridView(RowKind.CLASSROOM, ColumnKind.TIME_BUCKET, MONDAY, step_minutes=60)
        lesson = occurrence(1, MONDAY, time(9, 30), time(10, 30))
        grid = self.builder.build([lesson], view)
        self.assertEqual(grid.placements_of(lesson.key), [("101", "09:00-10:00")])
        self.assertEqual(grid.columns[0].key, "08:00-09:00")
        self.assertEqual(grid.columns[-1].key, "21:00-22:00")

    def test_last_bucket_is_clipped_to_day_end(self) -> None:
        columns = self.builder.bucket_columns(180)
        self.assertEqual([c.key for c in columns][-1], "20:00-22:00")

    def test_sessions_outside_day_are_not_placed(self) -> None:
        view = GridView(RowKind.TEACHER, ColumnKind.TIME_BUCKET, MONDAY, step_minutes=30)
        early = occurrence(1, MONDAY, time(7, 0), time(7, 45))
        grid = self.builder.build([early], view)
        self.assertEqual(grid.placements_of(early.key), [])

    def test_unsupported_step_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            GridView(RowKind.TEACHER, ColumnKind.TIME_BUCKET, MONDAY, step_minutes=45)


class MonthGridTestCase(unittest.TestCase):
    def test_month_rows_cover_whole_weeks(self) -> None:
        lesson = occurrence(1, date(2025, 3, 12), time(9, 0), time(10, 0))
        grid = GridBuilder().build_month([lesson], date(2025, 3, 20))
        self.assertEqual(grid.rows[0], "2025-02-24")
        self.assertEqual(grid.rows[-1], "2025-03-31")
        self.assertEqual(len(grid.rows), 6)
        self.assertEqual(grid.cell("2025-03-10", "2"), [lesson])


class GridTicketTestCase(unittest.TestCase):
    def test_newer_request_supersedes_running_build(self) -> None:
        registry = GridRequestRegistry()
        stale = registry.begin("user-1:week")
        fresh = registry.begin("user-1:week")
        view = GridView(RowKind.TEACHER, ColumnKind.DAY, MONDAY)
        lessons = [occurrence(1, MONDAY, time(9, 0), time(10, 0))]
        with self.assertRaises(GridSuperseded):
            GridBuilder().build(lessons, view, ticket=stale)
        grid = GridBuilder().build(lessons, view, ticket=fresh)
        self.assertEqual(grid.rows, ["Иванов"])

    def test_channels_are_independent(self) -> None:
        registry = GridRequestRegistry()
        mine = registry.begin("user-1:week")
        registry.begin("user-2:week")
        self.assertTrue(mine.is_current())

    def test_purge_forgets_idle_channels(self) -> None:
        registry = GridRequestRegistry(ttl_seconds=-1)
        ticket = registry.begin("user-1:month")
        registry.purge()
        self.assertIsNone(registry.latest("user-1:month"))
        self.assertFalse(ticket.is_current())
