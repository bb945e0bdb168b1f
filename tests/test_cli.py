from datetime import date, datetime, time

from lessongrid.models import SessionStatus
from lessongrid.store import SessionFilter

from tests.support import DatabaseTestCase


class CliTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.runner = self.app.test_cli_runner()

    def test_materialize_stores_template_days(self) -> None:
        self.add_template("0,2", time(14, 0), time(15, 0))
        result = self.runner.invoke(args=["materialize", "--from", "2025-03-10", "--to", "2025-03-16"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("2", result.output)
        stored = self.engine.store.list(SessionFilter())
        self.assertEqual([s.lesson_date for s in stored], [date(2025, 3, 10), date(2025, 3, 12)])

        again = self.runner.invoke(args=["materialize", "--from", "2025-03-10", "--to", "2025-03-16"])
        self.assertIn("0", again.output)
        self.assertEqual(len(self.engine.store.list(SessionFilter())), 2)

    def test_materialize_skips_double_booked_days(self) -> None:
        self.add_template("0,2", time(14, 0), time(15, 0))
        one_off = self.add_session(date(2025, 3, 12), time(14, 30), time(15, 30), classroom="102")

        result = self.runner.invoke(args=["materialize", "--from", "2025-03-10", "--to", "2025-03-16"])

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("1", result.output)
        stored = self.engine.store.list(SessionFilter(date_from=date(2025, 3, 12), date_to=date(2025, 3, 12)))
        self.assertEqual([s.id for s in stored], [one_off.id])

    def test_complete_elapsed(self) -> None:
        lesson = self.add_session(date(2025, 3, 10), time(8, 0), time(8, 45))
        self.clock.advance_to(datetime(2025, 3, 10, 12, 0))
        result = self.runner.invoke(args=["complete-elapsed"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(lesson.status, SessionStatus.COMPLETED)

    def test_seed_is_idempotent(self) -> None:
        first = self.runner.invoke(args=["seed"])
        self.assertEqual(first.exit_code, 0, first.output)
        teachers = self.engine.directory.teachers()
        self.runner.invoke(args=["seed"])
        self.assertEqual(self.engine.directory.teachers(), teachers)
        self.assertIn("Иванов", teachers)
