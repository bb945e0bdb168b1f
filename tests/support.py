import unittest
from datetime import date, datetime, time

from config import TestConfig
from lessongrid import create_app, db
from lessongrid.clock import FixedClock
from lessongrid.engine import get_engine, set_clock
from lessongrid.models import (
    Classroom,
    LearningGroup,
    LessonSession,
    RecurringTemplate,
    SessionStatus,
    Student,
    Teacher,
)

BRANCH = "Центр"


class DatabaseTestCase(unittest.TestCase):
    now = datetime(2025, 3, 10, 9, 0)

    def setUp(self) -> None:
        self.app = create_app(TestConfig)
        self.app_context = self.app.app_context()
        self.app_context.push()
        db.create_all()
        self.clock = FixedClock(self.now)
        set_clock(self.app, self.clock)
        self.engine = get_engine()

    def tearDown(self) -> None:
        db.session.remove()
        db.drop_all()
        self.app_context.pop()

    # Factories ------------------------------------------------------
    def add_session(
        self,
        lesson_date: date,
        start: time,
        end: time,
        *,
        teacher: str = "Иванов",
        classroom: str = "101",
        branch: str = BRANCH,
        group: LearningGroup | None = None,
        status: SessionStatus = SessionStatus.SCHEDULED,
        template: RecurringTemplate | None = None,
    ) -> LessonSession:
        session = LessonSession(
            teacher_name=teacher,
            branch=branch,
            classroom=classroom,
            lesson_date=lesson_date,
            start_time=start,
            end_time=end,
            status=status,
            group=group,
            recurrence_source_id=template.id if template is not None else None,
        )
        db.session.add(session)
        db.session.commit()
        return session

    def add_group(self, name: str = "English A1", students: tuple[str, ...] = ("Анна", "Борис")) -> LearningGroup:
        group = LearningGroup(
            name=name,
            branch=BRANCH,
            students=[Student(name=student, branch=BRANCH) for student in students],
        )
        db.session.add(group)
        db.session.commit()
        return group

    def add_template(
        self,
        weekdays: str,
        start: time,
        end: time,
        *,
        valid_from: date = date(2025, 3, 3),
        valid_to: date | None = None,
        teacher: str = "Иванов",
        classroom: str = "101",
        group: LearningGroup | None = None,
    ) -> RecurringTemplate:
        template = RecurringTemplate(
            teacher_name=teacher,
            branch=BRANCH,
            classroom=classroom,
            weekdays=weekdays,
            start_time=start,
            end_time=end,
            valid_from=valid_from,
            valid_to=valid_to,
            group=group,
        )
        db.session.add(template)
        db.session.commit()
        return template

    def add_resources(self) -> None:
        db.session.add_all(
            [
                Teacher(name="Иванов", branch=BRANCH),
                Teacher(name="Петрова", branch=BRANCH),
                Classroom(name="101", branch=BRANCH, capacity=8),
                Classroom(name="102", branch=BRANCH, capacity=12),
            ]
        )
        db.session.commit()
