from datetime import date, time, timedelta

from .extensions import db
from .models import (
    Classroom,
    ClosingPeriod,
    LearningGroup,
    RecurringTemplate,
    Student,
    Teacher,
)


def seed_data() -> None:
    if Teacher.query.count():
        return

    today = date.today()
    monday = today - timedelta(days=today.weekday())

    teachers = [
        Teacher(name="Иванов", branch="Центр", email="ivanov@example.com"),
        Teacher(name="Петрова", branch="Центр", email="petrova@example.com"),
        Teacher(name="Смит", branch="Север", email="smith@example.com"),
    ]
    classrooms = [
        Classroom(name="101", branch="Центр", capacity=8),
        Classroom(name="102", branch="Центр", capacity=12),
        Classroom(name="Онлайн", branch="Центр"),
        Classroom(name="201", branch="Север", capacity=10),
    ]
    students = [
        Student(name=name, branch="Центр")
        for name in ("Анна", "Борис", "Вера", "Глеб", "Дарья")
    ]
    beginners = LearningGroup(name="English A1", branch="Центр", students=students[:3])
    advanced = LearningGroup(name="English B2", branch="Центр", students=students[3:])

    db.session.add_all([*teachers, *classrooms, *students, beginners, advanced])
    db.session.flush()

    db.session.add_all(
        [
            RecurringTemplate(
                teacher_name="Иванов",
                branch="Центр",
                classroom="101",
                weekdays="0,2",
                start_time=time(14, 0),
                end_time=time(15, 0),
                valid_from=monday,
                group_id=beginners.id,
                capacity=8,
            ),
            RecurringTemplate(
                teacher_name="Петрова",
                branch="Центр",
                classroom="102",
                weekdays="1,3",
                start_time=time(18, 30),
                end_time=time(20, 0),
                valid_from=monday,
                valid_to=monday + timedelta(weeks=12),
                group_id=advanced.id,
            ),
            RecurringTemplate(
                teacher_name="Петрова",
                branch="Центр",
                classroom="Онлайн",
                weekdays="5",
                start_time=time(10, 0),
                end_time=time(10, 45),
                valid_from=monday,
                student_id=students[0].id,
                capacity=1,
            ),
        ]
    )
    db.session.add(
        ClosingPeriod(
            start_date=monday + timedelta(weeks=4),
            end_date=monday + timedelta(weeks=4, days=6),
            label="Каникулы",
        )
    )
    db.session.commit()
