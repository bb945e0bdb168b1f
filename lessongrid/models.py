from __future__ import annotations

import enum
from datetime import date, datetime, time, timedelta
from typing import Any, List, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    Time,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .extensions import db
from .utils import format_time_range, parse_weekdays


class SessionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.SCHEDULED


ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.SCHEDULED: frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}

STATUS_LABELS: dict[SessionStatus, str] = {
    SessionStatus.SCHEDULED: "Запланировано",
    SessionStatus.COMPLETED: "Проведено",
    SessionStatus.CANCELLED: "Отменено",
}


class HistoryEventType(str, enum.Enum):
    CREATED = "created"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    UPDATED = "updated"


def _enum_values(enum_class: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_class]


group_student = Table(
    "group_student",
    db.Model.metadata,
    Column("group_id", ForeignKey("learning_group.id"), primary_key=True),
    Column("student_id", ForeignKey("student.id"), primary_key=True),
)


class TimeStampedModel:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Teacher(db.Model, TimeStampedModel):
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    branch: Mapped[Optional[str]] = mapped_column(String(120), index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Teacher {self.name}>"


class Classroom(db.Model, TimeStampedModel):
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    branch: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    capacity: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint("name", "branch", name="uq_classroom_branch_name"),
        CheckConstraint("capacity IS NULL OR capacity >= 0", name="chk_classroom_capacity"),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Classroom {self.branch}/{self.name}>"


class Student(db.Model, TimeStampedModel):
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    branch: Mapped[Optional[str]] = mapped_column(String(120))

    groups: Mapped[List["LearningGroup"]] = relationship(
        secondary=group_student, back_populates="students"
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Student {self.name}>"


class LearningGroup(db.Model, TimeStampedModel):
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    branch: Mapped[str] = mapped_column(String(120), nullable=False)

    students: Mapped[List[Student]] = relationship(
        secondary=group_student, back_populates="groups", order_by="Student.name"
    )

    def student_names(self) -> list[str]:
        return sorted((student.name for student in self.students), key=str.lower)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<LearningGroup {self.name}>"


class ClosingPeriod(db.Model, TimeStampedModel):
    id: Mapped[int] = mapped_column(primary_key=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(255))
    branch: Mapped[Optional[str]] = mapped_column(String(120))

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="chk_closing_period_range"),
    )

    @classmethod
    def closed_days(cls, start: date, end: date, branch: str | None = None) -> set[date]:
        """Return the closed days between ``start`` and ``end`` for ``branch``.

        Periods without a branch close every branch.
        """

        query = cls.query.filter(cls.start_date <= end, cls.end_date >= start)
        days: set[date] = set()
        for period in query.all():
            if period.branch and branch and period.branch != branch:
                continue
            current = max(period.start_date, start)
            last = min(period.end_date, end)
            while current <= last:
                days.add(current)
                current += timedelta(days=1)
        return days

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"ClosingPeriod<{self.start_date}→{self.end_date}>"


class RecurringTemplate(db.Model, TimeStampedModel):
    id: Mapped[int] = mapped_column(primary_key=True)
    teacher_name: Mapped[str] = mapped_column(String(120), nullable=False)
    branch: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    classroom: Mapped[str] = mapped_column(String(120), nullable=False)
    weekdays: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[Optional[date]] = mapped_column(Date)
    group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("learning_group.id"))
    student_id: Mapped[Optional[int]] = mapped_column(ForeignKey("student.id"))
    capacity: Mapped[Optional[int]] = mapped_column(Integer)

    group: Mapped[Optional[LearningGroup]] = relationship()
    student: Mapped[Optional[Student]] = relationship()

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="chk_template_time_order"),
        CheckConstraint(
            "valid_to IS NULL OR valid_to >= valid_from", name="chk_template_validity"
        ),
    )

    @property
    def weekday_set(self) -> frozenset[int]:
        return frozenset(parse_weekdays(self.weekdays))

    def covers(self, day: date) -> bool:
        if day < self.valid_from:
            return False
        if self.valid_to is not None and day > self.valid_to:
            return False
        return day.weekday() in self.weekday_set

    def roster(self) -> list[Student]:
        if self.group is not None:
            return list(self.group.students)
        if self.student is not None:
            return [self.student]
        return []

    def __repr__(self) -> str:  # pragma: no cover
        return f"<RecurringTemplate {self.teacher_name} {self.weekdays} {self.start_time}>"


class LessonSession(db.Model, TimeStampedModel):
    id: Mapped[int] = mapped_column(primary_key=True)
    group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("learning_group.id"), index=True)
    student_id: Mapped[Optional[int]] = mapped_column(ForeignKey("student.id"))
    teacher_name: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    branch: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    classroom: Mapped[str] = mapped_column(String(120), nullable=False)
    lesson_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(
            SessionStatus,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
            name="session_status",
        ),
        nullable=False,
        default=SessionStatus.SCHEDULED,
        index=True,
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    recurrence_source_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_template.id"), index=True
    )
    rescheduled_from_id: Mapped[Optional[int]] = mapped_column(ForeignKey("lesson_session.id"))
    rescheduled_to_id: Mapped[Optional[int]] = mapped_column(ForeignKey("lesson_session.id"))
    makeup_for_id: Mapped[Optional[int]] = mapped_column(ForeignKey("lesson_session.id"))
    capacity: Mapped[Optional[int]] = mapped_column(Integer)
    student_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    group: Mapped[Optional[LearningGroup]] = relationship()
    student: Mapped[Optional[Student]] = relationship()

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="chk_session_time_order"),
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="chk_session_weekday"),
        UniqueConstraint(
            "recurrence_source_id", "lesson_date", name="uq_session_template_date"
        ),
    )

    @validates("lesson_date")
    def _sync_day_of_week(self, key: str, value: date) -> date:
        if value is not None:
            self.day_of_week = value.weekday()
        return value

    @property
    def is_cancelled(self) -> bool:
        return self.status is SessionStatus.CANCELLED

    @property
    def group_name(self) -> Optional[str]:
        return self.group.name if self.group is not None else None

    def roster(self) -> list[Student]:
        if self.group is not None:
            return list(self.group.students)
        if self.student is not None:
            return [self.student]
        return []

    def student_names(self) -> list[str]:
        if self.group is not None:
            return self.group.student_names()
        return [student.name for student in self.roster()]

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.lesson_date, self.start_time)

    @property
    def ends_at(self) -> datetime:
        return datetime.combine(self.lesson_date, self.end_time)

    @property
    def time_range(self) -> str:
        return format_time_range(self.start_time, self.end_time)

    def placement(self) -> dict[str, Any]:
        return {
            "lesson_date": self.lesson_date.isoformat(),
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "teacher_name": self.teacher_name,
            "branch": self.branch,
            "classroom": self.classroom,
            "status": self.status.value,
        }

    def as_payload(self, *, capacity: int | None = None) -> dict[str, Any]:
        return {
            "id": self.id,
            "lesson_date": self.lesson_date.isoformat(),
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "day_of_week": self.day_of_week,
            "teacher_name": self.teacher_name,
            "branch": self.branch,
            "classroom": self.classroom,
            "status": self.status.value,
            "notes": self.notes,
            "group_id": self.group_id,
            "group_name": self.group_name,
            "student_id": self.student_id,
            "student_count": self.student_count,
            "capacity": self.capacity if self.capacity is not None else capacity,
            "recurrence_source_id": self.recurrence_source_id,
            "rescheduled_from_id": self.rescheduled_from_id,
            "rescheduled_to_id": self.rescheduled_to_id,
            "makeup_for_id": self.makeup_for_id,
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<LessonSession #{self.id} {self.teacher_name} {self.lesson_date} {self.time_range}>"


class HistoryEvent(db.Model):
    __tablename__ = "session_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("lesson_session.id"), nullable=False, index=True
    )
    event_type: Mapped[HistoryEventType] = mapped_column(
        Enum(
            HistoryEventType,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
            name="history_event_type",
        ),
        nullable=False,
    )
    old_value: Mapped[Optional[str]] = mapped_column(Text)
    new_value: Mapped[Optional[str]] = mapped_column(Text)
    changed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    changed_by: Mapped[str] = mapped_column(String(120), nullable=False, default="system")
    description: Mapped[Optional[str]] = mapped_column(Text)

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "event_type": self.event_type.value,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "changed_at": self.changed_at.isoformat(),
            "changed_by": self.changed_by,
            "description": self.description,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<HistoryEvent {self.event_type.value} session={self.session_id}>"


@event.listens_for(HistoryEvent, "before_update")
def _reject_history_update(mapper, connection, target) -> None:
    raise RuntimeError("History events are append-only and cannot be updated")


@event.listens_for(HistoryEvent, "before_delete")
def _reject_history_delete(mapper, connection, target) -> None:
    raise RuntimeError("History events are append-only and cannot be deleted")
