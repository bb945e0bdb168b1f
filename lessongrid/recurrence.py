"""Reconcile recurring templates with materialized lesson sessions."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time
from typing import Any, Iterable, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session as OrmSession

from .errors import NotFoundError, ValidationError
from .models import ClosingPeriod, LessonSession, RecurringTemplate, SessionStatus
from .store import SessionFilter, SessionStore
from .utils import daterange, format_time_range


@dataclass(frozen=True)
class Occurrence:
    """One dated lesson as seen by the grid: stored or virtual.

    Virtual occurrences come from a template and have no ``session_id``; they
    must be materialized before any lifecycle mutation.
    """

    teacher_name: str
    branch: str
    classroom: str
    lesson_date: date
    start_time: time
    end_time: time
    status: SessionStatus = SessionStatus.SCHEDULED
    session_id: int | None = None
    template_id: int | None = None
    notes: str | None = None
    group_id: int | None = None
    group_name: str | None = None
    student_id: int | None = None
    capacity: int | None = None
    student_count: int = 0
    student_names: tuple[str, ...] = field(default_factory=tuple)
    student_ids: tuple[int, ...] = field(default_factory=tuple)
    is_virtual: bool = False

    @property
    def key(self) -> str:
        if self.session_id is not None:
            return f"session:{self.session_id}"
        return f"template:{self.template_id}:{self.lesson_date.isoformat()}"

    @property
    def day_of_week(self) -> int:
        return self.lesson_date.weekday()

    @property
    def is_cancelled(self) -> bool:
        return self.status is SessionStatus.CANCELLED

    @classmethod
    def from_session(cls, session: LessonSession) -> "Occurrence":
        return cls(
            teacher_name=session.teacher_name,
            branch=session.branch,
            classroom=session.classroom,
            lesson_date=session.lesson_date,
            start_time=session.start_time,
            end_time=session.end_time,
            status=session.status,
            session_id=session.id,
            template_id=session.recurrence_source_id,
            notes=session.notes,
            group_id=session.group_id,
            group_name=session.group_name,
            student_id=session.student_id,
            capacity=session.capacity,
            student_count=session.student_count,
            student_names=tuple(session.student_names()),
            student_ids=tuple(student.id for student in session.roster()),
        )

    @classmethod
    def from_template(cls, template: RecurringTemplate, day: date) -> "Occurrence":
        if template.group is not None:
            names = tuple(template.group.student_names())
        elif template.student is not None:
            names = (template.student.name,)
        else:
            names = ()
        return cls(
            teacher_name=template.teacher_name,
            branch=template.branch,
            classroom=template.classroom,
            lesson_date=day,
            start_time=template.start_time,
            end_time=template.end_time,
            template_id=template.id,
            group_id=template.group_id,
            group_name=template.group.name if template.group is not None else None,
            student_id=template.student_id,
            capacity=template.capacity,
            student_count=len(names),
            student_names=names,
            student_ids=tuple(student.id for student in template.roster()),
            is_virtual=True,
        )

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "key": self.key,
            "virtual": self.is_virtual,
            "template_id": self.template_id,
            "lesson_date": self.lesson_date.isoformat(),
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "time_range": format_time_range(self.start_time, self.end_time),
            "teacher_name": self.teacher_name,
            "branch": self.branch,
            "classroom": self.classroom,
            "status": self.status.value,
            "notes": self.notes,
            "group_id": self.group_id,
            "group_name": self.group_name,
            "student_count": self.student_count,
            "capacity": self.capacity,
        }


def _occurrence_order(occurrence: Occurrence) -> tuple:
    return (
        occurrence.lesson_date,
        occurrence.start_time,
        1 if occurrence.is_virtual else 0,
        occurrence.session_id or 0,
        occurrence.template_id or 0,
    )


def _matches_query(occurrence: Occurrence, query: str | None) -> bool:
    if not query:
        return True
    needle = query.strip().lower()
    haystack = (
        occurrence.teacher_name,
        occurrence.classroom,
        occurrence.notes or "",
        occurrence.group_name or "",
    )
    return any(needle in value.lower() for value in haystack)


class RecurrenceExpander:
    """Single reconciliation point between templates and stored occurrences."""

    def __init__(self, store: SessionStore, orm_session: OrmSession) -> None:
        self._store = store
        self._orm = orm_session

    def get_template(self, template_id: int) -> RecurringTemplate:
        template = self._orm.get(RecurringTemplate, template_id)
        if template is None:
            raise NotFoundError(template_id, what="Шаблон")
        return template

    def templates_for(self, criteria: SessionFilter) -> list[RecurringTemplate]:
        statement = select(RecurringTemplate)
        if criteria.date_to is not None:
            statement = statement.where(RecurringTemplate.valid_from <= criteria.date_to)
        if criteria.date_from is not None:
            statement = statement.where(
                or_(
                    RecurringTemplate.valid_to.is_(None),
                    RecurringTemplate.valid_to >= criteria.date_from,
                )
            )
        if criteria.branch:
            statement = statement.where(RecurringTemplate.branch == criteria.branch)
        if criteria.teacher:
            statement = statement.where(RecurringTemplate.teacher_name == criteria.teacher)
        if criteria.classroom:
            statement = statement.where(RecurringTemplate.classroom == criteria.classroom)
        if criteria.group_id is not None:
            statement = statement.where(RecurringTemplate.group_id == criteria.group_id)
        return list(self._orm.scalars(statement.order_by(RecurringTemplate.id)))

    def occurrences_for(
        self,
        templates: Sequence[RecurringTemplate],
        date_from: date,
        date_to: date,
    ) -> list[Occurrence]:
        """Stored and virtual occurrences of ``templates`` within the window."""

        if date_from > date_to:
            raise ValidationError("Начало периода позже его окончания", field="date_from")
        if not templates:
            return []
        materialized = self._store.list(
            SessionFilter(
                date_from=date_from,
                date_to=date_to,
                recurrence_source_ids=frozenset(t.id for t in templates),
            )
        )
        occurrences = [Occurrence.from_session(session) for session in materialized]
        occurrences.extend(self._virtual(templates, date_from, date_to, materialized))
        return sorted(occurrences, key=_occurrence_order)

    def expand(self, criteria: SessionFilter) -> list[Occurrence]:
        """Everything a grid needs for ``criteria``: stored rows plus virtual ones."""

        if criteria.date_from is None or criteria.date_to is None:
            raise ValidationError("Нужно указать период", field="date_from")
        if criteria.date_from > criteria.date_to:
            raise ValidationError("Начало периода позже его окончания", field="date_from")

        stored = self._store.list(criteria)
        occurrences = [Occurrence.from_session(session) for session in stored]

        if self._wants_virtual(criteria):
            templates = self.templates_for(criteria)
            if templates:
                materialized = self._store.list(
                    SessionFilter(
                        date_from=criteria.date_from,
                        date_to=criteria.date_to,
                        recurrence_source_ids=frozenset(t.id for t in templates),
                    )
                )
                occurrences.extend(
                    occurrence
                    for occurrence in self._virtual(
                        templates, criteria.date_from, criteria.date_to, materialized
                    )
                    if _matches_query(occurrence, criteria.query)
                )
        return sorted(occurrences, key=_occurrence_order)

    def _virtual(
        self,
        templates: Iterable[RecurringTemplate],
        date_from: date,
        date_to: date,
        materialized: Iterable[LessonSession],
    ) -> list[Occurrence]:
        # Any stored row, cancelled ones included, replaces the template date.
        taken = {
            (session.recurrence_source_id, session.lesson_date)
            for session in materialized
            if session.recurrence_source_id is not None
        }
        closed_by_branch: dict[str, set[date]] = {}
        virtual: list[Occurrence] = []
        for template in templates:
            if not template.weekday_set:
                continue
            start = max(date_from, template.valid_from)
            end = min(date_to, template.valid_to) if template.valid_to else date_to
            if start > end:
                continue
            if template.branch not in closed_by_branch:
                closed_by_branch[template.branch] = ClosingPeriod.closed_days(
                    date_from, date_to, template.branch
                )
            closed = closed_by_branch[template.branch]
            for day in daterange(start, end):
                if not template.covers(day) or day in closed:
                    continue
                if (template.id, day) in taken:
                    continue
                virtual.append(Occurrence.from_template(template, day))
        return virtual

    @staticmethod
    def _wants_virtual(criteria: SessionFilter) -> bool:
        if criteria.status and SessionStatus.SCHEDULED not in criteria.status:
            return False
        if SessionStatus.SCHEDULED in criteria.exclude_status:
            return False
        return not criteria.recurrence_source_ids
