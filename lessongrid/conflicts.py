"""Double-booking detection for teachers, classrooms and students.

Teacher and classroom overlaps block a write. Student overlaps are advisory:
they are reported next to the blocking ones but never reject a placement.
"""
from __future__ import annotations

import enum
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, time
from typing import Any, Iterable

from .errors import ValidationError
from .models import LessonSession, SessionStatus
from .recurrence import Occurrence
from .store import SessionFilter, SessionStore
from .utils import format_time_range, overlaps


class ResourceType(str, enum.Enum):
    TEACHER = "teacher"
    CLASSROOM = "classroom"
    STUDENT = "student"


BLOCKING_RESOURCES = frozenset({ResourceType.TEACHER, ResourceType.CLASSROOM})


@dataclass(frozen=True)
class ConflictCandidate:
    resource_type: ResourceType
    resource_name: str
    lesson_date: date
    start_time: time
    end_time: time
    branch: str | None = None
    exclude_session_id: int | None = None

    def __post_init__(self) -> None:
        if self.start_time >= self.end_time:
            raise ValidationError(
                "Время окончания должно быть позже времени начала", field="end_time"
            )


@dataclass(frozen=True)
class Conflict:
    session: LessonSession
    resource_type: ResourceType
    overlap_start: time
    overlap_end: time
    student_name: str | None = None

    @property
    def blocking(self) -> bool:
        return self.resource_type in BLOCKING_RESOURCES

    @property
    def time_range(self) -> str:
        return format_time_range(self.session.start_time, self.session.end_time)

    def describe(self) -> str:
        day = self.session.lesson_date.strftime("%d.%m.%Y")
        if self.resource_type is ResourceType.TEACHER:
            return (
                f"Преподаватель {self.session.teacher_name} уже ведёт занятие "
                f"{day} в {self.time_range}"
            )
        if self.resource_type is ResourceType.STUDENT:
            return f"Ученик {self.student_name} уже записан на занятие {day} в {self.time_range}"
        return f"Аудитория {self.session.classroom} уже занята {day} в {self.time_range}"

    def as_payload(self) -> dict[str, Any]:
        payload = {
            "conflict_type": self.resource_type.value,
            "blocking": self.blocking,
            "session_id": self.session.id,
            "conflicting_teacher": self.session.teacher_name,
            "conflicting_classroom": self.session.classroom,
            "conflicting_time_range": self.time_range,
            "lesson_date": self.session.lesson_date.isoformat(),
            "overlap_range": format_time_range(self.overlap_start, self.overlap_end),
            "message": self.describe(),
        }
        if self.student_name is not None:
            payload["student_name"] = self.student_name
        return payload


def blocking_only(conflicts: Iterable[Conflict]) -> list[Conflict]:
    return [conflict for conflict in conflicts if conflict.blocking]


class ConflictDetector:
    """Pure read: finds overlapping non-cancelled sessions for one resource.

    Callers must run the check again right before committing a write; results
    are never cached.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def check(self, candidate: ConflictCandidate) -> list[Conflict]:
        if candidate.resource_type is ResourceType.TEACHER:
            criteria = SessionFilter(
                date_from=candidate.lesson_date,
                date_to=candidate.lesson_date,
                teacher=candidate.resource_name,
                exclude_status=frozenset({SessionStatus.CANCELLED}),
            )
        elif candidate.resource_type is ResourceType.CLASSROOM:
            criteria = SessionFilter(
                date_from=candidate.lesson_date,
                date_to=candidate.lesson_date,
                classroom=candidate.resource_name,
                branch=candidate.branch,
                exclude_status=frozenset({SessionStatus.CANCELLED}),
            )
        else:
            raise ValueError("Student overlaps are checked with check_students()")

        conflicts: list[Conflict] = []
        for session in self._overlapping(
            criteria, candidate.start_time, candidate.end_time, candidate.exclude_session_id
        ):
            conflicts.append(
                Conflict(
                    session=session,
                    resource_type=candidate.resource_type,
                    overlap_start=max(session.start_time, candidate.start_time),
                    overlap_end=min(session.end_time, candidate.end_time),
                )
            )
        return conflicts

    def check_students(
        self,
        student_ids: Iterable[int],
        *,
        lesson_date: date,
        start_time: time,
        end_time: time,
        exclude_session_id: int | None = None,
    ) -> list[Conflict]:
        """Advisory: sessions that already hold one of ``student_ids`` at that time."""

        wanted = set(student_ids)
        if not wanted:
            return []
        criteria = SessionFilter(
            date_from=lesson_date,
            date_to=lesson_date,
            exclude_status=frozenset({SessionStatus.CANCELLED}),
        )
        conflicts: list[Conflict] = []
        for session in self._overlapping(criteria, start_time, end_time, exclude_session_id):
            for student in session.roster():
                if student.id not in wanted:
                    continue
                conflicts.append(
                    Conflict(
                        session=session,
                        resource_type=ResourceType.STUDENT,
                        overlap_start=max(session.start_time, start_time),
                        overlap_end=min(session.end_time, end_time),
                        student_name=student.name,
                    )
                )
        return conflicts

    def _overlapping(
        self,
        criteria: SessionFilter,
        start_time: time,
        end_time: time,
        exclude_session_id: int | None,
    ) -> list[LessonSession]:
        return [
            session
            for session in self._store.list(criteria)
            if session.id != exclude_session_id
            and overlaps(session.start_time, session.end_time, start_time, end_time)
        ]

    def check_placement(
        self,
        *,
        teacher_name: str,
        branch: str,
        classroom: str,
        lesson_date: date,
        start_time: time,
        end_time: time,
        exclude_session_id: int | None = None,
        student_ids: Iterable[int] = (),
    ) -> list[Conflict]:
        """Every conflict of a full placement: teacher, then classroom, then students.

        Only teacher and classroom conflicts are blocking; see
        :attr:`Conflict.blocking`.
        """

        conflicts = self.check(
            ConflictCandidate(
                resource_type=ResourceType.TEACHER,
                resource_name=teacher_name,
                lesson_date=lesson_date,
                start_time=start_time,
                end_time=end_time,
                exclude_session_id=exclude_session_id,
            )
        )
        conflicts.extend(
            self.check(
                ConflictCandidate(
                    resource_type=ResourceType.CLASSROOM,
                    resource_name=classroom,
                    lesson_date=lesson_date,
                    start_time=start_time,
                    end_time=end_time,
                    branch=branch,
                    exclude_session_id=exclude_session_id,
                )
            )
        )
        conflicts.extend(
            self.check_students(
                student_ids,
                lesson_date=lesson_date,
                start_time=start_time,
                end_time=end_time,
                exclude_session_id=exclude_session_id,
            )
        )
        return conflicts

    @staticmethod
    def scan(
        occurrences: Iterable[Occurrence],
        *,
        resources: Iterable[ResourceType] = BLOCKING_RESOURCES,
    ) -> set[str]:
        """Return the keys of occurrences that clash with another one in the set.

        ``resources`` selects which kinds of clash count; pass
        ``{ResourceType.STUDENT}`` for the advisory roster overlaps.
        """

        kinds = frozenset(resources)
        buckets: dict[tuple, list[Occurrence]] = defaultdict(list)
        for occurrence in occurrences:
            if occurrence.is_cancelled:
                continue
            if ResourceType.TEACHER in kinds:
                buckets[("teacher", occurrence.teacher_name, occurrence.lesson_date)].append(
                    occurrence
                )
            if ResourceType.CLASSROOM in kinds:
                buckets[
                    ("classroom", occurrence.branch, occurrence.classroom, occurrence.lesson_date)
                ].append(occurrence)
            if ResourceType.STUDENT in kinds:
                for student_id in set(occurrence.student_ids):
                    buckets[("student", student_id, occurrence.lesson_date)].append(occurrence)

        clashing: set[str] = set()
        for group in buckets.values():
            if len(group) < 2:
                continue
            group.sort(key=lambda item: item.start_time)
            for index, current in enumerate(group):
                for other in group[index + 1 :]:
                    if other.start_time >= current.end_time:
                        break
                    clashing.add(current.key)
                    clashing.add(other.key)
        return clashing
