"""Teacher, classroom and student lookups used to decorate views."""
from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session as OrmSession

from .models import Classroom, LearningGroup, Student, Teacher


class ResourceDirectory:
    """Canonical resource names and classroom capacities.

    Display only: conflict checks compare the names stored on sessions and
    never consult the directory.
    """

    def __init__(self, orm_session: OrmSession) -> None:
        self._orm = orm_session

    def teachers(self, branch: Optional[str] = None) -> list[str]:
        statement = select(Teacher.name).order_by(Teacher.name)
        if branch:
            statement = statement.where(
                (Teacher.branch == branch) | Teacher.branch.is_(None)
            )
        return list(self._orm.scalars(statement))

    def classrooms(self, branch: Optional[str] = None) -> list[str]:
        statement = select(Classroom.name).order_by(Classroom.name)
        if branch:
            statement = statement.where(Classroom.branch == branch)
        return sorted(set(self._orm.scalars(statement)), key=str.lower)

    def students(self, branch: Optional[str] = None) -> list[str]:
        statement = select(Student.name).order_by(Student.name)
        if branch:
            statement = statement.where(Student.branch == branch)
        return list(self._orm.scalars(statement))

    def capacities(self, branch: Optional[str] = None) -> dict[tuple[str, str], Optional[int]]:
        statement = select(Classroom.branch, Classroom.name, Classroom.capacity)
        if branch:
            statement = statement.where(Classroom.branch == branch)
        return {(row.branch, row.name): row.capacity for row in self._orm.execute(statement)}

    def canonical_teacher(self, name: str) -> str:
        """Return the stored spelling of ``name``; unknown names pass through."""

        cleaned = " ".join(name.split())
        for stored in self._orm.scalars(select(Teacher.name)):
            if stored.casefold() == cleaned.casefold():
                return stored
        return cleaned

    def canonical_classroom(self, name: str, branch: str) -> str:
        cleaned = name.strip()
        statement = select(Classroom.name).where(Classroom.branch == branch)
        for stored in self._orm.scalars(statement):
            if stored.casefold() == cleaned.casefold():
                return stored
        return cleaned

    def roster(
        self, group_id: Optional[int] = None, student_id: Optional[int] = None
    ) -> tuple[int, ...]:
        """Student ids a new session would hold: the group's members or the one student."""

        if group_id is not None:
            group = self._orm.get(LearningGroup, group_id)
            if group is None:
                return ()
            return tuple(student.id for student in group.students)
        if student_id is not None:
            return (student_id,)
        return ()
