"""Session persistence (repository pattern).

Stores are pure data access: they never validate business rules. Lifecycle
invariants are enforced by :class:`lessongrid.lifecycle.LifecycleManager`
before it calls ``create`` or ``update``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session as OrmSession, selectinload

from .errors import NotFoundError
from .models import LearningGroup, LessonSession, SessionStatus


UPDATABLE_FIELDS = frozenset(
    {
        "group_id",
        "student_id",
        "teacher_name",
        "branch",
        "classroom",
        "lesson_date",
        "start_time",
        "end_time",
        "status",
        "notes",
        "recurrence_source_id",
        "rescheduled_from_id",
        "rescheduled_to_id",
        "makeup_for_id",
        "capacity",
        "student_count",
    }
)


@dataclass(frozen=True)
class SessionFilter:
    date_from: date | None = None
    date_to: date | None = None
    branch: str | None = None
    teacher: str | None = None
    classroom: str | None = None
    group_id: int | None = None
    status: frozenset[SessionStatus] = field(default_factory=frozenset)
    exclude_status: frozenset[SessionStatus] = field(default_factory=frozenset)
    recurrence_source_ids: frozenset[int] = field(default_factory=frozenset)
    query: str | None = None

    @classmethod
    def with_status(cls, *statuses: SessionStatus, **kwargs: Any) -> "SessionFilter":
        return cls(status=frozenset(statuses), **kwargs)


class SessionStore(ABC):
    """Interface for lesson session persistence operations."""

    @abstractmethod
    def create(self, session: LessonSession) -> int:
        """Persist a new session and return its id."""
        ...

    @abstractmethod
    def get(self, session_id: int) -> LessonSession:
        """Return a session by id or raise :class:`NotFoundError`."""
        ...

    @abstractmethod
    def update(self, session_id: int, patch: Mapping[str, Any]) -> LessonSession:
        """Apply ``patch`` to a stored session and return it."""
        ...

    @abstractmethod
    def list(self, criteria: SessionFilter) -> list[LessonSession]:
        """Return sessions matching ``criteria`` ordered by date, start time and id."""
        ...

    @abstractmethod
    def atomic(self) -> AbstractContextManager[None]:
        """Unit of work: commit on success, roll back and re-raise on error.

        A unit opened inside another one joins it: only the outermost unit
        commits or rolls back.
        """
        ...

    @property
    @abstractmethod
    def in_atomic(self) -> bool:
        """True while a unit of work is open."""
        ...


class SqlSessionStore(SessionStore):
    """SQLAlchemy-backed store working on the request's ORM session."""

    def __init__(self, orm_session: OrmSession) -> None:
        self._orm = orm_session
        self._depth = 0

    @property
    def in_atomic(self) -> bool:
        return self._depth > 0

    def create(self, session: LessonSession) -> int:
        session.day_of_week = session.lesson_date.weekday()
        self._orm.add(session)
        self._orm.flush()
        return session.id

    def get(self, session_id: int) -> LessonSession:
        session = self._orm.get(LessonSession, session_id)
        if session is None:
            raise NotFoundError(session_id)
        return session

    def update(self, session_id: int, patch: Mapping[str, Any]) -> LessonSession:
        unknown = set(patch).difference(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")
        session = self.get(session_id)
        for key, value in patch.items():
            setattr(session, key, value)
        self._orm.flush()
        return session

    def list(self, criteria: SessionFilter) -> list[LessonSession]:
        statement = select(LessonSession).options(
            selectinload(LessonSession.group).selectinload(LearningGroup.students),
            selectinload(LessonSession.student),
        )
        if criteria.date_from is not None:
            statement = statement.where(LessonSession.lesson_date >= criteria.date_from)
        if criteria.date_to is not None:
            statement = statement.where(LessonSession.lesson_date <= criteria.date_to)
        if criteria.branch:
            statement = statement.where(LessonSession.branch == criteria.branch)
        if criteria.teacher:
            statement = statement.where(LessonSession.teacher_name == criteria.teacher)
        if criteria.classroom:
            statement = statement.where(LessonSession.classroom == criteria.classroom)
        if criteria.group_id is not None:
            statement = statement.where(LessonSession.group_id == criteria.group_id)
        if criteria.status:
            statement = statement.where(LessonSession.status.in_(list(criteria.status)))
        if criteria.exclude_status:
            statement = statement.where(
                LessonSession.status.not_in(list(criteria.exclude_status))
            )
        if criteria.recurrence_source_ids:
            statement = statement.where(
                LessonSession.recurrence_source_id.in_(sorted(criteria.recurrence_source_ids))
            )
        if criteria.query:
            pattern = f"%{criteria.query.strip()}%"
            statement = statement.outerjoin(LessonSession.group).where(
                or_(
                    LessonSession.teacher_name.ilike(pattern),
                    LessonSession.classroom.ilike(pattern),
                    LessonSession.notes.ilike(pattern),
                    LearningGroup.name.ilike(pattern),
                )
            )
        statement = statement.order_by(
            LessonSession.lesson_date, LessonSession.start_time, LessonSession.id
        )
        return list(self._orm.scalars(statement).unique())

    @contextmanager
    def atomic(self) -> Iterator[None]:
        self._depth += 1
        outermost = self._depth == 1
        try:
            yield
            if outermost:
                self._orm.commit()
        except Exception:
            if outermost:
                self._orm.rollback()
            raise
        finally:
            self._depth -= 1
