"""Session lifecycle: state transitions and linked reschedule/copy/makeup records.

Every mutation of a :class:`LessonSession` goes through
:class:`LifecycleManager`. Single-session operations validate and re-check
conflicts inside the unit of work, right before the write, so a rejected
operation never leaves a partial change behind. Series and range operations
commit item by item and report failures instead of rolling back.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Mapping, Union

from sqlalchemy.exc import IntegrityError

from .clock import Clock
from .conflicts import Conflict, ConflictDetector, blocking_only
from .errors import (
    BatchFailure,
    BatchResult,
    ConflictError,
    DomainError,
    PartialBatchFailure,
    ValidationError,
)
from .history import HistoryLog
from .models import (
    ALLOWED_TRANSITIONS,
    STATUS_LABELS,
    HistoryEventType,
    LessonSession,
    SessionStatus,
)
from .recurrence import Occurrence, RecurrenceExpander
from .store import SessionFilter, SessionStore
from .utils import daterange, duration_minutes, shift_time


logger = logging.getLogger(__name__)

RESCHEDULED_TAG = "[rescheduled]"
CANCELLED_TAG = "[cancelled]"
MAKEUP_TAG = "[makeup]"

DETAIL_FIELDS = frozenset({"notes", "capacity", "student_count"})

Target = Union[int, LessonSession, Occurrence]


class Scope(str, enum.Enum):
    SINGLE = "single"
    SERIES = "series"


@dataclass(frozen=True)
class SessionDraft:
    """Placement and payload of a session that does not exist yet."""

    teacher_name: str
    branch: str
    classroom: str
    lesson_date: date
    start_time: time
    end_time: time
    group_id: int | None = None
    student_id: int | None = None
    notes: str | None = None
    capacity: int | None = None
    student_count: int = 0
    student_ids: tuple[int, ...] = ()

    @classmethod
    def from_occurrence(cls, occurrence: Occurrence) -> "SessionDraft":
        return cls(
            teacher_name=occurrence.teacher_name,
            branch=occurrence.branch,
            classroom=occurrence.classroom,
            lesson_date=occurrence.lesson_date,
            start_time=occurrence.start_time,
            end_time=occurrence.end_time,
            group_id=occurrence.group_id,
            student_id=occurrence.student_id,
            capacity=occurrence.capacity,
            student_count=occurrence.student_count,
            student_ids=occurrence.student_ids,
        )

    @classmethod
    def from_session(cls, session: LessonSession) -> "SessionDraft":
        return cls(
            teacher_name=session.teacher_name,
            branch=session.branch,
            classroom=session.classroom,
            lesson_date=session.lesson_date,
            start_time=session.start_time,
            end_time=session.end_time,
            group_id=session.group_id,
            student_id=session.student_id,
            capacity=session.capacity,
            student_count=session.student_count,
            student_ids=tuple(student.id for student in session.roster()),
        )

    def build(self, **extra: Any) -> LessonSession:
        return LessonSession(
            teacher_name=self.teacher_name,
            branch=self.branch,
            classroom=self.classroom,
            lesson_date=self.lesson_date,
            start_time=self.start_time,
            end_time=self.end_time,
            group_id=self.group_id,
            student_id=self.student_id,
            notes=self.notes,
            capacity=self.capacity,
            student_count=self.student_count,
            status=SessionStatus.SCHEDULED,
            **extra,
        )


def _append_note(notes: str | None, line: str) -> str:
    if notes:
        return f"{notes}\n{line}"
    return line


def _series_order(item: Target) -> tuple:
    if isinstance(item, Occurrence):
        return (item.lesson_date, item.start_time, item.session_id or 0)
    return (item.lesson_date, item.start_time, item.id)


class LifecycleManager:
    def __init__(
        self,
        store: SessionStore,
        detector: ConflictDetector,
        history: HistoryLog,
        clock: Clock,
        expander: RecurrenceExpander,
    ) -> None:
        self._store = store
        self._detector = detector
        self._history = history
        self._clock = clock
        self._expander = expander

    # Resolution -----------------------------------------------------
    def resolve(
        self, target: Target, *, actor: str = "system", ensure_free: bool = True
    ) -> LessonSession:
        """Return the stored session behind ``target``, materializing virtual ones.

        Mutations call this inside their own unit of work, so a rejected
        mutation also discards the materialized row. ``ensure_free=False`` is
        for callers that cancel the row or re-check its final placement in
        that same unit.
        """

        if isinstance(target, LessonSession):
            return target
        if isinstance(target, Occurrence):
            if target.session_id is not None:
                return self._store.get(target.session_id)
            if target.template_id is None:
                raise ValidationError("Занятие без шаблона нельзя материализовать")
            return self.materialize(
                target.template_id, target.lesson_date, actor=actor, ensure_free=ensure_free
            )
        return self._store.get(int(target))

    def materialize(
        self,
        template_id: int,
        lesson_date: date,
        *,
        actor: str = "system",
        ensure_free: bool = True,
    ) -> LessonSession:
        template = self._expander.get_template(template_id)
        if not template.covers(lesson_date):
            raise ValidationError(
                "Дата не входит в расписание шаблона", field="lesson_date"
            )
        existing = self._materialized(template_id, lesson_date)
        if existing is not None:
            return existing

        draft = SessionDraft.from_occurrence(Occurrence.from_template(template, lesson_date))
        session = draft.build(recurrence_source_id=template.id)
        try:
            with self._store.atomic():
                if ensure_free:
                    self._ensure_free(draft)
                self._store.create(session)
                self._history.append(
                    session,
                    HistoryEventType.CREATED,
                    new_value=session.placement(),
                    changed_by=actor,
                    description=f"Создано по шаблону #{template.id}",
                )
        except IntegrityError:
            # Materialized concurrently by another request.
            if self._store.in_atomic:
                raise ValidationError(
                    "Занятие уже сохранено другим запросом, повторите действие",
                    field="lesson_date",
                )
            existing = self._materialized(template_id, lesson_date)
            if existing is None:
                raise
            return existing
        logger.info(
            "Materialized template %s on %s as session %s",
            template.id,
            lesson_date.isoformat(),
            session.id,
        )
        return session

    def _materialized(self, template_id: int, lesson_date: date) -> LessonSession | None:
        rows = self._store.list(
            SessionFilter(
                date_from=lesson_date,
                date_to=lesson_date,
                recurrence_source_ids=frozenset({template_id}),
            )
        )
        return rows[0] if rows else None

    # Validation helpers ---------------------------------------------
    @staticmethod
    def _ensure_time_range(start: time, end: time) -> None:
        if start >= end:
            raise ValidationError(
                "Время окончания должно быть позже времени начала", field="end_time"
            )

    def _ensure_not_past(self, lesson_date: date) -> None:
        if lesson_date < self._clock.today():
            raise ValidationError("Нельзя назначить занятие на прошедшую дату", field="lesson_date")

    @staticmethod
    def _ensure_transition(session: LessonSession, target: SessionStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[session.status]:
            raise ValidationError(
                f"Занятие #{session.id} в статусе «{STATUS_LABELS[session.status]}» "
                f"нельзя перевести в «{STATUS_LABELS[target]}»",
                field="status",
            )

    @staticmethod
    def _ensure_editable(session: LessonSession) -> None:
        if session.status is not SessionStatus.SCHEDULED:
            raise ValidationError(
                f"Занятие в статусе «{STATUS_LABELS[session.status]}» не редактируется",
                field="status",
            )

    def _ensure_free(
        self, draft: SessionDraft, *, exclude_session_id: int | None = None
    ) -> list[Conflict]:
        """Raise on teacher or classroom conflicts; return the advisory student ones."""

        conflicts = self._detector.check_placement(
            teacher_name=draft.teacher_name,
            branch=draft.branch,
            classroom=draft.classroom,
            lesson_date=draft.lesson_date,
            start_time=draft.start_time,
            end_time=draft.end_time,
            exclude_session_id=exclude_session_id,
            student_ids=draft.student_ids,
        )
        blocking = blocking_only(conflicts)
        if blocking:
            logger.info(
                "Placement rejected for %s on %s: %d conflict(s)",
                draft.teacher_name,
                draft.lesson_date.isoformat(),
                len(blocking),
            )
            raise ConflictError(blocking)
        if conflicts:
            logger.info(
                "Placement for %s on %s overlaps %d student booking(s)",
                draft.teacher_name,
                draft.lesson_date.isoformat(),
                len(conflicts),
            )
        return conflicts

    # Creation -------------------------------------------------------
    def schedule(self, draft: SessionDraft, *, actor: str = "system") -> LessonSession:
        """Create a one-off scheduled session."""

        self._ensure_time_range(draft.start_time, draft.end_time)
        self._ensure_not_past(draft.lesson_date)
        session = draft.build()
        with self._store.atomic():
            self._ensure_free(draft)
            self._store.create(session)
            self._history.append(
                session,
                HistoryEventType.CREATED,
                new_value=session.placement(),
                changed_by=actor,
                description="Создано вручную",
            )
        logger.info("Scheduled session %s for %s", session.id, draft.teacher_name)
        return session

    def schedule_range(
        self,
        draft: SessionDraft,
        date_from: date,
        date_to: date,
        weekdays: Iterable[int],
        *,
        actor: str = "system",
    ) -> BatchResult:
        """Create one session per matching date; best-effort like series operations."""

        if date_from > date_to:
            raise ValidationError("Начало периода позже его окончания", field="date_from")
        days = {int(day) for day in weekdays}
        if not days:
            raise ValidationError("Не выбраны дни недели", field="weekdays")
        self._ensure_time_range(draft.start_time, draft.end_time)

        result = BatchResult()
        for day in daterange(date_from, date_to):
            if day.weekday() not in days:
                continue
            try:
                result.succeeded.append(
                    self.schedule(replace(draft, lesson_date=day), actor=actor)
                )
            except DomainError as exc:
                result.failed.append(BatchFailure(session=None, error=exc, lesson_date=day))
        return self._finish_batch("schedule_range", result)

    # Reschedule -----------------------------------------------------
    def reschedule(
        self,
        target: Target,
        new_date: date,
        new_start: time | None = None,
        new_end: time | None = None,
        *,
        scope: Scope = Scope.SINGLE,
        teacher_name: str | None = None,
        classroom: str | None = None,
        reason: str | None = None,
        actor: str = "system",
    ) -> LessonSession | BatchResult:
        """Move an occurrence: the source is cancelled and a new session is created.

        ``single`` returns the new session or raises; ``series`` shifts every
        scheduled session of the group from the source date on by the same
        day offset and returns a :class:`BatchResult`.
        """

        if scope is Scope.SINGLE:
            return self._reschedule_one(
                target, new_date, new_start, new_end, teacher_name, classroom, reason, actor
            )

        anchor_date, members = self._series_members(target)
        day_delta = new_date - anchor_date
        # Move the far end first so shifted items never land on unmoved ones.
        members.sort(key=_series_order, reverse=day_delta > timedelta(0))
        result = BatchResult()
        for member in members:
            target_date = member.lesson_date + day_delta
            self._collect(
                result,
                member,
                lambda member=member, target_date=target_date: self._reschedule_one(
                    member, target_date, new_start, new_end, teacher_name, classroom, reason, actor
                ),
            )
        return self._finish_batch("reschedule_series", result)

    def _series_members(self, target: Target) -> tuple[date, list[Target]]:
        """The anchor's date and every scheduled item of its group from that date on.

        A virtual anchor is returned as is and materialized by the item's own
        unit of work; later virtual occurrences are left to their templates.
        """

        if isinstance(target, Occurrence) and target.session_id is None:
            anchor: Target = target
            group_id, anchor_date = target.group_id, target.lesson_date
        else:
            anchor = self.resolve(target)
            self._ensure_transition(anchor, SessionStatus.CANCELLED)
            group_id, anchor_date = anchor.group_id, anchor.lesson_date
        if group_id is None:
            return anchor_date, [anchor]
        members: list[Target] = list(
            self._store.list(
                SessionFilter.with_status(
                    SessionStatus.SCHEDULED, group_id=group_id, date_from=anchor_date
                )
            )
        )
        if isinstance(anchor, Occurrence):
            members.insert(0, anchor)
        return anchor_date, members

    def _reschedule_one(
        self,
        target: Target,
        new_date: date,
        new_start: time | None,
        new_end: time | None,
        teacher_name: str | None,
        classroom: str | None,
        reason: str | None,
        actor: str,
    ) -> LessonSession:
        with self._store.atomic():
            session = self.resolve(target, actor=actor, ensure_free=False)
            return self._move(
                session, new_date, new_start, new_end, teacher_name, classroom, reason, actor
            )

    def _move(
        self,
        session: LessonSession,
        new_date: date,
        new_start: time | None,
        new_end: time | None,
        teacher_name: str | None,
        classroom: str | None,
        reason: str | None,
        actor: str,
    ) -> LessonSession:
        self._ensure_transition(session, SessionStatus.CANCELLED)
        start = new_start or session.start_time
        end = new_end or shift_time(start, duration_minutes(session.start_time, session.end_time))
        self._ensure_time_range(start, end)
        self._ensure_not_past(new_date)
        draft = replace(
            SessionDraft.from_session(session),
            teacher_name=teacher_name or session.teacher_name,
            classroom=classroom or session.classroom,
            lesson_date=new_date,
            start_time=start,
            end_time=end,
            notes=f"{RESCHEDULED_TAG} перенесено с {session.lesson_date:%d.%m.%Y} {session.time_range}",
        )
        if (
            draft.lesson_date == session.lesson_date
            and draft.start_time == session.start_time
            and draft.end_time == session.end_time
            and draft.teacher_name == session.teacher_name
            and draft.classroom == session.classroom
        ):
            raise ValidationError("Новое время совпадает с текущим", field="lesson_date")

        old_placement = session.placement()
        replacement = draft.build(rescheduled_from_id=session.id)
        with self._store.atomic():
            self._ensure_free(draft, exclude_session_id=session.id)
            self._store.create(replacement)
            note = f"{CANCELLED_TAG} {(reason or '').strip() or 'rescheduled'} → #{replacement.id}"
            self._store.update(
                session.id,
                {
                    "status": SessionStatus.CANCELLED,
                    "notes": _append_note(session.notes, note),
                    "rescheduled_to_id": replacement.id,
                },
            )
            self._history.append(
                session,
                HistoryEventType.RESCHEDULED,
                old_value=old_placement,
                new_value={**replacement.placement(), "session_id": replacement.id},
                changed_by=actor,
                description=(
                    f"Перенесено на {new_date:%d.%m.%Y} {replacement.time_range}"
                    + (f": {reason.strip()}" if reason and reason.strip() else "")
                ),
            )
            self._history.append(
                replacement,
                HistoryEventType.CREATED,
                new_value=replacement.placement(),
                changed_by=actor,
                description=f"Создано переносом занятия #{session.id}",
            )
        logger.info("Rescheduled session %s as %s", session.id, replacement.id)
        return replacement

    # Copy and makeup ------------------------------------------------
    def _source_draft(self, target: Target) -> tuple[SessionDraft, int | None, str]:
        if isinstance(target, Occurrence) and target.session_id is None:
            return SessionDraft.from_occurrence(target), None, f"шаблона #{target.template_id}"
        source = self.resolve(target)
        return SessionDraft.from_session(source), source.id, f"занятия #{source.id}"

    def copy(self, target: Target, new_date: date, *, actor: str = "system") -> LessonSession:
        """Independent scheduled copy with the same resources and times on ``new_date``."""

        source, _, label = self._source_draft(target)
        self._ensure_not_past(new_date)
        draft = replace(source, lesson_date=new_date, notes=None)
        session = draft.build()
        with self._store.atomic():
            self._ensure_free(draft)
            self._store.create(session)
            self._history.append(
                session,
                HistoryEventType.CREATED,
                new_value=session.placement(),
                changed_by=actor,
                description=f"Создано копированием {label}",
            )
        logger.info("Copied %s to session %s on %s", label, session.id, new_date.isoformat())
        return session

    def makeup(
        self,
        target: Target,
        new_date: date,
        new_start: time,
        new_end: time,
        *,
        classroom: str | None = None,
        actor: str = "system",
    ) -> LessonSession:
        """Ad-hoc compensation lesson, not tied to any template."""

        source, source_id, label = self._source_draft(target)
        self._ensure_time_range(new_start, new_end)
        self._ensure_not_past(new_date)
        draft = replace(
            source,
            lesson_date=new_date,
            start_time=new_start,
            end_time=new_end,
            classroom=classroom or source.classroom,
            notes=f"{MAKEUP_TAG} отработка {label} от {source.lesson_date:%d.%m.%Y}",
        )
        session = draft.build(makeup_for_id=source_id)
        with self._store.atomic():
            self._ensure_free(draft)
            self._store.create(session)
            self._history.append(
                session,
                HistoryEventType.CREATED,
                new_value=session.placement(),
                changed_by=actor,
                description=f"Отработка {label}",
            )
        logger.info("Created makeup session %s for %s", session.id, label)
        return session

    # Cancel and complete --------------------------------------------
    def cancel(
        self,
        target: Target,
        reason: str,
        *,
        scope: Scope = Scope.SINGLE,
        actor: str = "system",
    ) -> LessonSession | BatchResult:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Укажите причину отмены", field="reason")
        if scope is Scope.SINGLE:
            return self._cancel_one(target, reason, actor)

        _, members = self._series_members(target)
        result = BatchResult()
        for member in members:
            self._collect(
                result, member, lambda member=member: self._cancel_one(member, reason, actor)
            )
        return self._finish_batch("cancel_series", result)

    def _cancel_one(self, target: Target, reason: str, actor: str) -> LessonSession:
        with self._store.atomic():
            session = self.resolve(target, actor=actor, ensure_free=False)
            self._ensure_transition(session, SessionStatus.CANCELLED)
            self._store.update(
                session.id,
                {
                    "status": SessionStatus.CANCELLED,
                    "notes": _append_note(session.notes, f"{CANCELLED_TAG} {reason}"),
                },
            )
            self._history.append(
                session,
                HistoryEventType.CANCELLED,
                old_value={"status": SessionStatus.SCHEDULED.value},
                new_value={"status": SessionStatus.CANCELLED.value},
                changed_by=actor,
                description=f"Отменено: {reason}",
            )
        logger.info("Cancelled session %s", session.id)
        return session

    def complete(self, target: Target, *, actor: str = "system") -> LessonSession:
        with self._store.atomic():
            session = self.resolve(target, actor=actor)
            self._ensure_transition(session, SessionStatus.COMPLETED)
            self._store.update(session.id, {"status": SessionStatus.COMPLETED})
            self._history.append(
                session,
                HistoryEventType.COMPLETED,
                old_value={"status": SessionStatus.SCHEDULED.value},
                new_value={"status": SessionStatus.COMPLETED.value},
                changed_by=actor,
                description="Занятие проведено",
            )
        return session

    def complete_elapsed(self, *, actor: str = "system") -> int:
        """Complete every scheduled session that has already ended."""

        now: datetime = self._clock.now()
        candidates = self._store.list(
            SessionFilter.with_status(SessionStatus.SCHEDULED, date_to=now.date())
        )
        completed = 0
        for session in candidates:
            if session.ends_at > now:
                continue
            self.complete(session, actor=actor)
            completed += 1
        if completed:
            logger.info("Completed %d elapsed session(s)", completed)
        return completed

    # Non-placement updates ------------------------------------------
    def update_details(
        self, target: Target, patch: Mapping[str, Any], *, actor: str = "system"
    ) -> LessonSession:
        unknown = set(patch).difference(DETAIL_FIELDS)
        if unknown:
            raise ValidationError(
                f"Эти поля меняются только переносом: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        if not patch:
            raise ValidationError("Нет изменений")
        for key in ("capacity", "student_count"):
            value = patch.get(key)
            if value is not None and int(value) < 0:
                raise ValidationError("Значение не может быть отрицательным", field=key)
        with self._store.atomic():
            session = self.resolve(target, actor=actor)
            self._ensure_editable(session)
            old_value = {key: getattr(session, key) for key in patch}
            self._store.update(session.id, dict(patch))
            self._history.append(
                session,
                HistoryEventType.UPDATED,
                old_value=old_value,
                new_value=dict(patch),
                changed_by=actor,
                description="Изменены данные занятия",
            )
        return session

    def reassign(
        self,
        target: Target,
        *,
        teacher_name: str | None = None,
        classroom: str | None = None,
        actor: str = "system",
    ) -> LessonSession:
        """Substitute the teacher or change the classroom, keeping date and time."""

        if not teacher_name and not classroom:
            raise ValidationError("Укажите преподавателя или аудиторию", field="teacher_name")
        with self._store.atomic():
            session = self.resolve(target, actor=actor, ensure_free=False)
            self._ensure_editable(session)
            self._ensure_not_past(session.lesson_date)
            draft = SessionDraft(
                teacher_name=teacher_name or session.teacher_name,
                branch=session.branch,
                classroom=classroom or session.classroom,
                lesson_date=session.lesson_date,
                start_time=session.start_time,
                end_time=session.end_time,
            )
            old_value = {"teacher_name": session.teacher_name, "classroom": session.classroom}
            new_value = {"teacher_name": draft.teacher_name, "classroom": draft.classroom}
            if old_value == new_value:
                raise ValidationError("Нет изменений")
            self._ensure_free(draft, exclude_session_id=session.id)
            self._store.update(session.id, new_value)
            self._history.append(
                session,
                HistoryEventType.UPDATED,
                old_value=old_value,
                new_value=new_value,
                changed_by=actor,
                description="Замена преподавателя или аудитории",
            )
        logger.info("Reassigned session %s: %s", session.id, new_value)
        return session

    # Batches --------------------------------------------------------
    @staticmethod
    def _collect(result: BatchResult, item: Target, operation) -> None:
        try:
            result.succeeded.append(operation())
        except DomainError as exc:
            if isinstance(item, LessonSession):
                result.failed.append(BatchFailure(session=item, error=exc))
            else:
                result.failed.append(
                    BatchFailure(session=None, error=exc, lesson_date=item.lesson_date)
                )

    @staticmethod
    def _finish_batch(label: str, result: BatchResult) -> BatchResult:
        if result.failed:
            logger.warning(
                "%s finished with %d failure(s) out of %d item(s)",
                label,
                len(result.failed),
                len(result.failed) + len(result.succeeded),
            )
        return PartialBatchFailure.from_result(result)
