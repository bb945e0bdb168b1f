"""Drag-and-drop placement as an explicit state machine.

``idle -> dragging -> hovering -> committing -> idle``. Only ``drop`` writes,
and it does so through :class:`LifecycleManager` after a fresh conflict
check. Drag state lives in a :class:`DragContext` per user, so the
controller itself can be rebuilt on every request.
"""
from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, time
from time import monotonic
from typing import Any, Dict, Optional, Union

from .conflicts import Conflict, ConflictDetector, blocking_only
from .errors import ConflictError, InvalidDragState
from .grid import RowKind
from .lifecycle import LifecycleManager, Scope
from .models import LessonSession
from .recurrence import Occurrence
from .utils import duration_minutes, shift_time


logger = logging.getLogger(__name__)

# Idle drag contexts are dropped once every this many lookups.
PURGE_EVERY = 256


class DragState(str, enum.Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    HOVERING = "hovering"
    COMMITTING = "committing"


@dataclass(frozen=True)
class GridCell:
    """A drop target: one row of a grid view on one date, optionally at a time."""

    row_kind: RowKind
    row_key: str
    lesson_date: date
    start_time: Optional[time] = None

    @property
    def key(self) -> str:
        start = self.start_time.strftime("%H:%M") if self.start_time else "*"
        return f"{self.row_kind.value}:{self.row_key}:{self.lesson_date.isoformat()}:{start}"


@dataclass
class DropResult:
    status: str
    conflicts: list[Conflict] = field(default_factory=list)
    session: Optional[LessonSession] = None

    @property
    def committed(self) -> bool:
        return self.status == "committed"

    def as_payload(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "conflicts": [conflict.as_payload() for conflict in self.conflicts],
            "session": self.session.as_payload() if self.session is not None else None,
        }


@dataclass
class DragContext:
    """Per-user drag state kept between requests."""

    state: DragState = DragState.IDLE
    occurrence: Optional[Occurrence] = None
    origin: Optional[GridCell] = None
    hover: Optional[GridCell] = None
    last_token: Optional[str] = None
    last_result: Optional[DropResult] = None
    touched: float = field(default_factory=monotonic)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def touch(self) -> None:
        self.touched = monotonic()

    def reset(self) -> None:
        self.state = DragState.IDLE
        self.occurrence = None
        self.origin = None
        self.hover = None


class PlacementRegistry:
    """Thread-safe map of user id to :class:`DragContext`.

    Contexts untouched for ``ttl_seconds`` are evicted unless a drop is being
    committed through them.
    """

    def __init__(self, ttl_seconds: float = 3600.0) -> None:
        self._lock = threading.Lock()
        self._contexts: Dict[str, DragContext] = {}
        self._counter = 0
        self._ttl = ttl_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def context_for(self, user: str) -> DragContext:
        if self._counter % PURGE_EVERY == PURGE_EVERY - 1:
            self.purge()
        with self._lock:
            self._counter += 1
            context = self._contexts.get(user)
            if context is None:
                context = DragContext()
                self._contexts[user] = context
            context.touch()
            return context

    def discard(self, user: str) -> None:
        with self._lock:
            self._contexts.pop(user, None)

    def purge(self) -> int:
        threshold = monotonic() - self._ttl
        with self._lock:
            stale = [
                user
                for user, context in self._contexts.items()
                if context.touched < threshold and context.state is not DragState.COMMITTING
            ]
            for user in stale:
                del self._contexts[user]
        if stale:
            logger.debug("Evicted %d idle drag context(s)", len(stale))
        return len(stale)


placements = PlacementRegistry()


DragTarget = Union[Occurrence, LessonSession]


class DragPlacementController:
    def __init__(
        self,
        detector: ConflictDetector,
        manager: LifecycleManager,
        context: Optional[DragContext] = None,
        *,
        actor: str = "system",
    ) -> None:
        self._detector = detector
        self._manager = manager
        self.context = context or DragContext()
        self._actor = actor

    @property
    def state(self) -> DragState:
        return self.context.state

    def drag_start(self, target: DragTarget, origin: GridCell) -> None:
        if isinstance(target, LessonSession):
            target = Occurrence.from_session(target)
        with self.context.lock:
            if self.context.state is DragState.COMMITTING:
                raise InvalidDragState("Предыдущее перемещение ещё сохраняется")
            self.context.reset()
            self.context.state = DragState.DRAGGING
            self.context.occurrence = target
            self.context.origin = origin
            self.context.touch()

    def drag_over(self, cell: GridCell) -> None:
        with self.context.lock:
            if self.context.state not in (DragState.DRAGGING, DragState.HOVERING):
                raise InvalidDragState("Нет перетаскиваемого занятия")
            self.context.hover = cell
            self.context.state = DragState.HOVERING
            self.context.touch()

    def cancel_drag(self) -> None:
        with self.context.lock:
            if self.context.state is DragState.COMMITTING:
                raise InvalidDragState("Перемещение уже сохраняется")
            self.context.reset()

    def drop(self, cell: GridCell, token: Optional[str] = None) -> DropResult:
        context = self.context
        with context.lock:
            if token is not None and token == context.last_token and context.last_result:
                return context.last_result
            if context.state is DragState.COMMITTING:
                raise InvalidDragState("Перемещение уже сохраняется")
            if context.state is DragState.IDLE or context.occurrence is None:
                raise InvalidDragState("Нет перетаскиваемого занятия")
            occurrence = context.occurrence
            origin = context.origin
            context.state = DragState.COMMITTING

        try:
            result = self._commit(occurrence, origin, cell)
        finally:
            with context.lock:
                context.reset()
        if token is not None and result.status != "conflict":
            with context.lock:
                context.last_token = token
                context.last_result = result
        return result

    def _commit(
        self, occurrence: Occurrence, origin: Optional[GridCell], cell: GridCell
    ) -> DropResult:
        if cell == origin:
            return DropResult(status="noop")

        current = occurrence
        if occurrence.session_id is not None:
            current = Occurrence.from_session(self._manager.resolve(occurrence.session_id))

        start = cell.start_time or current.start_time
        end = shift_time(start, duration_minutes(current.start_time, current.end_time))
        teacher_name = current.teacher_name
        classroom = current.classroom
        if cell.row_kind is RowKind.TEACHER:
            teacher_name = cell.row_key
        elif cell.row_kind is RowKind.CLASSROOM:
            classroom = cell.row_key

        if (
            cell.lesson_date == current.lesson_date
            and start == current.start_time
            and teacher_name == current.teacher_name
            and classroom == current.classroom
        ):
            return DropResult(status="noop")

        conflicts = self._detector.check_placement(
            teacher_name=teacher_name,
            branch=current.branch,
            classroom=classroom,
            lesson_date=cell.lesson_date,
            start_time=start,
            end_time=end,
            exclude_session_id=current.session_id,
            student_ids=current.student_ids,
        )
        blocking = blocking_only(conflicts)
        if blocking:
            return DropResult(status="conflict", conflicts=blocking)

        try:
            session = self._manager.reschedule(
                current,
                cell.lesson_date,
                start,
                end,
                scope=Scope.SINGLE,
                teacher_name=teacher_name,
                classroom=classroom,
                reason="drag",
                actor=self._actor,
            )
        except ConflictError as exc:
            # Someone else took the slot between the check and the commit.
            logger.info("Drop of %s lost a race: %s", current.key, exc.message)
            return DropResult(status="conflict", conflicts=exc.conflicts)
        return DropResult(status="committed", session=session, conflicts=conflicts)
