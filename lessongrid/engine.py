"""Wire the scheduling components around the current database session."""
from __future__ import annotations

from dataclasses import dataclass

from flask import current_app, g

from .clock import Clock, SystemClock
from .conflicts import ConflictDetector
from .directory import ResourceDirectory
from .extensions import db
from .grid import GridBuilder
from .history import HistoryLog
from .lifecycle import LifecycleManager
from .recurrence import RecurrenceExpander
from .store import SqlSessionStore
from .utils import parse_time


CLOCK_KEY = "lessongrid.clock"


@dataclass
class Engine:
    store: SqlSessionStore
    history: HistoryLog
    expander: RecurrenceExpander
    detector: ConflictDetector
    manager: LifecycleManager
    builder: GridBuilder
    directory: ResourceDirectory
    clock: Clock


def get_clock() -> Clock:
    clock = current_app.extensions.get(CLOCK_KEY)
    if clock is None:
        clock = SystemClock(current_app.config.get("SCHEDULE_TIMEZONE"))
        current_app.extensions[CLOCK_KEY] = clock
    return clock


def set_clock(app, clock: Clock) -> None:
    app.extensions[CLOCK_KEY] = clock


def build_engine() -> Engine:
    orm_session = db.session
    clock = get_clock()
    store = SqlSessionStore(orm_session)
    history = HistoryLog(orm_session, clock)
    expander = RecurrenceExpander(store, orm_session)
    detector = ConflictDetector(store)
    manager = LifecycleManager(store, detector, history, clock, expander)
    builder = GridBuilder(
        parse_time(current_app.config.get("GRID_DAY_START", "08:00")),
        parse_time(current_app.config.get("GRID_DAY_END", "22:00")),
    )
    return Engine(
        store=store,
        history=history,
        expander=expander,
        detector=detector,
        manager=manager,
        builder=builder,
        directory=ResourceDirectory(orm_session),
        clock=clock,
    )


def get_engine() -> Engine:
    """Engine for the current application context, built once per request."""

    if "lessongrid_engine" not in g:
        g.lessongrid_engine = build_engine()
    return g.lessongrid_engine
