from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session as OrmSession

from .clock import Clock
from .models import HistoryEvent, HistoryEventType, LessonSession


def _dump(value: Mapping[str, Any] | str | None) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


class HistoryLog:
    """Append-only audit trail of lifecycle events.

    Read-side only: nothing in the engine consults the log to take a
    decision. Events of a session are returned in ``changed_at`` order, and
    ``changed_at`` never goes backwards for a given session.
    """

    def __init__(self, orm_session: OrmSession, clock: Clock) -> None:
        self._orm = orm_session
        self._clock = clock

    def append(
        self,
        session: LessonSession,
        event_type: HistoryEventType,
        *,
        old_value: Mapping[str, Any] | str | None = None,
        new_value: Mapping[str, Any] | str | None = None,
        changed_by: str = "system",
        description: str | None = None,
    ) -> HistoryEvent:
        changed_at = self._clock.now()
        latest = self._orm.scalar(
            select(func.max(HistoryEvent.changed_at)).where(
                HistoryEvent.session_id == session.id
            )
        )
        if latest is not None and changed_at <= latest:
            changed_at = latest + timedelta(microseconds=1)
        event = HistoryEvent(
            session_id=session.id,
            event_type=event_type,
            old_value=_dump(old_value),
            new_value=_dump(new_value),
            changed_at=changed_at,
            changed_by=changed_by or "system",
            description=description,
        )
        self._orm.add(event)
        self._orm.flush()
        return event

    def list_for(self, session_id: int) -> list[HistoryEvent]:
        statement = (
            select(HistoryEvent)
            .where(HistoryEvent.session_id == session_id)
            .order_by(HistoryEvent.changed_at, HistoryEvent.id)
        )
        return list(self._orm.scalars(statement))
