"""Domain errors raised by the scheduling engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from datetime import date

    from .conflicts import Conflict
    from .models import LessonSession


class ErrorCode(Enum):
    VALIDATION = "VALIDATION_ERROR"
    CONFLICT = "SCHEDULE_CONFLICT"
    NOT_FOUND = "SESSION_NOT_FOUND"
    INVALID_DRAG_STATE = "INVALID_DRAG_STATE"
    GRID_SUPERSEDED = "GRID_SUPERSEDED"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.VALIDATION

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def as_payload(self) -> dict[str, Any]:
        return {"error": self.code.value, "message": self.message}


class ValidationError(DomainError):
    """Raised before any write when the requested change is not acceptable."""

    code = ErrorCode.VALIDATION

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def as_payload(self) -> dict[str, Any]:
        payload = super().as_payload()
        if self.field:
            payload["field"] = self.field
        return payload


class ConflictError(DomainError):
    """Raised when a placement overlaps a non-cancelled session of the same resource."""

    code = ErrorCode.CONFLICT

    def __init__(self, conflicts: Sequence["Conflict"]) -> None:
        self.conflicts = list(conflicts)
        labels = "; ".join(conflict.describe() for conflict in self.conflicts)
        super().__init__(f"Конфликт в расписании: {labels}")

    def as_payload(self) -> dict[str, Any]:
        payload = super().as_payload()
        payload["conflicts"] = [conflict.as_payload() for conflict in self.conflicts]
        return payload


class NotFoundError(DomainError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, session_id: int | None, *, what: str = "Занятие") -> None:
        super().__init__(f"Не найдено: {what.lower()} #{session_id}")
        self.session_id = session_id


class InvalidDragState(DomainError):
    code = ErrorCode.INVALID_DRAG_STATE


class GridSuperseded(DomainError):
    """A newer grid request replaced the one being computed."""

    code = ErrorCode.GRID_SUPERSEDED

    def __init__(self, channel: str) -> None:
        super().__init__("Запрос сетки устарел")
        self.channel = channel

    def as_payload(self) -> dict[str, Any]:
        payload = super().as_payload()
        payload["superseded"] = True
        return payload


@dataclass
class BatchFailure:
    session: "LessonSession | None"
    error: DomainError
    lesson_date: "date | None" = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "session_id": self.session.id if self.session is not None else None,
            **self.error.as_payload(),
        }
        if self.lesson_date is not None:
            payload["lesson_date"] = self.lesson_date.isoformat()
        return payload


@dataclass
class BatchResult:
    """Outcome of a series or range operation committed item by item."""

    succeeded: list["LessonSession"] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed)

    def as_payload(self) -> dict[str, Any]:
        return {
            "partial": self.is_partial,
            "succeeded": [session.as_payload() for session in self.succeeded],
            "failed": [failure.as_payload() for failure in self.failed],
        }


class PartialBatchFailure(BatchResult):
    """Returned, never raised, when some items of a batch could not be applied."""

    @classmethod
    def from_result(cls, result: BatchResult) -> BatchResult:
        if not result.failed:
            return result
        return cls(succeeded=result.succeeded, failed=result.failed)
