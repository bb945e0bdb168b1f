"""Project occurrences onto the schedule grid views.

Grid construction is pure and synchronous. It runs on every filter, week or
view change, so it is a single pass over the occurrences plus the cost of
laying out rows and columns.
"""
from __future__ import annotations

import enum
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, time, timedelta
from typing import Any, Iterable, Sequence

from .conflicts import ConflictDetector, ResourceType
from .errors import ValidationError
from .recurrence import Occurrence
from .tickets import GridTicket
from .utils import (
    WEEKDAY_LABELS,
    duration_minutes,
    format_time_range,
    minutes_of,
    month_bounds,
    time_from_minutes,
    week_bounds,
)


BUCKET_STEPS: tuple[int, ...] = (30, 60, 120, 180, 240)
DEFAULT_DAY_START = time(8, 0)
DEFAULT_DAY_END = time(22, 0)
# How many occurrences are placed between two staleness checks.
TICKET_CHECK_INTERVAL = 64


class RowKind(str, enum.Enum):
    TEACHER = "teacher"
    CLASSROOM = "classroom"
    STUDENT = "student"


class ColumnKind(str, enum.Enum):
    DAY = "day"
    TIME_BUCKET = "time_bucket"


@dataclass(frozen=True)
class GridView:
    row_kind: RowKind
    column_kind: ColumnKind
    week_start: date
    step_minutes: int = 60

    def __post_init__(self) -> None:
        if self.column_kind is ColumnKind.TIME_BUCKET and self.step_minutes not in BUCKET_STEPS:
            raise ValidationError(
                f"Шаг сетки должен быть одним из: {', '.join(map(str, BUCKET_STEPS))} мин.",
                field="step",
            )
        monday, _ = week_bounds(self.week_start)
        object.__setattr__(self, "week_start", monday)

    @property
    def week_end(self) -> date:
        return self.week_start + timedelta(days=6)


@dataclass(frozen=True)
class GridColumn:
    key: str
    label: str
    lesson_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "date": self.lesson_date.isoformat() if self.lesson_date else None,
            "start_time": self.start_time.strftime("%H:%M") if self.start_time else None,
            "end_time": self.end_time.strftime("%H:%M") if self.end_time else None,
        }


@dataclass
class Grid:
    row_kind: str
    column_kind: str
    rows: list[str]
    columns: list[GridColumn]
    cells: dict[tuple[str, str], list[Occurrence]] = field(default_factory=dict)
    row_hours: dict[str, float] = field(default_factory=dict)
    conflict_keys: set[str] = field(default_factory=set)
    student_conflict_keys: set[str] = field(default_factory=set)

    def cell(self, row: str, column_key: str) -> list[Occurrence]:
        return self.cells.get((row, column_key), [])

    def placements_of(self, occurrence_key: str) -> list[tuple[str, str]]:
        return [
            position
            for position, entries in self.cells.items()
            if any(entry.key == occurrence_key for entry in entries)
        ]

    def as_payload(self) -> dict[str, Any]:
        return {
            "row_kind": self.row_kind,
            "column_kind": self.column_kind,
            "columns": [column.as_payload() for column in self.columns],
            "rows": [
                {
                    "key": row,
                    "hours": round(self.row_hours.get(row, 0.0), 2),
                    "cells": {
                        column.key: [
                            {
                                **entry.as_payload(),
                                "conflict": entry.key in self.conflict_keys,
                                "student_conflict": entry.key in self.student_conflict_keys,
                            }
                            for entry in self.cell(row, column.key)
                        ]
                        for column in self.columns
                        if self.cell(row, column.key)
                    },
                }
                for row in self.rows
            ],
            "conflicts": sorted(self.conflict_keys),
            "student_conflicts": sorted(self.student_conflict_keys),
        }


def _row_keys(occurrence: Occurrence, row_kind: RowKind) -> Sequence[str]:
    if row_kind is RowKind.TEACHER:
        return (occurrence.teacher_name,)
    if row_kind is RowKind.CLASSROOM:
        return (occurrence.classroom,)
    return occurrence.student_names


def _sorted_rows(seed: Iterable[str], discovered: Iterable[str]) -> list[str]:
    rows = {row for row in seed if row}
    rows.update(row for row in discovered if row)
    return sorted(rows, key=lambda value: (value.lower(), value))


class GridBuilder:
    def __init__(self, day_start: time = DEFAULT_DAY_START, day_end: time = DEFAULT_DAY_END) -> None:
        if day_start >= day_end:
            raise ValueError("Grid day must start before it ends")
        self.day_start = day_start
        self.day_end = day_end

    # Columns --------------------------------------------------------
    @staticmethod
    def day_columns(week_start: date) -> list[GridColumn]:
        columns = []
        for offset in range(7):
            day = week_start + timedelta(days=offset)
            columns.append(
                GridColumn(
                    key=day.isoformat(),
                    label=f"{WEEKDAY_LABELS[day.weekday()]} {day.strftime('%d.%m')}",
                    lesson_date=day,
                )
            )
        return columns

    def bucket_columns(self, step_minutes: int) -> list[GridColumn]:
        columns = []
        start = minutes_of(self.day_start)
        end = minutes_of(self.day_end)
        while start < end:
            bucket_start = time_from_minutes(start)
            bucket_end = time_from_minutes(min(start + step_minutes, end))
            label = format_time_range(bucket_start, bucket_end)
            columns.append(
                GridColumn(key=label, label=label, start_time=bucket_start, end_time=bucket_end)
            )
            start += step_minutes
        return columns

    @staticmethod
    def weekdays_for(occurrence: Occurrence, week_start: date) -> list[int]:
        """Weekdays of ``occurrence`` clamped to the week starting at ``week_start``."""

        week_end = week_start + timedelta(days=6)
        if week_start <= occurrence.lesson_date <= week_end:
            return [occurrence.lesson_date.weekday()]
        return []

    def bucket_index(self, start_time: time, step_minutes: int) -> int | None:
        offset = minutes_of(start_time) - minutes_of(self.day_start)
        if offset < 0 or start_time >= self.day_end:
            return None
        return offset // step_minutes

    # Builders -------------------------------------------------------
    def build(
        self,
        occurrences: Iterable[Occurrence],
        view: GridView,
        *,
        rows: Iterable[str] = (),
        ticket: GridTicket | None = None,
    ) -> Grid:
        if view.column_kind is ColumnKind.DAY:
            columns = self.day_columns(view.week_start)
        else:
            columns = self.bucket_columns(view.step_minutes)

        # Stable sort: equal start times keep their creation order.
        ordered = sorted(occurrences, key=lambda item: item.start_time)
        cells: dict[tuple[str, str], list[Occurrence]] = defaultdict(list)
        row_hours: dict[str, float] = defaultdict(float)
        discovered: set[str] = set()
        placed: list[Occurrence] = []

        for index, occurrence in enumerate(ordered):
            if ticket is not None and index % TICKET_CHECK_INTERVAL == 0:
                ticket.ensure_current()
            weekdays = self.weekdays_for(occurrence, view.week_start)
            if not weekdays:
                continue
            if view.column_kind is ColumnKind.DAY:
                column_keys = [columns[day].key for day in weekdays]
            else:
                bucket = self.bucket_index(occurrence.start_time, view.step_minutes)
                if bucket is None:
                    continue
                column_keys = [columns[bucket].key]
            row_keys = _row_keys(occurrence, view.row_kind)
            if not row_keys:
                continue
            placed.append(occurrence)
            for row in row_keys:
                discovered.add(row)
                for column_key in column_keys:
                    cells[(row, column_key)].append(occurrence)
                if not occurrence.is_cancelled:
                    row_hours[row] += (
                        duration_minutes(occurrence.start_time, occurrence.end_time) / 60
                    ) * len(column_keys)

        if ticket is not None:
            ticket.ensure_current()
        return Grid(
            row_kind=view.row_kind.value,
            column_kind=view.column_kind.value,
            rows=_sorted_rows(rows, discovered),
            columns=columns,
            cells=dict(cells),
            row_hours=dict(row_hours),
            conflict_keys=ConflictDetector.scan(placed),
            student_conflict_keys=ConflictDetector.scan(placed, resources={ResourceType.STUDENT}),
        )

    def build_month(
        self,
        occurrences: Iterable[Occurrence],
        month: date,
        *,
        ticket: GridTicket | None = None,
    ) -> Grid:
        """Month calendar: one row per Monday-starting week, one column per weekday."""

        first, last = month_bounds(month)
        calendar_start, _ = week_bounds(first)
        _, calendar_end = week_bounds(last)
        rows: list[str] = []
        current = calendar_start
        while current <= calendar_end:
            rows.append(current.isoformat())
            current += timedelta(days=7)
        columns = [
            GridColumn(key=str(weekday), label=WEEKDAY_LABELS[weekday])
            for weekday in range(7)
        ]

        ordered = sorted(occurrences, key=lambda item: (item.lesson_date, item.start_time))
        cells: dict[tuple[str, str], list[Occurrence]] = defaultdict(list)
        row_hours: dict[str, float] = defaultdict(float)
        placed: list[Occurrence] = []
        for index, occurrence in enumerate(ordered):
            if ticket is not None and index % TICKET_CHECK_INTERVAL == 0:
                ticket.ensure_current()
            if not calendar_start <= occurrence.lesson_date <= calendar_end:
                continue
            week_start, _ = week_bounds(occurrence.lesson_date)
            row = week_start.isoformat()
            cells[(row, str(occurrence.lesson_date.weekday()))].append(occurrence)
            placed.append(occurrence)
            if not occurrence.is_cancelled:
                row_hours[row] += (
                    duration_minutes(occurrence.start_time, occurrence.end_time) / 60
                )

        if ticket is not None:
            ticket.ensure_current()
        return Grid(
            row_kind="week",
            column_kind="weekday",
            rows=rows,
            columns=columns,
            cells=dict(cells),
            row_hours=dict(row_hours),
            conflict_keys=ConflictDetector.scan(placed),
            student_conflict_keys=ConflictDetector.scan(placed, resources={ResourceType.STUDENT}),
        )
