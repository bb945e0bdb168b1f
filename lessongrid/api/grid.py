"""Grid projections of the schedule."""
from __future__ import annotations

from dataclasses import replace
from typing import Any

from flask import request
from flask_restx import Namespace, Resource

from ..engine import get_engine
from ..errors import ValidationError
from ..grid import ColumnKind, GridView, RowKind
from ..tickets import grid_requests
from ..utils import month_bounds, week_bounds
from .common import date_arg, filter_from_args, int_arg, user_id


ns = Namespace("grid", description="Schedule grid views")


def _channel(view: str) -> str:
    channel = request.headers.get("X-Grid-Channel") or request.args.get("channel")
    return f"{channel or user_id()}:{view}"


def _enum_arg(enum_class, value: Any, field: str):
    try:
        return enum_class(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_class)
        raise ValidationError(f"Допустимые значения: {allowed}", field=field)


def _seed_rows(row_kind: RowKind, branch: str | None) -> list[str]:
    directory = get_engine().directory
    if row_kind is RowKind.TEACHER:
        return directory.teachers(branch)
    if row_kind is RowKind.CLASSROOM:
        return directory.classrooms(branch)
    return directory.students(branch)


@ns.route("/week")
class WeekGrid(Resource):
    @ns.doc(
        params={
            "week": "Any date of the week (YYYY-MM-DD)",
            "rows": "teacher, classroom or student",
            "columns": "day or time_bucket",
            "step": "Bucket size in minutes for the time_bucket axis",
        }
    )
    def get(self) -> dict[str, Any]:
        engine = get_engine()
        week = date_arg(request.args.get("week"), "week") or engine.clock.today()
        view = GridView(
            row_kind=_enum_arg(RowKind, request.args.get("rows", "teacher"), "rows"),
            column_kind=_enum_arg(ColumnKind, request.args.get("columns", "day"), "columns"),
            week_start=week,
            step_minutes=int_arg(request.args.get("step"), "step") or 60,
        )
        criteria = filter_from_args(request.args)
        criteria = replace(criteria, date_from=view.week_start, date_to=view.week_end)
        ticket = grid_requests.begin(_channel("week"))
        occurrences = engine.expander.expand(criteria)
        grid = engine.builder.build(
            occurrences,
            view,
            rows=_seed_rows(view.row_kind, criteria.branch),
            ticket=ticket,
        )
        payload = grid.as_payload()
        payload["week_start"] = view.week_start.isoformat()
        payload["week_end"] = view.week_end.isoformat()
        return payload


@ns.route("/month")
class MonthGrid(Resource):
    def get(self) -> dict[str, Any]:
        engine = get_engine()
        raw_month = request.args.get("month")
        if raw_month and len(raw_month) == 7:
            raw_month = f"{raw_month}-01"
        month = date_arg(raw_month, "month") or engine.clock.today()
        first, last = month_bounds(month)
        calendar_start, _ = week_bounds(first)
        _, calendar_end = week_bounds(last)
        criteria = replace(
            filter_from_args(request.args), date_from=calendar_start, date_to=calendar_end
        )
        ticket = grid_requests.begin(_channel("month"))
        grid = engine.builder.build_month(
            engine.expander.expand(criteria), month, ticket=ticket
        )
        payload = grid.as_payload()
        payload["month"] = first.strftime("%Y-%m")
        return payload
