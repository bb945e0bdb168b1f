"""Drag-and-drop placement endpoints, one drag state per user."""
from __future__ import annotations

from typing import Any, Mapping

from flask_restx import Namespace, Resource, fields

from ..engine import get_engine
from ..errors import ValidationError
from ..grid import RowKind
from ..placement import DragPlacementController, GridCell, placements
from ..recurrence import Occurrence
from .common import actor, date_arg, int_arg, json_body, text_arg, time_arg, user_id


ns = Namespace("placement", description="Interactive drag-and-drop placement")

cell_model = ns.model(
    "GridCell",
    {
        "row_kind": fields.String(required=True, enum=[kind.value for kind in RowKind]),
        "row_key": fields.String(required=True),
        "lesson_date": fields.String(required=True),
        "start_time": fields.String,
    },
)

drop_model = ns.model(
    "Drop",
    {
        "cell": fields.Nested(cell_model, required=True),
        "token": fields.String,
    },
)

start_model = ns.model(
    "DragStart",
    {
        "session_id": fields.Integer,
        "template_id": fields.Integer,
        "lesson_date": fields.String,
        "origin": fields.Nested(cell_model, required=True),
    },
)


def controller() -> DragPlacementController:
    engine = get_engine()
    return DragPlacementController(
        engine.detector,
        engine.manager,
        placements.context_for(user_id()),
        actor=actor(),
    )


def cell_from_payload(payload: Any) -> GridCell:
    if not isinstance(payload, Mapping):
        raise ValidationError("Укажите ячейку сетки", field="cell")
    try:
        row_kind = RowKind(payload.get("row_kind"))
    except ValueError:
        raise ValidationError("Неизвестный тип строки", field="row_kind")
    return GridCell(
        row_kind=row_kind,
        row_key=text_arg(payload, "row_key", required=True),
        lesson_date=date_arg(payload.get("lesson_date"), "lesson_date", required=True),
        start_time=time_arg(payload.get("start_time"), "start_time"),
    )


def target_from_payload(payload: Mapping[str, Any]) -> Occurrence:
    engine = get_engine()
    session_id = int_arg(payload.get("session_id"), "session_id")
    if session_id is not None:
        return Occurrence.from_session(engine.store.get(session_id))
    template_id = int_arg(payload.get("template_id"), "template_id")
    if template_id is None:
        raise ValidationError("Укажите занятие или шаблон", field="session_id")
    lesson_date = date_arg(payload.get("lesson_date"), "lesson_date", required=True)
    template = engine.expander.get_template(template_id)
    if not template.covers(lesson_date):
        raise ValidationError("Дата не входит в расписание шаблона", field="lesson_date")
    return Occurrence.from_template(template, lesson_date)


def state_payload(drag: DragPlacementController) -> dict[str, Any]:
    context = drag.context
    return {
        "state": context.state.value,
        "target": context.occurrence.key if context.occurrence else None,
        "origin": context.origin.key if context.origin else None,
        "hover": context.hover.key if context.hover else None,
    }


@ns.route("")
class PlacementState(Resource):
    def get(self) -> dict[str, Any]:
        return state_payload(controller())

    def delete(self) -> dict[str, Any]:
        drag = controller()
        drag.cancel_drag()
        return state_payload(drag)


@ns.route("/start")
class DragStart(Resource):
    @ns.expect(start_model, validate=True)
    def post(self) -> dict[str, Any]:
        payload = json_body()
        drag = controller()
        drag.drag_start(target_from_payload(payload), cell_from_payload(payload.get("origin")))
        return state_payload(drag)


@ns.route("/over")
class DragOver(Resource):
    @ns.expect(cell_model, validate=True)
    def post(self) -> dict[str, Any]:
        drag = controller()
        drag.drag_over(cell_from_payload(json_body()))
        return state_payload(drag)


@ns.route("/drop")
class Drop(Resource):
    @ns.expect(drop_model, validate=True)
    def post(self) -> tuple[dict[str, Any], int]:
        payload = json_body()
        result = controller().drop(
            cell_from_payload(payload.get("cell")), token=text_arg(payload, "token")
        )
        return result.as_payload(), 409 if result.status == "conflict" else 200
