"""Recurring template endpoints."""
from __future__ import annotations

from typing import Any

from flask import current_app, request
from flask_restx import Namespace, Resource, fields

from ..engine import get_engine
from ..errors import ValidationError
from ..extensions import db
from ..models import RecurringTemplate
from ..utils import serialise_weekdays
from .common import actor, date_arg, int_arg, json_body, text_arg, time_arg, weekdays_arg
from .sessions import serialize_session, session_model


ns = Namespace("templates", description="Weekly recurring lesson templates")

template_model = ns.model(
    "RecurringTemplate",
    {
        "id": fields.Integer(readonly=True),
        "teacher_name": fields.String(required=True),
        "branch": fields.String(required=True),
        "classroom": fields.String(required=True),
        "weekdays": fields.List(fields.Integer, required=True, example=[0, 2]),
        "start_time": fields.String(required=True, example="14:00"),
        "end_time": fields.String(required=True, example="15:00"),
        "valid_from": fields.String(required=True),
        "valid_to": fields.String,
        "group_id": fields.Integer,
        "student_id": fields.Integer,
        "capacity": fields.Integer,
    },
)

materialize_model = ns.model("Materialize", {"lesson_date": fields.String(required=True)})


def serialize_template(template: RecurringTemplate) -> dict[str, Any]:
    return {
        "id": template.id,
        "teacher_name": template.teacher_name,
        "branch": template.branch,
        "classroom": template.classroom,
        "weekdays": sorted(template.weekday_set),
        "start_time": template.start_time.strftime("%H:%M"),
        "end_time": template.end_time.strftime("%H:%M"),
        "valid_from": template.valid_from.isoformat(),
        "valid_to": template.valid_to.isoformat() if template.valid_to else None,
        "group_id": template.group_id,
        "student_id": template.student_id,
        "capacity": template.capacity,
    }


@ns.route("")
class TemplateList(Resource):
    @ns.marshal_list_with(template_model)
    def get(self) -> list[dict[str, Any]]:
        branch = request.args.get("branch")
        query = RecurringTemplate.query.order_by(RecurringTemplate.id)
        if branch:
            query = query.filter(RecurringTemplate.branch == branch)
        return [serialize_template(template) for template in query.all()]

    @ns.expect(template_model, validate=True)
    @ns.marshal_with(template_model, code=201)
    def post(self) -> tuple[dict[str, Any], int]:
        payload = json_body()
        directory = get_engine().directory
        branch = text_arg(payload, "branch", required=True)
        weekdays = weekdays_arg(payload.get("weekdays"))
        if not weekdays:
            raise ValidationError("Не выбраны дни недели", field="weekdays")
        start = time_arg(payload.get("start_time"), "start_time", required=True)
        end = time_arg(payload.get("end_time"), "end_time", required=True)
        if start >= end:
            raise ValidationError(
                "Время окончания должно быть позже времени начала", field="end_time"
            )
        valid_from = date_arg(payload.get("valid_from"), "valid_from", required=True)
        valid_to = date_arg(payload.get("valid_to"), "valid_to")
        if valid_to is not None and valid_to < valid_from:
            raise ValidationError("Окончание действия раньше начала", field="valid_to")

        template = RecurringTemplate(
            teacher_name=directory.canonical_teacher(
                text_arg(payload, "teacher_name", required=True)
            ),
            branch=branch,
            classroom=directory.canonical_classroom(
                text_arg(payload, "classroom", required=True), branch
            ),
            weekdays=serialise_weekdays(weekdays),
            start_time=start,
            end_time=end,
            valid_from=valid_from,
            valid_to=valid_to,
            group_id=int_arg(payload.get("group_id"), "group_id"),
            student_id=int_arg(payload.get("student_id"), "student_id"),
            capacity=int_arg(payload.get("capacity"), "capacity"),
        )
        db.session.add(template)
        db.session.commit()
        current_app.logger.info("Created recurring template %s", template.id)
        return serialize_template(template), 201


@ns.route("/<int:template_id>")
class TemplateResource(Resource):
    @ns.marshal_with(template_model)
    def get(self, template_id: int) -> dict[str, Any]:
        return serialize_template(get_engine().expander.get_template(template_id))


@ns.route("/<int:template_id>/occurrences")
class TemplateOccurrences(Resource):
    def get(self, template_id: int) -> list[dict[str, Any]]:
        engine = get_engine()
        template = engine.expander.get_template(template_id)
        date_from = date_arg(request.args.get("date_from"), "date_from", required=True)
        date_to = date_arg(request.args.get("date_to"), "date_to", required=True)
        occurrences = engine.expander.occurrences_for([template], date_from, date_to)
        return [occurrence.as_payload() for occurrence in occurrences]


@ns.route("/<int:template_id>/materialize")
class TemplateMaterialize(Resource):
    @ns.expect(materialize_model, validate=True)
    @ns.marshal_with(session_model, code=201)
    def post(self, template_id: int) -> tuple[dict[str, Any], int]:
        payload = json_body()
        session = get_engine().manager.materialize(
            template_id,
            date_arg(payload.get("lesson_date"), "lesson_date", required=True),
            actor=actor(),
        )
        return serialize_session(session), 201
