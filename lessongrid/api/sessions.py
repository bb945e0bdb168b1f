"""Lesson session endpoints: listing and lifecycle operations."""
from __future__ import annotations

from typing import Any, Iterable

from flask import current_app, request
from flask_restx import Namespace, Resource, fields, marshal

from ..conflicts import blocking_only
from ..engine import get_engine
from ..errors import BatchResult
from ..lifecycle import SessionDraft
from ..models import LessonSession
from .common import (
    actor,
    date_arg,
    filter_from_args,
    int_arg,
    json_body,
    scope_arg,
    text_arg,
    time_arg,
    weekdays_arg,
)


ns = Namespace("sessions", description="Lesson sessions and their lifecycle")

SCOPES = ["single", "series"]

session_model = ns.model(
    "LessonSession",
    {
        "id": fields.Integer(readonly=True),
        "lesson_date": fields.String(required=True, example="2025-03-10"),
        "start_time": fields.String(required=True, example="14:00"),
        "end_time": fields.String(required=True, example="15:00"),
        "day_of_week": fields.Integer(readonly=True),
        "teacher_name": fields.String(required=True),
        "branch": fields.String(required=True),
        "classroom": fields.String(required=True),
        "status": fields.String(readonly=True),
        "notes": fields.String,
        "group_id": fields.Integer,
        "group_name": fields.String(readonly=True),
        "student_id": fields.Integer,
        "student_count": fields.Integer,
        "capacity": fields.Integer,
        "recurrence_source_id": fields.Integer(readonly=True),
        "rescheduled_from_id": fields.Integer(readonly=True),
        "rescheduled_to_id": fields.Integer(readonly=True),
        "makeup_for_id": fields.Integer(readonly=True),
    },
)

session_input_model = ns.clone(
    "LessonSessionInput",
    session_model,
    {
        "weekdays": fields.List(fields.Integer, example=[0, 2]),
        "date_to": fields.String(example="2025-05-31"),
    },
)

conflict_check_model = ns.clone(
    "ConflictCheck",
    session_model,
    {"exclude_session_id": fields.Integer},
)

reschedule_model = ns.model(
    "Reschedule",
    {
        "lesson_date": fields.String(required=True),
        "start_time": fields.String,
        "end_time": fields.String,
        "scope": fields.String(enum=SCOPES, default="single"),
        "teacher_name": fields.String,
        "classroom": fields.String,
        "reason": fields.String,
    },
)

cancel_model = ns.model(
    "Cancel",
    {
        "reason": fields.String(required=True),
        "scope": fields.String(enum=SCOPES, default="single"),
    },
)

copy_model = ns.model("Copy", {"lesson_date": fields.String(required=True)})

makeup_model = ns.model(
    "Makeup",
    {
        "lesson_date": fields.String(required=True),
        "start_time": fields.String(required=True),
        "end_time": fields.String(required=True),
        "classroom": fields.String,
    },
)

reassign_model = ns.model(
    "Reassign",
    {
        "teacher_name": fields.String,
        "classroom": fields.String,
    },
)

details_model = ns.model(
    "SessionDetails",
    {
        "notes": fields.String,
        "capacity": fields.Integer(min=0),
        "student_count": fields.Integer(min=0),
    },
)


def serialize_sessions(sessions: Iterable[LessonSession]) -> list[dict[str, Any]]:
    directory = get_engine().directory
    capacities = directory.capacities()
    return [
        session.as_payload(capacity=capacities.get((session.branch, session.classroom)))
        for session in sessions
    ]


def serialize_session(session: LessonSession) -> dict[str, Any]:
    return serialize_sessions([session])[0]


def serialize_outcome(outcome: LessonSession | BatchResult) -> dict[str, Any]:
    """Single sessions go through ``session_model``; batches keep their summary shape."""

    if isinstance(outcome, BatchResult):
        payload = outcome.as_payload()
        payload["succeeded"] = marshal(serialize_sessions(outcome.succeeded), session_model)
        return payload
    return marshal(serialize_session(outcome), session_model)


def draft_from_payload(payload: dict[str, Any]) -> SessionDraft:
    directory = get_engine().directory
    branch = text_arg(payload, "branch", required=True)
    group_id = int_arg(payload.get("group_id"), "group_id")
    student_id = int_arg(payload.get("student_id"), "student_id")
    return SessionDraft(
        teacher_name=directory.canonical_teacher(text_arg(payload, "teacher_name", required=True)),
        branch=branch,
        classroom=directory.canonical_classroom(
            text_arg(payload, "classroom", required=True), branch
        ),
        lesson_date=date_arg(payload.get("lesson_date"), "lesson_date", required=True),
        start_time=time_arg(payload.get("start_time"), "start_time", required=True),
        end_time=time_arg(payload.get("end_time"), "end_time", required=True),
        group_id=group_id,
        student_id=student_id,
        notes=text_arg(payload, "notes"),
        capacity=int_arg(payload.get("capacity"), "capacity"),
        student_count=int_arg(payload.get("student_count"), "student_count") or 0,
        student_ids=directory.roster(group_id, student_id),
    )


@ns.route("")
class SessionList(Resource):
    @ns.marshal_list_with(session_model)
    def get(self) -> list[dict[str, Any]]:
        criteria = filter_from_args(request.args)
        return serialize_sessions(get_engine().store.list(criteria))

    @ns.expect(session_input_model, validate=True)
    def post(self) -> tuple[dict[str, Any], int]:
        payload = json_body()
        draft = draft_from_payload(payload)
        manager = get_engine().manager
        if payload.get("weekdays"):
            date_to = date_arg(payload.get("date_to"), "date_to", required=True)
            result = manager.schedule_range(
                draft,
                draft.lesson_date,
                date_to,
                weekdays_arg(payload["weekdays"]),
                actor=actor(),
            )
            return serialize_outcome(result), 201 if result.succeeded else 200
        session = manager.schedule(draft, actor=actor())
        return serialize_outcome(session), 201


@ns.route("/<int:session_id>")
class SessionResource(Resource):
    @ns.marshal_with(session_model)
    def get(self, session_id: int) -> dict[str, Any]:
        return serialize_session(get_engine().store.get(session_id))

    @ns.expect(details_model, validate=True)
    @ns.marshal_with(session_model)
    def patch(self, session_id: int) -> dict[str, Any]:
        session = get_engine().manager.update_details(session_id, json_body(), actor=actor())
        return serialize_session(session)


@ns.route("/<int:session_id>/history")
class SessionHistory(Resource):
    def get(self, session_id: int) -> list[dict[str, Any]]:
        engine = get_engine()
        engine.store.get(session_id)
        return [event.as_payload() for event in engine.history.list_for(session_id)]


@ns.route("/<int:session_id>/reschedule")
class RescheduleResource(Resource):
    @ns.expect(reschedule_model, validate=True)
    def post(self, session_id: int) -> dict[str, Any]:
        payload = json_body()
        outcome = get_engine().manager.reschedule(
            session_id,
            date_arg(payload.get("lesson_date"), "lesson_date", required=True),
            time_arg(payload.get("start_time"), "start_time"),
            time_arg(payload.get("end_time"), "end_time"),
            scope=scope_arg(payload.get("scope")),
            teacher_name=text_arg(payload, "teacher_name"),
            classroom=text_arg(payload, "classroom"),
            reason=text_arg(payload, "reason"),
            actor=actor(),
        )
        return serialize_outcome(outcome)


@ns.route("/<int:session_id>/copy")
class CopyResource(Resource):
    @ns.expect(copy_model, validate=True)
    @ns.marshal_with(session_model, code=201)
    def post(self, session_id: int) -> tuple[dict[str, Any], int]:
        payload = json_body()
        session = get_engine().manager.copy(
            session_id,
            date_arg(payload.get("lesson_date"), "lesson_date", required=True),
            actor=actor(),
        )
        return serialize_session(session), 201


@ns.route("/<int:session_id>/makeup")
class MakeupResource(Resource):
    @ns.expect(makeup_model, validate=True)
    @ns.marshal_with(session_model, code=201)
    def post(self, session_id: int) -> tuple[dict[str, Any], int]:
        payload = json_body()
        session = get_engine().manager.makeup(
            session_id,
            date_arg(payload.get("lesson_date"), "lesson_date", required=True),
            time_arg(payload.get("start_time"), "start_time", required=True),
            time_arg(payload.get("end_time"), "end_time", required=True),
            classroom=text_arg(payload, "classroom"),
            actor=actor(),
        )
        return serialize_session(session), 201


@ns.route("/<int:session_id>/cancel")
class CancelResource(Resource):
    @ns.expect(cancel_model, validate=True)
    def post(self, session_id: int) -> dict[str, Any]:
        payload = json_body()
        outcome = get_engine().manager.cancel(
            session_id,
            payload.get("reason") or "",
            scope=scope_arg(payload.get("scope")),
            actor=actor(),
        )
        return serialize_outcome(outcome)


@ns.route("/<int:session_id>/complete")
class CompleteResource(Resource):
    @ns.marshal_with(session_model)
    def post(self, session_id: int) -> dict[str, Any]:
        return serialize_session(get_engine().manager.complete(session_id, actor=actor()))


@ns.route("/<int:session_id>/reassign")
class ReassignResource(Resource):
    @ns.expect(reassign_model, validate=True)
    @ns.marshal_with(session_model)
    def post(self, session_id: int) -> dict[str, Any]:
        payload = json_body()
        session = get_engine().manager.reassign(
            session_id,
            teacher_name=text_arg(payload, "teacher_name"),
            classroom=text_arg(payload, "classroom"),
            actor=actor(),
        )
        return serialize_session(session)


@ns.route("/conflicts")
class ConflictCheckResource(Resource):
    @ns.expect(conflict_check_model, validate=True)
    def post(self) -> dict[str, Any]:
        """Check a placement without writing anything.

        ``free`` only reflects teacher and classroom conflicts; student
        overlaps are listed with ``blocking: false``.
        """

        payload = json_body()
        draft = draft_from_payload(payload)
        conflicts = get_engine().detector.check_placement(
            teacher_name=draft.teacher_name,
            branch=draft.branch,
            classroom=draft.classroom,
            lesson_date=draft.lesson_date,
            start_time=draft.start_time,
            end_time=draft.end_time,
            exclude_session_id=int_arg(payload.get("exclude_session_id"), "exclude_session_id"),
            student_ids=draft.student_ids,
        )
        return {
            "free": not blocking_only(conflicts),
            "conflicts": [conflict.as_payload() for conflict in conflicts],
        }


@ns.route("/complete-elapsed")
class CompleteElapsedResource(Resource):
    def post(self) -> dict[str, int]:
        completed = get_engine().manager.complete_elapsed(actor=actor())
        current_app.logger.info("Auto-completed %s session(s) on request", completed)
        return {"completed": completed}
