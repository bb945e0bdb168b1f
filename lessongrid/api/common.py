"""Request parsing helpers shared by the API namespaces."""
from __future__ import annotations

from datetime import date, time
from typing import Any, Mapping, Optional

from flask import request

from ..errors import ValidationError
from ..lifecycle import Scope
from ..models import SessionStatus
from ..store import SessionFilter
from ..utils import parse_date, parse_time, parse_weekdays


def json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Ожидается JSON-объект")
    return payload


def actor() -> str:
    return (request.headers.get("X-Actor") or "").strip() or "system"


def user_id() -> str:
    return (request.headers.get("X-User-Id") or "").strip() or actor()


def date_arg(value: Any, field: str, *, required: bool = False) -> Optional[date]:
    try:
        parsed = parse_date(value)
    except (TypeError, ValueError):
        raise ValidationError("Неверный формат даты, ожидается ГГГГ-ММ-ДД", field=field)
    if parsed is None and required:
        raise ValidationError("Укажите дату", field=field)
    return parsed


def time_arg(value: Any, field: str, *, required: bool = False) -> Optional[time]:
    try:
        parsed = parse_time(value)
    except (TypeError, ValueError):
        raise ValidationError("Неверный формат времени, ожидается ЧЧ:ММ", field=field)
    if parsed is None and required:
        raise ValidationError("Укажите время", field=field)
    return parsed


def int_arg(value: Any, field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("Ожидается целое число", field=field)


def text_arg(payload: Mapping[str, Any], field: str, *, required: bool = False) -> Optional[str]:
    value = payload.get(field)
    if value is not None and not isinstance(value, str):
        value = str(value)
    value = value.strip() if value else None
    if required and not value:
        raise ValidationError("Обязательное поле", field=field)
    return value


def scope_arg(value: Any) -> Scope:
    try:
        return Scope(value or Scope.SINGLE.value)
    except ValueError:
        raise ValidationError("Допустимые значения: single, series", field="scope")


def weekdays_arg(value: Any) -> list[int]:
    if isinstance(value, (list, tuple)):
        value = ",".join(str(item) for item in value)
    return parse_weekdays(value)


def status_arg(value: Optional[str]) -> frozenset[SessionStatus]:
    if not value:
        return frozenset()
    statuses = set()
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        try:
            statuses.add(SessionStatus(token))
        except ValueError:
            raise ValidationError(f"Неизвестный статус: {token}", field="status")
    return frozenset(statuses)


def filter_from_args(args: Mapping[str, Any]) -> SessionFilter:
    return SessionFilter(
        date_from=date_arg(args.get("date_from"), "date_from"),
        date_to=date_arg(args.get("date_to"), "date_to"),
        branch=args.get("branch") or None,
        teacher=args.get("teacher") or None,
        classroom=args.get("classroom") or None,
        group_id=int_arg(args.get("group_id"), "group_id"),
        status=status_arg(args.get("status")),
        query=args.get("query") or args.get("q") or None,
    )
