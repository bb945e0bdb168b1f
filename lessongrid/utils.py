from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, List

from .errors import ValidationError


DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M"

MINUTES_PER_DAY = 24 * 60

WEEKDAY_LABELS = ["Пн", "Вт", "Ср", "Чт", "Пт", "Сб", "Вс"]


def parse_date(value: str | date | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(value.strip(), DATE_FORMAT).date()


def parse_time(value: str | time | None) -> time | None:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    raw = value.strip()
    # Accept "HH:MM:SS" as stored by the hosted backend.
    if raw.count(":") == 2:
        raw = raw.rsplit(":", 1)[0]
    return datetime.strptime(raw, TIME_FORMAT).time()


def parse_weekdays(raw: str | None) -> List[int]:
    """Parse a stored weekday list ("0,2,4") into sorted unique weekdays.

    Monday is 0 and Sunday is 6, as returned by :meth:`date.weekday`. Tokens
    that are not integers in that range are ignored.
    """

    if not raw:
        return []
    days: set[int] = set()
    for token in raw.replace(";", ",").split(","):
        token = token.strip()
        if not token.isdigit():
            continue
        day = int(token)
        if 0 <= day <= 6:
            days.add(day)
    return sorted(days)


def serialise_weekdays(days: Iterable[int]) -> str:
    return ",".join(str(day) for day in sorted({int(day) for day in days}))


def daterange(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def week_bounds(day: date) -> tuple[date, date]:
    start = day - timedelta(days=day.weekday())
    return start, start + timedelta(days=6)


def month_bounds(day: date) -> tuple[date, date]:
    start = day.replace(day=1)
    next_month = (start + timedelta(days=32)).replace(day=1)
    return start, next_month - timedelta(days=1)


def overlaps(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    return a_start < b_end and b_start < a_end


def minutes_of(value: time) -> int:
    return value.hour * 60 + value.minute


def time_from_minutes(minutes: int) -> time:
    """Clock time for grid labels; midnight at the end of the day reads 23:59."""

    minutes = max(0, min(minutes, MINUTES_PER_DAY - 1))
    return time(minutes // 60, minutes % 60)


def duration_minutes(start: time, end: time) -> int:
    return minutes_of(end) - minutes_of(start)


def shift_time(value: time, minutes: int) -> time:
    """Move ``value`` by ``minutes``; the result must stay within the same day."""

    shifted = minutes_of(value) + minutes
    if not 0 <= shifted < MINUTES_PER_DAY:
        raise ValidationError("Занятие должно закончиться в тот же день", field="end_time")
    return time(shifted // 60, shifted % 60)


def format_time_range(start: time, end: time) -> str:
    return f"{start.strftime(TIME_FORMAT)}-{end.strftime(TIME_FORMAT)}"
