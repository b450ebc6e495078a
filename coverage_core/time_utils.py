"""Date helpers used by shift expansion and conflict evaluation.

Dates travel through the engine as ISO ``YYYY-MM-DD`` strings. Days of the
week use ISO numbering: 1 = Monday ... 7 = Sunday.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError

DAY_NAMES = {
    1: "Monday",
    2: "Tuesday",
    3: "Wednesday",
    4: "Thursday",
    5: "Friday",
    6: "Saturday",
    7: "Sunday",
}


def parse_iso_date(value: str | None, *, field: str = "date") -> date:
    """Parse YYYY-MM-DD, raising ValidationError for anything else."""
    if not value:
        raise ValidationError(f"{field} is required")
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}: {value!r}") from exc


def ensure_date_range(start: str, end: str | None) -> tuple[str, str]:
    """Validate a date range; a missing end means a single day."""
    start_d = parse_iso_date(start, field="start_date")
    end_d = parse_iso_date(end, field="end_date") if end else start_d
    if start_d > end_d:
        raise ValidationError("start_date must be on or before end_date")
    return start_d.isoformat(), end_d.isoformat()


def day_number(datum: str) -> int:
    return date.fromisoformat(datum).isoweekday()


def day_name(number: int | None) -> str:
    return DAY_NAMES.get(number or 0, "")


def expand_date_range(start: str, end: str) -> list[str]:
    """Every date from start to end inclusive."""
    current = date.fromisoformat(start)
    last = date.fromisoformat(end)
    out: list[str] = []
    while current <= last:
        out.append(current.isoformat())
        current += timedelta(days=1)
    return out


def today_in(time_zone: str = "UTC") -> str:
    try:
        tz = ZoneInfo(time_zone)
    except ZoneInfoNotFoundError:
        tz = ZoneInfo("UTC")
    return datetime.now(tz).date().isoformat()


def is_past(datum: str, today: str) -> bool:
    return datum < today
