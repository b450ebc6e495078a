"""Column constants, pipe helpers, and type coercion for CSV and XLSX I/O."""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Seed CSV column names
# ---------------------------------------------------------------------------

STAFF_COLS = [
    "id",
    "first_name",
    "last_name",
    "display_name",
    "phone",
    "email",
    "roles",
    "can_change_diapers",
    "can_lift_children",
    "active",
    "qualified_class_groups",
]

CLASSROOMS_COLS = [
    "id",
    "name",
]

TIME_SLOTS_COLS = [
    "id",
    "code",
    "name",
    "display_order",
]

CLASS_GROUPS_COLS = [
    "id",
    "name",
    "classroom_id",
    "diaper_changing_required",
    "lifting_children_required",
]

BASELINE_SCHEDULE_COLS = [
    "teacher_id",
    "day_of_week",
    "time_slot_id",
    "classroom_id",
    "class_group_id",
    "is_floater",
]

AVAILABILITY_COLS = [
    "sub_id",
    "days_of_week",
    "time_slots",
    "available",
]

AVAILABILITY_EXCEPTIONS_COLS = [
    "sub_id",
    "date",
    "time_slots",
    "available",
]

TIME_OFF_COLS = [
    "id",
    "teacher_id",
    "start_date",
    "end_date",
    "status",
    "reason",
    "time_slots",
    "is_partial",
]

# staff.roles values
ROLE_TEACHER = "teacher"
ROLE_SUB = "sub"
ROLE_FLEXIBLE = "flexible"

# ---------------------------------------------------------------------------
# Workbook column names
# ---------------------------------------------------------------------------

COVERAGE_SHEET_COLS = [
    "date",
    "weekday",
    "time_slot",
    "classroom",
    "status",
    "sub_name",
    "is_partial",
]

RECOMMENDATIONS_SHEET_COLS = [
    "name",
    "is_flexible",
    "coverage_percent",
    "shifts_covered",
    "total_shifts",
    "conflict_count",
    "can_cover",
    "cannot_cover",
    "phone",
    "email",
]

COMBINATIONS_SHEET_COLS = [
    "rank",
    "strategy",
    "subs",
    "coverage_percent",
    "total_shifts_covered",
    "total_shifts_needed",
    "total_conflicts",
    "uncovered_shifts",
]

# ---------------------------------------------------------------------------
# Pipe-separated field helpers
# ---------------------------------------------------------------------------

PIPE = "|"


def pipe_join(values: list | None) -> str:
    """Join a list into a pipe-separated string. Empty/None -> empty string."""
    if not values:
        return ""
    return PIPE.join(str(v) for v in values if v is not None and str(v).strip())


def pipe_split(value: str | None) -> list[str]:
    """Split a pipe-separated string into a list. Empty/None -> empty list."""
    if not value or not str(value).strip():
        return []
    return [v.strip() for v in str(value).split(PIPE) if v.strip()]


# ---------------------------------------------------------------------------
# Type coercion helpers for reading CSV values
# ---------------------------------------------------------------------------


def to_int(value: str | None, default: int = 0) -> int:
    """Coerce a CSV string to int. Empty/None -> default."""
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(float(value))
    except (ValueError, TypeError):
        return default


def to_bool(value: str | None, default: bool = False) -> bool:
    """Coerce a CSV string to bool. TRUE/true/1/yes -> True; empty -> default."""
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip().upper() in ("TRUE", "1", "YES")


def to_str_or_none(value: str | None) -> str | None:
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


def fmt_bool(value: bool) -> str:
    """Format a bool for CSV/XLSX output."""
    return "TRUE" if value else "FALSE"
