"""Load a school dataset from a CSV directory into the store."""

from __future__ import annotations

import csv
import logging
import sqlite3
from pathlib import Path

from coverage_core.errors import ValidationError
from coverage_core.lifecycle import TIME_OFF_TRANSITIONS
from coverage_core.time_utils import day_number, ensure_date_range, expand_date_range, parse_iso_date

from ..store import Store, new_id
from .schemas import (
    ROLE_FLEXIBLE,
    ROLE_SUB,
    ROLE_TEACHER,
    pipe_split,
    to_bool,
    to_int,
    to_str_or_none,
)

logger = logging.getLogger(__name__)

REQUIRED_FILES = ("staff.csv", "classrooms.csv", "time_slots.csv")


def load_seed(store: Store, directory: str | Path, school_id: str) -> dict[str, int]:
    """Insert every CSV in ``directory`` for ``school_id`` in one transaction.

    staff.csv, classrooms.csv and time_slots.csv are required; class_groups,
    baseline_schedule, availability, availability_exceptions and time_off are
    loaded when present. Returns row counts per table.

    Raises FileNotFoundError if required files are missing.
    """
    d = Path(directory)
    for name in REQUIRED_FILES:
        if not (d / name).exists():
            raise FileNotFoundError(f"Required file not found: {d / name}")
    if not school_id:
        raise ValidationError("school_id is required to load seed data")

    counts: dict[str, int] = {}
    with store.transaction() as conn:
        # -- classrooms.csv & time_slots.csv --------------------------------------
        for row in _read_csv(d / "classrooms.csv"):
            conn.execute(
                "INSERT INTO classrooms (id, school_id, name) VALUES (?, ?, ?)",
                (row["id"], school_id, row["name"]),
            )
            counts["classrooms"] = counts.get("classrooms", 0) + 1

        for row in _read_csv(d / "time_slots.csv"):
            conn.execute(
                "INSERT INTO time_slots (id, school_id, code, name, display_order) VALUES (?, ?, ?, ?, ?)",
                (row["id"], school_id, row["code"], to_str_or_none(row.get("name")),
                 to_int(row.get("display_order"))),
            )
            counts["time_slots"] = counts.get("time_slots", 0) + 1

        # -- staff.csv ------------------------------------------------------------
        qualified: list[tuple[str, str]] = []
        for row in _read_csv(d / "staff.csv"):
            roles = set(pipe_split(row.get("roles")))
            conn.execute(
                """
                INSERT INTO staff (
                    id, school_id, first_name, last_name, display_name, phone, email,
                    is_teacher, is_sub, is_flexible, can_change_diapers, can_lift_children, active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row["id"], school_id, row.get("first_name") or "", row.get("last_name") or "",
                    to_str_or_none(row.get("display_name")), to_str_or_none(row.get("phone")),
                    to_str_or_none(row.get("email")),
                    int(ROLE_TEACHER in roles), int(ROLE_SUB in roles), int(ROLE_FLEXIBLE in roles),
                    int(to_bool(row.get("can_change_diapers"))), int(to_bool(row.get("can_lift_children"))),
                    int(to_bool(row.get("active"), default=True)),
                ),
            )
            for group_id in pipe_split(row.get("qualified_class_groups")):
                qualified.append((row["id"], group_id))
            counts["staff"] = counts.get("staff", 0) + 1

        # -- class_groups.csv -----------------------------------------------------
        for row in _read_optional(d / "class_groups.csv"):
            conn.execute(
                """
                INSERT INTO class_groups (
                    id, school_id, name, classroom_id,
                    diaper_changing_required, lifting_children_required
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    row["id"], school_id, row["name"], to_str_or_none(row.get("classroom_id")),
                    int(to_bool(row.get("diaper_changing_required"))),
                    int(to_bool(row.get("lifting_children_required"))),
                ),
            )
            counts["class_groups"] = counts.get("class_groups", 0) + 1

        for sub_id, group_id in qualified:
            conn.execute(
                """
                INSERT INTO sub_class_preferences (id, school_id, sub_id, class_group_id, can_teach)
                VALUES (?, ?, ?, ?, 1)
                """,
                (new_id(), school_id, sub_id, group_id),
            )
        if qualified:
            counts["sub_class_preferences"] = len(qualified)

        # -- baseline_schedule.csv ------------------------------------------------
        baseline: dict[tuple[str, int], list[str]] = {}
        for row in _read_optional(d / "baseline_schedule.csv"):
            day = _day(row.get("day_of_week"))
            conn.execute(
                """
                INSERT INTO teacher_schedules (
                    id, school_id, teacher_id, day_of_week, time_slot_id,
                    classroom_id, class_group_id, is_floater
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id(), school_id, row["teacher_id"], day, row["time_slot_id"],
                    row["classroom_id"], to_str_or_none(row.get("class_group_id")),
                    int(to_bool(row.get("is_floater"))),
                ),
            )
            slots = baseline.setdefault((row["teacher_id"], day), [])
            if row["time_slot_id"] not in slots:
                slots.append(row["time_slot_id"])
            counts["teacher_schedules"] = counts.get("teacher_schedules", 0) + 1

        # -- availability.csv & availability_exceptions.csv -----------------------
        for row in _read_optional(d / "availability.csv"):
            available = int(to_bool(row.get("available"), default=True))
            for day in pipe_split(row.get("days_of_week")):
                for slot in pipe_split(row.get("time_slots")):
                    conn.execute(
                        """
                        INSERT INTO sub_availability (id, school_id, sub_id, day_of_week, time_slot_id, available)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (new_id(), school_id, row["sub_id"], _day(day), slot, available),
                    )
                    counts["sub_availability"] = counts.get("sub_availability", 0) + 1

        for row in _read_optional(d / "availability_exceptions.csv"):
            datum = parse_iso_date(row.get("date"), field="date")
            available = int(to_bool(row.get("available")))
            for slot in pipe_split(row.get("time_slots")):
                conn.execute(
                    """
                    INSERT INTO sub_availability_exceptions (id, school_id, sub_id, date, time_slot_id, available)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (new_id(), school_id, row["sub_id"], datum.isoformat(), slot, available),
                )
                counts["sub_availability_exceptions"] = counts.get("sub_availability_exceptions", 0) + 1

        # -- time_off.csv ---------------------------------------------------------
        for row in _read_optional(d / "time_off.csv"):
            shifts = _insert_time_off(conn, school_id, row, baseline)
            counts["time_off_requests"] = counts.get("time_off_requests", 0) + 1
            counts["time_off_shifts"] = counts.get("time_off_shifts", 0) + shifts

    logger.info("Loaded seed data from %s for school %s: %s", d, school_id, counts)
    return counts


def _insert_time_off(
    conn: sqlite3.Connection,
    school_id: str,
    row: dict[str, str],
    baseline: dict[tuple[str, int], list[str]],
) -> int:
    """Insert one time-off request and its shifts.

    Without explicit time_slots the shifts follow the teacher's baseline
    schedule: every date in range, every slot they normally work that day.
    """
    start, end = ensure_date_range(row["start_date"], to_str_or_none(row.get("end_date")))
    status = to_str_or_none(row.get("status")) or "active"
    if status not in TIME_OFF_TRANSITIONS:
        raise ValidationError(f"Unknown time off status: {status}")
    conn.execute(
        """
        INSERT INTO time_off_requests (id, school_id, teacher_id, start_date, end_date, status, reason)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (row["id"], school_id, row["teacher_id"], start, end, status, to_str_or_none(row.get("reason"))),
    )
    explicit = pipe_split(row.get("time_slots"))
    is_partial = int(to_bool(row.get("is_partial")))
    inserted = 0
    for datum in expand_date_range(start, end):
        dow = day_number(datum)
        slots = explicit or baseline.get((row["teacher_id"], dow), [])
        for slot in slots:
            conn.execute(
                """
                INSERT INTO time_off_shifts (
                    id, school_id, time_off_request_id, date, day_of_week, time_slot_id, is_partial
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (new_id(), school_id, row["id"], datum, dow, slot, is_partial),
            )
            inserted += 1
    return inserted


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _day(value: str | None) -> int:
    day = to_int(value)
    if not 1 <= day <= 7:
        raise ValidationError(f"day_of_week must be between 1 and 7, got {value!r}")
    return day


def _read_csv(path: Path) -> list[dict[str, str]]:
    """Read a CSV file into a list of dicts via csv.DictReader."""
    if not path.exists():
        raise FileNotFoundError(f"Required file not found: {path}")
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


def _read_optional(path: Path) -> list[dict[str, str]]:
    if not path.exists():
        return []
    return _read_csv(path)
