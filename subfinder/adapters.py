"""SQLite-backed constraint sources.

Bound to one open connection so that write paths can re-run conflict checks
inside their own transaction.
"""

from __future__ import annotations

import sqlite3
from typing import Any, Mapping

from coverage_core.errors import NotFoundError
from coverage_core.models import AssignmentHolder, TenantContext
from coverage_core.shift_key import ShiftKey
from coverage_core.time_utils import day_number, expand_date_range


def staff_display_name(row: Mapping[str, Any] | None) -> str | None:
    if row is None:
        return None
    display = (row["display_name"] or "").strip() if "display_name" in row.keys() else ""
    if display:
        return display
    full = f"{row['first_name'] or ''} {row['last_name'] or ''}".strip()
    return full or None


def fetch_staff(conn: sqlite3.Connection, tenant: TenantContext, staff_id: str) -> sqlite3.Row:
    row = conn.execute(
        "SELECT * FROM staff WHERE school_id = ? AND id = ?", (tenant.school_id, staff_id)
    ).fetchone()
    if row is None:
        raise NotFoundError(f"Staff member not found: {staff_id}")
    return row


class SqliteConstraintSources:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def weekly_availability(
        self, tenant: TenantContext, candidate_id: str
    ) -> dict[tuple[int, str], bool]:
        rows = self.conn.execute(
            """
            SELECT day_of_week, time_slot_id, available
            FROM sub_availability
            WHERE school_id = ? AND sub_id = ?
            """,
            (tenant.school_id, candidate_id),
        ).fetchall()
        return {(int(r["day_of_week"]), r["time_slot_id"]): bool(r["available"]) for r in rows}

    def date_exceptions(
        self, tenant: TenantContext, candidate_id: str, start: str, end: str
    ) -> dict[ShiftKey, bool]:
        rows = self.conn.execute(
            """
            SELECT date, time_slot_id, available
            FROM sub_availability_exceptions
            WHERE school_id = ? AND sub_id = ? AND date BETWEEN ? AND ?
            """,
            (tenant.school_id, candidate_id, start, end),
        ).fetchall()
        return {ShiftKey(r["date"], r["time_slot_id"]): bool(r["available"]) for r in rows}

    def regular_teaching_load(
        self, tenant: TenantContext, candidate_id: str, start: str, end: str
    ) -> set[ShiftKey]:
        rows = self.conn.execute(
            """
            SELECT day_of_week, time_slot_id, classroom_id
            FROM teacher_schedules
            WHERE school_id = ? AND teacher_id = ?
            """,
            (tenant.school_id, candidate_id),
        ).fetchall()
        by_day: dict[int, list[sqlite3.Row]] = {}
        for row in rows:
            by_day.setdefault(int(row["day_of_week"]), []).append(row)
        if not by_day:
            return set()
        keys: set[ShiftKey] = set()
        for datum in expand_date_range(start, end):
            for row in by_day.get(day_number(datum), []):
                keys.add(ShiftKey(datum, row["time_slot_id"], row["classroom_id"]))
        return keys

    def existing_time_off(
        self, tenant: TenantContext, candidate_id: str, start: str, end: str
    ) -> set[ShiftKey]:
        rows = self.conn.execute(
            """
            SELECT s.date, s.time_slot_id
            FROM time_off_shifts s
            JOIN time_off_requests r ON r.school_id = s.school_id AND r.id = s.time_off_request_id
            WHERE r.school_id = ? AND r.teacher_id = ? AND r.status = 'active'
              AND s.date BETWEEN ? AND ?
            """,
            (tenant.school_id, candidate_id, start, end),
        ).fetchall()
        return {ShiftKey(r["date"], r["time_slot_id"]) for r in rows}

    def active_assignments(
        self, tenant: TenantContext, candidate_id: str, start: str, end: str
    ) -> dict[ShiftKey, AssignmentHolder]:
        rows = self.conn.execute(
            """
            SELECT a.id, a.date, a.time_slot_id, a.classroom_id, a.teacher_id,
                   a.coverage_request_id, a.event_id,
                   t.first_name, t.last_name, t.display_name,
                   c.name AS classroom_name
            FROM sub_assignments a
            LEFT JOIN staff t ON t.school_id = a.school_id AND t.id = a.teacher_id
            LEFT JOIN classrooms c ON c.school_id = a.school_id AND c.id = a.classroom_id
            WHERE a.school_id = ? AND a.staff_id = ? AND a.status = 'active'
              AND a.date BETWEEN ? AND ?
            ORDER BY a.date, a.time_slot_id, a.created_at
            """,
            (tenant.school_id, candidate_id, start, end),
        ).fetchall()
        holders: dict[ShiftKey, AssignmentHolder] = {}
        for r in rows:
            key = ShiftKey(r["date"], r["time_slot_id"], r["classroom_id"])
            holders.setdefault(
                key,
                AssignmentHolder(
                    assignment_id=r["id"],
                    teacher_id=r["teacher_id"],
                    teacher_name=staff_display_name(r) if r["teacher_id"] else None,
                    classroom_id=r["classroom_id"],
                    classroom_name=r["classroom_name"],
                    coverage_request_id=r["coverage_request_id"],
                    event_id=r["event_id"],
                ),
            )
        return holders
