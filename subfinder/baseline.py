"""Baseline schedule grid: detect and resolve double-booked teachers.

A teacher may hold at most one non-floater entry per (day, slot). Placing
them into a second classroom is a conflict, resolved by removing the other
entries, tagging everything as floater, or declining the placement.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from coverage_core.errors import ConflictError, ValidationError
from coverage_core.models import BaselineScheduleEntry, TenantContext

from .adapters import fetch_staff
from .audit import AuditLog, AuditOutbox
from .store import Store, is_unique_violation, new_id

logger = logging.getLogger(__name__)

RESOLVE_REMOVE_OTHER = "remove_other"
RESOLVE_MARK_FLOATER = "mark_floater"
RESOLVE_CANCEL = "cancel"
RESOLUTIONS = (RESOLVE_REMOVE_OTHER, RESOLVE_MARK_FLOATER, RESOLVE_CANCEL)


def _validate_cell(day_of_week: int, time_slot_id: str, classroom_id: str) -> None:
    if not isinstance(day_of_week, int) or not 1 <= day_of_week <= 7:
        raise ValidationError("day_of_week must be an ISO day number between 1 and 7")
    if not time_slot_id or not classroom_id:
        raise ValidationError("time_slot_id and classroom_id are required")


def detect_conflicts(
    conn: sqlite3.Connection,
    tenant: TenantContext,
    teacher_id: str,
    day_of_week: int,
    time_slot_id: str,
    classroom_id: str,
) -> list[BaselineScheduleEntry]:
    """Non-floater entries for the same teacher/day/slot in a different classroom."""
    rows = conn.execute(
        """
        SELECT * FROM teacher_schedules
        WHERE school_id = ? AND teacher_id = ? AND day_of_week = ? AND time_slot_id = ?
          AND classroom_id <> ? AND is_floater = 0
        ORDER BY id
        """,
        (tenant.school_id, teacher_id, day_of_week, time_slot_id, classroom_id),
    ).fetchall()
    return [BaselineScheduleEntry.from_row(r) for r in rows]


def _classroom_names(conn: sqlite3.Connection, tenant: TenantContext) -> dict[str, str]:
    rows = conn.execute("SELECT id, name FROM classrooms WHERE school_id = ?", (tenant.school_id,)).fetchall()
    return {r["id"]: r["name"] for r in rows}


def _insert_entry(
    conn: sqlite3.Connection,
    tenant: TenantContext,
    teacher_id: str,
    day_of_week: int,
    time_slot_id: str,
    classroom_id: str,
    class_group_id: str | None,
    is_floater: bool,
) -> BaselineScheduleEntry:
    entry = BaselineScheduleEntry(
        id=new_id(),
        teacher_id=teacher_id,
        day_of_week=day_of_week,
        time_slot_id=time_slot_id,
        classroom_id=classroom_id,
        class_group_id=class_group_id,
        is_floater=is_floater,
    )
    try:
        conn.execute(
            """
            INSERT INTO teacher_schedules (
                id, school_id, teacher_id, day_of_week, time_slot_id,
                classroom_id, class_group_id, is_floater
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (entry.id, tenant.school_id, teacher_id, day_of_week, time_slot_id,
             classroom_id, class_group_id, int(is_floater)),
        )
    except sqlite3.IntegrityError as exc:
        if not is_unique_violation(exc):
            raise
        raise ConflictError(
            "Teacher already has a non-floater schedule entry for this day and time slot",
            conflicts=[{"teacher_id": teacher_id, "day_of_week": day_of_week,
                        "time_slot_id": time_slot_id, "classroom_id": classroom_id}],
        ) from exc
    return entry


def _audit_created(outbox: AuditOutbox, entry: BaselineScheduleEntry, reason: str) -> None:
    outbox.add(
        "created",
        "teacher_schedule",
        entry.id,
        {"teacher_id": entry.teacher_id, "after": entry.to_dict(), "reason": reason},
    )


class BaselineResolver:
    def __init__(self, store: Store, audit: AuditLog):
        self.store = store
        self.audit = audit

    def check_conflicts(self, tenant: TenantContext, checks: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Report, per proposed placement, the entries it would collide with."""
        results: list[dict[str, Any]] = []
        with self.store.read() as conn:
            names = _classroom_names(conn, tenant)
            for check in checks:
                teacher_id = check.get("teacher_id")
                if not teacher_id:
                    raise ValidationError("teacher_id is required")
                day = check.get("day_of_week")
                slot = check.get("time_slot_id")
                classroom = check.get("classroom_id")
                _validate_cell(day, slot, classroom)
                found = detect_conflicts(conn, tenant, teacher_id, day, slot, classroom)
                results.append({
                    "teacher_id": teacher_id,
                    "day_of_week": day,
                    "time_slot_id": slot,
                    "target_classroom_id": classroom,
                    "has_conflict": bool(found),
                    "conflicting_schedules": [
                        {**e.to_dict(), "classroom_name": names.get(e.classroom_id)} for e in found
                    ],
                })
        return results

    def place(
        self,
        tenant: TenantContext,
        teacher_id: str,
        day_of_week: int,
        time_slot_id: str,
        classroom_id: str,
        *,
        class_group_id: str | None = None,
        is_floater: bool = False,
    ) -> dict[str, Any]:
        """Create a baseline entry, refusing when it would double-book the teacher."""
        _validate_cell(day_of_week, time_slot_id, classroom_id)
        outbox = self.audit.outbox(tenant)
        with self.store.transaction() as conn:
            fetch_staff(conn, tenant, teacher_id)
            if not is_floater:
                found = detect_conflicts(conn, tenant, teacher_id, day_of_week, time_slot_id, classroom_id)
                if found:
                    names = _classroom_names(conn, tenant)
                    raise ConflictError(
                        "Teacher is already scheduled in another classroom for this day and time slot",
                        conflicts=[
                            {**e.to_dict(), "classroom_name": names.get(e.classroom_id)} for e in found
                        ],
                    )
            entry = _insert_entry(
                conn, tenant, teacher_id, day_of_week, time_slot_id,
                classroom_id, class_group_id, is_floater,
            )
            _audit_created(outbox, entry, "placement")
        self.audit.publish(outbox)
        return {"created": entry.to_dict()}

    def resolve_conflict(
        self,
        tenant: TenantContext,
        teacher_id: str,
        day_of_week: int,
        time_slot_id: str,
        classroom_id: str,
        resolution: str,
        *,
        class_group_id: str | None = None,
    ) -> dict[str, Any]:
        """Apply one resolution as a single transaction.

        Returns ``state`` ``created`` (remove_other, mark_floater) or
        ``unchanged`` (cancel), plus ``created``/``deleted``/``updated``.
        """
        if resolution not in RESOLUTIONS:
            raise ValidationError(f"resolution must be one of {', '.join(RESOLUTIONS)}")
        _validate_cell(day_of_week, time_slot_id, classroom_id)

        outbox = self.audit.outbox(tenant)
        reason = f"conflict_resolution_{resolution}"
        result: dict[str, Any] = {"resolution": resolution}
        with self.store.transaction() as conn:
            fetch_staff(conn, tenant, teacher_id)
            found = detect_conflicts(conn, tenant, teacher_id, day_of_week, time_slot_id, classroom_id)
            if not found:
                raise ValidationError("No conflicting schedules found")

            if resolution == RESOLVE_REMOVE_OTHER:
                deleted: list[str] = []
                for entry in found:
                    conn.execute(
                        "DELETE FROM teacher_schedules WHERE id = ? AND school_id = ?",
                        (entry.id, tenant.school_id),
                    )
                    deleted.append(entry.id)
                    outbox.add(
                        "deleted",
                        "teacher_schedule",
                        entry.id,
                        {"teacher_id": teacher_id, "before": entry.to_dict(), "reason": reason},
                    )
                created = _insert_entry(
                    conn, tenant, teacher_id, day_of_week, time_slot_id,
                    classroom_id, class_group_id, False,
                )
                _audit_created(outbox, created, reason)
                result.update(state="created", created=created.to_dict(), deleted=deleted)

            elif resolution == RESOLVE_MARK_FLOATER:
                updated: list[dict[str, Any]] = []
                for entry in found:
                    conn.execute(
                        "UPDATE teacher_schedules SET is_floater = 1 WHERE id = ? AND school_id = ?",
                        (entry.id, tenant.school_id),
                    )
                    before = entry.to_dict()
                    entry.is_floater = True
                    updated.append(entry.to_dict())
                    outbox.add(
                        "updated",
                        "teacher_schedule",
                        entry.id,
                        {"teacher_id": teacher_id, "before": before, "after": entry.to_dict(),
                         "reason": reason},
                    )
                created = _insert_entry(
                    conn, tenant, teacher_id, day_of_week, time_slot_id,
                    classroom_id, class_group_id, True,
                )
                _audit_created(outbox, created, reason)
                result.update(state="created", created=created.to_dict(), updated=updated)

            else:
                outbox.add(
                    "conflict_resolved",
                    "teacher_schedule",
                    None,
                    {
                        "teacher_id": teacher_id,
                        "canceled": True,
                        "would_have_added_to_classroom_id": classroom_id,
                        "would_have_added_to_class_id": class_group_id,
                        "day_of_week": day_of_week,
                        "time_slot_id": time_slot_id,
                        "reason": reason,
                    },
                )
                result.update(state="unchanged")
        self.audit.publish(outbox)
        logger.info(
            "Baseline conflict for teacher %s (day %s, slot %s) resolved with %s",
            teacher_id, day_of_week, time_slot_id, resolution,
        )
        return result
