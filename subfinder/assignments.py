"""Assignment lifecycle: create, cancel by scope, recount, cascade.

Assignments are never deleted; cancellation flips ``status``. The store's
partial unique index keeps at most one active assignment per
(teacher, date, slot). Every write re-checks candidate conflicts inside the
write transaction, so a stale recommendation cannot double-book anyone.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from coverage_core.conflicts import ConflictCheck, evaluate_candidate
from coverage_core.errors import ConflictError, NotFoundError, ValidationError
from coverage_core.lifecycle import require_transition
from coverage_core.models import KIND_SUBSTITUTE, Absence, AbsenceShift, Assignment, TenantContext

from .adapters import SqliteConstraintSources, fetch_staff, staff_display_name
from .audit import AuditLog, AuditOutbox
from .coverage import fetch_absence, fetch_absence_assignments, fetch_absence_shifts, recount
from .store import Store, is_unique_violation, new_id, now_iso, placeholders

logger = logging.getLogger(__name__)

SCOPE_SINGLE = "single"
SCOPE_WEEKDAY = "weekday"
SCOPE_ALL = "all_for_absence"
UNASSIGN_SCOPES = (SCOPE_SINGLE, SCOPE_WEEKDAY, SCOPE_ALL)


# ---- Shared helpers ------------------------------------------------------------

def cancel_assignment_rows(
    conn: sqlite3.Connection, tenant: TenantContext, assignments: list[Assignment]
) -> list[str]:
    """Flip active assignments to cancelled. Returns the ids actually changed."""
    stamp = now_iso()
    changed: list[str] = []
    for assignment in assignments:
        require_transition("assignment", assignment.status, "cancelled")
        cur = conn.execute(
            """
            UPDATE sub_assignments SET status = 'cancelled', updated_at = ?
            WHERE id = ? AND school_id = ? AND status = 'active'
            """,
            (stamp, assignment.id, tenant.school_id),
        )
        if cur.rowcount:
            changed.append(assignment.id)
    return changed


def count_active_for_event(conn: sqlite3.Connection, tenant: TenantContext, event_id: str) -> int:
    row = conn.execute(
        """
        SELECT COUNT(*) AS n FROM sub_assignments
        WHERE school_id = ? AND event_id = ? AND status = 'active'
        """,
        (tenant.school_id, event_id),
    ).fetchone()
    return int(row["n"])


def cascade_event(
    conn: sqlite3.Connection,
    tenant: TenantContext,
    event_id: str,
    outbox: AuditOutbox,
) -> int:
    """Recount an event's live assignments; cancel the event when none remain.

    Runs on the caller's connection so the recount and the cascade commit
    together with the cancellation that triggered them.
    """
    remaining = count_active_for_event(conn, tenant, event_id)
    if remaining:
        return remaining
    row = conn.execute(
        "SELECT status FROM staffing_events WHERE id = ? AND school_id = ?",
        (event_id, tenant.school_id),
    ).fetchone()
    if row is None or row["status"] == "cancelled":
        return 0
    require_transition("staffing_event", row["status"], "cancelled")
    conn.execute(
        "UPDATE staffing_events SET status = 'cancelled' WHERE id = ? AND school_id = ?",
        (event_id, tenant.school_id),
    )
    outbox.add("cancel", "staffing_event", event_id, {"reason": "no_active_shifts"})
    logger.info("Staffing event %s cancelled: no active shifts remain", event_id)
    return 0


def _holders_on_shifts(
    conn: sqlite3.Connection, tenant: TenantContext, teacher_id: str, shifts: list[AbsenceShift]
) -> dict[tuple[str, str], sqlite3.Row]:
    dates = sorted({s.date for s in shifts})
    rows = conn.execute(
        f"""
        SELECT a.id, a.staff_id, a.date, a.time_slot_id,
               s.first_name, s.last_name, s.display_name
        FROM sub_assignments a
        LEFT JOIN staff s ON s.school_id = a.school_id AND s.id = a.staff_id
        WHERE a.school_id = ? AND a.teacher_id = ? AND a.status = 'active'
          AND a.date IN ({placeholders(dates)})
        """,
        [tenant.school_id, teacher_id, *dates],
    ).fetchall()
    return {(r["date"], r["time_slot_id"]): r for r in rows}


# ---- Manager -------------------------------------------------------------------

class AssignmentManager:
    def __init__(self, store: Store, audit: AuditLog):
        self.store = store
        self.audit = audit

    def _validate_shifts(
        self,
        conn: sqlite3.Connection,
        tenant: TenantContext,
        absence: Absence,
        candidate_id: str,
        shifts: list[AbsenceShift],
    ) -> list[dict[str, Any]]:
        conflicts: list[dict[str, Any]] = []

        holders = _holders_on_shifts(conn, tenant, absence.teacher_id, shifts)
        for shift in shifts:
            holder = holders.get((shift.date, shift.time_slot_id))
            if holder is None:
                continue
            conflicts.append({
                "candidate_id": candidate_id,
                "shift_id": shift.id,
                "shift_key": shift.key.to_string(),
                "status": "already_covered",
                "message": "Shift already has an active assignment",
                "holder": {
                    "assignment_id": holder["id"],
                    "staff_id": holder["staff_id"],
                    "staff_name": staff_display_name(holder),
                },
            })

        checks = [
            ConflictCheck(candidate_id, s.key, shift_id=s.id, day_of_week=s.day_of_week)
            for s in shifts
        ]
        results = evaluate_candidate(
            SqliteConstraintSources(conn), tenant, candidate_id, checks,
            exclude_absence_id=absence.id,
        )
        for result in results:
            if not result.is_available:
                conflicts.append(result.to_dict())
        return conflicts

    def assign_shifts(
        self,
        tenant: TenantContext,
        absence_id: str,
        candidate_id: str,
        shift_ids: list[str],
        *,
        notes: str | None = None,
        is_partial: bool = False,
        force: bool = False,
    ) -> dict[str, Any]:
        """Create active assignments for the selected absence shifts.

        All-or-nothing: any conflict rejects the whole batch. ``force`` skips
        the availability re-check but never the uniqueness rule.
        """
        if not absence_id or not candidate_id or not shift_ids:
            raise ValidationError("Missing required fields: absence_id, candidate_id, shift_ids")

        outbox = self.audit.outbox(tenant)
        with self.store.transaction() as conn:
            absence = fetch_absence(conn, tenant, absence_id)
            if absence.status == "cancelled":
                raise ValidationError("Coverage request is cancelled")
            fetch_staff(conn, tenant, candidate_id)
            if candidate_id == absence.teacher_id:
                raise ValidationError("A teacher cannot cover their own absence")

            by_id = {s.id: s for s in fetch_absence_shifts(conn, tenant, absence.id)}
            requested = list(dict.fromkeys(shift_ids))
            missing = [sid for sid in requested if sid not in by_id]
            if missing:
                raise NotFoundError(
                    "No valid shifts found for assignment", details={"shift_ids": missing}
                )
            shifts = [by_id[sid] for sid in requested]

            conflicts = self._validate_shifts(conn, tenant, absence, candidate_id, shifts)
            blocking = [c for c in conflicts if c["status"] == "already_covered"]
            if blocking or (conflicts and not force):
                raise ConflictError(
                    "One or more shifts conflict with existing assignments or availability",
                    conflicts=conflicts,
                )
            if conflicts:
                logger.warning(
                    "Forcing assignment of %s to %d shift(s) over %d conflict(s)",
                    candidate_id, len(shifts), len(conflicts),
                )

            stamp = now_iso()
            created: list[str] = []
            for shift in shifts:
                assignment_id = new_id()
                try:
                    conn.execute(
                        """
                        INSERT INTO sub_assignments (
                            id, school_id, staff_id, teacher_id, coverage_request_id,
                            coverage_request_shift_id, date, day_of_week, time_slot_id,
                            classroom_id, assignment_kind, is_partial, status, notes,
                            created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?, ?)
                        """,
                        (
                            assignment_id, tenant.school_id, candidate_id, absence.teacher_id,
                            absence.id, shift.id, shift.date, shift.day_of_week,
                            shift.time_slot_id, shift.classroom_id, KIND_SUBSTITUTE,
                            int(is_partial), notes, stamp, stamp,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    if not is_unique_violation(exc):
                        raise
                    raise ConflictError(
                        "Shift conflicts with an existing active assignment",
                        conflicts=[{
                            "candidate_id": candidate_id,
                            "shift_id": shift.id,
                            "shift_key": shift.key.to_string(),
                            "status": "already_covered",
                        }],
                    ) from exc
                created.append(assignment_id)

            absence = recount(conn, tenant, absence.id, outbox)
            outbox.add(
                "assign",
                "coverage_request",
                absence.id,
                {
                    "sub_id": candidate_id,
                    "teacher_id": absence.teacher_id,
                    "assignment_ids": created,
                    "shift_ids": requested,
                    "forced": bool(conflicts),
                },
            )
        self.audit.publish(outbox)
        logger.info(
            "Assigned %s to %d shift(s) on coverage request %s", candidate_id, len(created), absence.id
        )
        return {
            "coverage_request_id": absence.id,
            "assignment_ids": created,
            "assignments_created": len(created),
            "covered_shifts": absence.covered_shifts,
            "total_shifts": absence.total_shifts,
            "status": absence.status,
        }

    def unassign_shifts(
        self,
        tenant: TenantContext,
        absence_id: str,
        candidate_id: str,
        scope: str,
        *,
        assignment_id: str | None = None,
    ) -> dict[str, Any]:
        """Cancel a candidate's assignments on an absence.

        ``single`` cancels ``assignment_id``; ``weekday`` cancels every
        assignment sharing its weekday, slot and classroom; ``all_for_absence``
        cancels them all.
        """
        if not absence_id or not candidate_id or scope not in UNASSIGN_SCOPES:
            raise ValidationError("absence_id, candidate_id, and scope are required.")
        if scope in (SCOPE_SINGLE, SCOPE_WEEKDAY) and not assignment_id:
            raise ValidationError(f"assignment_id is required for {scope} removal.")

        outbox = self.audit.outbox(tenant)
        with self.store.transaction() as conn:
            absence = fetch_absence(conn, tenant, absence_id)
            active = fetch_absence_assignments(conn, tenant, absence, staff_id=candidate_id)

            target: Assignment | None = None
            if scope == SCOPE_ALL:
                selected = active
                if not selected:
                    raise NotFoundError(
                        "No active assignments found for this sub on this time off request."
                    )
            else:
                target = next((a for a in active if a.id == assignment_id), None)
                if target is None:
                    raise NotFoundError(
                        "That assignment is no longer active for this time off request."
                    )
                if scope == SCOPE_SINGLE:
                    selected = [target]
                else:
                    selected = [
                        a for a in active
                        if a.day_of_week == target.day_of_week
                        and a.time_slot_id == target.time_slot_id
                        and a.classroom_id == target.classroom_id
                    ]

            removed = cancel_assignment_rows(conn, tenant, selected)
            for event_id in sorted({a.event_id for a in selected if a.event_id}):
                cascade_event(conn, tenant, event_id, outbox)
            absence = recount(conn, tenant, absence.id, outbox)

            remaining_on_target: int | None = None
            if target is not None:
                row = conn.execute(
                    """
                    SELECT COUNT(*) AS n FROM sub_assignments
                    WHERE school_id = ? AND teacher_id = ? AND date = ? AND time_slot_id = ?
                      AND status = 'active'
                    """,
                    (tenant.school_id, absence.teacher_id, target.date, target.time_slot_id),
                ).fetchone()
                remaining_on_target = int(row["n"])

            outbox.add(
                "unassign",
                "coverage_request",
                absence.id,
                {
                    "scope": scope,
                    "sub_id": candidate_id,
                    "teacher_id": absence.teacher_id,
                    "assignment_ids": removed,
                    "removed_count": len(removed),
                    "target_shift_key": target.key.to_string() if target else None,
                },
            )
        self.audit.publish(outbox)
        logger.info(
            "Removed %d assignment(s) for %s from coverage request %s (scope=%s)",
            len(removed), candidate_id, absence.id, scope,
        )
        return {
            "coverage_request_id": absence.id,
            "removed_count": len(removed),
            "removed_assignment_ids": removed,
            "remaining_active_on_target_shift": remaining_on_target,
            "covered_shifts": absence.covered_shifts,
            "status": absence.status,
        }
