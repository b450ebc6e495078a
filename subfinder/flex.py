"""Flex placements: a staffing event owning a batch of assignments.

An event stays active while at least one of its assignments is active. Each
removal recounts the event's live assignments on the same connection and
cascade-cancels the event when the count reaches zero.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from coverage_core.errors import ConflictError, NotFoundError, ValidationError
from coverage_core.lifecycle import require_transition
from coverage_core.models import KIND_FLEX, Assignment, FlexAssignmentEvent, TenantContext
from coverage_core.shift_key import ShiftKey
from coverage_core.time_utils import day_name, day_number, ensure_date_range, expand_date_range, parse_iso_date

from .adapters import fetch_staff
from .assignments import cancel_assignment_rows, cascade_event
from .audit import AuditLog
from .store import Store, is_unique_violation, new_id, now_iso

logger = logging.getLogger(__name__)

FLEX_CONFLICT_MESSAGE = (
    "Flex assignment conflicts with an existing active assignment for this staff member."
)

SCOPE_SINGLE_SHIFT = "single_shift"
SCOPE_WEEKDAY = "weekday"
SCOPE_ALL_SHIFTS = "all_shifts"
REMOVE_SCOPES = (SCOPE_SINGLE_SHIFT, SCOPE_WEEKDAY, SCOPE_ALL_SHIFTS)


def fetch_event(conn: sqlite3.Connection, tenant: TenantContext, event_id: str) -> FlexAssignmentEvent:
    row = conn.execute(
        "SELECT * FROM staffing_events WHERE id = ? AND school_id = ?",
        (event_id, tenant.school_id),
    ).fetchone()
    if row is None:
        raise NotFoundError("Flex assignment not found.")
    return FlexAssignmentEvent.from_row(row)


def _event_assignments(
    conn: sqlite3.Connection,
    tenant: TenantContext,
    event_id: str,
    *,
    date: str | None = None,
    day_of_week: int | None = None,
    classroom_id: str | None = None,
    time_slot_id: str | None = None,
) -> list[Assignment]:
    sql = """
        SELECT * FROM sub_assignments
        WHERE school_id = ? AND event_id = ? AND status = 'active'
    """
    params: list[Any] = [tenant.school_id, event_id]
    for column, value in (
        ("date", date),
        ("day_of_week", day_of_week),
        ("classroom_id", classroom_id),
        ("time_slot_id", time_slot_id),
    ):
        if value is not None:
            sql += f" AND {column} = ?"
            params.append(value)
    sql += " ORDER BY date, time_slot_id, classroom_id"
    return [Assignment.from_row(r) for r in conn.execute(sql, params).fetchall()]


def _explicit_shift(index: int, item: Any) -> ShiftKey:
    if not isinstance(item, dict):
        raise ValidationError(f"shifts[{index}] must be an object", details={"shift": item})
    missing = [name for name in ("date", "time_slot_id", "classroom_id") if not item.get(name)]
    if missing:
        raise ValidationError(
            f"shifts[{index}] is missing {', '.join(missing)}", details={"shift": item}
        )
    datum = parse_iso_date(item["date"], field=f"shifts[{index}].date").isoformat()
    return ShiftKey(datum, item["time_slot_id"], item["classroom_id"])


def expand_flex_shifts(
    start_date: str,
    end_date: str,
    classroom_ids: list[str],
    time_slot_ids: list[str],
    *,
    days_of_week: list[int] | None = None,
    shifts: list[dict[str, str]] | None = None,
) -> list[ShiftKey]:
    """Explicit shifts win; otherwise dates x slots x classrooms, optionally filtered by weekday."""
    keys: list[ShiftKey] = []
    if shifts:
        for index, item in enumerate(shifts):
            keys.append(_explicit_shift(index, item))
    else:
        wanted = set(days_of_week) if days_of_week else None
        for datum in expand_date_range(start_date, end_date):
            if wanted is not None and day_number(datum) not in wanted:
                continue
            for slot in time_slot_ids:
                for classroom in classroom_ids:
                    keys.append(ShiftKey(datum, slot, classroom))
    return list(dict.fromkeys(keys))


class FlexManager:
    def __init__(self, store: Store, audit: AuditLog):
        self.store = store
        self.audit = audit

    def create(
        self,
        tenant: TenantContext,
        staff_id: str,
        start_date: str,
        end_date: str,
        classroom_ids: list[str],
        time_slot_ids: list[str],
        *,
        days_of_week: list[int] | None = None,
        shifts: list[dict[str, str]] | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        if not staff_id or not start_date or not end_date:
            raise ValidationError("staff_id, start_date, end_date are required.")
        if not classroom_ids:
            raise ValidationError("classroom_ids is required.")
        if not time_slot_ids:
            raise ValidationError("time_slot_ids is required.")
        start_date, end_date = ensure_date_range(start_date, end_date)

        keys = expand_flex_shifts(
            start_date, end_date, classroom_ids, time_slot_ids,
            days_of_week=days_of_week, shifts=shifts,
        )
        if not keys:
            raise ValidationError("No shifts matched the selected filters.")

        outbox = self.audit.outbox(tenant)
        with self.store.transaction() as conn:
            fetch_staff(conn, tenant, staff_id)

            # Substitute rows are not covered by the flex unique index.
            conflicts: list[dict[str, Any]] = []
            for key in sorted({k.slot_key for k in keys}):
                row = conn.execute(
                    """
                    SELECT id, classroom_id, event_id, coverage_request_id FROM sub_assignments
                    WHERE school_id = ? AND staff_id = ? AND date = ? AND time_slot_id = ?
                      AND status = 'active' AND event_id IS NULL
                    LIMIT 1
                    """,
                    (tenant.school_id, staff_id, key.date, key.time_slot_id),
                ).fetchone()
                if row is not None:
                    conflicts.append({
                        "candidate_id": staff_id,
                        "shift_key": key.to_string(),
                        "holder": dict(row),
                    })
            if conflicts:
                raise ConflictError(FLEX_CONFLICT_MESSAGE, conflicts=conflicts)

            event_id = new_id()
            stamp = now_iso()
            conn.execute(
                """
                INSERT INTO staffing_events (
                    id, school_id, staff_id, event_type, start_date, end_date,
                    status, notes, created_by, created_at
                ) VALUES (?, ?, ?, 'flex_assignment', ?, ?, 'active', ?, ?, ?)
                """,
                (event_id, tenant.school_id, staff_id, start_date, end_date, notes,
                 tenant.actor_user_id, stamp),
            )
            assignment_ids: list[str] = []
            try:
                for key in keys:
                    assignment_id = new_id()
                    conn.execute(
                        """
                        INSERT INTO sub_assignments (
                            id, school_id, staff_id, event_id, date, day_of_week,
                            time_slot_id, classroom_id, assignment_kind, is_partial,
                            status, notes, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 'active', ?, ?, ?)
                        """,
                        (assignment_id, tenant.school_id, staff_id, event_id, key.date,
                         day_number(key.date), key.time_slot_id, key.classroom_id, KIND_FLEX,
                         notes, stamp, stamp),
                    )
                    assignment_ids.append(assignment_id)
            except sqlite3.IntegrityError as exc:
                if not is_unique_violation(exc):
                    raise
                raise ConflictError(FLEX_CONFLICT_MESSAGE) from exc

            outbox.add(
                "create",
                "staffing_event",
                event_id,
                {"staff_id": staff_id, "shift_count": len(assignment_ids),
                 "start_date": start_date, "end_date": end_date},
            )
        self.audit.publish(outbox)
        logger.info("Created flex event %s for %s with %d shift(s)", event_id, staff_id, len(keys))
        return {"id": event_id, "shift_count": len(assignment_ids), "assignment_ids": assignment_ids}

    def remove_shifts(
        self,
        tenant: TenantContext,
        event_id: str,
        scope: str,
        *,
        date: str | None = None,
        day_of_week: int | None = None,
        classroom_id: str | None = None,
        time_slot_id: str | None = None,
    ) -> dict[str, Any]:
        if not event_id or scope not in REMOVE_SCOPES:
            raise ValidationError("event_id and scope are required.")
        if scope in (SCOPE_SINGLE_SHIFT, SCOPE_WEEKDAY) and (not classroom_id or not time_slot_id):
            raise ValidationError("classroom_id and time_slot_id are required for this scope.")
        if scope == SCOPE_SINGLE_SHIFT and not date:
            raise ValidationError("date is required for single_shift.")
        if scope == SCOPE_WEEKDAY and not day_of_week:
            raise ValidationError("day_of_week is required for weekday scope.")

        filters: dict[str, Any] = {}
        if scope == SCOPE_SINGLE_SHIFT:
            filters = {"date": date, "classroom_id": classroom_id, "time_slot_id": time_slot_id}
        elif scope == SCOPE_WEEKDAY:
            filters = {"day_of_week": day_of_week, "classroom_id": classroom_id, "time_slot_id": time_slot_id}

        outbox = self.audit.outbox(tenant)
        with self.store.transaction() as conn:
            fetch_event(conn, tenant, event_id)
            selected = _event_assignments(conn, tenant, event_id, **filters)
            removed = cancel_assignment_rows(conn, tenant, selected)
            if not removed:
                raise NotFoundError("No matching active shifts were found to remove.")
            remaining = cascade_event(conn, tenant, event_id, outbox)
            outbox.add(
                "remove_shifts",
                "staffing_event",
                event_id,
                {"scope": scope, "assignment_ids": removed, "remaining_active_shifts": remaining},
            )
        self.audit.publish(outbox)
        logger.info(
            "Removed %d shift(s) from flex event %s (scope=%s); %d remain",
            len(removed), event_id, scope, remaining,
        )
        return {
            "removed_count": len(removed),
            "remaining_active_shifts": remaining,
            "event_status": "active" if remaining else "cancelled",
        }

    def removal_preview(
        self,
        tenant: TenantContext,
        event_id: str,
        *,
        classroom_id: str | None = None,
        time_slot_id: str | None = None,
    ) -> dict[str, Any]:
        if not event_id:
            raise ValidationError("event_id is required.")
        with self.store.read() as conn:
            event = fetch_event(conn, tenant, event_id)
            matching = _event_assignments(
                conn, tenant, event_id, classroom_id=classroom_id, time_slot_id=time_slot_id
            )
        days = sorted({a.day_of_week or day_number(a.date) for a in matching})
        return {
            "start_date": event.start_date,
            "end_date": event.end_date,
            "weekdays": [day_name(d) for d in days],
            "matching_shift_count": len(matching),
        }

    def cancel_event(self, tenant: TenantContext, event_id: str) -> dict[str, Any]:
        """Cancel the event together with all of its active assignments."""
        outbox = self.audit.outbox(tenant)
        with self.store.transaction() as conn:
            event = fetch_event(conn, tenant, event_id)
            require_transition("staffing_event", event.status, "cancelled")
            removed = cancel_assignment_rows(conn, tenant, _event_assignments(conn, tenant, event_id))
            if event.status != "cancelled":
                conn.execute(
                    "UPDATE staffing_events SET status = 'cancelled' WHERE id = ? AND school_id = ?",
                    (event_id, tenant.school_id),
                )
            outbox.add("cancel", "staffing_event", event_id, {"assignment_ids": removed})
        self.audit.publish(outbox)
        logger.info("Cancelled flex event %s and %d shift(s)", event_id, len(removed))
        return {"id": event_id, "status": "cancelled", "cancelled_shifts": len(removed)}
