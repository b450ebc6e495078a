"""Coverage requests: lazy materialization, idempotent refresh and recount.

A coverage request (the engine's Absence) is created the first time coverage
is asked for a time-off request and linked back to it 1:1. Its shifts are
derived from the time-off shifts, each placed in the classroom the absent
teacher normally works at that day and slot. Manual coverage requests have
no time off behind them and take their shifts from the baseline schedule.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Mapping

from coverage_core.errors import CoverageError, NotFoundError, ValidationError
from coverage_core.lifecycle import require_transition
from coverage_core.models import Absence, AbsenceShift, Assignment, TenantContext
from coverage_core.shift_key import Granularity, ShiftKey
from coverage_core.summary import summarize_coverage
from coverage_core.time_utils import day_number, ensure_date_range, expand_date_range, today_in

from .adapters import fetch_staff, staff_display_name
from .audit import AuditLog, AuditOutbox
from .store import Store, new_id, now_iso, placeholders

logger = logging.getLogger(__name__)

FALLBACK_CLASSROOM_NAME = "Unknown (needs review)"

REQUEST_TIME_OFF = "time_off"
REQUEST_MANUAL = "manual_coverage"


# ---- Lookups -----------------------------------------------------------------

def fetch_absence(conn: sqlite3.Connection, tenant: TenantContext, absence_id: str) -> Absence:
    """Find a coverage request by its own id or by the time-off request it came from."""
    row = conn.execute(
        """
        SELECT * FROM coverage_requests
        WHERE school_id = ? AND (id = ? OR source_request_id = ?)
        ORDER BY CASE WHEN id = ? THEN 0 ELSE 1 END
        LIMIT 1
        """,
        (tenant.school_id, absence_id, absence_id, absence_id),
    ).fetchone()
    if row is None:
        raise NotFoundError(f"Coverage request not found: {absence_id}")
    return Absence.from_row(row)


def fetch_absence_shifts(
    conn: sqlite3.Connection,
    tenant: TenantContext,
    coverage_request_id: str,
    *,
    include_cancelled: bool = False,
) -> list[AbsenceShift]:
    sql = """
        SELECT * FROM coverage_request_shifts
        WHERE school_id = ? AND coverage_request_id = ?
    """
    if not include_cancelled:
        sql += " AND status = 'active'"
    sql += " ORDER BY date, time_slot_id, classroom_id"
    rows = conn.execute(sql, (tenant.school_id, coverage_request_id)).fetchall()
    return [AbsenceShift.from_row(r) for r in rows]


def fetch_absence_assignments(
    conn: sqlite3.Connection,
    tenant: TenantContext,
    absence: Absence,
    *,
    staff_id: str | None = None,
) -> list[Assignment]:
    """Active substitute assignments linked to the absence, or covering its teacher in range."""
    sql = """
        SELECT * FROM sub_assignments
        WHERE school_id = ? AND status = 'active'
          AND (coverage_request_id = ?
               OR (coverage_request_id IS NULL AND teacher_id = ? AND date BETWEEN ? AND ?))
    """
    params: list[Any] = [
        tenant.school_id, absence.id, absence.teacher_id, absence.start_date, absence.end_date,
    ]
    if staff_id:
        sql += " AND staff_id = ?"
        params.append(staff_id)
    sql += " ORDER BY date, time_slot_id, created_at"
    return [Assignment.from_row(r) for r in conn.execute(sql, params).fetchall()]


def fetch_time_off(conn: sqlite3.Connection, tenant: TenantContext, time_off_id: str) -> sqlite3.Row:
    row = conn.execute(
        "SELECT * FROM time_off_requests WHERE school_id = ? AND id = ?",
        (tenant.school_id, time_off_id),
    ).fetchone()
    if row is None:
        raise NotFoundError(f"Time off request not found: {time_off_id}")
    return row


def slot_codes(conn: sqlite3.Connection, tenant: TenantContext) -> dict[str, str]:
    rows = conn.execute(
        "SELECT id, code FROM time_slots WHERE school_id = ?", (tenant.school_id,)
    ).fetchall()
    return {r["id"]: r["code"] for r in rows}


def staff_names(conn: sqlite3.Connection, tenant: TenantContext, staff_ids: list[str]) -> dict[str, str]:
    if not staff_ids:
        return {}
    rows = conn.execute(
        f"""
        SELECT id, first_name, last_name, display_name FROM staff
        WHERE school_id = ? AND id IN ({placeholders(staff_ids)})
        """,
        [tenant.school_id, *staff_ids],
    ).fetchall()
    return {r["id"]: staff_display_name(r) or "" for r in rows}


# ---- Classroom resolution ----------------------------------------------------

class ClassroomResolver:
    """Map (day_of_week, slot) to the absent teacher's usual classroom."""

    def __init__(self, conn: sqlite3.Connection, tenant: TenantContext, teacher_id: str):
        self.conn = conn
        self.tenant = tenant
        rows = conn.execute(
            """
            SELECT day_of_week, time_slot_id, classroom_id, class_group_id
            FROM teacher_schedules
            WHERE school_id = ? AND teacher_id = ?
            ORDER BY is_floater, id
            """,
            (tenant.school_id, teacher_id),
        ).fetchall()
        self.schedule: dict[tuple[int, str], tuple[str, str | None]] = {}
        for row in rows:
            self.schedule.setdefault(
                (int(row["day_of_week"]), row["time_slot_id"]),
                (row["classroom_id"], row["class_group_id"]),
            )
        self._fallback: str | None = None

    def fallback_classroom(self) -> str:
        if self._fallback is None:
            row = self.conn.execute(
                "SELECT id FROM classrooms WHERE school_id = ? AND name = ?",
                (self.tenant.school_id, FALLBACK_CLASSROOM_NAME),
            ).fetchone()
            if row is None:
                row = self.conn.execute(
                    "SELECT id FROM classrooms WHERE school_id = ? ORDER BY name LIMIT 1",
                    (self.tenant.school_id,),
                ).fetchone()
            if row is None:
                raise CoverageError("No classroom available for coverage shifts")
            self._fallback = row["id"]
        return self._fallback

    def slots_on(self, day_of_week: int) -> list[str]:
        return sorted(slot for day, slot in self.schedule if day == day_of_week)

    def scheduled(self, day_of_week: int, time_slot_id: str) -> tuple[str | None, str | None]:
        return self.schedule.get((day_of_week, time_slot_id), (None, None))

    def resolve(self, day_of_week: int, time_slot_id: str) -> tuple[str, str | None]:
        entry = self.schedule.get((day_of_week, time_slot_id))
        if entry is not None:
            return entry
        classroom_id = self.fallback_classroom()
        logger.warning(
            "No baseline entry for day %s slot %s; using fallback classroom %s",
            day_of_week, time_slot_id, classroom_id,
        )
        return classroom_id, None


def _time_off_shifts(conn: sqlite3.Connection, tenant: TenantContext, time_off_id: str) -> list[sqlite3.Row]:
    return conn.execute(
        """
        SELECT date, day_of_week, time_slot_id, is_partial
        FROM time_off_shifts
        WHERE school_id = ? AND time_off_request_id = ?
        ORDER BY date, time_slot_id
        """,
        (tenant.school_id, time_off_id),
    ).fetchall()


def _insert_shift(
    conn: sqlite3.Connection,
    tenant: TenantContext,
    coverage_request_id: str,
    source: Mapping[str, Any],
    resolver: ClassroomResolver,
) -> str:
    dow = int(source["day_of_week"] or day_number(source["date"]))
    classroom_id, class_group_id = resolver.resolve(dow, source["time_slot_id"])
    shift_id = new_id()
    conn.execute(
        """
        INSERT INTO coverage_request_shifts (
            id, school_id, coverage_request_id, date, day_of_week, time_slot_id,
            classroom_id, class_group_id, is_partial, status
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'active')
        """,
        (
            shift_id,
            tenant.school_id,
            coverage_request_id,
            source["date"],
            dow,
            source["time_slot_id"],
            classroom_id,
            class_group_id,
            int(bool(source["is_partial"])),
        ),
    )
    return shift_id


# ---- Recount -----------------------------------------------------------------

def recount(
    conn: sqlite3.Connection,
    tenant: TenantContext,
    absence_id: str,
    outbox: AuditOutbox | None = None,
) -> Absence:
    """Recompute total/covered shifts and open/filled status. Safe to re-run."""
    absence = fetch_absence(conn, tenant, absence_id)
    shifts = fetch_absence_shifts(conn, tenant, absence.id)
    summary = summarize_coverage(absence, shifts, fetch_absence_assignments(conn, tenant, absence))
    total = summary.total
    covered = total - summary.uncovered

    status = absence.status
    if status != "cancelled":
        status = "filled" if total > 0 and covered >= total else "open"
        require_transition("coverage_request", absence.status, status)

    if (total, covered, status) != (absence.total_shifts, absence.covered_shifts, absence.status):
        conn.execute(
            """
            UPDATE coverage_requests
            SET total_shifts = ?, covered_shifts = ?, status = ?, updated_at = ?
            WHERE id = ? AND school_id = ?
            """,
            (total, covered, status, now_iso(), absence.id, tenant.school_id),
        )
        if outbox is not None and status != absence.status:
            outbox.add(
                "status_change",
                "coverage_request",
                absence.id,
                {"from": absence.status, "to": status},
            )
    absence.total_shifts, absence.covered_shifts, absence.status = total, covered, status
    return absence


# ---- Shift map -----------------------------------------------------------------

def build_shift_map(
    shifts: list[AbsenceShift], codes: dict[str, str]
) -> dict[str, str]:
    """``date|slot_code|classroom_id`` and ``date|slot_code`` -> shift id.

    The two-part key points at the first shift for that date and slot.
    """
    detailed: dict[str, str] = {}
    simple: dict[str, str] = {}
    for shift in shifts:
        code = codes.get(shift.time_slot_id, "")
        detailed[f"{shift.date}|{code}|{shift.classroom_id or ''}"] = shift.id
        simple.setdefault(f"{shift.date}|{code}", shift.id)
    for key, value in simple.items():
        detailed.setdefault(key, value)
    return detailed


# ---- Manager -----------------------------------------------------------------

class CoverageRequests:
    def __init__(self, store: Store, audit: AuditLog, *, time_zone: str = "UTC"):
        self.store = store
        self.audit = audit
        self.time_zone = time_zone

    def materialize(
        self, conn: sqlite3.Connection, tenant: TenantContext, absence_id: str, outbox: AuditOutbox
    ) -> tuple[Absence, bool]:
        """Return the coverage request for an absence, creating it on first use."""
        existing = conn.execute(
            """
            SELECT id FROM coverage_requests
            WHERE school_id = ? AND (id = ? OR source_request_id = ?)
            """,
            (tenant.school_id, absence_id, absence_id),
        ).fetchone()
        if existing is not None:
            return fetch_absence(conn, tenant, existing["id"]), False

        time_off = fetch_time_off(conn, tenant, absence_id)
        if time_off["coverage_request_id"]:
            return fetch_absence(conn, tenant, time_off["coverage_request_id"]), False
        if time_off["status"] == "cancelled":
            raise ValidationError("Time off request is cancelled")

        start = time_off["start_date"]
        end = time_off["end_date"] or start
        coverage_request_id = new_id()
        stamp = now_iso()
        conn.execute(
            """
            INSERT INTO coverage_requests (
                id, school_id, teacher_id, request_type, source_request_id,
                start_date, end_date, status, total_shifts, covered_shifts,
                created_at, updated_at
            ) VALUES (?, ?, ?, 'time_off', ?, ?, ?, 'open', 0, 0, ?, ?)
            """,
            (
                coverage_request_id, tenant.school_id, time_off["teacher_id"], time_off["id"],
                start, end, stamp, stamp,
            ),
        )
        conn.execute(
            "UPDATE time_off_requests SET coverage_request_id = ? WHERE id = ? AND school_id = ?",
            (coverage_request_id, time_off["id"], tenant.school_id),
        )

        sources = _time_off_shifts(conn, tenant, time_off["id"])
        if sources:
            resolver = ClassroomResolver(conn, tenant, time_off["teacher_id"])
            for source in sources:
                _insert_shift(conn, tenant, coverage_request_id, source, resolver)

        absence = recount(conn, tenant, coverage_request_id)
        outbox.add(
            "create",
            "coverage_request",
            coverage_request_id,
            {"source_request_id": time_off["id"], "total_shifts": absence.total_shifts},
        )
        logger.info(
            "Created coverage request %s for time off %s with %d shift(s)",
            coverage_request_id, time_off["id"], absence.total_shifts,
        )
        return absence, True

    def materialize_pending(
        self,
        conn: sqlite3.Connection,
        tenant: TenantContext,
        outbox: AuditOutbox,
        *,
        teacher_id: str | None = None,
        start: str | None = None,
        end: str | None = None,
    ) -> int:
        """Create coverage requests for active time off that has none yet."""
        sql = """
            SELECT id FROM time_off_requests
            WHERE school_id = ? AND status = 'active' AND coverage_request_id IS NULL
        """
        params: list[Any] = [tenant.school_id]
        if teacher_id:
            sql += " AND teacher_id = ?"
            params.append(teacher_id)
        if end:
            sql += " AND start_date <= ?"
            params.append(end)
        if start:
            sql += " AND COALESCE(end_date, start_date) >= ?"
            params.append(start)
        sql += " ORDER BY start_date, id"
        pending = [r["id"] for r in conn.execute(sql, params).fetchall()]
        for time_off_id in pending:
            self.materialize(conn, tenant, time_off_id, outbox)
        return len(pending)

    def get_coverage_request(self, tenant: TenantContext, absence_id: str) -> dict[str, Any]:
        if not absence_id:
            raise ValidationError("Missing absence_id")
        outbox = self.audit.outbox(tenant)
        with self.store.transaction() as conn:
            absence, created = self.materialize(conn, tenant, absence_id, outbox)
            shifts = fetch_absence_shifts(conn, tenant, absence.id)
            codes = slot_codes(conn, tenant)
        self.audit.publish(outbox)
        return {
            "coverage_request_id": absence.id,
            "created": created,
            "status": absence.status,
            "total_shifts": absence.total_shifts,
            "covered_shifts": absence.covered_shifts,
            "shift_map": build_shift_map(shifts, codes),
        }

    def ensure_manual(
        self, tenant: TenantContext, teacher_id: str, start_date: str, end_date: str | None = None
    ) -> dict[str, Any]:
        """Coverage for a teacher's scheduled shifts with no time-off request behind it.

        An open coverage request for the teacher overlapping the range is
        reused; otherwise a ``manual_coverage`` request is created. Manual
        requests pick up every baseline shift in the range they do not hold
        yet and widen their dates to include it. Time-off requests keep the
        shifts derived from their time off.
        """
        if not teacher_id or not start_date:
            raise ValidationError("Missing required fields: teacher_id, start_date")
        start, end = ensure_date_range(start_date, end_date)

        outbox = self.audit.outbox(tenant)
        with self.store.transaction() as conn:
            fetch_staff(conn, tenant, teacher_id)
            self.materialize_pending(conn, tenant, outbox, teacher_id=teacher_id, start=start, end=end)
            row = conn.execute(
                """
                SELECT id FROM coverage_requests
                WHERE school_id = ? AND teacher_id = ? AND status = 'open'
                  AND start_date <= ? AND end_date >= ?
                ORDER BY created_at, id
                LIMIT 1
                """,
                (tenant.school_id, teacher_id, end, start),
            ).fetchone()
            created = row is None
            if created:
                coverage_request_id = new_id()
                stamp = now_iso()
                conn.execute(
                    """
                    INSERT INTO coverage_requests (
                        id, school_id, teacher_id, request_type, source_request_id,
                        start_date, end_date, status, total_shifts, covered_shifts,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, NULL, ?, ?, 'open', 0, 0, ?, ?)
                    """,
                    (coverage_request_id, tenant.school_id, teacher_id, REQUEST_MANUAL,
                     start, end, stamp, stamp),
                )
            else:
                coverage_request_id = row["id"]
            absence = fetch_absence(conn, tenant, coverage_request_id)

            added: list[str] = []
            if absence.request_type == REQUEST_MANUAL:
                held = {s.key.slot_key for s in fetch_absence_shifts(conn, tenant, absence.id)}
                resolver = ClassroomResolver(conn, tenant, teacher_id)
                for datum in expand_date_range(start, end):
                    dow = day_number(datum)
                    for slot in resolver.slots_on(dow):
                        if ShiftKey(datum, slot) in held:
                            continue
                        source = {"date": datum, "day_of_week": dow, "time_slot_id": slot, "is_partial": False}
                        added.append(_insert_shift(conn, tenant, absence.id, source, resolver))
                if start < absence.start_date or end > absence.end_date:
                    conn.execute(
                        "UPDATE coverage_requests SET start_date = ?, end_date = ? WHERE id = ? AND school_id = ?",
                        (min(start, absence.start_date), max(end, absence.end_date),
                         absence.id, tenant.school_id),
                    )

            absence = recount(conn, tenant, absence.id, outbox)
            shifts = [
                s for s in fetch_absence_shifts(conn, tenant, absence.id) if start <= s.date <= end
            ]
            codes = slot_codes(conn, tenant)
            if created:
                outbox.add(
                    "create",
                    "coverage_request",
                    absence.id,
                    {"request_type": REQUEST_MANUAL, "teacher_id": teacher_id,
                     "total_shifts": absence.total_shifts},
                )
            elif added:
                outbox.add("add_shifts", "coverage_request", absence.id, {"added": added})
        self.audit.publish(outbox)
        if created:
            logger.info(
                "Created manual coverage request %s for teacher %s with %d shift(s)",
                absence.id, teacher_id, absence.total_shifts,
            )
        return {
            "coverage_request_id": absence.id,
            "created": created,
            "request_type": absence.request_type,
            "status": absence.status,
            "total_shifts": absence.total_shifts,
            "covered_shifts": absence.covered_shifts,
            "added_shift_ids": added,
            "shift_map": build_shift_map(shifts, codes),
        }

    def refresh_shifts(self, tenant: TenantContext, absence_id: str) -> dict[str, Any]:
        """Diff the absence's shifts against its time-off shifts at date + slot.

        New time-off shifts are added. Shifts that disappeared are cancelled
        unless an active assignment still covers them. Existing shifts keep
        their id and classroom.
        """
        outbox = self.audit.outbox(tenant)
        with self.store.transaction() as conn:
            absence = fetch_absence(conn, tenant, absence_id)
            if absence.status == "cancelled":
                raise ValidationError("Coverage request is cancelled")
            if not absence.source_request_id:
                raise ValidationError("Coverage request has no source time off request")

            sources = {
                ShiftKey(r["date"], r["time_slot_id"]): r
                for r in _time_off_shifts(conn, tenant, absence.source_request_id)
            }
            shifts = fetch_absence_shifts(conn, tenant, absence.id)
            assignments = fetch_absence_assignments(conn, tenant, absence)
            covered_ids = {a.coverage_request_shift_id for a in assignments if a.coverage_request_shift_id}
            covered_slots = {a.key.at(Granularity.SLOT) for a in assignments if not a.coverage_request_shift_id}

            existing_slots = {s.key.at(Granularity.SLOT) for s in shifts}
            added: list[str] = []
            resolver = None
            for key in sorted(sources):
                if key in existing_slots:
                    continue
                if resolver is None:
                    resolver = ClassroomResolver(conn, tenant, absence.teacher_id)
                added.append(_insert_shift(conn, tenant, absence.id, sources[key], resolver))

            cancelled: list[str] = []
            retained: list[str] = []
            for shift in shifts:
                if shift.key.at(Granularity.SLOT) in sources:
                    continue
                if shift.id in covered_ids or shift.key.at(Granularity.SLOT) in covered_slots:
                    retained.append(shift.id)
                    continue
                require_transition("coverage_request_shift", shift.status, "cancelled")
                conn.execute(
                    "UPDATE coverage_request_shifts SET status = 'cancelled' WHERE id = ? AND school_id = ?",
                    (shift.id, tenant.school_id),
                )
                cancelled.append(shift.id)

            absence = recount(conn, tenant, absence.id, outbox)
            if added or cancelled:
                outbox.add(
                    "refresh_shifts",
                    "coverage_request",
                    absence.id,
                    {"added": added, "cancelled": cancelled, "retained": retained},
                )
        self.audit.publish(outbox)
        if added or cancelled:
            logger.info(
                "Refreshed coverage request %s: +%d shift(s), -%d shift(s)",
                absence.id, len(added), len(cancelled),
            )
        return {
            "coverage_request_id": absence.id,
            "added_shift_ids": added,
            "cancelled_shift_ids": cancelled,
            "retained_covered_shift_ids": retained,
            "total_shifts": absence.total_shifts,
            "covered_shifts": absence.covered_shifts,
            "status": absence.status,
        }

    def summary(self, tenant: TenantContext, absence_id: str, *, today: str | None = None) -> dict[str, Any]:
        with self.store.read() as conn:
            absence = fetch_absence(conn, tenant, absence_id)
            shifts = fetch_absence_shifts(conn, tenant, absence.id)
            assignments = fetch_absence_assignments(conn, tenant, absence)
            codes = slot_codes(conn, tenant)
            names = staff_names(conn, tenant, sorted({a.staff_id for a in assignments}))
        result = summarize_coverage(
            absence,
            shifts,
            assignments,
            slot_codes=codes,
            staff_names=names,
            today=today or today_in(self.time_zone),
        )
        return result.to_dict()

    def list_absences(
        self,
        tenant: TenantContext,
        *,
        include_partially_covered: bool = False,
        today: str | None = None,
    ) -> list[dict[str, Any]]:
        """Ongoing and upcoming absences that still need a substitute.

        Pending time off is materialized first. Absences without shifts are
        always listed; otherwise one needs an uncovered shift, or a partially
        covered one when ``include_partially_covered`` is set. Ordered by
        ``max(start_date, today)`` then ``start_date``.
        """
        today = today or today_in(self.time_zone)
        outbox = self.audit.outbox(tenant)
        listed: list[dict[str, Any]] = []
        with self.store.transaction() as conn:
            self.materialize_pending(conn, tenant, outbox, start=today)
            codes = slot_codes(conn, tenant)
            classrooms = {
                r["id"]: r["name"]
                for r in conn.execute("SELECT id, name FROM classrooms WHERE school_id = ?", (tenant.school_id,))
            }
            rows = conn.execute(
                """
                SELECT * FROM coverage_requests
                WHERE school_id = ? AND status <> 'cancelled' AND end_date >= ?
                ORDER BY start_date, id
                """,
                (tenant.school_id, today),
            ).fetchall()
            for row in rows:
                absence = Absence.from_row(row)
                shifts = fetch_absence_shifts(conn, tenant, absence.id)
                assignments = fetch_absence_assignments(conn, tenant, absence)
                names = staff_names(
                    conn, tenant, sorted({a.staff_id for a in assignments} | {absence.teacher_id})
                )
                summary = summarize_coverage(
                    absence, shifts, assignments, slot_codes=codes, staff_names=names, today=today
                )
                if summary.total:
                    needs_sub = summary.uncovered > 0
                    if include_partially_covered:
                        needs_sub = needs_sub or summary.partially_covered > 0
                    if not needs_sub:
                        continue
                entry = summary.to_dict()
                entry["teacher_name"] = names.get(absence.teacher_id)
                entry["classrooms"] = sorted({
                    classrooms.get(s.classroom_id, s.classroom_id) for s in shifts if s.classroom_id
                })
                listed.append(entry)
        self.audit.publish(outbox)
        listed.sort(key=lambda e: (max(e["absence"]["start_date"], today), e["absence"]["start_date"]))
        return listed

    def cancel(self, tenant: TenantContext, absence_id: str) -> dict[str, Any]:
        """Cancel the absence and every active assignment linked to it."""
        outbox = self.audit.outbox(tenant)
        with self.store.transaction() as conn:
            absence = fetch_absence(conn, tenant, absence_id)
            require_transition("coverage_request", absence.status, "cancelled")
            assignments = fetch_absence_assignments(conn, tenant, absence)
            stamp = now_iso()
            for assignment in assignments:
                conn.execute(
                    """
                    UPDATE sub_assignments SET status = 'cancelled', updated_at = ?
                    WHERE id = ? AND school_id = ? AND status = 'active'
                    """,
                    (stamp, assignment.id, tenant.school_id),
                )
            conn.execute(
                "UPDATE coverage_requests SET status = 'cancelled', updated_at = ? WHERE id = ? AND school_id = ?",
                (stamp, absence.id, tenant.school_id),
            )
            if absence.source_request_id:
                time_off = conn.execute(
                    "SELECT status FROM time_off_requests WHERE id = ? AND school_id = ?",
                    (absence.source_request_id, tenant.school_id),
                ).fetchone()
                if time_off is not None and time_off["status"] != "cancelled":
                    require_transition("time_off", time_off["status"], "cancelled")
                    conn.execute(
                        "UPDATE time_off_requests SET status = 'cancelled' WHERE id = ? AND school_id = ?",
                        (absence.source_request_id, tenant.school_id),
                    )
            outbox.add(
                "cancel",
                "coverage_request",
                absence.id,
                {"cancelled_assignment_ids": [a.id for a in assignments]},
            )
        self.audit.publish(outbox)
        logger.info(
            "Cancelled coverage request %s and %d assignment(s)", absence.id, len(assignments)
        )
        return {
            "coverage_request_id": absence.id,
            "status": "cancelled",
            "cancelled_assignments": len(assignments),
        }
