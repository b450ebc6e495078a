"""Build per-candidate recommendations and rank combinations.

Candidates are ranked either for a coverage request or for an ad-hoc list
of a teacher's shifts.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from coverage_core.conflicts import ConflictCheck, evaluate_candidate
from coverage_core.errors import ValidationError
from coverage_core.models import (
    AbsenceShift,
    Assignment,
    Combination,
    ConflictBreakdown,
    ShiftDetail,
    SubRecommendation,
    TenantContext,
)
from coverage_core.recommender import DEFAULT_LIMIT, recommend_combinations
from coverage_core.shift_key import ShiftKey
from coverage_core.summary import SHIFT_FULL, SHIFT_PARTIAL, SHIFT_UNCOVERED, shift_status
from coverage_core.time_utils import day_name, day_number, ensure_date_range, is_past, parse_iso_date

from .adapters import SqliteConstraintSources, fetch_staff, staff_display_name
from .coverage import (
    ClassroomResolver,
    fetch_absence,
    fetch_absence_assignments,
    fetch_absence_shifts,
    slot_codes,
)

logger = logging.getLogger(__name__)


def _candidates(
    conn: sqlite3.Connection, tenant: TenantContext, absent_teacher_id: str, include_flexible_staff: bool
) -> list[sqlite3.Row]:
    sql = """
        SELECT * FROM staff
        WHERE school_id = ? AND active = 1 AND id <> ?
          AND (is_sub = 1{flex})
        ORDER BY id
    """.format(flex=" OR is_flexible = 1" if include_flexible_staff else "")
    return conn.execute(sql, (tenant.school_id, absent_teacher_id)).fetchall()


def _lookup(conn: sqlite3.Connection, tenant: TenantContext, table: str) -> dict[str, sqlite3.Row]:
    rows = conn.execute(f"SELECT * FROM {table} WHERE school_id = ?", (tenant.school_id,)).fetchall()
    return {r["id"]: r for r in rows}


def _qualified_groups(conn: sqlite3.Connection, tenant: TenantContext) -> dict[str, set[str]]:
    rows = conn.execute(
        "SELECT sub_id, class_group_id FROM sub_class_preferences WHERE school_id = ? AND can_teach = 1",
        (tenant.school_id,),
    ).fetchall()
    out: dict[str, set[str]] = {}
    for r in rows:
        out.setdefault(r["sub_id"], set()).add(r["class_group_id"])
    return out


def qualification_conflicts(
    candidate: sqlite3.Row | dict[str, Any],
    class_group: sqlite3.Row | dict[str, Any] | None,
    qualified: set[str],
) -> ConflictBreakdown:
    """Soft mismatches between a candidate and the class group of one shift."""
    if class_group is None:
        return ConflictBreakdown()
    return ConflictBreakdown(
        missing_diaper_changing=int(
            bool(class_group["diaper_changing_required"]) and not bool(candidate["can_change_diapers"])
        ),
        missing_lifting=int(
            bool(class_group["lifting_children_required"]) and not bool(candidate["can_lift_children"])
        ),
        missing_qualifications=int(class_group["id"] not in qualified),
    )


def _sort_subs(subs: list[SubRecommendation]) -> list[SubRecommendation]:
    return sorted(subs, key=lambda s: (-s.coverage_percent, s.conflict_count, s.name, s.id))


def build_recommendations(
    conn: sqlite3.Connection,
    tenant: TenantContext,
    absence_id: str,
    *,
    today: str,
    include_flexible_staff: bool = True,
    include_past_shifts: bool = False,
    limit: int = DEFAULT_LIMIT,
) -> dict[str, Any]:
    absence = fetch_absence(conn, tenant, absence_id)
    shifts = fetch_absence_shifts(conn, tenant, absence.id)
    assignments = fetch_absence_assignments(conn, tenant, absence)

    covered_ids = {a.coverage_request_shift_id for a in assignments if a.coverage_request_shift_id}
    covered_slots = {a.key.slot_key for a in assignments if not a.coverage_request_shift_id}
    held_by: dict[str, set[str]] = {}
    for a in assignments:
        if a.coverage_request_shift_id:
            held_by.setdefault(a.staff_id, set()).add(a.coverage_request_shift_id)

    needed: list[AbsenceShift] = [
        s for s in shifts
        if s.id not in covered_ids and s.key.slot_key not in covered_slots
        and (include_past_shifts or not is_past(s.date, today))
    ]

    subs, combinations = _rank(
        conn, tenant, absence.teacher_id, shifts, needed,
        held_by=held_by,
        exclude_absence_id=absence.id,
        include_flexible_staff=include_flexible_staff,
        limit=limit,
    )
    return {
        "coverage_request_id": absence.id,
        "total_shifts": len(shifts),
        "shifts_needing_coverage": len(needed),
        "subs": [s.to_dict() for s in subs],
        "recommended_combinations": [c.to_dict() for c in combinations],
    }


def _manual_shift(index: int, item: Any, start: str, end: str) -> ShiftKey:
    if not isinstance(item, dict):
        raise ValidationError(f"shifts[{index}] must be an object", details={"shift": item})
    if not item.get("date") or not item.get("time_slot_id"):
        raise ValidationError(f"shifts[{index}] needs date and time_slot_id", details={"shift": item})
    datum = parse_iso_date(item["date"], field=f"shifts[{index}].date").isoformat()
    if not start <= datum <= end:
        raise ValidationError(f"shifts[{index}].date is outside {start}..{end}", details={"shift": item})
    return ShiftKey(datum, item["time_slot_id"])


def recommend_manual(
    conn: sqlite3.Connection,
    tenant: TenantContext,
    teacher_id: str,
    start_date: str,
    end_date: str,
    shifts: list[dict[str, Any]],
    *,
    today: str,
    include_flexible_staff: bool = True,
    include_past_shifts: bool = False,
    limit: int = DEFAULT_LIMIT,
) -> dict[str, Any]:
    """Rank candidates for an ad-hoc list of a teacher's shifts.

    Nothing is persisted. Each shift sits in the classroom the teacher is
    scheduled in at that day and slot, if any. A shift counts as covered when
    the teacher already has an active substitute assignment at that date and
    slot.
    """
    if not teacher_id or not start_date or not end_date or not isinstance(shifts, list):
        raise ValidationError("teacher_id, start_date, end_date, and shifts are required")
    start, end = ensure_date_range(start_date, end_date)
    keys = list(dict.fromkeys(_manual_shift(i, item, start, end) for i, item in enumerate(shifts)))

    fetch_staff(conn, tenant, teacher_id)
    resolver = ClassroomResolver(conn, tenant, teacher_id)
    adhoc: list[AbsenceShift] = []
    for key in sorted(keys):
        dow = day_number(key.date)
        classroom_id, class_group_id = resolver.scheduled(dow, key.time_slot_id)
        adhoc.append(AbsenceShift(
            id=key.to_string(),
            coverage_request_id="",
            date=key.date,
            day_of_week=dow,
            time_slot_id=key.time_slot_id,
            classroom_id=classroom_id,
            class_group_id=class_group_id,
        ))

    rows = conn.execute(
        """
        SELECT * FROM sub_assignments
        WHERE school_id = ? AND teacher_id = ? AND status = 'active' AND date BETWEEN ? AND ?
        """,
        (tenant.school_id, teacher_id, start, end),
    ).fetchall()
    by_slot: dict[ShiftKey, list[Assignment]] = {}
    for row in rows:
        assignment = Assignment.from_row(row)
        by_slot.setdefault(assignment.key.slot_key, []).append(assignment)

    codes = slot_codes(conn, tenant)
    statuses = {s.id: shift_status(by_slot.get(s.key.slot_key, [])) for s in adhoc}
    needed = [
        s for s in adhoc
        if statuses[s.id] == SHIFT_UNCOVERED and (include_past_shifts or not is_past(s.date, today))
    ]
    if adhoc:
        subs, combinations = _rank(
            conn, tenant, teacher_id, adhoc, needed,
            include_flexible_staff=include_flexible_staff,
            limit=limit,
        )
    else:
        subs, combinations = [], []
    totals = {"total": len(adhoc)}
    for status in (SHIFT_UNCOVERED, SHIFT_PARTIAL, SHIFT_FULL):
        totals[status] = sum(1 for value in statuses.values() if value == status)
    return {
        "teacher_id": teacher_id,
        "start_date": start,
        "end_date": end,
        "totals": totals,
        "shift_details": [
            {
                "id": s.id,
                "date": s.date,
                "day_name": day_name(s.day_of_week),
                "time_slot_id": s.time_slot_id,
                "time_slot_code": codes.get(s.time_slot_id, s.time_slot_id),
                "classroom_id": s.classroom_id,
                "status": statuses[s.id],
            }
            for s in adhoc
        ],
        "shifts_needing_coverage": len(needed),
        "subs": [s.to_dict() for s in subs],
        "recommended_combinations": [c.to_dict() for c in combinations],
    }


def _rank(
    conn: sqlite3.Connection,
    tenant: TenantContext,
    teacher_id: str,
    shifts: list[AbsenceShift],
    needed: list[AbsenceShift],
    *,
    held_by: dict[str, set[str]] | None = None,
    exclude_absence_id: str | None = None,
    include_flexible_staff: bool = True,
    limit: int = DEFAULT_LIMIT,
) -> tuple[list[SubRecommendation], list[Combination]]:
    held_by = held_by or {}
    codes = slot_codes(conn, tenant)
    classrooms = _lookup(conn, tenant, "classrooms")
    groups = _lookup(conn, tenant, "class_groups")
    qualified = _qualified_groups(conn, tenant)
    sources = SqliteConstraintSources(conn)

    def detail(shift: AbsenceShift) -> ShiftDetail:
        group = groups.get(shift.class_group_id) if shift.class_group_id else None
        room = classrooms.get(shift.classroom_id) if shift.classroom_id else None
        return ShiftDetail(
            key=shift.key,
            shift_id=shift.id,
            day_of_week=shift.day_of_week,
            time_slot_code=codes.get(shift.time_slot_id, ""),
            classroom_name=room["name"] if room else None,
            class_group_name=group["name"] if group else None,
        )

    subs: list[SubRecommendation] = []
    for candidate in _candidates(conn, tenant, teacher_id, include_flexible_staff):
        rec = SubRecommendation(
            id=candidate["id"],
            name=staff_display_name(candidate) or "Unknown",
            phone=candidate["phone"],
            email=candidate["email"],
            is_flexible=bool(candidate["is_flexible"]) and not bool(candidate["is_sub"]),
            total_shifts=len(needed),
        )
        mine = held_by.get(candidate["id"], set())
        rec.assigned_shifts = [detail(s) for s in shifts if s.id in mine]

        if needed:
            checks = [
                ConflictCheck(candidate["id"], s.key, shift_id=s.id, day_of_week=s.day_of_week)
                for s in needed
            ]
            results = evaluate_candidate(
                sources, tenant, candidate["id"], checks, exclude_absence_id=exclude_absence_id
            )
            for shift, result in zip(needed, results):
                item = detail(shift)
                if result.is_available:
                    group = groups.get(shift.class_group_id) if shift.class_group_id else None
                    item.conflicts = qualification_conflicts(
                        candidate, group, qualified.get(candidate["id"], set())
                    )
                    if group is not None:
                        rec.qualification_total += 1
                        rec.qualification_matches += int(not item.conflicts.missing_qualifications)
                    rec.can_cover.append(item)
                else:
                    item.status = result.status
                    item.reason = result.message
                    rec.cannot_cover.append(item)
        logger.debug(
            "Candidate %s covers %d/%d shift(s) for teacher %s",
            rec.id, rec.shifts_covered, len(needed), teacher_id,
        )
        subs.append(rec)

    subs = _sort_subs(subs)
    return subs, recommend_combinations(subs, [s.key for s in needed], limit=limit)
