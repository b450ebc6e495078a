"""Per-shift coverage status for one absence."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .models import Absence, AbsenceShift, Assignment, percent
from .shift_key import Granularity
from .time_utils import day_name, is_past

SHIFT_UNCOVERED = "uncovered"
SHIFT_PARTIAL = "partially_covered"
SHIFT_FULL = "fully_covered"

ABSENCE_UNCOVERED = "uncovered"
ABSENCE_PARTIAL = "partially_covered"
ABSENCE_COVERED = "covered"


def shift_status(assignments: list[Assignment]) -> str:
    active = [a for a in assignments if a.status == "active"]
    if not active:
        return SHIFT_UNCOVERED
    if any(not a.is_partial for a in active):
        return SHIFT_FULL
    return SHIFT_PARTIAL


@dataclass
class CoverageShiftDetail:
    shift: AbsenceShift
    status: str
    time_slot_code: str = ""
    sub_name: str | None = None
    is_partial: bool = False

    def sort_key(self):
        return (self.shift.date, self.time_slot_code, self.shift.classroom_id or "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.shift.id,
            "date": self.shift.date,
            "day_name": day_name(self.shift.day_of_week),
            "time_slot_id": self.shift.time_slot_id,
            "time_slot_code": self.time_slot_code,
            "classroom_id": self.shift.classroom_id,
            "status": self.status,
            "sub_name": self.sub_name,
            "is_partial": self.is_partial,
        }


@dataclass
class CoverageSummary:
    absence: Absence
    shift_details: list[CoverageShiftDetail] = field(default_factory=list)
    past: int = 0
    upcoming: int = 0

    def _count(self, status: str) -> int:
        return sum(1 for d in self.shift_details if d.status == status)

    @property
    def total(self) -> int:
        return len(self.shift_details)

    @property
    def uncovered(self) -> int:
        return self._count(SHIFT_UNCOVERED)

    @property
    def partially_covered(self) -> int:
        return self._count(SHIFT_PARTIAL)

    @property
    def fully_covered(self) -> int:
        return self._count(SHIFT_FULL)

    @property
    def coverage_status(self) -> str:
        if self.total and self.fully_covered == self.total:
            return ABSENCE_COVERED
        if self.fully_covered or self.partially_covered:
            return ABSENCE_PARTIAL
        return ABSENCE_UNCOVERED

    def to_dict(self) -> dict[str, Any]:
        ordered = sorted(self.shift_details, key=CoverageShiftDetail.sort_key)
        return {
            "absence": self.absence.to_dict(),
            "coverage_status": self.coverage_status,
            "coverage_percent": percent(self.fully_covered, self.total),
            "shifts": {
                "total": self.total,
                "uncovered": self.uncovered,
                "partially_covered": self.partially_covered,
                "fully_covered": self.fully_covered,
                "past": self.past,
                "upcoming": self.upcoming,
                "shift_details": [d.to_dict() for d in ordered],
                "coverage_segments": [{"id": d.shift.id, "status": d.status} for d in ordered],
            },
        }


def summarize_coverage(
    absence: Absence,
    shifts: list[AbsenceShift],
    assignments: list[Assignment],
    *,
    slot_codes: dict[str, str] | None = None,
    staff_names: dict[str, str] | None = None,
    today: str | None = None,
) -> CoverageSummary:
    """Match assignments to shifts and classify each shift.

    Assignments link by ``coverage_request_shift_id``; ones without a link fall
    back to matching on date + slot.
    """
    slot_codes = slot_codes or {}
    staff_names = staff_names or {}

    by_shift_id: dict[str, list[Assignment]] = {}
    by_slot: dict[Any, list[Assignment]] = {}
    for assignment in assignments:
        if assignment.status != "active":
            continue
        if assignment.coverage_request_shift_id:
            by_shift_id.setdefault(assignment.coverage_request_shift_id, []).append(assignment)
        else:
            by_slot.setdefault(assignment.key.at(Granularity.SLOT), []).append(assignment)

    summary = CoverageSummary(absence=absence)
    for shift in shifts:
        if shift.status != "active":
            continue
        matched = by_shift_id.get(shift.id) or by_slot.get(shift.key.at(Granularity.SLOT), [])
        status = shift_status(matched)
        holder = next((a for a in matched if not a.is_partial), matched[0] if matched else None)
        summary.shift_details.append(
            CoverageShiftDetail(
                shift=shift,
                status=status,
                time_slot_code=slot_codes.get(shift.time_slot_id, shift.time_slot_id),
                sub_name=staff_names.get(holder.staff_id) if holder else None,
                is_partial=status == SHIFT_PARTIAL,
            )
        )
        if today is not None and is_past(shift.date, today):
            summary.past += 1
        else:
            summary.upcoming += 1
    return summary
