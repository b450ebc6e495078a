"""Domain records and result variants for the coverage engine."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping

from .shift_key import ShiftKey
from .time_utils import day_name

# Tri-state availability for one candidate at one shift.
AVAILABLE = "available"
UNAVAILABLE = "unavailable"
NO_DATA = "no_data"

# Conflict evaluator outcomes, in precedence order.
STATUS_UNAVAILABLE = "unavailable"
STATUS_CONFLICT_TEACHING = "conflict_teaching"
STATUS_CONFLICT_SUB = "conflict_sub"
STATUS_AVAILABLE = "available"

KIND_SUBSTITUTE = "substitute_shift"
KIND_FLEX = "flex"


def percent(part: int, whole: int, *, empty: int = 0) -> int:
    """Whole-number percentage, rounding half up."""
    if whole <= 0:
        return empty
    return int(math.floor(part * 100 / whole + 0.5))


def _bool(value: Any) -> bool:
    return bool(value) if value is not None else False


@dataclass(frozen=True)
class TenantContext:
    """Explicit tenant scope threaded through every adapter and manager call."""

    school_id: str
    actor_user_id: str | None = None


# ---- Persisted records -----------------------------------------------------

@dataclass
class Absence:
    id: str
    school_id: str
    teacher_id: str
    start_date: str
    end_date: str
    status: str
    total_shifts: int = 0
    covered_shifts: int = 0
    source_request_id: str | None = None
    request_type: str = "time_off"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Absence:
        data = dict(row)
        return cls(
            id=data["id"],
            school_id=data["school_id"],
            teacher_id=data["teacher_id"],
            start_date=data["start_date"],
            end_date=data["end_date"] or data["start_date"],
            status=data["status"],
            total_shifts=int(data.get("total_shifts") or 0),
            covered_shifts=int(data.get("covered_shifts") or 0),
            source_request_id=data.get("source_request_id"),
            request_type=data.get("request_type") or "time_off",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "teacher_id": self.teacher_id,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "status": self.status,
            "total_shifts": self.total_shifts,
            "covered_shifts": self.covered_shifts,
            "source_request_id": self.source_request_id,
            "request_type": self.request_type,
        }


@dataclass
class AbsenceShift:
    id: str
    coverage_request_id: str
    date: str
    day_of_week: int
    time_slot_id: str
    classroom_id: str | None
    class_group_id: str | None = None
    is_partial: bool = False
    status: str = "active"

    @property
    def key(self) -> ShiftKey:
        return ShiftKey(self.date, self.time_slot_id, self.classroom_id)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> AbsenceShift:
        data = dict(row)
        return cls(
            id=data["id"],
            coverage_request_id=data["coverage_request_id"],
            date=data["date"],
            day_of_week=int(data["day_of_week"]),
            time_slot_id=data["time_slot_id"],
            classroom_id=data.get("classroom_id"),
            class_group_id=data.get("class_group_id"),
            is_partial=_bool(data.get("is_partial")),
            status=data.get("status") or "active",
        )


@dataclass
class Assignment:
    id: str
    staff_id: str
    date: str
    time_slot_id: str
    status: str
    assignment_kind: str = KIND_SUBSTITUTE
    teacher_id: str | None = None
    classroom_id: str | None = None
    day_of_week: int | None = None
    coverage_request_id: str | None = None
    coverage_request_shift_id: str | None = None
    event_id: str | None = None
    is_partial: bool = False
    notes: str | None = None

    @property
    def key(self) -> ShiftKey:
        return ShiftKey(self.date, self.time_slot_id, self.classroom_id)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Assignment:
        data = dict(row)
        return cls(
            id=data["id"],
            staff_id=data["staff_id"],
            date=data["date"],
            time_slot_id=data["time_slot_id"],
            status=data["status"],
            assignment_kind=data.get("assignment_kind") or KIND_SUBSTITUTE,
            teacher_id=data.get("teacher_id"),
            classroom_id=data.get("classroom_id"),
            day_of_week=data.get("day_of_week"),
            coverage_request_id=data.get("coverage_request_id"),
            coverage_request_shift_id=data.get("coverage_request_shift_id"),
            event_id=data.get("event_id"),
            is_partial=_bool(data.get("is_partial")),
            notes=data.get("notes"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "staff_id": self.staff_id,
            "teacher_id": self.teacher_id,
            "date": self.date,
            "day_of_week": self.day_of_week,
            "time_slot_id": self.time_slot_id,
            "classroom_id": self.classroom_id,
            "status": self.status,
            "assignment_kind": self.assignment_kind,
            "coverage_request_id": self.coverage_request_id,
            "coverage_request_shift_id": self.coverage_request_shift_id,
            "event_id": self.event_id,
            "is_partial": self.is_partial,
            "notes": self.notes,
        }


@dataclass
class FlexAssignmentEvent:
    id: str
    staff_id: str
    start_date: str
    end_date: str
    status: str
    notes: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> FlexAssignmentEvent:
        data = dict(row)
        return cls(
            id=data["id"],
            staff_id=data["staff_id"],
            start_date=data["start_date"],
            end_date=data["end_date"],
            status=data["status"],
            notes=data.get("notes"),
        )


@dataclass
class BaselineScheduleEntry:
    id: str
    teacher_id: str
    day_of_week: int
    time_slot_id: str
    classroom_id: str
    class_group_id: str | None = None
    is_floater: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> BaselineScheduleEntry:
        data = dict(row)
        return cls(
            id=data["id"],
            teacher_id=data["teacher_id"],
            day_of_week=int(data["day_of_week"]),
            time_slot_id=data["time_slot_id"],
            classroom_id=data["classroom_id"],
            class_group_id=data.get("class_group_id"),
            is_floater=_bool(data.get("is_floater")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "teacher_id": self.teacher_id,
            "day_of_week": self.day_of_week,
            "time_slot_id": self.time_slot_id,
            "classroom_id": self.classroom_id,
            "class_group_id": self.class_group_id,
            "is_floater": self.is_floater,
        }


# ---- Conflict evaluation ---------------------------------------------------

@dataclass(frozen=True)
class AssignmentHolder:
    """Who a candidate is already covering at a shift."""

    assignment_id: str
    teacher_id: str | None
    teacher_name: str | None
    classroom_id: str | None
    classroom_name: str | None
    coverage_request_id: str | None = None
    event_id: str | None = None

    def describe(self) -> str:
        room = f" in {self.classroom_name}" if self.classroom_name else ""
        if self.teacher_id:
            return f"sub for {self.teacher_name or 'Unknown'}{room}"
        return f"flex coverage{room}"


@dataclass
class ShiftConflict:
    candidate_id: str
    shift_key: ShiftKey
    status: str
    message: str = ""
    shift_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_available(self) -> bool:
        return self.status == STATUS_AVAILABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "shift_id": self.shift_id,
            "shift_key": self.shift_key.to_string(),
            "date": self.shift_key.date,
            "time_slot_id": self.shift_key.time_slot_id,
            "status": self.status,
            "message": self.message,
            "metadata": dict(self.metadata),
        }


# ---- Recommendation variants -----------------------------------------------

@dataclass
class ConflictBreakdown:
    """Soft mismatches between a candidate and the class they would cover."""

    missing_diaper_changing: int = 0
    missing_lifting: int = 0
    missing_qualifications: int = 0

    @property
    def total(self) -> int:
        return self.missing_diaper_changing + self.missing_lifting + self.missing_qualifications

    def add(self, other: ConflictBreakdown) -> None:
        self.missing_diaper_changing += other.missing_diaper_changing
        self.missing_lifting += other.missing_lifting
        self.missing_qualifications += other.missing_qualifications

    def to_dict(self) -> dict[str, int]:
        return {
            "missing_diaper_changing": self.missing_diaper_changing,
            "missing_lifting": self.missing_lifting,
            "missing_qualifications": self.missing_qualifications,
            "total": self.total,
        }


@dataclass
class ShiftDetail:
    key: ShiftKey
    shift_id: str | None = None
    day_of_week: int | None = None
    time_slot_code: str = ""
    classroom_name: str | None = None
    class_group_name: str | None = None
    conflicts: ConflictBreakdown = field(default_factory=ConflictBreakdown)
    status: str = STATUS_AVAILABLE
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "shift_id": self.shift_id,
            "date": self.key.date,
            "day_name": day_name(self.day_of_week),
            "time_slot_id": self.key.time_slot_id,
            "time_slot_code": self.time_slot_code,
            "classroom_id": self.key.classroom_id,
            "classroom_name": self.classroom_name,
            "class_name": self.class_group_name,
        }
        if self.status != STATUS_AVAILABLE:
            out["status"] = self.status
            out["reason"] = self.reason
        elif self.conflicts.total:
            out["conflicts"] = self.conflicts.to_dict()
        return out


@dataclass
class SubRecommendation:
    id: str
    name: str
    phone: str | None = None
    email: str | None = None
    is_flexible: bool = False
    total_shifts: int = 0
    can_cover: list[ShiftDetail] = field(default_factory=list)
    cannot_cover: list[ShiftDetail] = field(default_factory=list)
    assigned_shifts: list[ShiftDetail] = field(default_factory=list)
    qualification_matches: int = 0
    qualification_total: int = 0

    @property
    def shifts_covered(self) -> int:
        return len(self.can_cover)

    @property
    def coverage_percent(self) -> int:
        return percent(self.shifts_covered, self.total_shifts)

    @property
    def conflict_count(self) -> int:
        return sum(s.conflicts.total for s in self.can_cover)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "is_flexible": self.is_flexible,
            "coverage_percent": self.coverage_percent,
            "shifts_covered": self.shifts_covered,
            "total_shifts": self.total_shifts,
            "conflict_count": self.conflict_count,
            "can_cover": [s.to_dict() for s in self.can_cover],
            "cannot_cover": [s.to_dict() for s in self.cannot_cover],
            "assigned_shifts": [s.to_dict() for s in self.assigned_shifts],
            "qualification_matches": self.qualification_matches,
            "qualification_total": self.qualification_total,
        }


@dataclass
class SubAssignmentPlan:
    sub_id: str
    sub_name: str
    phone: str | None
    shifts: list[ShiftDetail]
    total_shifts: int
    conflicts: ConflictBreakdown

    @property
    def shifts_covered(self) -> int:
        return len(self.shifts)

    @property
    def coverage_percent(self) -> int:
        return percent(self.shifts_covered, self.total_shifts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sub_id": self.sub_id,
            "sub_name": self.sub_name,
            "phone": self.phone,
            "shifts": [s.to_dict() for s in self.shifts],
            "shifts_covered": self.shifts_covered,
            "total_shifts": self.total_shifts,
            "coverage_percent": self.coverage_percent,
            "conflicts": self.conflicts.to_dict(),
        }


@dataclass
class Combination:
    subs: list[SubAssignmentPlan]
    total_shifts_covered: int
    total_shifts_needed: int
    total_conflicts: int
    uncovered_shifts: list[ShiftKey] = field(default_factory=list)
    strategy: str = "greedy"

    @property
    def coverage_percent(self) -> int:
        return percent(self.total_shifts_covered, self.total_shifts_needed, empty=100)

    @property
    def sub_ids(self) -> list[str]:
        return [s.sub_id for s in self.subs]

    def to_dict(self) -> dict[str, Any]:
        return {
            "subs": [s.to_dict() for s in self.subs],
            "total_shifts_covered": self.total_shifts_covered,
            "total_shifts_needed": self.total_shifts_needed,
            "total_conflicts": self.total_conflicts,
            "coverage_percent": self.coverage_percent,
            "uncovered_shifts": [k.to_string() for k in self.uncovered_shifts],
            "strategy": self.strategy,
        }
