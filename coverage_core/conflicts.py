"""Combine constraint sources into one status per (candidate, shift).

Precedence, first match wins:

1. no positive availability signal  -> unavailable ("Marked unavailable")
2. regular teaching commitment      -> conflict_teaching
3. active assignment elsewhere      -> conflict_sub
4. approved time off                -> unavailable ("Has time off")
5. otherwise                        -> available
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass

from .models import (
    AVAILABLE,
    STATUS_AVAILABLE,
    STATUS_CONFLICT_SUB,
    STATUS_CONFLICT_TEACHING,
    STATUS_UNAVAILABLE,
    ShiftConflict,
    TenantContext,
)
from .shift_key import ShiftKey
from .sources import CandidateConstraints, ConstraintSources, load_candidate_constraints

MSG_MARKED_UNAVAILABLE = "Marked unavailable"
MSG_TEACHING = "Conflict: Assigned to teach"
MSG_TIME_OFF = "Has time off"


@dataclass(frozen=True)
class ConflictCheck:
    candidate_id: str
    shift_key: ShiftKey
    shift_id: str | None = None
    day_of_week: int | None = None


def evaluate_shift(
    constraints: CandidateConstraints,
    key: ShiftKey,
    *,
    shift_id: str | None = None,
    day_of_week: int | None = None,
) -> ShiftConflict:
    availability = constraints.availability(key, day_of_week)
    base = {"candidate_id": constraints.candidate_id, "shift_key": key, "shift_id": shift_id}

    if availability != AVAILABLE:
        return ShiftConflict(
            **base,
            status=STATUS_UNAVAILABLE,
            message=MSG_MARKED_UNAVAILABLE,
            metadata={"availability": availability},
        )

    if constraints.teaches_at(key):
        return ShiftConflict(**base, status=STATUS_CONFLICT_TEACHING, message=MSG_TEACHING)

    holder = constraints.holder_at(key)
    if holder is not None:
        return ShiftConflict(
            **base,
            status=STATUS_CONFLICT_SUB,
            message=f"Conflict: Assigned to {holder.describe()}",
            metadata={
                "assignment_id": holder.assignment_id,
                "teacher_id": holder.teacher_id,
                "teacher_name": holder.teacher_name,
                "classroom_id": holder.classroom_id,
                "classroom_name": holder.classroom_name,
            },
        )

    if constraints.has_time_off_at(key):
        return ShiftConflict(
            **base,
            status=STATUS_UNAVAILABLE,
            message=MSG_TIME_OFF,
            metadata={"availability": availability, "time_off": True},
        )

    return ShiftConflict(**base, status=STATUS_AVAILABLE)


def _date_window(checks: list[ConflictCheck]) -> tuple[str, str]:
    dates = sorted(c.shift_key.date for c in checks)
    return dates[0], dates[-1]


def evaluate_candidate(
    sources: ConstraintSources,
    tenant: TenantContext,
    candidate_id: str,
    checks: list[ConflictCheck],
    *,
    start: str | None = None,
    end: str | None = None,
    exclude_absence_id: str | None = None,
) -> list[ShiftConflict]:
    """Evaluate many shifts for one candidate with a single round of source queries."""
    if not checks:
        return []
    window_start, window_end = _date_window(checks)
    constraints = load_candidate_constraints(
        sources,
        tenant,
        candidate_id,
        start or window_start,
        end or window_end,
        exclude_absence_id=exclude_absence_id,
    )
    return [
        evaluate_shift(constraints, c.shift_key, shift_id=c.shift_id, day_of_week=c.day_of_week)
        for c in checks
    ]


def compute_conflicts(
    sources: ConstraintSources,
    tenant: TenantContext,
    checks: list[ConflictCheck],
    *,
    exclude_absence_id: str | None = None,
) -> list[ShiftConflict]:
    """Evaluate arbitrary (candidate, shift) pairs; results follow input order."""
    by_candidate: dict[str, list[int]] = defaultdict(list)
    for index, check in enumerate(checks):
        by_candidate[check.candidate_id].append(index)

    results: list[ShiftConflict | None] = [None] * len(checks)
    for candidate_id in sorted(by_candidate):
        indexes = by_candidate[candidate_id]
        evaluated = evaluate_candidate(
            sources,
            tenant,
            candidate_id,
            [checks[i] for i in indexes],
            exclude_absence_id=exclude_absence_id,
        )
        for index, result in zip(indexes, evaluated):
            results[index] = result
    return [r for r in results if r is not None]
