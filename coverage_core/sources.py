"""Read-only constraint sources consulted for every candidate.

Each source answers one question about a candidate over a date range. The
service layer backs them with SQLite; tests back them with dicts. Date-keyed
layers return only what is on record: a missing exception means "defer to
the weekly layer", never "unavailable".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from .errors import CoverageError, UpstreamFailure
from .models import AVAILABLE, NO_DATA, UNAVAILABLE, AssignmentHolder, TenantContext
from .shift_key import Granularity, ShiftKey
from .time_utils import day_number

logger = logging.getLogger(__name__)

# Availability, teaching load, time off and existing assignments are all
# compared at date + slot granularity.
EVALUATION_GRANULARITY = Granularity.SLOT


class ConstraintSources(Protocol):
    def weekly_availability(
        self, tenant: TenantContext, candidate_id: str
    ) -> dict[tuple[int, str], bool]: ...

    def date_exceptions(
        self, tenant: TenantContext, candidate_id: str, start: str, end: str
    ) -> dict[ShiftKey, bool]: ...

    def regular_teaching_load(
        self, tenant: TenantContext, candidate_id: str, start: str, end: str
    ) -> set[ShiftKey]: ...

    def existing_time_off(
        self, tenant: TenantContext, candidate_id: str, start: str, end: str
    ) -> set[ShiftKey]: ...

    def active_assignments(
        self, tenant: TenantContext, candidate_id: str, start: str, end: str
    ) -> dict[ShiftKey, AssignmentHolder]: ...


@dataclass
class CandidateConstraints:
    """Everything known about one candidate for one date range."""

    candidate_id: str
    weekly: dict[tuple[int, str], bool] = field(default_factory=dict)
    exceptions: dict[ShiftKey, bool] = field(default_factory=dict)
    teaching: set[ShiftKey] = field(default_factory=set)
    time_off: set[ShiftKey] = field(default_factory=set)
    assignments: dict[ShiftKey, AssignmentHolder] = field(default_factory=dict)

    def availability(self, key: ShiftKey, day_of_week: int | None = None) -> str:
        slot = key.at(EVALUATION_GRANULARITY)
        if slot in self.exceptions:
            return AVAILABLE if self.exceptions[slot] else UNAVAILABLE
        dow = day_of_week or day_number(key.date)
        weekly = self.weekly.get((dow, key.time_slot_id))
        if weekly is None:
            return NO_DATA
        return AVAILABLE if weekly else UNAVAILABLE

    def teaches_at(self, key: ShiftKey) -> bool:
        return key.at(EVALUATION_GRANULARITY) in self.teaching

    def has_time_off_at(self, key: ShiftKey) -> bool:
        return key.at(EVALUATION_GRANULARITY) in self.time_off

    def holder_at(self, key: ShiftKey) -> AssignmentHolder | None:
        return self.assignments.get(key.at(EVALUATION_GRANULARITY))


def _narrow(keys, granularity: Granularity = EVALUATION_GRANULARITY):
    return {k.at(granularity) for k in keys}


def load_candidate_constraints(
    sources: ConstraintSources,
    tenant: TenantContext,
    candidate_id: str,
    start: str,
    end: str,
    *,
    exclude_absence_id: str | None = None,
) -> CandidateConstraints:
    """Query every source for one candidate.

    Any source failure aborts the whole evaluation with UpstreamFailure; a
    partial availability picture could produce a double booking.
    """
    step = "weekly_availability"
    try:
        weekly = sources.weekly_availability(tenant, candidate_id)
        step = "date_exceptions"
        exceptions = sources.date_exceptions(tenant, candidate_id, start, end)
        step = "regular_teaching_load"
        teaching = sources.regular_teaching_load(tenant, candidate_id, start, end)
        step = "existing_time_off"
        time_off = sources.existing_time_off(tenant, candidate_id, start, end)
        step = "active_assignments"
        assignments = sources.active_assignments(tenant, candidate_id, start, end)
    except CoverageError:
        raise
    except Exception as exc:
        raise UpstreamFailure(
            f"Constraint source '{step}' failed for candidate {candidate_id}",
            details={"candidate_id": candidate_id, "source": step},
        ) from exc

    holders: dict[ShiftKey, AssignmentHolder] = {}
    for key, holder in sorted(assignments.items()):
        if exclude_absence_id and holder.coverage_request_id == exclude_absence_id:
            continue
        holders.setdefault(key.at(EVALUATION_GRANULARITY), holder)

    logger.debug(
        "Constraints for %s in %s..%s: %d teaching, %d time off, %d assignments",
        candidate_id, start, end, len(teaching), len(time_off), len(holders),
    )
    return CandidateConstraints(
        candidate_id=candidate_id,
        weekly=dict(weekly),
        exceptions={k.at(EVALUATION_GRANULARITY): bool(v) for k, v in exceptions.items()},
        teaching=_narrow(teaching),
        time_off=_narrow(time_off),
        assignments=holders,
    )
