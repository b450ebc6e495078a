"""Coverage and substitute-assignment engine (pure logic, no I/O)."""

from .conflicts import ConflictCheck, compute_conflicts, evaluate_candidate, evaluate_shift
from .errors import ConflictError, CoverageError, NotFoundError, UpstreamFailure, ValidationError
from .lifecycle import can_transition, require_transition
from .models import (
    Absence,
    AbsenceShift,
    Assignment,
    AssignmentHolder,
    BaselineScheduleEntry,
    Combination,
    ConflictBreakdown,
    FlexAssignmentEvent,
    ShiftConflict,
    ShiftDetail,
    SubAssignmentPlan,
    SubRecommendation,
    TenantContext,
)
from .recommender import find_best_combination, rank_candidates, recommend_combinations
from .shift_key import Granularity, ShiftKey
from .sources import CandidateConstraints, ConstraintSources, load_candidate_constraints
from .summary import CoverageSummary, summarize_coverage

__all__ = [
    "Absence",
    "AbsenceShift",
    "Assignment",
    "AssignmentHolder",
    "BaselineScheduleEntry",
    "CandidateConstraints",
    "Combination",
    "ConflictBreakdown",
    "ConflictCheck",
    "ConflictError",
    "ConstraintSources",
    "CoverageError",
    "CoverageSummary",
    "FlexAssignmentEvent",
    "Granularity",
    "NotFoundError",
    "ShiftConflict",
    "ShiftDetail",
    "ShiftKey",
    "SubAssignmentPlan",
    "SubRecommendation",
    "TenantContext",
    "UpstreamFailure",
    "ValidationError",
    "can_transition",
    "compute_conflicts",
    "evaluate_candidate",
    "evaluate_shift",
    "find_best_combination",
    "load_candidate_constraints",
    "rank_candidates",
    "recommend_combinations",
    "require_transition",
    "summarize_coverage",
]
