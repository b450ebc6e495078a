"""Combination recommender: greedy set cover with deterministic tie-breaks.

Given the absence's shift set S and each candidate's ``can_cover`` details,
build ordered lists of candidates whose union approaches full coverage of S.
The best greedy pick comes first; alternatives are produced by seeding the
greedy run with each top-ranked candidate and deduplicating by candidate set.

Recommendations are advisory. The lifecycle manager re-validates every shift
at write time.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .models import Combination, ConflictBreakdown, ShiftDetail, SubAssignmentPlan, SubRecommendation
from .shift_key import ShiftKey

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5


# ---- Candidate ranking ------------------------------------------------------

def _cover(sub: SubRecommendation, needed: set[ShiftKey]) -> dict[ShiftKey, ShiftDetail]:
    return {d.key: d for d in sub.can_cover if d.key in needed}


def _conflicts(details: Iterable[ShiftDetail]) -> int:
    return sum(d.conflicts.total for d in details)


def rank_candidates(
    subs: list[SubRecommendation], needed: set[ShiftKey]
) -> list[SubRecommendation]:
    """|Cover| descending, then conflict count ascending, then candidate id."""

    def sort_key(sub: SubRecommendation):
        cover = _cover(sub, needed)
        return (-len(cover), _conflicts(cover.values()), sub.id)

    return sorted(subs, key=sort_key)


# ---- Greedy cover -----------------------------------------------------------

def _plan(
    sub: SubRecommendation, details: list[ShiftDetail], total_needed: int
) -> SubAssignmentPlan:
    conflicts = ConflictBreakdown()
    for detail in details:
        conflicts.add(detail.conflicts)
    return SubAssignmentPlan(
        sub_id=sub.id,
        sub_name=sub.name,
        phone=sub.phone,
        shifts=sorted(details, key=lambda d: d.key),
        total_shifts=total_needed,
        conflicts=conflicts,
    )


def _greedy(
    ranked: list[SubRecommendation],
    needed: set[ShiftKey],
    *,
    seed: SubRecommendation | None = None,
    strategy: str = "greedy",
) -> Combination | None:
    uncovered = set(needed)
    covers = {sub.id: _cover(sub, needed) for sub in ranked}
    chosen: list[SubAssignmentPlan] = []
    used: set[str] = set()

    def take(sub: SubRecommendation, new_keys: set[ShiftKey]) -> None:
        details = [covers[sub.id][k] for k in new_keys]
        chosen.append(_plan(sub, details, len(needed)))
        used.add(sub.id)
        uncovered.difference_update(new_keys)

    if seed is not None:
        new_keys = set(covers[seed.id]) & uncovered
        if not new_keys:
            return None
        take(seed, new_keys)

    while uncovered:
        best: SubRecommendation | None = None
        best_keys: set[ShiftKey] = set()
        best_score: tuple[int, int] | None = None
        for sub in ranked:
            if sub.id in used:
                continue
            new_keys = set(covers[sub.id]) & uncovered
            if not new_keys:
                continue
            score = (-len(new_keys), _conflicts(covers[sub.id][k] for k in new_keys))
            # strict comparison keeps ranked order on ties
            if best_score is None or score < best_score:
                best, best_keys, best_score = sub, new_keys, score
        if best is None:
            break
        take(best, best_keys)

    if not chosen:
        return None
    covered = len(needed) - len(uncovered)
    return Combination(
        subs=chosen,
        total_shifts_covered=covered,
        total_shifts_needed=len(needed),
        total_conflicts=sum(plan.conflicts.total for plan in chosen),
        uncovered_shifts=sorted(uncovered),
        strategy=strategy,
    )


def _combination_order(combo: Combination):
    return (-combo.total_shifts_covered, len(combo.subs), combo.total_conflicts, combo.sub_ids)


def find_best_combination(
    subs: list[SubRecommendation], needed: Iterable[ShiftKey]
) -> Combination | None:
    """Single greedy pass; None when nobody covers any needed shift."""
    needed_set = set(needed)
    if not needed_set:
        return None
    return _greedy(rank_candidates(subs, needed_set), needed_set)


def recommend_combinations(
    subs: list[SubRecommendation],
    needed: Iterable[ShiftKey],
    *,
    limit: int = DEFAULT_LIMIT,
) -> list[Combination]:
    """Ranked covering combinations, best first. Empty when no coverage exists."""
    needed_set = set(needed)
    if not needed_set or limit <= 0:
        return []

    ranked = rank_candidates(subs, needed_set)
    best = _greedy(ranked, needed_set)
    if best is None:
        logger.debug("No candidate covers any of %d needed shifts", len(needed_set))
        return []

    combos = [best]
    seen = {frozenset(best.sub_ids)}
    for seed in ranked[:limit]:
        combo = _greedy(ranked, needed_set, seed=seed, strategy=f"seeded:{seed.id}")
        if combo is None:
            continue
        members = frozenset(combo.sub_ids)
        if members in seen:
            continue
        seen.add(members)
        combos.append(combo)

    combos.sort(key=_combination_order)
    logger.debug(
        "Built %d combination(s); best covers %d/%d with %d sub(s)",
        len(combos), combos[0].total_shifts_covered, len(needed_set), len(combos[0].subs),
    )
    return combos[:limit]
