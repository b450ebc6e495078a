"""Substitute assignment lifecycle against a real SQLite store."""

from __future__ import annotations

import random
import threading

import pytest

from coverage_core.errors import ConflictError, NotFoundError, ValidationError

from .conftest import shift_id


def _all_shift_ids(coverage):
    return sorted({v for k, v in coverage["shift_map"].items() if k.count("|") == 2})


def _active_per_slot(store):
    with store.read() as conn:
        return conn.execute(
            """
            SELECT teacher_id, date, time_slot_id, COUNT(*) AS n FROM sub_assignments
            WHERE status = 'active' AND teacher_id IS NOT NULL
            GROUP BY teacher_id, date, time_slot_id
            """
        ).fetchall()


class TestAssign:
    def test_assigns_available_shifts(self, service, tenant, anne):
        ids = [
            shift_id(anne, "2026-02-09", "EM"),
            shift_id(anne, "2026-02-09", "AM"),
            shift_id(anne, "2026-02-10", "EM"),
        ]
        result = service.assign_shifts(tenant, "to-anne", "sub-a", ids, notes="Covering")
        assert result["assignments_created"] == 3
        assert len(result["assignment_ids"]) == 3
        assert result["covered_shifts"] == 3
        assert result["total_shifts"] == 4
        assert result["status"] == "open"

    def test_full_coverage_fills_request(self, service, tenant, anne, sink):
        result = service.assign_shifts(tenant, "to-anne", "flex-c", _all_shift_ids(anne))
        assert result["covered_shifts"] == 4
        assert result["status"] == "filled"
        assert "status_change" in sink.actions("coverage_request")
        assert "assign" in sink.actions("coverage_request")

    def test_unavailable_shift_rejects_whole_batch(self, service, store, tenant, anne):
        ids = [shift_id(anne, "2026-02-09", "EM"), shift_id(anne, "2026-02-10", "AM")]
        with pytest.raises(ConflictError) as exc_info:
            service.assign_shifts(tenant, "to-anne", "sub-a", ids)
        conflicts = exc_info.value.conflicts
        assert len(conflicts) == 1
        assert conflicts[0]["status"] == "unavailable"
        assert conflicts[0]["message"] == "Marked unavailable"
        assert conflicts[0]["shift_id"] == ids[1]
        assert _active_per_slot(store) == []

    def test_force_overrides_availability(self, service, tenant, anne):
        result = service.assign_shifts(
            tenant, "to-anne", "sub-a", [shift_id(anne, "2026-02-10", "AM")], force=True
        )
        assert result["assignments_created"] == 1

    def test_force_never_double_covers(self, service, tenant, anne):
        target = shift_id(anne, "2026-02-09", "EM")
        service.assign_shifts(tenant, "to-anne", "sub-a", [target])
        with pytest.raises(ConflictError) as exc_info:
            service.assign_shifts(tenant, "to-anne", "flex-c", [target], force=True)
        conflict = exc_info.value.conflicts[0]
        assert conflict["status"] == "already_covered"
        assert conflict["holder"]["staff_id"] == "sub-a"
        assert conflict["holder"]["staff_name"] == "Sam Avery"

    def test_busy_elsewhere_is_conflict_sub(self, service, tenant, anne):
        ben = service.get_coverage_request(tenant, "to-ben")
        service.assign_shifts(tenant, "to-ben", "sub-a", [shift_id(ben, "2026-02-09", "AM")])
        with pytest.raises(ConflictError) as exc_info:
            service.assign_shifts(tenant, "to-anne", "sub-a", [shift_id(anne, "2026-02-09", "AM")])
        conflict = exc_info.value.conflicts[0]
        assert conflict["status"] == "conflict_sub"
        assert conflict["message"] == "Conflict: Assigned to sub for Ben Cruz in Toddler B"

    def test_teacher_cannot_cover_own_absence(self, service, tenant, anne):
        with pytest.raises(ValidationError):
            service.assign_shifts(tenant, "to-anne", "t-anne", [shift_id(anne, "2026-02-09", "EM")])

    def test_unknown_shift(self, service, tenant, anne):
        with pytest.raises(NotFoundError):
            service.assign_shifts(tenant, "to-anne", "sub-a", ["no-such-shift"])

    def test_unknown_candidate(self, service, tenant, anne):
        with pytest.raises(NotFoundError):
            service.assign_shifts(tenant, "to-anne", "sub-zz", [shift_id(anne, "2026-02-09", "EM")])

    def test_missing_fields(self, service, tenant, anne):
        with pytest.raises(ValidationError):
            service.assign_shifts(tenant, "to-anne", "sub-a", [])

    def test_requires_existing_coverage_request(self, service, tenant):
        with pytest.raises(NotFoundError):
            service.assign_shifts(tenant, "to-ben", "sub-b", ["anything"])


class TestConcurrentAssign:
    @pytest.mark.parametrize("candidates", [("sub-a", "flex-c"), ("sub-a", "sub-a")])
    def test_second_writer_gets_conflict(self, service, store, tenant, anne, candidates):
        target = shift_id(anne, "2026-02-09", "EM")
        barrier = threading.Barrier(2)
        outcomes: list[object] = []

        def attempt(candidate_id):
            barrier.wait()
            try:
                outcomes.append(service.assign_shifts(tenant, "to-anne", candidate_id, [target]))
            except ConflictError as exc:
                outcomes.append(exc)

        threads = [threading.Thread(target=attempt, args=(c,)) for c in candidates]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        errors = [o for o in outcomes if isinstance(o, ConflictError)]
        successes = [o for o in outcomes if isinstance(o, dict)]
        assert len(successes) == 1
        assert len(errors) == 1
        assert [r["n"] for r in _active_per_slot(store)] == [1]


class TestRandomizedInvariant:
    def test_at_most_one_active_assignment_per_shift(self, service, store, tenant, anne):
        rng = random.Random(20260209)
        shift_ids = _all_shift_ids(anne)
        candidates = ["sub-a", "sub-b", "flex-c"]

        for _ in range(60):
            candidate = rng.choice(candidates)
            if rng.random() < 0.65:
                picked = rng.sample(shift_ids, rng.randint(1, 2))
                try:
                    service.assign_shifts(tenant, "to-anne", candidate, picked, force=True)
                except ConflictError:
                    pass
            else:
                try:
                    service.unassign_shifts(tenant, "to-anne", candidate, "all_for_absence")
                except NotFoundError:
                    pass

            assert all(r["n"] == 1 for r in _active_per_slot(store))
            with store.read() as conn:
                request = conn.execute(
                    "SELECT covered_shifts, total_shifts, status FROM coverage_requests WHERE id = ?",
                    (anne["coverage_request_id"],),
                ).fetchone()
                covered = conn.execute(
                    """
                    SELECT COUNT(DISTINCT coverage_request_shift_id) AS n FROM sub_assignments
                    WHERE coverage_request_id = ? AND status = 'active'
                    """,
                    (anne["coverage_request_id"],),
                ).fetchone()
            assert request["covered_shifts"] == covered["n"]
            assert request["status"] == ("filled" if covered["n"] == request["total_shifts"] else "open")


class TestUnassign:
    def test_single(self, service, tenant, anne):
        created = service.assign_shifts(
            tenant, "to-anne", "flex-c", _all_shift_ids(anne)
        )["assignment_ids"]
        result = service.unassign_shifts(
            tenant, "to-anne", "flex-c", "single", assignment_id=created[0]
        )
        assert result["removed_count"] == 1
        assert result["removed_assignment_ids"] == [created[0]]
        assert result["remaining_active_on_target_shift"] == 0
        assert result["covered_shifts"] == 3
        assert result["status"] == "open"

    def test_weekday_removes_matching_weeks(self, service, tenant):
        weeks = service.get_coverage_request(tenant, "to-ben-weeks")
        assert weeks["total_shifts"] == 6
        ids = [
            shift_id(weeks, "2026-02-16", "AM"),
            shift_id(weeks, "2026-02-16", "PM"),
            shift_id(weeks, "2026-02-17", "AM"),
            shift_id(weeks, "2026-02-23", "AM"),
            shift_id(weeks, "2026-02-23", "PM"),
            shift_id(weeks, "2026-02-24", "AM"),
        ]
        created = service.assign_shifts(tenant, "to-ben-weeks", "sub-b", ids)["assignment_ids"]

        result = service.unassign_shifts(
            tenant, "to-ben-weeks", "sub-b", "weekday", assignment_id=created[0]
        )
        assert result["removed_count"] == 2
        assert sorted(result["removed_assignment_ids"]) == sorted([created[0], created[3]])
        assert result["remaining_active_on_target_shift"] == 0
        assert result["covered_shifts"] == 4
        assert result["status"] == "open"

    def test_all_for_absence(self, service, tenant, anne):
        service.assign_shifts(tenant, "to-anne", "flex-c", _all_shift_ids(anne))
        result = service.unassign_shifts(tenant, "to-anne", "flex-c", "all_for_absence")
        assert result["removed_count"] == 4
        assert result["remaining_active_on_target_shift"] is None
        assert result["covered_shifts"] == 0

    def test_reassign_after_unassign(self, service, tenant, anne):
        target = shift_id(anne, "2026-02-09", "EM")
        created = service.assign_shifts(tenant, "to-anne", "sub-a", [target])["assignment_ids"]
        service.unassign_shifts(tenant, "to-anne", "sub-a", "single", assignment_id=created[0])
        result = service.assign_shifts(tenant, "to-anne", "flex-c", [target])
        assert result["covered_shifts"] == 1

    def test_stale_assignment(self, service, tenant, anne):
        created = service.assign_shifts(
            tenant, "to-anne", "sub-a", [shift_id(anne, "2026-02-09", "EM")]
        )["assignment_ids"]
        service.unassign_shifts(tenant, "to-anne", "sub-a", "single", assignment_id=created[0])
        with pytest.raises(NotFoundError):
            service.unassign_shifts(tenant, "to-anne", "sub-a", "single", assignment_id=created[0])

    def test_nothing_to_remove(self, service, tenant, anne):
        with pytest.raises(NotFoundError):
            service.unassign_shifts(tenant, "to-anne", "sub-a", "all_for_absence")

    def test_scope_needs_assignment_id(self, service, tenant, anne):
        with pytest.raises(ValidationError):
            service.unassign_shifts(tenant, "to-anne", "sub-a", "weekday")

    def test_unknown_scope(self, service, tenant, anne):
        with pytest.raises(ValidationError):
            service.unassign_shifts(tenant, "to-anne", "sub-a", "everything")
