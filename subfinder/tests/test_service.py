"""Conflict checks and workbook export through the service facade."""

from __future__ import annotations

import pytest
from openpyxl import load_workbook

from coverage_core.errors import NotFoundError, ValidationError
from coverage_core.models import TenantContext
from subfinder.service import SubFinder
from subfinder.store import Store

from .conftest import FIXTURES_DIR, TODAY, shift_id


class TestComputeConflicts:
    def test_statuses_follow_input_order(self, service, tenant):
        results = service.compute_conflicts(
            tenant,
            [
                {"candidate_id": "sub-a", "shift_key": "2026-02-09|EM"},
                {"candidate_id": "flex-c", "date": "2026-02-10", "time_slot_id": "PM"},
                {"candidate_id": "sub-a", "shift_key": "2026-02-11|EM"},
                {"candidate_id": "flex-c", "shift_key": "2026-02-12|EM"},
                {"candidate_id": "sub-b", "shift_key": "2026-02-09|EM"},
            ],
        )
        assert [r["candidate_id"] for r in results] == ["sub-a", "flex-c", "sub-a", "flex-c", "sub-b"]
        assert [r["status"] for r in results] == [
            "available",
            "conflict_teaching",
            "unavailable",
            "unavailable",
            "unavailable",
        ]
        assert results[1]["message"] == "Conflict: Assigned to teach"
        assert results[2]["message"] == "Marked unavailable"
        assert results[2]["metadata"]["availability"] == "no_data"
        assert results[3]["message"] == "Has time off"
        assert results[4]["metadata"]["availability"] == "unavailable"

    def test_date_exception_overrides_weekly(self, service, tenant):
        results = service.compute_conflicts(
            tenant,
            [
                {"candidate_id": "sub-a", "shift_key": "2026-02-10|AM"},
                {"candidate_id": "sub-a", "shift_key": "2026-02-17|AM"},
            ],
        )
        assert [r["status"] for r in results] == ["unavailable", "available"]

    def test_existing_assignment_is_conflict_sub(self, service, tenant, anne):
        service.assign_shifts(tenant, "to-anne", "sub-a", [shift_id(anne, "2026-02-09", "EM")])
        result = service.compute_conflicts(tenant, [{"candidate_id": "sub-a", "shift_key": "2026-02-09|EM"}])[0]
        assert result["status"] == "conflict_sub"
        assert result["message"] == "Conflict: Assigned to sub for Anne Baker in Infant A"
        assert result["metadata"]["teacher_id"] == "t-anne"

    def test_empty_input(self, service, tenant):
        assert service.compute_conflicts(tenant, []) == []

    def test_missing_candidate(self, service, tenant):
        with pytest.raises(ValidationError):
            service.compute_conflicts(tenant, [{"shift_key": "2026-02-09|EM"}])

    def test_malformed_key(self, service, tenant):
        with pytest.raises(ValidationError):
            service.compute_conflicts(tenant, [{"candidate_id": "sub-a", "shift_key": "2026-02-09"}])

    def test_bad_date(self, service, tenant):
        with pytest.raises(ValidationError):
            service.compute_conflicts(tenant, [{"candidate_id": "sub-a", "shift_key": "09/02/2026|EM"}])


class TestCheckShiftConflicts:
    def test_own_absence_is_not_a_conflict(self, service, tenant, anne):
        target = shift_id(anne, "2026-02-09", "EM")
        service.assign_shifts(tenant, "to-anne", "sub-a", [target])
        result = service.check_shift_conflicts(tenant, "to-anne", "sub-a", [target])[0]
        assert result["status"] == "available"
        assert result["shift_id"] == target

    def test_assignment_on_another_absence_counts(self, service, tenant, anne):
        ben = service.get_coverage_request(tenant, "to-ben")
        service.assign_shifts(tenant, "to-ben", "flex-c", [shift_id(ben, "2026-02-09", "AM")])
        results = service.check_shift_conflicts(
            tenant, "to-anne", "flex-c", [shift_id(anne, "2026-02-09", "AM")]
        )
        assert results[0]["status"] == "conflict_sub"

    def test_unknown_shift_ids(self, service, tenant, anne):
        with pytest.raises(NotFoundError) as exc_info:
            service.check_shift_conflicts(tenant, "to-anne", "sub-a", ["nope"])
        assert exc_info.value.details == {"shift_ids": ["nope"]}


class TestExportWorkbook:
    def test_writes_all_sheets(self, service, tenant, anne, tmp_path):
        service.assign_shifts(tenant, "to-anne", "sub-a", [shift_id(anne, "2026-02-09", "EM")])
        out = tmp_path / "exports" / "anne.xlsx"
        result = service.export_coverage_workbook(tenant, "to-anne", out, today=TODAY)
        assert result["path"] == str(out)
        assert result["coverage_status"] == "partially_covered"
        assert result["coverage_request_id"] == anne["coverage_request_id"]

        wb = load_workbook(out)
        assert wb.sheetnames == ["Overview", "Coverage", "Recommendations", "Combinations"]
        coverage = list(wb["Coverage"].iter_rows(values_only=True))
        assert coverage[0] == ("date", "weekday", "time_slot", "classroom", "status", "sub_name", "is_partial")
        assert len(coverage) == 5
        assert coverage[2][3] == "Infant A"
        assert coverage[2][5] == "Sam Avery"
        recs = list(wb["Recommendations"].iter_rows(values_only=True))
        assert [r[0] for r in recs[1:]] == ["Chris Dale", "Sam Avery", "Bee Brown"]

    def test_without_recommendations(self, service, tenant, tmp_path):
        out = tmp_path / "ben.xlsx"
        service.export_coverage_workbook(tenant, "to-ben", out, include_recommendations=False, today=TODAY)
        wb = load_workbook(out)
        assert wb.sheetnames == ["Overview", "Coverage"]
        overview = dict(wb["Overview"].iter_rows(min_row=2, values_only=True))
        assert overview["coverage_status"] == "uncovered"
        assert overview["total_shifts"] == 2


class TestLoadSeedData:
    def test_fresh_database(self, tmp_path):
        store = Store(tmp_path / "fresh.sqlite3")
        store.initialize()
        result = SubFinder(store).load_seed_data(FIXTURES_DIR, "school-2")
        assert result["school_id"] == "school-2"
        assert result["counts"]["staff"] == 6
        assert result["counts"]["time_off_shifts"] == 15

    def test_second_school_reuses_ids(self, store, service, tenant):
        result = service.load_seed_data(FIXTURES_DIR, "school-2")
        assert result["counts"]["staff"] == 6
        with store.read() as conn:
            per_school = conn.execute(
                "SELECT school_id, COUNT(*) AS n FROM staff GROUP BY school_id ORDER BY school_id"
            ).fetchall()
        assert [(r["school_id"], r["n"]) for r in per_school] == [("school-1", 6), ("school-2", 6)]

        other = TenantContext(school_id="school-2", actor_user_id="admin-2")
        mine = service.get_coverage_request(tenant, "to-anne")
        theirs = service.get_coverage_request(other, "to-anne")
        assert mine["coverage_request_id"] != theirs["coverage_request_id"]

        service.assign_shifts(other, "to-anne", "sub-a", [shift_id(theirs, "2026-02-09", "EM")])
        result = service.compute_conflicts(tenant, [{"candidate_id": "sub-a", "shift_key": "2026-02-09|EM"}])[0]
        assert result["status"] == "available"
        assert service.coverage_summary(tenant, "to-anne")["shifts"]["fully_covered"] == 0
        assert service.coverage_summary(other, "to-anne")["shifts"]["fully_covered"] == 1
