"""Baseline grid placement and double-booking resolution."""

from __future__ import annotations

import pytest

from coverage_core.errors import ConflictError, NotFoundError, ValidationError


def _ben_monday_am(store):
    with store.read() as conn:
        return conn.execute(
            """
            SELECT classroom_id, is_floater FROM teacher_schedules
            WHERE teacher_id = 't-ben' AND day_of_week = 1 AND time_slot_id = 'AM'
            ORDER BY classroom_id
            """
        ).fetchall()


class TestCheckConflicts:
    def test_reports_other_classroom(self, service, tenant):
        results = service.check_baseline_conflicts(
            tenant,
            [
                {"teacher_id": "t-ben", "day_of_week": 1, "time_slot_id": "AM", "classroom_id": "room-infant"},
                {"teacher_id": "t-ben", "day_of_week": 3, "time_slot_id": "AM", "classroom_id": "room-infant"},
            ],
        )
        assert results[0]["has_conflict"] is True
        assert results[0]["conflicting_schedules"][0]["classroom_name"] == "Toddler B"
        assert results[1]["has_conflict"] is False
        assert results[1]["conflicting_schedules"] == []

    def test_same_classroom_is_not_a_conflict(self, service, tenant):
        results = service.check_baseline_conflicts(
            tenant,
            [{"teacher_id": "t-ben", "day_of_week": 1, "time_slot_id": "AM", "classroom_id": "room-toddler"}],
        )
        assert results[0]["has_conflict"] is False

    def test_bad_day(self, service, tenant):
        with pytest.raises(ValidationError):
            service.check_baseline_conflicts(
                tenant,
                [{"teacher_id": "t-ben", "day_of_week": 8, "time_slot_id": "AM", "classroom_id": "room-infant"}],
            )


class TestPlace:
    def test_free_cell(self, service, store, tenant, sink):
        result = service.place_baseline_entry(tenant, "t-ben", 3, "AM", "room-infant", class_group_id="grp-infant")
        assert result["created"]["classroom_id"] == "room-infant"
        assert result["created"]["is_floater"] is False
        assert "created" in sink.actions("teacher_schedule")

    def test_double_booking_refused(self, service, store, tenant):
        with pytest.raises(ConflictError) as exc_info:
            service.place_baseline_entry(tenant, "t-ben", 1, "AM", "room-infant")
        assert exc_info.value.conflicts[0]["classroom_id"] == "room-toddler"
        assert [r["classroom_id"] for r in _ben_monday_am(store)] == ["room-toddler"]

    def test_floater_may_double_book(self, service, store, tenant):
        service.place_baseline_entry(tenant, "t-ben", 1, "AM", "room-infant", is_floater=True)
        assert len(_ben_monday_am(store)) == 2


class TestResolveConflict:
    def test_remove_other(self, service, store, tenant, sink):
        result = service.resolve_baseline_conflict(
            tenant, "t-ben", 1, "AM", "room-infant", "remove_other", class_group_id="grp-infant"
        )
        assert result["state"] == "created"
        assert len(result["deleted"]) == 1
        assert result["created"]["classroom_id"] == "room-infant"
        rows = _ben_monday_am(store)
        assert [(r["classroom_id"], r["is_floater"]) for r in rows] == [("room-infant", 0)]
        assert {"deleted", "created"} <= set(sink.actions("teacher_schedule"))

    def test_mark_floater(self, service, store, tenant):
        result = service.resolve_baseline_conflict(tenant, "t-ben", 1, "AM", "room-infant", "mark_floater")
        assert result["state"] == "created"
        assert result["updated"][0]["classroom_id"] == "room-toddler"
        assert result["updated"][0]["is_floater"] is True
        assert result["created"]["is_floater"] is True
        rows = _ben_monday_am(store)
        assert [(r["classroom_id"], r["is_floater"]) for r in rows] == [("room-infant", 1), ("room-toddler", 1)]

    def test_cancel_changes_nothing(self, service, store, tenant, sink):
        result = service.resolve_baseline_conflict(tenant, "t-ben", 1, "AM", "room-infant", "cancel")
        assert result == {"resolution": "cancel", "state": "unchanged"}
        assert [r["classroom_id"] for r in _ben_monday_am(store)] == ["room-toddler"]
        assert "conflict_resolved" in sink.actions("teacher_schedule")

    def test_requires_a_conflict(self, service, tenant):
        with pytest.raises(ValidationError) as exc_info:
            service.resolve_baseline_conflict(tenant, "t-ben", 3, "AM", "room-infant", "remove_other")
        assert exc_info.value.message == "No conflicting schedules found"

    def test_unknown_teacher(self, service, tenant, sink):
        with pytest.raises(NotFoundError) as exc_info:
            service.resolve_baseline_conflict(tenant, "nobody", 1, "EM", "room-infant", "cancel")
        assert exc_info.value.message == "Staff member not found: nobody"
        assert "conflict_resolved" not in sink.actions("teacher_schedule")

    def test_unknown_resolution(self, service, tenant):
        with pytest.raises(ValidationError):
            service.resolve_baseline_conflict(tenant, "t-ben", 1, "AM", "room-infant", "swap")
