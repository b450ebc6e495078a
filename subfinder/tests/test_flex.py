"""Flex placements: creation, removal by scope, cascade and preview."""

from __future__ import annotations

import pytest

from coverage_core.errors import ConflictError, NotFoundError, ValidationError
from subfinder.flex import FLEX_CONFLICT_MESSAGE, expand_flex_shifts

from .conftest import shift_id


def _event_status(store, event_id):
    with store.read() as conn:
        return conn.execute("SELECT status FROM staffing_events WHERE id = ?", (event_id,)).fetchone()["status"]


@pytest.fixture
def event(service, tenant):
    """flex-c in Toddler B, AM, Mon-Wed of the first March week."""
    return service.create_flex_assignment(
        tenant, "flex-c", "2026-03-02", "2026-03-06", ["room-toddler"], ["AM"], days_of_week=[1, 2, 3]
    )


class TestExpandFlexShifts:
    def test_range_times_slots_times_classrooms(self):
        keys = expand_flex_shifts("2026-03-02", "2026-03-03", ["room-a", "room-b"], ["AM", "PM"])
        assert len(keys) == 8

    def test_weekday_filter(self):
        keys = expand_flex_shifts("2026-03-02", "2026-03-08", ["room-a"], ["AM"], days_of_week=[1, 5])
        assert [k.date for k in keys] == ["2026-03-02", "2026-03-06"]

    def test_explicit_shifts_win_and_dedupe(self):
        shifts = [
            {"date": "2026-03-04", "time_slot_id": "PM", "classroom_id": "room-a"},
            {"date": "2026-03-04", "time_slot_id": "PM", "classroom_id": "room-a"},
        ]
        keys = expand_flex_shifts("2026-03-02", "2026-03-08", ["room-b"], ["AM"], shifts=shifts)
        assert [k.to_string() for k in keys] == ["2026-03-04|PM|room-a"]

    def test_explicit_shift_without_slot(self):
        shifts = [{"date": "2026-03-04", "classroom_id": "room-a"}]
        with pytest.raises(ValidationError) as exc_info:
            expand_flex_shifts("2026-03-02", "2026-03-08", ["room-a"], ["AM"], shifts=shifts)
        assert exc_info.value.message == "shifts[0] is missing time_slot_id"

    def test_explicit_shift_with_bad_date(self):
        shifts = [
            {"date": "2026-03-04", "time_slot_id": "PM", "classroom_id": "room-a"},
            {"date": "not-a-date", "time_slot_id": "PM", "classroom_id": "room-a"},
        ]
        with pytest.raises(ValidationError, match=r"shifts\[1\]\.date"):
            expand_flex_shifts("2026-03-02", "2026-03-08", ["room-a"], ["AM"], shifts=shifts)

    def test_explicit_shift_must_be_object(self):
        with pytest.raises(ValidationError):
            expand_flex_shifts("2026-03-02", "2026-03-08", ["room-a"], ["AM"], shifts=["2026-03-04|PM"])


class TestCreate:
    def test_creates_event_and_shifts(self, event, store):
        assert event["shift_count"] == 3
        assert len(event["assignment_ids"]) == 3
        assert _event_status(store, event["id"]) == "active"
        with store.read() as conn:
            kinds = conn.execute(
                "SELECT DISTINCT assignment_kind FROM sub_assignments WHERE event_id = ?", (event["id"],)
            ).fetchall()
        assert [r["assignment_kind"] for r in kinds] == ["flex_assignment"]

    def test_same_classroom_and_slot_twice_conflicts(self, service, tenant, event):
        with pytest.raises(ConflictError) as exc_info:
            service.create_flex_assignment(
                tenant, "flex-c", "2026-03-02", "2026-03-02", ["room-toddler"], ["AM"]
            )
        assert exc_info.value.message == FLEX_CONFLICT_MESSAGE

    def test_failed_create_leaves_no_event(self, service, store, tenant, event):
        with pytest.raises(ConflictError):
            service.create_flex_assignment(
                tenant, "flex-c", "2026-03-02", "2026-03-02", ["room-toddler"], ["AM"]
            )
        with store.read() as conn:
            count = conn.execute("SELECT COUNT(*) AS n FROM staffing_events").fetchone()["n"]
        assert count == 1

    def test_may_float_across_classrooms(self, service, tenant):
        result = service.create_flex_assignment(
            tenant, "flex-c", "2026-03-02", "2026-03-02", ["room-toddler", "room-pre"], ["AM"]
        )
        assert result["shift_count"] == 2

    def test_conflicts_with_substitute_assignment(self, service, tenant, anne):
        service.assign_shifts(tenant, "to-anne", "flex-c", [shift_id(anne, "2026-02-09", "EM")])
        with pytest.raises(ConflictError) as exc_info:
            service.create_flex_assignment(
                tenant, "flex-c", "2026-02-09", "2026-02-09", ["room-pre"], ["EM"]
            )
        assert exc_info.value.message == FLEX_CONFLICT_MESSAGE
        assert exc_info.value.conflicts[0]["shift_key"] == "2026-02-09|EM"

    def test_no_matching_shifts(self, service, tenant):
        with pytest.raises(ValidationError) as exc_info:
            service.create_flex_assignment(
                tenant, "flex-c", "2026-03-07", "2026-03-08", ["room-pre"], ["AM"], days_of_week=[1]
            )
        assert exc_info.value.message == "No shifts matched the selected filters."

    def test_requires_classrooms(self, service, tenant):
        with pytest.raises(ValidationError):
            service.create_flex_assignment(tenant, "flex-c", "2026-03-02", "2026-03-02", [], ["AM"])

    def test_malformed_explicit_shift_rejected(self, service, store, tenant):
        with pytest.raises(ValidationError) as exc_info:
            service.create_flex_assignment(
                tenant, "flex-c", "2026-02-09", "2026-02-09", ["room-infant"], ["EM"],
                shifts=[{"date": "2026-02-09", "classroom_id": "room-infant"}],
            )
        assert exc_info.value.details == {"shift": {"date": "2026-02-09", "classroom_id": "room-infant"}}
        with store.read() as conn:
            assert conn.execute("SELECT COUNT(*) AS n FROM staffing_events").fetchone()["n"] == 0

    def test_flex_placement_blocks_substitute_work(self, service, tenant, anne):
        service.create_flex_assignment(
            tenant, "flex-c", "2026-02-09", "2026-02-09", ["room-toddler"], ["EM"]
        )
        results = service.check_shift_conflicts(
            tenant, "to-anne", "flex-c", [shift_id(anne, "2026-02-09", "EM")]
        )
        assert results[0]["status"] == "conflict_sub"
        assert results[0]["message"] == "Conflict: Assigned to flex coverage in Toddler B"


class TestRemoveShifts:
    def test_single_shift_keeps_event_active(self, service, store, tenant, event):
        result = service.remove_flex_shifts(
            tenant, event["id"], "single_shift",
            date="2026-03-02", classroom_id="room-toddler", time_slot_id="AM",
        )
        assert result == {"removed_count": 1, "remaining_active_shifts": 2, "event_status": "active"}
        assert _event_status(store, event["id"]) == "active"

    def test_weekday(self, service, tenant):
        created = service.create_flex_assignment(
            tenant, "flex-c", "2026-03-02", "2026-03-13", ["room-toddler"], ["AM"], days_of_week=[1, 3]
        )
        result = service.remove_flex_shifts(
            tenant, created["id"], "weekday", day_of_week=1, classroom_id="room-toddler", time_slot_id="AM"
        )
        assert result["removed_count"] == 2
        assert result["remaining_active_shifts"] == 2

    def test_removing_last_shift_cancels_event(self, service, store, tenant, event, sink):
        result = service.remove_flex_shifts(tenant, event["id"], "all_shifts")
        assert result == {"removed_count": 3, "remaining_active_shifts": 0, "event_status": "cancelled"}
        assert _event_status(store, event["id"]) == "cancelled"
        assert "cancel" in sink.actions("staffing_event")

    def test_piecemeal_removal_cancels_on_last(self, service, store, tenant, event):
        for datum, expected in (("2026-03-02", "active"), ("2026-03-03", "active"), ("2026-03-04", "cancelled")):
            result = service.remove_flex_shifts(
                tenant, event["id"], "single_shift",
                date=datum, classroom_id="room-toddler", time_slot_id="AM",
            )
            assert result["event_status"] == expected
        assert _event_status(store, event["id"]) == "cancelled"

    def test_nothing_matches(self, service, tenant, event):
        with pytest.raises(NotFoundError) as exc_info:
            service.remove_flex_shifts(
                tenant, event["id"], "single_shift",
                date="2026-03-05", classroom_id="room-toddler", time_slot_id="AM",
            )
        assert exc_info.value.message == "No matching active shifts were found to remove."

    def test_single_shift_needs_date(self, service, tenant, event):
        with pytest.raises(ValidationError):
            service.remove_flex_shifts(
                tenant, event["id"], "single_shift", classroom_id="room-toddler", time_slot_id="AM"
            )

    def test_unknown_event(self, service, tenant):
        with pytest.raises(NotFoundError) as exc_info:
            service.remove_flex_shifts(tenant, "evt-missing", "all_shifts")
        assert exc_info.value.message == "Flex assignment not found."


class TestPreviewAndCancel:
    def test_preview(self, service, tenant, event):
        preview = service.flex_removal_preview(
            tenant, event["id"], classroom_id="room-toddler", time_slot_id="AM"
        )
        assert preview == {
            "start_date": "2026-03-02",
            "end_date": "2026-03-06",
            "weekdays": ["Monday", "Tuesday", "Wednesday"],
            "matching_shift_count": 3,
        }

    def test_preview_other_classroom(self, service, tenant, event):
        preview = service.flex_removal_preview(tenant, event["id"], classroom_id="room-pre")
        assert preview["matching_shift_count"] == 0
        assert preview["weekdays"] == []

    def test_cancel_event(self, service, store, tenant, event):
        result = service.cancel_flex_event(tenant, event["id"])
        assert result == {"id": event["id"], "status": "cancelled", "cancelled_shifts": 3}
        with store.read() as conn:
            active = conn.execute(
                "SELECT COUNT(*) AS n FROM sub_assignments WHERE event_id = ? AND status = 'active'",
                (event["id"],),
            ).fetchone()["n"]
        assert active == 0

    def test_cancelled_event_frees_slot(self, service, tenant, event):
        service.cancel_flex_event(tenant, event["id"])
        again = service.create_flex_assignment(
            tenant, "flex-c", "2026-03-02", "2026-03-02", ["room-toddler"], ["AM"]
        )
        assert again["shift_count"] == 1
