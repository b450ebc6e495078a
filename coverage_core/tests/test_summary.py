"""Tests for per-shift coverage classification."""

from coverage_core.models import Absence, AbsenceShift, Assignment
from coverage_core.summary import summarize_coverage


def absence():
    return Absence(
        id="cr-1",
        school_id="school-1",
        teacher_id="t-1",
        start_date="2026-02-10",
        end_date="2026-02-11",
        status="open",
    )


def shift(shift_id, datum, slot, dow=2):
    return AbsenceShift(
        id=shift_id,
        coverage_request_id="cr-1",
        date=datum,
        day_of_week=dow,
        time_slot_id=slot,
        classroom_id="c1",
    )


def assignment(asg_id, shift_id, datum, slot, *, partial=False, status="active", staff="sub-a"):
    return Assignment(
        id=asg_id,
        staff_id=staff,
        date=datum,
        time_slot_id=slot,
        status=status,
        teacher_id="t-1",
        coverage_request_id="cr-1",
        coverage_request_shift_id=shift_id,
        is_partial=partial,
    )


class TestShiftStatus:
    def test_mixed(self):
        shifts = [
            shift("s1", "2026-02-10", "EM"),
            shift("s2", "2026-02-10", "PM"),
            shift("s3", "2026-02-11", "EM", dow=3),
        ]
        assignments = [
            assignment("a1", "s1", "2026-02-10", "EM"),
            assignment("a2", "s2", "2026-02-10", "PM", partial=True),
            assignment("a3", "s3", "2026-02-11", "EM", status="cancelled"),
        ]
        summary = summarize_coverage(absence(), shifts, assignments, staff_names={"sub-a": "Ana"})
        assert summary.total == 3
        assert summary.fully_covered == 1
        assert summary.partially_covered == 1
        assert summary.uncovered == 1
        assert summary.coverage_status == "partially_covered"
        payload = summary.to_dict()
        assert payload["coverage_percent"] == 33
        assert [d["status"] for d in payload["shifts"]["shift_details"]] == [
            "fully_covered",
            "partially_covered",
            "uncovered",
        ]
        assert payload["shifts"]["shift_details"][0]["sub_name"] == "Ana"

    def test_all_covered(self):
        shifts = [shift("s1", "2026-02-10", "EM")]
        summary = summarize_coverage(
            absence(), shifts, [assignment("a1", "s1", "2026-02-10", "EM")]
        )
        assert summary.coverage_status == "covered"

    def test_unlinked_assignment_matches_on_slot(self):
        shifts = [shift("s1", "2026-02-10", "EM")]
        summary = summarize_coverage(
            absence(), shifts, [assignment("a1", None, "2026-02-10", "EM")]
        )
        assert summary.fully_covered == 1

    def test_cancelled_shifts_ignored(self):
        dropped = shift("s2", "2026-02-10", "PM")
        dropped.status = "cancelled"
        summary = summarize_coverage(absence(), [shift("s1", "2026-02-10", "EM"), dropped], [])
        assert summary.total == 1
        assert summary.coverage_status == "uncovered"

    def test_past_and_upcoming(self):
        shifts = [shift("s1", "2026-02-10", "EM"), shift("s2", "2026-02-11", "EM", dow=3)]
        summary = summarize_coverage(absence(), shifts, [], today="2026-02-11")
        assert (summary.past, summary.upcoming) == (1, 1)

    def test_segments_follow_sorted_order(self):
        shifts = [shift("s2", "2026-02-11", "EM", dow=3), shift("s1", "2026-02-10", "EM")]
        payload = summarize_coverage(absence(), shifts, []).to_dict()
        assert [s["id"] for s in payload["shifts"]["coverage_segments"]] == ["s1", "s2"]
