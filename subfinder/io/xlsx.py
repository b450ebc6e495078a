"""Render a coverage summary and its recommendations to an XLSX workbook."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from coverage_core.summary import SHIFT_FULL, SHIFT_PARTIAL, SHIFT_UNCOVERED

from .schemas import (
    COMBINATIONS_SHEET_COLS,
    COVERAGE_SHEET_COLS,
    RECOMMENDATIONS_SHEET_COLS,
    fmt_bool,
    pipe_join,
)

HEADER_FILL = PatternFill(start_color="D9E1F2", end_color="D9E1F2", fill_type="solid")

# shift status -> status cell fill
STATUS_FILLS = {
    SHIFT_UNCOVERED: PatternFill(start_color="F8CBAD", end_color="F8CBAD", fill_type="solid"),
    SHIFT_PARTIAL: PatternFill(start_color="FFE699", end_color="FFE699", fill_type="solid"),
    SHIFT_FULL: PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid"),
}


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _style_headers(worksheets):
    """Apply bold + blue fill to header row of each worksheet."""
    header_font = Font(bold=True)
    for ws in worksheets:
        for cell in ws[1]:
            cell.font = header_font
            cell.fill = HEADER_FILL
        ws.freeze_panes = "A2"


def _autosize(ws, *, max_width: int = 60) -> None:
    for col_idx, column in enumerate(ws.iter_cols(values_only=True), start=1):
        width = max((len(str(v)) for v in column if v is not None), default=8)
        ws.column_dimensions[get_column_letter(col_idx)].width = min(width + 2, max_width)


def _shift_label(shift: dict[str, Any]) -> str:
    parts = [shift.get("date", ""), shift.get("time_slot_code") or shift.get("time_slot_id", "")]
    if shift.get("classroom_name"):
        parts.append(shift["classroom_name"])
    return " ".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------

def _coverage_row(detail: dict[str, Any], classroom_names: dict[str, str]) -> dict[str, Any]:
    classroom_id = detail.get("classroom_id")
    return {
        "date": detail.get("date", ""),
        "weekday": detail.get("day_name", ""),
        "time_slot": detail.get("time_slot_code") or detail.get("time_slot_id", ""),
        "classroom": classroom_names.get(classroom_id, classroom_id or ""),
        "status": detail.get("status", ""),
        "sub_name": detail.get("sub_name") or "",
        "is_partial": fmt_bool(detail.get("is_partial", False)),
    }


def _recommendation_row(sub: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": sub.get("name", ""),
        "is_flexible": fmt_bool(sub.get("is_flexible", False)),
        "coverage_percent": sub.get("coverage_percent", 0),
        "shifts_covered": sub.get("shifts_covered", 0),
        "total_shifts": sub.get("total_shifts", 0),
        "conflict_count": sub.get("conflict_count", 0),
        "can_cover": pipe_join([_shift_label(s) for s in sub.get("can_cover", [])]),
        "cannot_cover": pipe_join(
            [f"{_shift_label(s)}: {s.get('reason', '')}" for s in sub.get("cannot_cover", [])]
        ),
        "phone": sub.get("phone") or "",
        "email": sub.get("email") or "",
    }


def _combination_row(rank: int, combo: dict[str, Any]) -> dict[str, Any]:
    return {
        "rank": rank,
        "strategy": combo.get("strategy", ""),
        "subs": pipe_join([s.get("sub_name", "") for s in combo.get("subs", [])]),
        "coverage_percent": combo.get("coverage_percent", 0),
        "total_shifts_covered": combo.get("total_shifts_covered", 0),
        "total_shifts_needed": combo.get("total_shifts_needed", 0),
        "total_conflicts": combo.get("total_conflicts", 0),
        "uncovered_shifts": pipe_join(combo.get("uncovered_shifts", [])),
    }


# ---------------------------------------------------------------------------
# Workbook
# ---------------------------------------------------------------------------

def render_coverage_xlsx(
    summary: dict[str, Any],
    path: Path,
    *,
    recommendations: dict[str, Any] | None = None,
    classroom_names: dict[str, str] | None = None,
) -> Path:
    """Render a coverage summary to an XLSX workbook.

    Sheets: Overview, Coverage, and when recommendations are given,
    Recommendations and Combinations.

    Returns the path to the written file.
    """
    path = Path(path)
    names = classroom_names or {}
    shifts = summary.get("shifts", {})
    absence = summary.get("absence", {})

    wb = Workbook()
    all_sheets = []

    # --- Overview sheet ---
    ws_overview = wb.active
    ws_overview.title = "Overview"
    ws_overview.append(["Field", "Value"])
    overview_fields = [
        ("coverage_request_id", absence.get("id", "")),
        ("teacher_id", absence.get("teacher_id", "")),
        ("start_date", absence.get("start_date", "")),
        ("end_date", absence.get("end_date", "")),
        ("status", absence.get("status", "")),
        ("coverage_status", summary.get("coverage_status", "")),
        ("coverage_percent", summary.get("coverage_percent", 0)),
        ("total_shifts", shifts.get("total", 0)),
        ("uncovered", shifts.get("uncovered", 0)),
        ("partially_covered", shifts.get("partially_covered", 0)),
        ("fully_covered", shifts.get("fully_covered", 0)),
        ("past", shifts.get("past", 0)),
        ("upcoming", shifts.get("upcoming", 0)),
    ]
    for field_name, value in overview_fields:
        ws_overview.append([field_name, value])
    all_sheets.append(ws_overview)

    # --- Coverage sheet ---
    ws_cov = wb.create_sheet("Coverage")
    ws_cov.append(COVERAGE_SHEET_COLS)
    status_col = COVERAGE_SHEET_COLS.index("status") + 1
    for detail in shifts.get("shift_details", []):
        row = _coverage_row(detail, names)
        ws_cov.append([row.get(c, "") for c in COVERAGE_SHEET_COLS])
        fill = STATUS_FILLS.get(row["status"])
        if fill is not None:
            ws_cov.cell(row=ws_cov.max_row, column=status_col).fill = fill
    all_sheets.append(ws_cov)

    if recommendations is not None:
        # --- Recommendations sheet ---
        ws_recs = wb.create_sheet("Recommendations")
        ws_recs.append(RECOMMENDATIONS_SHEET_COLS)
        for sub in recommendations.get("subs", []):
            row = _recommendation_row(sub)
            ws_recs.append([row.get(c, "") for c in RECOMMENDATIONS_SHEET_COLS])
        all_sheets.append(ws_recs)

        # --- Combinations sheet ---
        ws_combos = wb.create_sheet("Combinations")
        ws_combos.append(COMBINATIONS_SHEET_COLS)
        for rank, combo in enumerate(recommendations.get("recommended_combinations", []), start=1):
            row = _combination_row(rank, combo)
            ws_combos.append([row.get(c, "") for c in COMBINATIONS_SHEET_COLS])
        all_sheets.append(ws_combos)

    _style_headers(all_sheets)
    for ws in all_sheets:
        _autosize(ws)

    path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(str(path))
    return path
