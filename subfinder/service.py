"""Service facade wiring the store, audit sinks and managers together."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from coverage_core.conflicts import ConflictCheck, compute_conflicts, evaluate_candidate
from coverage_core.errors import NotFoundError, ValidationError
from coverage_core.models import TenantContext
from coverage_core.recommender import DEFAULT_LIMIT
from coverage_core.shift_key import ShiftKey
from coverage_core.time_utils import parse_iso_date, today_in

from .adapters import SqliteConstraintSources
from .assignments import AssignmentManager
from .audit import AuditLog, SqliteAuditSink, WebhookAuditSink
from .baseline import BaselineResolver
from .config import RuntimeConfig
from .coverage import CoverageRequests, fetch_absence, fetch_absence_shifts
from .flex import FlexManager
from .io import load_seed, render_coverage_xlsx
from .recommendations import build_recommendations, recommend_manual
from .store import Store

logger = logging.getLogger(__name__)


class SubFinder:
    def __init__(self, store: Store, audit: AuditLog | None = None, *, time_zone: str = "UTC"):
        self.store = store
        self.audit = audit if audit is not None else AuditLog([SqliteAuditSink(store)])
        self.time_zone = time_zone
        self.coverage = CoverageRequests(store, self.audit, time_zone=time_zone)
        self.assignments = AssignmentManager(store, self.audit)
        self.flex = FlexManager(store, self.audit)
        self.baseline = BaselineResolver(store, self.audit)

    @classmethod
    def from_config(cls, cfg: RuntimeConfig) -> SubFinder:
        store = Store(cfg.db_path)
        store.initialize()
        sinks: list[Any] = [SqliteAuditSink(store)]
        if cfg.audit.webhook_url:
            sinks.append(WebhookAuditSink(cfg.audit.webhook_url, timeout_s=cfg.audit.timeout_s))
        return cls(store, AuditLog(sinks), time_zone=cfg.time_zone)

    # -- Conflict evaluation --

    def compute_conflicts(self, tenant: TenantContext, checks: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Evaluate arbitrary (candidate, shift) pairs; one result per input, in order."""
        parsed: list[ConflictCheck] = []
        for item in checks:
            candidate_id = item.get("candidate_id")
            if not candidate_id:
                raise ValidationError("candidate_id is required for every check")
            if item.get("shift_key"):
                try:
                    key = ShiftKey.from_string(item["shift_key"])
                except ValueError as exc:
                    raise ValidationError(str(exc)) from exc
            else:
                if not item.get("time_slot_id"):
                    raise ValidationError("time_slot_id is required for every check")
                key = ShiftKey(item.get("date", ""), item["time_slot_id"], item.get("classroom_id"))
            parse_iso_date(key.date)
            parsed.append(ConflictCheck(candidate_id, key, shift_id=item.get("shift_id")))
        if not parsed:
            return []
        with self.store.read() as conn:
            results = compute_conflicts(SqliteConstraintSources(conn), tenant, parsed)
        return [r.to_dict() for r in results]

    def check_shift_conflicts(
        self, tenant: TenantContext, absence_id: str, candidate_id: str, shift_ids: list[str]
    ) -> list[dict[str, Any]]:
        """Absence-scoped conflict check: the absence's own assignments are not conflicts."""
        if not candidate_id or not shift_ids:
            raise ValidationError("candidate_id and shift_ids are required")
        with self.store.read() as conn:
            absence = fetch_absence(conn, tenant, absence_id)
            by_id = {s.id: s for s in fetch_absence_shifts(conn, tenant, absence.id)}
            missing = [sid for sid in shift_ids if sid not in by_id]
            if missing:
                raise NotFoundError("Unknown shift ids for this absence", details={"shift_ids": missing})
            checks = [
                ConflictCheck(candidate_id, by_id[sid].key, shift_id=sid, day_of_week=by_id[sid].day_of_week)
                for sid in shift_ids
            ]
            results = evaluate_candidate(
                SqliteConstraintSources(conn), tenant, candidate_id, checks, exclude_absence_id=absence.id
            )
        return [r.to_dict() for r in results]

    # -- Coverage requests --

    def get_coverage_request(self, tenant: TenantContext, absence_id: str) -> dict[str, Any]:
        return self.coverage.get_coverage_request(tenant, absence_id)

    def refresh_coverage_shifts(self, tenant: TenantContext, absence_id: str) -> dict[str, Any]:
        return self.coverage.refresh_shifts(tenant, absence_id)

    def coverage_summary(self, tenant: TenantContext, absence_id: str) -> dict[str, Any]:
        return self.coverage.summary(tenant, absence_id)

    def cancel_coverage_request(self, tenant: TenantContext, absence_id: str) -> dict[str, Any]:
        return self.coverage.cancel(tenant, absence_id)

    def ensure_manual_coverage_request(
        self, tenant: TenantContext, teacher_id: str, start_date: str, end_date: str | None = None
    ) -> dict[str, Any]:
        return self.coverage.ensure_manual(tenant, teacher_id, start_date, end_date)

    def list_absences(
        self, tenant: TenantContext, *, include_partially_covered: bool = False, today: str | None = None
    ) -> list[dict[str, Any]]:
        return self.coverage.list_absences(
            tenant, include_partially_covered=include_partially_covered, today=today
        )

    def recommend(
        self,
        tenant: TenantContext,
        absence_id: str,
        *,
        include_flexible_staff: bool = True,
        include_past_shifts: bool = False,
        limit: int = DEFAULT_LIMIT,
        today: str | None = None,
    ) -> dict[str, Any]:
        """Candidates and ranked combinations. Advisory only; assignment re-validates."""
        materialized = self.coverage.get_coverage_request(tenant, absence_id)
        with self.store.read() as conn:
            return build_recommendations(
                conn,
                tenant,
                materialized["coverage_request_id"],
                today=today or today_in(self.time_zone),
                include_flexible_staff=include_flexible_staff,
                include_past_shifts=include_past_shifts,
                limit=limit,
            )

    def recommend_manual(
        self,
        tenant: TenantContext,
        teacher_id: str,
        start_date: str,
        end_date: str,
        shifts: list[dict[str, Any]],
        *,
        include_flexible_staff: bool = True,
        include_past_shifts: bool = False,
        limit: int = DEFAULT_LIMIT,
        today: str | None = None,
    ) -> dict[str, Any]:
        """Candidates for ad-hoc shifts of a teacher; nothing is persisted."""
        with self.store.read() as conn:
            return recommend_manual(
                conn,
                tenant,
                teacher_id,
                start_date,
                end_date,
                shifts,
                today=today or today_in(self.time_zone),
                include_flexible_staff=include_flexible_staff,
                include_past_shifts=include_past_shifts,
                limit=limit,
            )

    # -- Assignments --

    def assign_shifts(
        self,
        tenant: TenantContext,
        absence_id: str,
        candidate_id: str,
        shift_ids: list[str],
        *,
        notes: str | None = None,
        is_partial: bool = False,
        force: bool = False,
    ) -> dict[str, Any]:
        return self.assignments.assign_shifts(
            tenant, absence_id, candidate_id, shift_ids,
            notes=notes, is_partial=is_partial, force=force,
        )

    def unassign_shifts(
        self,
        tenant: TenantContext,
        absence_id: str,
        candidate_id: str,
        scope: str,
        *,
        assignment_id: str | None = None,
    ) -> dict[str, Any]:
        return self.assignments.unassign_shifts(
            tenant, absence_id, candidate_id, scope, assignment_id=assignment_id
        )

    # -- Baseline grid --

    def resolve_baseline_conflict(
        self,
        tenant: TenantContext,
        teacher_id: str,
        day_of_week: int,
        time_slot_id: str,
        classroom_id: str,
        resolution: str,
        *,
        class_group_id: str | None = None,
    ) -> dict[str, Any]:
        return self.baseline.resolve_conflict(
            tenant, teacher_id, day_of_week, time_slot_id, classroom_id, resolution,
            class_group_id=class_group_id,
        )

    def check_baseline_conflicts(self, tenant: TenantContext, checks: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return self.baseline.check_conflicts(tenant, checks)

    def place_baseline_entry(
        self,
        tenant: TenantContext,
        teacher_id: str,
        day_of_week: int,
        time_slot_id: str,
        classroom_id: str,
        *,
        class_group_id: str | None = None,
        is_floater: bool = False,
    ) -> dict[str, Any]:
        return self.baseline.place(
            tenant, teacher_id, day_of_week, time_slot_id, classroom_id,
            class_group_id=class_group_id, is_floater=is_floater,
        )

    # -- Flex placements --

    def create_flex_assignment(
        self,
        tenant: TenantContext,
        staff_id: str,
        start_date: str,
        end_date: str,
        classroom_ids: list[str],
        time_slot_ids: list[str],
        *,
        days_of_week: list[int] | None = None,
        shifts: list[dict[str, str]] | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        return self.flex.create(
            tenant, staff_id, start_date, end_date, classroom_ids, time_slot_ids,
            days_of_week=days_of_week, shifts=shifts, notes=notes,
        )

    def remove_flex_shifts(
        self,
        tenant: TenantContext,
        event_id: str,
        scope: str,
        *,
        date: str | None = None,
        day_of_week: int | None = None,
        classroom_id: str | None = None,
        time_slot_id: str | None = None,
    ) -> dict[str, Any]:
        return self.flex.remove_shifts(
            tenant, event_id, scope,
            date=date, day_of_week=day_of_week, classroom_id=classroom_id, time_slot_id=time_slot_id,
        )

    def flex_removal_preview(
        self,
        tenant: TenantContext,
        event_id: str,
        *,
        classroom_id: str | None = None,
        time_slot_id: str | None = None,
    ) -> dict[str, Any]:
        return self.flex.removal_preview(tenant, event_id, classroom_id=classroom_id, time_slot_id=time_slot_id)

    def cancel_flex_event(self, tenant: TenantContext, event_id: str) -> dict[str, Any]:
        return self.flex.cancel_event(tenant, event_id)

    # -- Import / export --

    def export_coverage_workbook(
        self,
        tenant: TenantContext,
        absence_id: str,
        path: str | Path,
        *,
        include_recommendations: bool = True,
        today: str | None = None,
    ) -> dict[str, Any]:
        """Write the coverage summary (and recommendations) for an absence to XLSX."""
        today = today or today_in(self.time_zone)
        recommendations = None
        if include_recommendations:
            recommendations = self.recommend(tenant, absence_id, today=today)
        else:
            self.coverage.get_coverage_request(tenant, absence_id)
        summary = self.coverage.summary(tenant, absence_id, today=today)
        with self.store.read() as conn:
            rows = conn.execute(
                "SELECT id, name FROM classrooms WHERE school_id = ?", (tenant.school_id,)
            ).fetchall()
        written = render_coverage_xlsx(
            summary,
            Path(path),
            recommendations=recommendations,
            classroom_names={r["id"]: r["name"] for r in rows},
        )
        logger.info("Wrote coverage workbook for %s to %s", absence_id, written)
        return {
            "coverage_request_id": summary["absence"]["id"],
            "path": str(written),
            "coverage_status": summary["coverage_status"],
        }

    def load_seed_data(self, directory: str | Path, school_id: str) -> dict[str, Any]:
        return {"school_id": school_id, "counts": load_seed(self.store, directory, school_id)}
