"""subfinder MCP server.

Exposes tools for conflict checks, coverage requests, substitute
recommendations, assignment lifecycle, flex placements and the baseline
schedule grid. Engine errors come back as ``{"error": {...}}`` payloads
carrying the status code and, for conflicts, the offending shifts.
"""
from __future__ import annotations

import argparse
import logging
import os
from collections.abc import Callable
from typing import Any

from mcp.server.fastmcp import FastMCP
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route

from coverage_core.errors import CoverageError
from coverage_core.models import TenantContext
from coverage_core.recommender import DEFAULT_LIMIT

from .config import RuntimeConfig, load_env, runtime_config, tenant_context
from .service import SubFinder

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
HEALTH_PATH = "/health"


def http_bind() -> tuple[str, int]:
    """HOST and PORT from the environment, else 127.0.0.1:8000."""
    host = os.getenv("HOST", "").strip() or DEFAULT_HOST
    try:
        port = int(os.getenv("PORT", "").strip() or DEFAULT_PORT)
    except ValueError as exc:
        raise ValueError("PORT must be an integer") from exc
    return host, port


_HOST, _PORT = http_bind()

mcp = FastMCP(
    "subfinder",
    host=_HOST,
    port=_PORT,
    instructions=(
        "Substitute coverage engine for childcare schools. "
        "Checks candidate conflicts, materializes coverage requests for time off, "
        "recommends substitute combinations and records assignments. "
        "Recommendations are advisory; assignment re-validates every shift."
    ),
)

_ENV_FILE: str | None = None
_CONFIG: RuntimeConfig | None = None
_SERVICE: SubFinder | None = None


def _config() -> RuntimeConfig:
    global _CONFIG
    if _CONFIG is None:
        load_env(_ENV_FILE or os.getenv("SUBFINDER_ENV_FILE"))
        _CONFIG = runtime_config()
    return _CONFIG


def _service() -> SubFinder:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = SubFinder.from_config(_config())
    return _SERVICE


def _tenant(school_id: str | None, actor_user_id: str | None = None) -> TenantContext:
    return tenant_context(_config(), school_id, actor_user_id)


def _call(fn: Callable[[], Any]) -> Any:
    try:
        return fn()
    except CoverageError as exc:
        logger.info("Tool call rejected (%s): %s", exc.status_code, exc.message)
        return {"error": {**exc.to_dict(), "status_code": exc.status_code}}


# -- Conflict checks --

@mcp.tool()
def compute_conflicts(checks: list[dict[str, Any]], school_id: str | None = None) -> Any:
    """Evaluate (candidate, shift) pairs.

    Each check has candidate_id and either shift_key ("date|slot[|classroom]")
    or date + time_slot_id (+ classroom_id). One result per check, in order,
    with status available | unavailable | conflict_teaching | conflict_sub.
    """
    return _call(lambda: _service().compute_conflicts(_tenant(school_id), checks))


@mcp.tool()
def check_shift_conflicts(
    absence_id: str,
    candidate_id: str,
    shift_ids: list[str],
    school_id: str | None = None,
) -> Any:
    """Conflict check for shifts of one absence; its own assignments don't count."""
    return _call(
        lambda: _service().check_shift_conflicts(_tenant(school_id), absence_id, candidate_id, shift_ids)
    )


# -- Coverage requests --

@mcp.tool()
def get_coverage_request(absence_id: str, school_id: str | None = None) -> Any:
    """Get (or lazily create) the coverage request for a time-off request.

    Returns coverage_request_id, created flag, status, counts and a shift map
    keyed "date|slot_code".
    """
    return _call(lambda: _service().get_coverage_request(_tenant(school_id), absence_id))


@mcp.tool()
def refresh_coverage_shifts(absence_id: str, school_id: str | None = None) -> Any:
    """Re-derive coverage shifts after the time-off request changed."""
    return _call(lambda: _service().refresh_coverage_shifts(_tenant(school_id), absence_id))


@mcp.tool()
def coverage_summary(absence_id: str, school_id: str | None = None) -> Any:
    """Per-shift coverage status, totals and coverage segments for an absence."""
    return _call(lambda: _service().coverage_summary(_tenant(school_id), absence_id))


@mcp.tool()
def cancel_coverage_request(
    absence_id: str, school_id: str | None = None, actor_user_id: str | None = None
) -> Any:
    """Cancel an absence's coverage request and every active assignment linked to it."""
    return _call(lambda: _service().cancel_coverage_request(_tenant(school_id, actor_user_id), absence_id))


@mcp.tool()
def ensure_manual_coverage_request(
    teacher_id: str,
    start_date: str,
    end_date: str | None = None,
    school_id: str | None = None,
    actor_user_id: str | None = None,
) -> Any:
    """Coverage request for a teacher's scheduled shifts without time off behind it.

    Reuses an open request overlapping the dates, otherwise creates a
    manual_coverage one. end_date defaults to start_date.
    """
    return _call(
        lambda: _service().ensure_manual_coverage_request(
            _tenant(school_id, actor_user_id), teacher_id, start_date, end_date
        )
    )


@mcp.tool()
def list_absences(include_partially_covered: bool = False, school_id: str | None = None) -> Any:
    """Ongoing and upcoming absences that still need substitutes, soonest first."""
    return _call(
        lambda: _service().list_absences(
            _tenant(school_id), include_partially_covered=include_partially_covered
        )
    )


# -- Recommendations & assignments --

@mcp.tool()
def recommend(
    absence_id: str,
    include_flexible_staff: bool = True,
    include_past_shifts: bool = False,
    limit: int = DEFAULT_LIMIT,
    school_id: str | None = None,
) -> Any:
    """Rank substitutes for an absence and propose covering combinations.

    Returns subs (can_cover / cannot_cover per candidate) and
    recommended_combinations, best first.
    """
    return _call(
        lambda: _service().recommend(
            _tenant(school_id),
            absence_id,
            include_flexible_staff=include_flexible_staff,
            include_past_shifts=include_past_shifts,
            limit=limit,
        )
    )


@mcp.tool()
def recommend_manual(
    teacher_id: str,
    start_date: str,
    end_date: str,
    shifts: list[dict[str, Any]],
    include_flexible_staff: bool = True,
    include_past_shifts: bool = False,
    limit: int = DEFAULT_LIMIT,
    school_id: str | None = None,
) -> Any:
    """Rank substitutes for ad-hoc shifts ({date, time_slot_id}) of a teacher.

    Nothing is saved. Returns totals, shift_details, subs and
    recommended_combinations.
    """
    return _call(
        lambda: _service().recommend_manual(
            _tenant(school_id),
            teacher_id,
            start_date,
            end_date,
            shifts,
            include_flexible_staff=include_flexible_staff,
            include_past_shifts=include_past_shifts,
            limit=limit,
        )
    )


@mcp.tool()
def assign_shifts(
    absence_id: str,
    candidate_id: str,
    shift_ids: list[str],
    notes: str | None = None,
    is_partial: bool = False,
    force: bool = False,
    school_id: str | None = None,
    actor_user_id: str | None = None,
) -> Any:
    """Assign a substitute to shifts of an absence.

    Rejected with a 409 error listing the conflicts when the candidate is not
    available or a shift is already covered. force=True overrides availability
    conflicts but never double coverage.
    """
    return _call(
        lambda: _service().assign_shifts(
            _tenant(school_id, actor_user_id),
            absence_id,
            candidate_id,
            shift_ids,
            notes=notes,
            is_partial=is_partial,
            force=force,
        )
    )


@mcp.tool()
def unassign_shifts(
    absence_id: str,
    candidate_id: str,
    scope: str = "single",
    assignment_id: str | None = None,
    school_id: str | None = None,
    actor_user_id: str | None = None,
) -> Any:
    """Withdraw a substitute: scope single | weekday | all_for_absence."""
    return _call(
        lambda: _service().unassign_shifts(
            _tenant(school_id, actor_user_id), absence_id, candidate_id, scope, assignment_id=assignment_id
        )
    )


# -- Flex placements --

@mcp.tool()
def create_flex_assignment(
    staff_id: str,
    start_date: str,
    end_date: str,
    classroom_ids: list[str],
    time_slot_ids: list[str],
    days_of_week: list[int] | None = None,
    shifts: list[dict[str, str]] | None = None,
    notes: str | None = None,
    school_id: str | None = None,
    actor_user_id: str | None = None,
) -> Any:
    """Place flexible staff into classrooms for a date range.

    Either an explicit shifts list (date, time_slot_id, classroom_id) or every
    date x slot x classroom in range, optionally limited to ISO weekdays.
    """
    return _call(
        lambda: _service().create_flex_assignment(
            _tenant(school_id, actor_user_id),
            staff_id,
            start_date,
            end_date,
            classroom_ids,
            time_slot_ids,
            days_of_week=days_of_week,
            shifts=shifts,
            notes=notes,
        )
    )


@mcp.tool()
def remove_flex_shifts(
    event_id: str,
    scope: str,
    date: str | None = None,
    day_of_week: int | None = None,
    classroom_id: str | None = None,
    time_slot_id: str | None = None,
    school_id: str | None = None,
    actor_user_id: str | None = None,
) -> Any:
    """Remove shifts from a flex placement: scope single_shift | weekday | all_shifts.

    The placement is cancelled once its last shift is removed.
    """
    return _call(
        lambda: _service().remove_flex_shifts(
            _tenant(school_id, actor_user_id),
            event_id,
            scope,
            date=date,
            day_of_week=day_of_week,
            classroom_id=classroom_id,
            time_slot_id=time_slot_id,
        )
    )


@mcp.tool()
def flex_removal_preview(
    event_id: str,
    classroom_id: str | None = None,
    time_slot_id: str | None = None,
    school_id: str | None = None,
) -> Any:
    """Date range, weekdays and count of active shifts a removal would touch."""
    return _call(
        lambda: _service().flex_removal_preview(
            _tenant(school_id), event_id, classroom_id=classroom_id, time_slot_id=time_slot_id
        )
    )


@mcp.tool()
def cancel_flex_event(event_id: str, school_id: str | None = None, actor_user_id: str | None = None) -> Any:
    """Cancel a flex placement and all of its shifts."""
    return _call(lambda: _service().cancel_flex_event(_tenant(school_id, actor_user_id), event_id))


# -- Baseline schedule --

@mcp.tool()
def check_baseline_conflicts(checks: list[dict[str, Any]], school_id: str | None = None) -> Any:
    """For each proposed placement (teacher_id, day_of_week, time_slot_id, classroom_id),
    list the non-floater entries it would collide with."""
    return _call(lambda: _service().check_baseline_conflicts(_tenant(school_id), checks))


@mcp.tool()
def place_baseline_entry(
    teacher_id: str,
    day_of_week: int,
    time_slot_id: str,
    classroom_id: str,
    class_group_id: str | None = None,
    is_floater: bool = False,
    school_id: str | None = None,
    actor_user_id: str | None = None,
) -> Any:
    """Add a teacher to the baseline grid; 409 when it would double-book them."""
    return _call(
        lambda: _service().place_baseline_entry(
            _tenant(school_id, actor_user_id),
            teacher_id,
            day_of_week,
            time_slot_id,
            classroom_id,
            class_group_id=class_group_id,
            is_floater=is_floater,
        )
    )


@mcp.tool()
def resolve_baseline_conflict(
    teacher_id: str,
    day_of_week: int,
    time_slot_id: str,
    classroom_id: str,
    resolution: str,
    class_group_id: str | None = None,
    school_id: str | None = None,
    actor_user_id: str | None = None,
) -> Any:
    """Resolve a double-booked teacher: resolution remove_other | mark_floater | cancel."""
    return _call(
        lambda: _service().resolve_baseline_conflict(
            _tenant(school_id, actor_user_id),
            teacher_id,
            day_of_week,
            time_slot_id,
            classroom_id,
            resolution,
            class_group_id=class_group_id,
        )
    )


# -- Import / export --

@mcp.tool()
def export_coverage_workbook(
    absence_id: str,
    path: str,
    include_recommendations: bool = True,
    school_id: str | None = None,
) -> Any:
    """Write the coverage summary (and recommendations) for an absence to an XLSX file."""
    return _call(
        lambda: _service().export_coverage_workbook(
            _tenant(school_id), absence_id, path, include_recommendations=include_recommendations
        )
    )


@mcp.tool()
def load_seed_data(directory: str, school_id: str | None = None) -> Any:
    """Load a school dataset from a CSV directory into the database."""
    return _call(lambda: _service().load_seed_data(directory, _tenant(school_id).school_id))


# -- Server entrypoints --

class BearerAuth(BaseHTTPMiddleware):
    """Require ``Authorization: Bearer <api_key>`` on everything except /health."""

    def __init__(self, app, api_key: str):
        super().__init__(app)
        self.api_key = api_key

    async def dispatch(self, request, call_next):
        if request.url.path == HEALTH_PATH:
            return await call_next(request)
        if request.headers.get("authorization", "") != f"Bearer {self.api_key}":
            return JSONResponse({"error": "unauthorized"}, status_code=401)
        return await call_next(request)


async def _health(request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def build_http_app(api_key: str | None = None):
    """Streamable-HTTP app plus a /health route; bearer-protected when api_key is set."""
    app = mcp.streamable_http_app()
    app.routes.append(Route(HEALTH_PATH, _health, methods=["GET"]))
    if api_key:
        app.add_middleware(BearerAuth, api_key=api_key)
    return app


async def _run_http(log_level: str) -> None:
    import uvicorn

    config = uvicorn.Config(
        build_http_app(os.getenv("MCP_API_KEY")),
        host=mcp.settings.host,
        port=mcp.settings.port,
        log_level=log_level,
    )
    await uvicorn.Server(config).serve()


def main() -> None:
    global _ENV_FILE

    parser = argparse.ArgumentParser(description="Run subfinder MCP server")
    parser.add_argument("--env-file", default=None, help="Path to .env file")
    parser.add_argument(
        "--transport",
        default=None,
        choices=["stdio", "sse", "streamable-http"],
        help="MCP transport (default: streamable-http when PORT is set, else stdio)",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("SUBFINDER_LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    args = parser.parse_args()
    _ENV_FILE = args.env_file
    load_env(_ENV_FILE or os.getenv("SUBFINDER_ENV_FILE"))
    mcp.settings.host, mcp.settings.port = http_bind()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    transport = args.transport
    if transport is None:
        transport = "streamable-http" if os.getenv("PORT") else "stdio"

    if transport == "streamable-http":
        import anyio
        anyio.run(_run_http, args.log_level.lower())
    else:
        mcp.run(transport=transport)


if __name__ == "__main__":
    main()
