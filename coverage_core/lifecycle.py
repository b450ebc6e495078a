"""Allowed status transitions for the records the engine mutates."""

from __future__ import annotations

from .errors import ValidationError

TIME_OFF_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "draft": ("active", "cancelled"),
    "active": ("cancelled",),
    "cancelled": (),
}

# filled -> open happens when an assignment is withdrawn after the request filled up.
COVERAGE_REQUEST_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "open": ("filled", "cancelled"),
    "filled": ("open", "cancelled"),
    "cancelled": (),
}

COVERAGE_REQUEST_SHIFT_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "active": ("cancelled",),
    "cancelled": (),
}

ASSIGNMENT_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "active": ("cancelled",),
    "cancelled": (),
}

STAFFING_EVENT_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "active": ("cancelled",),
    "cancelled": (),
}

TRANSITIONS: dict[str, dict[str, tuple[str, ...]]] = {
    "time_off": TIME_OFF_TRANSITIONS,
    "coverage_request": COVERAGE_REQUEST_TRANSITIONS,
    "coverage_request_shift": COVERAGE_REQUEST_SHIFT_TRANSITIONS,
    "assignment": ASSIGNMENT_TRANSITIONS,
    "staffing_event": STAFFING_EVENT_TRANSITIONS,
}


def can_transition(kind: str, current: str, next_status: str) -> bool:
    table = TRANSITIONS.get(kind)
    if table is None:
        raise ValueError(f"Unknown record kind: {kind!r}")
    if current == next_status:
        return True
    return next_status in table.get(current, ())


def format_transition_error(current: str, next_status: str) -> str:
    return f"Invalid status transition: {current} -> {next_status}"


def require_transition(kind: str, current: str, next_status: str) -> None:
    if not can_transition(kind, current, next_status):
        raise ValidationError(format_transition_error(current, next_status))
