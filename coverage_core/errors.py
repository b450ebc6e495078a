"""Error taxonomy shared by the engine and the service layer."""

from __future__ import annotations

from typing import Any


class CoverageError(Exception):
    """Base class for every error the coverage engine surfaces to callers."""

    status_code = 500
    code = "error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(CoverageError):
    """Missing or malformed input, rejected before touching persistence."""

    status_code = 400
    code = "validation_error"


class NotFoundError(CoverageError):
    status_code = 404
    code = "not_found"


class ConflictError(CoverageError):
    """A uniqueness rule was violated, e.g. a shift is already actively assigned.

    ``conflicts`` lists one dict per offending shift with enough context
    (candidate, shift, current holder) for a person to pick something else.
    """

    status_code = 409
    code = "conflict"

    def __init__(
        self,
        message: str,
        *,
        conflicts: list[dict[str, Any]] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.conflicts = conflicts or []

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["conflicts"] = self.conflicts
        return payload


class UpstreamFailure(CoverageError):
    """Persistence or collaborator failure not otherwise classified."""

    status_code = 502
    code = "upstream_failure"
