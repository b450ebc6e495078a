from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from coverage_core.errors import ValidationError
from coverage_core.models import TenantContext


@dataclass(frozen=True)
class AuditConfig:
    webhook_url: str | None
    timeout_s: float


@dataclass(frozen=True)
class RuntimeConfig:
    db_path: Path
    default_school_id: str | None
    default_actor_user_id: str | None
    time_zone: str
    audit: AuditConfig


def load_env(dotenv_path: str | Path | None = None) -> None:
    path = Path(dotenv_path) if dotenv_path else None
    if path and path.exists():
        load_dotenv(path)
        return
    load_dotenv()


def _optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def runtime_config() -> RuntimeConfig:
    db_path = Path(os.getenv("SUBFINDER_DB_PATH", "./subfinder.sqlite3")).expanduser().resolve()
    try:
        timeout_s = float(os.getenv("SUBFINDER_AUDIT_TIMEOUT", "5"))
    except ValueError as exc:
        raise ValueError("SUBFINDER_AUDIT_TIMEOUT must be a number of seconds") from exc
    return RuntimeConfig(
        db_path=db_path,
        default_school_id=_optional("SUBFINDER_SCHOOL_ID"),
        default_actor_user_id=_optional("SUBFINDER_ACTOR_USER_ID"),
        time_zone=os.getenv("SUBFINDER_TIME_ZONE", "UTC").strip() or "UTC",
        audit=AuditConfig(
            webhook_url=_optional("SUBFINDER_AUDIT_WEBHOOK_URL"),
            timeout_s=timeout_s,
        ),
    )


def tenant_context(
    cfg: RuntimeConfig,
    school_id: str | None = None,
    actor_user_id: str | None = None,
) -> TenantContext:
    """Resolve the tenant for one call, falling back to the configured defaults."""
    school = (school_id or "").strip() or cfg.default_school_id
    if not school:
        raise ValidationError(
            "No school id supplied. Pass school_id or set SUBFINDER_SCHOOL_ID."
        )
    return TenantContext(
        school_id=school,
        actor_user_id=actor_user_id or cfg.default_actor_user_id,
    )
