"""Audit side-channel.

Managers queue events on an ``AuditOutbox`` while their transaction runs and
hand it to ``AuditLog.publish`` after commit. A rolled-back operation simply
drops its outbox. Sink failures are logged and never reach the caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from coverage_core.models import TenantContext

from .store import Store, new_id, now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    school_id: str
    action: str
    entity_type: str
    entity_id: str | None
    actor_user_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "school_id": self.school_id,
            "actor_user_id": self.actor_user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": self.details,
            "created_at": self.created_at,
        }


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class SqliteAuditSink:
    def __init__(self, store: Store):
        self.store = store

    def record(self, event: AuditEvent) -> None:
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    id, school_id, actor_user_id, action, entity_type, entity_id,
                    details, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id(),
                    event.school_id,
                    event.actor_user_id,
                    event.action,
                    event.entity_type,
                    event.entity_id,
                    json.dumps(event.details, ensure_ascii=False, sort_keys=True),
                    event.created_at,
                ),
            )


class WebhookAuditSink:
    """POST each event as JSON to an external collector."""

    def __init__(self, url: str, *, timeout_s: float = 5.0):
        self.url = url
        self.timeout_s = timeout_s

    def record(self, event: AuditEvent) -> None:
        resp = httpx.post(self.url, json=event.to_dict(), timeout=self.timeout_s)
        resp.raise_for_status()


class AuditOutbox:
    def __init__(self, tenant: TenantContext):
        self.tenant = tenant
        self.events: list[AuditEvent] = []

    def add(
        self,
        action: str,
        entity_type: str,
        entity_id: str | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.events.append(
            AuditEvent(
                school_id=self.tenant.school_id,
                actor_user_id=self.tenant.actor_user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details or {},
            )
        )


class AuditLog:
    def __init__(self, sinks: list[AuditSink] | None = None):
        self.sinks: list[AuditSink] = list(sinks or [])

    def outbox(self, tenant: TenantContext) -> AuditOutbox:
        return AuditOutbox(tenant)

    def publish(self, outbox: AuditOutbox) -> int:
        """Deliver queued events to every sink. Returns the number of failed deliveries."""
        failures = 0
        for event in outbox.events:
            for sink in self.sinks:
                try:
                    sink.record(event)
                except Exception:
                    failures += 1
                    logger.exception(
                        "Audit sink %s failed for %s %s/%s",
                        type(sink).__name__, event.action, event.entity_type, event.entity_id,
                    )
        outbox.events.clear()
        if failures:
            logger.warning("%d audit deliveries failed", failures)
        return failures
