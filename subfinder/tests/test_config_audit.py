"""Environment config, tenant resolution and audit sinks."""

from __future__ import annotations

import json
import logging

import httpx
import pytest

from coverage_core.errors import ValidationError
from coverage_core.models import TenantContext
from subfinder.audit import AuditLog, SqliteAuditSink, WebhookAuditSink
from subfinder.config import load_env, runtime_config, tenant_context
from subfinder.service import SubFinder

from .conftest import SCHOOL_ID, shift_id

ENV_VARS = (
    "SUBFINDER_DB_PATH",
    "SUBFINDER_SCHOOL_ID",
    "SUBFINDER_ACTOR_USER_ID",
    "SUBFINDER_TIME_ZONE",
    "SUBFINDER_AUDIT_WEBHOOK_URL",
    "SUBFINDER_AUDIT_TIMEOUT",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestRuntimeConfig:
    def test_defaults(self, clean_env):
        cfg = runtime_config()
        assert cfg.db_path.name == "subfinder.sqlite3"
        assert cfg.default_school_id is None
        assert cfg.time_zone == "UTC"
        assert cfg.audit.webhook_url is None
        assert cfg.audit.timeout_s == 5.0

    def test_from_environment(self, clean_env, tmp_path):
        clean_env.setenv("SUBFINDER_DB_PATH", str(tmp_path / "db.sqlite3"))
        clean_env.setenv("SUBFINDER_SCHOOL_ID", "school-9")
        clean_env.setenv("SUBFINDER_TIME_ZONE", "America/Chicago")
        clean_env.setenv("SUBFINDER_AUDIT_WEBHOOK_URL", "https://audit.example.org/events")
        clean_env.setenv("SUBFINDER_AUDIT_TIMEOUT", "2.5")
        cfg = runtime_config()
        assert cfg.db_path == (tmp_path / "db.sqlite3").resolve()
        assert cfg.default_school_id == "school-9"
        assert cfg.time_zone == "America/Chicago"
        assert cfg.audit.webhook_url == "https://audit.example.org/events"
        assert cfg.audit.timeout_s == 2.5

    def test_bad_timeout(self, clean_env):
        clean_env.setenv("SUBFINDER_AUDIT_TIMEOUT", "soon")
        with pytest.raises(ValueError):
            runtime_config()

    def test_env_file(self, clean_env, tmp_path):
        # teardown then removes the value loaded from file
        clean_env.setenv("SUBFINDER_SCHOOL_ID", "placeholder")
        clean_env.delenv("SUBFINDER_SCHOOL_ID")
        env_file = tmp_path / "subfinder.env"
        env_file.write_text("SUBFINDER_SCHOOL_ID=school-from-file\n")
        load_env(env_file)
        assert runtime_config().default_school_id == "school-from-file"

    def test_from_config_builds_store(self, clean_env, tmp_path):
        clean_env.setenv("SUBFINDER_DB_PATH", str(tmp_path / "svc.sqlite3"))
        clean_env.setenv("SUBFINDER_AUDIT_WEBHOOK_URL", "https://audit.example.org/events")
        service = SubFinder.from_config(runtime_config())
        assert (tmp_path / "svc.sqlite3").exists()
        assert [type(s).__name__ for s in service.audit.sinks] == ["SqliteAuditSink", "WebhookAuditSink"]


class TestTenantContext:
    def test_explicit_school_wins(self, clean_env):
        clean_env.setenv("SUBFINDER_SCHOOL_ID", "school-default")
        tenant = tenant_context(runtime_config(), "school-explicit", "user-1")
        assert tenant == TenantContext(school_id="school-explicit", actor_user_id="user-1")

    def test_falls_back_to_defaults(self, clean_env):
        clean_env.setenv("SUBFINDER_SCHOOL_ID", "school-default")
        clean_env.setenv("SUBFINDER_ACTOR_USER_ID", "svc-bot")
        tenant = tenant_context(runtime_config(), "  ")
        assert tenant.school_id == "school-default"
        assert tenant.actor_user_id == "svc-bot"

    def test_no_school(self, clean_env):
        with pytest.raises(ValidationError):
            tenant_context(runtime_config())


class FailingSink:
    def record(self, event):
        raise RuntimeError("collector down")


class TestAuditLog:
    def test_events_persisted_with_actor(self, service, store, tenant, anne):
        service.assign_shifts(tenant, "to-anne", "sub-a", [shift_id(anne, "2026-02-09", "EM")])
        with store.read() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_log WHERE action = 'assign' ORDER BY created_at"
            ).fetchall()
        assert len(rows) == 1
        assert rows[0]["school_id"] == SCHOOL_ID
        assert rows[0]["actor_user_id"] == "admin-1"
        assert rows[0]["entity_type"] == "coverage_request"
        assert json.loads(rows[0]["details"])["sub_id"] == "sub-a"

    def test_failed_sink_does_not_fail_operation(self, store, tenant, caplog):
        service = SubFinder(store, AuditLog([FailingSink(), SqliteAuditSink(store)]))
        with caplog.at_level(logging.WARNING, logger="subfinder.audit"):
            result = service.get_coverage_request(tenant, "to-anne")
        assert result["created"] is True
        assert "audit deliveries failed" in caplog.text
        with store.read() as conn:
            count = conn.execute("SELECT COUNT(*) AS n FROM audit_log").fetchone()["n"]
        assert count >= 1

    def test_rolled_back_operation_emits_nothing(self, service, sink, tenant, anne):
        before = len(sink.events)
        with pytest.raises(ValidationError):
            service.assign_shifts(tenant, "to-anne", "t-anne", [shift_id(anne, "2026-02-09", "EM")])
        assert len(sink.events) == before


class TestWebhookSink:
    def test_posts_event_json(self, monkeypatch, store, tenant):
        calls = []

        def fake_post(url, json=None, timeout=None):
            calls.append((url, json, timeout))
            return httpx.Response(200, request=httpx.Request("POST", url))

        monkeypatch.setattr("subfinder.audit.httpx.post", fake_post)
        service = SubFinder(store, AuditLog([WebhookAuditSink("https://audit.example.org/events", timeout_s=1.5)]))
        service.get_coverage_request(tenant, "to-anne")
        url, payload, timeout = calls[0]
        assert url == "https://audit.example.org/events"
        assert timeout == 1.5
        assert payload["action"] == "create"
        assert payload["entity_type"] == "coverage_request"
        assert payload["school_id"] == SCHOOL_ID

    def test_http_error_is_logged(self, monkeypatch, store, tenant, caplog):
        def fake_post(url, json=None, timeout=None):
            return httpx.Response(503, request=httpx.Request("POST", url))

        monkeypatch.setattr("subfinder.audit.httpx.post", fake_post)
        service = SubFinder(store, AuditLog([WebhookAuditSink("https://audit.example.org/events")]))
        with caplog.at_level(logging.ERROR, logger="subfinder.audit"):
            result = service.get_coverage_request(tenant, "to-anne")
        assert result["created"] is True
        assert "WebhookAuditSink failed" in caplog.text
