"""Shared fixtures: a temporary SQLite store seeded from fixtures/minimal."""

from __future__ import annotations

from pathlib import Path

import pytest

from coverage_core.models import TenantContext
from subfinder.audit import AuditLog, SqliteAuditSink
from subfinder.io.reader import load_seed
from subfinder.service import SubFinder
from subfinder.store import Store

FIXTURES_DIR = Path(__file__).parent / "fixtures" / "minimal"
SCHOOL_ID = "school-1"

# Every fixture date lies in February 2026; recommendations treat them as upcoming.
TODAY = "2026-02-01"


class RecordingSink:
    def __init__(self):
        self.events = []

    def record(self, event):
        self.events.append(event)

    def actions(self, entity_type=None):
        return [e.action for e in self.events if entity_type is None or e.entity_type == entity_type]


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "subfinder.sqlite3")
    s.initialize()
    load_seed(s, FIXTURES_DIR, SCHOOL_ID)
    return s


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def service(store, sink):
    return SubFinder(store, AuditLog([SqliteAuditSink(store), sink]), time_zone="UTC")


@pytest.fixture
def tenant():
    return TenantContext(school_id=SCHOOL_ID, actor_user_id="admin-1")


@pytest.fixture
def anne(service, tenant):
    """Coverage request for Anne's Mon/Tue absence (EM + AM, Infant A)."""
    return service.get_coverage_request(tenant, "to-anne")


def shift_id(coverage: dict, date: str, slot: str) -> str:
    return coverage["shift_map"][f"{date}|{slot}"]
