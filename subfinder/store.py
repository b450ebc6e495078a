"""SQLite persistence boundary.

One connection per logical operation. Mutations run inside
``Store.transaction()`` which takes the write lock up front (``BEGIN
IMMEDIATE``) so concurrent writers serialize on ``busy_timeout`` instead of
interleaving check-then-insert sequences. Storage errors leave this module as
``coverage_core`` errors: unique-index violations become ``ConflictError``,
everything else ``UpstreamFailure``.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from coverage_core.errors import ConflictError, CoverageError, UpstreamFailure

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS staff (
    id TEXT NOT NULL,
    school_id TEXT NOT NULL,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    display_name TEXT,
    phone TEXT,
    email TEXT,
    is_teacher INTEGER NOT NULL DEFAULT 0,
    is_sub INTEGER NOT NULL DEFAULT 0,
    is_flexible INTEGER NOT NULL DEFAULT 0,
    can_change_diapers INTEGER NOT NULL DEFAULT 0,
    can_lift_children INTEGER NOT NULL DEFAULT 0,
    active INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (school_id, id)
);

CREATE TABLE IF NOT EXISTS classrooms (
    id TEXT NOT NULL,
    school_id TEXT NOT NULL,
    name TEXT NOT NULL,
    PRIMARY KEY (school_id, id)
);

CREATE TABLE IF NOT EXISTS time_slots (
    id TEXT NOT NULL,
    school_id TEXT NOT NULL,
    code TEXT NOT NULL,
    name TEXT,
    display_order INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (school_id, id)
);

CREATE TABLE IF NOT EXISTS class_groups (
    id TEXT NOT NULL,
    school_id TEXT NOT NULL,
    name TEXT NOT NULL,
    classroom_id TEXT,
    diaper_changing_required INTEGER NOT NULL DEFAULT 0,
    lifting_children_required INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (school_id, id),
    FOREIGN KEY (school_id, classroom_id) REFERENCES classrooms (school_id, id)
);

CREATE TABLE IF NOT EXISTS sub_class_preferences (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL,
    sub_id TEXT NOT NULL,
    class_group_id TEXT NOT NULL,
    can_teach INTEGER NOT NULL DEFAULT 1,
    FOREIGN KEY (school_id, sub_id) REFERENCES staff (school_id, id),
    FOREIGN KEY (school_id, class_group_id) REFERENCES class_groups (school_id, id)
);

CREATE TABLE IF NOT EXISTS teacher_schedules (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL,
    teacher_id TEXT NOT NULL,
    day_of_week INTEGER NOT NULL CHECK (day_of_week BETWEEN 1 AND 7),
    time_slot_id TEXT NOT NULL,
    classroom_id TEXT NOT NULL,
    class_group_id TEXT,
    is_floater INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (school_id, teacher_id) REFERENCES staff (school_id, id),
    FOREIGN KEY (school_id, time_slot_id) REFERENCES time_slots (school_id, id),
    FOREIGN KEY (school_id, classroom_id) REFERENCES classrooms (school_id, id),
    FOREIGN KEY (school_id, class_group_id) REFERENCES class_groups (school_id, id)
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_teacher_schedules_non_floater
    ON teacher_schedules (school_id, teacher_id, day_of_week, time_slot_id)
    WHERE is_floater = 0;

CREATE TABLE IF NOT EXISTS sub_availability (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL,
    sub_id TEXT NOT NULL,
    day_of_week INTEGER NOT NULL CHECK (day_of_week BETWEEN 1 AND 7),
    time_slot_id TEXT NOT NULL,
    available INTEGER NOT NULL DEFAULT 1,
    FOREIGN KEY (school_id, sub_id) REFERENCES staff (school_id, id),
    FOREIGN KEY (school_id, time_slot_id) REFERENCES time_slots (school_id, id)
);

CREATE TABLE IF NOT EXISTS sub_availability_exceptions (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL,
    sub_id TEXT NOT NULL,
    date TEXT NOT NULL,
    time_slot_id TEXT NOT NULL,
    available INTEGER NOT NULL,
    FOREIGN KEY (school_id, sub_id) REFERENCES staff (school_id, id),
    FOREIGN KEY (school_id, time_slot_id) REFERENCES time_slots (school_id, id)
);

CREATE TABLE IF NOT EXISTS time_off_requests (
    id TEXT NOT NULL,
    school_id TEXT NOT NULL,
    teacher_id TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    reason TEXT,
    coverage_request_id TEXT,
    PRIMARY KEY (school_id, id),
    FOREIGN KEY (school_id, teacher_id) REFERENCES staff (school_id, id)
);

CREATE TABLE IF NOT EXISTS time_off_shifts (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL,
    time_off_request_id TEXT NOT NULL,
    date TEXT NOT NULL,
    day_of_week INTEGER,
    time_slot_id TEXT NOT NULL,
    is_partial INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (school_id, time_off_request_id) REFERENCES time_off_requests (school_id, id),
    FOREIGN KEY (school_id, time_slot_id) REFERENCES time_slots (school_id, id)
);

CREATE TABLE IF NOT EXISTS coverage_requests (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL,
    teacher_id TEXT NOT NULL,
    request_type TEXT NOT NULL DEFAULT 'time_off',
    source_request_id TEXT,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    total_shifts INTEGER NOT NULL DEFAULT 0,
    covered_shifts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (school_id, teacher_id) REFERENCES staff (school_id, id)
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_coverage_requests_source
    ON coverage_requests (school_id, source_request_id);

CREATE TABLE IF NOT EXISTS coverage_request_shifts (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL,
    coverage_request_id TEXT NOT NULL REFERENCES coverage_requests (id),
    date TEXT NOT NULL,
    day_of_week INTEGER NOT NULL,
    time_slot_id TEXT NOT NULL,
    classroom_id TEXT,
    class_group_id TEXT,
    is_partial INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'active',
    FOREIGN KEY (school_id, time_slot_id) REFERENCES time_slots (school_id, id),
    FOREIGN KEY (school_id, classroom_id) REFERENCES classrooms (school_id, id),
    FOREIGN KEY (school_id, class_group_id) REFERENCES class_groups (school_id, id)
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_coverage_request_shifts_key
    ON coverage_request_shifts (coverage_request_id, date, time_slot_id, IFNULL(classroom_id, ''))
    WHERE status = 'active';

CREATE TABLE IF NOT EXISTS staffing_events (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL,
    staff_id TEXT NOT NULL,
    event_type TEXT NOT NULL DEFAULT 'flex_assignment',
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    notes TEXT,
    created_by TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (school_id, staff_id) REFERENCES staff (school_id, id)
);

CREATE TABLE IF NOT EXISTS sub_assignments (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL,
    staff_id TEXT NOT NULL,
    teacher_id TEXT,
    coverage_request_id TEXT REFERENCES coverage_requests (id),
    coverage_request_shift_id TEXT REFERENCES coverage_request_shifts (id),
    event_id TEXT REFERENCES staffing_events (id),
    date TEXT NOT NULL,
    day_of_week INTEGER,
    time_slot_id TEXT NOT NULL,
    classroom_id TEXT,
    assignment_kind TEXT NOT NULL DEFAULT 'substitute_shift',
    is_partial INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'active',
    notes TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (school_id, staff_id) REFERENCES staff (school_id, id),
    FOREIGN KEY (school_id, teacher_id) REFERENCES staff (school_id, id),
    FOREIGN KEY (school_id, time_slot_id) REFERENCES time_slots (school_id, id),
    FOREIGN KEY (school_id, classroom_id) REFERENCES classrooms (school_id, id)
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_sub_assignments_active_teacher_slot
    ON sub_assignments (school_id, teacher_id, date, time_slot_id)
    WHERE status = 'active';

CREATE UNIQUE INDEX IF NOT EXISTS ux_sub_assignments_active_event_staff_slot
    ON sub_assignments (school_id, staff_id, date, time_slot_id, classroom_id)
    WHERE status = 'active' AND event_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS ix_sub_assignments_staff_date
    ON sub_assignments (school_id, staff_id, date);

CREATE TABLE IF NOT EXISTS audit_log (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL,
    actor_user_id TEXT,
    action TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT,
    details TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
"""


def new_id() -> str:
    return uuid4().hex


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def is_unique_violation(exc: sqlite3.Error) -> bool:
    return isinstance(exc, sqlite3.IntegrityError) and "UNIQUE" in str(exc).upper()


def translate_error(exc: sqlite3.Error, *, conflict_message: str | None = None) -> CoverageError:
    """Map a sqlite3 error onto the coverage error taxonomy."""
    if isinstance(exc, sqlite3.IntegrityError):
        return ConflictError(
            conflict_message or "Write conflicts with an existing record",
            details={"storage_error": str(exc)},
        )
    return UpstreamFailure("Database operation failed", details={"storage_error": str(exc)})


def rows_to_dicts(rows: list[sqlite3.Row]) -> list[dict[str, Any]]:
    return [dict(r) for r in rows]


def placeholders(values) -> str:
    return ",".join("?" for _ in values)


class Store:
    def __init__(self, db_path: str | Path, *, busy_timeout_ms: int = 10_000):
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms

    def connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly below.
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise translate_error(exc) from exc
        finally:
            conn.close()
        logger.debug("Schema ready at %s", self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction: commit on success, roll back on any exception."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            conn.close()
            raise translate_error(exc) from exc
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            raise translate_error(exc) from exc
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        except sqlite3.Error as exc:
            raise translate_error(exc) from exc
        finally:
            conn.close()
