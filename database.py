"""
SQLite database initialization and connection for Cadence.
Self-bootstrapping: creates DB file, tables, indexes, and constraints on first run.
"""
from __future__ import annotations

import sqlite3
from pathlib import Path

# Default DB path: project directory
_DEFAULT_DB_PATH = Path(__file__).resolve().parent / "cadence.db"

# Wait up to this many seconds for locks (API workers share one file)
_CONNECT_TIMEOUT = 30.0

_SCHEMA = """
-- Primary table: tasks
-- status: planned | in_progress | done | skipped | canceled
-- priority: low | medium | high | critical
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    start_datetime TEXT NOT NULL,
    deadline_datetime TEXT,
    priority TEXT NOT NULL DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high', 'critical')),
    status TEXT NOT NULL DEFAULT 'planned' CHECK (status IN ('planned', 'in_progress', 'done', 'skipped', 'canceled')),
    is_archived INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_start ON tasks(start_datetime);

-- Tags: name unique case-insensitively, color as #RRGGBB
CREATE TABLE IF NOT EXISTS tags (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
    color TEXT NOT NULL DEFAULT '#808080',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Task–tag association
CREATE TABLE IF NOT EXISTS task_tags (
    task_id TEXT NOT NULL,
    tag_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (task_id, tag_id),
    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE,
    FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_task_tags_tag ON task_tags(tag_id);

-- Recurrence rule: at most one per task, deleted with the task
-- days_of_week: JSON array of 0 (Sun) .. 6 (Sat)
-- end_type: never | date | count
CREATE TABLE IF NOT EXISTS task_recurrence (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL UNIQUE,
    recurrence_type TEXT NOT NULL CHECK (recurrence_type IN ('daily', 'weekly', 'monthly', 'yearly', 'workdays', 'weekends', 'custom')),
    interval_value INTEGER NOT NULL DEFAULT 1,
    days_of_week TEXT,
    day_of_month INTEGER CHECK (day_of_month IS NULL OR (day_of_month >= 1 AND day_of_month <= 31)),
    month_of_year INTEGER CHECK (month_of_year IS NULL OR (month_of_year >= 1 AND month_of_year <= 12)),
    end_type TEXT NOT NULL DEFAULT 'never' CHECK (end_type IN ('never', 'date', 'count')),
    end_date TEXT,
    end_count INTEGER,
    current_count INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
);

-- Materialized occurrences of a recurring task
-- is_modified = 1 freezes the row: regeneration never deletes or rewrites it
CREATE TABLE IF NOT EXISTS task_instances (
    id TEXT PRIMARY KEY,
    parent_task_id TEXT NOT NULL,
    recurrence_id TEXT,
    scheduled_datetime TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    priority TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'planned' CHECK (status IN ('planned', 'in_progress', 'done', 'skipped', 'canceled')),
    is_modified INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    skipped_at TEXT,
    canceled_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (recurrence_id, scheduled_datetime),
    FOREIGN KEY (parent_task_id) REFERENCES tasks(id) ON DELETE CASCADE,
    FOREIGN KEY (recurrence_id) REFERENCES task_recurrence(id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_task_instances_parent ON task_instances(parent_task_id);
CREATE INDEX IF NOT EXISTS idx_task_instances_scheduled ON task_instances(scheduled_datetime);
"""


# Columns added after the first release; re-running them on a current DB is a no-op
_MIGRATIONS = (
    "ALTER TABLE task_recurrence ADD COLUMN month_of_year INTEGER",
    "ALTER TABLE tasks ADD COLUMN is_deleted INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE tasks ADD COLUMN deleted_at TEXT",
)


def get_db_path() -> Path:
    """Return the database file path (from config if available)."""
    from config import load as load_config

    path = load_config().database_path
    if path:
        return Path(path)
    return _DEFAULT_DB_PATH


def init_database(path: Path | None = None) -> Path:
    """
    Ensure the database exists and is initialized. Creates file and all tables/indexes.
    Returns the path to the database file.
    """
    db_path = path or get_db_path()
    db_path = Path(db_path).resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=_CONNECT_TIMEOUT)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(_SCHEMA)
        for stmt in _MIGRATIONS:
            try:
                conn.execute(stmt)
            except sqlite3.OperationalError as e:
                if "duplicate column" not in str(e).lower():
                    raise
        conn.commit()
    finally:
        conn.close()
    return db_path


def get_connection(path: Path | None = None) -> sqlite3.Connection:
    """Return a connection to the database. Bootstraps the schema if needed."""
    db_path = init_database(path)
    conn = sqlite3.connect(str(db_path), timeout=_CONNECT_TIMEOUT)
    conn.execute("PRAGMA journal_mode=WAL")
    # Cascades (task -> rule -> instances) rely on this; SQLite leaves it off per connection
    conn.execute("PRAGMA foreign_keys = ON")
    conn.row_factory = sqlite3.Row
    return conn


def migrate() -> Path:
    """Run database init + migrations. Use this to migrate manually: python -m database"""
    return init_database()


if __name__ == "__main__":
    p = migrate()
    print("Database migrated:", p)
