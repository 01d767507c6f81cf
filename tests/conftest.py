"""Shared fixtures: every test gets its own SQLite file and config path."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

import config
import database


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point config and database at a temp directory so tests never touch the real files."""
    db_file = tmp_path / "cadence-test.db"
    monkeypatch.setattr(config, "CONFIG_PATH", tmp_path / "config.json")
    monkeypatch.setattr(database, "get_db_path", lambda: db_file)
    database.init_database(db_file)
    return db_file


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def make_task():
    """Create a task through the service layer; keyword overrides go to create_task."""
    from task_service import create_task

    def _make(title: str = "Water plants", start: str = "2025-01-01T09:00:00Z", **kwargs):
        return create_task(title, start, **kwargs)

    return _make


@pytest.fixture
def stored_rule(make_task):
    """
    A task plus a stored (inactive) rule, returned as (task, active RecurrenceRule).
    Stored inactive so creation does not synchronize against the wall clock.
    """
    from instance_store import SqliteStore
    from recurrence_service import create_recurrence

    def _make(payload: dict, **task_kwargs):
        task = make_task(**task_kwargs)
        create_recurrence(task["id"], {**payload, "is_active": False})
        rule = SqliteStore().get_rule_for_task(task["id"])
        return task, rule.model_copy(update={"is_active": True})

    return _make
