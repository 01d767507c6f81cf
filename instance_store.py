"""
Storage for recurrence rules and task instances.

SqliteStore is what the synchronizer talks to: task lookup, rule lookup, and the three instance
operations it needs (delete future unmodified, find, insert). Every sqlite3 error raised through it
surfaces as StorageFailure. The module-level functions below serve the API layer's per-instance
operations (list, edit, delete).
"""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from ulid import ULID

from database import get_connection
from date_utils import parse_datetime, to_iso, utc_now
from recurrence_rules import RecurrenceRule, rule_from_row
from task_service import PRIORITIES, STATUSES

logger = logging.getLogger("instance_store")

# Status -> timestamp column stamped when an instance moves into that terminal state
_TERMINAL_STAMPS = {"done": "completed_at", "skipped": "skipped_at", "canceled": "canceled_at"}

_UNSET = object()


class StorageFailure(RuntimeError):
    """A task/instance store operation failed. Callers decide whether to retry."""


def _new_id() -> str:
    return str(ULID())


def _instance_row_to_dict(row: Any) -> dict[str, Any]:
    d = dict(row)
    d["is_modified"] = bool(d.get("is_modified"))
    return d


class SqliteStore:
    """Task store + instance store backed by the Cadence SQLite database."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = Path(db_path) if db_path else None

    @contextmanager
    def _connect(self, op: str) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StorageFailure(f"{op}: cannot open database: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageFailure(f"{op}: {e}") from e
        finally:
            conn.close()

    # --- task store ---

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        with self._connect("get_task") as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ? AND is_deleted = 0", (task_id,)).fetchone()
            return dict(row) if row else None

    def get_rule(self, recurrence_id: str) -> RecurrenceRule | None:
        with self._connect("get_rule") as conn:
            row = conn.execute("SELECT * FROM task_recurrence WHERE id = ?", (recurrence_id,)).fetchone()
        return rule_from_row(row) if row else None

    def get_rule_for_task(self, task_id: str) -> RecurrenceRule | None:
        with self._connect("get_rule_for_task") as conn:
            row = conn.execute("SELECT * FROM task_recurrence WHERE task_id = ?", (task_id,)).fetchone()
        return rule_from_row(row) if row else None

    def set_rule_count(self, recurrence_id: str, count: int) -> None:
        with self._connect("set_rule_count") as conn:
            conn.execute(
                "UPDATE task_recurrence SET current_count = ? WHERE id = ?",
                (count, recurrence_id),
            )
            conn.commit()

    # --- instance store ---

    def delete_future_unmodified_instances(self, recurrence_id: str, now: datetime) -> int:
        """Delete instances of this rule scheduled strictly after now that nobody has edited."""
        with self._connect("delete_future_unmodified_instances") as conn:
            cur = conn.execute(
                "DELETE FROM task_instances WHERE recurrence_id = ? AND scheduled_datetime > ? AND is_modified = 0",
                (recurrence_id, to_iso(now)),
            )
            conn.commit()
            return cur.rowcount

    def find_instance(self, recurrence_id: str, scheduled: datetime) -> dict[str, Any] | None:
        with self._connect("find_instance") as conn:
            row = conn.execute(
                "SELECT * FROM task_instances WHERE recurrence_id = ? AND scheduled_datetime = ?",
                (recurrence_id, to_iso(scheduled)),
            ).fetchone()
            return _instance_row_to_dict(row) if row else None

    def insert_instance(self, instance: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a new instance and return it as stored. If another writer already stored an instance for
        the same (recurrence_id, scheduled_datetime), that row is returned instead.
        """
        iid = instance.get("id") or _new_id()
        now = to_iso(utc_now())
        scheduled = to_iso(parse_datetime(instance["scheduled_datetime"]))
        with self._connect("insert_instance") as conn:
            try:
                conn.execute(
                    """INSERT INTO task_instances (
                        id, parent_task_id, recurrence_id, scheduled_datetime,
                        title, description, priority, status, is_modified,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        iid, instance["parent_task_id"], instance["recurrence_id"], scheduled,
                        instance["title"], instance.get("description"), instance["priority"],
                        instance.get("status") or "planned", 1 if instance.get("is_modified") else 0,
                        now, now,
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                if "unique" not in str(e).lower():
                    raise
                conn.rollback()
                logger.info(
                    "[instance_store] instance for %s at %s already exists; keeping it",
                    instance["recurrence_id"], scheduled,
                )
                row = conn.execute(
                    "SELECT * FROM task_instances WHERE recurrence_id = ? AND scheduled_datetime = ?",
                    (instance["recurrence_id"], scheduled),
                ).fetchone()
                return _instance_row_to_dict(row)
            row = conn.execute("SELECT * FROM task_instances WHERE id = ?", (iid,)).fetchone()
            return _instance_row_to_dict(row)


# --- per-instance operations for the API layer ---


def list_instances(task_id: str) -> list[dict[str, Any]]:
    """All instances of a task in schedule order, modified or not."""
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT * FROM task_instances WHERE parent_task_id = ? ORDER BY scheduled_datetime ASC",
            (task_id,),
        ).fetchall()
        return [_instance_row_to_dict(r) for r in rows]
    finally:
        conn.close()


def get_instance(instance_id: str) -> dict[str, Any] | None:
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM task_instances WHERE id = ?", (instance_id,)).fetchone()
        return _instance_row_to_dict(row) if row else None
    finally:
        conn.close()


def update_instance(
    instance_id: str,
    *,
    title: str | None = None,
    description: str | None = _UNSET,
    priority: str | None = None,
    status: str | None = None,
    scheduled_datetime: str | None = None,
) -> dict[str, Any] | None:
    """
    Edit one instance. Any edit marks it modified, which freezes it: regeneration will never delete
    or rewrite it again. Moving to done/skipped/canceled stamps completed_at/skipped_at/canceled_at.
    Returns the updated instance, or None if not found.
    """
    if status is not None and status not in STATUSES:
        raise ValueError(f"status must be one of {sorted(STATUSES)}")
    if priority is not None and priority not in PRIORITIES:
        raise ValueError(f"priority must be one of {list(PRIORITIES)}")
    if title is not None and not title.strip():
        raise ValueError("title cannot be empty")
    conn = get_connection()
    try:
        row = conn.execute("SELECT id FROM task_instances WHERE id = ?", (instance_id,)).fetchone()
        if not row:
            return None
        now = to_iso(utc_now())
        updates: list[str] = ["is_modified = 1", "updated_at = ?"]
        params: list[Any] = [now]
        if title is not None:
            updates.append("title = ?"); params.append(title.strip())
        if description is not _UNSET:
            updates.append("description = ?"); params.append(description or None)
        if priority is not None:
            updates.append("priority = ?"); params.append(priority)
        if status is not None:
            updates.append("status = ?"); params.append(status)
            stamp = _TERMINAL_STAMPS.get(status)
            if stamp:
                updates.append(f"{stamp} = ?"); params.append(now)
        if scheduled_datetime is not None:
            updates.append("scheduled_datetime = ?"); params.append(to_iso(parse_datetime(scheduled_datetime)))
        params.append(instance_id)
        try:
            conn.execute(f"UPDATE task_instances SET {', '.join(updates)} WHERE id = ?", params)
        except sqlite3.IntegrityError as e:
            raise ValueError("Another instance of this recurrence is already scheduled at that time.") from e
        conn.commit()
        logger.info("[instance_store] instance %s modified (%s)", instance_id, ", ".join(u.split(" ")[0] for u in updates[2:]) or "touch")
        return get_instance(instance_id)
    finally:
        conn.close()


def delete_instance(instance_id: str) -> bool:
    """Delete one instance. Returns True if deleted, False if not found."""
    conn = get_connection()
    try:
        cur = conn.execute("DELETE FROM task_instances WHERE id = ?", (instance_id,))
        conn.commit()
        return cur.rowcount > 0
    finally:
        conn.close()
