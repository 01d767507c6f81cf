"""
Task Service layer: all task mutations go through here.
Used by the recurrence synchronizer (read-only) and the API layer.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Any

from ulid import ULID

from database import get_connection
from date_utils import parse_datetime, to_iso, utc_now
from recurrence_rules import rule_from_row, rule_to_dict

logger = logging.getLogger("task_service")

STATUSES = frozenset({"planned", "in_progress", "done", "skipped", "canceled"})
# Ordered lowest to highest
PRIORITIES = ("low", "medium", "high", "critical")
INITIAL_STATUS = "planned"
DEFAULT_PRIORITY = "medium"

# Sentinel: pass for optional params to mean "don't change"; None means "set to null"
_UNSET = object()


def _new_task_id() -> str:
    return str(ULID())


def _now_iso() -> str:
    return to_iso(utc_now())


def _normalize_datetime(value: str | None, field: str) -> str | None:
    if value is None or not str(value).strip():
        return None
    try:
        return to_iso(parse_datetime(value))
    except ValueError as e:
        raise ValueError(f"{field} must be an ISO date or datetime") from e


def _validate_start_deadline(start: str | None, deadline: str | None) -> None:
    """Raise ValueError if both are set and the deadline is before the start."""
    if start and deadline and deadline < start:
        raise ValueError("Deadline cannot be before start. Start cannot be after deadline.")


def _validate_status_priority(status: str | None, priority: str | None) -> None:
    if status is not None and status not in STATUSES:
        raise ValueError(f"status must be one of {sorted(STATUSES)}")
    if priority is not None and priority not in PRIORITIES:
        raise ValueError(f"priority must be one of {list(PRIORITIES)}")


def _task_row_to_dict(row: Any) -> dict[str, Any]:
    d = dict(row)
    d["is_archived"] = bool(d.get("is_archived"))
    d["is_deleted"] = bool(d.get("is_deleted"))
    return d


def _tags_for_task(conn: sqlite3.Connection, task_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """SELECT t.id, t.name, t.color FROM tags t
           INNER JOIN task_tags tt ON tt.tag_id = t.id
           WHERE tt.task_id = ? ORDER BY t.name COLLATE NOCASE""",
        (task_id,),
    ).fetchall()
    return [dict(r) for r in rows]


def _add_task_relations(conn: sqlite3.Connection, out: dict[str, Any]) -> None:
    tid = out["id"]
    out["tags"] = _tags_for_task(conn, tid)
    rule_row = conn.execute("SELECT * FROM task_recurrence WHERE task_id = ?", (tid,)).fetchone()
    out["recurrence"] = rule_to_dict(rule_from_row(rule_row), rule_row) if rule_row else None


def _write_task_tags(conn: sqlite3.Connection, task_id: str, tag_ids: list[str]) -> None:
    now = _now_iso()
    for tag_id in tag_ids:
        if not tag_id:
            continue
        if not conn.execute("SELECT 1 FROM tags WHERE id = ?", (tag_id,)).fetchone():
            raise ValueError(f"Unknown tag: {tag_id}")
        conn.execute(
            "INSERT OR IGNORE INTO task_tags (task_id, tag_id, created_at) VALUES (?, ?, ?)",
            (task_id, tag_id, now),
        )


def create_task(
    title: str,
    start_datetime: str,
    *,
    description: str | None = None,
    deadline_datetime: str | None = None,
    priority: str | None = None,
    status: str | None = None,
    tag_ids: list[str] | None = None,
    task_id: str | None = None,
) -> dict[str, Any]:
    """Create a single task. Uses ULID for id. Priority defaults to medium, status to planned."""
    title = (title or "").strip()
    if not title:
        raise ValueError("title is required")
    eff_priority = priority or DEFAULT_PRIORITY
    eff_status = status or INITIAL_STATUS
    _validate_status_priority(eff_status, eff_priority)
    start = _normalize_datetime(start_datetime, "start_datetime")
    if not start:
        raise ValueError("start_datetime is required")
    deadline = _normalize_datetime(deadline_datetime, "deadline_datetime")
    _validate_start_deadline(start, deadline)
    tid = task_id or _new_task_id()
    now = _now_iso()
    conn = get_connection()
    try:
        conn.execute(
            """INSERT INTO tasks (
                id, title, description, start_datetime, deadline_datetime,
                priority, status, is_archived, completed_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                tid, title, description or None, start, deadline,
                eff_priority, eff_status, 0, now if eff_status == "done" else None, now, now,
            ),
        )
        _write_task_tags(conn, tid, tag_ids or [])
        conn.commit()
        logger.info("[task_service] created task %s", tid)
        return get_task(tid)
    finally:
        conn.close()


def get_task(task_id: str) -> dict[str, Any] | None:
    """Return one task by id with tags and its recurrence rule (or None)."""
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM tasks WHERE id = ? AND is_deleted = 0", (task_id,)).fetchone()
        if not row:
            return None
        out = _task_row_to_dict(row)
        _add_task_relations(conn, out)
        return out
    finally:
        conn.close()


def list_tasks(
    status: list[str] | str | None = None,
    priority: list[str] | str | None = None,
    tag_ids: list[str] | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    search: str | None = None,
    include_archived: bool = False,
    limit: int = 500,
) -> list[dict[str, Any]]:
    """List tasks ordered by start_datetime.
    status, priority: one value or a list (any of).
    tag_ids: task has any of these tags.
    date_from, date_to: inclusive bounds on start_datetime (dates or datetimes).
    search: substring match on title OR description (case-insensitive).
    """
    statuses = [status] if isinstance(status, str) else list(status or [])
    priorities = [priority] if isinstance(priority, str) else list(priority or [])
    for s in statuses:
        _validate_status_priority(s, None)
    for p in priorities:
        _validate_status_priority(None, p)
    conn = get_connection()
    try:
        sql = "SELECT * FROM tasks WHERE is_deleted = 0"
        params: list[Any] = []
        if not include_archived:
            sql += " AND is_archived = 0"
        if statuses:
            sql += f" AND status IN ({','.join('?' * len(statuses))})"
            params.extend(statuses)
        if priorities:
            sql += f" AND priority IN ({','.join('?' * len(priorities))})"
            params.extend(priorities)
        if tag_ids:
            sql += f" AND id IN (SELECT task_id FROM task_tags WHERE tag_id IN ({','.join('?' * len(tag_ids))}))"
            params.extend(tag_ids)
        if date_from:
            sql += " AND start_datetime >= ?"
            params.append(_normalize_datetime(date_from, "date_from"))
        if date_to:
            bound = _normalize_datetime(date_to, "date_to")
            # A bare date means "through the end of that day"
            if len(str(date_to).strip()) == 10:
                bound = bound[:10] + "T23:59:59Z"
            sql += " AND start_datetime <= ?"
            params.append(bound)
        if search and search.strip():
            s = search.strip()
            sql += " AND (title LIKE ? OR description LIKE ?)"
            params.append(f"%{s}%")
            params.append(f"%{s}%")
        sql += " ORDER BY start_datetime ASC, created_at ASC LIMIT ?"
        params.append(limit)
        rows = conn.execute(sql, params).fetchall()
        out = [_task_row_to_dict(r) for r in rows]
        for t in out:
            t["tags"] = _tags_for_task(conn, t["id"])
        return out
    finally:
        conn.close()


def update_task(
    task_id: str,
    *,
    title: str | None = None,
    description: str | None = _UNSET,
    start_datetime: str | None = None,
    deadline_datetime: str | None = _UNSET,
    priority: str | None = None,
    status: str | None = None,
    is_archived: bool | None = None,
    tag_ids: list[str] | None = None,
) -> dict[str, Any] | None:
    """Update task fields. Only provided fields are changed. tag_ids replaces the task's tags. Returns None if not found."""
    _validate_status_priority(status, priority)
    if title is not None and not title.strip():
        raise ValueError("title cannot be empty")
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM tasks WHERE id = ? AND is_deleted = 0", (task_id,)).fetchone()
        if not row:
            return None
        new_start = _normalize_datetime(start_datetime, "start_datetime") if start_datetime is not None else None
        new_deadline = _normalize_datetime(deadline_datetime, "deadline_datetime") if deadline_datetime is not _UNSET else _UNSET
        eff_start = new_start or row["start_datetime"]
        eff_deadline = new_deadline if new_deadline is not _UNSET else row["deadline_datetime"]
        _validate_start_deadline(eff_start, eff_deadline)
        now = _now_iso()
        # Always touch updated_at; set completed_at when marking done
        updates: list[str] = ["updated_at = ?"]
        params: list[Any] = [now]
        if title is not None:
            updates.append("title = ?"); params.append(title.strip())
        if description is not _UNSET:
            updates.append("description = ?"); params.append(description or None)
        if new_start:
            updates.append("start_datetime = ?"); params.append(new_start)
        if new_deadline is not _UNSET:
            updates.append("deadline_datetime = ?"); params.append(new_deadline)
        if priority is not None:
            updates.append("priority = ?"); params.append(priority)
        if status is not None:
            updates.append("status = ?"); params.append(status)
            if status == "done":
                updates.append("completed_at = ?"); params.append(now)
        if is_archived is not None:
            updates.append("is_archived = ?"); params.append(1 if is_archived else 0)
        params.append(task_id)
        conn.execute(f"UPDATE tasks SET {', '.join(updates)} WHERE id = ?", params)
        if tag_ids is not None:
            conn.execute("DELETE FROM task_tags WHERE task_id = ?", (task_id,))
            _write_task_tags(conn, task_id, tag_ids)
        conn.commit()
        return get_task(task_id)
    finally:
        conn.close()


def update_task_status(task_id: str, status: str) -> dict[str, Any] | None:
    """Change only the status. Returns None if not found."""
    if status is None:
        raise ValueError("status is required")
    return update_task(task_id, status=status)


def delete_task(task_id: str) -> bool:
    """
    Soft-delete a task: it disappears from get_task/list_tasks but its rule, instances and tag links stay
    until hard_delete_task. Returns False if not found or already deleted.
    """
    now = _now_iso()
    conn = get_connection()
    try:
        cur = conn.execute(
            "UPDATE tasks SET is_deleted = 1, deleted_at = ?, updated_at = ? WHERE id = ? AND is_deleted = 0",
            (now, now, task_id),
        )
        conn.commit()
        if cur.rowcount:
            logger.info("[task_service] deleted task %s", task_id)
        return cur.rowcount > 0
    finally:
        conn.close()


def hard_delete_task(task_id: str) -> bool:
    """Delete a task (soft-deleted or not) with its recurrence rule, instances and tag links. Returns True if deleted."""
    conn = get_connection()
    try:
        cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        conn.commit()
        if cur.rowcount:
            logger.info("[task_service] hard-deleted task %s", task_id)
        return cur.rowcount > 0
    finally:
        conn.close()


def duplicate_task(task_id: str) -> dict[str, Any] | None:
    """Copy a task as "<title> (Copy)" with its tags, back at the initial status. The recurrence rule is not copied."""
    original = get_task(task_id)
    if original is None:
        return None
    return create_task(
        f"{original['title']} (Copy)",
        original["start_datetime"],
        description=original.get("description"),
        deadline_datetime=original.get("deadline_datetime"),
        priority=original["priority"],
        status=INITIAL_STATUS,
        tag_ids=[t["id"] for t in original["tags"]],
    )
