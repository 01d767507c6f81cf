"""
Tag service: CRUD for tags. Names are unique case-insensitively; color is #RRGGBB.
"""
from __future__ import annotations

import re
import sqlite3
from typing import Any

from ulid import ULID

from database import get_connection
from date_utils import to_iso, utc_now

DEFAULT_COLOR = "#808080"
NAME_MAX_LEN = 50

_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


def _new_id() -> str:
    return str(ULID())


def _now_iso() -> str:
    return to_iso(utc_now())


def _clean_name(name: str | None) -> str:
    """Strip, drop a leading #, collapse whitespace."""
    cleaned = re.sub(r"\s+", " ", (name or "").strip().lstrip("#").strip())
    if not cleaned:
        raise ValueError("Tag name is required")
    if len(cleaned) > NAME_MAX_LEN:
        raise ValueError(f"Tag name must be at most {NAME_MAX_LEN} characters")
    return cleaned


def _clean_color(color: str | None) -> str:
    c = (color or "").strip()
    if not c:
        return DEFAULT_COLOR
    if not _COLOR_RE.match(c):
        raise ValueError("color must be #RRGGBB")
    return c.lower()


def _name_taken(conn: sqlite3.Connection, name: str, exclude_id: str | None = None) -> bool:
    row = conn.execute(
        "SELECT id FROM tags WHERE name = ? COLLATE NOCASE AND id != ?",
        (name, exclude_id or ""),
    ).fetchone()
    return row is not None


def create_tag(name: str, *, color: str | None = None, tag_id: str | None = None) -> dict[str, Any]:
    """Create a tag. Raises ValueError if a tag with this name already exists."""
    clean = _clean_name(name)
    clean_color = _clean_color(color)
    tid = tag_id or _new_id()
    now = _now_iso()
    conn = get_connection()
    try:
        if _name_taken(conn, clean):
            raise ValueError("Tag with this name already exists")
        conn.execute(
            "INSERT INTO tags (id, name, color, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (tid, clean, clean_color, now, now),
        )
        conn.commit()
        return get_tag(tid)
    finally:
        conn.close()


def list_tags() -> list[dict[str, Any]]:
    """All tags by name, each with the number of tasks carrying it."""
    conn = get_connection()
    try:
        rows = conn.execute(
            """SELECT t.id, t.name, t.color, t.created_at, t.updated_at,
                      COUNT(tk.id) AS task_count
               FROM tags t
               LEFT JOIN task_tags tt ON tt.tag_id = t.id
               LEFT JOIN tasks tk ON tk.id = tt.task_id AND tk.is_deleted = 0
               GROUP BY t.id
               ORDER BY t.name COLLATE NOCASE"""
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def get_tag(tag_id: str) -> dict[str, Any] | None:
    """Get tag by id."""
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT id, name, color, created_at, updated_at FROM tags WHERE id = ?",
            (tag_id,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def get_tag_by_name(name: str) -> dict[str, Any] | None:
    """Get tag by name (case-insensitive, leading # ignored)."""
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT id, name, color, created_at, updated_at FROM tags WHERE name = ? COLLATE NOCASE",
            ((name or "").strip().lstrip("#").strip(),),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def update_tag(tag_id: str, *, name: str | None = None, color: str | None = None) -> dict[str, Any] | None:
    """Rename or recolor a tag. Returns updated tag or None if not found."""
    conn = get_connection()
    try:
        row = conn.execute("SELECT id FROM tags WHERE id = ?", (tag_id,)).fetchone()
        if not row:
            return None
        updates: list[str] = ["updated_at = ?"]
        params: list[Any] = [_now_iso()]
        if name is not None:
            clean = _clean_name(name)
            if _name_taken(conn, clean, exclude_id=tag_id):
                raise ValueError("Tag with this name already exists")
            updates.append("name = ?")
            params.append(clean)
        if color is not None:
            updates.append("color = ?")
            params.append(_clean_color(color))
        params.append(tag_id)
        conn.execute(f"UPDATE tags SET {', '.join(updates)} WHERE id = ?", params)
        conn.commit()
        return get_tag(tag_id)
    finally:
        conn.close()


def delete_tag(tag_id: str) -> bool:
    """Delete tag and its task associations. Returns True if deleted."""
    conn = get_connection()
    try:
        row = conn.execute("SELECT id FROM tags WHERE id = ?", (tag_id,)).fetchone()
        if not row:
            return False
        conn.execute("DELETE FROM task_tags WHERE tag_id = ?", (tag_id,))
        conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,))
        conn.commit()
        return True
    finally:
        conn.close()
