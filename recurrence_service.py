"""
Recurrence service: rule lifecycle and the instance synchronizer.

synchronize() reconciles a rule's materialized instances with what the occurrence calculator says:
future instances nobody edited are dropped and rebuilt, past or user-modified instances are left
alone, and any occurrence not yet stored gets a fresh instance. It runs once whenever a rule is
created or updated; there is no background scheduler.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any

from ulid import ULID

from config import load as load_config
from database import get_connection
from date_utils import parse_datetime, to_iso, utc_now
from instance_store import SqliteStore
from occurrences import SAFETY_CAP, expand_occurrences
from recurrence_rules import RecurrenceRule, rule_from_input, rule_from_row, rule_to_dict, rule_to_row, validate_rule
from task_service import INITIAL_STATUS

logger = logging.getLogger("recurrence")

DEFAULT_HORIZON_DAYS = 90

# One lock per recurrence id: the find-then-insert loop is not atomic on its own
_sync_locks: dict[str, threading.Lock] = {}
_sync_locks_guard = threading.Lock()


def _lock_for(recurrence_id: str) -> threading.Lock:
    with _sync_locks_guard:
        lock = _sync_locks.get(recurrence_id)
        if lock is None:
            lock = _sync_locks[recurrence_id] = threading.Lock()
        return lock


def _horizon_days(explicit: int | None) -> int:
    if explicit is not None:
        return explicit
    try:
        return load_config().generation_horizon_days
    except (OSError, ValueError) as e:
        logger.warning("[recurrence] config unreadable (%s); using %d day horizon", e, DEFAULT_HORIZON_DAYS)
        return DEFAULT_HORIZON_DAYS


def synchronize(
    task: dict[str, Any],
    rule: RecurrenceRule,
    generation_horizon_days: int | None = None,
    *,
    store: Any = None,
    now: datetime | None = None,
) -> int:
    """
    Bring the stored instances of `rule` in line with its schedule up to now + horizon.
    Idempotent: a second call with unchanged task/rule leaves the same instance set.
    Returns the number of instances inserted.

    Raises InvalidRule for a malformed rule (nothing touched) and StorageFailure from the store;
    a failure while inserting leaves earlier inserts in place and the next call fills the gap.
    """
    if not rule.is_active:
        logger.debug("[recurrence] rule %s inactive; skipping synchronize", rule.id)
        return 0
    validate_rule(rule)
    if not rule.id:
        raise ValueError("rule must be stored before its instances can be generated")
    store = store or SqliteStore()
    now = now or utc_now()
    horizon_end = now + timedelta(days=_horizon_days(generation_horizon_days))
    start = parse_datetime(task["start_datetime"])

    with _lock_for(rule.id):
        removed = store.delete_future_unmodified_instances(rule.id, now)
        dates, truncated = expand_occurrences(start, horizon_end, rule)
        if truncated:
            logger.warning(
                "[recurrence] rule %s produced %d occurrences; truncated at the safety cap",
                rule.id, SAFETY_CAP,
            )
        inserted = 0
        for scheduled in dates:
            if store.find_instance(rule.id, scheduled) is not None:
                continue
            iid = str(ULID())
            stored = store.insert_instance(
                {
                    "id": iid,
                    "parent_task_id": task["id"],
                    "recurrence_id": rule.id,
                    "scheduled_datetime": to_iso(scheduled),
                    "title": task["title"],
                    "description": task.get("description"),
                    "priority": task["priority"],
                    "status": INITIAL_STATUS,
                }
            )
            # A concurrent writer may have stored this date first; its row comes back instead
            if stored["id"] == iid:
                inserted += 1
        # All occurrences from the series start, past ones included
        store.set_rule_count(rule.id, len(dates))
        rule.current_count = len(dates)

    logger.info(
        "[recurrence] synchronized rule %s for task %s: removed %d, inserted %d, %d occurrences through %s",
        rule.id, task["id"], removed, inserted, len(dates), to_iso(horizon_end),
    )
    return inserted


def synchronize_recurrence(recurrence_id: str, *, store: SqliteStore | None = None) -> int | None:
    """Synchronize a stored rule by id. Returns None if the rule or its task no longer exists."""
    store = store or SqliteStore()
    rule = store.get_rule(recurrence_id)
    if rule is None:
        return None
    task = store.get_task(rule.task_id)
    if task is None:
        return None
    return synchronize(task, rule, store=store)


def regenerate(task_id: str, *, store: SqliteStore | None = None) -> int | None:
    """Re-run synchronize for a task's rule (e.g. after its start or title changed). None if no rule."""
    store = store or SqliteStore()
    rule = store.get_rule_for_task(task_id)
    task = store.get_task(task_id)
    if rule is None or task is None:
        return None
    return synchronize(task, rule, store=store)


def _get_rule_row(conn, task_id: str):
    return conn.execute("SELECT * FROM task_recurrence WHERE task_id = ?", (task_id,)).fetchone()


def get_recurrence(task_id: str) -> dict[str, Any] | None:
    """Return the task's recurrence rule in API form, or None."""
    conn = get_connection()
    try:
        row = _get_rule_row(conn, task_id)
        return rule_to_dict(rule_from_row(row), row) if row else None
    finally:
        conn.close()


def create_recurrence(task_id: str, payload: dict[str, Any]) -> dict[str, Any] | None:
    """
    Attach a recurrence rule to a task and generate its instances.
    Returns the stored rule, or None if the task does not exist.
    Raises InvalidRule for a malformed rule and ValueError if the task already has one.
    """
    rule = rule_from_input(payload)
    rid = str(ULID())
    now = to_iso(utc_now())
    conn = get_connection()
    try:
        if not conn.execute("SELECT 1 FROM tasks WHERE id = ? AND is_deleted = 0", (task_id,)).fetchone():
            return None
        if _get_rule_row(conn, task_id):
            raise ValueError("Recurrence rule already exists for this task")
        cols = rule_to_row(rule)
        conn.execute(
            """INSERT INTO task_recurrence (
                id, task_id, recurrence_type, interval_value, days_of_week, day_of_month,
                month_of_year, end_type, end_date, end_count, current_count, is_active,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                rid, task_id, cols["recurrence_type"], cols["interval_value"], cols["days_of_week"],
                cols["day_of_month"], cols["month_of_year"], cols["end_type"], cols["end_date"],
                cols["end_count"], 0, cols["is_active"], now, now,
            ),
        )
        conn.commit()
    finally:
        conn.close()
    logger.info("[recurrence] created %s rule %s for task %s", cols["recurrence_type"], rid, task_id)
    synchronize_recurrence(rid)
    return get_recurrence(task_id)


def update_recurrence(task_id: str, payload: dict[str, Any]) -> dict[str, Any] | None:
    """
    Change any rule field(s) and regenerate unless the rule is now inactive.
    Returns the updated rule, or None if the task has no rule.
    """
    if not payload:
        raise ValueError("No updates provided")
    conn = get_connection()
    try:
        row = _get_rule_row(conn, task_id)
        if not row:
            return None
        existing = rule_from_row(row)
        rule = rule_from_input(payload, base=existing)
        cols = rule_to_row(rule)
        conn.execute(
            """UPDATE task_recurrence SET
                recurrence_type = ?, interval_value = ?, days_of_week = ?, day_of_month = ?,
                month_of_year = ?, end_type = ?, end_date = ?, end_count = ?, is_active = ?,
                updated_at = ?
               WHERE id = ?""",
            (
                cols["recurrence_type"], cols["interval_value"], cols["days_of_week"], cols["day_of_month"],
                cols["month_of_year"], cols["end_type"], cols["end_date"], cols["end_count"], cols["is_active"],
                to_iso(utc_now()), existing.id,
            ),
        )
        conn.commit()
    finally:
        conn.close()
    if rule.is_active:
        synchronize_recurrence(existing.id)
    else:
        logger.info("[recurrence] rule %s deactivated; existing instances kept", existing.id)
    return get_recurrence(task_id)


def delete_recurrence(task_id: str) -> bool:
    """
    Remove a task's rule. Future instances nobody edited go with it; past and modified instances
    stay on the task, detached from the rule. Returns False if the task has no rule.
    """
    store = SqliteStore()
    rule = store.get_rule_for_task(task_id)
    if rule is None:
        return False
    removed = store.delete_future_unmodified_instances(rule.id, utc_now())
    conn = get_connection()
    try:
        conn.execute("DELETE FROM task_recurrence WHERE id = ?", (rule.id,))
        conn.commit()
    finally:
        conn.close()
    with _sync_locks_guard:
        _sync_locks.pop(rule.id, None)
    logger.info("[recurrence] deleted rule %s for task %s (%d future instances removed)", rule.id, task_id, removed)
    return True
