"""Instance synchronizer and the recurrence rule lifecycle."""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

import recurrence_service
from config import AppConfig
from date_utils import to_iso, utc_now
from instance_store import SqliteStore, StorageFailure, list_instances, update_instance
from occurrences import add_months
from recurrence_rules import EndNever, InvalidRule, RecurrenceRule, RecurrenceType
from recurrence_service import (
    create_recurrence,
    delete_recurrence,
    get_recurrence,
    regenerate,
    synchronize,
    update_recurrence,
)
from task_service import delete_task, hard_delete_task, update_task


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


NOW = utc(2025, 1, 1)


def scheduled(task_id: str) -> list[str]:
    return [i["scheduled_datetime"] for i in list_instances(task_id)]


class TestSynchronize:
    def test_generates_instances_through_horizon(self, stored_rule):
        task, rule = stored_rule({"recurrence_type": "daily"})
        assert synchronize(task, rule, 10, now=NOW) == 10
        instances = list_instances(task["id"])
        assert [i["scheduled_datetime"][:10] for i in instances] == [f"2025-01-{d:02d}" for d in range(1, 11)]
        first = instances[0]
        assert first["scheduled_datetime"] == "2025-01-01T09:00:00Z"
        assert first["title"] == "Water plants"
        assert first["priority"] == "medium"
        assert first["status"] == "planned"
        assert first["is_modified"] is False
        assert first["recurrence_id"] == rule.id

    def test_horizon_defaults_to_config(self, stored_rule):
        task, rule = stored_rule({"recurrence_type": "daily"})
        synchronize(task, rule, now=NOW)
        # 2025-01-01 through 2025-03-31
        assert len(list_instances(task["id"])) == 90

    def test_is_idempotent(self, stored_rule):
        task, rule = stored_rule({"recurrence_type": "daily"})
        synchronize(task, rule, 10, now=NOW)
        before = scheduled(task["id"])
        synchronize(task, rule, 10, now=NOW)
        assert scheduled(task["id"]) == before
        assert len(before) == 10

    def test_modified_instance_survives_rule_change(self, stored_rule):
        task, rule = stored_rule({"recurrence_type": "daily"})
        synchronize(task, rule, 10, now=NOW)
        jan4 = next(i for i in list_instances(task["id"]) if i["scheduled_datetime"].startswith("2025-01-04"))
        update_instance(jan4["id"], title="Repot the fern")

        synchronize(task, rule.model_copy(update={"interval_value": 2}), 10, now=NOW)

        instances = list_instances(task["id"])
        assert [i["scheduled_datetime"][:10] for i in instances] == [
            "2025-01-01", "2025-01-03", "2025-01-04", "2025-01-05", "2025-01-07", "2025-01-09",
        ]
        kept = next(i for i in instances if i["id"] == jan4["id"])
        assert kept["title"] == "Repot the fern"
        assert kept["is_modified"] is True

    def test_past_instances_are_kept(self, stored_rule):
        task, rule = stored_rule({"recurrence_type": "daily"})
        synchronize(task, rule, 10, now=NOW)
        past_ids = {i["id"] for i in list_instances(task["id"]) if i["scheduled_datetime"] < "2025-01-06T12"}

        later = utc(2025, 1, 6, 12)
        inserted = synchronize(task, rule.model_copy(update={"interval_value": 2}), 10, now=later)

        assert inserted == 5
        instances = list_instances(task["id"])
        assert past_ids <= {i["id"] for i in instances}
        assert [i["scheduled_datetime"][:10] for i in instances] == [
            "2025-01-01", "2025-01-02", "2025-01-03", "2025-01-04", "2025-01-05", "2025-01-06",
            "2025-01-07", "2025-01-09", "2025-01-11", "2025-01-13", "2025-01-15",
        ]

    def test_persists_current_count(self, stored_rule):
        task, rule = stored_rule({"recurrence_type": "daily"})
        synchronize(task, rule, 10, now=NOW)
        assert rule.current_count == 10
        assert SqliteStore().get_rule(rule.id).current_count == 10

    def test_inactive_rule_is_left_alone(self, stored_rule):
        task, rule = stored_rule({"recurrence_type": "daily"})
        assert synchronize(task, rule.model_copy(update={"is_active": False}), 10, now=NOW) == 0
        assert list_instances(task["id"]) == []

    def test_unsaved_rule_is_rejected(self, make_task):
        task = make_task()
        with pytest.raises(ValueError):
            synchronize(task, RecurrenceRule(type="daily"), 10, now=NOW)

    def test_invalid_rule_touches_nothing(self, make_task):
        calls = []

        class RecordingStore:
            def __getattr__(self, name):
                calls.append(name)
                raise AssertionError(f"store.{name} should not be used")

        rule = RecurrenceRule.model_construct(
            id="r1", type=RecurrenceType.DAILY, interval_value=0, end_condition=EndNever(), is_active=True,
        )
        with pytest.raises(InvalidRule):
            synchronize(make_task(), rule, 10, store=RecordingStore(), now=NOW)
        assert calls == []

    def test_storage_failure_midway_then_recovers(self, stored_rule):
        class FlakyStore(SqliteStore):
            inserts = 0

            def insert_instance(self, instance):
                FlakyStore.inserts += 1
                if FlakyStore.inserts == 3:
                    raise StorageFailure("disk full")
                return super().insert_instance(instance)

        task, rule = stored_rule({"recurrence_type": "daily"})
        with pytest.raises(StorageFailure):
            synchronize(task, rule, 10, store=FlakyStore(), now=NOW)
        assert scheduled(task["id"]) == ["2025-01-01T09:00:00Z", "2025-01-02T09:00:00Z"]

        assert synchronize(task, rule, 10, now=NOW) == 10
        assert len(list_instances(task["id"])) == 10

    def test_concurrent_runs_do_not_duplicate(self, stored_rule):
        task, rule = stored_rule({"recurrence_type": "daily"})
        errors = []

        def run():
            try:
                synchronize(task, rule, 10, now=NOW)
            except Exception as e:  # surfaced through the assertion below
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(list_instances(task["id"])) == 10

    def test_insert_returns_existing_row_on_duplicate(self, stored_rule):
        task, rule = stored_rule({"recurrence_type": "daily"})
        store = SqliteStore()
        row = {
            "parent_task_id": task["id"],
            "recurrence_id": rule.id,
            "scheduled_datetime": "2025-01-01T09:00:00Z",
            "title": "first",
            "priority": "low",
        }
        first = store.insert_instance(row)
        second = store.insert_instance({**row, "title": "second"})
        assert second["id"] == first["id"]
        assert second["title"] == "first"


class TestLifecycle:
    @pytest.fixture
    def future_task(self, make_task):
        start = to_iso(utc_now() + timedelta(days=1))
        return make_task("Standup", start)

    def test_create_generates_instances(self, future_task):
        rule = create_recurrence(future_task["id"], {"recurrence_type": "daily", "end_type": "count", "end_count": 5})
        assert rule["recurrence_type"] == "daily"
        assert rule["end_count"] == 5
        assert rule["current_count"] == 5
        assert len(list_instances(future_task["id"])) == 5
        assert get_recurrence(future_task["id"])["id"] == rule["id"]

    def test_create_for_missing_task(self):
        assert create_recurrence("nope", {"recurrence_type": "daily"}) is None

    def test_second_rule_is_rejected(self, future_task):
        create_recurrence(future_task["id"], {"recurrence_type": "daily", "end_type": "count", "end_count": 5})
        with pytest.raises(ValueError, match="already exists"):
            create_recurrence(future_task["id"], {"recurrence_type": "weekly", "days_of_week": [1]})

    def test_invalid_rule_is_not_stored(self, future_task):
        with pytest.raises(InvalidRule):
            create_recurrence(future_task["id"], {"recurrence_type": "monthly", "day_of_month": 0})
        assert get_recurrence(future_task["id"]) is None

    def test_update_regenerates(self, future_task):
        create_recurrence(future_task["id"], {"recurrence_type": "daily", "end_type": "count", "end_count": 5})
        rule = update_recurrence(future_task["id"], {"end_count": 3})
        assert rule["end_count"] == 3
        assert rule["current_count"] == 3
        assert len(list_instances(future_task["id"])) == 3

    def test_update_requires_fields(self, future_task):
        create_recurrence(future_task["id"], {"recurrence_type": "daily"})
        with pytest.raises(ValueError, match="No updates"):
            update_recurrence(future_task["id"], {})

    def test_update_without_rule(self, future_task):
        assert update_recurrence(future_task["id"], {"interval_value": 2}) is None

    def test_deactivating_keeps_instances(self, future_task):
        create_recurrence(future_task["id"], {"recurrence_type": "daily", "end_type": "count", "end_count": 5})
        before = scheduled(future_task["id"])
        rule = update_recurrence(future_task["id"], {"is_active": False, "end_count": 2})
        assert rule["is_active"] is False
        assert scheduled(future_task["id"]) == before

    def test_task_edit_flows_into_unmodified_instances(self, future_task):
        create_recurrence(future_task["id"], {"recurrence_type": "daily", "end_type": "count", "end_count": 3})
        edited = list_instances(future_task["id"])[1]
        update_instance(edited["id"], priority="high")

        update_task(future_task["id"], title="Daily standup")
        regenerate(future_task["id"])

        titles = {i["id"]: i["title"] for i in list_instances(future_task["id"])}
        assert titles[edited["id"]] == "Standup"
        assert sorted(titles.values()) == ["Daily standup", "Daily standup", "Standup"]

    def test_regenerate_without_rule(self, future_task):
        assert regenerate(future_task["id"]) is None

    def test_delete_keeps_modified_instances(self, future_task):
        create_recurrence(future_task["id"], {"recurrence_type": "daily", "end_type": "count", "end_count": 5})
        first = list_instances(future_task["id"])[0]
        done = update_instance(first["id"], status="done")
        assert done["completed_at"] is not None
        assert done["is_modified"] is True

        assert delete_recurrence(future_task["id"]) is True

        remaining = list_instances(future_task["id"])
        assert [i["id"] for i in remaining] == [first["id"]]
        assert remaining[0]["recurrence_id"] is None
        assert get_recurrence(future_task["id"]) is None
        assert delete_recurrence(future_task["id"]) is False

    def test_hard_deleting_task_removes_rule_and_instances(self, future_task):
        create_recurrence(future_task["id"], {"recurrence_type": "daily", "end_type": "count", "end_count": 5})
        assert hard_delete_task(future_task["id"]) is True
        assert list_instances(future_task["id"]) == []
        assert get_recurrence(future_task["id"]) is None

    def test_soft_deleted_task_is_not_regenerated(self, future_task):
        create_recurrence(future_task["id"], {"recurrence_type": "daily", "end_type": "count", "end_count": 5})
        assert delete_task(future_task["id"]) is True
        assert regenerate(future_task["id"]) is None
        assert create_recurrence(future_task["id"], {"recurrence_type": "daily"}) is None
        assert len(list_instances(future_task["id"])) == 5

    def test_monthly_to_yearly_keeps_start_day(self, future_task):
        AppConfig(generation_horizon_days=800).save()
        create_recurrence(future_task["id"], {"recurrence_type": "monthly", "day_of_month": 5})

        rule = update_recurrence(future_task["id"], {"recurrence_type": "yearly"})

        assert rule["day_of_month"] is None
        start = datetime.fromisoformat(future_task["start_datetime"].replace("Z", "+00:00"))
        expected = [to_iso(add_months(start, 12 * k, start.day)) for k in range(3)]
        assert scheduled(future_task["id"]) == expected

    def test_delete_releases_the_sync_lock(self, future_task):
        create_recurrence(future_task["id"], {"recurrence_type": "daily", "end_type": "count", "end_count": 2})
        rid = get_recurrence(future_task["id"])["id"]
        assert rid in recurrence_service._sync_locks
        delete_recurrence(future_task["id"])
        assert rid not in recurrence_service._sync_locks


def test_rows_stored_by_another_writer_are_not_counted(stored_rule):
    class BlindStore(SqliteStore):
        # Never sees existing rows, so every insert collides with the one already stored
        def find_instance(self, recurrence_id, scheduled):
            return None

    task, rule = stored_rule({"recurrence_type": "daily"})
    now = utc(2025, 1, 20)
    assert synchronize(task, rule, 0, now=now) == 19
    assert synchronize(task, rule, 0, store=BlindStore(), now=now) == 0
    assert len(list_instances(task["id"])) == 19
