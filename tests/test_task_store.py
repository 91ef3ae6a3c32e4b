import sqlite3
from datetime import datetime, timezone

import pytest

from task_recurrence.task_store import DuplicateInstanceError, TaskRecord, TaskStore


def _instance(**overrides) -> TaskRecord:
    fields = {
        "title": "Send client newsletter",
        "is_recurring": True,
        "recurring_pattern": "weekly",
        "recurring_interval": 1,
        "due_date": datetime(2026, 1, 13, 4, 59, 59, 999_000, tzinfo=timezone.utc),
        "checklist": [{"text": "Draft copy", "completed": False}],
        "recurrence_series_id": "rec_newsletter",
        "recurrence_instance_date": "2026-01-12",
        "created_at": datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc),
        "updated_at": datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return TaskRecord(**fields)


@pytest.mark.asyncio
async def test_insert_and_read_back(tmp_path):
    store = TaskStore(tmp_path / "tasks.db")
    record = _instance()
    await store.insert_task(record)

    loaded = await store.get_task(record.id)
    assert loaded == record

    found = await store.find_by_series_key("rec_newsletter", "2026-01-12")
    assert found is not None and found.id == record.id
    assert await store.find_by_series_key("rec_newsletter", "2026-01-19") is None


@pytest.mark.asyncio
async def test_list_recurring_tasks_excludes_one_off_tasks(tmp_path):
    store = TaskStore(tmp_path / "tasks.db")
    recurring = _instance()
    await store.insert_task(recurring)
    await store.insert_task(TaskRecord(title="One-off call"))

    tasks = await store.list_recurring_tasks()
    assert [task.id for task in tasks] == [recurring.id]


@pytest.mark.asyncio
async def test_second_instance_for_same_day_is_rejected(tmp_path):
    store = TaskStore(tmp_path / "tasks.db")
    await store.insert_task(_instance())

    with pytest.raises(DuplicateInstanceError) as excinfo:
        await store.insert_task(_instance())
    assert excinfo.value.series_id == "rec_newsletter"
    assert excinfo.value.instance_date == "2026-01-12"

    assert len(await store.list_series_tasks("rec_newsletter")) == 1


@pytest.mark.asyncio
async def test_rows_without_series_fields_do_not_collide(tmp_path):
    store = TaskStore(tmp_path / "tasks.db")
    await store.insert_task(_instance(recurrence_series_id=None, recurrence_instance_date=None))
    await store.insert_task(_instance(recurrence_series_id=None, recurrence_instance_date=None))

    assert len(await store.list_recurring_tasks()) == 2


@pytest.mark.asyncio
async def test_other_integrity_errors_propagate_unchanged(tmp_path):
    store = TaskStore(tmp_path / "tasks.db")
    record = _instance()
    await store.insert_task(record)

    with pytest.raises(sqlite3.IntegrityError) as excinfo:
        await store.insert_task(_instance(id=record.id, recurrence_instance_date="2026-01-19"))
    assert not isinstance(excinfo.value, DuplicateInstanceError)


@pytest.mark.asyncio
async def test_update_series_fields(tmp_path):
    store = TaskStore(tmp_path / "tasks.db")
    legacy = _instance(recurrence_series_id=None, recurrence_instance_date=None)
    await store.insert_task(legacy)

    await store.update_task_series_fields(legacy.id, "rec_newsletter", "2026-01-05")

    loaded = await store.get_task(legacy.id)
    assert loaded.recurrence_series_id == "rec_newsletter"
    assert loaded.recurrence_instance_date == "2026-01-05"


@pytest.mark.asyncio
async def test_update_series_fields_rejects_taken_instance(tmp_path):
    store = TaskStore(tmp_path / "tasks.db")
    await store.insert_task(_instance())
    legacy = _instance(recurrence_series_id=None, recurrence_instance_date=None)
    await store.insert_task(legacy)

    with pytest.raises(DuplicateInstanceError):
        await store.update_task_series_fields(legacy.id, "rec_newsletter", "2026-01-12")


@pytest.mark.asyncio
async def test_malformed_checklist_reads_as_empty(tmp_path):
    store = TaskStore(tmp_path / "tasks.db")
    record = _instance()
    await store.insert_task(record)
    with sqlite3.connect(tmp_path / "tasks.db") as conn:
        conn.execute("UPDATE tasks SET checklist_json = ? WHERE id = ?", ("{not json", record.id))

    loaded = await store.get_task(record.id)
    assert loaded.checklist == []
