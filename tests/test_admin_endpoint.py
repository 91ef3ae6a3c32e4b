import sqlite3
from datetime import datetime, timezone

import httpx
import pytest

from app import create_app
from task_recurrence.dates import end_of_day_instant
from task_recurrence.settings import BackfillSettings
from task_recurrence.task_store import TaskRecord, TaskStore

NOW = datetime(2026, 1, 12, 17, 0, tzinfo=timezone.utc)


def _settings(tmp_path) -> BackfillSettings:
    return BackfillSettings(cron_enabled=False, db_path=tmp_path / "tasks.db")


async def _seed_completed_daily(store: TaskStore) -> None:
    await store.insert_task(
        TaskRecord(
            title="Engage with comments",
            status="completed",
            is_recurring=True,
            recurring_pattern="daily",
            recurring_interval=1,
            due_date=end_of_day_instant("2026-01-12"),
            completed_at=NOW,
            recurrence_series_id="rec_comments",
            recurrence_instance_date="2026-01-12",
        )
    )


def _client(app) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


@pytest.mark.asyncio
async def test_backfill_endpoint_creates_then_is_idempotent(tmp_path):
    store = TaskStore(tmp_path / "tasks.db")
    await _seed_completed_daily(store)
    app = create_app(settings=_settings(tmp_path), repository=store, clock=lambda: NOW)

    async with _client(app) as client:
        first = await client.post("/v1/admin/recurring-tasks/backfill")
        second = await client.post("/v1/admin/recurring-tasks/backfill")

    assert first.status_code == 200
    assert first.json() == {
        "success": True,
        "todayKey": "2026-01-12",
        "seriesProcessed": 1,
        "seriesUpdated": 0,
        "tasksCreated": 1,
        "skipped": 0,
        "errors": [],
    }
    assert second.json()["tasksCreated"] == 0
    assert second.json()["skipped"] == 1
    assert await store.find_by_series_key("rec_comments", "2026-01-13") is not None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"json": {"dryRun": True}},
        {"params": {"dryRun": "1"}},
        {"params": {"dryRun": "true"}, "json": {}},
    ],
)
async def test_dry_run_does_not_write(tmp_path, request_kwargs):
    store = TaskStore(tmp_path / "tasks.db")
    await _seed_completed_daily(store)
    app = create_app(settings=_settings(tmp_path), repository=store, clock=lambda: NOW)

    async with _client(app) as client:
        resp = await client.post("/v1/admin/recurring-tasks/backfill", **request_kwargs)

    assert resp.status_code == 200
    assert resp.json()["tasksCreated"] == 1
    assert len(await store.list_recurring_tasks()) == 1


@pytest.mark.asyncio
async def test_malformed_body_is_rejected(tmp_path):
    app = create_app(settings=_settings(tmp_path), clock=lambda: NOW)

    async with _client(app) as client:
        resp = await client.post(
            "/v1/admin/recurring-tasks/backfill",
            content=b"[1, 2",
            headers={"Content-Type": "application/json"},
        )

    assert resp.status_code == 400
    assert resp.json()["error"] == "bad_request"


class _UnavailableStore(TaskStore):
    async def list_recurring_tasks(self):
        raise sqlite3.OperationalError("database is locked")


@pytest.mark.asyncio
async def test_storage_failure_is_reported(tmp_path):
    store = _UnavailableStore(tmp_path / "tasks.db")
    app = create_app(settings=_settings(tmp_path), repository=store, clock=lambda: NOW)

    async with _client(app) as client:
        resp = await client.post("/v1/admin/recurring-tasks/backfill")

    assert resp.status_code == 500
    assert resp.json() == {"error": "backfill_failed", "message": "database is locked"}


@pytest.mark.asyncio
async def test_healthz_reports_time_zone(tmp_path):
    app = create_app(settings=_settings(tmp_path))

    async with _client(app) as client:
        resp = await client.get("/healthz")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["time_zone"] == "America/New_York"
    assert body["next_backfill_at"] is None
