from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from task_recurrence.backfill import BackfillEngine, serialize_result
from task_recurrence.scheduler import BackfillScheduler
from task_recurrence.settings import BackfillSettings
from task_recurrence.task_store import TaskRepository, TaskStore
from task_recurrence.util import normalize_bool

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


async def _read_dry_run(request: Request) -> bool:
    dry_run = normalize_bool(request.query_params.get("dryRun"), False)
    body = await request.body()
    if not body.strip():
        return dry_run
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ValueError("Request body must be JSON.") from exc
    if not isinstance(payload, dict):
        raise ValueError("Request body must be an object.")
    if "dryRun" in payload:
        return normalize_bool(payload.get("dryRun"), dry_run)
    return dry_run


def create_app(
    *,
    settings: BackfillSettings | None = None,
    repository: TaskRepository | None = None,
    clock: Callable[[], datetime] = _now_utc,
) -> FastAPI:
    settings = settings or BackfillSettings.from_env()
    repository = repository or TaskStore(settings.db_path)
    engine = BackfillEngine(repository, clock=clock, settings=settings)
    scheduler = BackfillScheduler(engine=engine, time_zone=settings.time_zone)
    started_at = _iso_utc(_now_utc())

    app = FastAPI()
    app.state.engine = engine
    app.state.scheduler = scheduler

    @app.on_event("startup")
    async def _startup() -> None:
        if settings.cron_enabled:
            await scheduler.start()
        else:
            logger.info("Recurring backfill cron: disabled")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await scheduler.shutdown()

    def json_error(status_code: int, *, error: str, **extra: Any) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"error": error, **extra})

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse(
            status_code=200,
            content={
                "status": "ok",
                "started_at": started_at,
                "time_zone": settings.time_zone,
                "next_backfill_at": _iso_utc(scheduler.next_run_at()),
            },
        )

    @app.post("/v1/admin/recurring-tasks/backfill")
    async def backfill(request: Request) -> JSONResponse:
        try:
            dry_run = await _read_dry_run(request)
        except ValueError as exc:
            return json_error(400, error="bad_request", message=str(exc))

        try:
            result = await engine.run_backfill(dry_run=dry_run)
        except Exception as exc:
            logger.exception("Manual recurring backfill failed")
            return json_error(500, error="backfill_failed", message=str(exc))

        return JSONResponse(status_code=200, content=serialize_result(result))

    return app


app = create_app()
