from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from task_recurrence.backfill import BackfillEngine, BackfillResult
from task_recurrence.dates import get_zone

logger = logging.getLogger(__name__)

BACKFILL_JOB_ID = "recurring-task-backfill"


class BackfillScheduler:
    """Runs the recurring-task backfill every day at local midnight."""

    def __init__(self, *, engine: BackfillEngine, time_zone: str | None = None) -> None:
        self._engine = engine
        self._time_zone = time_zone or engine.time_zone
        self._scheduler = AsyncIOScheduler(timezone=get_zone(self._time_zone))
        self._lock = asyncio.Lock()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        async with self._lock:
            if self._started:
                return
            self._scheduler.start()
            self._scheduler.add_job(
                self._run_backfill_job,
                trigger=CronTrigger(hour=0, minute=0, timezone=get_zone(self._time_zone)),
                id=BACKFILL_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=300,
            )
            self._started = True
            logger.info("Recurring backfill scheduled daily at 00:00 %s", self._time_zone)

    async def shutdown(self) -> None:
        async with self._lock:
            if not self._started:
                return
            try:
                self._scheduler.remove_job(BACKFILL_JOB_ID)
            except JobLookupError:
                pass
            self._scheduler.shutdown(wait=False)
            self._started = False

    def next_run_at(self) -> datetime | None:
        if not self._started:
            return None
        job = self._scheduler.get_job(BACKFILL_JOB_ID)
        if job is None:
            return None
        return job.next_run_time

    async def _run_backfill_job(self) -> BackfillResult | None:
        try:
            result = await self._engine.run_backfill(dry_run=False)
        except Exception:
            logger.exception("Scheduled recurring backfill failed")
            return None
        if not result.success:
            logger.warning(
                "Scheduled recurring backfill finished with %d failed series",
                len(result.errors),
            )
        return result
