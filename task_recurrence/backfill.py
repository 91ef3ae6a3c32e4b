"""Backfill of recurring task instances.

Every recurrence series should have exactly one "current" instance. A run
walks all series, works out which instance date should exist today, and
inserts it when it is missing. Runs are safe to repeat and to overlap: the
existence check keeps repeat runs quiet and the repository's unique index on
(series id, instance date) settles races.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from task_recurrence.dates import (
    PATTERNS,
    advance_until,
    date_key_of,
    end_of_day_instant,
    ensure_aware,
    next_date_key,
)
from task_recurrence.series import group_into_series
from task_recurrence.settings import BackfillSettings
from task_recurrence.task_store import DuplicateInstanceError, TaskRecord, TaskRepository

logger = logging.getLogger(__name__)

STATUS_TODO = "todo"
STATUS_COMPLETED = "completed"
SCHEDULE_FROM_DUE_DATE = "due_date"
SCHEDULE_FROM_COMPLETION_DATE = "completion_date"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SeriesFailure:
    series_id: str
    error: str


@dataclass
class BackfillResult:
    today_key: str
    success: bool = True
    series_processed: int = 0
    series_updated: int = 0
    tasks_created: int = 0
    skipped: int = 0
    errors: list[SeriesFailure] = field(default_factory=list)


def serialize_result(result: BackfillResult) -> dict[str, Any]:
    return {
        "success": result.success,
        "todayKey": result.today_key,
        "seriesProcessed": result.series_processed,
        "seriesUpdated": result.series_updated,
        "tasksCreated": result.tasks_created,
        "skipped": result.skipped,
        "errors": [{"seriesId": failure.series_id, "error": failure.error} for failure in result.errors],
    }


@dataclass(frozen=True)
class SeriesPolicy:
    pattern: str
    interval: int
    schedule_from: str


def policy_for(series_id: str, template: TaskRecord) -> SeriesPolicy:
    pattern = (template.recurring_pattern or "").strip().lower()
    if pattern not in PATTERNS:
        logger.warning("Series %s has pattern %r, treating as daily", series_id, template.recurring_pattern)
        pattern = "daily"

    interval = template.recurring_interval or 1
    if interval < 1:
        logger.warning("Series %s has interval %r, treating as 1", series_id, template.recurring_interval)
        interval = 1

    schedule_from = template.schedule_from or SCHEDULE_FROM_DUE_DATE
    if schedule_from not in {SCHEDULE_FROM_DUE_DATE, SCHEDULE_FROM_COMPLETION_DATE}:
        logger.warning("Series %s has schedule_from %r, treating as due_date", series_id, template.schedule_from)
        schedule_from = SCHEDULE_FROM_DUE_DATE

    return SeriesPolicy(pattern=pattern, interval=interval, schedule_from=schedule_from)


def _sort_instant(value: datetime | None) -> datetime:
    return ensure_aware(value) if value is not None else _EPOCH


def select_template(tasks: list[TaskRecord]) -> TaskRecord:
    """Most recently due task, most recently created on ties."""
    return max(tasks, key=lambda task: (_sort_instant(task.due_date), _sort_instant(task.created_at)))


def reset_checklist(checklist: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    return [{**item, "completed": False} for item in checklist or [] if isinstance(item, dict)]


def _is_open(task: TaskRecord) -> bool:
    return task.status != STATUS_COMPLETED


class BackfillEngine:
    def __init__(
        self,
        repository: TaskRepository,
        *,
        clock: Callable[[], datetime] = _now_utc,
        settings: BackfillSettings | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._settings = settings or BackfillSettings()

    @property
    def time_zone(self) -> str:
        return self._settings.time_zone

    async def run_backfill(self, dry_run: bool = False) -> BackfillResult:
        now = self._clock()
        today_key = date_key_of(now, self.time_zone)
        result = BackfillResult(today_key=today_key)

        tasks = await self._repository.list_recurring_tasks()
        for series_id, members in group_into_series(tasks).items():
            result.series_processed += 1
            try:
                await self._process_series(
                    series_id,
                    members,
                    now=now,
                    today_key=today_key,
                    dry_run=dry_run,
                    result=result,
                )
            except Exception as exc:
                logger.exception("Recurring backfill failed for series %s", series_id)
                result.errors.append(SeriesFailure(series_id=series_id, error=str(exc)))

        result.success = not result.errors
        logger.info(
            "Recurring backfill %s: today=%s series=%d updated=%d created=%d skipped=%d failed=%d",
            "dry run" if dry_run else "run",
            today_key,
            result.series_processed,
            result.series_updated,
            result.tasks_created,
            result.skipped,
            len(result.errors),
        )
        return result

    def instance_key(self, task: TaskRecord, *, today_key: str) -> str:
        if task.recurrence_instance_date:
            return task.recurrence_instance_date
        for value in (task.due_date, task.completed_at, task.created_at):
            if value is not None:
                return date_key_of(value, self.time_zone)
        return today_key

    async def _process_series(
        self,
        series_id: str,
        members: list[TaskRecord],
        *,
        now: datetime,
        today_key: str,
        dry_run: bool,
        result: BackfillResult,
    ) -> None:
        template = select_template(members)
        policy = policy_for(series_id, template)

        target_key = self._target_key(series_id, members, policy, today_key=today_key)
        if target_key is None:
            logger.debug("Series %s already has an open instance", series_id)
            result.skipped += 1
            return

        if self._past_end_date(template, target_key):
            logger.debug("Series %s ended before %s", series_id, target_key)
            result.skipped += 1
            return

        existing = await self._repository.find_by_series_key(series_id, target_key)
        if existing is not None:
            logger.debug("Series %s already has instance %s (%s)", series_id, target_key, existing.id)
            result.skipped += 1
            return

        if not template.recurrence_series_id or not template.recurrence_instance_date:
            result.series_updated += 1
            if not dry_run:
                await self._stamp_template(series_id, template, today_key=today_key)

        if dry_run:
            logger.info("Dry run: would create %s for series %s", target_key, series_id)
            result.tasks_created += 1
            return

        record = self._build_instance(series_id, template, policy, target_key=target_key, now=now)
        try:
            await self._repository.insert_task(record)
        except DuplicateInstanceError:
            logger.info("Instance %s for series %s was created concurrently", target_key, series_id)
            return

        result.tasks_created += 1
        logger.info("Created recurring instance %s for series %s (task %s)", target_key, series_id, record.id)

    def _target_key(
        self,
        series_id: str,
        members: list[TaskRecord],
        policy: SeriesPolicy,
        *,
        today_key: str,
    ) -> str | None:
        keyed = [(task, self.instance_key(task, today_key=today_key)) for task in members]

        if policy.pattern == "daily":
            todays = [task for task, key in keyed if key == today_key]
            if any(_is_open(task) for task in todays):
                return None
            if todays:
                return next_date_key(
                    "daily",
                    policy.interval,
                    end_of_day_instant(today_key, self.time_zone),
                    self.time_zone,
                )
            return today_key

        if any(key >= today_key and _is_open(task) for task, key in keyed):
            return None

        base_key = max(key for _, key in keyed)
        if policy.schedule_from == SCHEDULE_FROM_COMPLETION_DATE:
            completed = [task for task in members if task.completed_at is not None]
            if completed:
                latest = max(completed, key=lambda task: ensure_aware(task.completed_at))
                base_key = date_key_of(latest.completed_at, self.time_zone)

        target_key, reached = advance_until(
            policy.pattern,
            policy.interval,
            base_key,
            today_key,
            time_zone=self.time_zone,
            max_steps=self._settings.max_advance_steps,
        )
        if not reached:
            logger.warning(
                "Series %s did not reach %s within %d steps from %s; using %s",
                series_id,
                today_key,
                self._settings.max_advance_steps,
                base_key,
                target_key,
            )
        return target_key

    def _past_end_date(self, template: TaskRecord, target_key: str) -> bool:
        if not self._settings.enforce_end_date or template.recurring_end_date is None:
            return False
        return target_key > date_key_of(template.recurring_end_date, self.time_zone)

    async def _stamp_template(self, series_id: str, template: TaskRecord, *, today_key: str) -> None:
        instance_date = self.instance_key(template, today_key=today_key)
        try:
            await self._repository.update_task_series_fields(template.id, series_id, instance_date)
        except DuplicateInstanceError:
            logger.warning(
                "Could not stamp task %s with %s/%s: instance already taken",
                template.id,
                series_id,
                instance_date,
            )

    def _build_instance(
        self,
        series_id: str,
        template: TaskRecord,
        policy: SeriesPolicy,
        *,
        target_key: str,
        now: datetime,
    ) -> TaskRecord:
        return TaskRecord(
            title=template.title,
            description=template.description,
            status=STATUS_TODO,
            priority=template.priority or "normal",
            due_date=end_of_day_instant(target_key, self.time_zone),
            completed_at=None,
            assigned_to_id=template.assigned_to_id,
            client_id=template.client_id,
            space_id=template.space_id,
            campaign_id=template.campaign_id,
            is_recurring=True,
            recurring_pattern=policy.pattern,
            recurring_interval=policy.interval,
            recurring_end_date=template.recurring_end_date,
            schedule_from=policy.schedule_from,
            checklist=reset_checklist(template.checklist),
            recurrence_series_id=series_id,
            recurrence_instance_date=target_key,
            created_at=now,
            updated_at=now,
        )
