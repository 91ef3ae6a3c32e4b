from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SERIES_KEY_INDEX = "uq_tasks_recurrence_series_instance"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    normalized = value.astimezone(timezone.utc)
    return normalized.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        if value.endswith("Z"):
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        else:
            parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class TaskRecord:
    title: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    description: str | None = None
    status: str = "todo"
    priority: str = "normal"
    due_date: datetime | None = None
    completed_at: datetime | None = None
    assigned_to_id: int | None = None
    client_id: str | None = None
    space_id: str | None = None
    campaign_id: str | None = None
    is_recurring: bool = False
    recurring_pattern: str | None = None
    recurring_interval: int | None = 1
    recurring_end_date: datetime | None = None
    schedule_from: str | None = "due_date"
    checklist: list[dict[str, Any]] = field(default_factory=list)
    recurrence_series_id: str | None = None
    recurrence_instance_date: str | None = None
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: datetime = field(default_factory=_now_utc)


class DuplicateInstanceError(RuntimeError):
    def __init__(self, *, series_id: str, instance_date: str) -> None:
        super().__init__(f"Instance {instance_date} already exists for series {series_id}")
        self.series_id = series_id
        self.instance_date = instance_date


def _is_series_key_violation(exc: sqlite3.IntegrityError) -> bool:
    message = str(exc)
    return "UNIQUE constraint failed" in message and "recurrence_series_id" in message


class TaskRepository(ABC):
    """Storage the backfill engine reads from and appends to."""

    @abstractmethod
    async def list_recurring_tasks(self) -> list[TaskRecord]:
        """All tasks flagged as recurring."""

    @abstractmethod
    async def find_by_series_key(self, series_id: str, instance_date: str) -> TaskRecord | None:
        """The instance of ``series_id`` for ``instance_date``, if any."""

    @abstractmethod
    async def insert_task(self, record: TaskRecord) -> TaskRecord:
        """Insert ``record``.

        Raises DuplicateInstanceError when the (series, instance date) pair is taken.
        """

    @abstractmethod
    async def update_task_series_fields(self, task_id: str, series_id: str, instance_date: str) -> None:
        """Stamp series id and instance date onto an existing task."""


class TaskStore(TaskRepository):
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    campaign_id TEXT,
                    client_id TEXT,
                    assigned_to_id INTEGER,
                    space_id TEXT,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'todo',
                    priority TEXT NOT NULL DEFAULT 'normal',
                    due_date TEXT,
                    completed_at TEXT,
                    checklist_json TEXT,
                    is_recurring INTEGER NOT NULL DEFAULT 0,
                    recurring_pattern TEXT,
                    recurring_interval INTEGER,
                    recurring_end_date TEXT,
                    schedule_from TEXT,
                    recurrence_series_id TEXT,
                    recurrence_instance_date TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_tasks_is_recurring ON tasks(is_recurring);
                CREATE UNIQUE INDEX IF NOT EXISTS {_SERIES_KEY_INDEX}
                    ON tasks(recurrence_series_id, recurrence_instance_date);
                """
            )

    async def list_recurring_tasks(self) -> list[TaskRecord]:
        async with self._lock:
            return await asyncio.to_thread(self._list_recurring_tasks_sync)

    def _list_recurring_tasks_sync(self) -> list[TaskRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE is_recurring = 1 ORDER BY created_at ASC, id ASC"
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_series_tasks(self, series_id: str) -> list[TaskRecord]:
        async with self._lock:
            return await asyncio.to_thread(self._list_series_tasks_sync, series_id)

    def _list_series_tasks_sync(self, series_id: str) -> list[TaskRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tasks
                WHERE recurrence_series_id = ?
                ORDER BY recurrence_instance_date ASC
                """,
                (series_id,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    async def get_task(self, task_id: str) -> TaskRecord | None:
        async with self._lock:
            return await asyncio.to_thread(self._get_task_sync, task_id)

    def _get_task_sync(self, task_id: str) -> TaskRecord | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def find_by_series_key(self, series_id: str, instance_date: str) -> TaskRecord | None:
        async with self._lock:
            return await asyncio.to_thread(self._find_by_series_key_sync, series_id, instance_date)

    def _find_by_series_key_sync(self, series_id: str, instance_date: str) -> TaskRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM tasks
                WHERE recurrence_series_id = ? AND recurrence_instance_date = ?
                LIMIT 1
                """,
                (series_id, instance_date),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def insert_task(self, record: TaskRecord) -> TaskRecord:
        async with self._lock:
            return await asyncio.to_thread(self._insert_task_sync, record)

    def _insert_task_sync(self, record: TaskRecord) -> TaskRecord:
        payload = self._task_to_row(record)
        columns = ", ".join(payload.keys())
        placeholders = ", ".join(["?"] * len(payload))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO tasks ({columns}) VALUES ({placeholders})",
                    list(payload.values()),
                )
        except sqlite3.IntegrityError as exc:
            if _is_series_key_violation(exc):
                raise DuplicateInstanceError(
                    series_id=record.recurrence_series_id or "",
                    instance_date=record.recurrence_instance_date or "",
                ) from exc
            raise
        return record

    async def update_task_series_fields(self, task_id: str, series_id: str, instance_date: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._update_task_series_fields_sync, task_id, series_id, instance_date)

    def _update_task_series_fields_sync(self, task_id: str, series_id: str, instance_date: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE tasks
                    SET recurrence_series_id = ?,
                        recurrence_instance_date = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (series_id, instance_date, _iso_utc(_now_utc()), task_id),
                )
        except sqlite3.IntegrityError as exc:
            if _is_series_key_violation(exc):
                raise DuplicateInstanceError(series_id=series_id, instance_date=instance_date) from exc
            raise

    def _row_to_task(self, row: sqlite3.Row) -> TaskRecord:
        checklist: list[dict[str, Any]] = []
        if row["checklist_json"]:
            try:
                decoded = json.loads(row["checklist_json"])
            except json.JSONDecodeError:
                logger.warning("Ignoring malformed checklist on task %s", row["id"])
                decoded = []
            if isinstance(decoded, list):
                checklist = [item for item in decoded if isinstance(item, dict)]
        return TaskRecord(
            id=row["id"],
            campaign_id=row["campaign_id"],
            client_id=row["client_id"],
            assigned_to_id=row["assigned_to_id"],
            space_id=row["space_id"],
            title=row["title"],
            description=row["description"],
            status=row["status"],
            priority=row["priority"],
            due_date=_parse_iso(row["due_date"]),
            completed_at=_parse_iso(row["completed_at"]),
            checklist=checklist,
            is_recurring=bool(row["is_recurring"]),
            recurring_pattern=row["recurring_pattern"],
            recurring_interval=row["recurring_interval"],
            recurring_end_date=_parse_iso(row["recurring_end_date"]),
            schedule_from=row["schedule_from"],
            recurrence_series_id=row["recurrence_series_id"],
            recurrence_instance_date=row["recurrence_instance_date"],
            created_at=_parse_iso(row["created_at"]) or _now_utc(),
            updated_at=_parse_iso(row["updated_at"]) or _now_utc(),
        )

    def _task_to_row(self, record: TaskRecord) -> dict[str, Any]:
        return {
            "id": record.id,
            "campaign_id": record.campaign_id,
            "client_id": record.client_id,
            "assigned_to_id": record.assigned_to_id,
            "space_id": record.space_id,
            "title": record.title,
            "description": record.description,
            "status": record.status,
            "priority": record.priority,
            "due_date": _iso_utc(record.due_date),
            "completed_at": _iso_utc(record.completed_at),
            "checklist_json": json.dumps(record.checklist, separators=(",", ":")),
            "is_recurring": 1 if record.is_recurring else 0,
            "recurring_pattern": record.recurring_pattern,
            "recurring_interval": record.recurring_interval,
            "recurring_end_date": _iso_utc(record.recurring_end_date),
            "schedule_from": record.schedule_from,
            "recurrence_series_id": record.recurrence_series_id,
            "recurrence_instance_date": record.recurrence_instance_date,
            "created_at": _iso_utc(record.created_at),
            "updated_at": _iso_utc(record.updated_at),
        }
