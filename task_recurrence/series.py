"""Stable identity for recurrence series.

Rows created before ``recurrence_series_id`` existed carry no explicit id, so a
series is also recognisable from the fields that describe it. The derived id
only depends on those fields, never on storage-assigned ids.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from typing import TYPE_CHECKING

from task_recurrence.util import normalize_str

if TYPE_CHECKING:
    from task_recurrence.task_store import TaskRecord

SERIES_ID_PREFIX = "rec_"
_DIGEST_LENGTH = 32


def _identity_fields(task: TaskRecord) -> tuple[object, ...]:
    return (
        task.title,
        task.assigned_to_id,
        task.client_id,
        task.space_id,
        task.campaign_id,
        task.recurring_pattern,
        task.recurring_interval,
        task.schedule_from,
    )


def derive_series_id(task: TaskRecord) -> str:
    key = "|".join(normalize_str(value) for value in _identity_fields(task))
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"{SERIES_ID_PREFIX}{digest[:_DIGEST_LENGTH]}"


def series_id_for(task: TaskRecord) -> str:
    return task.recurrence_series_id or derive_series_id(task)


def group_into_series(tasks: Iterable[TaskRecord]) -> dict[str, list[TaskRecord]]:
    """Group tasks by series id, keeping first-seen order.

    A row without an explicit id joins the explicit series of any row that has
    identical identity fields; otherwise it is grouped under its derived id.
    """
    tasks = list(tasks)
    explicit_by_identity: dict[str, str] = {}
    for task in tasks:
        if task.recurrence_series_id:
            explicit_by_identity.setdefault(derive_series_id(task), task.recurrence_series_id)

    groups: dict[str, list[TaskRecord]] = {}
    for task in tasks:
        series_id = task.recurrence_series_id
        if not series_id:
            derived = derive_series_id(task)
            series_id = explicit_by_identity.get(derived, derived)
        groups.setdefault(series_id, []).append(task)
    return groups
