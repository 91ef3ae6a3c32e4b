from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from task_recurrence.dates import DEFAULT_RECURRENCE_TZ, RecurrenceConfigError, get_zone
from task_recurrence.util import env, normalize_bool, normalize_int

DEFAULT_MAX_ADVANCE_STEPS = 400


@dataclass(frozen=True)
class BackfillSettings:
    time_zone: str = DEFAULT_RECURRENCE_TZ
    max_advance_steps: int = DEFAULT_MAX_ADVANCE_STEPS
    # When off, recurring_end_date is only carried onto new instances.
    enforce_end_date: bool = False
    cron_enabled: bool = True
    db_path: Path = Path("data") / "tasks.db"

    def __post_init__(self) -> None:
        get_zone(self.time_zone)
        if self.max_advance_steps < 0:
            raise RecurrenceConfigError("max_advance_steps must be >= 0")

    @classmethod
    def from_env(cls) -> BackfillSettings:
        return cls(
            time_zone=env("RECURRENCE_TIME_ZONE") or DEFAULT_RECURRENCE_TZ,
            max_advance_steps=normalize_int(env("RECURRENCE_MAX_ADVANCE_STEPS"), DEFAULT_MAX_ADVANCE_STEPS),
            enforce_end_date=normalize_bool(env("RECURRENCE_ENFORCE_END_DATE"), False),
            cron_enabled=normalize_bool(env("RECURRENCE_CRON_ENABLED"), True),
            db_path=Path(env("TASKS_DB_PATH") or Path("data") / "tasks.db"),
        )
