from __future__ import annotations

import os
from typing import Any


def env(name: str) -> str | None:
    value = os.environ.get(name)
    if not value:
        return None
    trimmed = value.strip()
    return trimmed or None


def normalize_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return default


def normalize_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip(), 10)
        except ValueError:
            return default
    return default


def normalize_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)
