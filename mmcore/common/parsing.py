from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_float_tuple(value: Any, default: tuple[float, ...]) -> tuple[float, ...]:
    if value is None or str(value).strip() == "":
        return default
    try:
        parsed = tuple(float(part.strip()) for part in str(value).split(",") if part.strip())
    except ValueError:
        return default
    return tuple(max(0.0, item) for item in parsed)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
