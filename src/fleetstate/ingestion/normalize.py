"""Normalization helpers.

Centralizes defensive parsing of provider payloads.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or value == "--":
        return None
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    parsed = safe_float(value)
    if parsed is None:
        return None
    return int(parsed)


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None


def normalize_timestamp_seconds(value: Any) -> float | None:
    """Normalize epoch timestamps to seconds.

    - Empty/missing -> None
    - <= 0 -> None
    - Milliseconds (> 1e11) -> seconds
    """

    if value is None or value == "":
        return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if ts <= 0:
        return None
    if ts > 1e11:
        ts /= 1000.0
    return ts


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings or epoch numbers to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            seconds = normalize_timestamp_seconds(text)
            return datetime.fromtimestamp(seconds, tz=UTC) if seconds is not None else None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    seconds = normalize_timestamp_seconds(value)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=UTC)


def newest_timestamp(values: Iterable[Any]) -> datetime | None:
    """Return the newest parseable timestamp among *values*."""
    parsed = [ts for ts in (parse_timestamp(v) for v in values) if ts is not None]
    return max(parsed) if parsed else None


_IGNITION_ON = frozenset({"on", "started", "start"})
_IGNITION_RUN = frozenset({"run", "running"})
_IGNITION_OFF = frozenset({"off", "stopped"})
_IGNITION_ACCESSORY = frozenset({"accessory", "acc"})


def normalize_ignition(value: Any) -> str:
    """Map provider ignition strings onto ``On``/``Run``/``Off``/``Accessory``/``Unknown``."""
    text = safe_str(value)
    if text is None:
        return "Unknown"
    key = text.strip().lower()
    if key in _IGNITION_RUN:
        return "Run"
    if key in _IGNITION_ON:
        return "On"
    if key in _IGNITION_OFF:
        return "Off"
    if key in _IGNITION_ACCESSORY:
        return "Accessory"
    return "Unknown"


def normalize_plug_status(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return None
    return text in {"connected", "plugged", "plugged_in", "true", "1"}
