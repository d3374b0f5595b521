"""Coerce heterogeneous platform time fields to UTC milliseconds."""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

SECONDS_CEILING = 1e12
MICROSECONDS_FLOOR = 1e15

TIKTOK_TIMESTAMP_PATHS: tuple[str, ...] = (
    "common.createTime",
    "common.clientSendTime",
    "createTime",
    "timestamp",
    "message.timestamp",
    "event.timestamp",
    "data.timestamp",
)


def now_ms() -> int:
    return int(time.time() * 1000)


def _from_number(value: float) -> Optional[int]:
    if not math.isfinite(value) or value <= 0:
        return None
    if value < SECONDS_CEILING:
        value = value * 1000
    elif value >= MICROSECONDS_FLOOR:
        value = value / 1000
    result = int(round(value))
    # Tiny second counts and nanosecond-scale values fall outside the window.
    if result < SECONDS_CEILING or result >= MICROSECONDS_FLOOR:
        return None
    return result


def _from_rfc3339(text: str) -> Optional[int]:
    candidate = text.strip()
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    # datetime.fromisoformat accepts at most microseconds.
    if "." in candidate:
        head, _, tail = candidate.partition(".")
        digits = ""
        rest = tail
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        candidate = f"{head}.{digits[:6].ljust(6, '0')}{rest}" if digits else f"{head}{rest}"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    millis = int(round(parsed.timestamp() * 1000))
    return millis if millis > 0 else None


def canonicalize_timestamp(value: Any) -> Optional[int]:
    """Return ``value`` as UTC milliseconds, or None when it is unusable.

    Numbers below 1e12 are seconds, numbers at or above 1e15 are
    microseconds, everything in between is already milliseconds. Strings are
    tried as numbers first, then as RFC 3339.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        stamp = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return _from_number(stamp.timestamp() * 1000)
    if isinstance(value, (int, float)):
        return _from_number(float(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return _from_rfc3339(text)
        return _from_number(number)
    return None


def from_microseconds(value: Any) -> Optional[int]:
    """YouTube ``timestamp_usec`` is always microseconds regardless of magnitude."""

    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return _from_number(number / 1000)


def _lookup(payload: Mapping[str, Any], dotted: str) -> Any:
    current: Any = payload
    for part in dotted.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def first_valid_timestamp(payload: Mapping[str, Any], paths: Iterable[str]) -> Optional[int]:
    for path in paths:
        parsed = canonicalize_timestamp(_lookup(payload, path))
        if parsed is not None:
            return parsed
    return None


def resolve_tiktok_timestamp(payload: Mapping[str, Any]) -> Optional[int]:
    return first_valid_timestamp(payload, TIKTOK_TIMESTAMP_PATHS)


def to_iso(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")
