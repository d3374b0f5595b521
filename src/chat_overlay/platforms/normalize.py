"""Helpers that turn raw platform fields into ``CanonicalEvent`` objects."""

from __future__ import annotations

import math
from typing import Any, Optional

from pydantic import ValidationError

from ..errors import EventProcessingError
from ..models import USER_EVENT_TYPES, CanonicalEvent, EventType, PlatformId
from ..utils.text import clean_text, sanitize_username
from ..utils.timestamps import canonicalize_timestamp, now_ms


def build_event(
    platform: PlatformId,
    event_type: EventType,
    *,
    username: Any = None,
    user_id: Any = None,
    timestamp: Any = None,
    timestamp_ms: Optional[int] = None,
    message: Any = None,
    amount: Optional[float] = None,
    currency: Optional[str] = None,
    symbol: Optional[str] = None,
    gift_type: Optional[str] = None,
    gift_count: Optional[int] = None,
    is_aggregated: bool = False,
    extra: Optional[dict[str, Any]] = None,
) -> CanonicalEvent:
    """Validate and assemble an event.

    Raises ``EventProcessingError`` when a required field is missing or a
    username sanitizes to nothing for a type that needs one.
    """

    name = sanitize_username(username)
    if event_type in USER_EVENT_TYPES and not name:
        raise EventProcessingError(f"{platform.value} {event_type.value} event has no usable username")

    resolved_ts = timestamp_ms if timestamp_ms is not None else canonicalize_timestamp(timestamp)
    if resolved_ts is None:
        resolved_ts = now_ms()

    text = clean_text(message) if isinstance(message, str) else None
    try:
        return CanonicalEvent(
            platform=platform,
            type=event_type,
            username=name,
            user_id=str(user_id) if user_id not in (None, "") else None,
            timestamp_ms=resolved_ts,
            message=text or None,
            amount=amount,
            currency=currency,
            symbol=symbol,
            gift_type=gift_type,
            gift_count=gift_count,
            is_aggregated=is_aggregated,
            extra=dict(extra or {}),
        )
    except ValidationError as exc:
        raise EventProcessingError(f"Invalid {platform.value} {event_type.value} event: {exc}") from exc


def positive_int(value: Any) -> Optional[int]:
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    return number if number > 0 else None


def positive_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) and number > 0 else None
