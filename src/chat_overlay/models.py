"""Shared domain models for canonical events and display work."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PlatformId(str, Enum):
    """Platforms the engine aggregates."""

    TWITCH = "twitch"
    YOUTUBE = "youtube"
    TIKTOK = "tiktok"
    DONATIONS = "donations"


class EventType(str, Enum):
    """Canonical event kinds."""

    CHAT = "chat"
    GIFT = "gift"
    PAYPIGGY = "paypiggy"
    FOLLOW = "follow"
    RAID = "raid"
    CHEER = "cheer"
    REDEMPTION = "redemption"
    VIEWER_COUNT = "viewer-count"
    STREAM_STATUS = "stream-status"


USER_EVENT_TYPES = frozenset(
    {
        EventType.CHAT,
        EventType.GIFT,
        EventType.PAYPIGGY,
        EventType.FOLLOW,
        EventType.RAID,
        EventType.CHEER,
        EventType.REDEMPTION,
    }
)


class ConnectionState(str, Enum):
    """Per-platform adapter connection lifecycle."""

    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READY = "ready"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


def new_event_id() -> str:
    return uuid.uuid4().hex


class CanonicalEvent(BaseModel):
    """Normalized event shared by every adapter."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    id: str = Field(default_factory=new_event_id, description="Random 128-bit identifier")
    platform: PlatformId
    type: EventType
    username: str = Field(default="", description="Sanitized display name")
    user_id: Optional[str] = Field(default=None, description="Platform scoped user id")
    timestamp_ms: int = Field(..., gt=0, description="UTC milliseconds")
    message: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    symbol: Optional[str] = None
    gift_type: Optional[str] = None
    gift_count: Optional[int] = None
    is_aggregated: bool = False
    extra: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_invariants(self) -> "CanonicalEvent":
        if self.type in USER_EVENT_TYPES and not self.username:
            raise ValueError(f"{self.type.value} event requires a username")
        if self.type is EventType.GIFT:
            if self.gift_count is None or self.gift_count < 1:
                raise ValueError("gift event requires gift_count >= 1")
            if self.amount is None or self.amount <= 0:
                raise ValueError("gift event requires amount > 0")
        if self.amount is not None and self.amount > 0 and not self.currency:
            raise ValueError("monetary event requires a currency")
        return self

    @property
    def is_monetary(self) -> bool:
        return self.amount is not None and self.amount > 0

    def goal_delta(self) -> float:
        """Amount contributed to a donation goal: ``amount * gift_count``."""

        if not self.is_monetary:
            return 0
        return float(self.amount) * (self.gift_count or 1)

    def to_payload(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data.update(self.extra)
        return data


class VfxConfig(BaseModel):
    """Media effect to trigger alongside a notification."""

    command: str
    media_source: str
    file_path: Optional[str] = None
    duration_ms: int = Field(default=2000, gt=0)


@dataclass(slots=True)
class DisplayItem:
    """Unit of work for the display queue."""

    type: str
    platform: str
    payload: dict[str, Any]
    priority: int
    duration_ms: int
    vfx: Optional[VfxConfig] = None
    tts_text: Optional[str] = None
    goal_delta: Optional[float] = None
    insertion_seq: int = 0
    enqueued_at: float = 0.0
    id: str = field(default_factory=new_event_id)

    @property
    def is_chat(self) -> bool:
        return self.type == "chat"

    def sort_key(self, bump: int = 0) -> tuple[int, int]:
        return (-(self.priority + bump), self.insertion_seq)


@dataclass(slots=True)
class NotificationResult:
    """Outcome of ``NotificationManager.handle_notification``."""

    suppressed: bool
    reason: Optional[str] = None
    item: Optional[DisplayItem] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.suppressed and self.error is None


@dataclass(slots=True)
class DroppedItem:
    """A display item that never became visible, with the reason."""

    item: DisplayItem
    reason: str
    detail: Optional[str] = None
