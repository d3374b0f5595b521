"""Policy pipeline between canonical events and the display queue."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

from ..config import DisplayConfig
from ..errors import EventProcessingError, PlatformErrorHandler, QueueFullError
from ..models import DisplayItem, NotificationResult, VfxConfig
from ..utils.timeouts import cancel_task
from .messages import NotificationText, build_notification_text
from .spam import AggregatedDonation, DonationSpamDetector
from .suppression import UserSuppressionTracker

logger = logging.getLogger(__name__)

DISALLOWED_ALIASES = frozenset(
    {
        "subscription",
        "subscribe",
        "membership",
        "member",
        "superfan",
        "supporter",
        "paid_supporter",
        "resub",
        "resubscription",
    }
)
UNIT_CURRENCIES = frozenset({"coins", "bits"})


@dataclass(frozen=True, slots=True)
class NotificationConfig:
    priority: int
    setting_key: str
    command_key: str


NOTIFICATION_CONFIGS: dict[str, NotificationConfig] = {
    "chat": NotificationConfig(1, "messages", "chat"),
    "greeting": NotificationConfig(1, "greetings", "greeting"),
    "follow": NotificationConfig(2, "follows", "follow"),
    "paypiggy": NotificationConfig(3, "paypiggies", "paypiggy"),
    "gift": NotificationConfig(4, "gifts", "gift"),
    "redemption": NotificationConfig(5, "redemptions", "redemption"),
    "raid": NotificationConfig(6, "raids", "raid"),
    "envelope": NotificationConfig(8, "gifts", "envelope"),
}


class DisplaySink(Protocol):
    def enqueue(self, item: DisplayItem) -> DisplayItem: ...


class GoalSink(Protocol):
    async def process_donation_goal(self, platform: str, delta: float) -> Any: ...

    async def process_paypiggy_goal(self, platform: str, count: int = 1) -> Any: ...


def event_kind(event_name: str) -> str:
    """``platform:gift`` -> ``gift``."""

    return event_name.split(":", 1)[1] if ":" in event_name else event_name


class NotificationManager:
    """Applies spam, suppression and enable flags, then queues display items."""

    def __init__(
        self,
        display: DisplayConfig,
        queue: Optional[DisplaySink],
        *,
        spam: Optional[DonationSpamDetector] = None,
        suppression: Optional[UserSuppressionTracker] = None,
        goals: Optional[GoalSink] = None,
        vfx: Optional[Mapping[str, VfxConfig]] = None,
        notifications_enabled: bool = True,
        fallback_username: str = "Unknown User",
        cleanup_interval_sec: float = 60,
    ) -> None:
        self._display = display
        self._queue = queue
        self._spam = spam
        self._suppression = suppression
        self._goals = goals
        self._vfx = dict(vfx or {})
        self._enabled = notifications_enabled
        self._fallback = fallback_username
        self._cleanup_interval = cleanup_interval_sec
        self._errors = PlatformErrorHandler(logger, "notification-manager")
        self._goal_tasks: set[asyncio.Task[None]] = set()
        self._cleanup_task: Optional[asyncio.Task[None]] = None
        if self._spam is not None:
            self._spam.set_aggregated_callback(self.handle_aggregated_donation)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    async def handle_notification(
        self, event_name: str, platform: str, data: Mapping[str, Any]
    ) -> NotificationResult:
        kind = event_kind(event_name)
        if kind in DISALLOWED_ALIASES:
            self._errors.log_operational_error(f"Rejected legacy notification type {kind!r}", {"platform": platform})
            return NotificationResult(suppressed=True, reason="invalid_type", error=f"Unsupported type: {kind}")
        config = NOTIFICATION_CONFIGS.get(kind)
        if config is None:
            return NotificationResult(suppressed=True, reason="invalid_type", error=f"Unknown type: {kind}")

        if not self._enabled or self._display.notifications_enabled.get(platform) is False:
            logger.debug("notification.disabled", extra={"kind": kind, "platform": platform})
            return NotificationResult(suppressed=True, reason="disabled")

        username = data.get("username")
        if not isinstance(username, str) or not username.strip():
            self._errors.handle_event_processing_error(
                EventProcessingError("notification requires a username"), kind, dict(data)
            )
            return NotificationResult(suppressed=True, reason="invalid", error="Missing username")

        is_gift = kind in ("gift", "envelope")
        if is_gift and self._is_zero_fiat(data):
            logger.info("notification.zero_amount", extra={"platform": platform, "user": username})
            return NotificationResult(suppressed=True, reason="zero_amount")

        if is_gift and not data.get("is_aggregated") and self._spam is not None:
            decision = self._spam.handle_donation_spam(
                data.get("user_id"),
                username,
                data.get("amount"),
                data.get("gift_type"),
                data.get("gift_count"),
                platform,
            )
            if not decision.should_show:
                logger.info("notification.spam_suppressed", extra={"platform": platform, "user": username})
                return NotificationResult(suppressed=True, reason="spam_detection")

        if self._suppression is not None and self._suppression.enabled:
            user_key = f"{platform}:{data.get('user_id') or username}"
            if self._suppression.record(user_key):
                return NotificationResult(suppressed=True, reason="user_suppression")

        try:
            text = build_notification_text(kind, platform, data, self._fallback)
            item = self._build_item(kind, platform, config, data, text)
        except (ValueError, TypeError) as exc:
            self._errors.handle_event_processing_error(exc, kind, dict(data))
            return NotificationResult(suppressed=True, reason="invalid", error=str(exc))

        result = self._enqueue(item)
        if result is not None:
            return result
        logger.info("notification.queued", extra={"kind": kind, "platform": platform, "text": text.log})
        self._schedule_goal_update(kind, platform, data, item)
        return NotificationResult(suppressed=False, item=item)

    async def handle_paypiggy_notification(
        self, platform: str, username: str, data: Mapping[str, Any]
    ) -> NotificationResult:
        """Queue a subscription or membership; ``username`` overrides the payload's."""

        return await self.handle_notification("platform:paypiggy", platform, {**data, "username": username})

    async def handle_aggregated_donation(self, summary: AggregatedDonation) -> NotificationResult:
        """Queue the rollup of donations the spam detector held back."""

        config = NOTIFICATION_CONFIGS["gift"]
        item = DisplayItem(
            type="gift",
            platform=summary.platform,
            payload={
                "username": summary.username,
                "user_id": summary.user_id,
                "gift_count": summary.total_gifts,
                "gift_types": summary.gift_types,
                "total_value": summary.total_value,
                "is_aggregated": True,
                "display_message": summary.message,
            },
            priority=config.priority,
            duration_ms=self._display.duration_for("gift"),
            tts_text=summary.message if self._display.tts_enabled else None,
            goal_delta=summary.total_value,
        )
        result = self._enqueue(item)
        if result is not None:
            return result
        self._track(self._update_goal(summary.platform, summary.total_value))
        return NotificationResult(suppressed=False, item=item)

    def _is_zero_fiat(self, data: Mapping[str, Any]) -> bool:
        currency = str(data.get("currency") or "").lower()
        if currency in UNIT_CURRENCIES:
            return False
        try:
            return float(data.get("amount") or 0) <= 0
        except (TypeError, ValueError):
            return True

    def _build_item(
        self,
        kind: str,
        platform: str,
        config: NotificationConfig,
        data: Mapping[str, Any],
        text: NotificationText,
    ) -> DisplayItem:
        payload = dict(data)
        payload.update({"platform": platform, "display_message": text.display, "tts_message": text.tts})
        tts = text.tts if self._display.tts_enabled and not data.get("skip_tts") else None
        return DisplayItem(
            type=kind,
            platform=platform,
            payload=payload,
            priority=config.priority,
            duration_ms=self._display.duration_for(kind),
            vfx=self._vfx.get(config.command_key),
            tts_text=tts,
            goal_delta=self._goal_delta(kind, data),
        )

    @staticmethod
    def _goal_delta(kind: str, data: Mapping[str, Any]) -> Optional[float]:
        if kind not in ("gift", "envelope"):
            return None
        amount = float(data.get("amount") or 0)
        return amount * int(data.get("gift_count") or 1) if amount > 0 else None

    def _enqueue(self, item: DisplayItem) -> Optional[NotificationResult]:
        if self._queue is None:
            logger.debug("notification.no_display_queue", extra={"kind": item.type})
            return NotificationResult(suppressed=True, reason="no_display_queue")
        try:
            self._queue.enqueue(item)
        except QueueFullError as exc:
            self._errors.log_operational_error("Display queue full", {"kind": item.type, "platform": item.platform})
            return NotificationResult(suppressed=True, reason="queue_full", error=str(exc))
        return None

    def _schedule_goal_update(self, kind: str, platform: str, data: Mapping[str, Any], item: DisplayItem) -> None:
        if self._goals is None:
            return
        if item.goal_delta:
            self._track(self._update_goal(platform, item.goal_delta))
        elif kind == "paypiggy":
            self._track(self._update_paypiggy_goal(platform, int(data.get("gift_count") or 1)))

    def _track(self, coro: Any) -> None:
        task = asyncio.create_task(coro, name="goal-update")
        self._goal_tasks.add(task)
        task.add_done_callback(self._goal_tasks.discard)

    async def _update_goal(self, platform: str, delta: float) -> None:
        if self._goals is None:
            return
        try:
            await self._goals.process_donation_goal(platform, delta)
        except Exception as exc:
            self._errors.handle_event_processing_error(exc, "goal", {"platform": platform, "delta": delta})

    async def _update_paypiggy_goal(self, platform: str, count: int) -> None:
        if self._goals is None:
            return
        try:
            await self._goals.process_paypiggy_goal(platform, count)
        except Exception as exc:
            self._errors.handle_event_processing_error(exc, "goal", {"platform": platform, "count": count})

    async def wait_for_goal_updates(self) -> None:
        if self._goal_tasks:
            await asyncio.gather(*list(self._goal_tasks), return_exceptions=True)

    def start(self) -> None:
        if self._suppression is not None:
            self._suppression.start()
        if self._spam is not None and (self._cleanup_task is None or self._cleanup_task.done()):
            self._cleanup_task = asyncio.create_task(self._run_cleanup(), name="spam-cleanup")

    async def _run_cleanup(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            if self._spam is not None:
                self._spam.cleanup()

    async def stop(self) -> None:
        await cancel_task(self._cleanup_task)
        self._cleanup_task = None
        if self._suppression is not None:
            await self._suppression.stop()
        if self._spam is not None:
            self._spam.destroy()
        await self.wait_for_goal_updates()
