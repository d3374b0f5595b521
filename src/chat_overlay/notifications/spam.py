"""Low-value donation spam detection with windowed rollups."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Mapping, Optional

from ..config import SpamConfig
from ..errors import PlatformErrorHandler
from ..utils.timeouts import Timer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SpamDecision:
    should_show: bool
    aggregated_message: Optional[str] = None


@dataclass(slots=True)
class AggregatedDonation:
    """Summary of the donations held back for one user during a window."""

    user_id: str
    username: str
    platform: str
    total_value: float
    total_gifts: int
    gift_types: list[str]
    message: str


@dataclass(slots=True)
class _Donation:
    timestamp_ms: float
    unit_amount: float
    gift_type: str
    gift_count: int


@dataclass(slots=True)
class _UserWindow:
    user_id: str
    username: str
    platform: str
    last_reset_ms: float
    notifications: Deque[_Donation] = field(default_factory=deque)
    held: list[_Donation] = field(default_factory=list)
    aggregated_count: int = 0
    timer: Optional[Timer] = None


AggregatedCallback = Callable[[AggregatedDonation], Awaitable[None] | None]


class DonationSpamDetector:
    """Decides whether a donation-bearing event should be shown.

    Each user may show ``max_individual_notifications`` low-value donations
    per window; the rest are held and summarised once the window closes.
    Decisions fail open: any internal error means the event is shown.
    """

    def __init__(
        self,
        configs: Mapping[str, SpamConfig],
        *,
        default: Optional[SpamConfig] = None,
        on_aggregated: Optional[AggregatedCallback] = None,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000,
    ) -> None:
        self._configs = dict(configs)
        self._default = default or SpamConfig()
        self._on_aggregated = on_aggregated
        self._clock = clock
        self._users: dict[str, _UserWindow] = {}
        self._errors = PlatformErrorHandler(logger, "spam-detection")

    def set_aggregated_callback(self, callback: Optional[AggregatedCallback]) -> None:
        self._on_aggregated = callback

    def config_for(self, platform: str) -> SpamConfig:
        return self._configs.get(platform.lower(), self._default)

    def is_low_value(self, amount: Any, platform: str) -> bool:
        config = self.config_for(platform)
        if not config.enabled or amount is None:
            return False
        return float(amount) <= config.low_value_threshold

    def handle_donation_spam(
        self,
        user_id: Optional[str],
        username: str,
        amount: Any,
        gift_type: Optional[str],
        gift_count: Optional[int],
        platform: str,
    ) -> SpamDecision:
        try:
            return self._decide(user_id or username, username, amount, gift_type or "gift", gift_count or 1, platform)
        except Exception as exc:
            self._errors.handle_event_processing_error(
                exc,
                "spam-detection",
                {"user_id": user_id, "platform": platform, "gift_type": gift_type},
                f"Error processing donation spam for {username}",
            )
            return SpamDecision(should_show=True)

    def _decide(
        self, user_id: str, username: str, amount: Any, gift_type: str, gift_count: int, platform: str
    ) -> SpamDecision:
        config = self.config_for(platform)
        if not config.enabled or not self.is_low_value(amount, platform):
            return SpamDecision(should_show=True)

        now = self._clock()
        window_ms = config.detection_window_sec * 1000
        key = f"{platform}:{user_id}"
        user = self._users.get(key)
        if user is None:
            user = _UserWindow(user_id=user_id, username=username, platform=platform, last_reset_ms=now)
            self._users[key] = user

        while user.notifications and now - user.notifications[0].timestamp_ms > window_ms:
            user.notifications.popleft()
        donation = _Donation(now, float(amount), gift_type, gift_count)
        user.notifications.append(donation)

        count = len(user.notifications)
        if count <= config.max_individual_notifications:
            logger.debug("spam.individual", extra={"user": username, "count": count, "platform": platform})
            return SpamDecision(should_show=True)

        user.held.append(donation)
        user.aggregated_count += gift_count
        user.username = username
        user.platform = platform
        if user.timer is None:
            user.timer = Timer(f"spam-{key}")
        if not user.timer.pending:
            user.timer.schedule(window_ms, lambda: self._process_aggregated(key))
            logger.info("spam.aggregating", extra={"user": username, "platform": platform})
        return SpamDecision(should_show=False)

    async def _process_aggregated(self, key: str) -> Optional[AggregatedDonation]:
        user = self._users.get(key)
        if user is None or not user.held:
            return None
        total_value = sum(item.unit_amount * item.gift_count for item in user.held)
        total_gifts = sum(item.gift_count for item in user.held)
        gift_types = list(dict.fromkeys(item.gift_type for item in user.held))
        value = int(total_value) if float(total_value).is_integer() else round(total_value, 2)
        noun = "gifts" if total_gifts > 1 else "gift"
        message = f"{user.username} sent {total_gifts} {noun} worth {value} ({', '.join(gift_types)})"
        summary = AggregatedDonation(
            user_id=user.user_id,
            username=user.username,
            platform=user.platform,
            total_value=total_value,
            total_gifts=total_gifts,
            gift_types=gift_types,
            message=message,
        )
        user.notifications.clear()
        user.held.clear()
        user.aggregated_count = 0
        user.last_reset_ms = self._clock()
        logger.info("spam.aggregated", extra={"user": user.username, "gifts": total_gifts, "platform": user.platform})
        if self._on_aggregated is not None:
            result = self._on_aggregated(summary)
            if hasattr(result, "__await__"):
                await result
        return summary

    def cleanup(self, force: bool = False) -> int:
        """Drop stale user windows; returns how many users were removed."""

        now = self._clock()
        removed = 0
        for key in list(self._users):
            user = self._users[key]
            keep_ms = 0 if force else self.config_for(user.platform).detection_window_sec * 1000 * 2
            while user.notifications and now - user.notifications[0].timestamp_ms > keep_ms:
                user.notifications.popleft()
            idle = not user.notifications and not user.held and now - user.last_reset_ms > keep_ms
            if force or idle:
                if user.timer is not None:
                    user.timer.cancel()
                del self._users[key]
                removed += 1
        if removed:
            logger.debug("spam.cleanup", extra={"removed": removed, "remaining": len(self._users)})
        return removed

    def statistics(self) -> dict[str, Any]:
        return {
            "tracked_users": len(self._users),
            "total_notifications": sum(len(user.notifications) for user in self._users.values()),
        }

    def destroy(self) -> None:
        for user in self._users.values():
            if user.timer is not None:
                user.timer.cancel()
        self._users.clear()
