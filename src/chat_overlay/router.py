"""Dispatches canonical events from the bus to the subsystems that own them."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .bus import EventBus, PlatformEvents, Unsubscribe
from .chat import ChatRouter
from .errors import PlatformErrorHandler
from .models import CanonicalEvent, EventType, NotificationResult
from .notifications.manager import NotificationManager
from .stream_detector import StreamDetector
from .viewer_count import ViewerCountAggregator

logger = logging.getLogger(__name__)

NOTIFICATION_EVENTS = {
    EventType.GIFT: PlatformEvents.GIFT,
    EventType.CHEER: PlatformEvents.GIFT,
    EventType.PAYPIGGY: PlatformEvents.PAYPIGGY,
    EventType.FOLLOW: PlatformEvents.FOLLOW,
    EventType.RAID: PlatformEvents.RAID,
    EventType.REDEMPTION: PlatformEvents.REDEMPTION,
}


def notification_event_name(event: CanonicalEvent) -> Optional[str]:
    if event.type is EventType.GIFT and event.extra.get("is_envelope"):
        return PlatformEvents.ENVELOPE
    return NOTIFICATION_EVENTS.get(event.type)


class PlatformEventRouter:
    """Subscribes to ``platform:event`` and fans events out by type."""

    def __init__(
        self,
        bus: EventBus,
        *,
        chat: Optional[ChatRouter] = None,
        notifications: Optional[NotificationManager] = None,
        viewer_counts: Optional[ViewerCountAggregator] = None,
        detector: Optional[StreamDetector] = None,
    ) -> None:
        self._bus = bus
        self._chat = chat
        self._notifications = notifications
        self._viewer_counts = viewer_counts
        self._detector = detector
        self._unsubscribe: Optional[Unsubscribe] = None
        self._errors = PlatformErrorHandler(logger, "event-router")

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._bus.subscribe(PlatformEvents.PLATFORM_EVENT, self.route)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def route(self, event: CanonicalEvent) -> Optional[NotificationResult]:
        if not isinstance(event, CanonicalEvent):
            self._errors.log_operational_error("Ignoring non-canonical payload", {"payload": event})
            return None
        platform = event.platform.value
        payload = event.to_payload()

        if event.type is EventType.CHAT:
            if self._chat is not None:
                await self._chat.handle_chat(event)
            await self._bus.emit(PlatformEvents.CHAT, payload)
            return None

        if event.type is EventType.VIEWER_COUNT:
            if self._viewer_counts is not None:
                await self._viewer_counts.update(platform, event.extra.get("viewer_count"))
            await self._bus.emit(PlatformEvents.VIEWER_COUNT, payload)
            return None

        if event.type is EventType.STREAM_STATUS:
            is_live = bool(event.extra.get("is_live"))
            if self._detector is not None:
                self._detector.handle_stream_status(platform, is_live)
            if not is_live and self._viewer_counts is not None:
                self._viewer_counts.reset(platform)
            await self._bus.emit(PlatformEvents.STREAM_STATUS, payload)
            return None

        event_name = notification_event_name(event)
        if event_name is None:
            logger.debug("router.unhandled", extra={"platform": platform, "type": event.type.value})
            return None
        result = await self._notify(event_name, platform, payload)
        await self._bus.emit(event_name, payload)
        return result

    async def _notify(self, event_name: str, platform: str, payload: dict[str, Any]) -> Optional[NotificationResult]:
        if self._notifications is None:
            return None
        if event_name == PlatformEvents.PAYPIGGY:
            username = payload.get("username") or ""
            result = await self._notifications.handle_paypiggy_notification(platform, username, payload)
        else:
            result = await self._notifications.handle_notification(event_name, platform, payload)
        if result.suppressed:
            logger.info(
                "router.notification_suppressed",
                extra={"event": event_name, "platform": platform, "reason": result.reason},
            )
        return result
