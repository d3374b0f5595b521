"""In-process publish/subscribe used between adapters and handlers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional

from .errors import PlatformErrorHandler

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]
Unsubscribe = Callable[[], None]


class PlatformEvents:
    """Event names carried on the bus."""

    PLATFORM_EVENT = "platform:event"
    CHAT = "platform:chat"
    GIFT = "platform:gift"
    PAYPIGGY = "platform:paypiggy"
    FOLLOW = "platform:follow"
    RAID = "platform:raid"
    REDEMPTION = "platform:redemption"
    ENVELOPE = "platform:envelope"
    VIEWER_COUNT = "platform:viewer-count"
    STREAM_STATUS = "platform:stream-status"
    GREETING = "greeting"
    TTS_SPEECH_REQUESTED = "tts:speech-requested"
    VFX_COMMAND_RECEIVED = "vfx:command-received"
    DISPLAY_ITEM_SHOWN = "display:item-shown"
    DISPLAY_ITEM_DROPPED = "display:item-dropped"
    GOAL_UPDATED = "goal:updated"


class EventBus:
    """Delivers each emitted payload to every subscriber, in registration order.

    Handlers are awaited one after another. A failing handler is logged and the
    remaining handlers still run.
    """

    def __init__(self, error_handler: Optional[PlatformErrorHandler] = None) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._errors = error_handler or PlatformErrorHandler(logger, "event-bus")

    def subscribe(self, event: str, handler: Handler) -> Unsubscribe:
        if not callable(handler):
            raise TypeError("handler must be callable")
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def emit(self, event: str, payload: Any = None) -> int:
        """Deliver ``payload``; return how many handlers completed without error."""

        delivered = 0
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(payload)
                if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._errors.handle_event_processing_error(
                    exc, event, payload, f"Subscriber {getattr(handler, '__qualname__', handler)!s} failed"
                )
                continue
            delivered += 1
        return delivered

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def clear(self) -> None:
        self._handlers.clear()
