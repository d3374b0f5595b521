"""Serialized, priority-ordered renderer for the chat and notification overlays."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from collections import deque
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Optional

from ..bus import EventBus, PlatformEvents
from ..config import DisplayConfig, OverlaySlotConfig
from ..errors import OverlayContentError, PlatformErrorHandler, QueueFullError
from ..models import DisplayItem, DroppedItem
from ..utils.text import find_overlay_artifact, format_username_for_display
from ..utils.timeouts import cancel_task
from .sources import ObsSources

logger = logging.getLogger(__name__)

CHAT_SLOT = "chat"
NOTIFICATION_SLOT = "notification"
DROP_LOG_SIZE = 100
OBS_RETRY_MS = 1000
GIFT_MEDIA_TYPES = frozenset({"gift", "envelope"})

TtsSink = Callable[[str, DisplayItem], Awaitable[None]]


def render_content(item: DisplayItem) -> Any:
    """Text the overlay source will show for ``item``."""

    payload = item.payload
    if "display_message" in payload:
        return payload["display_message"]
    if item.is_chat:
        return f"{format_username_for_display(payload.get('username'))}: {payload.get('message') or ''}"
    return None


def validate_content(content: Any) -> str:
    reason = find_overlay_artifact(content)
    if reason is not None:
        raise OverlayContentError(reason, content)
    return content


class DisplayQueue:
    """Shows one item at a time per overlay slot.

    Items come out by descending priority, then arrival order. An item that
    waited longer than ``max_wait_ms`` gets a bounded priority bump. Every
    enqueued item is either shown once or reported in the drop log.
    """

    def __init__(
        self,
        config: DisplayConfig,
        sources: Optional[ObsSources] = None,
        *,
        bus: Optional[EventBus] = None,
        tts_sink: Optional[TtsSink] = None,
        clock: Callable[[], float] = time.monotonic,
        obs_retry_ms: float = OBS_RETRY_MS,
    ) -> None:
        self._config = config
        self._sources = sources
        self._bus = bus
        self._tts_sink = tts_sink
        self._clock = clock
        self._obs_retry_ms = obs_retry_ms
        self._items: list[DisplayItem] = []
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._skip = asyncio.Event()
        self._slot_locks = {CHAT_SLOT: asyncio.Lock(), NOTIFICATION_SLOT: asyncio.Lock()}
        self._visible: dict[str, Optional[DisplayItem]] = {CHAT_SLOT: None, NOTIFICATION_SLOT: None}
        self._current: Optional[DisplayItem] = None
        self._lingering: Optional[DisplayItem] = None
        self._dropped: Deque[DroppedItem] = deque(maxlen=DROP_LOG_SIZE)
        self._shown_count = 0
        self._worker: Optional[asyncio.Task[None]] = None
        self._emits: set[asyncio.Task[Any]] = set()
        self._errors = PlatformErrorHandler(logger, "display-queue")

    @property
    def current(self) -> Optional[DisplayItem]:
        return self._current

    @property
    def shown_count(self) -> int:
        return self._shown_count

    def visible(self, slot: str) -> Optional[DisplayItem]:
        return self._visible.get(slot)

    def dropped(self) -> list[DroppedItem]:
        return list(self._dropped)

    def size(self) -> int:
        return len(self._items)

    def preview(self, limit: int = 5) -> list[DisplayItem]:
        now = self._clock()
        return sorted(self._items, key=lambda item: item.sort_key(self._bump(item, now)))[:limit]

    def enqueue(self, item: DisplayItem) -> DisplayItem:
        if item.is_chat:
            for stale in [queued for queued in self._items if queued.is_chat]:
                self._items.remove(stale)
                self._record_drop(stale, "superseded", "newer chat message queued")
        if len(self._items) >= self._config.max_queue_size:
            raise QueueFullError(f"Display queue at capacity ({self._config.max_queue_size})")
        item.insertion_seq = next(self._seq)
        item.enqueued_at = self._clock()
        self._items.append(item)
        logger.debug(
            "display.enqueued",
            extra={"type": item.type, "priority": item.priority, "queue_size": len(self._items)},
        )
        self._wakeup.set()
        return item

    def clear(self) -> int:
        cleared = list(self._items)
        self._items.clear()
        for item in cleared:
            self._record_drop(item, "cleared")
        logger.info("display.cleared", extra={"count": len(cleared)})
        return len(cleared)

    def skip_current(self) -> bool:
        if self._current is None:
            return False
        self._skip.set()
        return True

    def _bump(self, item: DisplayItem, now: float) -> int:
        waited_ms = (now - item.enqueued_at) * 1000
        if waited_ms <= self._config.max_wait_ms:
            return 0
        steps = int(waited_ms // self._config.max_wait_ms)
        return min(self._config.max_aging_bump, steps * self._config.aging_bump)

    def _pop_next(self) -> Optional[DisplayItem]:
        if not self._items:
            return None
        now = self._clock()
        item = min(self._items, key=lambda queued: queued.sort_key(self._bump(queued, now)))
        self._items.remove(item)
        return item

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="display-queue")

    async def stop(self) -> None:
        await cancel_task(self._worker)
        self._worker = None
        for item in self._items:
            self._record_drop(item, "shutdown")
        self._items.clear()

    async def _run(self) -> None:
        while True:
            if not self._items:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            if self._sources is not None and not self._sources.is_ready():
                logger.debug("display.obs_not_ready", extra={"queue_size": len(self._items)})
                await asyncio.sleep(self._obs_retry_ms / 1000)
                continue
            item = self._pop_next()
            if item is not None:
                await self.process_item(item)

    async def process_item(self, item: DisplayItem) -> bool:
        """Render one item; returns False when it was dropped."""

        slot = CHAT_SLOT if item.is_chat else NOTIFICATION_SLOT
        if not self._platform_enabled(item):
            self._record_drop(item, "disabled", f"{slot} disabled for {item.platform}")
            return False
        try:
            content = validate_content(render_content(item))
        except OverlayContentError as exc:
            self._errors.log_operational_error(
                "Refused overlay content", {"type": item.type, "reason": exc.reason, "content": exc.content}
            )
            self._record_drop(item, type(exc).__name__, exc.reason)
            return False

        self._current = item
        self._skip.clear()
        try:
            async with self._slot(slot, item):
                await self._show(slot, item, content)
                self._shown_count += 1
                await self._emit(PlatformEvents.DISPLAY_ITEM_SHOWN, {"id": item.id, "type": item.type, "slot": slot})
                await self._effects(item)
                await self._wait(self._display_time(item))
        except Exception as exc:
            self._errors.handle_event_processing_error(exc, item.type, {"platform": item.platform})
            self._record_drop(item, "obs_error", str(exc))
            return False
        finally:
            self._current = None
        await asyncio.sleep(self._config.transition_delay_ms / 1000)
        return True

    @contextlib.asynccontextmanager
    async def _slot(self, slot: str, item: DisplayItem) -> AsyncIterator[None]:
        """Hold ``slot`` while ``item`` is visible and hide it on every exit path."""

        async with self._slot_locks[slot]:
            try:
                yield
            except BaseException:
                await self._hide(slot)
                raise
            if slot == CHAT_SLOT and self._config.linger_chat and not self._items:
                self._lingering = item
                logger.debug("display.lingering_chat", extra={"id": item.id})
            else:
                await self._hide(slot)

    def _platform_enabled(self, item: DisplayItem) -> bool:
        flags = self._config.messages_enabled if item.is_chat else self._config.notifications_enabled
        return flags.get(item.platform, True) is not False

    def _slot_config(self, slot: str) -> OverlaySlotConfig:
        return self._config.chat if slot == CHAT_SLOT else self._config.notification

    async def _show(self, slot: str, item: DisplayItem, content: str) -> None:
        other = NOTIFICATION_SLOT if slot == CHAT_SLOT else CHAT_SLOT
        if self._visible[other] is not None:
            await self._hide(other)
            await asyncio.sleep(self._config.notification_clear_delay_ms / 1000)
        if self._visible[slot] is not None:
            await self._hide(slot)
            await asyncio.sleep(self._config.transition_delay_ms / 1000)

        if self._sources is not None:
            slot_config = self._slot_config(slot)
            await self._sources.update_text_source(slot_config.source_name, content)
            await self._sources.set_platform_logos(slot_config.group_name, slot_config.platform_logos, item.platform)
            if slot_config.group_name:
                await self._sources.set_group_source_visibility(slot_config.group_name, slot_config.source_name, True)
                await self._sources.set_source_visibility(slot_config.scene_name, slot_config.group_name, True)
            else:
                await self._sources.set_source_visibility(slot_config.scene_name, slot_config.source_name, True)
        self._visible[slot] = item
        if slot == CHAT_SLOT:
            self._lingering = None
        logger.info("display.shown", extra={"type": item.type, "platform": item.platform, "slot": slot})

    async def _hide(self, slot: str) -> None:
        if self._visible[slot] is None:
            return
        self._visible[slot] = None
        if slot == CHAT_SLOT:
            self._lingering = None
        if self._sources is None:
            return
        slot_config = self._slot_config(slot)
        try:
            if slot_config.group_name:
                await self._sources.set_source_visibility(slot_config.scene_name, slot_config.group_name, False)
                await self._sources.set_platform_logos(slot_config.group_name, slot_config.platform_logos, None)
            else:
                await self._sources.set_source_visibility(slot_config.scene_name, slot_config.source_name, False)
        except Exception as exc:
            self._errors.handle_connection_error(exc, action=f"hide {slot}")

    async def _effects(self, item: DisplayItem) -> None:
        if item.vfx is not None:
            if self._sources is not None:
                if item.vfx.file_path:
                    await self._sources.set_media_file(item.vfx.media_source, item.vfx.file_path)
                await self._sources.trigger_media(item.vfx.media_source)
            await self._emit(
                PlatformEvents.VFX_COMMAND_RECEIVED,
                {"command": item.vfx.command, "platform": item.platform, "id": item.id},
            )
        elif item.type in GIFT_MEDIA_TYPES and self._sources is not None:
            for media in (self._config.gift_video_source, self._config.gift_audio_source):
                if media:
                    await self._sources.trigger_media(media)

        if item.tts_text and self._config.tts_enabled:
            logger.debug("display.tts", extra={"type": item.type, "platform": item.platform, "chars": len(item.tts_text)})
            if self._sources is not None and self._config.tts_source:
                await self._sources.update_text_source(self._config.tts_source, item.tts_text)
            await self._emit(
                PlatformEvents.TTS_SPEECH_REQUESTED,
                {"text": item.tts_text, "platform": item.platform, "id": item.id},
            )
            if self._tts_sink is not None:
                try:
                    await self._tts_sink(item.tts_text, item)
                except Exception as exc:
                    self._errors.handle_event_processing_error(exc, "tts", {"id": item.id}, "TTS sink failed")

    def _display_time(self, item: DisplayItem) -> int:
        if item.vfx is not None:
            return max(item.duration_ms, item.vfx.duration_ms)
        return item.duration_ms

    async def _wait(self, duration_ms: int) -> None:
        try:
            await asyncio.wait_for(self._skip.wait(), timeout=duration_ms / 1000)
            logger.info("display.skipped")
        except asyncio.TimeoutError:
            pass

    def _record_drop(self, item: DisplayItem, reason: str, detail: Optional[str] = None) -> None:
        dropped = DroppedItem(item=item, reason=reason, detail=detail)
        self._dropped.append(dropped)
        logger.warning("display.dropped", extra={"type": item.type, "reason": reason, "detail": detail})
        if self._bus is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(
            self._bus.emit(PlatformEvents.DISPLAY_ITEM_DROPPED, {"id": item.id, "reason": reason, "detail": detail})
        )
        self._emits.add(task)
        task.add_done_callback(self._emits.discard)

    async def _emit(self, event: str, payload: dict[str, Any]) -> None:
        if self._bus is not None:
            await self._bus.emit(event, payload)
