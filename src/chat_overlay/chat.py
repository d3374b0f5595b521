"""Routes chat events to the overlay, the chat log, VFX commands and first-seen greetings."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Mapping, Optional

from .bus import EventBus, PlatformEvents
from .chat_log import ChatLogWriter
from .commands import CommandCooldowns, find_command, normalize_trigger
from .config import DisplayConfig
from .errors import PlatformErrorHandler, QueueFullError
from .models import CanonicalEvent, DisplayItem, VfxConfig
from .notifications.manager import NOTIFICATION_CONFIGS, DisplaySink
from .notifications.messages import greeting_text
from .utils.text import format_username_for_display, prepare_chat_message

logger = logging.getLogger(__name__)

COMMAND_PRIORITY = 7
GREETING_WITH_COMMAND_PRIORITY = 6


class ChatRouter:
    """Turns ``chat`` events into chat-priority display items."""

    def __init__(
        self,
        queue: Optional[DisplaySink],
        display: DisplayConfig,
        *,
        chat_log: Optional[ChatLogWriter] = None,
        bus: Optional[EventBus] = None,
        greetings_enabled: bool = True,
        greeting_vfx: Optional[VfxConfig] = None,
        max_message_length: int = 500,
        fallback_username: str = "Unknown User",
        connected_since: Optional[Callable[[str], Optional[int]]] = None,
        commands: Optional[Mapping[str, VfxConfig]] = None,
        cooldowns: Optional[CommandCooldowns] = None,
        ignore_self_messages: bool = False,
        self_names: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> None:
        self._queue = queue
        self._display = display
        self._chat_log = chat_log
        self._bus = bus
        self._greetings_enabled = greetings_enabled
        self._greeting_vfx = greeting_vfx
        self._max_length = max_message_length
        self._fallback = fallback_username
        self._connected_since = connected_since
        self._commands = dict(commands or {})
        self._cooldowns = cooldowns or CommandCooldowns()
        self._ignore_self = ignore_self_messages
        self._self_names = {
            platform: {name.lower() for name in names} for platform, names in (self_names or {}).items()
        }
        self._seen: set[str] = set()
        self._errors = PlatformErrorHandler(logger, "chat-router")

    def reset_session(self) -> None:
        self._seen.clear()

    def is_first_message(self, event: CanonicalEvent) -> bool:
        key = f"{event.platform.value}:{(event.user_id or event.username).lower()}"
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def is_self_message(self, event: CanonicalEvent) -> bool:
        """True for chat sent by the streamer or one of their configured bots."""

        if not self._ignore_self:
            return False
        if event.extra.get("is_broadcaster") or event.extra.get("is_owner"):
            return True
        names = self._self_names.get(event.platform.value, ())
        return bool(event.username) and event.username.lstrip("@").lower() in names

    async def handle_chat(self, event: CanonicalEvent) -> Optional[DisplayItem]:
        platform = event.platform.value
        message = prepare_chat_message(event.message, self._max_length)
        if not message:
            logger.debug("chat.skipped", extra={"platform": platform, "reason": "empty message"})
            return None
        if self._display.messages_enabled.get(platform) is False:
            logger.debug("chat.skipped", extra={"platform": platform, "reason": "messages disabled"})
            return None
        since = self._connected_since(platform) if self._connected_since else None
        if since is not None and event.timestamp_ms < since:
            logger.debug("chat.skipped", extra={"platform": platform, "reason": "sent before connection"})
            return None
        if self.is_self_message(event):
            logger.debug("chat.skipped", extra={"platform": platform, "reason": "self message"})
            return None

        if self._chat_log is not None:
            await self._chat_log.append(platform, event.username, message, event.timestamp_ms)

        first = self.is_first_message(event)
        item = self._enqueue(self._chat_item(event, message))
        command = find_command(message, self._commands)
        if command is not None:
            await self._run_command(event, command, greet=first and self._greetings_enabled)
        elif first and self._greetings_enabled:
            await self._greet(event)
        return item

    async def _run_command(self, event: CanonicalEvent, command: VfxConfig, *, greet: bool) -> Optional[DisplayItem]:
        platform = event.platform.value
        user_key = f"{platform}:{(event.user_id or event.username).lower()}"
        blocked = self._cooldowns.blocked_reason(user_key, command.command)
        if blocked is not None:
            logger.warning(
                "chat.command_cooldown",
                extra={"platform": platform, "user": event.username, "command": command.command, "cooldown": blocked},
            )
            return None
        self._cooldowns.record(user_key, command.command)
        if greet:
            await self._greet(event, priority=GREETING_WITH_COMMAND_PRIORITY)

        trigger = normalize_trigger(command.command)
        username = format_username_for_display(event.username, self._fallback)
        item = DisplayItem(
            type="command",
            platform=platform,
            payload={
                "username": event.username,
                "user_id": event.user_id,
                "platform": platform,
                "command": trigger,
                "command_name": trigger.lstrip("!"),
                "display_message": f"{username} used {trigger}",
            },
            priority=COMMAND_PRIORITY,
            duration_ms=command.duration_ms,
            vfx=command,
        )
        queued = self._enqueue(item)
        if queued is not None:
            logger.info("chat.command", extra={"platform": platform, "user": event.username, "command": trigger})
        return queued

    def _chat_item(self, event: CanonicalEvent, message: str) -> DisplayItem:
        username = format_username_for_display(event.username, self._fallback)
        return DisplayItem(
            type="chat",
            platform=event.platform.value,
            payload={
                "username": event.username,
                "user_id": event.user_id,
                "message": message,
                "platform": event.platform.value,
                "display_message": f"{username}: {message}",
                "skip_tts": bool(event.extra.get("skip_tts")),
            },
            priority=NOTIFICATION_CONFIGS["chat"].priority,
            duration_ms=self._display.duration_for("chat"),
        )

    async def _greet(self, event: CanonicalEvent, priority: Optional[int] = None) -> None:
        data: Mapping[str, object] = {"username": event.username, "user_id": event.user_id}
        text = greeting_text(data, self._fallback)
        item = DisplayItem(
            type="greeting",
            platform=event.platform.value,
            payload={**data, "platform": event.platform.value, "display_message": text.display, "tts_message": text.tts},
            priority=priority if priority is not None else NOTIFICATION_CONFIGS["greeting"].priority,
            duration_ms=self._display.duration_for("greeting"),
            vfx=self._greeting_vfx,
            tts_text=text.tts if self._display.tts_enabled else None,
        )
        if self._enqueue(item) is None:
            return
        logger.info("chat.greeting", extra={"platform": event.platform.value, "user": event.username})
        if self._bus is not None:
            await self._bus.emit(PlatformEvents.GREETING, {"platform": event.platform.value, "username": event.username})

    def _enqueue(self, item: DisplayItem) -> Optional[DisplayItem]:
        if self._queue is None:
            return None
        try:
            return self._queue.enqueue(item)
        except QueueFullError as exc:
            self._errors.log_operational_error(str(exc), {"type": item.type, "platform": item.platform})
            return None
