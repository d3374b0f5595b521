"""Chat command lookup and cooldown bookkeeping."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Mapping, Optional

from .config import CommandCooldownConfig
from .models import VfxConfig

logger = logging.getLogger(__name__)

USER_COOLDOWN = "user"
HEAVY_COOLDOWN = "heavy"
GLOBAL_COOLDOWN = "global"


def normalize_trigger(word: str) -> str:
    word = word.strip().lower()
    return word if word.startswith("!") else f"!{word}"


def find_command(message: Optional[str], commands: Mapping[str, VfxConfig]) -> Optional[VfxConfig]:
    """Return the VFX command named by the first word of ``message``."""

    words = (message or "").split()
    if not words or not words[0].startswith("!"):
        return None
    trigger = normalize_trigger(words[0])
    for config in commands.values():
        if normalize_trigger(config.command) == trigger:
            return config
    return None


@dataclass(slots=True)
class _UserCommands:
    last_ms: float = 0.0
    timestamps: Deque[float] = field(default_factory=deque)
    heavy: bool = False


class CommandCooldowns:
    """Per-user, heavy-user and per-command cooldowns for chat commands.

    A user who fires ``heavy_threshold`` commands inside ``heavy_window_ms``
    is held back for ``heavy_cooldown_ms`` after their last command instead
    of the regular ``user_cooldown_ms``. Each command also has a global
    cooldown shared by every user.
    """

    def __init__(
        self,
        config: Optional[CommandCooldownConfig] = None,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000,
    ) -> None:
        self._config = config or CommandCooldownConfig()
        self._clock = clock
        self._users: dict[str, _UserCommands] = {}
        self._commands: dict[str, float] = {}

    @property
    def config(self) -> CommandCooldownConfig:
        return self._config

    def check_user(self, user_key: str) -> Optional[str]:
        """Return the cooldown blocking ``user_key``, or None when allowed."""

        user = self._users.get(user_key)
        if user is None:
            return None
        elapsed = self._clock() - user.last_ms
        if user.heavy:
            if elapsed < self._config.heavy_cooldown_ms:
                return HEAVY_COOLDOWN
            user.heavy = False
            logger.debug("commands.heavy_reset", extra={"user": user_key})
        if elapsed < self._config.user_cooldown_ms:
            return USER_COOLDOWN
        return None

    def check_global(self, command: str) -> Optional[str]:
        last = self._commands.get(normalize_trigger(command))
        if last is not None and self._clock() - last < self._config.global_cooldown_ms:
            return GLOBAL_COOLDOWN
        return None

    def blocked_reason(self, user_key: str, command: str) -> Optional[str]:
        return self.check_user(user_key) or self.check_global(command)

    def record(self, user_key: str, command: str) -> None:
        """Start the user and global cooldowns for one executed command."""

        now = self._clock()
        user = self._users.setdefault(user_key, _UserCommands())
        user.last_ms = now
        user.timestamps.append(now)
        while user.timestamps and now - user.timestamps[0] > self._config.heavy_window_ms:
            user.timestamps.popleft()
        if len(user.timestamps) >= self._config.heavy_threshold and not user.heavy:
            user.heavy = True
            logger.info(
                "commands.heavy_user",
                extra={"user": user_key, "count": len(user.timestamps), "window_ms": self._config.heavy_window_ms},
            )
        self._commands[normalize_trigger(command)] = now
        if len(self._users) > self._config.max_entries:
            self.cleanup()

    def reset_user(self, user_key: str) -> None:
        self._users.pop(user_key, None)

    def status(self, user_key: str) -> dict[str, Any]:
        user = self._users.get(user_key)
        if user is None:
            return {"user": user_key, "last_command_ms": None, "heavy": False, "recent_commands": 0}
        return {
            "user": user_key,
            "last_command_ms": user.last_ms,
            "heavy": user.heavy,
            "recent_commands": len(user.timestamps),
        }

    def cleanup(self) -> int:
        """Forget idle users and expired command cooldowns; returns users removed."""

        now = self._clock()
        keep_ms = max(self._config.user_cooldown_ms, self._config.heavy_cooldown_ms, self._config.heavy_window_ms)
        removed = 0
        for key in list(self._users):
            if now - self._users[key].last_ms > keep_ms:
                del self._users[key]
                removed += 1
        overflow = len(self._users) - self._config.max_entries
        if overflow > 0:
            oldest = sorted(self._users, key=lambda key: self._users[key].last_ms)
            for key in oldest[: max(overflow, self._config.max_entries // 2)]:
                del self._users[key]
                removed += 1
        for command in [name for name, at in self._commands.items() if now - at >= self._config.global_cooldown_ms]:
            del self._commands[command]
        if removed:
            logger.debug("commands.cleanup", extra={"removed": removed, "remaining": len(self._users)})
        return removed

    def statistics(self) -> dict[str, int]:
        return {
            "tracked_users": len(self._users),
            "heavy_users": sum(1 for user in self._users.values() if user.heavy),
            "commands_on_cooldown": len(self._commands),
        }
