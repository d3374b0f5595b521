"""Per-user notification throttling."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional
from collections import deque

from ..config import SuppressionConfig
from ..utils.timeouts import cancel_task

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _UserCounter:
    timestamps: Deque[float] = field(default_factory=deque)
    suppressed_until: float = 0.0


class UserSuppressionTracker:
    """Counts notifications per user inside a sliding window.

    A user who exceeds ``max_notifications_per_user`` within ``window_ms`` is
    suppressed for ``duration_ms``.
    """

    def __init__(
        self,
        config: SuppressionConfig,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000,
    ) -> None:
        self._config = config
        self._clock = clock
        self._users: dict[str, _UserCounter] = {}
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def is_suppressed(self, user_key: str) -> bool:
        user = self._users.get(user_key)
        return bool(user and user.suppressed_until > self._clock())

    def record(self, user_key: str) -> bool:
        """Count one notification for ``user_key``; True means it is suppressed."""

        now = self._clock()
        user = self._users.setdefault(user_key, _UserCounter())
        if user.suppressed_until > now:
            return True
        while user.timestamps and now - user.timestamps[0] > self._config.window_ms:
            user.timestamps.popleft()
        user.timestamps.append(now)
        if len(user.timestamps) > self._config.max_notifications_per_user:
            user.suppressed_until = now + self._config.duration_ms
            user.timestamps.clear()
            logger.info(
                "suppression.user_suppressed",
                extra={"user": user_key, "duration_ms": self._config.duration_ms},
            )
            return True
        return False

    def cleanup(self) -> int:
        now = self._clock()
        removed = 0
        for key in list(self._users):
            user = self._users[key]
            while user.timestamps and now - user.timestamps[0] > self._config.window_ms:
                user.timestamps.popleft()
            if not user.timestamps and user.suppressed_until <= now:
                del self._users[key]
                removed += 1
        if removed:
            logger.debug("suppression.cleanup", extra={"removed": removed})
        return removed

    def tracked_users(self) -> int:
        return len(self._users)

    def start(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._run_cleanup(), name="suppression-cleanup")

    async def stop(self) -> None:
        await cancel_task(self._cleanup_task)
        self._cleanup_task = None

    async def _run_cleanup(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval_ms / 1000)
            self.cleanup()
