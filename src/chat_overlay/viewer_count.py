"""Samples per-platform viewer counts and mirrors them to OBS text sources."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Mapping, Optional

from .errors import ChatOverlayError, PlatformErrorHandler
from .obs.sources import ObsSources
from .utils.timeouts import cancel_task

logger = logging.getLogger(__name__)

ViewerCountProvider = Callable[[], Awaitable[Optional[int]]]
TOTAL_KEY = "total"


def format_viewer_count(count: Optional[int]) -> str:
    """Compact display form: ``950``, ``1.2K``, ``12K``, ``3.4M``."""

    value = max(0, int(count or 0))
    for divisor, suffix in ((1_000_000_000, "B"), (1_000_000, "M"), (1_000, "K")):
        if value >= divisor:
            scaled = value / divisor
            if scaled >= 10:
                return f"{round(scaled)}{suffix}"
            return f"{scaled:.1f}".removesuffix(".0") + suffix
    return str(value)


class ViewerCountAggregator:
    """Keeps the latest count per platform and pushes them to OBS.

    ``source_names`` maps a platform (or ``"total"``) to an OBS text source.
    """

    def __init__(
        self,
        *,
        providers: Optional[Mapping[str, ViewerCountProvider]] = None,
        sources: Optional[ObsSources] = None,
        source_names: Optional[Mapping[str, str]] = None,
        poll_interval_sec: float = 60,
    ) -> None:
        self._providers = dict(providers or {})
        self._sources = sources
        self._source_names = dict(source_names or {})
        self._interval = poll_interval_sec
        self._counts: dict[str, int] = {}
        self._task: Optional[asyncio.Task[None]] = None
        self._errors = PlatformErrorHandler(logger, "viewer-count")

    def register_provider(self, platform: str, provider: ViewerCountProvider) -> None:
        self._providers[platform] = provider

    def counts(self) -> dict[str, int]:
        return dict(self._counts)

    def total(self) -> int:
        return sum(self._counts.values())

    async def update(self, platform: str, count: Optional[int]) -> None:
        if count is None or count < 0:
            return
        if self._counts.get(platform) == count:
            return
        self._counts[platform] = int(count)
        logger.debug("viewer_count.updated", extra={"platform": platform, "count": count})
        await self._push(platform)

    def reset(self, platform: str) -> None:
        self._counts.pop(platform, None)

    async def poll_once(self) -> dict[str, int]:
        for platform, provider in self._providers.items():
            try:
                count = await provider()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._errors.handle_event_processing_error(exc, "viewer-count", {"platform": platform})
                continue
            await self.update(platform, count)
        return self.counts()

    async def _push(self, platform: str) -> None:
        if self._sources is None or not self._sources.is_ready():
            return
        targets = [
            (self._source_names.get(platform), self._counts.get(platform)),
            (self._source_names.get(TOTAL_KEY), self.total()),
        ]
        for source, value in targets:
            if not source:
                continue
            try:
                await self._sources.update_text_source(source, format_viewer_count(value))
            except ChatOverlayError as exc:
                self._errors.handle_connection_error(exc, action=f"update {source}")

    def start(self) -> None:
        if not self._providers:
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="viewer-count")

    async def stop(self) -> None:
        await cancel_task(self._task)
        self._task = None

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self._interval)
