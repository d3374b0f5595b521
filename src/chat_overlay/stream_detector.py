"""Liveness probing, reconnect scheduling and continuous stream monitoring."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

from .config import StreamDetectionConfig
from .errors import PlatformErrorHandler
from .platforms.probes import AlwaysLiveProbe, LivenessProbe
from .utils.retry import RetrySystem, stream_detection_policy
from .utils.timeouts import Timer, cancel_task
from .utils.timestamps import now_ms

logger = logging.getLogger(__name__)

ConnectCallback = Callable[[], Awaitable[Any]]
StatusCallback = Callable[[str, str], Any]

BYPASS_PLATFORMS = frozenset({"twitch"})
MONITORED_PLATFORMS = frozenset({"tiktok", "youtube"})


class DetectionState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    CONNECTING = "connecting"
    WAITING = "waiting"
    ERROR = "error"
    MONITORING = "monitoring"
    OFFLINE = "offline"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(slots=True)
class _PlatformDetection:
    connect: ConnectCallback
    status: Optional[StatusCallback]
    probe: LivenessProbe
    state: DetectionState = DetectionState.IDLE
    attempts: int = 0
    is_live: bool = False
    last_checked_ms: Optional[int] = None
    retry_timer: Optional[Timer] = None
    monitor_task: Optional[asyncio.Task[None]] = field(default=None, repr=False)


class StreamDetector:
    """Waits for each platform's stream to go live before connecting.

    Probe errors back off exponentially; a plain "not live" answer waits the
    configured retry interval. Once connected, TikTok and YouTube are polled
    for live/offline transitions.
    """

    def __init__(
        self,
        config: StreamDetectionConfig | Mapping[str, Any],
        probes: Optional[Mapping[str, LivenessProbe]] = None,
    ) -> None:
        self._config = StreamDetectionConfig.parse(config)
        self._retry = RetrySystem(stream_detection_policy(self._config.retry_interval_sec))
        self._probes: dict[str, LivenessProbe] = dict(probes or {})
        self._platforms: dict[str, _PlatformDetection] = {}
        self._errors = PlatformErrorHandler(logger, "stream-detector")

    @property
    def config(self) -> StreamDetectionConfig:
        return self._config

    def is_enabled(self) -> bool:
        return self._config.enabled

    def register_probe(self, platform: str, probe: LivenessProbe) -> None:
        self._probes[platform] = probe

    def state(self, platform: str) -> DetectionState:
        entry = self._platforms.get(platform)
        return entry.state if entry else DetectionState.IDLE

    def status(self, platform: str) -> dict[str, Any]:
        entry = self._platforms.get(platform)
        if entry is None:
            return {"is_live": False, "attempts": 0, "monitoring": False, "last_checked_ms": None, "state": "idle"}
        return {
            "is_live": entry.is_live,
            "attempts": entry.attempts,
            "monitoring": bool(entry.monitor_task and not entry.monitor_task.done()),
            "last_checked_ms": entry.last_checked_ms,
            "state": entry.state.value,
        }

    async def start_stream_detection(
        self,
        platform: str,
        platform_config: Optional[Mapping[str, Any]],
        connect_callback: ConnectCallback,
        status_callback: Optional[StatusCallback] = None,
    ) -> Any:
        """Connect ``platform`` once it is live.

        Returns the connect callback's result when the first probe finds the
        stream live, or when the platform skips detection. Otherwise further
        attempts run in the background and None is returned.
        """

        platform_config = platform_config or {}
        await self.stop_stream_detection(platform)

        skip = (
            platform in BYPASS_PLATFORMS
            or not self._config.enabled
            or platform_config.get("stream_detection_enabled") is False
        )
        if skip:
            logger.info("detector.bypass", extra={"platform": platform})
            return await connect_callback()

        entry = _PlatformDetection(
            connect=connect_callback,
            status=status_callback,
            probe=self._probes.get(platform) or AlwaysLiveProbe(),
            retry_timer=Timer(f"stream-detect-{platform}"),
        )
        self._platforms[platform] = entry
        return await self._attempt(platform)

    async def _attempt(self, platform: str) -> Any:
        entry = self._platforms.get(platform)
        if entry is None or entry.state is DetectionState.STOPPED:
            return None
        entry.attempts += 1
        attempt = entry.attempts
        entry.state = DetectionState.PROBING

        try:
            live = await entry.probe.is_live()
            entry.last_checked_ms = now_ms()
            if live:
                entry.state = DetectionState.CONNECTING
                result = await entry.connect()
                entry.is_live = True
                entry.attempts = 0
                self._retry.handle_connection_success(platform)
                self._notify(entry, "live", f"Stream is live, connecting to {platform}")
                self._start_monitoring(platform, entry)
                return result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            entry.state = DetectionState.ERROR
            self._errors.handle_event_processing_error(exc, "stream-detection", {"platform": platform})
            self._notify(entry, "error", f"Error detecting {platform} stream: {exc}")
            delay_ms = self._retry.increment(platform)
            self._schedule(platform, entry, delay_ms)
            return None

        entry.state = DetectionState.WAITING
        logger.debug("detector.waiting", extra={"platform": platform, "attempt": attempt})
        self._notify(entry, "waiting", f"Waiting for {platform} stream to go live (attempt {attempt})")
        max_retries = self._config.max_retries
        if max_retries > 0 and attempt >= max_retries:
            entry.state = DetectionState.FAILED
            logger.warning("detector.max_retries", extra={"platform": platform, "attempts": attempt})
            self._notify(entry, "failed", f"Max retry attempts reached for {platform}")
            return None
        self._schedule(platform, entry, self._config.retry_interval_sec * 1000)
        return None

    def _schedule(self, platform: str, entry: _PlatformDetection, delay_ms: float) -> None:
        if entry.retry_timer is None or entry.state is DetectionState.STOPPED:
            return
        if entry.retry_timer.schedule(delay_ms, lambda: self._attempt(platform)):
            logger.debug("detector.retry_scheduled", extra={"platform": platform, "delay_ms": delay_ms})

    def _start_monitoring(self, platform: str, entry: _PlatformDetection) -> None:
        if platform not in MONITORED_PLATFORMS:
            return
        if entry.monitor_task and not entry.monitor_task.done():
            return
        entry.state = DetectionState.MONITORING
        entry.monitor_task = asyncio.create_task(self._monitor(platform, entry), name=f"stream-monitor-{platform}")
        logger.info(
            "detector.monitoring_started",
            extra={"platform": platform, "interval_sec": self._config.monitoring_interval_sec},
        )

    async def _monitor(self, platform: str, entry: _PlatformDetection) -> None:
        while True:
            await asyncio.sleep(self._config.monitoring_interval_sec)
            await self.check_once(platform)

    async def check_once(self, platform: str) -> None:
        """Run one monitoring tick; errors are logged and do not stop monitoring."""

        entry = self._platforms.get(platform)
        if entry is None or entry.state is DetectionState.STOPPED:
            return
        try:
            live = await entry.probe.is_live()
            entry.last_checked_ms = now_ms()
            if live and not entry.is_live:
                logger.info("detector.stream_started", extra={"platform": platform})
                await entry.connect()
                entry.is_live = True
                entry.state = DetectionState.MONITORING
                self._notify(entry, "live", f"Stream started for {platform}")
            elif not live and entry.is_live:
                logger.info("detector.stream_ended", extra={"platform": platform})
                entry.is_live = False
                entry.state = DetectionState.OFFLINE
                self._notify(entry, "offline", f"Stream ended for {platform}")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._errors.handle_event_processing_error(exc, "stream-monitoring", {"platform": platform})

    def handle_stream_status(self, platform: str, is_live: bool) -> None:
        """Apply a live/offline signal reported by the platform itself."""

        entry = self._platforms.get(platform)
        if entry is None or entry.is_live == is_live:
            return
        entry.is_live = is_live
        if not is_live:
            entry.state = DetectionState.OFFLINE
            self._notify(entry, "offline", f"Stream ended for {platform}")

    def _notify(self, entry: _PlatformDetection, status: str, message: str) -> None:
        if entry.status is None:
            return
        try:
            entry.status(status, message)
        except Exception as exc:
            self._errors.handle_event_processing_error(exc, "status-callback", {"status": status})

    async def stop_stream_detection(self, platform: str) -> None:
        entry = self._platforms.pop(platform, None)
        if entry is None:
            return
        entry.state = DetectionState.STOPPED
        if entry.retry_timer is not None:
            entry.retry_timer.cancel()
        await cancel_task(entry.monitor_task)
        self._retry.reset(platform)
        logger.debug("detector.stopped", extra={"platform": platform})

    async def cleanup(self) -> None:
        for platform in list(self._platforms):
            await self.stop_stream_detection(platform)
        self._retry.cancel_all()
