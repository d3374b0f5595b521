"""Liveness probes consulted by the stream detector."""

from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from ..errors import OperationTimeoutError, PlatformProbeError, TransientNetworkError
from ..utils.endpoints import youtube_streams_url
from ..utils.http_client import HttpClient

logger = logging.getLogger(__name__)


class LivenessProbe(Protocol):
    async def is_live(self) -> bool: ...


class AlwaysLiveProbe:
    """Twitch chat and the donations provider have no liveness gate."""

    async def is_live(self) -> bool:
        return True


class TikTokLivenessProbe:
    """Reports the connection's own view of liveness.

    Resolution order: an injected status service, ``connection.is_connected()``,
    ``connection.get_state().is_connected``, a boolean ``is_connected``
    attribute, a ``connected`` attribute, and finally ``True`` so that the
    connection attempt itself gates on liveness.
    """

    def __init__(self, connection: Any = None, status_service: Optional[Callable[[], Awaitable[bool]]] = None) -> None:
        self._connection = connection
        self._service = status_service

    async def is_live(self) -> bool:
        if self._service is not None:
            return bool(await self._service())
        conn = self._connection
        if conn is None:
            return True
        method = getattr(conn, "is_connected", None)
        if callable(method):
            return bool(method())
        get_state = getattr(conn, "get_state", None)
        if callable(get_state):
            state = get_state()
            value = state.get("is_connected") if isinstance(state, Mapping) else getattr(state, "is_connected", None)
            if isinstance(value, bool):
                return value
        if isinstance(method, bool):
            return method
        connected = getattr(conn, "connected", None)
        if isinstance(connected, bool):
            return connected
        return True


LIVE_CONTENT_RE = re.compile(r'"isLiveContent"\s*:\s*true')
LIVE_BADGE_RE = re.compile(r'BADGE_STYLE_TYPE_LIVE_NOW|"style"\s*:\s*"LIVE"')
WATCHING_NOW_RE = re.compile(r"watching now|\"concurrentViewers\"", re.IGNORECASE)

YOUTUBE_LIVE_MARKERS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("live_content", LIVE_CONTENT_RE),
    ("live_badge", LIVE_BADGE_RE),
    ("watching_now", WATCHING_NOW_RE),
)
YOUTUBE_MIN_MARKERS = 2

SdkDetector = Callable[[str], Awaitable[Mapping[str, Any]]]


def count_live_markers(page: str) -> list[str]:
    return [name for name, pattern in YOUTUBE_LIVE_MARKERS if pattern.search(page)]


class YouTubeLivenessProbe:
    """Checks whether a channel handle is live.

    An injected SDK detector returning ``{"success": bool, "videoIds": [...]}``
    takes precedence; otherwise the ``/@handle/streams`` page is fetched and
    at least two independent live markers are required.
    """

    def __init__(self, handle: str, http: HttpClient, sdk_detector: Optional[SdkDetector] = None) -> None:
        if not handle:
            raise PlatformProbeError("YouTube liveness probe requires a channel handle")
        self._handle = handle
        self._http = http
        self._sdk = sdk_detector

    async def is_live(self) -> bool:
        if self._sdk is not None:
            return await self._probe_sdk()
        return await self._probe_page()

    async def _probe_sdk(self) -> bool:
        try:
            result = await self._sdk(self._handle)
        except Exception as exc:
            raise PlatformProbeError(f"YouTube live detection failed: {exc}") from exc
        if not isinstance(result, Mapping):
            raise PlatformProbeError("YouTube live detection returned an invalid result")
        video_ids = result.get("videoIds") or result.get("video_ids") or []
        return bool(result.get("success")) and len(video_ids) > 0

    async def _probe_page(self) -> bool:
        url = youtube_streams_url(self._handle)
        try:
            response = await self._http.get(url, operation="youtube streams page")
        except (TransientNetworkError, OperationTimeoutError) as exc:
            raise PlatformProbeError(str(exc)) from exc
        if response.status_code >= 400:
            raise PlatformProbeError(f"YouTube streams page returned HTTP {response.status_code}")
        markers = count_live_markers(response.text)
        logger.debug("youtube.live_markers", extra={"handle": self._handle, "markers": markers})
        return len(markers) >= YOUTUBE_MIN_MARKERS
