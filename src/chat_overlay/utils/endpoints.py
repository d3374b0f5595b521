"""Platform endpoint URLs and the builders that join them."""

from __future__ import annotations

from typing import Any, Mapping, Optional
from urllib.parse import quote, urlencode

TWITCH_API_BASE = "https://api.twitch.tv/helix"
TWITCH_OAUTH_BASE = "https://id.twitch.tv/oauth2"
TWITCH_OAUTH_TOKEN = f"{TWITCH_OAUTH_BASE}/token"
TWITCH_OAUTH_VALIDATE = f"{TWITCH_OAUTH_BASE}/validate"
TWITCH_OAUTH_REVOKE = f"{TWITCH_OAUTH_BASE}/revoke"
TWITCH_EVENTSUB_WS = "wss://eventsub.wss.twitch.tv/ws"

YOUTUBE_BASE = "https://www.youtube.com"
YOUTUBE_API_BASE = "https://youtube.googleapis.com/youtube/v3"

STREAMELEMENTS_WS = "wss://astro.streamelements.com"
STREAMELEMENTS_API_BASE = "https://api.streamelements.com/kappa/v2"


def join_url(base: str, path: Optional[str] = None) -> str:
    """Join with exactly one ``/``; an empty path returns the base unchanged."""

    base = base.rstrip("/")
    if not path:
        return base
    path = path.strip()
    stripped = path.lstrip("/")
    if not stripped:
        return base
    return f"{base}/{stripped}"


def with_query(url: str, params: Optional[Mapping[str, Any]] = None) -> str:
    if not params:
        return url
    filtered = {key: value for key, value in params.items() if value is not None}
    if not filtered:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(filtered, doseq=True)}"


def twitch_api_url(path: Optional[str] = None, params: Optional[Mapping[str, Any]] = None) -> str:
    return with_query(join_url(TWITCH_API_BASE, path), params)


def twitch_oauth_url(action: str) -> str:
    if action not in {"token", "validate", "revoke"}:
        raise ValueError(f"Unknown Twitch OAuth action: {action}")
    return join_url(TWITCH_OAUTH_BASE, action)


def _normalize_handle(user: str) -> str:
    handle = user.strip().lstrip("/")
    return handle if handle.startswith("@") else f"@{handle}"


def youtube_handle_url(user: str) -> str:
    return join_url(YOUTUBE_BASE, quote(_normalize_handle(user), safe="@"))


def youtube_streams_url(handle: str) -> str:
    return join_url(YOUTUBE_BASE, f"{quote(_normalize_handle(handle), safe='@')}/streams")


def youtube_api_url(path: Optional[str] = None, params: Optional[Mapping[str, Any]] = None) -> str:
    return with_query(join_url(YOUTUBE_API_BASE, path), params)


def streamelements_api_url(path: Optional[str] = None, params: Optional[Mapping[str, Any]] = None) -> str:
    return with_query(join_url(STREAMELEMENTS_API_BASE, path), params)
