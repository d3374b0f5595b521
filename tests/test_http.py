from typing import Any

import httpx
import pytest

from chat_overlay.errors import AuthError, PlatformProbeError, TransientNetworkError
from chat_overlay.platforms.probes import TikTokLivenessProbe, YouTubeLivenessProbe, count_live_markers
from chat_overlay.utils.endpoints import join_url, twitch_api_url, twitch_oauth_url, youtube_streams_url, with_query
from chat_overlay.utils.http_client import HttpClient
from chat_overlay.utils.retry import RetryPolicy, RetrySystem

LIVE_PAGE = '{"isLiveContent": true} BADGE_STYLE_TYPE_LIVE_NOW 1,234 watching now'


def client_for(handler) -> HttpClient:
    return HttpClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_endpoint_builders() -> None:
    assert join_url("https://a.example/", "/b") == "https://a.example/b"
    assert join_url("https://a.example/", "  ") == "https://a.example"
    assert with_query("https://a.example/x?y=1", {"z": 2, "skip": None}) == "https://a.example/x?y=1&z=2"
    assert twitch_api_url("users", {"login": "alice"}) == "https://api.twitch.tv/helix/users?login=alice"
    assert youtube_streams_url("channel") == "https://www.youtube.com/@channel/streams"
    assert youtube_streams_url("@channel") == "https://www.youtube.com/@channel/streams"
    with pytest.raises(ValueError):
        twitch_oauth_url("authorize")


@pytest.mark.asyncio
async def test_requests_rotate_user_agents() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["User-Agent"])
        return httpx.Response(200)

    http = HttpClient(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), user_agents=["agent-a", "agent-b"]
    )
    for _ in range(3):
        await http.get("https://example.test/")
    assert seen == ["agent-a", "agent-b", "agent-a"]


@pytest.mark.asyncio
async def test_transport_errors_become_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    http = client_for(handler)
    with pytest.raises(TransientNetworkError):
        await http.get("https://example.test/")
    assert await http.check_reachability("https://example.test/") is False


@pytest.mark.asyncio
async def test_request_with_retry_recovers_and_rejects_auth() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ReadError("reset", request=request)
        if request.url.path == "/private":
            return httpx.Response(401)
        return httpx.Response(200, json={"ok": True})

    retry = RetrySystem(RetryPolicy.build(base_delay_ms=1))
    http = HttpClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), retry_system=retry)

    response = await http.request_with_retry("GET", "https://example.test/public", platform="youtube")
    assert response.json() == {"ok": True}
    assert len(attempts) == 2
    assert retry.bucket("youtube").attempts == 0

    with pytest.raises(AuthError):
        await http.request_with_retry("GET", "https://example.test/private", platform="youtube")


def test_live_markers() -> None:
    assert count_live_markers(LIVE_PAGE) == ["live_content", "live_badge", "watching_now"]
    assert count_live_markers('"isLiveContent": false') == []


@pytest.mark.asyncio
async def test_youtube_page_probe_needs_two_markers() -> None:
    pages = [LIVE_PAGE, '"isLiveContent": true and nothing else']

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/@channel/streams"
        return httpx.Response(200, text=pages.pop(0))

    probe = YouTubeLivenessProbe("channel", client_for(handler))
    assert await probe.is_live() is True
    assert await probe.is_live() is False


@pytest.mark.asyncio
async def test_youtube_page_probe_http_failure() -> None:
    probe = YouTubeLivenessProbe("channel", client_for(lambda request: httpx.Response(503)))
    with pytest.raises(PlatformProbeError):
        await probe.is_live()


@pytest.mark.asyncio
async def test_youtube_sdk_detector_takes_precedence() -> None:
    async def detector(handle: str) -> dict[str, Any]:
        return {"success": True, "videoIds": ["abc"]} if handle == "live" else {"success": True, "videoIds": []}

    http = client_for(lambda request: httpx.Response(500))
    assert await YouTubeLivenessProbe("live", http, detector).is_live() is True
    assert await YouTubeLivenessProbe("idle", http, detector).is_live() is False

    async def broken(handle: str) -> Any:
        raise RuntimeError("quota")

    with pytest.raises(PlatformProbeError):
        await YouTubeLivenessProbe("live", http, broken).is_live()
    with pytest.raises(PlatformProbeError):
        YouTubeLivenessProbe("", http)


class MethodConnection:
    def is_connected(self) -> bool:
        return False


class StateConnection:
    def get_state(self) -> dict[str, bool]:
        return {"is_connected": True}


class FlagConnection:
    connected = False


@pytest.mark.asyncio
async def test_tiktok_probe_resolution_order() -> None:
    async def service() -> bool:
        return False

    assert await TikTokLivenessProbe(MethodConnection(), status_service=service).is_live() is False
    assert await TikTokLivenessProbe(MethodConnection()).is_live() is False
    assert await TikTokLivenessProbe(StateConnection()).is_live() is True
    assert await TikTokLivenessProbe(FlagConnection()).is_live() is False
    assert await TikTokLivenessProbe(object()).is_live() is True
    assert await TikTokLivenessProbe().is_live() is True
