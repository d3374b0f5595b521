import json
from typing import Any, Optional

import httpx
import pytest

from chat_overlay.errors import EventProcessingError
from chat_overlay.models import ConnectionState, EventType, PlatformId
from chat_overlay.platforms.twitch import (
    EVENTSUB_SUBSCRIPTIONS,
    TwitchEventSubAdapter,
    normalize_eventsub_event,
    parse_cheermotes,
)
from chat_overlay.utils.http_client import HttpClient

MESSAGE_TS = "2024-01-01T00:00:00Z"
MESSAGE_TS_MS = 1_704_067_200_000


class FakeAuth:
    client_id = "cid"

    def __init__(self, token: Optional[str] = "token") -> None:
        self.token = token

    async def ensure_valid_token(self) -> Optional[str]:
        return self.token


def frame(message_type: str, payload: dict[str, Any], **metadata: Any) -> str:
    return json.dumps({"metadata": {"message_type": message_type, **metadata}, "payload": payload})


def make_adapter(handler) -> TwitchEventSubAdapter:
    http = HttpClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return TwitchEventSubAdapter(auth=FakeAuth(), http=http, broadcaster_id="42")


def test_cheer_becomes_bits_gift() -> None:
    event = normalize_eventsub_event(
        "channel.cheer",
        {"user_name": "Alice", "user_id": "1", "bits": 100, "message": "Cheer100 great stream"},
        MESSAGE_TS,
    )
    assert event is not None
    assert event.type is EventType.GIFT
    assert (event.amount, event.currency, event.gift_type, event.gift_count) == (100.0, "bits", "bits", 1)
    assert event.timestamp_ms == MESSAGE_TS_MS
    assert event.extra["cheermote_prefix"] == "Cheer"
    assert event.goal_delta() == 100


def test_anonymous_mixed_cheer() -> None:
    event = normalize_eventsub_event(
        "channel.cheer",
        {"is_anonymous": True, "user_name": None, "bits": 200, "message": "Cheer100 Kappa100"},
        MESSAGE_TS,
    )
    assert event is not None
    assert event.username == "Anonymous"
    assert event.user_id is None
    assert event.gift_type == "mixed bits"
    assert parse_cheermotes(None) == {"prefix": None, "count": 0, "is_mixed": False}


def test_cheer_without_bits_is_rejected() -> None:
    with pytest.raises(EventProcessingError):
        normalize_eventsub_event("channel.cheer", {"user_name": "Alice", "bits": 0}, MESSAGE_TS)


def test_chat_follow_and_raid() -> None:
    chat = normalize_eventsub_event(
        "channel.chat.message",
        {
            "chatter_user_name": "Bob",
            "chatter_user_id": "7",
            "broadcaster_user_id": "7",
            "message": {"text": "  hello   world "},
            "message_id": "m1",
        },
        MESSAGE_TS,
    )
    assert chat is not None
    assert chat.message == "hello world"
    assert chat.extra["is_broadcaster"] is True

    follow = normalize_eventsub_event("channel.follow", {"user_name": "Cy", "user_id": "3"}, MESSAGE_TS)
    assert follow is not None
    assert follow.type is EventType.FOLLOW

    raid = normalize_eventsub_event(
        "channel.raid", {"from_broadcaster_user_name": "Dee", "viewers": 12}, MESSAGE_TS
    )
    assert raid is not None
    assert raid.extra["viewer_count"] == 12


def test_subscriptions_and_gift_bombs() -> None:
    assert normalize_eventsub_event("channel.subscribe", {"user_name": "E", "is_gift": True}, MESSAGE_TS) is None

    sub = normalize_eventsub_event("channel.subscribe", {"user_name": "E", "tier": "1000"}, MESSAGE_TS)
    assert sub is not None
    assert sub.type is EventType.PAYPIGGY
    assert sub.extra["tier_label"] == "Tier 1"

    resub = normalize_eventsub_event(
        "channel.subscription.message",
        {"user_name": "E", "cumulative_months": 6, "message": {"text": "six!"}},
        MESSAGE_TS,
    )
    assert resub is not None
    assert resub.extra["is_renewal"] is True
    assert resub.message == "six!"

    bomb = normalize_eventsub_event("channel.subscription.gift", {"user_name": "F", "total": 5}, MESSAGE_TS)
    assert bomb is not None
    assert bomb.gift_count == 5
    assert bomb.extra["is_gift"] is True


def test_redemption_and_stream_status() -> None:
    redemption = normalize_eventsub_event(
        "channel.channel_points_custom_reward_redemption.add",
        {"user_name": "G", "reward": {"title": "Hydrate", "cost": 500}, "redeemed_at": MESSAGE_TS},
    )
    assert redemption is not None
    assert redemption.extra["reward_title"] == "Hydrate"

    offline = normalize_eventsub_event("stream.offline", {"broadcaster_user_name": "Host"}, MESSAGE_TS)
    assert offline is not None
    assert offline.type is EventType.STREAM_STATUS
    assert offline.extra["is_live"] is False
    assert normalize_eventsub_event("channel.ban", {}, MESSAGE_TS) is None


@pytest.mark.asyncio
async def test_welcome_creates_subscriptions() -> None:
    bodies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer token"
        assert request.headers["Client-Id"] == "cid"
        body = json.loads(request.content)
        bodies.append(body)
        if body["type"] == "channel.raid":
            return httpx.Response(409)
        if body["type"] == "channel.follow":
            return httpx.Response(400, text="bad")
        return httpx.Response(202)

    adapter = make_adapter(handler)
    result = await adapter.handle_message(
        frame("session_welcome", {"session": {"id": "sess-1", "keepalive_timeout_seconds": 10}})
    )

    assert result is None
    assert adapter.session_id == "sess-1"
    assert adapter.state is ConnectionState.READY
    assert len(bodies) == len(EVENTSUB_SUBSCRIPTIONS)
    raid = next(body for body in bodies if body["type"] == "channel.raid")
    assert raid["condition"] == {"to_broadcaster_user_id": "42"}
    assert raid["transport"] == {"method": "websocket", "session_id": "sess-1"}


@pytest.mark.asyncio
async def test_notifications_reach_subscribers_and_reconnect_url_is_returned() -> None:
    adapter = make_adapter(lambda request: httpx.Response(202))
    events = []
    adapter.on_event(events.append)

    await adapter.handle_message(
        frame(
            "notification",
            {"subscription": {"type": "channel.follow"}, "event": {"user_name": "Hana", "user_id": "5"}},
            message_timestamp=MESSAGE_TS,
        )
    )
    await adapter.handle_message(
        frame("notification", {"subscription": {"type": "channel.raid"}, "event": {"viewers": "many"}})
    )
    await adapter.handle_message("not json")

    assert [event.username for event in events] == ["Hana"]
    assert events[0].platform is PlatformId.TWITCH

    url = await adapter.handle_message(
        frame("session_reconnect", {"session": {"reconnect_url": "wss://example.test/ws"}})
    )
    assert url == "wss://example.test/ws"
