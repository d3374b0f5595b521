import asyncio
import json
from typing import Any, Optional

import pytest

from chat_overlay.errors import ConfigurationError, EventProcessingError, PlatformProbeError
from chat_overlay.models import CanonicalEvent, ConnectionState, EventType
from chat_overlay.platforms.tiktok import (
    TikTokAdapter,
    TikTokGiftAggregator,
    extract_gift,
    normalize_envelope,
    normalize_social,
    normalize_viewer_count,
)

CREATE_TIME = 1_704_067_200_000


def gift_frame(count: int, *, combo: int = 1, end: bool = False, user: str = "u1", name: str = "Rose") -> dict[str, Any]:
    return {
        "user": {"userId": user, "nickname": "Bob"},
        "giftDetails": {"giftName": name, "diamondCount": 1, "giftType": combo, "id": 5655},
        "repeatCount": count,
        "repeatEnd": end,
        "common": {"createTime": CREATE_TIME},
    }


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def collector() -> tuple[list[CanonicalEvent], Any]:
    events: list[CanonicalEvent] = []

    async def sink(event: CanonicalEvent) -> None:
        events.append(event)

    return events, sink


def test_extract_gift_validates_fields() -> None:
    gift = extract_gift(gift_frame(3))
    assert (gift.user_id, gift.username, gift.gift_type, gift.repeat_count) == ("u1", "Bob", "Rose", 3)
    assert gift.in_progress
    assert gift.timestamp_ms == CREATE_TIME

    broken = gift_frame(3)
    broken["giftDetails"]["diamondCount"] = 0
    with pytest.raises(EventProcessingError):
        extract_gift(broken)
    with pytest.raises(EventProcessingError):
        extract_gift(gift_frame(0))


@pytest.mark.asyncio
async def test_streak_burst_is_rolled_up_into_one_event() -> None:
    events, sink = collector()
    clock = FakeClock()
    aggregator = TikTokGiftAggregator(sink, delay_ms=20, clock=clock)

    for count in (1, 3, 7):
        await aggregator.add(extract_gift(gift_frame(count)))
        clock.now += 100
    assert aggregator.pending() == {("u1", "Rose"): 7}

    await asyncio.sleep(0.08)

    assert len(events) == 1
    event = events[0]
    assert event.gift_count == 7
    assert event.is_aggregated is True
    assert event.extra["total_amount"] == 7
    assert event.goal_delta() == 7
    assert aggregator.pending() == {}


@pytest.mark.asyncio
async def test_streak_end_flushes_immediately_and_keys_are_separate() -> None:
    events, sink = collector()
    aggregator = TikTokGiftAggregator(sink, delay_ms=10_000)

    await aggregator.add(extract_gift(gift_frame(2, name="Rose")))
    await aggregator.add(extract_gift(gift_frame(4, name="Lion")))
    await aggregator.add(extract_gift(gift_frame(5, name="Rose", end=True)))

    assert [(event.gift_type, event.gift_count) for event in events] == [("Rose", 5)]
    assert events[0].extra["is_streak_completed"] is True
    assert aggregator.pending() == {("u1", "Lion"): 4}

    await aggregator.flush_all()
    assert [event.gift_type for event in events] == ["Rose", "Lion"]


@pytest.mark.asyncio
async def test_duplicate_frames_within_a_second_are_ignored() -> None:
    events, sink = collector()
    clock = FakeClock()
    aggregator = TikTokGiftAggregator(sink, delay_ms=10_000, clock=clock)

    await aggregator.add(extract_gift(gift_frame(3)))
    await aggregator.add(extract_gift(gift_frame(3)))
    assert events == []
    assert aggregator.pending() == {("u1", "Rose"): 3}

    await aggregator.add(extract_gift(gift_frame(3, end=True)))
    assert [event.gift_count for event in events] == [3]
    assert aggregator.pending() == {}

    await aggregator.add(extract_gift(gift_frame(3, end=True)))
    assert len(events) == 1

    clock.now += 1_500
    await aggregator.add(extract_gift(gift_frame(3, end=True)))
    assert [event.gift_count for event in events] == [3, 3]
    aggregator.cleanup()


@pytest.mark.asyncio
async def test_without_aggregation_only_finished_gifts_are_emitted() -> None:
    events, sink = collector()
    aggregator = TikTokGiftAggregator(sink, enabled=False)

    await aggregator.add(extract_gift(gift_frame(3)))
    await aggregator.add(extract_gift(gift_frame(6, end=True)))
    await aggregator.add(extract_gift(gift_frame(1, combo=0)))

    assert [(event.gift_count, event.is_aggregated) for event in events] == [(6, False), (1, False)]


def test_other_normalizers() -> None:
    assert normalize_social({"displayType": "pm_main_share", "user": {"userId": "1", "nickname": "A"}}) is None
    follow = normalize_social({"displayType": "pm_mt_msg_viewer_follow", "user": {"userId": "1", "nickname": "A"}})
    assert follow is not None
    assert follow.type is EventType.FOLLOW

    envelope = normalize_envelope({"user": {"userId": "2", "nickname": "B"}, "giftCoins": 100, "envelopeId": "e1"})
    assert (envelope.amount, envelope.currency, envelope.gift_type) == (100.0, "coins", "Treasure Chest")
    assert envelope.extra["is_envelope"] is True

    viewers = normalize_viewer_count({"viewerCount": 88})
    assert viewers is not None
    assert viewers.extra["viewer_count"] == 88
    assert normalize_viewer_count({"viewerCount": -1}) is None


class FakeRelay:
    """Async context manager and iterator standing in for a websocket."""

    def __init__(self, frames: list[dict[str, Any]], close_code: Optional[int] = None, hold: bool = True) -> None:
        self.frames = [json.dumps(frame) for frame in frames]
        self.close_code = close_code
        self.hold = hold
        self.urls: list[str] = []

    def __call__(self, url: str) -> "FakeRelay":
        self.urls.append(url)
        return self

    async def __aenter__(self) -> "FakeRelay":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for raw in self.frames:
            yield raw
        if self.hold:
            await asyncio.Event().wait()


def test_adapter_requires_username() -> None:
    with pytest.raises(ConfigurationError):
        TikTokAdapter(username="", ws_url="wss://relay.test")


@pytest.mark.asyncio
async def test_adapter_connects_and_routes_relay_frames() -> None:
    relay = FakeRelay(
        [
            {"type": "roomInfo", "data": {"roomInfo": {"id": 777, "isLive": True}}},
            {"messages": [{"type": "chat", "data": {"user": {"userId": "9", "nickname": "Cat"}, "comment": "hey"}}]},
            {"type": "gift", "data": gift_frame(2, end=True)},
        ]
    )
    adapter = TikTokAdapter(
        username="@creator", ws_url="wss://relay.test/ws", api_key="k", connect_factory=relay, room_timeout_sec=1
    )
    events: list[CanonicalEvent] = []
    adapter.on_event(events.append)

    await adapter.connect()
    for _ in range(20):
        if len(events) >= 2:
            break
        await asyncio.sleep(0.01)
    await adapter.disconnect()

    assert relay.urls == ["wss://relay.test/ws?uniqueId=creator&apiKey=k"]
    assert adapter.room_id == "777"
    assert [event.type for event in events] == [EventType.CHAT, EventType.GIFT]
    assert events[1].gift_count == 2
    assert adapter.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_not_live_close_fails_connect_and_informs_probe() -> None:
    relay = FakeRelay([], close_code=4404, hold=False)
    adapter = TikTokAdapter(username="creator", ws_url="wss://relay.test/ws", connect_factory=relay, room_timeout_sec=1)
    statuses: list[CanonicalEvent] = []
    adapter.on_event(statuses.append)

    with pytest.raises(PlatformProbeError):
        await adapter.connect()

    assert statuses[0].type is EventType.STREAM_STATUS
    assert statuses[0].extra["is_live"] is False
    assert await adapter.probe_live() is False
    assert await adapter.probe_live() is True
    await adapter.disconnect()


@pytest.mark.asyncio
async def test_failed_first_connect_stops_the_relay_task() -> None:
    relay = FakeRelay([{"type": "roomInfo", "data": {"roomInfo": {"id": 42, "isLive": True}}}])
    calls: list[str] = []

    def factory(url: str):
        calls.append(url)
        if len(calls) == 1:
            raise OSError("connection refused")
        return relay(url)

    adapter = TikTokAdapter(username="creator", ws_url="wss://relay.test/ws", connect_factory=factory, room_timeout_sec=1)

    with pytest.raises(PlatformProbeError):
        await adapter.connect()
    await asyncio.sleep(0.05)

    assert len(calls) == 1
    assert adapter.state is ConnectionState.DISCONNECTED

    await adapter.connect()
    assert adapter.room_id == "42"
    assert len(calls) == 2
    await adapter.disconnect()
