import asyncio
import json
from typing import Any, Optional

import pytest
from websockets.exceptions import ConnectionClosedError

from chat_overlay.bus import EventBus, PlatformEvents
from chat_overlay.errors import ObsRequestError, QueueFullError
from chat_overlay.models import DisplayItem, VfxConfig
from chat_overlay.obs.connection import OBSConnectionManager
from chat_overlay.obs.display_queue import DisplayQueue, render_content
from chat_overlay.obs.sources import ObsSources

from .utils import FakeSources, make_settings


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class BrokenSources(FakeSources):
    async def update_text_source(self, source_name: str, text: str) -> None:
        raise ObsRequestError("SetInputSettings", 600, "resource not found")


def item(kind: str, priority: int, text: Optional[str] = None, platform: str = "twitch", **kwargs: Any) -> DisplayItem:
    payload: dict[str, Any] = {"username": "Alice", "message": text or kind}
    if kind != "chat":
        payload["display_message"] = text or f"{kind} from Alice"
    return DisplayItem(type=kind, platform=platform, payload=payload, priority=priority, duration_ms=10, **kwargs)


def make_queue(sources: Any = None, clock: Any = None, bus: Optional[EventBus] = None, **overrides: Any) -> DisplayQueue:
    config = make_settings(**overrides).display()
    kwargs: dict[str, Any] = {"bus": bus}
    if clock is not None:
        kwargs["clock"] = clock
    return DisplayQueue(config, sources, **kwargs)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


def test_higher_priority_first_then_fifo() -> None:
    queue = make_queue()
    queue.enqueue(item("follow", 2, "f1"))
    queue.enqueue(item("raid", 6, "r1"))
    queue.enqueue(item("gift", 4, "g1"))
    queue.enqueue(item("follow", 2, "f2"))

    order = [entry.payload["display_message"] for entry in queue.preview(10)]
    assert order == ["r1", "g1", "f1", "f2"]


def test_newer_chat_supersedes_queued_chat() -> None:
    queue = make_queue()
    first = queue.enqueue(item("chat", 1, "old"))
    queue.enqueue(item("follow", 2))
    queue.enqueue(item("chat", 1, "new"))

    assert queue.size() == 2
    dropped = queue.dropped()
    assert dropped[0].item is first
    assert dropped[0].reason == "superseded"


def test_capacity_is_enforced() -> None:
    queue = make_queue()
    for index in range(8):
        queue.enqueue(item("follow", 2, f"f{index}"))
    with pytest.raises(QueueFullError):
        queue.enqueue(item("follow", 2, "overflow"))


def test_waiting_items_gain_bounded_priority() -> None:
    clock = FakeClock()
    queue = make_queue(clock=clock)
    queue.enqueue(item("follow", 2, "old follow"))
    clock.now = 61.0
    queue.enqueue(item("gift", 4, "fresh gift"))
    queue.enqueue(item("raid", 6, "fresh raid"))

    order = [entry.payload["display_message"] for entry in queue.preview(10)]
    assert order == ["fresh raid", "old follow", "fresh gift"]

    clock.now = 10_000.0
    assert [entry.payload["display_message"] for entry in queue.preview(1)] == ["fresh raid"]


def test_clear_records_drops() -> None:
    queue = make_queue()
    queue.enqueue(item("follow", 2))
    queue.enqueue(item("gift", 4))
    assert queue.clear() == 2
    assert queue.size() == 0
    assert [entry.reason for entry in queue.dropped()] == ["cleared", "cleared"]


def test_render_content() -> None:
    assert render_content(item("chat", 1, "hello")) == "Alice: hello"
    assert render_content(item("gift", 4, "Alice sent 5 roses")) == "Alice sent 5 roses"


@pytest.mark.asyncio
async def test_template_artifact_is_dropped_before_any_obs_call() -> None:
    sources = FakeSources()
    bus = EventBus()
    drops: list[dict[str, Any]] = []
    bus.subscribe(PlatformEvents.DISPLAY_ITEM_DROPPED, drops.append)
    queue = make_queue(sources, bus=bus)

    shown = await queue.process_item(item("greeting", 1, "Hi ${name}"))
    await wait_until(lambda: bool(drops))

    assert shown is False
    assert sources.calls == []
    assert queue.dropped()[-1].reason == "OverlayContentError"
    assert drops and drops[0]["reason"] == "OverlayContentError"
    assert queue.shown_count == 0


@pytest.mark.asyncio
async def test_notification_shows_and_hides_through_obs() -> None:
    sources = FakeSources()
    bus = EventBus()
    shown_events: list[dict[str, Any]] = []
    bus.subscribe(PlatformEvents.DISPLAY_ITEM_SHOWN, shown_events.append)
    queue = make_queue(sources, bus=bus)

    assert await queue.process_item(item("gift", 4, "Alice sent 5 roses"))

    assert ("text", "notification txt", "Alice sent 5 roses") in sources.calls
    assert ("visible", "notification scene", "notification msg group", True) in sources.calls
    assert sources.calls[-1] == ("logos", "notification msg group", None)
    assert queue.visible("notification") is None
    assert shown_events[0]["slot"] == "notification"


@pytest.mark.asyncio
async def test_chat_lingers_until_next_item() -> None:
    sources = FakeSources()
    queue = make_queue(sources)

    chat = item("chat", 1, "hello")
    await queue.process_item(chat)
    assert queue.visible("chat") is chat

    await queue.process_item(item("follow", 2))
    assert queue.visible("chat") is None
    assert ("visible", "chat msg scene", "chat msg group", False) in sources.calls


@pytest.mark.asyncio
async def test_obs_failure_drops_item() -> None:
    queue = make_queue(BrokenSources())
    assert await queue.process_item(item("follow", 2)) is False
    assert queue.dropped()[-1].reason == "obs_error"
    assert queue.visible("notification") is None


@pytest.mark.asyncio
async def test_disabled_platform_messages_are_dropped() -> None:
    config = make_settings().display().model_copy(update={"messages_enabled": {"tiktok": False}})
    queue = DisplayQueue(config)
    assert await queue.process_item(item("chat", 1, "hi", platform="tiktok")) is False
    assert queue.dropped()[-1].reason == "disabled"


@pytest.mark.asyncio
async def test_vfx_and_tts_effects() -> None:
    sources = FakeSources()
    bus = EventBus()
    events: list[tuple[str, Any]] = []
    bus.subscribe(PlatformEvents.VFX_COMMAND_RECEIVED, lambda payload: events.append(("vfx", payload)))
    bus.subscribe(PlatformEvents.TTS_SPEECH_REQUESTED, lambda payload: events.append(("tts", payload)))
    spoken: list[str] = []

    async def sink(text: str, _item: DisplayItem) -> None:
        spoken.append(text)

    config = make_settings(TTS_ENABLED=True).display()
    queue = DisplayQueue(config, sources, bus=bus, tts_sink=sink)
    vfx = VfxConfig(command="!confetti", media_source="confetti", file_path="/media/confetti.webm", duration_ms=20)

    await queue.process_item(item("follow", 2, vfx=vfx, tts_text="Alice just followed"))

    assert ("media_file", "confetti", "/media/confetti.webm") in sources.calls
    assert ("media", "confetti") in sources.calls
    assert ("text", "tts txt", "Alice just followed") in sources.calls
    assert [kind for kind, _ in events] == ["vfx", "tts"]
    assert spoken == ["Alice just followed"]


@pytest.mark.asyncio
async def test_worker_drains_queue_and_skip_cuts_display_short() -> None:
    queue = make_queue()
    queue.start()
    try:
        long_item = item("raid", 6, "big raid")
        long_item.duration_ms = 5_000
        queue.enqueue(long_item)
        queue.enqueue(item("follow", 2))

        await wait_until(lambda: queue.current is long_item)
        assert queue.skip_current()
        await wait_until(lambda: queue.shown_count == 2)
    finally:
        await queue.stop()
    assert queue.size() == 0


@pytest.mark.asyncio
async def test_worker_waits_for_obs_and_stop_drops_leftovers() -> None:
    sources = FakeSources(ready=False)
    queue = DisplayQueue(make_settings().display(), sources, obs_retry_ms=10)
    queue.start()
    queue.enqueue(item("follow", 2))
    await asyncio.sleep(0.05)
    assert queue.shown_count == 0

    sources.ready = True
    await wait_until(lambda: queue.shown_count == 1)

    queue.enqueue(item("gift", 4))
    sources.ready = False
    await queue.stop()
    assert queue.dropped()[-1].reason == "shutdown"


class DroppedSocket:
    """OBS socket that completes the handshake, then refuses every request."""

    def __init__(self) -> None:
        self.handshake = [{"op": 0, "d": {"rpcVersion": 1}}, {"op": 2, "d": {"negotiatedRpcVersion": 1}}]

    async def __call__(self, url: str, subprotocols: Optional[list[str]] = None) -> "DroppedSocket":
        return self

    async def recv(self) -> str:
        return json.dumps(self.handshake.pop(0))

    async def send(self, raw: str) -> None:
        if json.loads(raw)["op"] == 6:
            raise ConnectionClosedError(None, None)

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        await asyncio.Event().wait()
        yield ""

    async def close(self) -> None:
        return None


@pytest.mark.asyncio
async def test_socket_drop_mid_request_drops_items_and_worker_survives() -> None:
    obs = OBSConnectionManager(url="ws://obs.test:4455", connect_factory=DroppedSocket(), reconnect_interval_ms=60_000)
    await obs.connect()
    queue = make_queue(ObsSources(obs))
    queue.start()
    try:
        queue.enqueue(item("follow", 2, "first"))
        queue.enqueue(item("follow", 2, "second"))
        await wait_until(lambda: len(queue.dropped()) == 2)
        assert queue._worker is not None and not queue._worker.done()
    finally:
        await queue.stop()
        await obs.disconnect()

    assert [dropped.reason for dropped in queue.dropped()] == ["obs_error", "obs_error"]
    assert queue.size() == 0


@pytest.mark.asyncio
async def test_failing_tts_sink_does_not_stop_the_worker() -> None:
    async def sink(text: str, _item: DisplayItem) -> None:
        raise RuntimeError("speaker unavailable")

    queue = DisplayQueue(make_settings(TTS_ENABLED=True).display(), FakeSources(), tts_sink=sink)
    queue.start()
    try:
        queue.enqueue(item("follow", 2, "first", tts_text="Alice followed"))
        queue.enqueue(item("follow", 2, "second", tts_text="Alice followed again"))
        await wait_until(lambda: queue.shown_count == 2)
    finally:
        await queue.stop()

    assert queue.dropped() == []
