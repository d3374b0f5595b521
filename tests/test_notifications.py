import asyncio
from typing import Any

import pytest

from chat_overlay.config import SpamConfig, SuppressionConfig
from chat_overlay.errors import QueueFullError
from chat_overlay.models import CanonicalEvent, DisplayItem, EventType, PlatformId, VfxConfig
from chat_overlay.notifications import DonationSpamDetector, NotificationManager, UserSuppressionTracker

from .utils import make_settings

NOW_MS = 1_704_067_200_000


class FakeQueue:
    def __init__(self, full: bool = False) -> None:
        self.items: list[DisplayItem] = []
        self.full = full

    def enqueue(self, item: DisplayItem) -> DisplayItem:
        if self.full:
            raise QueueFullError("full")
        self.items.append(item)
        return item


class FakeGoals:
    def __init__(self) -> None:
        self.donations: list[tuple[str, float]] = []
        self.paypiggies: list[tuple[str, int]] = []

    async def process_donation_goal(self, platform: str, delta: float) -> None:
        self.donations.append((platform, delta))

    async def process_paypiggy_goal(self, platform: str, count: int = 1) -> None:
        self.paypiggies.append((platform, count))


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def gift_payload(platform: PlatformId, **fields: Any) -> dict[str, Any]:
    extra = fields.pop("extra", {})
    event = CanonicalEvent(
        platform=platform,
        type=EventType.GIFT,
        timestamp_ms=NOW_MS,
        **fields,
        extra=extra,
    )
    return event.to_payload()


def make_manager(queue: Any = None, **kwargs: Any) -> NotificationManager:
    settings = kwargs.pop("settings", None) or make_settings()
    display = kwargs.pop("display", None) or settings.display()
    return NotificationManager(display, queue, **kwargs)


@pytest.mark.asyncio
async def test_bits_cheer_updates_goal_with_amount() -> None:
    queue, goals = FakeQueue(), FakeGoals()
    manager = make_manager(queue, goals=goals)
    payload = gift_payload(
        PlatformId.TWITCH,
        username="Alice",
        user_id="1",
        amount=100,
        currency="bits",
        gift_type="bits",
        gift_count=1,
        extra={"is_bits": True},
    )

    result = await manager.handle_notification("platform:gift", "twitch", payload)
    await manager.wait_for_goal_updates()

    assert result.success
    assert result.item is not None
    assert result.item.goal_delta == 100
    assert result.item.priority == 4
    assert result.item.payload["display_message"] == "Alice sent 100 bits"
    assert goals.donations == [("twitch", 100)]


@pytest.mark.asyncio
async def test_gift_goal_delta_multiplies_count() -> None:
    queue, goals = FakeQueue(), FakeGoals()
    manager = make_manager(queue, goals=goals)
    payload = gift_payload(
        PlatformId.TIKTOK, username="Bob", amount=50, currency="coins", gift_type="Rose", gift_count=3
    )

    result = await manager.handle_notification("platform:gift", "tiktok", payload)
    await manager.wait_for_goal_updates()

    assert result.item is not None
    assert result.item.goal_delta == 150
    assert goals.donations == [("tiktok", 150)]


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["platform:subscription", "platform:membership", "platform:resub", "platform:bogus"])
async def test_legacy_and_unknown_types_are_rejected(name: str) -> None:
    queue = FakeQueue()
    result = await make_manager(queue).handle_notification(name, "twitch", {"username": "Alice"})
    assert result.suppressed
    assert result.reason == "invalid_type"
    assert queue.items == []


@pytest.mark.asyncio
async def test_disabled_platform_and_global_switch() -> None:
    settings = make_settings()
    display = settings.display().model_copy(update={"notifications_enabled": {"tiktok": False}})
    manager = make_manager(FakeQueue(), display=display)

    assert (await manager.handle_notification("platform:follow", "tiktok", {"username": "A"})).reason == "disabled"
    assert (await manager.handle_notification("platform:follow", "twitch", {"username": "A"})).success

    manager.set_enabled(False)
    assert (await manager.handle_notification("platform:follow", "twitch", {"username": "A"})).reason == "disabled"


@pytest.mark.asyncio
async def test_missing_username_and_zero_fiat() -> None:
    manager = make_manager(FakeQueue())

    missing = await manager.handle_notification("platform:follow", "twitch", {"username": "  "})
    assert missing.reason == "invalid"
    assert missing.error == "Missing username"

    zero = await manager.handle_notification(
        "platform:gift", "youtube", {"username": "Eve", "amount": 0, "currency": "USD", "gift_count": 1}
    )
    assert zero.reason == "zero_amount"


@pytest.mark.asyncio
async def test_queue_full_and_missing_queue() -> None:
    full = await make_manager(FakeQueue(full=True)).handle_notification("platform:follow", "twitch", {"username": "A"})
    assert full.reason == "queue_full"

    none = await make_manager(None).handle_notification("platform:follow", "twitch", {"username": "A"})
    assert none.reason == "no_display_queue"


@pytest.mark.asyncio
async def test_tts_and_vfx_are_attached() -> None:
    settings = make_settings(TTS_ENABLED=True)
    vfx = {"follow": VfxConfig(command="!confetti", media_source="confetti video")}
    queue = FakeQueue()
    manager = make_manager(queue, settings=settings, vfx=vfx)

    result = await manager.handle_notification("platform:follow", "twitch", {"username": "Carol"})
    assert result.item is not None
    assert result.item.tts_text == "Carol just followed"
    assert result.item.vfx is not None
    assert result.item.vfx.command == "!confetti"

    quiet = await manager.handle_notification("platform:follow", "twitch", {"username": "Dave", "skip_tts": True})
    assert quiet.item is not None
    assert quiet.item.tts_text is None


@pytest.mark.asyncio
async def test_paypiggy_goal_counts_gifted_subs() -> None:
    queue, goals = FakeQueue(), FakeGoals()
    manager = make_manager(queue, goals=goals)

    result = await manager.handle_notification(
        "platform:paypiggy", "twitch", {"username": "Dan", "is_gift": True, "gift_count": 2}
    )
    await manager.wait_for_goal_updates()

    assert result.item is not None
    assert result.item.payload["display_message"] == "Dan gifted 2 subscriptions!"
    assert result.item.priority == 3
    assert goals.paypiggies == [("twitch", 2)]


@pytest.mark.asyncio
async def test_spam_holds_extra_donations_and_rolls_them_up() -> None:
    queue, goals = FakeQueue(), FakeGoals()
    spam = DonationSpamDetector(
        {"tiktok": SpamConfig(low_value_threshold=10, detection_window_sec=0.05, max_individual_notifications=2)}
    )
    manager = make_manager(queue, spam=spam, goals=goals)
    payload = gift_payload(
        PlatformId.TIKTOK, username="Bob", user_id="b1", amount=1, currency="coins", gift_type="Rose", gift_count=1
    )

    results = [await manager.handle_notification("platform:gift", "tiktok", payload) for _ in range(4)]
    assert [r.reason for r in results] == [None, None, "spam_detection", "spam_detection"]

    await asyncio.sleep(0.15)
    await manager.wait_for_goal_updates()

    assert len(queue.items) == 3
    rollup = queue.items[-1]
    assert rollup.payload["is_aggregated"] is True
    assert rollup.payload["display_message"] == "Bob sent 2 gifts worth 2 (Rose)"
    assert sum(delta for _, delta in goals.donations) == 4
    await manager.stop()


@pytest.mark.asyncio
async def test_aggregated_gifts_bypass_spam_check() -> None:
    queue = FakeQueue()
    spam = DonationSpamDetector({"tiktok": SpamConfig(max_individual_notifications=1)})
    manager = make_manager(queue, spam=spam)
    payload = gift_payload(
        PlatformId.TIKTOK, username="Bob", amount=1, currency="coins", gift_type="Rose", gift_count=7, is_aggregated=True
    )

    for _ in range(3):
        assert (await manager.handle_notification("platform:gift", "tiktok", payload)).success
    spam.destroy()


@pytest.mark.asyncio
async def test_user_suppression_limits_repeat_notifications() -> None:
    clock = FakeClock()
    tracker = UserSuppressionTracker(
        SuppressionConfig(max_notifications_per_user=2, window_ms=60_000, duration_ms=30_000), clock=clock
    )
    manager = make_manager(FakeQueue(), suppression=tracker)

    reasons = [
        (await manager.handle_notification("platform:follow", "twitch", {"username": "Zed", "user_id": "9"})).reason
        for _ in range(3)
    ]
    assert reasons == [None, None, "user_suppression"]
    assert tracker.is_suppressed("twitch:9")

    clock.now += 30_001
    assert not tracker.is_suppressed("twitch:9")
    assert not tracker.record("twitch:9")


def test_suppression_cleanup_drops_idle_users() -> None:
    clock = FakeClock()
    tracker = UserSuppressionTracker(SuppressionConfig(window_ms=1000, duration_ms=1000), clock=clock)
    tracker.record("a")
    tracker.record("b")
    clock.now = 5000
    assert tracker.cleanup() == 2
    assert tracker.tracked_users() == 0


def test_spam_detector_fails_open_and_respects_threshold() -> None:
    clock = FakeClock()
    spam = DonationSpamDetector({"twitch": SpamConfig(low_value_threshold=10)}, clock=clock)

    assert spam.handle_donation_spam("u", "User", "not a number", "bits", 1, "twitch").should_show
    assert not spam.is_low_value(100, "twitch")
    assert spam.is_low_value(10, "twitch")

    disabled = DonationSpamDetector({"youtube": SpamConfig(enabled=False)})
    assert not disabled.is_low_value(0.5, "youtube")


@pytest.mark.asyncio
async def test_spam_cleanup_and_statistics() -> None:
    clock = FakeClock()
    spam = DonationSpamDetector(
        {"tiktok": SpamConfig(detection_window_sec=1, max_individual_notifications=5)}, clock=clock
    )
    spam.handle_donation_spam("u1", "One", 1, "Rose", 1, "tiktok")
    spam.handle_donation_spam("u2", "Two", 1, "Rose", 1, "tiktok")
    assert spam.statistics() == {"tracked_users": 2, "total_notifications": 2}

    clock.now = 10_000
    assert spam.cleanup() == 2

    spam.handle_donation_spam("u3", "Three", 1, "Rose", 1, "tiktok")
    assert spam.cleanup(force=True) == 1


@pytest.mark.asyncio
async def test_spam_windows_are_separate_per_platform() -> None:
    clock = FakeClock()
    spam = DonationSpamDetector(
        {
            "twitch": SpamConfig(low_value_threshold=100, max_individual_notifications=1),
            "tiktok": SpamConfig(low_value_threshold=10, max_individual_notifications=1),
        },
        clock=clock,
    )

    assert spam.handle_donation_spam("42", "Ann", 50, "bits", 1, "twitch").should_show
    assert spam.handle_donation_spam("42", "Ann", 1, "Rose", 1, "tiktok").should_show
    assert spam.statistics() == {"tracked_users": 2, "total_notifications": 2}
    assert not spam.handle_donation_spam("42", "Ann", 50, "bits", 1, "twitch").should_show
    spam.destroy()


@pytest.mark.asyncio
async def test_paypiggy_hook_uses_the_given_username() -> None:
    queue, goals = FakeQueue(), FakeGoals()
    manager = make_manager(queue, goals=goals)

    result = await manager.handle_paypiggy_notification("youtube", "Mia", {"username": "stale", "months": 3})
    await manager.wait_for_goal_updates()

    assert result.item is not None
    assert result.item.payload["username"] == "Mia"
    assert goals.paypiggies == [("youtube", 1)]
    assert (await manager.handle_paypiggy_notification("youtube", " ", {})).reason == "invalid"
