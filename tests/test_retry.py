import asyncio

import pytest

from chat_overlay.errors import AuthError, ConfigurationError, TransientNetworkError
from chat_overlay.utils.retry import RetryPolicy, RetrySystem, extract_error_message, stream_detection_policy


def test_policy_delay_is_clamped() -> None:
    policy = RetryPolicy.build(base_delay_ms=1000, max_delay_ms=8000, multiplier=2)
    assert [policy.delay_for(n) for n in range(5)] == [1000, 2000, 4000, 8000, 8000]
    assert policy.delay_for(10_000) == 8000
    assert policy.total_retry_time(3) == 7000


def test_policy_substitutes_defaults_for_unusable_values() -> None:
    policy = RetryPolicy.build(base_delay_ms=float("nan"), multiplier=-1)
    assert policy.base_delay_ms == 2000
    assert policy.multiplier == 1.3


def test_policy_rejects_ceiling_below_base() -> None:
    with pytest.raises(ConfigurationError):
        RetryPolicy.build(base_delay_ms=5000, max_delay_ms=1000)


def test_stream_detection_policy_doubles_from_retry_interval() -> None:
    policy = stream_detection_policy(15)
    assert policy.delay_for(0) == 15_000
    assert policy.delay_for(1) == 30_000
    assert policy.delay_for(20) == 300_000


def test_buckets_are_isolated_per_platform() -> None:
    retry = RetrySystem(RetryPolicy.build(base_delay_ms=1000, max_delay_ms=8000, multiplier=2))
    assert retry.increment("twitch") == 1000
    assert retry.increment("twitch") == 2000
    assert retry.bucket("youtube").attempts == 0
    assert retry.delay_for("youtube") == 1000

    retry.handle_connection_success("twitch")
    assert retry.bucket("twitch").attempts == 0


@pytest.mark.asyncio
async def test_connection_error_schedules_reconnect() -> None:
    retry = RetrySystem(RetryPolicy.build(base_delay_ms=10, max_delay_ms=100, multiplier=2))
    fired = asyncio.Event()

    delay = retry.handle_connection_error("tiktok", TransientNetworkError("reset"), fired.set)

    assert delay == 10
    await asyncio.wait_for(fired.wait(), timeout=1)
    stats = retry.statistics()["tiktok"]
    assert stats["attempts"] == 1
    assert stats["last_error"] == "reset"
    retry.cancel_all()


@pytest.mark.asyncio
async def test_auth_failures_and_exhaustion_are_not_retried() -> None:
    retry = RetrySystem(RetryPolicy.build(base_delay_ms=1000, max_delay_ms=1000, max_attempts=1))

    assert retry.handle_connection_error("twitch", AuthError("bad token", status_code=401), lambda: None) is None
    assert retry.bucket("twitch").attempts == 0

    assert retry.handle_connection_error("youtube", TransientNetworkError("x"), lambda: None) == 1000
    assert retry.handle_connection_error("youtube", TransientNetworkError("x"), lambda: None) is None
    retry.cancel_all()


@pytest.mark.asyncio
async def test_already_connected_skips_retry() -> None:
    retry = RetrySystem()
    assert retry.handle_connection_error("tiktok", TransientNetworkError("x"), lambda: None, lambda: True) is None


def test_extract_error_message() -> None:
    assert extract_error_message(None) == "Unknown error"
    assert extract_error_message(ValueError()) == "ValueError"
    assert extract_error_message({"reason": "gone"}) == "gone"
