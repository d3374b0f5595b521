import asyncio

import pytest

from chat_overlay.errors import ConfigurationError, OperationTimeoutError
from chat_overlay.utils.timeouts import Timer, cancel_task, validate_timeout, with_timeout, with_timeout_all


@pytest.mark.parametrize("value", [0, -1, float("inf"), float("nan"), True, "100", None])
def test_validate_timeout_rejects_bad_values(value: object) -> None:
    with pytest.raises(ConfigurationError):
        validate_timeout(value)


@pytest.mark.asyncio
async def test_with_timeout_raises_named_error() -> None:
    with pytest.raises(OperationTimeoutError) as info:
        await with_timeout(asyncio.sleep(1), 10, "slow op")
    assert info.value.operation == "slow op"
    assert info.value.timeout_ms == 10
    assert isinstance(info.value, TimeoutError)


@pytest.mark.asyncio
async def test_with_timeout_returns_result() -> None:
    async def answer() -> int:
        return 42

    assert await with_timeout(answer(), 100) == 42


@pytest.mark.asyncio
async def test_with_timeout_all_keeps_order() -> None:
    async def value(delay: float, result: str) -> str:
        await asyncio.sleep(delay)
        return result

    results = await with_timeout_all([value(0.02, "a"), value(1, "b"), value(0, "c")], 100, "batch")
    assert results[0] == "a"
    assert isinstance(results[1], OperationTimeoutError)
    assert results[2] == "c"


@pytest.mark.asyncio
async def test_timer_rejects_invalid_delay() -> None:
    timer = Timer("test")
    assert timer.schedule(-1, lambda: None) is False
    assert timer.schedule(float("nan"), lambda: None) is False
    assert not timer.pending


@pytest.mark.asyncio
async def test_timer_schedule_replaces_pending_callback() -> None:
    timer = Timer("test")
    fired: list[str] = []

    async def second() -> None:
        fired.append("second")

    assert timer.schedule(50, lambda: fired.append("first"))
    assert timer.schedule(10, second)
    await asyncio.sleep(0.1)
    assert fired == ["second"]
    assert not timer.pending


@pytest.mark.asyncio
async def test_timer_cancel() -> None:
    timer = Timer("test")
    fired: list[int] = []
    timer.schedule(10, lambda: fired.append(1))
    timer.cancel()
    await asyncio.sleep(0.03)
    assert fired == []


@pytest.mark.asyncio
async def test_cancel_task_unwinds() -> None:
    task = asyncio.create_task(asyncio.sleep(10))
    await cancel_task(task)
    assert task.cancelled()
    await cancel_task(None)
