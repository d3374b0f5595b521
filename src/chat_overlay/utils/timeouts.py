"""Deadlines for awaitables and cancellable one-shot timers."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from ..errors import ConfigurationError, OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def validate_timeout(timeout_ms: Any, name: str = "timeout") -> float:
    """Return ``timeout_ms`` as a float or raise ``ConfigurationError``."""

    if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, (int, float)):
        raise ConfigurationError(f"{name} must be a number, got {timeout_ms!r}")
    if not math.isfinite(timeout_ms) or timeout_ms <= 0:
        raise ConfigurationError(f"{name} must be a positive finite number, got {timeout_ms!r}")
    return float(timeout_ms)


def is_valid_delay(delay_ms: Any) -> bool:
    if isinstance(delay_ms, bool) or not isinstance(delay_ms, (int, float)):
        return False
    return math.isfinite(delay_ms) and delay_ms > 0


async def with_timeout(awaitable: Awaitable[T], timeout_ms: float, operation: str = "operation") -> T:
    """Await ``awaitable`` with a deadline, raising ``OperationTimeoutError`` on expiry."""

    timeout_ms = validate_timeout(timeout_ms, f"{operation} timeout")
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as exc:
        raise OperationTimeoutError(operation, timeout_ms) from exc


async def with_timeout_all(
    awaitables: Iterable[Awaitable[T]],
    timeout_ms: float,
    operation: str = "operation",
) -> list[T | BaseException]:
    """Race each awaitable against its own deadline.

    Results keep input order. An item that times out or fails is returned as
    its exception instead of aborting the rest.
    """

    timeout_ms = validate_timeout(timeout_ms, f"{operation} timeout")
    wrapped = [
        with_timeout(item, timeout_ms, f"{operation}[{index}]") for index, item in enumerate(awaitables)
    ]
    return list(await asyncio.gather(*wrapped, return_exceptions=True))


class Timer:
    """A single scheduled callback backed by an asyncio task.

    ``schedule`` replaces any pending callback. Invalid delays are rejected
    without scheduling anything.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._task: Optional[asyncio.Task[None]] = None
        self.fire_at: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, delay_ms: float, callback: Callable[[], Awaitable[Any] | Any]) -> bool:
        if not is_valid_delay(delay_ms):
            logger.warning("timer.invalid_delay", extra={"timer": self._name, "delay_ms": delay_ms})
            return False
        self.cancel()
        loop = asyncio.get_running_loop()
        self.fire_at = loop.time() + delay_ms / 1000
        self._task = loop.create_task(self._run(delay_ms, callback), name=self._name)
        return True

    def cancel(self) -> None:
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None
        self.fire_at = None

    async def _run(self, delay_ms: float, callback: Callable[[], Awaitable[Any] | Any]) -> None:
        await asyncio.sleep(delay_ms / 1000)
        self.fire_at = None
        try:
            result = callback()
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("timer.callback_failed", extra={"timer": self._name}, exc_info=exc)


async def cancel_task(task: Optional[asyncio.Task[Any]]) -> None:
    """Cancel ``task`` and wait for it to unwind."""

    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
