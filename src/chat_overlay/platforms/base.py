"""Adapter contract shared by every platform connection."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from ..errors import PlatformErrorHandler
from ..models import CanonicalEvent, ConnectionState, PlatformId

logger = logging.getLogger(__name__)

EventSubscriber = Callable[[CanonicalEvent], Awaitable[None] | None]
Unsubscribe = Callable[[], None]


class PlatformAdapter(ABC):
    """Owns one live connection and emits ``CanonicalEvent`` objects in arrival order."""

    platform: PlatformId

    def __init__(self) -> None:
        self._subscribers: list[EventSubscriber] = []
        self._state = ConnectionState.UNINITIALIZED
        self._log = logging.getLogger(f"{__name__}.{self.platform.value}")
        self._errors = PlatformErrorHandler(self._log, self.platform.value)

    @abstractmethod
    async def connect(self) -> None:
        """Open the platform session."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the session and cancel background work. Never raises."""

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state in (ConnectionState.CONNECTED, ConnectionState.READY)

    def on_event(self, subscriber: EventSubscriber) -> Unsubscribe:
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._log.debug(
            "adapter.state",
            extra={"platform": self.platform.value, "from": self._state.value, "to": state.value},
        )
        self._state = state

    async def _emit(self, event: Optional[CanonicalEvent]) -> None:
        if event is None:
            return
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._errors.handle_event_processing_error(exc, event.type.value, event.id)
