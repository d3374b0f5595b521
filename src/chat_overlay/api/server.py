"""FastAPI control surface for the running overlay engine."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from fastapi import FastAPI, HTTPException, status
from pydantic import BaseModel, Field

from ..errors import EventProcessingError
from ..models import CanonicalEvent, DisplayItem, EventType, PlatformId
from ..obs.display_queue import DisplayQueue
from ..obs.goals import GoalTracker
from ..platforms.base import PlatformAdapter
from ..platforms.normalize import build_event
from ..stream_detector import StreamDetector


def _item_to_dict(item: Optional[DisplayItem]) -> Optional[Dict[str, Any]]:
    if item is None:
        return None
    payload = item.payload
    return {
        "id": item.id,
        "type": item.type,
        "platform": item.platform,
        "priority": item.priority,
        "username": payload.get("username"),
        "text": payload.get("display_message") or payload.get("message"),
        "duration_ms": item.duration_ms,
    }


class NotifyCommand(BaseModel):
    platform: PlatformId = PlatformId.TWITCH
    type: EventType = EventType.GIFT
    username: str = Field(..., min_length=1, max_length=120)
    user_id: Optional[str] = Field(default=None, max_length=120)
    message: Optional[str] = Field(default=None, max_length=2000)
    amount: Optional[float] = Field(default=None, gt=0)
    currency: Optional[str] = Field(default=None, max_length=16)
    gift_type: Optional[str] = Field(default=None, max_length=120)
    gift_count: Optional[int] = Field(default=None, ge=1)
    extra: Dict[str, Any] = Field(default_factory=dict)

    def to_event(self) -> CanonicalEvent:
        gift_count = self.gift_count
        if self.type is EventType.GIFT and gift_count is None:
            gift_count = 1
        return build_event(
            self.platform,
            self.type,
            username=self.username,
            user_id=self.user_id,
            message=self.message,
            amount=self.amount,
            currency=self.currency,
            gift_type=self.gift_type,
            gift_count=gift_count,
            extra=self.extra,
        )


EventHandler = Callable[[CanonicalEvent], Awaitable[Any]]


class ControlServer:
    """Wraps the FastAPI application exposing queue and platform controls."""

    def __init__(
        self,
        queue: DisplayQueue,
        *,
        adapters: Optional[Mapping[str, PlatformAdapter]] = None,
        detector: Optional[StreamDetector] = None,
        goals: Optional[GoalTracker] = None,
        event_handler: Optional[EventHandler] = None,
    ) -> None:
        self._queue = queue
        self._adapters = adapters if adapters is not None else {}
        self._detector = detector
        self._goals = goals
        self._event_handler = event_handler
        self._shutdown_trigger: Optional[Callable[[], None]] = None
        self._app = FastAPI(title="Chat Overlay Control", version="1.0.0")

        @self._app.get("/health", status_code=status.HTTP_200_OK)
        async def health() -> Dict[str, str]:  # noqa: ANN202 - FastAPI response
            return {"status": "ok"}

        @self._app.get("/queue")
        async def queue_state() -> Dict[str, Any]:  # noqa: ANN202 - FastAPI response
            return {
                "current": _item_to_dict(self._queue.current),
                "queue_size": self._queue.size(),
                "shown": self._queue.shown_count,
                "dropped": len(self._queue.dropped()),
                "preview": [_item_to_dict(item) for item in self._queue.preview(10)],
            }

        @self._app.post("/queue/skip", status_code=status.HTTP_202_ACCEPTED)
        async def skip_current() -> Dict[str, str]:  # noqa: ANN202 - FastAPI response
            skipped = self._queue.skip_current()
            return {"status": "skip_requested" if skipped else "nothing_showing"}

        @self._app.post("/queue/clear", status_code=status.HTTP_202_ACCEPTED)
        async def clear_queue() -> Dict[str, Any]:  # noqa: ANN202 - FastAPI response
            removed = self._queue.clear()
            return {"status": "queue_cleared", "removed": removed}

        @self._app.get("/platforms")
        async def platforms() -> Dict[str, Any]:  # noqa: ANN202 - FastAPI response
            result: Dict[str, Any] = {}
            for name, adapter in self._adapters.items():
                entry: Dict[str, Any] = {"state": adapter.state.value, "connected": adapter.is_connected()}
                if self._detector is not None:
                    entry["detection"] = self._detector.status(name)
                result[name] = entry
            return result

        @self._app.get("/goals")
        async def goals() -> Dict[str, Any]:  # noqa: ANN202 - FastAPI response
            if self._goals is None:
                return {}
            return self._goals.all_states()

        @self._app.post("/commands/notify", status_code=status.HTTP_202_ACCEPTED)
        async def inject_event(payload: NotifyCommand) -> Dict[str, str]:  # noqa: ANN202
            if not self._event_handler:
                return {"status": "handler_unavailable"}
            try:
                event = payload.to_event()
            except EventProcessingError as exc:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
            await self._event_handler(event)
            return {"status": "queued", "id": event.id}

        @self._app.post("/control/shutdown", status_code=status.HTTP_202_ACCEPTED)
        async def request_shutdown() -> Dict[str, str]:  # noqa: ANN202
            if self._shutdown_trigger:
                self._shutdown_trigger()
            return {"status": "shutdown_requested"}

    def register_shutdown(self, trigger: Callable[[], None]) -> None:
        self._shutdown_trigger = trigger

    @property
    def app(self) -> FastAPI:
        return self._app
