"""StreamElements realtime follows and tips, with a REST fallback for tips."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any, Callable, Deque, Mapping, Optional

import websockets

from ..errors import AuthError, ConfigurationError, EventProcessingError, OperationTimeoutError, TransientNetworkError
from ..models import CanonicalEvent, ConnectionState, EventType, PlatformId
from ..utils.currency import symbol_for
from ..utils.endpoints import STREAMELEMENTS_WS, streamelements_api_url
from ..utils.http_client import HttpClient
from ..utils.retry import RetrySystem
from ..utils.timeouts import cancel_task
from ..utils.timestamps import now_ms
from .base import PlatformAdapter
from .normalize import build_event, positive_float

logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL_SEC = 30
FOLLOW_PLATFORMS = {"youtube": PlatformId.YOUTUBE, "twitch": PlatformId.TWITCH}


def normalize_follow(data: Mapping[str, Any]) -> Optional[CanonicalEvent]:
    """Re-emit a StreamElements follow under the platform it happened on."""

    platform = FOLLOW_PLATFORMS.get(str(data.get("platform") or "").lower())
    if platform is None:
        logger.debug("streamelements.unknown_follow_platform", extra={"platform": data.get("platform")})
        return None
    username = data.get("displayName") or data.get("username")
    if not isinstance(username, str) or not username.strip():
        logger.warning("streamelements.follow_without_username", extra={"data": dict(data)})
        return None
    return build_event(
        platform,
        EventType.FOLLOW,
        username=username,
        user_id=data.get("userId") or data.get("providerId"),
        timestamp=data.get("createdAt"),
        extra={"source": "streamelements"},
    )


def normalize_tip(doc: Mapping[str, Any]) -> CanonicalEvent:
    """Turn a tip document into a ``donations`` gift."""

    donation = doc.get("donation") if isinstance(doc.get("donation"), Mapping) else doc
    user = donation.get("user") if isinstance(donation.get("user"), Mapping) else {}
    amount = positive_float(donation.get("amount"))
    currency = donation.get("currency")
    if amount is None:
        raise EventProcessingError("StreamElements tip requires a positive amount")
    if not isinstance(currency, str) or not currency.strip():
        raise EventProcessingError("StreamElements tip requires a currency")
    code = currency.strip().upper()
    return build_event(
        PlatformId.DONATIONS,
        EventType.GIFT,
        username=user.get("username") or donation.get("name"),
        user_id=user.get("_id") or user.get("email"),
        timestamp=doc.get("createdAt"),
        message=donation.get("message"),
        amount=amount,
        currency=code,
        symbol=symbol_for(code),
        gift_type="Tip",
        gift_count=1,
        extra={"tip_id": str(doc.get("_id") or doc.get("id") or ""), "provider": "streamelements"},
    )


ConnectFactory = Callable[..., Any]


class StreamElementsAdapter(PlatformAdapter):
    """Realtime socket for follows and tips plus a REST tips poller."""

    platform = PlatformId.DONATIONS

    def __init__(
        self,
        *,
        jwt_token: str,
        http: HttpClient,
        channel_id: Optional[str] = None,
        youtube_channel_id: Optional[str] = None,
        twitch_channel_id: Optional[str] = None,
        tips_poll_interval_sec: float = 30,
        retry: Optional[RetrySystem] = None,
        ws_url: str = STREAMELEMENTS_WS,
        connect_factory: ConnectFactory = websockets.connect,
    ) -> None:
        if not jwt_token:
            raise ConfigurationError("StreamElements JWT token is required")
        super().__init__()
        self._jwt = jwt_token
        self._http = http
        self._channel_id = channel_id
        self._follow_channels = [cid for cid in (youtube_channel_id, twitch_channel_id) if cid]
        self._poll_interval = tips_poll_interval_sec
        self._retry = retry or RetrySystem()
        self._ws_url = ws_url
        self._connect = connect_factory
        self._ws: Any = None
        self._tasks: list[asyncio.Task[None]] = []
        self._stop_event = asyncio.Event()
        self._seen_ids: Deque[str] = deque(maxlen=256)
        self._start_ms = now_ms()
        if not self._follow_channels:
            self._log.warning("streamelements.no_follow_channels")

    async def connect(self) -> None:
        if self._tasks:
            return
        self._stop_event.clear()
        self._start_ms = now_ms()
        self._set_state(ConnectionState.CONNECTING)
        self._tasks.append(asyncio.create_task(self._run_ws(), name="streamelements-ws"))
        if self._channel_id:
            self._tasks.append(asyncio.create_task(self._run_rest(), name="streamelements-rest"))

    async def disconnect(self) -> None:
        self._stop_event.set()
        for task in self._tasks:
            await cancel_task(task)
        self._tasks.clear()
        self._ws = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def send(self, message: Mapping[str, Any]) -> bool:
        if self._ws is None:
            self._log.debug("streamelements.send_without_connection", extra={"type": message.get("type")})
            return False
        await self._ws.send(json.dumps(message))
        return True

    async def _run_ws(self) -> None:
        while not self._stop_event.is_set():
            keepalive: Optional[asyncio.Task[None]] = None
            try:
                async with self._connect(self._ws_url) as ws:
                    self._ws = ws
                    self._set_state(ConnectionState.CONNECTED)
                    await self.send({"type": "auth", "token": self._jwt})
                    keepalive = asyncio.create_task(self._keepalive(), name="streamelements-keepalive")
                    async for raw in ws:
                        await self.handle_message(raw)
                if self._stop_event.is_set():
                    return
                raise ConnectionError("StreamElements socket closed")
            except asyncio.CancelledError:
                raise
            except AuthError as exc:
                self._errors.handle_auth_error(exc)
                self._set_state(ConnectionState.FAILED)
                return
            except Exception as exc:
                self._set_state(ConnectionState.DISCONNECTED)
                self._errors.handle_connection_error(exc)
                if self._retry.has_exceeded_max_retries(self.platform.value):
                    self._set_state(ConnectionState.FAILED)
                    return
                delay_ms = self._retry.increment(self.platform.value)
                await asyncio.sleep(delay_ms / 1000)
            finally:
                self._ws = None
                await cancel_task(keepalive)

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(KEEPALIVE_INTERVAL_SEC)
            if self.is_connected():
                await self.send({"type": "ping"})
                self._log.debug("streamelements.ping_sent")

    async def handle_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            self._log.debug("streamelements.invalid_json")
            return
        if not isinstance(message, Mapping):
            return
        kind = message.get("type")
        if kind == "auth":
            await self._handle_auth(message)
        elif kind == "ping":
            await self.send({"type": "pong"})
        elif kind == "pong":
            self._log.debug("streamelements.pong")
        elif kind in ("event", "message"):
            await self._handle_event(message)
        else:
            self._log.debug("streamelements.unknown_message", extra={"type": kind})

    async def _handle_auth(self, message: Mapping[str, Any]) -> None:
        if not message.get("success"):
            raise AuthError(f"StreamElements authentication failed: {message.get('error') or 'unknown error'}")
        self._retry.handle_connection_success(self.platform.value)
        self._set_state(ConnectionState.READY)
        for channel in self._follow_channels:
            await self.send({"type": "subscribe", "topic": f"channel.follow.{channel}"})
        if self._channel_id:
            await self.send({"type": "subscribe", "topic": f"channel.tips.{self._channel_id}"})
        self._log.info("streamelements.authenticated", extra={"follow_channels": len(self._follow_channels)})

    async def _handle_event(self, message: Mapping[str, Any]) -> None:
        topic = str(message.get("topic") or "")
        data = message.get("data") if isinstance(message.get("data"), Mapping) else {}
        try:
            if topic.startswith("channel.tips") or data.get("type") == "tip":
                await self._accept_tip(data)
            else:
                await self._emit(normalize_follow(data))
        except EventProcessingError as exc:
            self._errors.handle_event_processing_error(exc, topic or "event", data)

    async def _accept_tip(self, doc: Mapping[str, Any]) -> None:
        event = normalize_tip(doc)
        if event.timestamp_ms < self._start_ms:
            return
        tip_id = event.extra.get("tip_id") or event.id
        if tip_id in self._seen_ids:
            return
        self._seen_ids.append(tip_id)
        await self._emit(event)

    async def fetch_latest_tips(self, limit: int = 10) -> list[Mapping[str, Any]]:
        url = streamelements_api_url(f"tips/{self._channel_id}", {"limit": limit, "sort": "-createdAt"})
        response = await self._http.get(
            url,
            headers={"Authorization": f"Bearer {self._jwt}", "Accept": "application/json"},
            operation="streamelements tips",
        )
        if response.status_code in (401, 403):
            raise AuthError("StreamElements rejected the JWT token", status_code=response.status_code)
        if response.status_code >= 400:
            raise TransientNetworkError(f"StreamElements tips returned HTTP {response.status_code}")
        body = response.json()
        docs = body.get("docs") if isinstance(body, Mapping) else body
        return [doc for doc in docs or [] if isinstance(doc, Mapping)]

    async def _run_rest(self) -> None:
        while not self._stop_event.is_set():
            try:
                docs = await self.fetch_latest_tips()
            except AuthError as exc:
                self._errors.handle_auth_error(exc)
                return
            except (TransientNetworkError, OperationTimeoutError) as exc:
                self._log.warning("streamelements.rest_error", extra={"error": str(exc)})
            else:
                for doc in reversed(docs):
                    try:
                        await self._accept_tip(doc)
                    except EventProcessingError as exc:
                        self._errors.handle_event_processing_error(exc, "tip", doc)
            await asyncio.sleep(self._poll_interval)
