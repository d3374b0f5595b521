"""OBS WebSocket v5 request/reply client."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import itertools
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Mapping, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..errors import AuthError, ObsRequestError, PlatformErrorHandler, TransientNetworkError
from ..utils.timeouts import Timer, cancel_task, with_timeout

logger = logging.getLogger(__name__)

OP_HELLO = 0
OP_IDENTIFY = 1
OP_IDENTIFIED = 2
OP_EVENT = 5
OP_REQUEST = 6
OP_REQUEST_RESPONSE = 7

RPC_VERSION = 1
# General | Scenes | Inputs | SceneItems
EVENT_SUBSCRIPTIONS = (1 << 0) | (1 << 2) | (1 << 3) | (1 << 7)
CACHE_INVALIDATING_EVENTS = frozenset(
    {"SceneItemCreated", "SceneItemRemoved", "SceneCreated", "SceneRemoved", "InputCreated", "InputRemoved"}
)
CONNECTION_CLOSED = "ConnectionClosed"

EventHandler = Callable[[Mapping[str, Any]], Awaitable[None] | None]
ConnectFactory = Callable[..., Any]


def auth_response(password: str, salt: str, challenge: str) -> str:
    """Compute the Identify ``authentication`` string for a Hello challenge."""

    secret = base64.b64encode(hashlib.sha256((password + salt).encode()).digest()).decode()
    return base64.b64encode(hashlib.sha256((secret + challenge).encode()).digest()).decode()


class OBSConnectionManager:
    """Owns at most one OBS session and serializes requests over it.

    Construct one per process and pass it to the components that need OBS.
    A closed session fails every pending request and schedules a reconnect.
    """

    def __init__(
        self,
        *,
        url: str,
        password: Optional[str] = None,
        timeout_ms: float = 10_000,
        enabled: bool = True,
        reconnect_interval_ms: float = 30_000,
        connect_factory: ConnectFactory = websockets.connect,
    ) -> None:
        self._url = url
        self._password = password
        self._timeout_ms = timeout_ms
        self._enabled = enabled
        self._reconnect_interval_ms = reconnect_interval_ms
        self._connect = connect_factory
        self._ws: Any = None
        self._identified = False
        self._reader: Optional[asyncio.Task[None]] = None
        self._connect_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Future[Mapping[str, Any]]] = {}
        self._ids = itertools.count(1)
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._scene_items: dict[str, int] = {}
        self._reconnect = Timer("obs-reconnect")
        self._closing = False
        self._errors = PlatformErrorHandler(logger, "obs-connection")

    @property
    def enabled(self) -> bool:
        return self._enabled

    def is_connected(self) -> bool:
        return self._ws is not None and self._identified

    def is_ready(self) -> bool:
        return self._enabled and self.is_connected()

    async def connect(self) -> bool:
        if not self._enabled:
            return False
        async with self._connect_lock:
            if self.is_connected():
                return True
            self._closing = False
            try:
                await with_timeout(self._open(), self._timeout_ms, "obs connect")
            except AuthError:
                await self._drop_socket()
                raise
            except Exception as exc:
                await self._drop_socket()
                self._errors.handle_connection_error(exc)
                self._schedule_reconnect()
                raise TransientNetworkError(f"Could not connect to OBS at {self._url}: {exc}") from exc
            self._reconnect.cancel()
            self._reader = asyncio.create_task(self._read_loop(self._ws), name="obs-reader")
            logger.info("obs.connected", extra={"url": self._url})
            return True

    async def _open(self) -> None:
        self._ws = await self._connect(self._url, subprotocols=["obswebsocket.json"])
        hello = json.loads(await self._ws.recv())
        if hello.get("op") != OP_HELLO:
            raise TransientNetworkError(f"Expected OBS Hello, got op {hello.get('op')}")
        data = hello.get("d") or {}
        identify: dict[str, Any] = {"rpcVersion": RPC_VERSION, "eventSubscriptions": EVENT_SUBSCRIPTIONS}
        challenge = data.get("authentication")
        if challenge:
            if not self._password:
                raise AuthError("OBS requires a password but none is configured")
            identify["authentication"] = auth_response(self._password, challenge["salt"], challenge["challenge"])
        await self._ws.send(json.dumps({"op": OP_IDENTIFY, "d": identify}))
        reply = json.loads(await self._ws.recv())
        if reply.get("op") != OP_IDENTIFIED:
            raise AuthError("OBS did not accept the Identify message")
        self._identified = True
        logger.debug(
            "obs.identified",
            extra={
                "server_version": data.get("obsWebSocketVersion"),
                "rpc_version": (reply.get("d") or {}).get("negotiatedRpcVersion"),
            },
        )

    async def ensure_connected(self) -> bool:
        if self.is_connected():
            return True
        return await self.connect()

    async def call(self, request_type: str, params: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
        """Send one request and return its ``responseData``."""

        await self.ensure_connected()
        request_id = f"{request_type}-{next(self._ids)}"
        future: asyncio.Future[Mapping[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {
            "op": OP_REQUEST,
            "d": {"requestType": request_type, "requestId": request_id, "requestData": dict(params or {})},
        }
        try:
            async with self._send_lock:
                ws = self._ws
                if ws is None:
                    raise TransientNetworkError(f"OBS connection lost before {request_type}")
                try:
                    await ws.send(json.dumps(message))
                except ConnectionClosed as exc:
                    raise TransientNetworkError(f"OBS connection closed during {request_type}") from exc
            return await with_timeout(future, self._timeout_ms, f"obs {request_type}")
        finally:
            self._pending.pop(request_id, None)

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return _unsubscribe

    async def get_scene_item_id(self, scene_name: str, source_name: str) -> int:
        key = f"{scene_name}:{source_name}"
        cached = self._scene_items.get(key)
        if cached is not None:
            return cached
        response = await self.call("GetSceneItemId", {"sceneName": scene_name, "sourceName": source_name})
        item_id = response.get("sceneItemId")
        if not isinstance(item_id, int):
            raise ObsRequestError("GetSceneItemId", None, f"{source_name!r} not found in {scene_name!r}")
        self._scene_items[key] = item_id
        return item_id

    def clear_scene_item_cache(self) -> None:
        self._scene_items.clear()

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                await self.handle_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._errors.handle_connection_error(exc, action="read")
        if ws is self._ws:
            await self._on_closed()

    async def handle_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.debug("obs.invalid_json")
            return
        op = message.get("op")
        data = message.get("d") or {}
        if op == OP_REQUEST_RESPONSE:
            self._resolve(data)
        elif op == OP_EVENT:
            await self._dispatch(data.get("eventType"), data.get("eventData") or {})

    def _resolve(self, data: Mapping[str, Any]) -> None:
        future = self._pending.get(data.get("requestId"))
        if future is None or future.done():
            return
        status = data.get("requestStatus") or {}
        if status.get("result"):
            future.set_result(data.get("responseData") or {})
        else:
            future.set_exception(ObsRequestError(data.get("requestType", "request"), status.get("code"), status.get("comment")))

    async def _dispatch(self, event_type: Optional[str], event_data: Mapping[str, Any]) -> None:
        if event_type in CACHE_INVALIDATING_EVENTS:
            self.clear_scene_item_cache()
        for handler in list(self._handlers.get(event_type or "", ())):
            try:
                result = handler(event_data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._errors.handle_event_processing_error(exc, event_type or "event", event_data)

    async def _on_closed(self) -> None:
        self._ws = None
        self._identified = False
        self.clear_scene_item_cache()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransientNetworkError("OBS connection closed"))
        self._pending.clear()
        logger.warning("obs.connection_closed")
        await self._dispatch(CONNECTION_CLOSED, {})
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing or not self._enabled:
            return
        self._reconnect.schedule(self._reconnect_interval_ms, self._try_reconnect)

    async def _try_reconnect(self) -> None:
        try:
            await self.connect()
        except (TransientNetworkError, AuthError) as exc:
            logger.debug("obs.reconnect_failed", extra={"error": str(exc)})

    async def _drop_socket(self) -> None:
        ws, self._ws = self._ws, None
        self._identified = False
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("obs.close_failed", extra={"error": str(exc)})

    async def disconnect(self) -> None:
        self._closing = True
        self._reconnect.cancel()
        reader, self._reader = self._reader, None
        await self._drop_socket()
        await cancel_task(reader)
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
        logger.info("obs.disconnected")
