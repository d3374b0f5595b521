"""TikTok Live over the EulerStream WebSocket relay, with gift streak aggregation."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..errors import ConfigurationError, EventProcessingError, PlatformProbeError
from ..models import CanonicalEvent, ConnectionState, EventType, PlatformId
from ..utils.endpoints import with_query
from ..utils.retry import RetrySystem
from ..utils.timeouts import Timer, cancel_task, validate_timeout
from ..utils.timestamps import resolve_tiktok_timestamp
from .base import PlatformAdapter
from .normalize import build_event, positive_float, positive_int

logger = logging.getLogger(__name__)

TIKTOK_CURRENCY = "coins"
COMBO_GIFT_TYPE = 1
DUPLICATE_WINDOW_MS = 1_000
ENVELOPE_GIFT_TYPE = "Treasure Chest"

CLOSE_NORMAL = 1000
CLOSE_INVALID_OPTIONS = 4401
CLOSE_NOT_LIVE = 4404
CLOSE_TOO_MANY_CONNECTIONS = 4429
NO_RECONNECT_CODES = frozenset({CLOSE_NORMAL, CLOSE_INVALID_OPTIONS, CLOSE_NOT_LIVE, CLOSE_TOO_MANY_CONNECTIONS})
CLOSE_REASONS = {
    CLOSE_INVALID_OPTIONS: "Invalid options provided",
    CLOSE_NOT_LIVE: "User is not live",
    CLOSE_TOO_MANY_CONNECTIONS: "Too many connections",
}


def extract_user(data: Mapping[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """Return ``(user_id, display_name)`` from a relay payload."""

    user = data.get("user") if isinstance(data.get("user"), Mapping) else data
    user_id = user.get("userId") or user.get("id") or data.get("userId")
    name = user.get("nickname") or user.get("uniqueId") or data.get("nickname") or data.get("uniqueId")
    return (str(user_id) if user_id not in (None, "") else None), name


@dataclass(slots=True)
class TikTokGift:
    """Fields of one raw gift frame."""

    user_id: str
    username: str
    gift_type: str
    repeat_count: int
    unit_amount: float
    combo_type: int = 0
    repeat_end: bool = False
    timestamp_ms: Optional[int] = None
    gift_id: Optional[Any] = None

    @property
    def in_progress(self) -> bool:
        return self.combo_type == COMBO_GIFT_TYPE and not self.repeat_end

    @property
    def streak_completed(self) -> bool:
        return self.combo_type == COMBO_GIFT_TYPE and self.repeat_end


def extract_gift(data: Mapping[str, Any]) -> TikTokGift:
    user_id, username = extract_user(data)
    details = data.get("giftDetails") if isinstance(data.get("giftDetails"), Mapping) else {}
    gift_type = details.get("giftName") or data.get("giftName")
    repeat_count = positive_int(data.get("repeatCount"))
    unit_amount = positive_float(details.get("diamondCount", data.get("diamondCount")))
    if not user_id or not username or not gift_type:
        raise EventProcessingError("TikTok gift payload missing required fields")
    if repeat_count is None:
        raise EventProcessingError("TikTok gift requires a positive repeatCount")
    if unit_amount is None:
        raise EventProcessingError("TikTok gift requires a positive diamondCount")
    combo = details.get("giftType", data.get("giftType"))
    return TikTokGift(
        user_id=user_id,
        username=username,
        gift_type=str(gift_type),
        repeat_count=repeat_count,
        unit_amount=unit_amount,
        combo_type=combo if isinstance(combo, int) else 0,
        repeat_end=bool(data.get("repeatEnd")),
        timestamp_ms=resolve_tiktok_timestamp(data),
        gift_id=details.get("id", data.get("giftId")),
    )


def gift_event(gift: TikTokGift, count: int, *, aggregated: bool) -> CanonicalEvent:
    return build_event(
        PlatformId.TIKTOK,
        EventType.GIFT,
        username=gift.username,
        user_id=gift.user_id,
        timestamp_ms=gift.timestamp_ms,
        amount=gift.unit_amount,
        currency=TIKTOK_CURRENCY,
        gift_type=gift.gift_type,
        gift_count=count,
        is_aggregated=aggregated,
        extra={
            "gift_id": gift.gift_id,
            "unit_amount": gift.unit_amount,
            "total_amount": gift.unit_amount * count,
            "is_streak_completed": gift.streak_completed,
        },
    )


GiftSink = Callable[[CanonicalEvent], Awaitable[None]]


@dataclass(slots=True)
class GiftAggregation:
    gift: TikTokGift
    total_count: int = 0
    last_processed_ms: float = 0.0
    timer: Timer = field(default_factory=lambda: Timer("tiktok-gift"))


class TikTokGiftAggregator:
    """Rolls up gift streaks keyed by ``(user_id, gift_type)``.

    TikTok repeat counts are cumulative, so each frame overwrites the stored
    total. The entry flushes after ``delay_ms`` without a new frame, or at
    once when the streak reports ``repeatEnd``.
    """

    def __init__(
        self,
        sink: GiftSink,
        *,
        delay_ms: float = 2_000,
        enabled: bool = True,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000,
    ) -> None:
        self._sink = sink
        self._delay_ms = validate_timeout(delay_ms, "gift aggregation delay")
        self._enabled = enabled
        self._clock = clock
        self._entries: dict[tuple[str, str], GiftAggregation] = {}
        self._completed: dict[tuple[str, str], tuple[int, float]] = {}

    def pending(self) -> dict[tuple[str, str], int]:
        return {key: entry.total_count for key, entry in self._entries.items()}

    async def add(self, gift: TikTokGift) -> None:
        if not self._enabled:
            if gift.in_progress:
                logger.debug("tiktok.streak_in_progress", extra={"user_id": gift.user_id, "gift": gift.gift_type})
                return
            await self._sink(gift_event(gift, gift.repeat_count, aggregated=False))
            return

        key = (gift.user_id, gift.gift_type)
        now = self._clock()
        if gift.streak_completed and self._is_repeated_end(key, gift.repeat_count, now):
            logger.debug("tiktok.duplicate_gift", extra={"key": key, "count": gift.repeat_count})
            return
        entry = self._entries.get(key)
        if entry is None:
            entry = GiftAggregation(gift=gift, last_processed_ms=now, timer=Timer(f"tiktok-gift-{gift.user_id}"))
            self._entries[key] = entry
        elif (
            not gift.streak_completed
            and entry.total_count == gift.repeat_count
            and now - entry.last_processed_ms < DUPLICATE_WINDOW_MS
        ):
            logger.debug("tiktok.duplicate_gift", extra={"key": key, "count": gift.repeat_count})
            return

        entry.gift = gift
        entry.total_count = gift.repeat_count
        entry.last_processed_ms = now

        if gift.streak_completed:
            self._completed[key] = (gift.repeat_count, now)
            await self.flush(key)
            return
        entry.timer.schedule(self._delay_ms, lambda: self.flush(key))

    def _is_repeated_end(self, key: tuple[str, str], count: int, now: float) -> bool:
        for stale in [k for k, (_, at) in self._completed.items() if now - at >= DUPLICATE_WINDOW_MS]:
            del self._completed[stale]
        completed = self._completed.get(key)
        return completed is not None and completed[0] == count

    async def flush(self, key: tuple[str, str]) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        entry.timer.cancel()
        try:
            event = gift_event(entry.gift, entry.total_count, aggregated=True)
        except EventProcessingError as exc:
            logger.warning("tiktok.aggregation_invalid", extra={"key": key, "error": str(exc)})
            return
        logger.info(
            "tiktok.gift_aggregated",
            extra={"user": entry.gift.username, "gift": entry.gift.gift_type, "count": entry.total_count},
        )
        await self._sink(event)

    async def flush_all(self) -> None:
        for key in list(self._entries):
            await self.flush(key)

    def cleanup(self) -> None:
        for entry in self._entries.values():
            entry.timer.cancel()
        self._entries.clear()
        self._completed.clear()


def normalize_chat(data: Mapping[str, Any]) -> CanonicalEvent:
    user_id, username = extract_user(data)
    return build_event(
        PlatformId.TIKTOK,
        EventType.CHAT,
        username=username,
        user_id=user_id,
        timestamp_ms=resolve_tiktok_timestamp(data),
        message=data.get("comment") or data.get("message"),
        extra={"message_id": data.get("msgId")},
    )


def normalize_social(data: Mapping[str, Any]) -> Optional[CanonicalEvent]:
    display = str(data.get("displayType") or data.get("label") or "").lower()
    if "follow" not in display:
        return None
    user_id, username = extract_user(data)
    return build_event(
        PlatformId.TIKTOK,
        EventType.FOLLOW,
        username=username,
        user_id=user_id,
        timestamp_ms=resolve_tiktok_timestamp(data),
    )


def normalize_subscribe(data: Mapping[str, Any]) -> CanonicalEvent:
    user_id, username = extract_user(data)
    months = positive_int(data.get("subMonth"))
    return build_event(
        PlatformId.TIKTOK,
        EventType.PAYPIGGY,
        username=username,
        user_id=user_id,
        timestamp_ms=resolve_tiktok_timestamp(data),
        extra={"months": months, "is_renewal": months is not None and months > 1, "is_gift": False},
    )


def normalize_envelope(data: Mapping[str, Any]) -> CanonicalEvent:
    user_id, username = extract_user(data)
    amount = positive_float(data.get("giftCoins", data.get("amount")))
    if amount is None:
        raise EventProcessingError("TikTok envelope requires a coin amount")
    return build_event(
        PlatformId.TIKTOK,
        EventType.GIFT,
        username=username,
        user_id=user_id,
        timestamp_ms=resolve_tiktok_timestamp(data),
        amount=amount,
        currency=TIKTOK_CURRENCY,
        gift_type=ENVELOPE_GIFT_TYPE,
        gift_count=1,
        extra={"is_envelope": True, "envelope_id": data.get("envelopeId") or data.get("msgId")},
    )


def normalize_viewer_count(data: Mapping[str, Any]) -> Optional[CanonicalEvent]:
    count = data.get("viewerCount", data.get("totalUser"))
    if not isinstance(count, int) or count < 0:
        return None
    return build_event(
        PlatformId.TIKTOK,
        EventType.VIEWER_COUNT,
        timestamp_ms=resolve_tiktok_timestamp(data),
        extra={"viewer_count": count},
    )


ConnectFactory = Callable[..., Any]


class TikTokAdapter(PlatformAdapter):
    """Listens to a creator's live room through the relay WebSocket."""

    platform = PlatformId.TIKTOK

    def __init__(
        self,
        *,
        username: str,
        ws_url: str,
        api_key: Optional[str] = None,
        aggregation_enabled: bool = True,
        aggregation_delay_ms: float = 2_000,
        retry: Optional[RetrySystem] = None,
        connect_factory: ConnectFactory = websockets.connect,
        room_timeout_sec: float = 15.0,
    ) -> None:
        if not username:
            raise ConfigurationError("TikTok username is required")
        super().__init__()
        self._username = username.lstrip("@")
        self._ws_url = ws_url
        self._api_key = api_key
        self._retry = retry or RetrySystem()
        self._connect = connect_factory
        self._room_timeout = room_timeout_sec
        self._aggregator = TikTokGiftAggregator(
            self._emit, delay_ms=aggregation_delay_ms, enabled=aggregation_enabled
        )
        self._task: Optional[asyncio.Task[None]] = None
        self._room: Optional[asyncio.Future[dict[str, Any]]] = None
        self._room_id: Optional[str] = None
        self._not_live = False
        self._stopping = False

    @property
    def aggregator(self) -> TikTokGiftAggregator:
        return self._aggregator

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    def connection_url(self) -> str:
        params = {"uniqueId": self._username}
        if self._api_key:
            params["apiKey"] = self._api_key
        return with_query(self._ws_url, params)

    async def probe_live(self) -> bool:
        """Liveness hint for the stream detector.

        Reports False once after the relay closed with "not live", so the
        next probe tries to connect again.
        """

        if self.is_connected():
            return True
        if self._not_live:
            self._not_live = False
            return False
        return True

    async def connect(self) -> None:
        if self._task and not self._task.done():
            return
        self._stopping = False
        self._set_state(ConnectionState.CONNECTING)
        loop = asyncio.get_running_loop()
        self._room = loop.create_future()
        self._task = asyncio.create_task(self._run(), name="tiktok-relay")
        try:
            room = await asyncio.wait_for(asyncio.shield(self._room), timeout=self._room_timeout)
        except asyncio.TimeoutError as exc:
            await self.disconnect()
            raise PlatformProbeError("No room info received from TikTok relay") from exc
        except Exception as exc:
            await self.disconnect()
            if isinstance(exc, PlatformProbeError):
                raise
            raise PlatformProbeError(f"Could not reach TikTok relay: {exc}") from exc
        self._log.info("tiktok.connected", extra={"room_id": room.get("roomId")})

    async def disconnect(self) -> None:
        self._stopping = True
        await cancel_task(self._task)
        self._task = None
        await self._aggregator.flush_all()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _run(self) -> None:
        while not self._stopping:
            close_code: Optional[int] = None
            try:
                async with self._connect(self.connection_url()) as ws:
                    self._set_state(ConnectionState.CONNECTED)
                    async for raw in ws:
                        await self.handle_message(raw)
                    close_code = getattr(ws, "close_code", None)
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as exc:
                close_code = exc.rcvd.code if exc.rcvd is not None else None
            except Exception as exc:
                self._errors.handle_connection_error(exc)
                self._fail_room(exc)

            self._set_state(ConnectionState.DISCONNECTED)
            if self._stopping:
                return
            if close_code in NO_RECONNECT_CODES:
                reason = CLOSE_REASONS.get(close_code, "closed")
                self._log.warning("tiktok.closed", extra={"code": close_code, "reason": reason})
                if close_code == CLOSE_NOT_LIVE:
                    self._not_live = True
                    await self._emit(
                        build_event(PlatformId.TIKTOK, EventType.STREAM_STATUS, extra={"is_live": False, "reason": reason})
                    )
                else:
                    self._set_state(ConnectionState.FAILED)
                self._fail_room(PlatformProbeError(f"TikTok relay closed: {reason}"))
                return
            if self._retry.has_exceeded_max_retries(self.platform.value):
                self._set_state(ConnectionState.FAILED)
                return
            delay_ms = self._retry.increment(self.platform.value)
            self._log.info("tiktok.reconnecting", extra={"code": close_code, "delay_ms": delay_ms})
            await asyncio.sleep(delay_ms / 1000)

    def _fail_room(self, exc: BaseException) -> None:
        if self._room is not None and not self._room.done():
            self._room.set_exception(exc)
            self._room.exception()  # mark retrieved

    async def handle_message(self, raw: str | bytes) -> None:
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            self._log.debug("tiktok.invalid_json")
            return
        messages = payload.get("messages") if isinstance(payload, Mapping) else None
        for message in messages if isinstance(messages, list) else [payload]:
            if isinstance(message, Mapping):
                await self.handle_event(message)

    async def handle_event(self, message: Mapping[str, Any]) -> None:
        event_type = message.get("type")
        data = message.get("data") if isinstance(message.get("data"), Mapping) else message
        try:
            if event_type in ("connected", "roomInfo"):
                room_info = data.get("roomInfo") or {}
                self._room_id = str(room_info.get("id") or data.get("roomId") or "unknown")
                self._retry.handle_connection_success(self.platform.value)
                self._set_state(ConnectionState.READY)
                if self._room is not None and not self._room.done():
                    self._room.set_result({"roomId": self._room_id, "isLive": room_info.get("isLive")})
            elif event_type in ("chat", "WebcastChatMessage"):
                await self._emit(normalize_chat(data))
            elif event_type in ("gift", "WebcastGiftMessage"):
                await self._aggregator.add(extract_gift(data))
            elif event_type in ("social", "follow", "WebcastSocialMessage"):
                await self._emit(normalize_social(data))
            elif event_type in ("subscribe", "WebcastSubNotifyMessage"):
                await self._emit(normalize_subscribe(data))
            elif event_type in ("envelope", "WebcastEnvelopeMessage"):
                await self._emit(normalize_envelope(data))
            elif event_type in ("roomUser", "viewerCount", "WebcastRoomUserSeqMessage"):
                await self._emit(normalize_viewer_count(data))
            elif event_type in ("streamEnd", "WebcastControlMessage"):
                await self._emit(
                    build_event(PlatformId.TIKTOK, EventType.STREAM_STATUS, extra={"is_live": False})
                )
            else:
                self._log.debug("tiktok.ignored_event", extra={"type": event_type})
        except EventProcessingError as exc:
            self._errors.handle_event_processing_error(exc, str(event_type), data)
