"""YouTube live chat: payload normalization and Data API polling adapter."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from ..errors import AuthError, EventProcessingError, OperationTimeoutError, TransientNetworkError
from ..models import CanonicalEvent, ConnectionState, EventType, PlatformId
from ..utils.currency import CurrencyParser, symbol_for
from ..utils.endpoints import youtube_api_url
from ..utils.http_client import HttpClient
from ..utils.retry import RetrySystem
from ..utils.text import extract_message_text
from ..utils.timeouts import cancel_task
from ..utils.timestamps import canonicalize_timestamp, from_microseconds, now_ms
from .base import PlatformAdapter
from .normalize import build_event, positive_float, positive_int

logger = logging.getLogger(__name__)

_currency = CurrencyParser(logger)

# Renderer duplicates and housekeeping actions that never become events.
IGNORED_ITEM_TYPES = frozenset(
    {
        "LiveChatPaidMessageRenderer",
        "LiveChatPaidStickerRenderer",
        "LiveChatMembershipItemRenderer",
        "LiveChatTickerPaidMessageItemRenderer",
        "LiveChatTickerSponsorItemRenderer",
        "LiveChatViewerEngagementMessage",
        "LiveChatPlaceholderItem",
        "LiveChatSponsorshipsGiftRedemptionAnnouncement",
        "RemoveChatItemAction",
        "RemoveChatItemByAuthorAction",
        "MarkChatItemsByAuthorAsDeletedAction",
    }
)


def _structured_text(field: Any) -> str:
    if not field:
        return ""
    if isinstance(field, str):
        return field.strip()
    if isinstance(field, Mapping):
        if isinstance(field.get("runs"), list):
            return "".join(str(run.get("text") or "") for run in field["runs"] if isinstance(run, Mapping)).strip()
        raw = field.get("simpleText") or field.get("text") or ""
        return raw.strip() if isinstance(raw, str) else ""
    return ""


def _item_timestamp(item: Mapping[str, Any]) -> Optional[int]:
    if item.get("timestamp_usec") is not None:
        return from_microseconds(item.get("timestamp_usec"))
    return canonicalize_timestamp(item.get("timestamp"))


def _purchase(item: Mapping[str, Any], label: str) -> tuple[float, str, str]:
    amount = item.get("purchase_amount")
    if isinstance(amount, (int, float)) and not isinstance(amount, bool):
        value = positive_float(amount)
        currency = item.get("purchase_currency")
        if value is None or not isinstance(currency, str) or not currency.strip():
            raise EventProcessingError(f"{label} requires a valid amount and currency")
        code = currency.strip().upper()
        return value, code, symbol_for(code)

    text = amount if isinstance(amount, str) else item.get("purchase_amount_text")
    text = _structured_text(text) if isinstance(text, Mapping) else text
    result = _currency.parse(text)
    if not result.success or result.amount <= 0:
        raise EventProcessingError(f"{label} requires a valid purchase amount ({result.reason})")
    return result.amount, result.currency, result.symbol


def normalize_chat_item(chat_item: Mapping[str, Any]) -> Optional[CanonicalEvent]:
    """Normalize an SDK-style chat action.

    Accepts either ``{"type": ..., "item": {...}}`` or the item itself.
    """

    item = chat_item.get("item") if isinstance(chat_item.get("item"), Mapping) else chat_item
    item_type = chat_item.get("type") or item.get("type") or ""
    if item_type in IGNORED_ITEM_TYPES:
        return None

    author = item.get("author") or chat_item.get("author") or {}
    username = author.get("name") if isinstance(author, Mapping) else None
    user_id = author.get("id") if isinstance(author, Mapping) else None
    timestamp_ms = _item_timestamp(item)
    extra: dict[str, Any] = {"message_id": item.get("id")}
    platform = PlatformId.YOUTUBE

    if item_type == "LiveChatTextMessage":
        return build_event(
            platform,
            EventType.CHAT,
            username=username,
            user_id=user_id,
            timestamp_ms=timestamp_ms,
            message=extract_message_text(item.get("message")),
            extra=extra,
        )

    if item_type == "LiveChatPaidMessage" or (not item_type and ("purchase_amount" in item or "purchase_amount_text" in item)):
        amount, currency, symbol = _purchase(item, "YouTube Super Chat")
        return build_event(
            platform,
            EventType.GIFT,
            username=username,
            user_id=user_id,
            timestamp_ms=timestamp_ms,
            message=extract_message_text(item.get("message")),
            amount=amount,
            currency=currency,
            symbol=symbol,
            gift_type="Super Chat",
            gift_count=1,
            extra={**extra, "is_super_chat": True},
        )

    if item_type == "LiveChatPaidSticker":
        amount, currency, symbol = _purchase(item, "YouTube Super Sticker")
        sticker = item.get("sticker") or {}
        label = sticker.get("name") or sticker.get("altText") or _structured_text(sticker.get("label"))
        return build_event(
            platform,
            EventType.GIFT,
            username=username,
            user_id=user_id,
            timestamp_ms=timestamp_ms,
            message=label or None,
            amount=amount,
            currency=currency,
            symbol=symbol,
            gift_type="Super Sticker",
            gift_count=1,
            extra={**extra, "is_super_sticker": True},
        )

    if item_type == "LiveChatMembershipItem":
        months = positive_int(item.get("memberMilestoneDurationInMonths"))
        message = _structured_text(item.get("headerSubtext")) or extract_message_text(item.get("message"))
        return build_event(
            platform,
            EventType.PAYPIGGY,
            username=username,
            user_id=user_id,
            timestamp_ms=timestamp_ms,
            message=message or None,
            extra={
                **extra,
                "membership_level": _structured_text(item.get("headerPrimaryText")) or None,
                "months": months,
                "is_renewal": months is not None and months > 1,
                "is_gift": False,
            },
        )

    if item_type == "LiveChatSponsorshipsGiftPurchaseAnnouncement":
        count = positive_int(item.get("giftMembershipsCount"))
        if count is None:
            raise EventProcessingError("YouTube gift purchase requires giftMembershipsCount")
        return build_event(
            platform,
            EventType.PAYPIGGY,
            username=username,
            user_id=user_id,
            timestamp_ms=timestamp_ms,
            gift_count=count,
            message=extract_message_text(item.get("message")) or None,
            extra={**extra, "is_gift": True},
        )

    logger.debug("youtube.unknown_item", extra={"type": item_type, "author": username})
    return None


def normalize_api_message(message: Mapping[str, Any]) -> Optional[CanonicalEvent]:
    """Normalize a Data API v3 ``liveChatMessage`` resource."""

    snippet = message.get("snippet") or {}
    author = message.get("authorDetails") or {}
    kind = snippet.get("type")
    username = author.get("displayName")
    user_id = author.get("channelId") or snippet.get("authorChannelId")
    timestamp_ms = canonicalize_timestamp(snippet.get("publishedAt"))
    extra: dict[str, Any] = {
        "message_id": message.get("id"),
        "is_moderator": bool(author.get("isChatModerator")),
        "is_owner": bool(author.get("isChatOwner")),
        "is_member": bool(author.get("isChatSponsor")),
    }
    platform = PlatformId.YOUTUBE

    if kind == "textMessageEvent":
        details = snippet.get("textMessageDetails") or {}
        return build_event(
            platform,
            EventType.CHAT,
            username=username,
            user_id=user_id,
            timestamp_ms=timestamp_ms,
            message=details.get("messageText") or snippet.get("displayMessage"),
            extra=extra,
        )

    if kind in ("superChatEvent", "superStickerEvent"):
        details = snippet.get("superChatDetails") or snippet.get("superStickerDetails") or {}
        micros = positive_int(details.get("amountMicros"))
        currency = details.get("currency")
        if micros is None or not currency:
            raise EventProcessingError(f"YouTube {kind} requires amountMicros and currency")
        sticker = kind == "superStickerEvent"
        message_text = details.get("userComment")
        if sticker:
            message_text = (details.get("superStickerMetadata") or {}).get("altText")
        return build_event(
            platform,
            EventType.GIFT,
            username=username,
            user_id=user_id,
            timestamp_ms=timestamp_ms,
            message=message_text,
            amount=micros / 1_000_000,
            currency=str(currency).upper(),
            symbol=symbol_for(str(currency)),
            gift_type="Super Sticker" if sticker else "Super Chat",
            gift_count=1,
            extra={**extra, "is_super_sticker" if sticker else "is_super_chat": True},
        )

    if kind == "newSponsorEvent":
        details = snippet.get("newSponsorDetails") or {}
        return build_event(
            platform,
            EventType.PAYPIGGY,
            username=username,
            user_id=user_id,
            timestamp_ms=timestamp_ms,
            extra={**extra, "membership_level": details.get("memberLevelName"), "is_gift": False},
        )

    if kind == "memberMilestoneChatEvent":
        details = snippet.get("memberMilestoneChatDetails") or {}
        months = positive_int(details.get("memberMonth"))
        return build_event(
            platform,
            EventType.PAYPIGGY,
            username=username,
            user_id=user_id,
            timestamp_ms=timestamp_ms,
            message=details.get("userComment"),
            extra={
                **extra,
                "membership_level": details.get("memberLevelName"),
                "months": months,
                "is_renewal": months is not None and months > 1,
                "is_gift": False,
            },
        )

    if kind == "membershipGiftingEvent":
        details = snippet.get("membershipGiftingDetails") or {}
        count = positive_int(details.get("giftMembershipsCount"))
        if count is None:
            raise EventProcessingError("YouTube membership gifting requires giftMembershipsCount")
        return build_event(
            platform,
            EventType.PAYPIGGY,
            username=username,
            user_id=user_id,
            timestamp_ms=timestamp_ms,
            gift_count=count,
            extra={**extra, "membership_level": details.get("giftMembershipsLevelName"), "is_gift": True},
        )

    logger.debug("youtube.unhandled_message", extra={"type": kind})
    return None


class YouTubeLiveChatAdapter(PlatformAdapter):
    """Polls ``liveChat/messages`` for the channel's active broadcast."""

    platform = PlatformId.YOUTUBE

    def __init__(
        self,
        *,
        handle: str,
        api_key: str,
        http: HttpClient,
        retry: Optional[RetrySystem] = None,
        default_poll_interval_ms: int = 5_000,
    ) -> None:
        super().__init__()
        self._handle = handle if handle.startswith("@") else f"@{handle}"
        self._api_key = api_key
        self._http = http
        self._retry = retry or RetrySystem()
        self._default_interval_ms = default_poll_interval_ms
        self._channel_id: Optional[str] = None
        self._video_id: Optional[str] = None
        self._live_chat_id: Optional[str] = None
        self._page_token: Optional[str] = None
        self._connected_at_ms = 0
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def video_id(self) -> Optional[str]:
        return self._video_id

    async def connect(self) -> None:
        if self._task and not self._task.done():
            return
        self._set_state(ConnectionState.CONNECTING)
        try:
            self._live_chat_id = await self._resolve_live_chat_id()
        except AuthError as exc:
            self._errors.handle_auth_error(exc)
            self._set_state(ConnectionState.FAILED)
            raise
        if not self._live_chat_id:
            self._set_state(ConnectionState.DISCONNECTED)
            raise TransientNetworkError(f"No active live chat for {self._handle}")
        self._connected_at_ms = now_ms()
        self._page_token = None
        self._set_state(ConnectionState.READY)
        self._task = asyncio.create_task(self._poll_loop(), name="youtube-live-chat")
        self._log.info("youtube.connected", extra={"video_id": self._video_id})

    async def disconnect(self) -> None:
        await cancel_task(self._task)
        self._task = None
        self._live_chat_id = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def live_video_ids(self) -> list[str]:
        channel_id = await self._resolve_channel_id()
        if not channel_id:
            return []
        data = await self._api_get(
            "search",
            {"part": "id", "channelId": channel_id, "eventType": "live", "type": "video"},
        )
        return [
            entry["id"]["videoId"]
            for entry in data.get("items", [])
            if isinstance(entry.get("id"), Mapping) and entry["id"].get("videoId")
        ]

    async def detect_live(self, handle: Optional[str] = None) -> dict[str, Any]:
        """SDK-style detection result used by the liveness probe."""

        video_ids = await self.live_video_ids()
        return {"success": True, "videoIds": video_ids}

    async def fetch_viewer_count(self) -> Optional[int]:
        if not self._video_id:
            return None
        data = await self._api_get("videos", {"part": "liveStreamingDetails", "id": self._video_id})
        items = data.get("items") or []
        if not items:
            return None
        details = items[0].get("liveStreamingDetails") or {}
        viewers = details.get("concurrentViewers")
        return int(viewers) if viewers is not None and str(viewers).isdigit() else None

    async def _resolve_channel_id(self) -> Optional[str]:
        if self._channel_id:
            return self._channel_id
        data = await self._api_get("channels", {"part": "id", "forHandle": self._handle})
        items = data.get("items") or []
        self._channel_id = items[0].get("id") if items else None
        return self._channel_id

    async def _resolve_live_chat_id(self) -> Optional[str]:
        video_ids = await self.live_video_ids()
        if not video_ids:
            return None
        self._video_id = video_ids[0]
        data = await self._api_get("videos", {"part": "liveStreamingDetails", "id": self._video_id})
        items = data.get("items") or []
        if not items:
            return None
        return (items[0].get("liveStreamingDetails") or {}).get("activeLiveChatId")

    async def _api_get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        url = youtube_api_url(path, {**params, "key": self._api_key})
        response = await self._http.request_with_retry("GET", url, platform=self.platform.value, operation=f"youtube {path}")
        if response.status_code >= 400:
            raise TransientNetworkError(f"YouTube {path} failed with HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientNetworkError(f"YouTube {path} returned a non-JSON body") from exc
        return body if isinstance(body, dict) else {}

    async def _poll_loop(self) -> None:
        while self._live_chat_id:
            try:
                interval_ms = await self.poll_once()
            except asyncio.CancelledError:
                raise
            except AuthError as exc:
                self._errors.handle_auth_error(exc)
                self._set_state(ConnectionState.FAILED)
                return
            except (TransientNetworkError, OperationTimeoutError) as exc:
                self._errors.handle_connection_error(exc, action="poll")
                interval_ms = self._retry.increment(self.platform.value)
            except Exception as exc:
                self._errors.log_operational_error("youtube poll failed", {"error": str(exc), "type": type(exc).__name__})
                interval_ms = self._retry.increment(self.platform.value)
            await asyncio.sleep(interval_ms / 1000)

    async def poll_once(self) -> float:
        """Fetch one page of messages and emit them; returns the next interval."""

        params: dict[str, Any] = {"liveChatId": self._live_chat_id, "part": "snippet,authorDetails"}
        if self._page_token:
            params["pageToken"] = self._page_token
        data = await self._api_get("liveChat/messages", params)

        if data.get("offlineAt"):
            self._log.info("youtube.chat_ended", extra={"video_id": self._video_id})
            self._live_chat_id = None
            self._set_state(ConnectionState.DISCONNECTED)
        self._page_token = data.get("nextPageToken") or self._page_token

        for message in data.get("items", []):
            try:
                event = normalize_api_message(message)
            except EventProcessingError as exc:
                self._errors.handle_event_processing_error(exc, "message", message)
                continue
            if event is None or event.timestamp_ms < self._connected_at_ms:
                continue
            await self._emit(event)

        self._retry.handle_connection_success(self.platform.value)
        interval = data.get("pollingIntervalMillis")
        return float(interval) if isinstance(interval, (int, float)) and interval > 0 else float(self._default_interval_ms)
