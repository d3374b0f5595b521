"""Twitch EventSub WebSocket adapter and payload normalization."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Callable, Mapping, Optional

import websockets

from ..auth.manager import TwitchAuthManager
from ..errors import AuthError, EventProcessingError
from ..models import CanonicalEvent, ConnectionState, EventType, PlatformId
from ..utils.endpoints import TWITCH_EVENTSUB_WS, twitch_api_url
from ..utils.http_client import HttpClient
from ..utils.retry import RetrySystem
from ..utils.timeouts import cancel_task
from .base import PlatformAdapter
from .normalize import build_event, positive_int

logger = logging.getLogger(__name__)

CHEERMOTE_RE = re.compile(r"\b([A-Za-z]+)(\d+)\b")
ANONYMOUS_NAME = "Anonymous"

# (subscription type, version, condition keys)
EVENTSUB_SUBSCRIPTIONS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("channel.chat.message", "1", ("broadcaster_user_id", "user_id")),
    ("channel.follow", "2", ("broadcaster_user_id", "moderator_user_id")),
    ("channel.subscribe", "1", ("broadcaster_user_id",)),
    ("channel.subscription.message", "1", ("broadcaster_user_id",)),
    ("channel.subscription.gift", "1", ("broadcaster_user_id",)),
    ("channel.cheer", "1", ("broadcaster_user_id",)),
    ("channel.raid", "1", ("to_broadcaster_user_id",)),
    ("channel.channel_points_custom_reward_redemption.add", "1", ("broadcaster_user_id",)),
    ("stream.online", "1", ("broadcaster_user_id",)),
    ("stream.offline", "1", ("broadcaster_user_id",)),
)


def _text_of(message: Any) -> Optional[str]:
    if isinstance(message, Mapping):
        text = message.get("text")
        return text if isinstance(text, str) else None
    return message if isinstance(message, str) else None


def parse_cheermotes(text: Optional[str]) -> dict[str, Any]:
    """Describe the cheermotes in a cheer message (prefix, count, mixed)."""

    if not text:
        return {"prefix": None, "count": 0, "is_mixed": False}
    matches = CHEERMOTE_RE.findall(text)
    prefixes = {prefix.lower() for prefix, _ in matches}
    return {
        "prefix": matches[0][0] if matches else None,
        "count": len(matches),
        "is_mixed": len(prefixes) > 1,
    }


def _tier_label(tier: Any) -> Optional[str]:
    mapping = {"1000": "Tier 1", "2000": "Tier 2", "3000": "Tier 3", "Prime": "Prime"}
    return mapping.get(str(tier)) if tier is not None else None


def normalize_eventsub_event(
    subscription_type: str,
    event: Mapping[str, Any],
    message_timestamp: Any = None,
) -> Optional[CanonicalEvent]:
    """Map one EventSub ``notification`` payload to a canonical event.

    Returns None for events that are deliberately not surfaced, such as the
    per-recipient ``channel.subscribe`` notifications of a gift bomb.
    """

    platform = PlatformId.TWITCH

    if subscription_type == "channel.chat.message":
        return build_event(
            platform,
            EventType.CHAT,
            username=event.get("chatter_user_name") or event.get("chatter_user_login"),
            user_id=event.get("chatter_user_id"),
            timestamp=event.get("message_timestamp") or message_timestamp,
            message=_text_of(event.get("message")),
            extra={
                "message_id": event.get("message_id"),
                "badges": event.get("badges") or [],
                "color": event.get("color"),
                "is_broadcaster": event.get("broadcaster_user_id") == event.get("chatter_user_id"),
            },
        )

    if subscription_type == "channel.follow":
        return build_event(
            platform,
            EventType.FOLLOW,
            username=event.get("user_name"),
            user_id=event.get("user_id"),
            timestamp=event.get("followed_at") or message_timestamp,
        )

    if subscription_type == "channel.subscribe":
        if event.get("is_gift") is True:
            logger.debug("twitch.gifted_sub_suppressed", extra={"user": event.get("user_name")})
            return None
        return build_event(
            platform,
            EventType.PAYPIGGY,
            username=event.get("user_name"),
            user_id=event.get("user_id"),
            timestamp=message_timestamp,
            extra={"tier": event.get("tier"), "tier_label": _tier_label(event.get("tier")), "is_gift": False},
        )

    if subscription_type == "channel.subscription.message":
        months = positive_int(event.get("cumulative_months"))
        return build_event(
            platform,
            EventType.PAYPIGGY,
            username=event.get("user_name"),
            user_id=event.get("user_id"),
            timestamp=message_timestamp,
            message=_text_of(event.get("message")),
            extra={
                "tier": event.get("tier"),
                "tier_label": _tier_label(event.get("tier")),
                "months": months,
                "streak_months": positive_int(event.get("streak_months")),
                "is_renewal": months is not None and months > 1,
                "is_gift": False,
            },
        )

    if subscription_type == "channel.subscription.gift":
        anonymous = bool(event.get("is_anonymous"))
        total = positive_int(event.get("total"))
        if total is None:
            raise EventProcessingError("Twitch gift subscription requires a total")
        return build_event(
            platform,
            EventType.PAYPIGGY,
            username=ANONYMOUS_NAME if anonymous else event.get("user_name"),
            user_id=None if anonymous else event.get("user_id"),
            timestamp=message_timestamp,
            gift_count=total,
            extra={
                "tier": event.get("tier"),
                "tier_label": _tier_label(event.get("tier")),
                "is_gift": True,
                "is_anonymous": anonymous,
                "cumulative_total": positive_int(event.get("cumulative_total")),
            },
        )

    if subscription_type in ("channel.cheer", "channel.bits.use"):
        bits = positive_int(event.get("bits"))
        if bits is None:
            raise EventProcessingError("Twitch cheer requires a positive bits value")
        anonymous = bool(event.get("is_anonymous"))
        text = _text_of(event.get("message"))
        cheermotes = parse_cheermotes(text)
        return build_event(
            platform,
            EventType.GIFT,
            username=ANONYMOUS_NAME if anonymous else event.get("user_name"),
            user_id=None if anonymous else event.get("user_id"),
            timestamp=message_timestamp,
            message=text,
            amount=float(bits),
            currency="bits",
            gift_type="mixed bits" if cheermotes["is_mixed"] else "bits",
            gift_count=1,
            extra={
                "is_bits": True,
                "bits": bits,
                "is_anonymous": anonymous,
                "cheermote_prefix": cheermotes["prefix"],
                "cheermote_count": cheermotes["count"],
            },
        )

    if subscription_type == "channel.raid":
        viewers = event.get("viewers")
        if not isinstance(viewers, int):
            raise EventProcessingError("Twitch raid requires a numeric viewer count")
        return build_event(
            platform,
            EventType.RAID,
            username=event.get("from_broadcaster_user_name"),
            user_id=event.get("from_broadcaster_user_id"),
            timestamp=message_timestamp,
            extra={"viewer_count": viewers},
        )

    if subscription_type == "channel.channel_points_custom_reward_redemption.add":
        reward = event.get("reward") or {}
        return build_event(
            platform,
            EventType.REDEMPTION,
            username=event.get("user_name"),
            user_id=event.get("user_id"),
            timestamp=event.get("redeemed_at") or message_timestamp,
            message=event.get("user_input") or None,
            extra={
                "reward_id": reward.get("id"),
                "reward_title": reward.get("title"),
                "reward_cost": reward.get("cost"),
            },
        )

    if subscription_type in ("stream.online", "stream.offline"):
        return build_event(
            platform,
            EventType.STREAM_STATUS,
            username=event.get("broadcaster_user_name"),
            user_id=event.get("broadcaster_user_id"),
            timestamp=event.get("started_at") or message_timestamp,
            extra={"is_live": subscription_type == "stream.online"},
        )

    logger.debug("twitch.unhandled_subscription", extra={"type": subscription_type})
    return None


ConnectFactory = Callable[..., Any]


class TwitchEventSubAdapter(PlatformAdapter):
    """Consumes the EventSub WebSocket and creates subscriptions over Helix."""

    platform = PlatformId.TWITCH

    def __init__(
        self,
        *,
        auth: TwitchAuthManager,
        http: HttpClient,
        broadcaster_id: str,
        retry: Optional[RetrySystem] = None,
        ws_url: str = TWITCH_EVENTSUB_WS,
        connect_factory: ConnectFactory = websockets.connect,
        welcome_timeout_sec: float = 15.0,
    ) -> None:
        super().__init__()
        self._auth = auth
        self._http = http
        self._broadcaster_id = broadcaster_id
        self._retry = retry or RetrySystem()
        self._ws_url = ws_url
        self._connect = connect_factory
        self._welcome_timeout = welcome_timeout_sec
        self._session_id: Optional[str] = None
        self._welcomed = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._stopping = False
        self._keepalive_timeout_sec: Optional[int] = None
        self._subscribed: set[str] = set()

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    async def connect(self) -> None:
        if self._task and not self._task.done():
            return
        self._stopping = False
        self._welcomed.clear()
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.create_task(self._run(), name="twitch-eventsub")
        try:
            await asyncio.wait_for(self._welcomed.wait(), timeout=self._welcome_timeout)
        except asyncio.TimeoutError:
            self._log.warning("twitch.welcome_timeout", extra={"timeout_sec": self._welcome_timeout})

    async def disconnect(self) -> None:
        self._stopping = True
        await cancel_task(self._task)
        self._task = None
        self._session_id = None
        self._subscribed.clear()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _run(self) -> None:
        url = self._ws_url
        while not self._stopping:
            try:
                async with self._connect(url) as ws:
                    self._set_state(ConnectionState.CONNECTED)
                    async for raw in ws:
                        next_url = await self.handle_message(raw)
                        if next_url:
                            url = next_url
                            break
                    else:
                        url = self._ws_url
                if self._stopping:
                    break
                if url != self._ws_url:
                    continue
                raise ConnectionError("EventSub socket closed")
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
                self._log.info("twitch.reconnecting", extra={"delay_ms": delay_ms})
                await asyncio.sleep(delay_ms / 1000)
                url = self._ws_url

    async def handle_message(self, raw: str | bytes) -> Optional[str]:
        """Process one frame; returns a reconnect URL when Twitch asks for one."""

        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            self._log.debug("twitch.invalid_json")
            return None
        metadata = message.get("metadata") or {}
        payload = message.get("payload") or {}
        message_type = metadata.get("message_type")

        if message_type == "session_welcome":
            session = payload.get("session") or {}
            self._session_id = session.get("id")
            self._keepalive_timeout_sec = session.get("keepalive_timeout_seconds")
            await self._create_subscriptions()
            self._retry.handle_connection_success(self.platform.value)
            self._set_state(ConnectionState.READY)
            self._welcomed.set()
        elif message_type == "session_keepalive":
            self._log.debug("twitch.keepalive")
        elif message_type == "session_reconnect":
            session = payload.get("session") or {}
            reconnect_url = session.get("reconnect_url")
            self._log.info("twitch.session_reconnect", extra={"url": reconnect_url})
            return reconnect_url
        elif message_type == "revocation":
            subscription = payload.get("subscription") or {}
            self._subscribed.discard(subscription.get("type"))
            self._log.warning(
                "twitch.subscription_revoked",
                extra={"type": subscription.get("type"), "status": subscription.get("status")},
            )
        elif message_type == "notification":
            subscription_type = (payload.get("subscription") or {}).get("type", "")
            event = payload.get("event") or {}
            try:
                canonical = normalize_eventsub_event(subscription_type, event, metadata.get("message_timestamp"))
            except EventProcessingError as exc:
                self._errors.handle_event_processing_error(exc, subscription_type, event)
                return None
            await self._emit(canonical)
        return None

    async def _create_subscriptions(self) -> None:
        if not self._session_id:
            return
        token = await self._auth.ensure_valid_token()
        if not token:
            raise AuthError("Twitch access token unavailable")
        headers = {
            "Authorization": f"Bearer {token}",
            "Client-Id": self._auth.client_id,
            "Content-Type": "application/json",
        }
        for sub_type, version, condition_keys in EVENTSUB_SUBSCRIPTIONS:
            body = {
                "type": sub_type,
                "version": version,
                "condition": {key: self._broadcaster_id for key in condition_keys},
                "transport": {"method": "websocket", "session_id": self._session_id},
            }
            response = await self._http.post(
                twitch_api_url("eventsub/subscriptions"),
                headers=headers,
                json=body,
                operation=f"eventsub subscribe {sub_type}",
            )
            if response.status_code in (401, 403):
                raise AuthError(f"EventSub subscription {sub_type} rejected", status_code=response.status_code)
            if response.status_code >= 400 and response.status_code != 409:
                self._errors.log_operational_error(
                    "EventSub subscription failed",
                    {"type": sub_type, "status": response.status_code, "body": response.text[:200]},
                )
                continue
            self._subscribed.add(sub_type)
        self._log.info("twitch.subscribed", extra={"count": len(self._subscribed)})
