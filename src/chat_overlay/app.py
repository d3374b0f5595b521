"""Application bootstrap and lifecycle management."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import uvicorn

from .api.server import ControlServer
from .auth import TokenStore, TwitchAuthManager
from .bus import EventBus, PlatformEvents
from .chat import ChatRouter
from .chat_log import ChatLogWriter
from .commands import CommandCooldowns
from .config import Settings, get_settings
from .errors import AuthError, ChatOverlayError, ConfigurationError
from .models import CanonicalEvent
from .notifications import DonationSpamDetector, NotificationManager, UserSuppressionTracker
from .notifications.manager import NOTIFICATION_CONFIGS
from .obs import DisplayQueue, GoalTracker, OBSConnectionManager, ObsSources
from .obs.display_queue import TtsSink
from .platforms import (
    PlatformAdapter,
    StreamElementsAdapter,
    TikTokAdapter,
    TikTokLivenessProbe,
    TwitchEventSubAdapter,
    YouTubeLiveChatAdapter,
    YouTubeLivenessProbe,
)
from .router import PlatformEventRouter
from .stream_detector import StreamDetector
from .utils import HttpClient, RetryPolicy, RetrySystem
from .utils.timestamps import now_ms
from .viewer_count import ViewerCountAggregator

logger = logging.getLogger(__name__)


def _secret(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.get_secret_value() if hasattr(value, "get_secret_value") else str(value)


class OverlayApp:
    """Coordinates adapters, policy, the overlay driver and the API layer."""

    def __init__(self, settings: Optional[Settings] = None, *, tts_sink: Optional[TtsSink] = None) -> None:
        """``tts_sink`` receives spoken text when an in-process speech engine is wired in.

        Without one, speech is left to the OBS TTS text source and the
        ``tts:speech-requested`` bus event.
        """

        self._settings = settings or get_settings()
        s = self._settings

        self._bus = EventBus()
        self._retry = RetrySystem(
            RetryPolicy.build(
                base_delay_ms=s.retry_base_delay_ms,
                max_delay_ms=s.retry_max_delay_ms,
                multiplier=s.retry_backoff_multiplier,
                max_attempts=s.retry_max_attempts,
            )
        )
        self._http = HttpClient(
            timeout_ms=s.http_timeout_ms,
            reachability_timeout_ms=s.http_reachability_timeout_ms,
            user_agents=s.http_user_agents,
            retry_system=self._retry,
        )

        obs_active = s.obs_enabled and not s.is_test_env
        self._obs = OBSConnectionManager(
            url=str(s.obs_url),
            password=_secret(s.obs_password),
            timeout_ms=s.obs_connection_timeout_ms,
            enabled=obs_active,
        )
        self._sources: Optional[ObsSources] = ObsSources(self._obs) if obs_active else None

        display = s.display()
        self._display = DisplayQueue(display, self._sources, bus=self._bus, tts_sink=tts_sink)
        self._goals = GoalTracker(s.goals(), s.goals_state_path, sources=self._sources, bus=self._bus, enabled=s.goals_enabled)
        self._notifications = NotificationManager(
            display,
            self._display,
            spam=DonationSpamDetector(s.spam_configs()),
            suppression=UserSuppressionTracker(s.suppression()),
            goals=self._goals,
            vfx=s.vfx_commands,
            notifications_enabled=s.notifications_enabled,
            fallback_username=s.fallback_username,
        )

        self._connected_at: dict[str, int] = {}
        self._chat = ChatRouter(
            self._display,
            display,
            chat_log=ChatLogWriter(s.chat_log_dir, s.chat_log_enabled),
            bus=self._bus,
            greetings_enabled=s.greetings_enabled,
            greeting_vfx=s.vfx_commands.get("greeting"),
            max_message_length=s.max_message_length,
            fallback_username=s.fallback_username,
            connected_since=self._connected_at.get,
            commands={key: vfx for key, vfx in s.vfx_commands.items() if key not in NOTIFICATION_CONFIGS},
            cooldowns=CommandCooldowns(s.command_cooldowns()),
            ignore_self_messages=s.ignore_self_messages,
            self_names=s.self_usernames(),
        )
        self._viewer_counts = ViewerCountAggregator(
            sources=self._sources,
            source_names=s.viewer_count_sources,
            poll_interval_sec=s.viewer_count_poll_interval_sec,
        )
        self._detector = StreamDetector(s.stream_detection())
        self._router = PlatformEventRouter(
            self._bus,
            chat=self._chat,
            notifications=self._notifications,
            viewer_counts=self._viewer_counts,
            detector=self._detector,
        )

        self._twitch_auth: Optional[TwitchAuthManager] = None
        self._adapters: dict[str, PlatformAdapter] = self._build_adapters()
        self._unsubscribers: list[Callable[[], None]] = []

        self._control = ControlServer(
            self._display,
            adapters=self._adapters,
            detector=self._detector,
            goals=self._goals,
            event_handler=self.inject_event,
        )
        self._api_task: Optional[asyncio.Task[None]] = None
        self._api_server: Optional[uvicorn.Server] = None

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def display_queue(self) -> DisplayQueue:
        return self._display

    @property
    def adapters(self) -> dict[str, PlatformAdapter]:
        return dict(self._adapters)

    def _build_adapters(self) -> dict[str, PlatformAdapter]:
        s = self._settings
        adapters: dict[str, PlatformAdapter] = {}

        if s.twitch_enabled:
            if not s.twitch_client_id or not s.twitch_broadcaster_id:
                raise ConfigurationError("Twitch requires TWITCH_CLIENT_ID and TWITCH_BROADCASTER_ID")
            self._twitch_auth = TwitchAuthManager(
                client_id=s.twitch_client_id,
                client_secret=_secret(s.twitch_client_secret) or "",
                store=TokenStore(s.twitch_token_store_path),
                http=self._http,
                disabled=s.twitch_disable_auth,
            )
            adapters["twitch"] = TwitchEventSubAdapter(
                auth=self._twitch_auth,
                http=self._http,
                broadcaster_id=s.twitch_broadcaster_id,
                retry=self._retry,
            )

        if s.youtube_enabled:
            if not s.youtube_handle or not s.youtube_api_key:
                raise ConfigurationError("YouTube requires YOUTUBE_HANDLE and YOUTUBE_API_KEY")
            youtube = YouTubeLiveChatAdapter(
                handle=s.youtube_handle,
                api_key=_secret(s.youtube_api_key) or "",
                http=self._http,
                retry=self._retry,
                default_poll_interval_ms=s.youtube_poll_interval_ms,
            )
            adapters["youtube"] = youtube
            self._detector.register_probe("youtube", YouTubeLivenessProbe(s.youtube_handle, self._http, youtube.detect_live))
            if s.viewer_count_enabled:
                self._viewer_counts.register_provider("youtube", youtube.fetch_viewer_count)

        if s.tiktok_enabled:
            tiktok = TikTokAdapter(
                username=s.tiktok_username or "",
                ws_url=str(s.tiktok_ws_url),
                api_key=_secret(s.tiktok_api_key),
                aggregation_enabled=s.gift_aggregation_enabled,
                aggregation_delay_ms=s.gift_aggregation_delay_ms,
                retry=self._retry,
            )
            adapters["tiktok"] = tiktok
            self._detector.register_probe("tiktok", TikTokLivenessProbe(status_service=tiktok.probe_live))

        if s.streamelements_enabled:
            adapters["donations"] = StreamElementsAdapter(
                jwt_token=_secret(s.streamelements_jwt) or "",
                http=self._http,
                channel_id=s.streamelements_channel_id,
                youtube_channel_id=s.streamelements_youtube_channel_id,
                twitch_channel_id=s.streamelements_twitch_channel_id,
                tips_poll_interval_sec=s.streamelements_tips_poll_interval_sec,
                retry=self._retry,
            )

        return adapters

    async def start(self) -> None:
        await self._connect_obs()
        await self._goals.load()
        await self._goals.update_all_displays()

        self._display.start()
        self._notifications.start()
        self._router.start()
        self._viewer_counts.start()

        if self._twitch_auth is not None:
            await self._twitch_auth.initialize()

        for name, adapter in self._adapters.items():
            self._unsubscribers.append(adapter.on_event(self._forward))
            await self._start_platform(name, adapter)

        if self._settings.api_enabled and not self._settings.is_test_env:
            self._api_task = asyncio.create_task(self._run_api(), name="control-api")
        logger.info("app.started", extra={"platforms": sorted(self._adapters)})

    async def stop(self) -> None:
        if self._api_server:
            self._api_server.should_exit = True
        if self._api_task:
            try:
                await self._api_task
            except asyncio.CancelledError:
                pass
            self._api_task = None

        await self._detector.cleanup()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for name, adapter in reversed(list(self._adapters.items())):
            try:
                await adapter.disconnect()
            except Exception as exc:
                logger.warning("app.disconnect_failed", extra={"platform": name, "error": str(exc)})
        if self._twitch_auth is not None:
            self._twitch_auth.cleanup()

        await self._viewer_counts.stop()
        self._router.stop()
        await self._notifications.stop()
        await self._display.stop()
        await self._obs.disconnect()
        self._retry.cancel_all()
        await self._http.aclose()
        logger.info("app.stopped")

    def register_shutdown_callback(self, callback: Callable[[], None]) -> None:
        """Register callback invoked when remote shutdown is requested."""

        self._control.register_shutdown(callback)

    async def inject_event(self, event: CanonicalEvent) -> None:
        """Feed a synthetic event through the same path adapters use."""

        logger.info("app.injected_event", extra={"platform": event.platform.value, "type": event.type.value})
        await self._bus.emit(PlatformEvents.PLATFORM_EVENT, event)

    async def _forward(self, event: CanonicalEvent) -> None:
        await self._bus.emit(PlatformEvents.PLATFORM_EVENT, event)

    async def _connect_obs(self) -> None:
        if not self._obs.enabled:
            logger.info("obs.disabled")
            return
        try:
            await self._obs.connect()
        except AuthError as exc:
            logger.error("obs.auth_failed", extra={"error": str(exc)})
        except ChatOverlayError as exc:
            logger.warning("obs.unavailable", extra={"error": str(exc)})

    async def _start_platform(self, name: str, adapter: PlatformAdapter) -> None:
        async def connect() -> None:
            self._connected_at[name] = now_ms()
            await adapter.connect()

        def on_status(status: str, message: str) -> None:
            logger.info("detector.status", extra={"platform": name, "status": status, "detail": message})
            if status == "offline":
                self._chat.reset_session()
                self._viewer_counts.reset(name)

        try:
            await self._detector.start_stream_detection(name, {}, connect, on_status)
        except ChatOverlayError as exc:
            logger.error("app.platform_failed", extra={"platform": name, "error": str(exc)})

    async def _run_api(self) -> None:
        config = uvicorn.Config(
            self._control.app,
            host=self._settings.api_host,
            port=self._settings.api_port,
            log_level=self._settings.log_level.value.lower(),
            loop="asyncio",
            lifespan="off",
        )
        self._api_server = uvicorn.Server(config)
        try:
            await self._api_server.serve()
        except asyncio.CancelledError:
            pass
