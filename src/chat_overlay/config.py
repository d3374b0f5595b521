"""Application configuration models and helpers."""

from __future__ import annotations

import math
from enum import Enum
from functools import lru_cache
from typing import Any, Mapping, Optional

from pydantic import AnyUrl, BaseModel, Field, SecretStr, ValidationError
from pydantic.functional_validators import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import VfxConfig


class LogLevel(str, Enum):
    """Supported logging levels."""

    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"
    DEBUG = "DEBUG"


DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
]


def _require_positive_finite(value: float, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number")
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{name} must be a positive finite number")
    return value


class StreamDetectionConfig(BaseModel):
    """Liveness detection knobs shared by every monitored platform."""

    enabled: bool
    retry_interval_sec: float
    max_retries: int
    monitoring_interval_sec: float

    @field_validator("enabled", mode="before")
    @classmethod
    def _strict_bool(cls, value: Any) -> bool:
        if not isinstance(value, bool):
            raise ValueError("stream detection enabled flag must be a boolean")
        return value

    @field_validator("retry_interval_sec", "monitoring_interval_sec")
    @classmethod
    def _positive(cls, value: float) -> float:
        return _require_positive_finite(value, "interval")

    @field_validator("max_retries")
    @classmethod
    def _retry_bound(cls, value: int) -> int:
        if value < -1:
            raise ValueError("max retries must be -1 (unlimited) or a non-negative integer")
        return value

    @classmethod
    def parse(cls, raw: "StreamDetectionConfig | Mapping[str, Any]") -> "StreamDetectionConfig":
        if isinstance(raw, cls):
            return raw
        try:
            return cls.model_validate(dict(raw))
        except (ValidationError, TypeError) as exc:
            raise ConfigurationError(f"Invalid stream detection configuration: {exc}") from exc


class SpamConfig(BaseModel):
    """Per-platform low-value donation spam policy."""

    enabled: bool = True
    low_value_threshold: float = 10
    detection_window_sec: float = 5
    max_individual_notifications: int = 2

    @field_validator("detection_window_sec")
    @classmethod
    def _positive(cls, value: float) -> float:
        return _require_positive_finite(value, "spam detection window")


class SuppressionConfig(BaseModel):
    """Per-user notification throttling."""

    enabled: bool = True
    max_notifications_per_user: int = 5
    window_ms: int = 60_000
    duration_ms: int = 300_000
    cleanup_interval_ms: int = 300_000

    @field_validator("max_notifications_per_user", "window_ms", "duration_ms", "cleanup_interval_ms")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value


class CommandCooldownConfig(BaseModel):
    """Chat command throttling: per user, heavy users and per command."""

    user_cooldown_ms: int = 60_000
    heavy_cooldown_ms: int = 300_000
    heavy_threshold: int = 3
    heavy_window_ms: int = 60_000
    global_cooldown_ms: int = 60_000
    max_entries: int = 1000

    @field_validator("user_cooldown_ms", "heavy_cooldown_ms", "heavy_window_ms", "global_cooldown_ms", "max_entries")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("heavy_threshold")
    @classmethod
    def _threshold(cls, value: int) -> int:
        if not 2 <= value <= 20:
            raise ValueError("heavy command threshold must be between 2 and 20")
        return value


class OverlaySlotConfig(BaseModel):
    """OBS names for one overlay slot (chat or notification)."""

    source_name: str
    scene_name: str
    group_name: Optional[str] = None
    platform_logos: dict[str, str] = Field(default_factory=dict)


class DisplayConfig(BaseModel):
    """Display queue behaviour and the OBS sources it drives."""

    chat: OverlaySlotConfig
    notification: OverlaySlotConfig
    tts_source: Optional[str] = None
    tts_enabled: bool = False
    gift_video_source: Optional[str] = None
    gift_audio_source: Optional[str] = None
    chat_duration_ms: int = 4500
    notification_duration_ms: dict[str, int] = Field(default_factory=dict)
    default_notification_duration_ms: int = 3000
    transition_delay_ms: int = 200
    notification_clear_delay_ms: int = 500
    max_wait_ms: int = 30_000
    aging_bump: int = 1
    max_aging_bump: int = 3
    max_queue_size: int = 100
    messages_enabled: dict[str, bool] = Field(default_factory=dict)
    notifications_enabled: dict[str, bool] = Field(default_factory=dict)
    linger_chat: bool = True

    def duration_for(self, item_type: str) -> int:
        if item_type == "chat":
            return self.chat_duration_ms
        return self.notification_duration_ms.get(item_type, self.default_notification_duration_ms)


class GoalConfig(BaseModel):
    """One platform's donation goal."""

    enabled: bool = True
    target: float
    currency: str
    source_name: Optional[str] = None
    paypiggy_equivalent: float = 0


class Settings(BaseSettings):
    """Environment-driven application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # General
    app_env: str = Field("production", alias="APP_ENV")
    log_level: LogLevel = Field(LogLevel.INFO, alias="LOG_LEVEL")
    notifications_enabled: bool = Field(True, alias="NOTIFICATIONS_ENABLED")
    greetings_enabled: bool = Field(True, alias="GREETINGS_ENABLED")
    max_message_length: int = Field(500, alias="MAX_MESSAGE_LENGTH")
    fallback_username: str = Field("Unknown User", alias="FALLBACK_USERNAME")

    # User suppression
    user_suppression_enabled: bool = Field(True, alias="USER_SUPPRESSION_ENABLED")
    max_notifications_per_user: int = Field(5, alias="MAX_NOTIFICATIONS_PER_USER")
    suppression_window_sec: int = Field(60, alias="SUPPRESSION_WINDOW")
    suppression_duration_sec: int = Field(300, alias="SUPPRESSION_DURATION")
    suppression_cleanup_interval_sec: int = Field(300, alias="SUPPRESSION_CLEANUP_INTERVAL")

    # Stream detection
    stream_detection_enabled: bool = Field(True, alias="STREAM_DETECTION_ENABLED")
    stream_retry_interval_sec: float = Field(15, alias="STREAM_RETRY_INTERVAL")
    stream_max_retries: int = Field(-1, alias="STREAM_MAX_RETRIES")
    continuous_monitoring_interval_sec: float = Field(60, alias="CONTINUOUS_MONITORING_INTERVAL")

    # HTTP
    http_timeout_ms: int = Field(10_000, alias="HTTP_TIMEOUT_MS")
    http_reachability_timeout_ms: int = Field(5_000, alias="HTTP_REACHABILITY_TIMEOUT_MS")
    http_user_agents: list[str] = Field(default_factory=lambda: list(DEFAULT_USER_AGENTS), alias="HTTP_USER_AGENTS")

    # Retry system
    retry_base_delay_ms: int = Field(2_000, alias="RETRY_BASE_DELAY_MS")
    retry_max_delay_ms: int = Field(60_000, alias="RETRY_MAX_DELAY_MS")
    retry_backoff_multiplier: float = Field(1.3, alias="RETRY_BACKOFF_MULTIPLIER")
    retry_max_attempts: int = Field(-1, alias="RETRY_MAX_ATTEMPTS")

    # Twitch
    twitch_enabled: bool = Field(False, alias="TWITCH_ENABLED")
    twitch_client_id: Optional[str] = Field(None, alias="TWITCH_CLIENT_ID")
    twitch_client_secret: Optional[SecretStr] = Field(None, alias="TWITCH_CLIENT_SECRET")
    twitch_broadcaster_id: Optional[str] = Field(None, alias="TWITCH_BROADCASTER_ID")
    twitch_channel: Optional[str] = Field(None, alias="TWITCH_CHANNEL")
    twitch_token_store_path: str = Field("./data/twitch-tokens.json", alias="TWITCH_TOKEN_STORE_PATH")
    twitch_disable_auth: bool = Field(False, alias="TWITCH_DISABLE_AUTH")

    # YouTube
    youtube_enabled: bool = Field(False, alias="YOUTUBE_ENABLED")
    youtube_handle: Optional[str] = Field(None, alias="YOUTUBE_HANDLE")
    youtube_api_key: Optional[SecretStr] = Field(None, alias="YOUTUBE_API_KEY")
    youtube_poll_interval_ms: int = Field(5_000, alias="YOUTUBE_POLL_INTERVAL_MS")
    youtube_disable_auth: bool = Field(False, alias="YOUTUBE_DISABLE_AUTH")

    # TikTok
    tiktok_enabled: bool = Field(False, alias="TIKTOK_ENABLED")
    tiktok_username: Optional[str] = Field(None, alias="TIKTOK_USERNAME")
    tiktok_api_key: Optional[SecretStr] = Field(None, alias="TIKTOK_API_KEY")
    tiktok_ws_url: AnyUrl = Field("wss://ws.eulerstream.com", alias="TIKTOK_WS_URL")
    gift_aggregation_enabled: bool = Field(True, alias="TIKTOK_GIFT_AGGREGATION_ENABLED")
    gift_aggregation_delay_ms: int = Field(2_000, alias="TIKTOK_GIFT_AGGREGATION_DELAY_MS")

    # StreamElements (donations provider)
    streamelements_enabled: bool = Field(False, alias="STREAMELEMENTS_ENABLED")
    streamelements_jwt: Optional[SecretStr] = Field(None, alias="STREAMELEMENTS_JWT")
    streamelements_channel_id: Optional[str] = Field(None, alias="STREAMELEMENTS_CHANNEL_ID")
    streamelements_tips_poll_interval_sec: float = Field(30, alias="STREAMELEMENTS_TIPS_POLL_INTERVAL")
    streamelements_youtube_channel_id: Optional[str] = Field(None, alias="STREAMELEMENTS_YOUTUBE_CHANNEL_ID")
    streamelements_twitch_channel_id: Optional[str] = Field(None, alias="STREAMELEMENTS_TWITCH_CHANNEL_ID")

    # Spam detection
    spam_detection_enabled: bool = Field(True, alias="SPAM_DETECTION_ENABLED")
    spam_low_value_threshold: float = Field(10, alias="SPAM_LOW_VALUE_THRESHOLD")
    spam_detection_window_sec: float = Field(5, alias="SPAM_DETECTION_WINDOW")
    spam_max_individual_notifications: int = Field(2, alias="SPAM_MAX_INDIVIDUAL_NOTIFICATIONS")
    youtube_spam_detection_enabled: bool = Field(False, alias="YOUTUBE_SPAM_DETECTION_ENABLED")

    # OBS
    obs_enabled: bool = Field(True, alias="OBS_ENABLED")
    obs_url: AnyUrl = Field("ws://localhost:4455", alias="OBS_URL")
    obs_password: Optional[SecretStr] = Field(None, alias="OBS_PASSWORD")
    obs_connection_timeout_ms: int = Field(10_000, alias="OBS_CONNECTION_TIMEOUT_MS")
    obs_chat_source: str = Field("chat msg txt", alias="OBS_CHAT_SOURCE")
    obs_chat_scene: str = Field("chat msg scene", alias="OBS_CHAT_SCENE")
    obs_chat_group: Optional[str] = Field("chat msg group", alias="OBS_CHAT_GROUP")
    obs_notification_source: str = Field("notification txt", alias="OBS_NOTIFICATION_SOURCE")
    obs_notification_scene: str = Field("notification scene", alias="OBS_NOTIFICATION_SCENE")
    obs_notification_group: Optional[str] = Field("notification msg group", alias="OBS_NOTIFICATION_GROUP")
    obs_tts_source: Optional[str] = Field("tts txt", alias="OBS_TTS_SOURCE")
    obs_chat_platform_logos: dict[str, str] = Field(default_factory=dict, alias="OBS_CHAT_PLATFORM_LOGOS")
    obs_notification_platform_logos: dict[str, str] = Field(
        default_factory=dict, alias="OBS_NOTIFICATION_PLATFORM_LOGOS"
    )
    obs_gift_video_source: Optional[str] = Field(None, alias="OBS_GIFT_VIDEO_SOURCE")
    obs_gift_audio_source: Optional[str] = Field(None, alias="OBS_GIFT_AUDIO_SOURCE")
    tts_enabled: bool = Field(False, alias="TTS_ENABLED")
    vfx_commands: dict[str, VfxConfig] = Field(default_factory=dict, alias="VFX_COMMANDS")

    # Chat commands
    cmd_cooldown_sec: float = Field(60, alias="CMD_COOLDOWN")
    heavy_command_cooldown_sec: float = Field(300, alias="HEAVY_COMMAND_COOLDOWN")
    heavy_command_threshold: int = Field(3, alias="HEAVY_COMMAND_THRESHOLD")
    heavy_command_window_sec: float = Field(60, alias="HEAVY_COMMAND_WINDOW")
    global_cmd_cooldown_sec: float = Field(60, alias="GLOBAL_CMD_COOLDOWN")
    cooldown_max_entries: int = Field(1000, alias="COOLDOWN_MAX_ENTRIES")
    ignore_self_messages: bool = Field(False, alias="IGNORE_SELF_MESSAGES")
    bot_usernames: list[str] = Field(default_factory=list, alias="BOT_USERNAMES")

    # Timing
    chat_message_duration_ms: int = Field(4_500, alias="CHAT_MESSAGE_DURATION_MS")
    notification_duration_ms: int = Field(3_000, alias="NOTIFICATION_DURATION_MS")
    notification_durations_ms: dict[str, int] = Field(default_factory=dict, alias="NOTIFICATION_DURATIONS_MS")
    transition_delay_ms: int = Field(200, alias="TRANSITION_DELAY_MS")
    notification_clear_delay_ms: int = Field(500, alias="NOTIFICATION_CLEAR_DELAY_MS")
    display_max_wait_ms: int = Field(30_000, alias="DISPLAY_MAX_WAIT_MS")
    display_queue_max_size: int = Field(100, alias="DISPLAY_QUEUE_MAX_SIZE")

    # Goals
    goals_enabled: bool = Field(False, alias="GOALS_ENABLED")
    goals_state_path: str = Field("./data/goals.json", alias="GOALS_STATE_PATH")
    tiktok_goal_target: float = Field(1000, alias="TIKTOK_GOAL_TARGET")
    youtube_goal_target: float = Field(1.0, alias="YOUTUBE_GOAL_TARGET")
    twitch_goal_target: float = Field(100, alias="TWITCH_GOAL_TARGET")
    tiktok_goal_source: Optional[str] = Field(None, alias="TIKTOK_GOAL_SOURCE")
    youtube_goal_source: Optional[str] = Field(None, alias="YOUTUBE_GOAL_SOURCE")
    twitch_goal_source: Optional[str] = Field(None, alias="TWITCH_GOAL_SOURCE")
    tiktok_paypiggy_equivalent: float = Field(50, alias="TIKTOK_PAYPIGGY_EQUIVALENT")
    youtube_paypiggy_price: float = Field(4.99, alias="YOUTUBE_PAYPIGGY_PRICE")
    twitch_paypiggy_equivalent: float = Field(350, alias="TWITCH_PAYPIGGY_EQUIVALENT")

    # Viewer counts
    viewer_count_enabled: bool = Field(False, alias="VIEWER_COUNT_ENABLED")
    viewer_count_poll_interval_sec: float = Field(60, alias="VIEWER_COUNT_POLL_INTERVAL")
    viewer_count_sources: dict[str, str] = Field(default_factory=dict, alias="VIEWER_COUNT_SOURCES")

    # Chat log
    chat_log_enabled: bool = Field(True, alias="CHAT_LOG_ENABLED")
    chat_log_dir: str = Field("./logs/chat", alias="CHAT_LOG_DIR")

    # Control API
    api_enabled: bool = Field(True, alias="API_ENABLED")
    api_host: str = Field("127.0.0.1", alias="API_HOST")
    api_port: int = Field(8080, alias="API_PORT")

    @field_validator(
        "max_message_length",
        "max_notifications_per_user",
        "suppression_window_sec",
        "suppression_duration_sec",
        "suppression_cleanup_interval_sec",
        "http_timeout_ms",
        "http_reachability_timeout_ms",
        "retry_base_delay_ms",
        "retry_max_delay_ms",
        "youtube_poll_interval_ms",
        "gift_aggregation_delay_ms",
        "obs_connection_timeout_ms",
        "chat_message_duration_ms",
        "notification_duration_ms",
        "display_max_wait_ms",
        "display_queue_max_size",
        "api_port",
        "cooldown_max_entries",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator(
        "stream_retry_interval_sec",
        "continuous_monitoring_interval_sec",
        "retry_backoff_multiplier",
        "spam_detection_window_sec",
        "viewer_count_poll_interval_sec",
        "streamelements_tips_poll_interval_sec",
        "cmd_cooldown_sec",
        "heavy_command_cooldown_sec",
        "heavy_command_window_sec",
        "global_cmd_cooldown_sec",
    )
    @classmethod
    def _ensure_positive_finite(cls, value: float) -> float:
        return _require_positive_finite(value, "value")

    @field_validator("stream_max_retries", "retry_max_attempts")
    @classmethod
    def _ensure_retry_bound(cls, value: int) -> int:
        if value < -1:
            raise ValueError("Retry bound must be -1 (unlimited) or non-negative")
        return value

    @field_validator("heavy_command_threshold")
    @classmethod
    def _heavy_threshold(cls, value: int) -> int:
        if not 2 <= value <= 20:
            raise ValueError("Heavy command threshold must be between 2 and 20")
        return value

    @field_validator("transition_delay_ms", "notification_clear_delay_ms")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Delay must be non-negative")
        return value

    @property
    def is_test_env(self) -> bool:
        return self.app_env.lower() == "test"

    def stream_detection(self) -> StreamDetectionConfig:
        return StreamDetectionConfig(
            enabled=self.stream_detection_enabled,
            retry_interval_sec=self.stream_retry_interval_sec,
            max_retries=self.stream_max_retries,
            monitoring_interval_sec=self.continuous_monitoring_interval_sec,
        )

    def spam_configs(self) -> dict[str, SpamConfig]:
        base = SpamConfig(
            enabled=self.spam_detection_enabled,
            low_value_threshold=self.spam_low_value_threshold,
            detection_window_sec=self.spam_detection_window_sec,
            max_individual_notifications=self.spam_max_individual_notifications,
        )
        youtube = base.model_copy(
            update={
                "enabled": self.spam_detection_enabled and self.youtube_spam_detection_enabled,
                "low_value_threshold": 1.0,
            }
        )
        return {
            "tiktok": base,
            "twitch": base.model_copy(),
            "youtube": youtube,
            "donations": base.model_copy(),
        }

    def suppression(self) -> SuppressionConfig:
        return SuppressionConfig(
            enabled=self.user_suppression_enabled,
            max_notifications_per_user=self.max_notifications_per_user,
            window_ms=self.suppression_window_sec * 1000,
            duration_ms=self.suppression_duration_sec * 1000,
            cleanup_interval_ms=self.suppression_cleanup_interval_sec * 1000,
        )

    def command_cooldowns(self) -> CommandCooldownConfig:
        return CommandCooldownConfig(
            user_cooldown_ms=int(self.cmd_cooldown_sec * 1000),
            heavy_cooldown_ms=int(self.heavy_command_cooldown_sec * 1000),
            heavy_threshold=self.heavy_command_threshold,
            heavy_window_ms=int(self.heavy_command_window_sec * 1000),
            global_cooldown_ms=int(self.global_cmd_cooldown_sec * 1000),
            max_entries=self.cooldown_max_entries,
        )

    def self_usernames(self) -> dict[str, list[str]]:
        """Names whose chat is the streamer's own, per platform."""

        own = {
            "twitch": self.twitch_channel,
            "youtube": self.youtube_handle,
            "tiktok": self.tiktok_username,
        }
        return {
            platform: [name.lstrip("@") for name in [channel, *self.bot_usernames] if name]
            for platform, channel in own.items()
        }

    def display(self) -> DisplayConfig:
        return DisplayConfig(
            chat=OverlaySlotConfig(
                source_name=self.obs_chat_source,
                scene_name=self.obs_chat_scene,
                group_name=self.obs_chat_group,
                platform_logos=self.obs_chat_platform_logos,
            ),
            notification=OverlaySlotConfig(
                source_name=self.obs_notification_source,
                scene_name=self.obs_notification_scene,
                group_name=self.obs_notification_group,
                platform_logos=self.obs_notification_platform_logos,
            ),
            tts_source=self.obs_tts_source,
            tts_enabled=self.tts_enabled,
            gift_video_source=self.obs_gift_video_source,
            gift_audio_source=self.obs_gift_audio_source,
            chat_duration_ms=self.chat_message_duration_ms,
            notification_duration_ms=self.notification_durations_ms,
            default_notification_duration_ms=self.notification_duration_ms,
            transition_delay_ms=self.transition_delay_ms,
            notification_clear_delay_ms=self.notification_clear_delay_ms,
            max_wait_ms=self.display_max_wait_ms,
            max_queue_size=self.display_queue_max_size,
        )

    def goals(self) -> dict[str, GoalConfig]:
        return {
            "tiktok": GoalConfig(
                target=self.tiktok_goal_target,
                currency="coins",
                source_name=self.tiktok_goal_source,
                paypiggy_equivalent=self.tiktok_paypiggy_equivalent,
            ),
            "youtube": GoalConfig(
                target=self.youtube_goal_target,
                currency="dollars",
                source_name=self.youtube_goal_source,
                paypiggy_equivalent=self.youtube_paypiggy_price,
            ),
            "twitch": GoalConfig(
                target=self.twitch_goal_target,
                currency="bits",
                source_name=self.twitch_goal_source,
                paypiggy_equivalent=self.twitch_paypiggy_equivalent,
            ),
        }


def load_settings(**overrides: Any) -> Settings:
    """Build settings, translating validation failures into ``ConfigurationError``."""

    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return load_settings()
