from __future__ import annotations

from typing import Any

from chat_overlay.config import Settings


def make_settings(**overrides: Any) -> Settings:
    data = {
        "APP_ENV": "test",
        "LOG_LEVEL": "INFO",
        "OBS_ENABLED": False,
        "API_ENABLED": False,
        "CHAT_LOG_ENABLED": False,
        "GOALS_ENABLED": False,
        "STREAM_RETRY_INTERVAL": 1,
        "CONTINUOUS_MONITORING_INTERVAL": 1,
        "SPAM_DETECTION_WINDOW": 1,
        "CHAT_MESSAGE_DURATION_MS": 10,
        "NOTIFICATION_DURATION_MS": 10,
        "TRANSITION_DELAY_MS": 0,
        "NOTIFICATION_CLEAR_DELAY_MS": 0,
        "DISPLAY_QUEUE_MAX_SIZE": 8,
        "API_HOST": "127.0.0.1",
        "API_PORT": 9000,
    }
    data.update(overrides)
    return Settings.model_validate(data)


class FakeSources:
    """Records OBS source calls instead of sending them."""

    def __init__(self, ready: bool = True) -> None:
        self.ready = ready
        self.calls: list[tuple[Any, ...]] = []

    def is_ready(self) -> bool:
        return self.ready

    async def update_text_source(self, source_name: str, text: str) -> None:
        self.calls.append(("text", source_name, text))

    async def clear_text_source(self, source_name: str) -> None:
        self.calls.append(("clear", source_name))

    async def set_source_visibility(self, scene_name: str, source_name: str, visible: bool) -> None:
        self.calls.append(("visible", scene_name, source_name, visible))

    async def set_group_source_visibility(self, group_name: str, source_name: str, visible: bool) -> None:
        self.calls.append(("group_visible", group_name, source_name, visible))

    async def set_platform_logos(self, group_name: str, logos: dict[str, str], active_platform: Any) -> None:
        self.calls.append(("logos", group_name, active_platform))

    async def set_media_file(self, input_name: str, file_path: str) -> None:
        self.calls.append(("media_file", input_name, file_path))

    async def trigger_media(self, input_name: str, action: str = "restart") -> None:
        self.calls.append(("media", input_name))

    def text_updates(self) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == "text"]
