import pytest

from chat_overlay.commands import CommandCooldowns, find_command, normalize_trigger
from chat_overlay.config import CommandCooldownConfig, load_settings
from chat_overlay.errors import ConfigurationError
from chat_overlay.models import VfxConfig

from .utils import make_settings


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000_000.0

    def __call__(self) -> float:
        return self.now


COMMANDS = {
    "wave": VfxConfig(command="!wave", media_source="wave vid"),
    "boom": VfxConfig(command="boom", media_source="boom vid"),
}


def test_first_word_selects_the_command() -> None:
    assert find_command("!WAVE hello there", COMMANDS) is COMMANDS["wave"]
    assert find_command("  !boom", COMMANDS) is COMMANDS["boom"]
    assert find_command("hello !wave", COMMANDS) is None
    assert find_command("!unknown", COMMANDS) is None
    assert find_command("", COMMANDS) is None
    assert normalize_trigger("Boom") == "!boom"


def test_user_cooldown_blocks_until_it_expires() -> None:
    clock = FakeClock()
    cooldowns = CommandCooldowns(CommandCooldownConfig(user_cooldown_ms=10_000, global_cooldown_ms=1), clock=clock)

    assert cooldowns.blocked_reason("twitch:1", "!wave") is None
    cooldowns.record("twitch:1", "!wave")
    clock.now += 5
    assert cooldowns.blocked_reason("twitch:1", "!boom") == "user"
    assert cooldowns.blocked_reason("twitch:2", "!boom") is None

    clock.now += 10_000
    assert cooldowns.blocked_reason("twitch:1", "!boom") is None


def test_global_cooldown_is_per_command() -> None:
    clock = FakeClock()
    cooldowns = CommandCooldowns(CommandCooldownConfig(global_cooldown_ms=30_000), clock=clock)

    cooldowns.record("twitch:1", "wave")
    assert cooldowns.check_global("!wave") == "global"
    assert cooldowns.blocked_reason("youtube:9", "!wave") == "global"
    assert cooldowns.blocked_reason("youtube:9", "!boom") is None

    clock.now += 30_000
    assert cooldowns.check_global("!wave") is None


def test_heavy_users_get_the_longer_cooldown() -> None:
    clock = FakeClock()
    config = CommandCooldownConfig(
        user_cooldown_ms=1_000, heavy_cooldown_ms=60_000, heavy_threshold=3, heavy_window_ms=10_000, global_cooldown_ms=1
    )
    cooldowns = CommandCooldowns(config, clock=clock)

    for _ in range(3):
        assert cooldowns.blocked_reason("tiktok:u", "!wave") is None
        cooldowns.record("tiktok:u", "!wave")
        clock.now += 1_000

    assert cooldowns.status("tiktok:u")["heavy"] is True
    assert cooldowns.blocked_reason("tiktok:u", "!wave") == "heavy"

    clock.now += 60_000
    assert cooldowns.blocked_reason("tiktok:u", "!wave") is None
    assert cooldowns.status("tiktok:u")["heavy"] is False


def test_cleanup_forgets_idle_users_and_caps_entries() -> None:
    clock = FakeClock()
    cooldowns = CommandCooldowns(
        CommandCooldownConfig(
            user_cooldown_ms=1_000, heavy_cooldown_ms=2_000, heavy_window_ms=1_000, global_cooldown_ms=1_000, max_entries=4
        ),
        clock=clock,
    )
    for index in range(5):
        cooldowns.record(f"twitch:{index}", "!wave")
        clock.now += 1
    assert cooldowns.statistics()["tracked_users"] <= 4

    clock.now += 5_000
    cooldowns.cleanup()
    assert cooldowns.statistics() == {"tracked_users": 0, "heavy_users": 0, "commands_on_cooldown": 0}


def test_settings_build_cooldowns_and_self_names() -> None:
    settings = make_settings(
        CMD_COOLDOWN=30, GLOBAL_CMD_COOLDOWN=5, TIKTOK_USERNAME="@creator", BOT_USERNAMES=["helperbot"]
    )
    config = settings.command_cooldowns()
    assert (config.user_cooldown_ms, config.global_cooldown_ms, config.heavy_cooldown_ms) == (30_000, 5_000, 300_000)
    assert settings.self_usernames()["tiktok"] == ["creator", "helperbot"]
    assert settings.self_usernames()["twitch"] == ["helperbot"]

    with pytest.raises(ConfigurationError):
        load_settings(APP_ENV="test", HEAVY_COMMAND_THRESHOLD=1)
