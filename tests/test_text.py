from chat_overlay.utils.text import (
    find_overlay_artifact,
    format_coin_amount,
    format_username_for_display,
    format_username_for_tts,
    prepare_chat_message,
    sanitize_filename_component,
    sanitize_username,
    truncate_text,
)


def test_sanitize_username_strips_markup_and_scripts() -> None:
    assert sanitize_username("<b>Bob</b>") == "Bob"
    assert sanitize_username("javascript:alert") == "alert"
    assert sanitize_username("&lt;script&gt;Eve") == "Eve"
    assert sanitize_username("A\x00B\x1f") == "AB"
    assert sanitize_username("<>") == ""
    assert sanitize_username(None) == ""


def test_sanitize_username_is_idempotent() -> None:
    for raw in ["&amp;lt;b&amp;gt;Neo", "javajavascript:script:x", "  <i>Trin</i>  "]:
        once = sanitize_username(raw)
        assert sanitize_username(once) == once
        assert "<" not in once and ">" not in once
        assert "javascript:" not in once.lower()


def test_username_for_tts_is_short_and_pronounceable() -> None:
    assert format_username_for_tts("xX_Gamer_12345_Xx") == "xX Gamer 1"
    assert format_username_for_tts("🎮🎮🎮") == "Unknown User"
    assert len(format_username_for_tts("averyveryverylongusernamewithoutspaces")) <= 12


def test_username_for_display_falls_back() -> None:
    assert format_username_for_display("  Ada   Lovelace ") == "Ada Lovelace"
    assert format_username_for_display("<i></i>", fallback="Anon") == "Anon"


def test_prepare_chat_message_cleans_and_truncates() -> None:
    assert prepare_chat_message("<b>hi</b>   there") == "hi there"
    assert prepare_chat_message([{"text": "hello "}, {"emoji": {"shortcuts": [":wave:"]}}]) == "hello :wave:"
    assert len(prepare_chat_message("word " * 200, max_length=50)) <= 50


def test_truncate_text_preserves_words() -> None:
    assert truncate_text("hello world foo", 10, preserve_words=True) == "hello..."
    assert truncate_text("short", 10) == "short"


def test_overlay_artifacts_are_detected() -> None:
    assert find_overlay_artifact("Hi ${name}") == "unresolved template marker"
    assert find_overlay_artifact("gift: [object Object]") == "serialized object artifact"
    assert find_overlay_artifact("value undefined") == "undefined artifact"
    assert find_overlay_artifact("") == "empty content"
    assert find_overlay_artifact(None) == "empty content"
    assert find_overlay_artifact({"text": "x"}) is not None
    assert find_overlay_artifact("Alice sent 5 roses") is None


def test_format_coin_amount() -> None:
    assert format_coin_amount(1) == "1 coin"
    assert format_coin_amount(5) == "5 coins"
    assert format_coin_amount(100, "bits") == "100 bits"
    assert format_coin_amount(0) == ""


def test_sanitize_filename_component() -> None:
    assert sanitize_filename_component("ab/c..d e") == "abcde"
    assert sanitize_filename_component("***") == "unknown"
