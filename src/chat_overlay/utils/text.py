"""Text processing for usernames, chat messages and overlay content."""

from __future__ import annotations

import html
import re
from typing import Any, Iterable, Optional

HTML_TAG_RE = re.compile(r"<[^>]*>")
JAVASCRIPT_RE = re.compile(r"javascript:", re.IGNORECASE)
CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
ANGLE_BRACKETS_RE = re.compile(r"[<>]")
WHITESPACE_RE = re.compile(r"\s+")
EMOJI_RE = re.compile(
    "["
    "\U0001F300-\U0001FAFF"
    "\U00002600-\U000027BF"
    "\U0001F000-\U0001F2FF"
    "️"
    "]+"
)
TEMPLATE_MARKER_RE = re.compile(r"\$\{[^}]*\}")
UNDEFINED_RE = re.compile(r"\bundefined\b")
FILENAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_-]")

TTS_USERNAME_LIMIT = 12
DEFAULT_FALLBACK_USERNAME = "Unknown User"


def _sanitize_once(value: str) -> str:
    value = html.unescape(value)
    value = HTML_TAG_RE.sub("", value)
    value = ANGLE_BRACKETS_RE.sub("", value)
    value = JAVASCRIPT_RE.sub("", value)
    value = CONTROL_CHARS_RE.sub("", value)
    return value.strip()


def sanitize_username(username: Any) -> str:
    """Return a display-safe username, or ``""`` when nothing usable remains.

    Repeats until stable so that nested entities or split ``javascript:``
    schemes cannot reappear; the result is idempotent.
    """

    if not isinstance(username, str):
        return ""
    current = username
    while True:
        cleaned = _sanitize_once(current)
        if cleaned == current:
            return cleaned
        current = cleaned


def clean_text(text: Any) -> str:
    """Decode entities, strip markup and collapse whitespace."""

    if not isinstance(text, str) or not text:
        return ""
    decoded = html.unescape(text)
    decoded = HTML_TAG_RE.sub("", decoded)
    decoded = JAVASCRIPT_RE.sub("", decoded)
    decoded = CONTROL_CHARS_RE.sub(" ", decoded)
    return WHITESPACE_RE.sub(" ", decoded).strip()


def truncate_text(text: Any, max_length: int, preserve_words: bool = False) -> str:
    if not isinstance(text, str) or not text:
        return ""
    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    if preserve_words:
        result = ""
        for word in text.split(" "):
            candidate = f"{result} {word}" if result else word
            if len(candidate) > max_length - 3:
                break
            result = candidate
        if result:
            return result + "..."
    return text[: max_length - 3] + "..."


def format_username_for_display(username: Any, fallback: str = DEFAULT_FALLBACK_USERNAME) -> str:
    cleaned = sanitize_username(username)
    cleaned = WHITESPACE_RE.sub(" ", cleaned)
    return cleaned or fallback


def format_username_for_tts(username: Any, fallback: str = DEFAULT_FALLBACK_USERNAME) -> str:
    """Shorten a username to something a TTS voice can read in one breath."""

    if not isinstance(username, str):
        return fallback
    spoken = EMOJI_RE.sub("", sanitize_username(username))
    spoken = re.sub(r"[_\-.@]", " ", spoken)
    spoken = re.sub(r"[^A-Za-z0-9 ]", "", spoken)
    spoken = re.sub(r"\d{2,}", lambda match: match.group(0)[0], spoken)
    spoken = WHITESPACE_RE.sub(" ", spoken).strip()
    if not spoken:
        return fallback
    return limit_username(spoken)


def limit_username(username: str, limit: int = TTS_USERNAME_LIMIT) -> str:
    if len(username) <= limit:
        return username
    result = ""
    for word in username.split(" "):
        candidate = f"{result} {word}" if result else word
        if len(candidate) > limit:
            break
        result = candidate
    return result or username[:limit]


def extract_message_text(parts: Any) -> str:
    """Flatten string, run lists (``{"text": ...}``) or emoji parts into text."""

    if parts is None:
        return ""
    if isinstance(parts, str):
        return parts.strip()
    if isinstance(parts, dict):
        if isinstance(parts.get("runs"), list):
            return extract_message_text(parts["runs"])
        for key in ("text", "simpleText", "message"):
            if isinstance(parts.get(key), str):
                return parts[key].strip()
        return ""
    if isinstance(parts, Iterable):
        chunks: list[str] = []
        for part in parts:
            if isinstance(part, str):
                chunks.append(part)
            elif isinstance(part, dict):
                emoji = part.get("emoji")
                emoji_text = None
                if isinstance(emoji, dict):
                    shortcuts = emoji.get("shortcuts") or []
                    emoji_text = shortcuts[0] if shortcuts else emoji.get("emojiId")
                chunks.append(part.get("text") or part.get("emojiText") or emoji_text or "")
        return "".join(chunks).strip()
    return str(parts).strip()


def prepare_chat_message(message: Any, max_length: int = 500) -> str:
    return truncate_text(clean_text(extract_message_text(message)), max_length, preserve_words=True)


def format_coin_amount(amount: Any, currency: str = "coins") -> str:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return ""
    if value <= 0:
        return ""
    shown = int(value) if value.is_integer() else round(value, 2)
    if currency != "coins":
        return f"{shown} {currency}"
    return f"{shown} {'coin' if value == 1 else 'coins'}"


def find_overlay_artifact(text: Any) -> Optional[str]:
    """Return a reason string when ``text`` is not fit for the overlay."""

    if text is None:
        return "empty content"
    if not isinstance(text, str):
        return f"non-text content ({type(text).__name__})"
    if TEMPLATE_MARKER_RE.search(text):
        return "unresolved template marker"
    if "[object Object]" in text:
        return "serialized object artifact"
    if UNDEFINED_RE.search(text):
        return "undefined artifact"
    if not clean_text(text):
        return "empty content"
    return None


def sanitize_filename_component(value: Any, fallback: str = "unknown") -> str:
    cleaned = FILENAME_UNSAFE_RE.sub("", str(value or ""))
    return cleaned or fallback
