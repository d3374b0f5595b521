"""Per-platform, per-user daily chat transcripts."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError
from .utils.text import sanitize_filename_component

logger = logging.getLogger(__name__)


def log_date(timestamp_ms: Optional[int] = None) -> str:
    moment = (
        datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
        if timestamp_ms
        else datetime.now(timezone.utc)
    )
    return moment.strftime("%Y-%m-%d")


def format_log_entry(platform: str, username: str, message: str, timestamp_ms: Optional[int] = None) -> str:
    return f"[{log_date(timestamp_ms)}] [{platform}] {username}: {message}"


def log_filename(platform: str, username: str, timestamp_ms: Optional[int] = None) -> str:
    return f"{platform.lower()}-{sanitize_filename_component(username)}-{log_date(timestamp_ms)}.txt"


class ChatLogWriter:
    """Appends ``[YYYY-MM-DD] [platform] username: message`` lines (UTF-8)."""

    def __init__(self, directory: str | Path, enabled: bool = True) -> None:
        if not directory:
            raise ConfigurationError("chat log directory is required")
        self._directory = Path(directory)
        self._enabled = enabled
        self._lock = asyncio.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    async def append(
        self, platform: str, username: str, message: str, timestamp_ms: Optional[int] = None
    ) -> Optional[Path]:
        if not self._enabled or not username or not message:
            return None
        path = self._directory / log_filename(platform, username, timestamp_ms)
        line = format_log_entry(platform, username, message, timestamp_ms)
        async with self._lock:
            try:
                await asyncio.to_thread(self._write_line, path, line)
            except OSError as exc:
                logger.warning("chat_log.write_failed", extra={"path": str(path), "error": str(exc)})
                return None
        return path

    def _write_line(self, path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(line + "\n")
