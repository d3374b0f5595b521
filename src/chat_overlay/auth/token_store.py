"""JSON token persistence with atomic replace."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


class TokenRecord(BaseModel):
    """OAuth tokens for one platform."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., alias="accessToken", min_length=1)
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    expires_at_ms: Optional[int] = Field(default=None, alias="expiresAtMs")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    def is_expired(self, now_ms: int, margin_ms: int = 0) -> bool:
        if self.expires_at_ms is None:
            return False
        return now_ms >= self.expires_at_ms - margin_ms


class TokenStore:
    """Stores ``{platform: {accessToken, refreshToken, expiresAtMs}}`` at ``path``.

    Writes go to a sibling temp file that is then renamed over the target, so
    readers see either the old or the new document. A missing file reads as
    empty.
    """

    def __init__(self, path: str | Path) -> None:
        if not path:
            raise ConfigurationError("token store path is required")
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self, platform: str) -> Optional[TokenRecord]:
        document = await asyncio.to_thread(self._read_document)
        entry = document.get(platform)
        if not isinstance(entry, dict) or not entry.get("accessToken"):
            return None
        try:
            return TokenRecord.model_validate(entry)
        except ValidationError as exc:
            logger.warning("token_store.invalid_entry", extra={"platform": platform, "error": str(exc)})
            return None

    async def save(self, platform: str, record: TokenRecord) -> None:
        async with self._lock:
            await asyncio.to_thread(self._save_sync, platform, record)

    async def clear(self, platform: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._clear_sync, platform)

    def _read_document(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("token_store.missing", extra={"path": str(self._path)})
            return {}
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid token store file: {self._path}") from exc
        return data if isinstance(data, dict) else {}

    def _save_sync(self, platform: str, record: TokenRecord) -> None:
        document = self._read_document()
        previous = document.get(platform) if isinstance(document.get(platform), dict) else {}
        entry = record.model_dump(by_alias=True, exclude_none=True)
        if not entry.get("refreshToken") and previous.get("refreshToken"):
            entry["refreshToken"] = previous["refreshToken"]
        entry["updatedAt"] = datetime.now(timezone.utc).isoformat()
        document[platform] = entry
        self._write_atomic(document)
        if "refreshToken" not in entry:
            logger.warning("token_store.no_refresh_token", extra={"platform": platform})

    def _clear_sync(self, platform: str) -> None:
        document = self._read_document()
        if document.pop(platform, None) is not None:
            self._write_atomic(document)

    def _write_atomic(self, document: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_name(self._path.name + ".tmp")
        payload = json.dumps(document, indent=2, sort_keys=True)
        with open(temp_path, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        if os.name == "posix":
            os.chmod(temp_path, 0o600)
        os.replace(temp_path, self._path)
