"""Twitch OAuth token lifecycle: load, validate, refresh and reschedule."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..errors import AuthError, OperationTimeoutError, TransientNetworkError
from ..utils.endpoints import TWITCH_OAUTH_TOKEN, TWITCH_OAUTH_VALIDATE
from ..utils.http_client import HttpClient
from ..utils.retry import RetryPolicy
from ..utils.timeouts import Timer
from ..utils.timestamps import now_ms
from .token_store import TokenRecord, TokenStore

logger = logging.getLogger(__name__)

REFRESH_MARGIN_MS = 5 * 60 * 1000
AUTH_FAILURE_MARKERS = ("invalid_grant", "unauthorized", "invalid refresh token")


class AuthState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    NEEDS_OAUTH = "needs_oauth"
    FAILED = "failed"
    DISABLED = "disabled"


class TwitchAuthManager:
    """Keeps a Twitch user token fresh.

    Each instance owns its own timer and token state; nothing is shared
    between instances.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        store: TokenStore,
        http: HttpClient,
        platform: str = "twitch",
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        retry_policy: Optional[RetryPolicy] = None,
        disabled: bool = False,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._store = store
        self._http = http
        self._platform = platform
        self._clock = clock
        self._sleep = sleep
        self._retry_policy = retry_policy or RetryPolicy.build(base_delay_ms=1000, multiplier=2, max_delay_ms=30_000)
        self._tokens: Optional[TokenRecord] = None
        self._timer: Optional[Timer] = Timer(f"{platform}-token-refresh")
        self._next_refresh_at_ms: Optional[int] = None
        self._refresh_lock = asyncio.Lock()
        self._state = AuthState.DISABLED if disabled else AuthState.UNINITIALIZED

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def tokens(self) -> Optional[TokenRecord]:
        return self._tokens

    @property
    def access_token(self) -> Optional[str]:
        return self._tokens.access_token if self._tokens else None

    @property
    def next_refresh_at_ms(self) -> Optional[int]:
        return self._next_refresh_at_ms

    async def initialize(self) -> bool:
        """Load persisted tokens, refreshing them if they are about to expire."""

        if self._state is AuthState.DISABLED:
            logger.info("auth.disabled", extra={"platform": self._platform})
            return False
        self._tokens = await self._store.load(self._platform)
        if self._tokens is None:
            self._state = AuthState.NEEDS_OAUTH
            logger.warning("auth.no_tokens", extra={"platform": self._platform})
            return False

        if self._tokens.is_expired(self._clock(), REFRESH_MARGIN_MS):
            return await self.refresh()

        self._state = AuthState.READY
        if self._tokens.expires_at_ms is not None:
            self.schedule_refresh(self._tokens.expires_at_ms)
        return True

    async def ensure_valid_token(self) -> Optional[str]:
        if self._tokens is None:
            return None
        if self._tokens.is_expired(self._clock(), REFRESH_MARGIN_MS):
            if not await self.refresh():
                return None
        return self.access_token

    async def validate_token(self) -> bool:
        token = self.access_token
        if not token:
            return False
        try:
            response = await self._http.get(
                TWITCH_OAUTH_VALIDATE,
                headers={"Authorization": f"OAuth {token}"},
                operation="twitch token validate",
            )
        except (TransientNetworkError, OperationTimeoutError) as exc:
            logger.warning("auth.validate_unreachable", extra={"error": str(exc)})
            return False
        if response.status_code == 200:
            expires_in = _safe_json(response).get("expires_in")
            if isinstance(expires_in, (int, float)) and expires_in > 0 and self._tokens is not None:
                self._tokens = self._tokens.model_copy(update={"expires_at_ms": self._clock() + int(expires_in * 1000)})
            return True
        logger.warning("auth.validate_rejected", extra={"status": response.status_code})
        return False

    async def refresh(self) -> bool:
        """Exchange the refresh token for a new access token.

        Returns False without persisting anything on a missing refresh token,
        rejected credentials, or a malformed response.
        """

        async with self._refresh_lock:
            refresh_token = self._tokens.refresh_token if self._tokens else None
            if not refresh_token:
                logger.warning("auth.no_refresh_token", extra={"platform": self._platform})
                return False

            try:
                payload = await self._request_refresh(refresh_token)
            except AuthError as exc:
                logger.error("auth.refresh_rejected", extra={"platform": self._platform, "error": str(exc)})
                self._state = AuthState.FAILED
                self.cleanup()
                return False
            except (TransientNetworkError, OperationTimeoutError) as exc:
                logger.error("auth.refresh_unreachable", extra={"platform": self._platform, "error": str(exc)})
                return False

            if payload is None:
                return False
            access_token = payload.get("access_token")
            if not isinstance(access_token, str) or not access_token:
                logger.error("auth.refresh_malformed", extra={"platform": self._platform})
                return False

            expires_in = payload.get("expires_in")
            expires_at_ms: Optional[int] = None
            if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool) and expires_in > 0:
                expires_at_ms = self._clock() + int(expires_in * 1000)

            record = TokenRecord(
                access_token=access_token,
                refresh_token=payload.get("refresh_token") or refresh_token,
                expires_at_ms=expires_at_ms,
            )
            await self._store.save(self._platform, record)
            self._tokens = record
            self._state = AuthState.READY
            logger.info("auth.refreshed", extra={"platform": self._platform, "expires_at_ms": expires_at_ms})
            if expires_at_ms is not None:
                self.schedule_refresh(expires_at_ms)
            return True

    async def _request_refresh(self, refresh_token: str) -> Optional[dict[str, Any]]:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        retried = False
        while True:
            try:
                response = await self._http.post(TWITCH_OAUTH_TOKEN, data=form, operation="twitch token refresh")
            except (TransientNetworkError, OperationTimeoutError) as exc:
                if retried:
                    raise
                retried = True
                delay_ms = self._retry_policy.delay_for(0)
                logger.warning("auth.refresh_retry", extra={"reason": "network", "delay_ms": delay_ms, "error": str(exc)})
                await self._sleep(delay_ms / 1000)
                continue

            if response.status_code == 429:
                if retried:
                    logger.error("auth.refresh_rate_limited", extra={"platform": self._platform})
                    return None
                retried = True
                delay_sec = _retry_after_seconds(response)
                logger.warning("auth.refresh_retry", extra={"reason": "rate_limited", "delay_ms": delay_sec * 1000})
                await self._sleep(delay_sec)
                continue

            body = _safe_json(response)
            if response.status_code == 401 or _is_auth_failure_body(body, response):
                raise AuthError("Twitch rejected the refresh token", status_code=response.status_code)
            if response.status_code >= 400:
                logger.error(
                    "auth.refresh_http_error",
                    extra={"status": response.status_code, "body": response.text[:200]},
                )
                return None
            return body

    def schedule_refresh(self, expires_at_ms: Any) -> bool:
        """Arm the refresh timer for five minutes before ``expires_at_ms``.

        Replaces any previously scheduled refresh. Non-numeric values or a
        fire time that is not in the future leave the timer untouched.
        """

        if isinstance(expires_at_ms, bool) or not isinstance(expires_at_ms, (int, float)):
            return False
        fire_at = int(expires_at_ms) - REFRESH_MARGIN_MS
        delay_ms = fire_at - self._clock()
        if delay_ms <= 0:
            return False
        if self._timer is None:
            self._timer = Timer(f"{self._platform}-token-refresh")
        if not self._timer.schedule(delay_ms, self._scheduled_refresh):
            return False
        self._next_refresh_at_ms = fire_at
        logger.debug("auth.refresh_scheduled", extra={"platform": self._platform, "fire_at_ms": fire_at})
        return True

    async def _scheduled_refresh(self) -> None:
        self._next_refresh_at_ms = None
        await self.refresh()

    def cleanup(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._next_refresh_at_ms = None


def _safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _is_auth_failure_body(body: dict[str, Any], response: httpx.Response) -> bool:
    if response.status_code < 400:
        return False
    text = " ".join(str(body.get(key, "")) for key in ("error", "message")).lower()
    if not text.strip():
        text = response.text.lower()
    return any(marker in text for marker in AUTH_FAILURE_MARKERS)


def _retry_after_seconds(response: httpx.Response, default: float = 1.0) -> float:
    raw = response.headers.get("retry-after")
    try:
        value = float(raw) if raw is not None else default
    except ValueError:
        return default
    return value if value > 0 else default
