"""Outbound HTTP with deadlines, rotating user agents and retry integration."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Iterator, Optional, Sequence

import httpx

from ..config import DEFAULT_USER_AGENTS
from ..errors import AuthError, OperationTimeoutError, TransientNetworkError
from .retry import RetrySystem
from .timeouts import validate_timeout, with_timeout

logger = logging.getLogger(__name__)


class HttpClient:
    """Thin wrapper around ``httpx.AsyncClient``.

    Every request carries the next user agent from the pool and runs under a
    deadline. Transport failures surface as ``TransientNetworkError``.
    """

    def __init__(
        self,
        *,
        timeout_ms: float = 10_000,
        reachability_timeout_ms: float = 5_000,
        user_agents: Optional[Sequence[str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_system: Optional[RetrySystem] = None,
    ) -> None:
        self._timeout_ms = validate_timeout(timeout_ms, "http timeout")
        self._reachability_timeout_ms = validate_timeout(reachability_timeout_ms, "reachability timeout")
        agents = list(user_agents or DEFAULT_USER_AGENTS)
        if not agents:
            agents = list(DEFAULT_USER_AGENTS)
        self._user_agents: Iterator[str] = itertools.cycle(agents)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout_ms / 1000)
        self._retry = retry_system

    @property
    def timeout_ms(self) -> float:
        return self._timeout_ms

    def next_user_agent(self) -> str:
        return next(self._user_agents)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        timeout_ms: Optional[float] = None,
        headers: Optional[dict[str, str]] = None,
        operation: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        merged = {"User-Agent": self.next_user_agent()}
        if headers:
            merged.update(headers)
        deadline = timeout_ms if timeout_ms is not None else self._timeout_ms
        name = operation or f"{method.upper()} {url}"
        try:
            return await with_timeout(
                self._client.request(method, url, headers=merged, **kwargs),
                deadline,
                name,
            )
        except OperationTimeoutError:
            raise
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{name} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{name} failed: {exc}") from exc

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def request_with_retry(
        self,
        method: str,
        url: str,
        *,
        platform: str,
        max_attempts: int = 3,
        **kwargs: Any,
    ) -> httpx.Response:
        """Retry transient failures using the platform's backoff bucket."""

        attempt = 0
        while True:
            try:
                response = await self.request(method, url, **kwargs)
            except (TransientNetworkError, OperationTimeoutError) as exc:
                attempt += 1
                if attempt >= max_attempts:
                    raise
                delay_ms = self._retry.increment(platform) if self._retry else 1000 * attempt
                logger.warning(
                    "http.retrying",
                    extra={"platform": platform, "attempt": attempt, "delay_ms": delay_ms, "error": str(exc)},
                )
                await asyncio.sleep(delay_ms / 1000)
                continue
            if response.status_code in (401, 403):
                raise AuthError(f"{method} {url} rejected credentials", status_code=response.status_code)
            if self._retry:
                self._retry.handle_connection_success(platform)
            return response

    async def check_reachability(self, url: str) -> bool:
        """Return True when ``url`` answers with a status in ``[200, 400)``."""

        try:
            response = await self.request(
                "GET",
                url,
                timeout_ms=self._reachability_timeout_ms,
                operation=f"reachability {url}",
            )
        except (TransientNetworkError, OperationTimeoutError) as exc:
            logger.debug("http.unreachable", extra={"url": url, "error": str(exc)})
            return False
        return 200 <= response.status_code < 400
