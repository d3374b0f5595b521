"""Per-platform adaptive exponential backoff."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from ..errors import ConfigurationError, is_auth_failure
from .timeouts import Timer

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_MS = 2_000
DEFAULT_MAX_DELAY_MS = 60_000
DEFAULT_BACKOFF_MULTIPLIER = 1.3


def _finite_positive(value: Any) -> bool:
    return (
        not isinstance(value, bool)
        and isinstance(value, (int, float))
        and math.isfinite(value)
        and value > 0
    )


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff parameters: ``clamp(base * multiplier ** attempts, base, max_delay)``."""

    base_delay_ms: float = DEFAULT_BASE_DELAY_MS
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    max_attempts: int = -1

    @classmethod
    def build(
        cls,
        base_delay_ms: Any = None,
        max_delay_ms: Any = None,
        multiplier: Any = None,
        max_attempts: int = -1,
    ) -> "RetryPolicy":
        """Create a policy, substituting safe defaults for absent or unusable values."""

        base = base_delay_ms if _finite_positive(base_delay_ms) else DEFAULT_BASE_DELAY_MS
        mult = multiplier if _finite_positive(multiplier) else DEFAULT_BACKOFF_MULTIPLIER
        ceiling = max_delay_ms if _finite_positive(max_delay_ms) else max(DEFAULT_MAX_DELAY_MS, base)
        if ceiling < base:
            raise ConfigurationError(f"max delay {ceiling} is below base delay {base}")
        if max_attempts < -1:
            raise ConfigurationError("max attempts must be -1 or non-negative")
        return cls(base_delay_ms=float(base), max_delay_ms=float(ceiling), multiplier=float(mult), max_attempts=max_attempts)

    def delay_for(self, attempts: int) -> float:
        attempts = max(0, int(attempts))
        try:
            raw = self.base_delay_ms * (self.multiplier ** attempts)
        except OverflowError:
            raw = self.max_delay_ms
        if not math.isfinite(raw):
            raw = self.max_delay_ms
        return float(min(max(raw, self.base_delay_ms), self.max_delay_ms))

    def total_retry_time(self, attempts: int) -> float:
        return sum(self.delay_for(n) for n in range(max(0, attempts)))


STREAM_DETECTION_MAX_DELAY_MS = 300_000


def stream_detection_policy(retry_interval_sec: float) -> RetryPolicy:
    return RetryPolicy.build(
        base_delay_ms=retry_interval_sec * 1000 if _finite_positive(retry_interval_sec) else None,
        max_delay_ms=STREAM_DETECTION_MAX_DELAY_MS,
        multiplier=2,
    )


@dataclass(slots=True)
class RetryBucket:
    """Backoff state for one platform."""

    attempts: int = 0
    next_delay_ms: float = DEFAULT_BASE_DELAY_MS
    last_error: Optional[str] = None
    timer: Optional[Timer] = field(default=None, repr=False)


ReconnectFn = Callable[[], Awaitable[Any] | Any]


class RetrySystem:
    """Keeps isolated retry buckets keyed by platform."""

    def __init__(self, policy: Optional[RetryPolicy] = None) -> None:
        self._policy = policy or RetryPolicy()
        self._buckets: dict[str, RetryBucket] = {}

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def bucket(self, platform: str) -> RetryBucket:
        bucket = self._buckets.get(platform)
        if bucket is None:
            bucket = RetryBucket(next_delay_ms=self._policy.delay_for(0))
            self._buckets[platform] = bucket
        return bucket

    def delay_for(self, platform: str) -> float:
        return self._policy.delay_for(self.bucket(platform).attempts)

    def increment(self, platform: str) -> float:
        """Record a failed attempt and return the delay before the next one."""

        bucket = self.bucket(platform)
        delay = self._policy.delay_for(bucket.attempts)
        bucket.attempts += 1
        bucket.next_delay_ms = self._policy.delay_for(bucket.attempts)
        return delay

    def reset(self, platform: str) -> None:
        bucket = self.bucket(platform)
        bucket.attempts = 0
        bucket.next_delay_ms = self._policy.delay_for(0)
        bucket.last_error = None
        if bucket.timer is not None:
            bucket.timer.cancel()

    def has_exceeded_max_retries(self, platform: str) -> bool:
        limit = self._policy.max_attempts
        if limit <= 0:
            return False
        return self.bucket(platform).attempts >= limit

    def total_retry_time(self, attempts: int) -> float:
        return self._policy.total_retry_time(attempts)

    def handle_connection_error(
        self,
        platform: str,
        error: BaseException,
        reconnect: ReconnectFn,
        is_connected: Optional[Callable[[], bool]] = None,
    ) -> Optional[float]:
        """Schedule ``reconnect`` after the bucket delay.

        Returns the scheduled delay, or None when no retry was scheduled.
        """

        bucket = self.bucket(platform)
        bucket.last_error = extract_error_message(error)

        if is_auth_failure(error):
            logger.error("retry.auth_failure", extra={"platform": platform, "error": bucket.last_error})
            return None
        if is_connected is not None and is_connected():
            logger.debug("retry.already_connected", extra={"platform": platform})
            return None
        if self.has_exceeded_max_retries(platform):
            logger.error(
                "retry.exhausted",
                extra={"platform": platform, "attempts": bucket.attempts, "error": bucket.last_error},
            )
            return None

        delay = self.increment(platform)
        if bucket.timer is None:
            bucket.timer = Timer(f"retry-{platform}")
        bucket.timer.schedule(delay, reconnect)
        logger.info(
            "retry.scheduled",
            extra={"platform": platform, "attempt": bucket.attempts, "delay_ms": delay, "error": bucket.last_error},
        )
        return delay

    def handle_connection_success(self, platform: str) -> None:
        attempts = self.bucket(platform).attempts
        self.reset(platform)
        if attempts:
            logger.info("retry.recovered", extra={"platform": platform, "after_attempts": attempts})

    def statistics(self) -> dict[str, dict[str, Any]]:
        return {
            platform: {
                "attempts": bucket.attempts,
                "next_delay_ms": bucket.next_delay_ms,
                "total_retry_time_ms": self.total_retry_time(bucket.attempts),
                "last_error": bucket.last_error,
                "retry_pending": bool(bucket.timer and bucket.timer.pending),
            }
            for platform, bucket in self._buckets.items()
        }

    def cancel_all(self) -> None:
        for bucket in self._buckets.values():
            if bucket.timer is not None:
                bucket.timer.cancel()


def extract_error_message(error: Any) -> str:
    if error is None:
        return "Unknown error"
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    if isinstance(error, dict):
        for key in ("message", "error", "reason"):
            if error.get(key):
                return str(error[key])
    return str(error)
