"""Exception taxonomy and the per-subsystem error handler."""

from __future__ import annotations

import logging
from typing import Any, Optional


class ChatOverlayError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(ChatOverlayError):
    """Invalid or missing configuration detected at construction time."""


class TransientNetworkError(ChatOverlayError):
    """Network failure that may succeed when retried."""


class AuthError(ChatOverlayError):
    """Credentials were rejected; the session cannot continue without new ones."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PlatformProbeError(ChatOverlayError):
    """A liveness probe failed to produce an answer."""


class EventProcessingError(ChatOverlayError):
    """A raw or canonical event could not be processed."""


class OperationTimeoutError(ChatOverlayError, TimeoutError):
    """Raised when an awaited operation exceeds its deadline."""

    def __init__(self, operation: str, timeout_ms: float) -> None:
        super().__init__(f"{operation} timed out after {timeout_ms:g}ms")
        self.operation = operation
        self.timeout_ms = timeout_ms


class OverlayContentError(ChatOverlayError):
    """Overlay text contained technical artifacts and was refused."""

    def __init__(self, reason: str, content: Any = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.content = content


class QueueFullError(ChatOverlayError):
    """The display queue is at capacity."""


class ObsRequestError(ChatOverlayError):
    """OBS answered a request with a failure status."""

    def __init__(self, request_type: str, code: Optional[int], comment: Optional[str] = None) -> None:
        super().__init__(f"OBS {request_type} failed ({code}): {comment or 'no comment'}")
        self.request_type = request_type
        self.code = code
        self.comment = comment


def is_auth_failure(error: BaseException) -> bool:
    """Return True when ``error`` means credentials were rejected."""

    if isinstance(error, AuthError):
        return True
    status = getattr(error, "status_code", None)
    if status == 401:
        return True
    text = str(error).lower()
    return "401" in text or "unauthorized" in text or "invalid_grant" in text


class PlatformErrorHandler:
    """Logs subsystem failures in a uniform shape without ever raising."""

    def __init__(self, logger: logging.Logger, context: str) -> None:
        self._logger = logger
        self._context = context

    @property
    def context(self) -> str:
        return self._context

    def handle_event_processing_error(
        self,
        error: BaseException,
        event_kind: str,
        data: Any = None,
        message: Optional[str] = None,
    ) -> None:
        self._logger.error(
            f"{self._context}.event_error",
            extra={
                "event_kind": event_kind,
                "detail": message or f"Error processing {event_kind} event",
                "error": str(error),
                "error_type": type(error).__name__,
                "data": _preview(data),
            },
        )

    def log_operational_error(self, message: str, data: Any = None) -> None:
        self._logger.warning(
            f"{self._context}.operational_error",
            extra={"detail": message, "data": _preview(data)},
        )

    def handle_connection_error(self, error: BaseException, action: str = "connect") -> None:
        self._logger.warning(
            f"{self._context}.connection_error",
            extra={"action": action, "error": str(error), "error_type": type(error).__name__},
        )

    def handle_auth_error(self, error: BaseException | str) -> None:
        self._logger.error(f"{self._context}.auth_error", extra={"error": str(error)})


def _preview(data: Any, limit: int = 300) -> Any:
    if data is None:
        return None
    try:
        text = repr(data)
    except Exception:  # pragma: no cover - broken __repr__
        return "<unrepresentable>"
    return text if len(text) <= limit else text[:limit] + "..."
