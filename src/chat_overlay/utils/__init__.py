"""Leaf utilities shared by every subsystem."""

__all__ = [
    "CurrencyParser",
    "CurrencyParseResult",
    "HttpClient",
    "RetryPolicy",
    "RetrySystem",
    "Timer",
    "canonicalize_timestamp",
    "sanitize_username",
    "with_timeout",
    "with_timeout_all",
]

from .currency import CurrencyParser, CurrencyParseResult
from .http_client import HttpClient
from .retry import RetryPolicy, RetrySystem
from .text import sanitize_username
from .timeouts import Timer, with_timeout, with_timeout_all
from .timestamps import canonicalize_timestamp
