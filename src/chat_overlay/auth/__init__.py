"""OAuth token persistence and refresh scheduling."""

__all__ = [
    "AuthState",
    "TokenRecord",
    "TokenStore",
    "TwitchAuthManager",
]

from .manager import AuthState, TwitchAuthManager
from .token_store import TokenRecord, TokenStore
