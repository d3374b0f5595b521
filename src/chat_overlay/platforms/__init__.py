"""Platform adapters and payload normalization."""

__all__ = [
    "AlwaysLiveProbe",
    "LivenessProbe",
    "PlatformAdapter",
    "StreamElementsAdapter",
    "TikTokAdapter",
    "TikTokGiftAggregator",
    "TikTokLivenessProbe",
    "TwitchEventSubAdapter",
    "YouTubeLiveChatAdapter",
    "YouTubeLivenessProbe",
    "build_event",
]

from .base import PlatformAdapter
from .normalize import build_event
from .probes import AlwaysLiveProbe, LivenessProbe, TikTokLivenessProbe, YouTubeLivenessProbe
from .streamelements import StreamElementsAdapter
from .tiktok import TikTokAdapter, TikTokGiftAggregator
from .twitch import TwitchEventSubAdapter
from .youtube import YouTubeLiveChatAdapter
