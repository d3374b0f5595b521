"""Notification policy: spam detection, suppression and display text."""

from .manager import NOTIFICATION_CONFIGS, NotificationManager
from .messages import NotificationText, build_notification_text
from .spam import AggregatedDonation, DonationSpamDetector, SpamDecision
from .suppression import UserSuppressionTracker

__all__ = [
    "AggregatedDonation",
    "DonationSpamDetector",
    "NOTIFICATION_CONFIGS",
    "NotificationManager",
    "NotificationText",
    "SpamDecision",
    "UserSuppressionTracker",
    "build_notification_text",
]
