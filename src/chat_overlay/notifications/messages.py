"""Display and TTS strings for every notification type."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..utils.text import format_coin_amount, format_username_for_display, format_username_for_tts

TIER_LABELS = {"1000": "Tier 1", "2000": "Tier 2", "3000": "Tier 3"}


@dataclass(slots=True)
class NotificationText:
    display: str
    tts: str
    log: str


def _whole(value: float) -> Any:
    return int(value) if float(value).is_integer() else round(value, 2)


def format_money(amount: Any, currency: Optional[str], symbol: Optional[str] = None) -> str:
    """Render a fiat amount as ``$5.00`` when a symbol is known, else ``5.00 EUR``."""

    value = float(amount or 0)
    code = (currency or "").upper()
    if symbol and symbol.upper() != code:
        return f"{symbol}{value:.2f}"
    return f"{value:.2f} {code}".strip()


def describe_amount(data: Mapping[str, Any], total: bool = True) -> str:
    """Human text for the value carried by a gift payload."""

    amount = float(data.get("amount") or 0)
    count = int(data.get("gift_count") or 1)
    value = amount * count if total else amount
    currency = str(data.get("currency") or "")
    if currency == "bits":
        return f"{_whole(value)} {'bit' if value == 1 else 'bits'}"
    if currency == "coins":
        return format_coin_amount(value)
    return format_money(value, currency, data.get("symbol"))


def _names(data: Mapping[str, Any], fallback: str) -> tuple[str, str]:
    username = data.get("username")
    return format_username_for_display(username, fallback), format_username_for_tts(username, fallback)


def gift_text(data: Mapping[str, Any], fallback: str) -> NotificationText:
    user, spoken = _names(data, fallback)
    count = int(data.get("gift_count") or 1)
    gift_type = data.get("gift_type") or "gift"
    currency = data.get("currency")
    worth = describe_amount(data)

    if data.get("is_bits") or currency == "bits":
        display = f"{user} sent {worth}"
        tts = f"{spoken} sent {worth}"
    elif currency == "coins":
        noun = gift_type if count == 1 else f"{count}x {gift_type}"
        display = f"{user} sent {noun} ({worth})" if worth else f"{user} sent {noun}"
        tts = f"{spoken} sent {worth} with {noun}" if worth else f"{spoken} sent {noun}"
    else:
        label = gift_type if gift_type not in ("gift", "Tip") else "a tip"
        display = f"{user} sent {worth}" if label == "a tip" else f"{user} sent a {label} of {worth}"
        tts = f"{spoken} sent {worth}"
        message = data.get("message")
        if message:
            display = f"{display}: {message}"
    return NotificationText(display=display, tts=tts, log=f"Gift from {user}: {count}x {gift_type} ({worth})")


def envelope_text(data: Mapping[str, Any], fallback: str) -> NotificationText:
    user, spoken = _names(data, fallback)
    worth = describe_amount(data, total=False)
    if worth:
        display = f"{user} sent a {worth} treasure chest!"
    else:
        display = f"{user} sent a treasure chest!"
    return NotificationText(display=display, tts=f"{spoken} sent a treasure chest", log=f"Treasure chest from {user}")


def paypiggy_text(platform: str, data: Mapping[str, Any], fallback: str) -> NotificationText:
    user, spoken = _names(data, fallback)
    months = data.get("months")
    is_gift = bool(data.get("is_gift"))
    count = int(data.get("gift_count") or 1)

    if platform == "youtube":
        if is_gift:
            noun = "membership" if count == 1 else "memberships"
            action = f"gifted {count} {noun}"
        elif data.get("is_renewal") and months:
            action = f"renewed membership for {months} months"
        else:
            action = "just became a member"
    else:
        if is_gift:
            noun = "subscription" if count == 1 else "subscriptions"
            action = f"gifted {'a subscription' if count == 1 else f'{count} {noun}'}"
        elif data.get("is_renewal") and months:
            action = f"renewed subscription for {months} months"
        else:
            action = "just subscribed"
        tier = data.get("tier_label") or TIER_LABELS.get(str(data.get("tier") or ""))
        if tier:
            action = f"{action} ({tier})"

    return NotificationText(display=f"{user} {action}!", tts=f"{spoken} {action}", log=f"Paypiggy from {user}: {action}")


def follow_text(data: Mapping[str, Any], fallback: str) -> NotificationText:
    user, spoken = _names(data, fallback)
    return NotificationText(display=f"{user} just followed!", tts=f"{spoken} just followed", log=f"Follow from {user}")


def raid_text(data: Mapping[str, Any], fallback: str) -> NotificationText:
    user, spoken = _names(data, fallback)
    viewers = int(data.get("viewer_count") or 0)
    return NotificationText(
        display=f"Incoming raid from {user} with {viewers} viewers!",
        tts=f"Incoming raid from {spoken} with {viewers} viewers",
        log=f"Raid from {user} ({viewers} viewers)",
    )


def redemption_text(data: Mapping[str, Any], fallback: str) -> NotificationText:
    user, spoken = _names(data, fallback)
    reward = data.get("reward_title") or "a reward"
    cost = data.get("reward_cost")
    suffix = f" ({cost} points)" if cost else ""
    return NotificationText(
        display=f"{user} redeemed {reward}{suffix}!",
        tts=f"{spoken} redeemed {reward}",
        log=f"Redemption by {user}: {reward}",
    )


def greeting_text(data: Mapping[str, Any], fallback: str) -> NotificationText:
    user, spoken = _names(data, fallback)
    return NotificationText(display=f"Welcome, {user}! 👋", tts=f"Hi {spoken}", log=f"Greeting for {user}")


def build_notification_text(
    kind: str, platform: str, data: Mapping[str, Any], fallback: str = "Unknown User"
) -> NotificationText:
    if kind == "gift":
        return gift_text(data, fallback)
    if kind == "envelope":
        return envelope_text(data, fallback)
    if kind == "paypiggy":
        return paypiggy_text(platform, data, fallback)
    if kind == "follow":
        return follow_text(data, fallback)
    if kind == "raid":
        return raid_text(data, fallback)
    if kind == "redemption":
        return redemption_text(data, fallback)
    if kind == "greeting":
        return greeting_text(data, fallback)
    raise ValueError(f"No notification text for {kind!r}")
