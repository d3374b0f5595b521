import pytest

from chat_overlay.notifications.messages import (
    build_notification_text,
    envelope_text,
    format_money,
    gift_text,
    greeting_text,
    paypiggy_text,
    raid_text,
    redemption_text,
)


def test_fiat_gift_includes_message() -> None:
    text = gift_text(
        {"username": "Eve", "amount": 5.0, "currency": "USD", "symbol": "$", "gift_type": "Super Chat", "message": "gg"},
        "Unknown User",
    )
    assert text.display == "Eve sent a Super Chat of $5.00: gg"
    assert text.tts == "Eve sent $5.00"


def test_tip_without_symbol() -> None:
    text = gift_text({"username": "Ann", "amount": 3, "currency": "EUR", "gift_type": "Tip"}, "Unknown User")
    assert text.display == "Ann sent 3.00 EUR"


def test_coin_gift_shows_count_and_total() -> None:
    text = gift_text(
        {"username": "Bob", "amount": 1, "currency": "coins", "gift_type": "Rose", "gift_count": 7}, "Unknown User"
    )
    assert text.display == "Bob sent 7x Rose (7 coins)"
    assert text.tts == "Bob sent 7 coins with 7x Rose"


def test_paypiggy_wording_per_platform() -> None:
    assert paypiggy_text("youtube", {"username": "Fay", "is_renewal": True, "months": 6}, "x").display == (
        "Fay renewed membership for 6 months!"
    )
    assert paypiggy_text("youtube", {"username": "Fay"}, "x").display == "Fay just became a member!"
    assert paypiggy_text("twitch", {"username": "Gus", "tier": "2000"}, "x").display == "Gus just subscribed (Tier 2)!"
    assert paypiggy_text("twitch", {"username": "Gus", "is_gift": True, "gift_count": 1}, "x").display == (
        "Gus gifted a subscription!"
    )


def test_other_notification_texts() -> None:
    assert raid_text({"username": "Hal", "viewer_count": 42}, "x").display == "Incoming raid from Hal with 42 viewers!"
    assert envelope_text({"username": "Ivy", "amount": 100, "currency": "coins"}, "x").display == (
        "Ivy sent a 100 coins treasure chest!"
    )
    assert redemption_text({"username": "Jo", "reward_title": "Hydrate", "reward_cost": 500}, "x").display == (
        "Jo redeemed Hydrate (500 points)!"
    )
    greeting = greeting_text({"username": "Jo"}, "x")
    assert greeting.display == "Welcome, Jo! 👋"
    assert greeting.tts == "Hi Jo"


def test_fallback_username() -> None:
    assert build_notification_text("follow", "twitch", {"username": "<>"}, "Someone").display == "Someone just followed!"


def test_unknown_kind_raises() -> None:
    with pytest.raises(ValueError):
        build_notification_text("chat", "twitch", {"username": "A"})


def test_format_money() -> None:
    assert format_money(5, "USD", "$") == "$5.00"
    assert format_money(5, "EUR") == "5.00 EUR"
    assert format_money(5, "JPY", "JPY") == "5.00 JPY"
