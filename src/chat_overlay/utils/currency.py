"""Parse display strings such as ``"TRY 219.99"`` or ``"₹200"`` into amounts."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "KRW": "₩",
    "RUB": "₽",
    "TRY": "₺",
    "THB": "฿",
    "PHP": "₱",
    "NGN": "₦",
    "UAH": "₴",
    "ILS": "₪",
    "VND": "₫",
    "BDT": "৳",
    "PKR": "₨",
    "AUD": "A$",
    "CAD": "CA$",
    "BRL": "R$",
    "TWD": "NT$",
}

# Multi-character symbols must be tried before the bare "$".
COMPOUND_SYMBOLS: tuple[tuple[str, str], ...] = (
    ("CA$", "CAD"),
    ("NT$", "TWD"),
    ("A$", "AUD"),
    ("R$", "BRL"),
)

SINGLE_SYMBOLS: tuple[tuple[str, str], ...] = (
    ("₺", "TRY"),
    ("₹", "INR"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₩", "KRW"),
    ("₽", "RUB"),
    ("฿", "THB"),
    ("₱", "PHP"),
    ("₦", "NGN"),
    ("₴", "UAH"),
    ("₪", "ILS"),
    ("₫", "VND"),
    ("৳", "BDT"),
    ("₨", "PKR"),
    ("$", "USD"),
)

_NUMBER = r"([0-9][0-9.,]*)"
_CODE_SPACE = re.compile(r"^([A-Za-z]{3})\s+" + _NUMBER + r"$")
_CODE_DOLLAR = re.compile(r"^([A-Za-z]{3})\$\s*" + _NUMBER + r"$")
_SYMBOL_AMOUNT = re.compile(r"^\s*" + _NUMBER + r"$")


@dataclass(frozen=True, slots=True)
class CurrencyParseResult:
    success: bool
    amount: float
    currency: str = ""
    symbol: str = ""
    original: str = ""
    reason: Optional[str] = None

    @classmethod
    def failure(cls, original: str, reason: str) -> "CurrencyParseResult":
        return cls(success=False, amount=0.0, original=original, reason=reason)


def parse_amount(raw: str) -> Optional[float]:
    """Interpret separators in ``raw``; return None when it is not a number."""

    text = raw.strip().replace(" ", "").replace(" ", "")
    if not text:
        return None
    has_dot = "." in text
    has_comma = "," in text

    if has_dot and has_comma:
        decimal_sep = "." if text.rfind(".") > text.rfind(",") else ","
        thousands_sep = "," if decimal_sep == "." else "."
        normalized = text.replace(thousands_sep, "")
        if normalized.count(decimal_sep) > 1:
            return None
        normalized = normalized.replace(decimal_sep, ".")
    elif has_comma:
        digits_after = len(text) - text.rfind(",") - 1
        if text.count(",") == 1 and digits_after <= 2:
            normalized = text.replace(",", ".")
        else:
            normalized = text.replace(",", "")
    elif has_dot and text.count(".") > 1:
        normalized = text.replace(".", "")
    else:
        normalized = text

    try:
        value = Decimal(normalized)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return float(value)


class CurrencyParser:
    """Parses the three supported amount formats, most specific first."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._logger = log or logger

    def parse(self, text: Optional[str]) -> CurrencyParseResult:
        original = text if isinstance(text, str) else ""
        if not isinstance(text, str) or not text.strip():
            return CurrencyParseResult.failure(original, "empty input")

        value = text.strip()
        if value.startswith("-") or value.startswith("−"):
            return CurrencyParseResult.failure(original, "negative amount")

        match = _CODE_SPACE.match(value)
        if match:
            return self._from_code(match.group(1), match.group(2), original)

        match = _CODE_DOLLAR.match(value)
        if match:
            return self._from_code(match.group(1), match.group(2), original)

        for prefix, code in COMPOUND_SYMBOLS + SINGLE_SYMBOLS:
            if value.startswith(prefix):
                rest = value[len(prefix) :]
                if rest.lstrip().startswith("-"):
                    return CurrencyParseResult.failure(original, "negative amount")
                number = _SYMBOL_AMOUNT.match(rest)
                if not number:
                    break
                return self._build(code, prefix, number.group(1), original)

        self._logger.warning("currency.unknown_format", extra={"input": original})
        return CurrencyParseResult.failure(original, "unknown currency format")

    def _from_code(self, code: str, number: str, original: str) -> CurrencyParseResult:
        code = code.upper()
        return self._build(code, CURRENCY_SYMBOLS.get(code, code), number, original)

    def _build(self, code: str, symbol: str, number: str, original: str) -> CurrencyParseResult:
        amount = parse_amount(number)
        if amount is None:
            return CurrencyParseResult.failure(original, "invalid number")
        if amount < 0:
            return CurrencyParseResult.failure(original, "negative amount")
        return CurrencyParseResult(
            success=True,
            amount=amount,
            currency=code,
            symbol=symbol,
            original=original,
        )


def format_currency(amount: float, currency: str) -> str:
    """Render an amount in the ``"CODE AMOUNT"`` form the parser accepts."""

    return f"{currency.upper()} {amount:.2f}"


def symbol_for(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())
