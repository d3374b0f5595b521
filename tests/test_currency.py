import pytest

from chat_overlay.utils.currency import CurrencyParser, format_currency, parse_amount, symbol_for


@pytest.fixture
def parser() -> CurrencyParser:
    return CurrencyParser()


@pytest.mark.parametrize(
    ("text", "amount", "currency", "symbol"),
    [
        ("TRY 219.99", 219.99, "TRY", "₺"),
        ("₹200", 200.0, "INR", "₹"),
        ("$5.00", 5.0, "USD", "$"),
        ("CA$10", 10.0, "CAD", "CA$"),
        ("€1.234,56", 1234.56, "EUR", "€"),
        ("ARS$ 1.500,50", 1500.5, "ARS", "ARS"),
    ],
)
def test_parse_known_formats(parser: CurrencyParser, text: str, amount: float, currency: str, symbol: str) -> None:
    result = parser.parse(text)
    assert result.success
    assert result.amount == pytest.approx(amount)
    assert result.currency == currency
    assert result.symbol == symbol
    assert result.original == text


@pytest.mark.parametrize(
    ("text", "reason"),
    [
        ("", "empty input"),
        ("   ", "empty input"),
        ("-$5", "negative amount"),
        ("$-5", "negative amount"),
        ("five dollars", "unknown currency format"),
    ],
)
def test_parse_failures(parser: CurrencyParser, text: str, reason: str) -> None:
    result = parser.parse(text)
    assert not result.success
    assert result.amount == 0.0
    assert result.reason == reason


def test_parse_amount_separators() -> None:
    assert parse_amount("1,5") == pytest.approx(1.5)
    assert parse_amount("1,000") == pytest.approx(1000)
    assert parse_amount("1.000.000") == pytest.approx(1_000_000)
    assert parse_amount("abc") is None


def test_format_currency_round_trips_through_parser(parser: CurrencyParser) -> None:
    text = format_currency(12.5, "gbp")
    assert text == "GBP 12.50"
    assert parser.parse(text).amount == pytest.approx(12.5)
    assert symbol_for("gbp") == "£"
    assert symbol_for("xyz") == "XYZ"
