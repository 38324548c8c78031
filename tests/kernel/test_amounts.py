"""
Locale-aware amount parsing and canonical hashing.

Covers:
- US, European and Swiss thousands/decimal conventions
- Negative forms: leading/trailing minus, parentheses
- Currency symbols and ISO codes
- Non-numbers return None instead of raising
- Property: formatting a Decimal either way parses back to the same value
- content_hash stability across key order and Decimal/date encoding
"""

from datetime import date
from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from ledger_kernel.domain.amounts import (
    canonical_json,
    content_hash,
    parse_locale_decimal,
    within_tolerance,
)


class TestParseLocaleDecimal:
    """Money text as it appears in bank and brokerage exports."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("1,234.56", Decimal("1234.56")),
            ("1.234,56", Decimal("1234.56")),
            ("1'234.56", Decimal("1234.56")),
            ("1 234,56", Decimal("1234.56")),
            ("46,175.80", Decimal("46175.80")),
            ("1,000", Decimal("1000")),
            ("12,5", Decimal("12.5")),
            ("1.000.000", Decimal("1000000")),
            (".50", Decimal(".50")),
        ],
    )
    def test_separator_conventions(self, text, expected):
        assert parse_locale_decimal(text) == expected

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("-2,019.24", Decimal("-2019.24")),
            ("(2,019.24)", Decimal("-2019.24")),
            ("2,019.24-", Decimal("-2019.24")),
            ("+15.00", Decimal("15.00")),
        ],
    )
    def test_negative_forms(self, text, expected):
        assert parse_locale_decimal(text) == expected

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("$1,000.00", Decimal("1000.00")),
            ("-$2,019.24", Decimal("-2019.24")),
            ("€ 1.234,56", Decimal("1234.56")),
            ("USD 99.95", Decimal("99.95")),
            ("1 234,56 EUR", Decimal("1234.56")),
        ],
    )
    def test_currency_markers_are_ignored(self, text, expected):
        assert parse_locale_decimal(text) == expected

    @pytest.mark.parametrize("text", ["", "   ", "N/A", "abc", "12abc", "--", "()"])
    def test_non_numbers_return_none(self, text):
        assert parse_locale_decimal(text) is None

    def test_none_returns_none(self):
        assert parse_locale_decimal(None) is None

    def test_decimal_and_int_pass_through(self):
        assert parse_locale_decimal(Decimal("1.005")) == Decimal("1.005")
        assert parse_locale_decimal(42) == Decimal(42)

    def test_exactness_is_preserved(self):
        """Sub-cent digits are kept, never rounded."""
        assert parse_locale_decimal("1,000.005") == Decimal("1000.005")


class TestLocaleRoundTripProperty:
    """Formatting a value with either convention parses back to it."""

    @given(
        amount=st.decimals(
            min_value=Decimal("-999999999.99"),
            max_value=Decimal("999999999.99"),
            places=2,
            allow_nan=False,
            allow_infinity=False,
        )
    )
    @settings(max_examples=200)
    def test_us_format(self, amount):
        text = f"{amount:,.2f}"
        assert parse_locale_decimal(text) == amount

    @given(
        amount=st.decimals(
            min_value=Decimal("-999999999.99"),
            max_value=Decimal("999999999.99"),
            places=2,
            allow_nan=False,
            allow_infinity=False,
        )
    )
    @settings(max_examples=200)
    def test_european_format(self, amount):
        us = f"{abs(amount):,.2f}"
        european = us.replace(",", "_").replace(".", ",").replace("_", ".")
        text = f"({european})" if amount < 0 else european
        assert parse_locale_decimal(text) == amount


class TestTolerance:
    def test_half_cent_is_within_default_tolerance(self):
        """$1,000.00 vs $1,000.005 balances."""
        assert within_tolerance(Decimal("1000.00"), Decimal("1000.005"))

    def test_three_cents_is_outside(self):
        assert not within_tolerance(Decimal("100.00"), Decimal("100.03"))

    def test_exactly_one_cent_is_within(self):
        assert within_tolerance(Decimal("0.00"), Decimal("0.01"))


class TestContentHash:
    def test_key_order_does_not_matter(self):
        assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})

    def test_decimals_and_dates_are_canonical(self):
        text = canonical_json({"amount": Decimal("1.50"), "on": date(2024, 1, 2)})
        assert text == '{"amount":"1.50","on":"2024-01-02"}'

    def test_trailing_zeros_change_the_hash(self):
        """Exact decimal text is hashed, so 1.5 and 1.50 differ."""
        assert content_hash({"x": Decimal("1.5")}) != content_hash({"x": Decimal("1.50")})
