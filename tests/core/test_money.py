"""
Tests for fixed-point money helpers.
"""

from decimal import Decimal

import pytest

from apps.core.exceptions import ValidationError
from apps.core.money import money, quantity, require_positive, to_decimal, validate_currency


class TestMoney:
    """Tests for cent rounding."""

    def test_rounds_half_up(self) -> None:
        """Should round .005 away from zero."""
        assert money("2.675") == Decimal("2.68")
        assert money("0.005") == Decimal("0.01")
        assert money("-0.005") == Decimal("-0.01")

    def test_floats_have_no_binary_artifacts(self) -> None:
        """Should convert floats through their repr."""
        assert money(0.1 + 0.2) == Decimal("0.30")
        assert to_decimal(19.99) == Decimal("19.99")

    def test_always_two_places(self) -> None:
        """Should quantize integers to cents."""
        assert str(money(5)) == "5.00"

    def test_invalid_value_raises_validation_error(self) -> None:
        """Should reject non-numeric input with INVALID_AMOUNT."""
        with pytest.raises(ValidationError) as exc_info:
            money("abc")

        assert exc_info.value.code == "INVALID_AMOUNT"


class TestQuantity:
    """Tests for metered quantity rounding."""

    def test_keeps_four_places(self) -> None:
        """Should keep sub-cent precision for usage quantities."""
        assert quantity("1.23456") == Decimal("1.2346")


class TestRequirePositive:
    """Tests for require_positive."""

    @pytest.mark.parametrize("value", ["0", "-1", 0, "0.001"])
    def test_rejects_zero_and_negative(self, value) -> None:
        """Should reject values that round to zero or below."""
        with pytest.raises(ValidationError) as exc_info:
            require_positive(value)

        assert exc_info.value.code == "INVALID_AMOUNT"

    def test_returns_rounded_amount(self) -> None:
        """Should return the amount in cents."""
        assert require_positive("60.004") == Decimal("60.00")


class TestValidateCurrency:
    """Tests for ISO 4217 code validation."""

    def test_normalizes_case_and_whitespace(self) -> None:
        """Should upper-case and strip."""
        assert validate_currency(" usd ") == "USD"

    @pytest.mark.parametrize("code", ["", "US", "USDX", "U5D", None])
    def test_rejects_malformed_codes(self, code) -> None:
        """Should raise INVALID_CURRENCY."""
        with pytest.raises(ValidationError) as exc_info:
            validate_currency(code)

        assert exc_info.value.code == "INVALID_CURRENCY"
