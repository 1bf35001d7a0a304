"""
Test suite for money precision helpers

Tests Decimal parsing, ROUND_HALF_UP quantization and display formatting.
Floats must never leak into amounts.
"""

import pytest
from decimal import Decimal

from core_financing.currency import (
    Currency, parse_amount, quantize_amount, to_decimal
)
from core_financing.errors import ValidationError


class TestQuantize:
    """Test rounding to the currency precision"""

    def test_round_half_up(self):
        assert quantize_amount(Decimal('1.005')) == Decimal('1.01')
        assert quantize_amount(Decimal('1.004')) == Decimal('1.00')
        assert quantize_amount(Decimal('-1.005')) == Decimal('-1.01')

    def test_currency_precision(self):
        assert Currency.DOP.precision == 2
        assert Currency.DOP.symbol == "RD$"


class TestParsing:
    """Test incoming amount parsing"""

    def test_to_decimal_accepts_strings_and_ints(self):
        assert to_decimal("12.50") == Decimal('12.50')
        assert to_decimal(7) == Decimal('7')

    def test_float_goes_through_string(self):
        assert to_decimal(0.1) == Decimal('0.1')

    @pytest.mark.parametrize("value", ["abc", "", "NaN", "Infinity", True, None])
    def test_to_decimal_rejects_non_numbers(self, value):
        with pytest.raises(ValidationError):
            to_decimal(value)

    def test_parse_amount_quantizes(self):
        assert parse_amount("100") == Decimal('100.00')
        assert str(parse_amount("100")) == "100.00"

    def test_parse_amount_rejects_sub_cent(self):
        with pytest.raises(ValidationError, match="decimal places"):
            parse_amount("10.001", "amount")

    def test_quantize_out_of_range(self):
        """Amounts too wide for the working precision are input errors"""
        with pytest.raises(ValidationError, match="out of range"):
            quantize_amount(Decimal("1e30"))

    def test_parse_amount_out_of_range(self):
        with pytest.raises(ValidationError, match="out of range"):
            parse_amount("1e30", "amount")
        with pytest.raises(ValidationError):
            parse_amount("123456789012345678901234567890")
