"""
Test suite for currency module

Money must never pass through float and must always be quantized to the
currency precision with half-up rounding.
"""

import pytest
from decimal import Decimal

from loan_servicing.currency import Money, Currency, to_decimal, min_money


class TestMoney:
    """Test Money arithmetic and validation"""

    def test_quantizes_to_currency_precision(self):
        """Test amounts are rounded half-up to the currency precision"""
        assert Money(Decimal('10.005')).amount == Decimal('10.01')
        assert Money(Decimal('10.004')).amount == Decimal('10.00')
        assert Money(Decimal('1234.5'), Currency.JPY).amount == Decimal('1235')

    def test_float_rejected(self):
        """Test that floats are refused"""
        with pytest.raises(TypeError, match="float"):
            Money(10.5)

    def test_string_and_int_accepted(self):
        """Test that str and int convert exactly"""
        assert Money('150') == Money(Decimal('150.00'))
        assert Money(150) == Money(Decimal('150.00'))
        assert to_decimal('0.1') == Decimal('0.1')

    def test_arithmetic(self):
        """Test add, subtract, multiply and divide"""
        a = Money(Decimal('100.00'))
        b = Money(Decimal('33.33'))

        assert a + b == Money(Decimal('133.33'))
        assert a - b == Money(Decimal('66.67'))
        assert a * Decimal('0.15') == Money(Decimal('15.00'))
        assert a / 3 == Money(Decimal('33.33'))
        assert -a == Money(Decimal('-100.00'))

    def test_currency_mismatch(self):
        """Test mixing currencies raises"""
        with pytest.raises(ValueError, match="Cannot add"):
            Money(Decimal('1.00'), Currency.USD) + Money(Decimal('1.00'), Currency.PAB)
        with pytest.raises(ValueError, match="Cannot compare"):
            Money(Decimal('1.00'), Currency.USD) < Money(Decimal('1.00'), Currency.EUR)

    def test_sign_helpers(self):
        """Test zero/positive/negative checks and clamping"""
        assert Money.zero().is_zero()
        assert Money(Decimal('0.01')).is_positive()
        assert Money(Decimal('-0.01')).is_negative()
        assert Money(Decimal('-5.00')).clamp_zero() == Money.zero()
        assert Money(Decimal('5.00')).clamp_zero() == Money(Decimal('5.00'))

    def test_min_money(self):
        """Test min_money picks the smaller amount"""
        a = Money(Decimal('10.00'))
        b = Money(Decimal('20.00'))
        assert min_money(a, b) == a

    def test_to_string(self):
        """Test display formatting"""
        assert Money(Decimal('1234.5')).to_string() == "USD 1,234.50"
        assert Money(Decimal('1234'), Currency.JPY).to_string() == "JPY 1,234"

    def test_equality_and_hash(self):
        """Test equal amounts compare and hash equal"""
        assert Money(Decimal('5')) == Money(Decimal('5.00'))
        assert hash(Money(Decimal('5'))) == hash(Money(Decimal('5.00')))
        assert Money(Decimal('5')) != Decimal('5')
