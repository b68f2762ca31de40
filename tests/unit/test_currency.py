"""Unit tests for centavo arithmetic and peso conversion."""

from decimal import Decimal

import pytest

from utility_billing.errors import ValidationError
from utility_billing.services.currency import (
    Money,
    centavos_to_pesos,
    format_pesos,
    pesos_to_centavos,
    round_half_up,
    sum_money,
)


class TestPesoConversion:
    """Conversions at the API boundary are exact or rejected."""

    def test_decimal_string_converts_exactly(self):
        assert pesos_to_centavos("1234.56") == 123456
        assert pesos_to_centavos(Decimal("0.01")) == 1
        assert pesos_to_centavos(15) == 1500

    def test_more_than_two_places_rejected(self):
        with pytest.raises(ValidationError, match="more than two decimal places"):
            pesos_to_centavos("10.005")

    def test_trailing_zeros_accepted(self):
        assert pesos_to_centavos("10.500") == 1050

    def test_float_rejected(self):
        with pytest.raises(ValidationError, match="not float"):
            pesos_to_centavos(10.5)

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", ""])
    def test_non_numbers_rejected(self, value):
        with pytest.raises(ValidationError):
            pesos_to_centavos(value)

    def test_centavos_to_pesos_has_two_places(self):
        assert centavos_to_pesos(5) == Decimal("0.05")
        assert str(centavos_to_pesos(100000)) == "1000.00"

    def test_round_trip_through_money(self):
        assert Money.from_pesos("987.65").to_pesos() == Decimal("987.65")


class TestMoney:
    """Money only ever holds whole centavos."""

    def test_rejects_non_integer(self):
        with pytest.raises(TypeError):
            Money(Decimal("1.5"))
        with pytest.raises(TypeError):
            Money(1.0)
        with pytest.raises(TypeError):
            Money(True)

    def test_arithmetic_and_ordering(self):
        assert Money(700) + Money(300) == Money(1000)
        assert Money(700) - Money(1000) == Money(-300)
        assert -Money(5) == Money(-5)
        assert Money(1) < Money(2)
        assert min(Money(5000), Money(8000)) == Money(5000)

    def test_clamp_zero(self):
        assert Money(-300).clamp_zero() == Money(0)
        assert Money(300).clamp_zero() == Money(300)

    def test_truthiness_and_sign(self):
        assert not Money(0)
        assert Money(1).is_positive()
        assert Money(-1).is_negative()

    def test_sum_money(self):
        assert sum_money([Money(1), Money(2), Money(3)]) == Money(6)
        assert sum_money([]) == Money(0)

    def test_str_formats_pesos(self):
        assert str(Money(123450)) == "$1,234.50"
        assert format_pesos(-250) == "-$2.50"


class TestRoundHalfUp:
    def test_half_rounds_up(self):
        assert round_half_up(Decimal("12.5")) == 13
        assert round_half_up(Decimal("12.49")) == 12
        assert round_half_up(Decimal("0.5")) == 1
