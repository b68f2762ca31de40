"""Currency utilities: minor-unit integer amounts and peso conversion.

All storage and arithmetic use integer centavos wrapped in ``Money``.
Conversion to pesos happens only when a response leaves the API.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from utility_billing.errors import ValidationError

CENTAVOS_PER_PESO = 100
_TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True, order=True)
class Money:
    """Amount in centavos."""

    centavos: int = 0

    def __post_init__(self):
        # bool is an int subclass; reject it along with floats and Decimals
        if isinstance(self.centavos, bool) or not isinstance(self.centavos, int):
            raise TypeError(f"Money requires integer centavos, got {self.centavos!r}")

    @classmethod
    def zero(cls) -> "Money":
        return cls(0)

    @classmethod
    def from_pesos(cls, amount: Decimal | str | int) -> "Money":
        """Convert a peso amount to Money without rounding.

        Raises:
            ValidationError: If the amount is not a number or has more than
                two decimal places
        """
        return cls(pesos_to_centavos(amount))

    def to_pesos(self) -> Decimal:
        return centavos_to_pesos(self.centavos)

    def __add__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.centavos + other.centavos)

    def __sub__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.centavos - other.centavos)

    def __neg__(self) -> "Money":
        return Money(-self.centavos)

    def __bool__(self) -> bool:
        return self.centavos != 0

    def is_positive(self) -> bool:
        return self.centavos > 0

    def is_negative(self) -> bool:
        return self.centavos < 0

    def clamp_zero(self) -> "Money":
        """Return the amount, or zero if it is negative."""
        return self if self.centavos > 0 else Money(0)

    def __str__(self) -> str:
        return format_pesos(self.centavos)


def pesos_to_centavos(amount: Decimal | str | int) -> int:
    """Convert pesos to integer centavos.

    Floats are refused: a float has already lost the exact amount.
    """
    if isinstance(amount, float):
        raise ValidationError(f"Amount must be given as a decimal string, not float: {amount!r}")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")

    centavos = value * CENTAVOS_PER_PESO
    if centavos != centavos.to_integral_value():
        raise ValidationError(f"Amount has more than two decimal places: {amount}")
    return int(centavos)


def centavos_to_pesos(centavos: int) -> Decimal:
    return (Decimal(centavos) / CENTAVOS_PER_PESO).quantize(_TWO_PLACES)


def round_half_up(value: Decimal) -> int:
    """Round a fractional centavo amount to the nearest centavo, half up."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def sum_money(amounts) -> Money:
    total = Money(0)
    for amount in amounts:
        total = total + amount
    return total


def format_pesos(centavos: int) -> str:
    """Format centavos as a display string, e.g. ``$1,234.50``."""
    pesos = centavos_to_pesos(centavos)
    sign = "-" if pesos < 0 else ""
    return f"{sign}${abs(pesos):,.2f}"


__all__ = [
    "Money",
    "pesos_to_centavos",
    "centavos_to_pesos",
    "round_half_up",
    "sum_money",
    "format_pesos",
]
