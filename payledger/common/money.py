"""Minor-unit money helpers; integer cents are authoritative everywhere."""

from decimal import ROUND_HALF_UP, Decimal


CURRENCY_DIVISORS: dict[str, int] = {"ZAR": 100, "USD": 100, "EUR": 100}


def from_minor_units(minor: int, currency: str = "ZAR") -> Decimal:
    divisor = CURRENCY_DIVISORS[currency]
    return (Decimal(minor) / divisor).quantize(Decimal("0.01"))


def apply_rate(minor: int, rate: Decimal) -> int:
    """Multiply minor units by a rate, rounding half-up to whole minor units."""

    return int((Decimal(minor) * Decimal(str(rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
