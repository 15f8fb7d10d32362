from decimal import ROUND_HALF_UP, Decimal
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_amount(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def cents_to_amount(cents: int | None) -> Decimal:
    if not cents:
        return ZERO
    return (Decimal(int(cents)) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def amount_to_cents(amount: Any) -> int:
    return int((to_amount(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))
