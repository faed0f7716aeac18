from decimal import Decimal, ROUND_HALF_UP

from payflow.core.currencies import is_zero_decimal

MONEY_QUANT = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")


def to_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Integer amount in the currency's smallest unit, as card networks expect it."""
    if is_zero_decimal(currency):
        return int(to_money(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((to_money(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int, currency: str) -> Decimal:
    if is_zero_decimal(currency):
        return to_money(value)
    return to_money(Decimal(value) / 100)
