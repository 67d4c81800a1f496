from decimal import ROUND_HALF_UP, Decimal
from typing import List

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def ensure_decimal(amount: Decimal | float | int | str | None) -> Decimal:
    if amount is None:
        return ZERO
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def to_money(amount: Decimal | float | int | str | None) -> Decimal:
    return ensure_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal | float | int | str) -> int:
    return int((ensure_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def split_evenly(total: Decimal | float | int | str, parts: int) -> List[Decimal]:
    """Split ``total`` into ``parts`` shares that sum to it exactly.

    Every share gets the floor of the per-part amount in cents; the leftover
    cents go one each to the first shares in order.
    """
    if parts <= 0:
        raise ValueError("parts must be positive")
    total_cents = to_cents(total)
    base, extra = divmod(total_cents, parts)
    return [from_cents(base + (1 if index < extra else 0)) for index in range(parts)]
