from decimal import Decimal

import pytest

from building_ledger.core.money import split_evenly, to_cents, to_money


def test_split_evenly_divides_exact_totals():
    assert split_evenly(Decimal("300"), 3) == [Decimal("100.00")] * 3


def test_split_evenly_gives_remainder_cents_to_first_shares():
    shares = split_evenly(Decimal("100"), 3)

    assert shares == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]
    assert sum(shares) == Decimal("100.00")


def test_split_evenly_never_loses_cents_for_odd_totals():
    for total, parts in [("0.05", 3), ("1000.01", 7), ("19.99", 4), ("0.02", 5)]:
        shares = split_evenly(Decimal(total), parts)
        assert len(shares) == parts
        assert sum(shares) == Decimal(total)
        assert max(shares) - min(shares) <= Decimal("0.01")


def test_split_evenly_rejects_zero_parts():
    with pytest.raises(ValueError):
        split_evenly(Decimal("10"), 0)


def test_to_money_rounds_half_up():
    assert to_money("10.005") == Decimal("10.01")
    assert to_money(3) == Decimal("3.00")
    assert to_cents("12.34") == 1234
