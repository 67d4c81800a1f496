from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm.exc import StaleDataError

from building_ledger.core.errors import ConcurrencyError, ConflictError, NotFoundError, ValidationError
from building_ledger.core.transactions import run_atomic
from building_ledger.models.models import Apartment, ApartmentExpense, LedgerEntry, Payment
from building_ledger.services.expenses import create_expense
from building_ledger.services.ledger import apply_balance_change, list_unpaid_obligations, recompute_balance
from building_ledger.services.payments import (
    AllocationRequest,
    cancel_payment,
    record_payment,
    suggest_allocations,
    update_payment,
)


def _owing_apartment(db_session, create_building, create_apartment, amount="100"):
    building = create_building()
    apartment = create_apartment(building=building)
    expense = create_expense(db_session, building.id, "Facade", Decimal(amount), date(2025, 2, 1))
    return apartment, expense.apartment_expenses[0]


def test_payment_with_allocation_clears_debt_and_leaves_credit(db_session, create_building, create_apartment):
    apartment, share = _owing_apartment(db_session, create_building, create_apartment)

    result = record_payment(
        db_session, apartment.id, Decimal("150"), [AllocationRequest(f"expense:{share.id}", Decimal("100"))]
    )

    db_session.refresh(share)
    assert share.remaining == Decimal("0.00")
    assert result.balance == Decimal("50.00")
    assert [(item.obligation_ref, item.amount_allocated) for item in result.allocations] == [
        (f"expense:{share.id}", Decimal("100.00"))
    ]
    assert result.payment.unallocated_amount == Decimal("50.00")
    entries = db_session.query(LedgerEntry).filter(LedgerEntry.reference_type == "payment").all()
    assert [(entry.entry_type, entry.amount) for entry in entries] == [("credit", Decimal("150.00"))]


def test_cancel_restores_obligation_and_balance(db_session, create_building, create_apartment):
    apartment, share = _owing_apartment(db_session, create_building, create_apartment)
    result = record_payment(
        db_session, apartment.id, Decimal("150"), [AllocationRequest(f"expense:{share.id}", Decimal("100"))]
    )

    cancel = cancel_payment(db_session, result.payment.id, actor="treasurer")

    db_session.refresh(share)
    assert cancel.already_canceled is False
    assert cancel.balance == Decimal("-100.00")
    assert share.remaining == Decimal("100.00")
    payment = db_session.get(Payment, result.payment.id)
    assert payment.is_canceled
    assert payment.canceled_at is not None
    assert len(payment.allocations) == 1
    assert recompute_balance(db_session, apartment.id) == Decimal("-100.00")


def test_cancel_is_idempotent(db_session, create_building, create_apartment):
    apartment, _ = _owing_apartment(db_session, create_building, create_apartment)
    payment = record_payment(db_session, apartment.id, Decimal("40")).payment

    cancel_payment(db_session, payment.id)
    again = cancel_payment(db_session, payment.id)

    assert again.already_canceled is True
    assert again.balance == Decimal("-100.00")
    reversals = db_session.query(LedgerEntry).filter(LedgerEntry.reference_type == "reversal").count()
    assert reversals == 1


def test_cancel_unknown_payment(db_session):
    with pytest.raises(NotFoundError):
        cancel_payment(db_session, 999)


def test_allocation_is_capped_at_remaining_and_payment_amount(db_session, create_building, create_apartment):
    building = create_building()
    apartment = create_apartment(building=building)
    first = create_expense(db_session, building.id, "A", Decimal("30"), date(2025, 1, 1)).apartment_expenses[0]
    second = create_expense(db_session, building.id, "B", Decimal("80"), date(2025, 1, 2)).apartment_expenses[0]

    result = record_payment(
        db_session,
        apartment.id,
        Decimal("60"),
        [
            AllocationRequest(f"expense:{first.id}", Decimal("50")),
            AllocationRequest(f"expense:{second.id}", Decimal("80")),
        ],
    )

    assert [item.amount_allocated for item in result.allocations] == [Decimal("30.00"), Decimal("30.00")]
    db_session.refresh(first)
    db_session.refresh(second)
    assert (first.amount_paid, second.amount_paid) == (Decimal("30.00"), Decimal("30.00"))
    assert result.balance == Decimal("-50.00")


def test_fully_paid_obligation_request_is_dropped(db_session, create_building, create_apartment):
    apartment, share = _owing_apartment(db_session, create_building, create_apartment, amount="20")
    ref = f"expense:{share.id}"
    record_payment(db_session, apartment.id, Decimal("20"), [AllocationRequest(ref, Decimal("20"))])

    result = record_payment(db_session, apartment.id, Decimal("10"), [AllocationRequest(ref, Decimal("10"))])

    assert result.allocations == []
    assert result.balance == Decimal("10.00")
    db_session.refresh(share)
    assert share.amount_paid == Decimal("20.00")


def test_payment_without_allocations_is_free_credit(db_session, create_apartment):
    apartment = create_apartment()

    result = record_payment(db_session, apartment.id, Decimal("75.5"), month="2025-04")

    assert result.allocations == []
    assert result.balance == Decimal("75.50")
    assert result.payment.month == "2025-04"


def test_payment_validation_happens_before_any_write(db_session, create_building, create_apartment):
    apartment, share = _owing_apartment(db_session, create_building, create_apartment)
    other = create_apartment()
    other_share = create_expense(
        db_session, other.building_id, "Other", Decimal("10"), date(2025, 1, 1)
    ).apartment_expenses[0]

    with pytest.raises(ValidationError):
        record_payment(db_session, apartment.id, Decimal("0"))
    with pytest.raises(NotFoundError):
        record_payment(db_session, 4242, Decimal("10"))
    with pytest.raises(NotFoundError):
        record_payment(db_session, apartment.id, Decimal("10"), [AllocationRequest("expense:9999", Decimal("5"))])
    with pytest.raises(ValidationError):
        record_payment(
            db_session, apartment.id, Decimal("10"), [AllocationRequest(f"expense:{other_share.id}", Decimal("5"))]
        )
    with pytest.raises(ValidationError):
        record_payment(
            db_session, apartment.id, Decimal("10"), [AllocationRequest(f"expense:{share.id}", Decimal("-1"))]
        )
    with pytest.raises(ValidationError):
        record_payment(db_session, apartment.id, Decimal("10"), month="2025-13")

    assert db_session.query(Payment).count() == 0
    db_session.refresh(apartment)
    assert apartment.cached_balance == Decimal("-100.00")
    db_session.refresh(share)
    assert share.amount_paid == Decimal("0.00")


def test_suggest_allocations_pays_oldest_first(db_session, create_building, create_apartment, billing_config):
    building = create_building()
    apartment = create_apartment(building=building, subscription_amount=Decimal("100"))
    create_expense(db_session, building.id, "Old", Decimal("40"), date(2025, 1, 1))
    create_expense(db_session, building.id, "New", Decimal("40"), date(2025, 2, 1))
    obligations = list_unpaid_obligations(db_session, apartment.id, config=billing_config, as_of=date(2025, 3, 1))

    suggestions = suggest_allocations(obligations, Decimal("100"))
    result = record_payment(db_session, apartment.id, Decimal("100"), suggestions, config=billing_config)

    assert [item.amount for item in suggestions] == [Decimal("40.00"), Decimal("40.00"), Decimal("20.00")]
    assert suggestions[-1].obligation_id == "subscription-due:2025-03"
    assert result.balance == Decimal("20.00")
    assert result.allocations[-1].subscription_period == "2025-03"
    assert result.allocations[-1].subscription_charge_id is None


def test_update_payment_amount_moves_balance(db_session, create_building, create_apartment):
    apartment, share = _owing_apartment(db_session, create_building, create_apartment)
    payment = record_payment(
        db_session, apartment.id, Decimal("60"), [AllocationRequest(f"expense:{share.id}", Decimal("50"))]
    ).payment

    updated = update_payment(db_session, payment.id, amount=Decimal("80"), month="2025-05")

    assert (updated.amount, updated.month) == (Decimal("80.00"), "2025-05")
    db_session.refresh(apartment)
    assert apartment.cached_balance == Decimal("-20.00")
    assert recompute_balance(db_session, apartment.id) == Decimal("-20.00")

    with pytest.raises(ConflictError):
        update_payment(db_session, payment.id, amount=Decimal("40"))

    cancel_payment(db_session, payment.id)
    with pytest.raises(ValidationError):
        update_payment(db_session, payment.id, month="2025-06")


def test_sequential_payments_from_two_sessions_are_both_counted(session_factory, create_apartment):
    apartment = create_apartment()
    first, second = session_factory(), session_factory()
    try:
        record_payment(first, apartment.id, Decimal("10"))
        record_payment(second, apartment.id, Decimal("15"))
        record_payment(first, apartment.id, Decimal("5"))

        check = session_factory()
        assert check.get(Apartment, apartment.id).cached_balance == Decimal("30.00")
        assert recompute_balance(check, apartment.id) == Decimal("30.00")
        check.close()
    finally:
        first.close()
        second.close()


def test_stale_balance_write_is_retried_with_fresh_state(session_factory, create_apartment):
    apartment_id = create_apartment().id
    session, concurrent = session_factory(), session_factory()
    attempts = {"count": 0}

    def _credit(db):
        attempts["count"] += 1
        apartment = db.get(Apartment, apartment_id)
        _ = apartment.cached_balance
        if attempts["count"] == 1:
            record_payment(concurrent, apartment_id, Decimal("40"))
        apply_balance_change(db, apartment, Decimal("10"), reference_type="payment")
        return apartment

    try:
        apartment = run_atomic(session, _credit, name="test credit")
        assert attempts["count"] == 2
        assert apartment.cached_balance == Decimal("50.00")
    finally:
        session.close()
        concurrent.close()


def test_exhausted_retries_raise_concurrency_error(db_session):
    def _always_stale(db):
        raise StaleDataError("row changed")

    with pytest.raises(ConcurrencyError):
        run_atomic(db_session, _always_stale, attempts=2)


def test_allocated_amount_never_exceeds_obligation(db_session, create_building, create_apartment):
    apartment, share = _owing_apartment(db_session, create_building, create_apartment)
    ref = f"expense:{share.id}"
    for amount in ("70", "70", "70"):
        record_payment(db_session, apartment.id, Decimal(amount), [AllocationRequest(ref, Decimal(amount))])

    line = db_session.get(ApartmentExpense, share.id)
    assert line.amount_paid == Decimal("100.00")
    db_session.refresh(apartment)
    assert apartment.cached_balance == Decimal("110.00")
