from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import BillingConfig, get_billing_config
from ..constants import OBLIGATION_EXPENSE, OBLIGATION_SUBSCRIPTION, OBLIGATION_SUBSCRIPTION_DUE
from ..core.errors import NotFoundError, ValidationError
from ..core.money import ZERO, ensure_decimal, to_money
from ..core.transactions import run_atomic
from ..models.models import (
    Apartment,
    ApartmentExpense,
    Expense,
    LedgerEntry,
    Payment,
    PaymentAllocation,
    SubscriptionCharge,
    utcnow,
)

logger = logging.getLogger(__name__)

_KIND_ORDER = {OBLIGATION_SUBSCRIPTION: 0, OBLIGATION_EXPENSE: 1, OBLIGATION_SUBSCRIPTION_DUE: 2}


@dataclass
class Obligation:
    ref: str
    kind: str
    apartment_id: int
    description: str
    obligation_date: date
    amount: Decimal
    amount_paid: Decimal
    record_id: Optional[int] = None
    period: Optional[str] = None

    @property
    def remaining(self) -> Decimal:
        return self.amount - self.amount_paid

    @property
    def is_virtual(self) -> bool:
        return self.kind == OBLIGATION_SUBSCRIPTION_DUE


@dataclass
class BalanceDrift:
    apartment_id: int
    cached_balance: Decimal
    recomputed_balance: Decimal

    @property
    def difference(self) -> Decimal:
        return self.cached_balance - self.recomputed_balance


# --- Periods and obligation references ---


def period_for(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def period_start(period: str) -> date:
    try:
        year, month = (int(part) for part in period.split("-", 1))
        return date(year, month, 1)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid billing period {period!r}; expected YYYY-MM") from exc


def expense_ref(apartment_expense_id: int) -> str:
    return f"{OBLIGATION_EXPENSE}:{apartment_expense_id}"


def subscription_ref(charge_id: int) -> str:
    return f"{OBLIGATION_SUBSCRIPTION}:{charge_id}"


def subscription_due_ref(period: str) -> str:
    return f"{OBLIGATION_SUBSCRIPTION_DUE}:{period}"


def parse_obligation_ref(ref: str) -> Tuple[str, str]:
    kind, sep, key = (ref or "").partition(":")
    if not sep or not key or kind not in _KIND_ORDER:
        raise ValidationError(f"Malformed obligation reference {ref!r}")
    if kind == OBLIGATION_SUBSCRIPTION_DUE:
        period_start(key)
    elif not key.isdigit():
        raise ValidationError(f"Malformed obligation reference {ref!r}")
    return kind, key


# --- Apartment access ---


def get_apartment(session: Session, apartment_id: int) -> Apartment:
    apartment = session.get(Apartment, apartment_id)
    if not apartment:
        raise NotFoundError(f"Apartment {apartment_id} not found")
    return apartment


def lock_apartment(session: Session, apartment_id: int) -> Apartment:
    """Load an apartment for a read-modify-write of its balance.

    Takes a row lock where the database supports it; the ``version`` column
    catches lost updates everywhere else.
    """
    apartment = (
        session.query(Apartment)
        .filter(Apartment.id == apartment_id)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if not apartment:
        raise NotFoundError(f"Apartment {apartment_id} not found")
    return apartment


def lock_apartments(session: Session, apartment_ids: Iterable[int]) -> List[Apartment]:
    # Ascending id order keeps concurrent multi-apartment units from deadlocking.
    return [lock_apartment(session, apartment_id) for apartment_id in sorted(set(apartment_ids))]


def apply_balance_change(
    session: Session,
    apartment: Apartment,
    delta: Decimal,
    *,
    reference_type: str,
    reference_id: Optional[object] = None,
    description: Optional[str] = None,
    actor: Optional[str] = None,
) -> LedgerEntry:
    """Move the cached balance by ``delta`` and record it in the ledger history."""
    delta = to_money(delta)
    new_balance = to_money(ensure_decimal(apartment.cached_balance) + delta)
    apartment.cached_balance = new_balance
    if new_balance >= 0:
        apartment.debt_since = None
    elif apartment.debt_since is None:
        apartment.debt_since = utcnow()

    entry = LedgerEntry(
        apartment_id=apartment.id,
        entry_type="credit" if delta >= 0 else "debit",
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        amount=abs(delta),
        balance_after=new_balance,
        description=description,
        actor=actor,
        timestamp=utcnow(),
    )
    session.add(apartment)
    session.add(entry)
    session.flush()
    return entry


# --- Obligations ---


def virtual_due_allocated(session: Session, apartment_id: int, period: str) -> Decimal:
    """Money already applied to a not-yet-charged subscription period."""
    total = (
        session.query(func.coalesce(func.sum(PaymentAllocation.amount_allocated), 0))
        .join(Payment, Payment.id == PaymentAllocation.payment_id)
        .filter(
            Payment.apartment_id == apartment_id,
            Payment.is_canceled.is_(False),
            PaymentAllocation.subscription_period == period,
            PaymentAllocation.subscription_charge_id.is_(None),
        )
        .scalar()
    )
    return to_money(total)


def subscription_amount_for(apartment: Apartment, config: BillingConfig) -> Decimal:
    amount = to_money(apartment.effective_subscription_amount)
    if amount <= 0:
        amount = to_money(config.default_monthly_fee)
    return amount


def _subscription_due(
    session: Session, apartment: Apartment, as_of: date, config: BillingConfig
) -> Optional[Obligation]:
    period = period_for(as_of)
    amount = subscription_amount_for(apartment, config)
    if apartment.status != "occupied" or amount <= 0:
        return None
    already_charged = (
        session.query(SubscriptionCharge.id)
        .filter(SubscriptionCharge.apartment_id == apartment.id, SubscriptionCharge.period == period)
        .first()
    )
    if already_charged:
        return None
    paid = min(amount, virtual_due_allocated(session, apartment.id, period))
    return Obligation(
        ref=subscription_due_ref(period),
        kind=OBLIGATION_SUBSCRIPTION_DUE,
        apartment_id=apartment.id,
        description=f"Monthly subscription {period}",
        obligation_date=period_start(period),
        amount=amount,
        amount_paid=paid,
        period=period,
    )


def list_unpaid_obligations(
    session: Session,
    apartment_id: int,
    config: Optional[BillingConfig] = None,
    as_of: Optional[date] = None,
) -> List[Obligation]:
    """Open obligations of an apartment, oldest first.

    The current period's subscription due is surfaced as a virtual obligation
    until the subscription charge for that period is posted.
    """
    config = config or get_billing_config()
    as_of = as_of or date.today()
    apartment = get_apartment(session, apartment_id)

    obligations: List[Obligation] = []
    shares: Sequence[Tuple[ApartmentExpense, Expense]] = (
        session.query(ApartmentExpense, Expense)
        .join(Expense, Expense.id == ApartmentExpense.expense_id)
        .filter(
            ApartmentExpense.apartment_id == apartment_id,
            ApartmentExpense.is_canceled.is_(False),
            ApartmentExpense.amount_paid < ApartmentExpense.amount,
        )
        .all()
    )
    for share, expense in shares:
        obligations.append(
            Obligation(
                ref=expense_ref(share.id),
                kind=OBLIGATION_EXPENSE,
                apartment_id=apartment_id,
                description=expense.description or "Expense charge",
                obligation_date=expense.expense_date,
                amount=to_money(share.amount),
                amount_paid=to_money(share.amount_paid),
                record_id=share.id,
            )
        )

    charges: Sequence[SubscriptionCharge] = (
        session.query(SubscriptionCharge)
        .filter(
            SubscriptionCharge.apartment_id == apartment_id,
            SubscriptionCharge.amount_paid < SubscriptionCharge.amount,
        )
        .all()
    )
    for charge in charges:
        obligations.append(
            Obligation(
                ref=subscription_ref(charge.id),
                kind=OBLIGATION_SUBSCRIPTION,
                apartment_id=apartment_id,
                description=f"Monthly subscription {charge.period}",
                obligation_date=period_start(charge.period),
                amount=to_money(charge.amount),
                amount_paid=to_money(charge.amount_paid),
                record_id=charge.id,
                period=charge.period,
            )
        )

    obligations = [item for item in obligations if item.remaining > 0]
    obligations.sort(key=lambda item: (item.obligation_date, _KIND_ORDER[item.kind], item.record_id or 0))

    due = _subscription_due(session, apartment, as_of, config)
    if due is not None and due.remaining > 0:
        if config.subscription_due_position == "first":
            obligations.insert(0, due)
        else:
            obligations.append(due)
    return obligations


# --- Balance history ---


def recompute_balance(session: Session, apartment_id: int) -> Decimal:
    entries: Sequence[LedgerEntry] = (
        session.query(LedgerEntry)
        .filter(LedgerEntry.apartment_id == apartment_id)
        .order_by(LedgerEntry.timestamp.asc(), LedgerEntry.id.asc())
        .all()
    )
    balance = ZERO
    for entry in entries:
        amount = ensure_decimal(entry.amount)
        balance += amount if entry.entry_type == "credit" else -amount
    return to_money(balance)


def reconcile_balances(session: Session, apartment_ids: Optional[Iterable[int]] = None) -> List[BalanceDrift]:
    """Compare cached balances against the ledger history and repair drift."""

    def _reconcile(db: Session) -> List[BalanceDrift]:
        query = db.query(Apartment.id)
        if apartment_ids is not None:
            query = query.filter(Apartment.id.in_(list(apartment_ids)))
        drifts: List[BalanceDrift] = []
        for (apartment_id,) in query.order_by(Apartment.id.asc()).all():
            apartment = lock_apartment(db, apartment_id)
            recomputed = recompute_balance(db, apartment_id)
            cached = to_money(apartment.cached_balance)
            if cached == recomputed:
                continue
            logger.warning(
                "Cached balance drift for apartment %s: cached=%s ledger=%s",
                apartment_id,
                cached,
                recomputed,
            )
            drifts.append(BalanceDrift(apartment_id, cached, recomputed))
            apartment.cached_balance = recomputed
            if recomputed >= 0:
                apartment.debt_since = None
            elif apartment.debt_since is None:
                apartment.debt_since = utcnow()
            db.add(apartment)
        db.flush()
        return drifts

    return run_atomic(session, _reconcile, name="balance reconciliation")


def get_ledger(session: Session, apartment_id: int, limit: int = 50, offset: int = 0) -> List[LedgerEntry]:
    get_apartment(session, apartment_id)
    return (
        session.query(LedgerEntry)
        .filter(LedgerEntry.apartment_id == apartment_id)
        .order_by(LedgerEntry.timestamp.desc(), LedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
