from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..config import BillingConfig, get_billing_config
from ..constants import OBLIGATION_EXPENSE, OBLIGATION_SUBSCRIPTION
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..core.money import ZERO, ensure_decimal, to_money
from ..core.transactions import run_atomic
from ..models.models import (
    Apartment,
    ApartmentExpense,
    Payment,
    PaymentAllocation,
    SubscriptionCharge,
    utcnow,
)
from .audit import audit_log
from .ledger import (
    Obligation,
    apply_balance_change,
    expense_ref,
    lock_apartment,
    parse_obligation_ref,
    period_for,
    period_start,
    subscription_amount_for,
    subscription_due_ref,
    subscription_ref,
    virtual_due_allocated,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocationRequest:
    obligation_id: str
    amount: Decimal


@dataclass
class PaymentResult:
    payment: Payment
    allocations: List[PaymentAllocation]
    balance: Decimal


@dataclass
class CancelResult:
    payment: Payment
    already_canceled: bool
    balance: Decimal


def _snapshot(payment: Payment) -> dict:
    return {
        "apartment_id": payment.apartment_id,
        "month": payment.month,
        "amount": str(payment.amount),
        "is_canceled": payment.is_canceled,
        "allocations": [
            {"obligation": item.obligation_ref, "amount": str(item.amount_allocated)} for item in payment.allocations
        ],
    }


def _get_payment(session: Session, payment_id: int) -> Payment:
    payment = session.get(Payment, payment_id)
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def suggest_allocations(obligations: Iterable[Obligation], amount: Decimal | int | str) -> List[AllocationRequest]:
    """Spread ``amount`` over ``obligations`` in the order given (oldest first)."""
    left = to_money(amount)
    suggestions: List[AllocationRequest] = []
    for obligation in obligations:
        if left <= 0:
            break
        share = min(obligation.remaining, left)
        if share <= 0:
            continue
        suggestions.append(AllocationRequest(obligation_id=obligation.ref, amount=share))
        left -= share
    return suggestions


class _Allocator:
    """Applies allocation requests of one payment, clamping each to what is still owed."""

    def __init__(self, session: Session, apartment: Apartment, payment: Payment, config: BillingConfig):
        self.session = session
        self.apartment = apartment
        self.payment = payment
        self.config = config
        self.allocated = ZERO
        self.allocations: List[PaymentAllocation] = []
        self._virtual_paid: Dict[str, Decimal] = {}

    @property
    def available(self) -> Decimal:
        return to_money(self.payment.amount) - self.allocated

    def apply(self, request: AllocationRequest) -> Optional[PaymentAllocation]:
        requested = to_money(request.amount)
        if requested < 0:
            raise ValidationError(f"Allocation for {request.obligation_id} must not be negative")
        kind, key = parse_obligation_ref(request.obligation_id)
        if kind == OBLIGATION_EXPENSE:
            return self._apply_expense(int(key), requested)
        if kind == OBLIGATION_SUBSCRIPTION:
            return self._apply_charge(int(key), requested)
        return self._apply_virtual_due(key, requested)

    def _clamp(self, requested: Decimal, remaining: Decimal) -> Decimal:
        return max(ZERO, min(requested, remaining, self.available))

    def _check_owner(self, apartment_id: int, ref: str) -> None:
        if apartment_id != self.apartment.id:
            raise ValidationError(f"Obligation {ref} does not belong to apartment {self.apartment.id}")

    def _record(self, ref: str, applied: Decimal, **links) -> PaymentAllocation:
        allocation = PaymentAllocation(payment_id=self.payment.id, obligation_ref=ref, amount_allocated=applied, **links)
        self.session.add(allocation)
        self.allocated += applied
        self.allocations.append(allocation)
        return allocation

    def _apply_expense(self, line_id: int, requested: Decimal) -> Optional[PaymentAllocation]:
        ref = expense_ref(line_id)
        line = self.session.get(ApartmentExpense, line_id)
        if not line:
            raise NotFoundError(f"Obligation {ref} not found")
        self._check_owner(line.apartment_id, ref)
        if line.is_canceled:
            raise ValidationError(f"Obligation {ref} has been canceled")
        applied = self._clamp(requested, to_money(line.remaining))
        if applied <= 0:
            return None
        line.amount_paid = to_money(ensure_decimal(line.amount_paid) + applied)
        self.session.add(line)
        return self._record(ref, applied, apartment_expense_id=line.id)

    def _apply_charge(self, charge_id: int, requested: Decimal) -> Optional[PaymentAllocation]:
        ref = subscription_ref(charge_id)
        charge = self.session.get(SubscriptionCharge, charge_id)
        if not charge:
            raise NotFoundError(f"Obligation {ref} not found")
        self._check_owner(charge.apartment_id, ref)
        applied = self._clamp(requested, to_money(charge.remaining))
        if applied <= 0:
            return None
        charge.amount_paid = to_money(ensure_decimal(charge.amount_paid) + applied)
        self.session.add(charge)
        return self._record(ref, applied, subscription_charge_id=charge.id, subscription_period=charge.period)

    def _apply_virtual_due(self, period: str, requested: Decimal) -> Optional[PaymentAllocation]:
        charge = (
            self.session.query(SubscriptionCharge)
            .filter(SubscriptionCharge.apartment_id == self.apartment.id, SubscriptionCharge.period == period)
            .one_or_none()
        )
        if charge is not None:
            # The period was posted since the caller listed obligations.
            return self._apply_charge(charge.id, requested)

        if period not in self._virtual_paid:
            self._virtual_paid[period] = virtual_due_allocated(self.session, self.apartment.id, period)
        amount = subscription_amount_for(self.apartment, self.config)
        applied = self._clamp(requested, amount - self._virtual_paid[period])
        if applied <= 0:
            return None
        self._virtual_paid[period] += applied
        return self._record(subscription_due_ref(period), applied, subscription_period=period)


def record_payment(
    session: Session,
    apartment_id: int,
    amount: Decimal | int | str,
    allocations: Optional[Sequence[AllocationRequest]] = None,
    month: Optional[str] = None,
    actor: Optional[str] = None,
    config: Optional[BillingConfig] = None,
) -> PaymentResult:
    """Record an incoming payment and apply it to the requested obligations.

    Each request is capped at the obligation's remaining amount and at what
    is left of the payment; whatever is not allocated becomes free credit.
    The apartment balance always moves by the full payment amount.
    """
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero")
    month = month or period_for(date.today())
    period_start(month)
    config = config or get_billing_config()
    requests = list(allocations or [])

    def _record(db: Session) -> PaymentResult:
        apartment = lock_apartment(db, apartment_id)
        payment = Payment(apartment_id=apartment.id, month=month, amount=amount, is_canceled=False)
        db.add(payment)
        db.flush()

        allocator = _Allocator(db, apartment, payment, config)
        for request in requests:
            allocator.apply(request)

        apply_balance_change(
            db,
            apartment,
            amount,
            reference_type="payment",
            reference_id=payment.id,
            description=f"Payment for {month}",
            actor=actor,
        )
        db.flush()
        db.refresh(payment)
        logger.info(
            "Payment %s recorded for apartment %s: %s allocated, %s free credit",
            payment.id,
            apartment.id,
            allocator.allocated,
            amount - allocator.allocated,
        )
        audit_log(
            db_session=db,
            actor=actor,
            action="payments.create",
            target_entity_type="Payment",
            target_entity_id=str(payment.id),
            after=_snapshot(payment),
        )
        return PaymentResult(
            payment=payment,
            allocations=allocator.allocations,
            balance=to_money(apartment.cached_balance),
        )

    return run_atomic(session, _record, name="payment recording")


def update_payment(
    session: Session,
    payment_id: int,
    month: Optional[str] = None,
    amount: Optional[Decimal | int | str] = None,
    actor: Optional[str] = None,
) -> Payment:
    new_amount = to_money(amount) if amount is not None else None
    if new_amount is not None and new_amount <= 0:
        raise ValidationError("Payment amount must be greater than zero")
    if month is not None:
        period_start(month)

    def _update(db: Session) -> Payment:
        payment = _get_payment(db, payment_id)
        apartment = lock_apartment(db, payment.apartment_id)
        db.refresh(payment)
        if payment.is_canceled:
            raise ValidationError(f"Payment {payment_id} is canceled and cannot be updated")
        before = _snapshot(payment)
        old_amount = to_money(payment.amount)

        if new_amount is not None and new_amount != old_amount:
            if new_amount < to_money(payment.allocated_total):
                raise ConflictError(
                    f"Payment {payment_id} has {payment.allocated_total} allocated; amount cannot drop below that"
                )
            apply_balance_change(
                db,
                apartment,
                -old_amount,
                reference_type="reversal",
                reference_id=payment.id,
                description=f"Payment {payment.id} amount corrected",
                actor=actor,
            )
            apply_balance_change(
                db,
                apartment,
                new_amount,
                reference_type="payment",
                reference_id=payment.id,
                description=f"Payment for {month or payment.month} (corrected)",
                actor=actor,
            )
            payment.amount = new_amount
        if month is not None:
            payment.month = month
        db.add(payment)
        db.flush()
        audit_log(
            db_session=db,
            actor=actor,
            action="payments.update",
            target_entity_type="Payment",
            target_entity_id=str(payment.id),
            before=before,
            after=_snapshot(payment),
        )
        return payment

    return run_atomic(session, _update, name="payment update")


def cancel_payment(session: Session, payment_id: int, actor: Optional[str] = None) -> CancelResult:
    """Cancel a payment and undo everything it did.

    Canceling twice is a no-op. Allocation rows stay in place as history.
    """

    def _cancel(db: Session) -> CancelResult:
        payment = _get_payment(db, payment_id)
        apartment = lock_apartment(db, payment.apartment_id)
        db.refresh(payment)
        if payment.is_canceled:
            logger.info("Payment %s already canceled; nothing to do", payment_id)
            return CancelResult(payment=payment, already_canceled=True, balance=to_money(apartment.cached_balance))

        before = _snapshot(payment)
        for allocation in payment.allocations:
            applied = to_money(allocation.amount_allocated)
            target = None
            if allocation.apartment_expense_id is not None:
                target = db.get(ApartmentExpense, allocation.apartment_expense_id)
            elif allocation.subscription_charge_id is not None:
                target = db.get(SubscriptionCharge, allocation.subscription_charge_id)
            if target is None:
                # Virtual dues carry no paid amount; removed obligations have nothing to restore.
                continue
            target.amount_paid = max(ZERO, to_money(ensure_decimal(target.amount_paid) - applied))
            db.add(target)

        payment.is_canceled = True
        payment.canceled_at = utcnow()
        db.add(payment)
        apply_balance_change(
            db,
            apartment,
            -to_money(payment.amount),
            reference_type="reversal",
            reference_id=payment.id,
            description=f"Payment {payment.id} canceled",
            actor=actor,
        )
        logger.info("Payment %s canceled; apartment %s balance now %s", payment.id, apartment.id, apartment.cached_balance)
        audit_log(
            db_session=db,
            actor=actor,
            action="payments.cancel",
            target_entity_type="Payment",
            target_entity_id=str(payment.id),
            before=before,
            after=_snapshot(payment),
        )
        return CancelResult(payment=payment, already_canceled=False, balance=to_money(apartment.cached_balance))

    return run_atomic(session, _cancel, name="payment cancellation")
