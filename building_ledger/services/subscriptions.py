from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterator, List, Optional

from sqlalchemy.orm import Session

from ..config import BillingConfig, get_billing_config
from ..core.money import to_money
from ..core.transactions import run_atomic
from ..models.models import Apartment, Payment, PaymentAllocation, SubscriptionCharge
from .audit import audit_log
from .ledger import (
    apply_balance_change,
    lock_apartment,
    period_for,
    period_start,
    subscription_amount_for,
    subscription_ref,
    virtual_due_allocated,
)

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionRunResult:
    period: str
    charged_count: int = 0
    skipped_count: int = 0
    failures: List[int] = field(default_factory=list)


def month_range(first: str, last: str) -> Iterator[str]:
    current = period_start(first)
    end = period_start(last)
    while current <= end:
        yield period_for(current)
        current = date(current.year + (current.month // 12), current.month % 12 + 1, 1)


def prorated_amount(amount: Decimal, occupancy_start: date) -> Decimal:
    """Share of a monthly fee owed for a month the resident moved in part-way."""
    days_in_month = calendar.monthrange(occupancy_start.year, occupancy_start.month)[1]
    days_occupied = days_in_month - occupancy_start.day + 1
    return to_money(amount * Decimal(days_occupied) / Decimal(days_in_month))


def _periods_to_charge(apartment: Apartment, target: str) -> List[str]:
    if apartment.occupancy_start is None:
        return [target]
    first = period_for(apartment.occupancy_start)
    if first > target:
        return []
    return list(month_range(first, target))


def _charge_period(
    session: Session,
    apartment: Apartment,
    period: str,
    amount: Decimal,
    actor: Optional[str],
) -> SubscriptionCharge:
    prepaid = virtual_due_allocated(session, apartment.id, period)
    charge = SubscriptionCharge(
        apartment_id=apartment.id,
        period=period,
        amount=amount,
        amount_paid=min(prepaid, amount),
    )
    session.add(charge)
    session.flush()

    # Allocations made against the not-yet-posted due now point at the real charge.
    pending = (
        session.query(PaymentAllocation)
        .join(Payment, Payment.id == PaymentAllocation.payment_id)
        .filter(
            Payment.apartment_id == apartment.id,
            PaymentAllocation.subscription_period == period,
            PaymentAllocation.subscription_charge_id.is_(None),
        )
        .all()
    )
    for allocation in pending:
        allocation.subscription_charge_id = charge.id
        allocation.obligation_ref = subscription_ref(charge.id)
        session.add(allocation)

    apply_balance_change(
        session,
        apartment,
        -amount,
        reference_type="subscription",
        reference_id=charge.id,
        description=f"Monthly subscription {period}",
        actor=actor,
    )
    return charge


def post_subscription_charges(
    session: Session,
    period: Optional[str] = None,
    actor: Optional[str] = None,
    config: Optional[BillingConfig] = None,
) -> SubscriptionRunResult:
    """Post the monthly subscription charge of every occupied apartment.

    Posting is idempotent per apartment and period. Apartments with an
    ``occupancy_start`` are caught up from their move-in month, the first
    month prorated by the days occupied.
    """
    config = config or get_billing_config()
    target = period or period_for(date.today())
    period_start(target)
    result = SubscriptionRunResult(period=target)

    apartment_ids = [
        row[0]
        for row in session.query(Apartment.id)
        .filter(Apartment.status == "occupied")
        .order_by(Apartment.id.asc())
        .all()
    ]
    for apartment_id in apartment_ids:

        def _post(db: Session, apartment_id: int = apartment_id) -> int:
            apartment = lock_apartment(db, apartment_id)
            amount = subscription_amount_for(apartment, config)
            if amount <= 0:
                return 0
            charged = {
                row[0]
                for row in db.query(SubscriptionCharge.period)
                .filter(SubscriptionCharge.apartment_id == apartment_id)
                .all()
            }
            posted = 0
            for each_period in _periods_to_charge(apartment, target):
                if each_period in charged:
                    continue
                due = amount
                start = apartment.occupancy_start
                if start is not None and period_for(start) == each_period and start.day > 1:
                    due = prorated_amount(amount, start)
                if due <= 0:
                    continue
                charge = _charge_period(db, apartment, each_period, due, actor)
                audit_log(
                    db_session=db,
                    actor=actor,
                    action="subscriptions.charge",
                    target_entity_type="SubscriptionCharge",
                    target_entity_id=str(charge.id),
                    after={"apartment_id": apartment_id, "period": each_period, "amount": str(due)},
                )
                posted += 1
            return posted

        try:
            posted = run_atomic(session, _post, name=f"subscription charge for apartment {apartment_id}")
        except Exception:
            logger.exception("Failed to post subscription charges for apartment %s", apartment_id)
            result.failures.append(apartment_id)
            continue
        if posted:
            result.charged_count += posted
        else:
            result.skipped_count += 1

    logger.info(
        "Subscription charges for %s: %s posted, %s apartment(s) skipped, %s failure(s)",
        target,
        result.charged_count,
        result.skipped_count,
        len(result.failures),
    )
    return result
