from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..constants import RECURRING_TYPES
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..core.money import split_evenly, to_money
from ..core.transactions import run_atomic
from ..models.models import Apartment, ApartmentExpense, Building, Expense
from .audit import audit_log
from .ledger import apply_balance_change, lock_apartments

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recurrence:
    recurring_type: str
    start_date: date
    end_date: Optional[date] = None

    def validate(self) -> None:
        if self.recurring_type not in RECURRING_TYPES:
            raise ValidationError(f"Unsupported recurring type {self.recurring_type!r}")
        if self.start_date is None:
            raise ValidationError("Recurring expenses require a start date")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValidationError("Recurring end date must not precede the start date")


def recurrence_dates(recurring_type: str, start: date, through: date) -> Iterator[date]:
    """First-of-period dates from ``start`` through ``through`` inclusive."""
    current = date(start.year, start.month, 1)
    while current <= through:
        yield current
        if recurring_type == "yearly":
            current = date(current.year + 1, current.month, 1)
        elif current.month == 12:
            current = date(current.year + 1, 1, 1)
        else:
            current = date(current.year, current.month + 1, 1)


def _snapshot(expense: Expense) -> dict:
    return {
        "building_id": expense.building_id,
        "apartment_id": expense.apartment_id,
        "description": expense.description,
        "amount": str(expense.amount),
        "expense_date": expense.expense_date.isoformat(),
        "category": expense.category,
        "is_recurring": expense.is_recurring,
        "recurring_type": expense.recurring_type,
        "parent_expense_id": expense.parent_expense_id,
    }


def _get_building(session: Session, building_id: int) -> Building:
    building = session.get(Building, building_id)
    if not building:
        raise NotFoundError(f"Building {building_id} not found")
    return building


def _occupied_apartment_ids(session: Session, building_id: int) -> List[int]:
    rows = (
        session.query(Apartment.id)
        .filter(Apartment.building_id == building_id, Apartment.status == "occupied")
        .order_by(Apartment.id.asc())
        .all()
    )
    return [row[0] for row in rows]


def _charge_expense(session: Session, expense: Expense, actor: Optional[str]) -> List[ApartmentExpense]:
    """Turn an expense into per-apartment obligation lines and debit the balances."""
    amount = to_money(expense.amount)
    if expense.apartment_id is not None:
        targets = [expense.apartment_id]
        shares = [amount]
    else:
        targets = _occupied_apartment_ids(session, expense.building_id)
        if not targets:
            raise ValidationError("No occupied apartments to split the expense among")
        shares = split_evenly(amount, len(targets))

    apartments = {apartment.id: apartment for apartment in lock_apartments(session, targets)}
    description = expense.description or ("Expense charge" if expense.apartment_id else "Expense charge (split)")
    lines: List[ApartmentExpense] = []
    for apartment_id, share in zip(targets, shares):
        if share <= 0:
            continue
        line = ApartmentExpense(apartment_id=apartment_id, expense_id=expense.id, amount=share, amount_paid=Decimal("0"))
        session.add(line)
        session.flush()
        apply_balance_change(
            session,
            apartments[apartment_id],
            -share,
            reference_type="expense",
            reference_id=line.id,
            description=description,
            actor=actor,
        )
        lines.append(line)
    return lines


def _materialize_template(session: Session, template: Expense, as_of: date, actor: Optional[str]) -> List[Expense]:
    """Create the missing instances of ``template`` up to ``as_of``.

    ``last_materialized_date`` marks periods already handled, so an instance
    deleted by an admin is not billed again on the next run.
    """
    through = as_of
    if template.recurring_end_date is not None and template.recurring_end_date < through:
        through = template.recurring_end_date

    existing_dates = {
        row[0]
        for row in session.query(Expense.expense_date).filter(Expense.parent_expense_id == template.id).all()
    }
    materialized_through = template.last_materialized_date
    created: List[Expense] = []
    for occurrence in recurrence_dates(template.recurring_type, template.recurring_start_date, through):
        if materialized_through is not None and occurrence <= materialized_through:
            continue
        template.last_materialized_date = occurrence
        if occurrence in existing_dates:
            continue
        child = Expense(
            building_id=template.building_id,
            apartment_id=template.apartment_id,
            description=template.description,
            amount=template.amount,
            expense_date=occurrence,
            category=template.category,
            is_recurring=False,
            parent_expense_id=template.id,
        )
        session.add(child)
        session.flush()
        _charge_expense(session, child, actor)
        created.append(child)
    session.add(template)
    session.flush()
    return created


def create_expense(
    session: Session,
    building_id: int,
    description: Optional[str],
    amount: Decimal | int | str,
    expense_date: date,
    recurrence: Optional[Recurrence] = None,
    apartment_id: Optional[int] = None,
    category: Optional[str] = None,
    actor: Optional[str] = None,
    as_of: Optional[date] = None,
) -> Expense:
    """Record a building expense and bill it to the whole building or one apartment."""
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Expense amount must be greater than zero")
    if recurrence is not None:
        recurrence.validate()

    def _create(db: Session) -> Expense:
        _get_building(db, building_id)
        if apartment_id is not None:
            apartment = db.get(Apartment, apartment_id)
            if not apartment:
                raise NotFoundError(f"Apartment {apartment_id} not found")
            if apartment.building_id != building_id:
                raise ValidationError("Apartment does not belong to the specified building")
        elif not _occupied_apartment_ids(db, building_id):
            raise ValidationError("No occupied apartments to split the expense among")

        expense = Expense(
            building_id=building_id,
            apartment_id=apartment_id,
            description=description,
            amount=amount,
            expense_date=expense_date,
            category=category,
            is_recurring=recurrence is not None,
            recurring_type=recurrence.recurring_type if recurrence else None,
            recurring_start_date=recurrence.start_date if recurrence else None,
            recurring_end_date=recurrence.end_date if recurrence else None,
        )
        db.add(expense)
        db.flush()

        if recurrence is None:
            lines = _charge_expense(db, expense, actor)
            logger.info("Expense %s charged to %s apartment(s)", expense.id, len(lines))
        else:
            children = _materialize_template(db, expense, as_of or date.today(), actor)
            logger.info("Recurring expense %s created with %s instance(s)", expense.id, len(children))

        audit_log(
            db_session=db,
            actor=actor,
            action="expenses.create",
            target_entity_type="Expense",
            target_entity_id=str(expense.id),
            after=_snapshot(expense),
        )
        return expense

    return run_atomic(session, _create, name="expense creation")


def materialize_recurring_expenses(session: Session, as_of: Optional[date] = None, actor: Optional[str] = None) -> int:
    """Create the dated instances of every recurring template that are due by ``as_of``."""
    as_of = as_of or date.today()
    template_ids = [
        row[0]
        for row in session.query(Expense.id)
        .filter(Expense.is_recurring.is_(True), Expense.parent_expense_id.is_(None))
        .order_by(Expense.id.asc())
        .all()
    ]

    created = 0
    for template_id in template_ids:

        def _materialize(db: Session, template_id: int = template_id) -> int:
            template = db.get(Expense, template_id)
            if not template or not template.recurring_start_date:
                return 0
            return len(_materialize_template(db, template, as_of, actor))

        try:
            created += run_atomic(session, _materialize, name=f"recurring expense {template_id}")
        except Exception:
            logger.exception("Failed to materialize recurring expense %s", template_id)

    logger.info("Materialized %s recurring expense instance(s) as of %s", created, as_of.isoformat())
    return created


def update_expense(
    session: Session,
    expense_id: int,
    *,
    description: Optional[str] = None,
    category: Optional[str] = None,
    expense_date: Optional[date] = None,
    amount: Optional[Decimal | int | str] = None,
    actor: Optional[str] = None,
) -> Expense:
    new_amount = to_money(amount) if amount is not None else None
    if new_amount is not None and new_amount <= 0:
        raise ValidationError("Expense amount must be greater than zero")

    def _update(db: Session) -> Expense:
        expense = db.get(Expense, expense_id)
        if not expense:
            raise NotFoundError(f"Expense {expense_id} not found")
        before = _snapshot(expense)
        if new_amount is not None and new_amount != to_money(expense.amount):
            if expense.apartment_expenses:
                raise ConflictError(
                    "Cannot change the amount of an expense that has already been billed; delete and recreate it"
                )
            expense.amount = new_amount
        if description is not None:
            expense.description = description
        if category is not None:
            expense.category = category
        if expense_date is not None:
            expense.expense_date = expense_date
        db.add(expense)
        db.flush()
        audit_log(
            db_session=db,
            actor=actor,
            action="expenses.update",
            target_entity_type="Expense",
            target_entity_id=str(expense.id),
            before=before,
            after=_snapshot(expense),
        )
        return expense

    return run_atomic(session, _update, name="expense update")


def _locked_lines(db: Session, expense_id: int) -> Tuple[Dict[int, Apartment], List[ApartmentExpense]]:
    """Lock the apartments billed for an expense, then read its lines fresh.

    Lines are read after the locks so a payment committed in between is seen.
    """
    apartment_ids = [
        row[0]
        for row in db.query(ApartmentExpense.apartment_id).filter(ApartmentExpense.expense_id == expense_id).all()
    ]
    apartments = {apartment.id: apartment for apartment in lock_apartments(db, apartment_ids)}
    lines = (
        db.query(ApartmentExpense)
        .filter(ApartmentExpense.expense_id == expense_id)
        .order_by(ApartmentExpense.id.asc())
        .populate_existing()
        .all()
    )
    return apartments, lines


def delete_expense(session: Session, expense_id: int, actor: Optional[str] = None) -> None:
    """Remove an expense and give every billed apartment its share back.

    Expenses with money already allocated to them are refused; the payments
    have to be canceled first so no allocation is silently forgiven.
    """

    def _delete(db: Session) -> None:
        expense = db.get(Expense, expense_id)
        if not expense:
            raise NotFoundError(f"Expense {expense_id} not found")
        apartments, lines = _locked_lines(db, expense_id)
        paid_lines = [line for line in lines if Decimal(line.amount_paid or 0) > 0]
        if paid_lines:
            raise ConflictError(
                f"Expense {expense_id} has payments allocated to {len(paid_lines)} apartment share(s); "
                "cancel those payments before deleting it"
            )

        before = _snapshot(expense)
        reversed_count = 0
        for line in lines:
            if line.is_canceled:
                # Already credited back when the share was canceled.
                continue
            apply_balance_change(
                db,
                apartments[line.apartment_id],
                to_money(line.amount),
                reference_type="reversal",
                reference_id=line.id,
                description=f"Reversal of expense charge {line.id} (expense deleted)",
                actor=actor,
            )
            reversed_count += 1
        for child in db.query(Expense).filter(Expense.parent_expense_id == expense.id).all():
            child.parent_expense_id = None
            db.add(child)
        db.delete(expense)
        db.flush()
        logger.info("Expense %s deleted; %s apartment share(s) reversed", expense_id, reversed_count)
        audit_log(
            db_session=db,
            actor=actor,
            action="expenses.delete",
            target_entity_type="Expense",
            target_entity_id=str(expense_id),
            before=before,
        )

    run_atomic(session, _delete, name="expense deletion")


def _locked_line(db: Session, line_id: int) -> ApartmentExpense:
    line = db.get(ApartmentExpense, line_id)
    if not line:
        raise NotFoundError(f"Apartment expense {line_id} not found")
    lock_apartments(db, [line.apartment_id])
    db.refresh(line)
    return line


def _line_snapshot(line: ApartmentExpense) -> dict:
    return {
        "apartment_id": line.apartment_id,
        "expense_id": line.expense_id,
        "amount": str(line.amount),
        "amount_paid": str(line.amount_paid),
        "is_canceled": line.is_canceled,
    }


def cancel_apartment_expense(session: Session, line_id: int, actor: Optional[str] = None) -> ApartmentExpense:
    """Cancel one apartment's share of an expense and credit the full share back.

    The line stays in place, marked canceled, and no longer accepts payments.
    Money already allocated to it remains as credit on the apartment.
    """

    def _cancel(db: Session) -> ApartmentExpense:
        line = _locked_line(db, line_id)
        if line.is_canceled:
            raise ValidationError(f"Apartment expense {line_id} is already canceled")
        before = _line_snapshot(line)
        line.is_canceled = True
        db.add(line)
        apply_balance_change(
            db,
            line.apartment,
            to_money(line.amount),
            reference_type="reversal",
            reference_id=line.id,
            description=f"Reversal of expense charge {line.id}",
            actor=actor,
        )
        logger.info("Apartment expense %s canceled for apartment %s", line.id, line.apartment_id)
        audit_log(
            db_session=db,
            actor=actor,
            action="expenses.line.cancel",
            target_entity_type="ApartmentExpense",
            target_entity_id=str(line.id),
            before=before,
            after=_line_snapshot(line),
        )
        return line

    return run_atomic(session, _cancel, name="apartment expense cancellation")


def waive_apartment_expense(session: Session, line_id: int, actor: Optional[str] = None) -> ApartmentExpense:
    """Forgive the outstanding part of one apartment's share with a waiver credit."""

    def _waive(db: Session) -> ApartmentExpense:
        line = _locked_line(db, line_id)
        if line.is_canceled:
            raise ValidationError(f"Apartment expense {line_id} is canceled and cannot be waived")
        outstanding = to_money(line.remaining)
        if outstanding <= 0:
            raise ValidationError(f"Apartment expense {line_id} has nothing left to waive")
        before = _line_snapshot(line)
        line.amount_paid = to_money(line.amount)
        db.add(line)
        apply_balance_change(
            db,
            line.apartment,
            outstanding,
            reference_type="waiver",
            reference_id=line.id,
            description=f"Waiver for expense charge {line.id}",
            actor=actor,
        )
        logger.info("Apartment expense %s waived (%s) for apartment %s", line.id, outstanding, line.apartment_id)
        audit_log(
            db_session=db,
            actor=actor,
            action="expenses.line.waive",
            target_entity_type="ApartmentExpense",
            target_entity_id=str(line.id),
            before=before,
            after=_line_snapshot(line),
        )
        return line

    return run_atomic(session, _waive, name="apartment expense waiver")
