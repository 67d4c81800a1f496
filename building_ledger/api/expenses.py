from typing import Optional

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from ..api.dependencies import get_current_actor, get_db
from ..core.errors import NotFoundError
from ..models.models import ApartmentExpense, Expense
from ..schemas.schemas import (
    ApartmentExpenseRead,
    ExpenseCreate,
    ExpenseRead,
    ExpenseUpdate,
    MaterializeRequest,
    MaterializeResult,
)
from ..services.expenses import (
    Recurrence,
    cancel_apartment_expense,
    create_expense,
    delete_expense,
    materialize_recurring_expenses,
    update_expense,
    waive_apartment_expense,
)

router = APIRouter()


@router.post("", response_model=ExpenseRead, status_code=201)
def add_expense(
    payload: ExpenseCreate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
) -> Expense:
    recurrence = None
    if payload.recurrence is not None:
        recurrence = Recurrence(
            recurring_type=payload.recurrence.recurring_type,
            start_date=payload.recurrence.start_date,
            end_date=payload.recurrence.end_date,
        )
    return create_expense(
        db,
        building_id=payload.building_id,
        description=payload.description,
        amount=payload.amount,
        expense_date=payload.expense_date,
        recurrence=recurrence,
        apartment_id=payload.apartment_id,
        category=payload.category,
        actor=actor,
    )


@router.get("/{expense_id}", response_model=ExpenseRead)
def get_expense(expense_id: int, db: Session = Depends(get_db)) -> Expense:
    expense = db.get(Expense, expense_id)
    if not expense:
        raise NotFoundError(f"Expense {expense_id} not found")
    return expense


@router.patch("/{expense_id}", response_model=ExpenseRead)
def edit_expense(
    expense_id: int,
    payload: ExpenseUpdate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
) -> Expense:
    return update_expense(
        db,
        expense_id,
        description=payload.description,
        category=payload.category,
        expense_date=payload.expense_date,
        amount=payload.amount,
        actor=actor,
    )


@router.delete("/{expense_id}", status_code=204)
def remove_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
) -> Response:
    delete_expense(db, expense_id, actor=actor)
    return Response(status_code=204)


@router.post("/recurring/materialize", response_model=MaterializeResult)
def materialize(
    payload: MaterializeRequest,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
) -> MaterializeResult:
    created = materialize_recurring_expenses(db, as_of=payload.as_of, actor=actor)
    return MaterializeResult(created=created)


@router.post("/lines/{line_id}/cancel", response_model=ApartmentExpenseRead)
def cancel_line(
    line_id: int,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
) -> ApartmentExpense:
    return cancel_apartment_expense(db, line_id, actor=actor)


@router.post("/lines/{line_id}/waive", response_model=ApartmentExpenseRead)
def waive_line(
    line_id: int,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
) -> ApartmentExpense:
    return waive_apartment_expense(db, line_id, actor=actor)
