from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..api.dependencies import get_config, get_current_actor, get_db
from ..config import BillingConfig
from ..core.errors import NotFoundError
from ..models.models import Payment
from ..schemas.schemas import CancelResultRead, PaymentCreate, PaymentRead, PaymentResultRead, PaymentUpdate
from ..services.payments import AllocationRequest, cancel_payment, record_payment, update_payment

router = APIRouter()


@router.post("", response_model=PaymentResultRead, status_code=201)
def create_payment(
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
    config: BillingConfig = Depends(get_config),
) -> PaymentResultRead:
    result = record_payment(
        db,
        apartment_id=payload.apartment_id,
        amount=payload.amount,
        allocations=[AllocationRequest(item.obligation_id, item.amount) for item in payload.allocations],
        month=payload.month,
        actor=actor,
        config=config,
    )
    return PaymentResultRead.model_validate(result, from_attributes=True)


@router.get("/{payment_id}", response_model=PaymentRead)
def get_payment(payment_id: int, db: Session = Depends(get_db)) -> Payment:
    payment = db.get(Payment, payment_id)
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


@router.patch("/{payment_id}", response_model=PaymentRead)
def edit_payment(
    payment_id: int,
    payload: PaymentUpdate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
) -> Payment:
    return update_payment(db, payment_id, month=payload.month, amount=payload.amount, actor=actor)


@router.post("/{payment_id}/cancel", response_model=CancelResultRead)
def cancel(
    payment_id: int,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
) -> CancelResultRead:
    result = cancel_payment(db, payment_id, actor=actor)
    return CancelResultRead.model_validate(result, from_attributes=True)
