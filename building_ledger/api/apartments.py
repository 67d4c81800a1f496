from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..api.dependencies import get_config, get_db
from ..config import BillingConfig
from ..core.money import to_money
from ..models.models import LedgerEntry
from ..schemas.schemas import BalanceDriftRead, BalanceRead, LedgerEntryRead, ObligationRead, ReconcileRequest
from ..services.ledger import get_apartment, get_ledger, list_unpaid_obligations, reconcile_balances

router = APIRouter()


@router.get("/{apartment_id}/obligations", response_model=List[ObligationRead])
def obligations(
    apartment_id: int,
    as_of: Optional[date] = None,
    db: Session = Depends(get_db),
    config: BillingConfig = Depends(get_config),
) -> List[ObligationRead]:
    return [
        ObligationRead.model_validate(item, from_attributes=True)
        for item in list_unpaid_obligations(db, apartment_id, config=config, as_of=as_of)
    ]


@router.get("/{apartment_id}/balance", response_model=BalanceRead)
def balance(
    apartment_id: int,
    db: Session = Depends(get_db),
    config: BillingConfig = Depends(get_config),
) -> BalanceRead:
    apartment = get_apartment(db, apartment_id)
    amount = to_money(apartment.cached_balance)
    return BalanceRead(
        apartment_id=apartment.id,
        balance=amount,
        currency=config.currency_code,
        formatted=config.format_amount(amount),
        collection_stage_id=apartment.collection_stage_id,
        debt_since=apartment.debt_since,
    )


@router.get("/{apartment_id}/ledger", response_model=List[LedgerEntryRead])
def ledger(
    apartment_id: int,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> List[LedgerEntry]:
    return get_ledger(db, apartment_id, limit=limit, offset=offset)


@router.post("/reconcile", response_model=List[BalanceDriftRead])
def reconcile(payload: ReconcileRequest, db: Session = Depends(get_db)) -> List[BalanceDriftRead]:
    return [
        BalanceDriftRead.model_validate(drift, from_attributes=True)
        for drift in reconcile_balances(db, apartment_ids=payload.apartment_ids)
    ]
