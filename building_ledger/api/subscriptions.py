from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..api.dependencies import get_config, get_current_actor, get_db
from ..config import BillingConfig
from ..schemas.schemas import SubscriptionChargeRequest, SubscriptionRunRead
from ..services.subscriptions import post_subscription_charges

router = APIRouter()


@router.post("/charge", response_model=SubscriptionRunRead)
def charge_subscriptions(
    payload: SubscriptionChargeRequest,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_current_actor),
    config: BillingConfig = Depends(get_config),
) -> SubscriptionRunRead:
    result = post_subscription_charges(db, period=payload.period, actor=actor, config=config)
    return SubscriptionRunRead.model_validate(result, from_attributes=True)
