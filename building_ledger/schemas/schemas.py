from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, condecimal, model_validator

Money = condecimal(max_digits=12, decimal_places=2)
PERIOD_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


class RecurrencePayload(BaseModel):
    recurring_type: Literal["monthly", "yearly"]
    start_date: date
    end_date: Optional[date] = None

    @model_validator(mode="after")
    def check_bounds(self) -> "RecurrencePayload":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self


class ExpenseCreate(BaseModel):
    building_id: int
    description: Optional[str] = None
    amount: Money = Field(gt=0)  # type: ignore[valid-type]
    expense_date: date
    category: Optional[str] = None
    apartment_id: Optional[int] = None
    recurrence: Optional[RecurrencePayload] = None


class ExpenseUpdate(BaseModel):
    description: Optional[str] = None
    category: Optional[str] = None
    expense_date: Optional[date] = None
    amount: Optional[Money] = Field(default=None, gt=0)  # type: ignore[valid-type]


class ApartmentExpenseRead(BaseModel):
    id: int
    apartment_id: int
    amount: Decimal
    amount_paid: Decimal
    is_canceled: bool = False

    model_config = ConfigDict(from_attributes=True)


class ExpenseRead(BaseModel):
    id: int
    building_id: int
    apartment_id: Optional[int]
    description: Optional[str]
    amount: Decimal
    expense_date: date
    category: Optional[str]
    is_recurring: bool
    recurring_type: Optional[str]
    recurring_start_date: Optional[date]
    recurring_end_date: Optional[date]
    last_materialized_date: Optional[date] = None
    parent_expense_id: Optional[int]
    apartment_expenses: List[ApartmentExpenseRead] = []

    model_config = ConfigDict(from_attributes=True)


class MaterializeRequest(BaseModel):
    as_of: Optional[date] = None


class MaterializeResult(BaseModel):
    created: int


class AllocationPayload(BaseModel):
    obligation_id: str
    amount: Money = Field(ge=0)  # type: ignore[valid-type]


class PaymentCreate(BaseModel):
    apartment_id: int
    amount: Money = Field(gt=0)  # type: ignore[valid-type]
    month: Optional[str] = Field(default=None, pattern=PERIOD_PATTERN)
    allocations: List[AllocationPayload] = []


class PaymentUpdate(BaseModel):
    month: Optional[str] = Field(default=None, pattern=PERIOD_PATTERN)
    amount: Optional[Money] = Field(default=None, gt=0)  # type: ignore[valid-type]


class PaymentAllocationRead(BaseModel):
    id: int
    obligation_ref: str
    amount_allocated: Decimal
    apartment_expense_id: Optional[int]
    subscription_charge_id: Optional[int]
    subscription_period: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class PaymentRead(BaseModel):
    id: int
    apartment_id: int
    month: str
    amount: Decimal
    is_canceled: bool
    canceled_at: Optional[datetime]
    created_at: datetime
    allocations: List[PaymentAllocationRead] = []

    model_config = ConfigDict(from_attributes=True)


class PaymentResultRead(BaseModel):
    payment: PaymentRead
    allocations: List[PaymentAllocationRead]
    balance: Decimal

    model_config = ConfigDict(from_attributes=True)


class CancelResultRead(BaseModel):
    payment: PaymentRead
    already_canceled: bool
    balance: Decimal

    model_config = ConfigDict(from_attributes=True)


class ObligationRead(BaseModel):
    ref: str
    kind: str
    description: str
    obligation_date: date
    amount: Decimal
    amount_paid: Decimal
    remaining: Decimal
    period: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BalanceRead(BaseModel):
    apartment_id: int
    balance: Decimal
    currency: str
    formatted: str
    collection_stage_id: Optional[int]
    debt_since: Optional[datetime]


class LedgerEntryRead(BaseModel):
    id: int
    apartment_id: int
    entry_type: str
    reference_type: str
    reference_id: Optional[str]
    amount: Decimal
    balance_after: Decimal
    description: Optional[str]
    actor: Optional[str]
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class ReconcileRequest(BaseModel):
    apartment_ids: Optional[List[int]] = None


class BalanceDriftRead(BaseModel):
    apartment_id: int
    cached_balance: Decimal
    recomputed_balance: Decimal

    model_config = ConfigDict(from_attributes=True)


class SubscriptionChargeRequest(BaseModel):
    period: Optional[str] = Field(default=None, pattern=PERIOD_PATTERN)


class SubscriptionRunRead(BaseModel):
    period: str
    charged_count: int
    skipped_count: int
    failures: List[int]

    model_config = ConfigDict(from_attributes=True)


class CollectionStageBase(BaseModel):
    stage_number: int = Field(ge=1)
    name: str = Field(min_length=1)
    days_overdue: int = Field(ge=0)
    action_type: Literal["email_reminder", "formal_notice", "final_warning", "custom"]
    template_id: Optional[int] = None
    settings: Dict[str, Any] = {}
    is_active: bool = True


class CollectionStageCreate(CollectionStageBase):
    pass


class CollectionStageUpdate(BaseModel):
    stage_number: Optional[int] = Field(default=None, ge=1)
    name: Optional[str] = Field(default=None, min_length=1)
    days_overdue: Optional[int] = Field(default=None, ge=0)
    action_type: Optional[Literal["email_reminder", "formal_notice", "final_warning", "custom"]] = None
    template_id: Optional[int] = None
    settings: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class CollectionStageRead(CollectionStageBase):
    id: int

    model_config = ConfigDict(from_attributes=True)


class CollectionLogRead(BaseModel):
    id: int
    apartment_id: int
    stage_id: int
    action_taken: str
    details: Dict[str, Any]
    triggered_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CollectionRunRead(BaseModel):
    processed_count: int
    actions_triggered_count: int
    cleared_count: int
    notification_failures: int
    failed_apartments: List[int]

    model_config = ConfigDict(from_attributes=True)
