from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship as orm_relationship

from ..config import Base


def utcnow():
    # Stored naive; every timestamp in the ledger is UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    actor = Column(String, nullable=True)
    action = Column(String, nullable=False)
    target_entity_type = Column(String, nullable=True)
    target_entity_id = Column(String, nullable=True)
    before = Column(Text, nullable=True)
    after = Column(Text, nullable=True)


class Building(Base):
    __tablename__ = "buildings"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    address = Column(String, nullable=True)
    monthly_fee = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    apartments = orm_relationship("Apartment", back_populates="building", cascade="all, delete-orphan")
    expenses = orm_relationship("Expense", back_populates="building", cascade="all, delete-orphan")


class Apartment(Base):
    __tablename__ = "apartments"
    __table_args__ = (UniqueConstraint("building_id", "apartment_number", name="uq_apartment_number"),)

    id = Column(Integer, primary_key=True, index=True)
    building_id = Column(Integer, ForeignKey("buildings.id", ondelete="CASCADE"), nullable=False, index=True)
    apartment_number = Column(String, nullable=False)
    status = Column(String, nullable=False, default="occupied")  # occupied|vacant
    contact_email = Column(String, nullable=True)
    subscription_amount = Column(Numeric(12, 2), nullable=True)
    occupancy_start = Column(Date, nullable=True)
    cached_balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    collection_stage_id = Column(Integer, ForeignKey("collection_stages.id", ondelete="SET NULL"), nullable=True)
    debt_since = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    building = orm_relationship("Building", back_populates="apartments")
    collection_stage = orm_relationship("CollectionStage")
    apartment_expenses = orm_relationship("ApartmentExpense", back_populates="apartment", cascade="all, delete-orphan")
    subscription_charges = orm_relationship(
        "SubscriptionCharge", back_populates="apartment", cascade="all, delete-orphan"
    )
    payments = orm_relationship("Payment", back_populates="apartment", cascade="all, delete-orphan")
    ledger_entries = orm_relationship("LedgerEntry", back_populates="apartment", cascade="all, delete-orphan")

    @property
    def effective_subscription_amount(self) -> Decimal:
        if self.subscription_amount is not None:
            return Decimal(self.subscription_amount)
        if self.building is not None and self.building.monthly_fee is not None:
            return Decimal(self.building.monthly_fee)
        return Decimal("0")


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    building_id = Column(Integer, ForeignKey("buildings.id", ondelete="CASCADE"), nullable=False, index=True)
    apartment_id = Column(Integer, ForeignKey("apartments.id", ondelete="CASCADE"), nullable=True)
    description = Column(String, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    expense_date = Column(Date, nullable=False)
    category = Column(String, nullable=True)
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurring_type = Column(String, nullable=True)  # monthly|yearly
    recurring_start_date = Column(Date, nullable=True)
    recurring_end_date = Column(Date, nullable=True)
    last_materialized_date = Column(Date, nullable=True)
    parent_expense_id = Column(Integer, ForeignKey("expenses.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    building = orm_relationship("Building", back_populates="expenses")
    apartment_expenses = orm_relationship(
        "ApartmentExpense",
        back_populates="expense",
        cascade="all, delete-orphan",
        order_by="ApartmentExpense.id",
    )
    parent = orm_relationship("Expense", remote_side=[id])


class ApartmentExpense(Base):
    __tablename__ = "apartment_expenses"
    __table_args__ = (
        CheckConstraint("amount_paid >= 0", name="ck_apartment_expense_paid_non_negative"),
        CheckConstraint("amount_paid <= amount", name="ck_apartment_expense_paid_within_amount"),
    )

    id = Column(Integer, primary_key=True, index=True)
    apartment_id = Column(Integer, ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False, index=True)
    expense_id = Column(Integer, ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    is_canceled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    apartment = orm_relationship("Apartment", back_populates="apartment_expenses")
    expense = orm_relationship("Expense", back_populates="apartment_expenses")

    @property
    def remaining(self) -> Decimal:
        return Decimal(self.amount) - Decimal(self.amount_paid or 0)


class SubscriptionCharge(Base):
    __tablename__ = "subscription_charges"
    __table_args__ = (
        UniqueConstraint("apartment_id", "period", name="uq_subscription_charge_period"),
        CheckConstraint("amount_paid >= 0", name="ck_subscription_paid_non_negative"),
        CheckConstraint("amount_paid <= amount", name="ck_subscription_paid_within_amount"),
    )

    id = Column(Integer, primary_key=True, index=True)
    apartment_id = Column(Integer, ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False, index=True)
    period = Column(String(7), nullable=False)  # YYYY-MM
    amount = Column(Numeric(12, 2), nullable=False)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    created_at = Column(DateTime, default=utcnow, nullable=False)

    apartment = orm_relationship("Apartment", back_populates="subscription_charges")

    @property
    def remaining(self) -> Decimal:
        return Decimal(self.amount) - Decimal(self.amount_paid or 0)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    apartment_id = Column(Integer, ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False, index=True)
    month = Column(String(7), nullable=False)  # YYYY-MM
    amount = Column(Numeric(12, 2), nullable=False)
    is_canceled = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    apartment = orm_relationship("Apartment", back_populates="payments")
    allocations = orm_relationship(
        "PaymentAllocation",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentAllocation.id",
    )

    @property
    def allocated_total(self) -> Decimal:
        return sum((Decimal(item.amount_allocated) for item in self.allocations), Decimal("0"))

    @property
    def unallocated_amount(self) -> Decimal:
        return Decimal(self.amount) - self.allocated_total


class PaymentAllocation(Base):
    __tablename__ = "payment_allocations"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    apartment_expense_id = Column(
        Integer, ForeignKey("apartment_expenses.id", ondelete="SET NULL"), nullable=True, index=True
    )
    subscription_charge_id = Column(
        Integer, ForeignKey("subscription_charges.id", ondelete="SET NULL"), nullable=True, index=True
    )
    subscription_period = Column(String(7), nullable=True)
    obligation_ref = Column(String, nullable=False)
    amount_allocated = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    payment = orm_relationship("Payment", back_populates="allocations")
    apartment_expense = orm_relationship("ApartmentExpense")
    subscription_charge = orm_relationship("SubscriptionCharge")


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    apartment_id = Column(Integer, ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False, index=True)
    entry_type = Column(String, nullable=False)  # debit|credit
    reference_type = Column(String, nullable=False)  # payment|expense|subscription|reversal
    reference_id = Column(String, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    description = Column(String, nullable=True)
    actor = Column(String, nullable=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    apartment = orm_relationship("Apartment", back_populates="ledger_entries")


class NotificationTemplate(Base):
    __tablename__ = "notification_templates"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, nullable=False, unique=True)
    subject = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class CollectionStage(Base):
    __tablename__ = "collection_stages"

    id = Column(Integer, primary_key=True, index=True)
    stage_number = Column(Integer, nullable=False, unique=True)
    name = Column(String, nullable=False)
    days_overdue = Column(Integer, nullable=False)
    action_type = Column(String, nullable=False)  # email_reminder|formal_notice|final_warning|custom
    template_id = Column(Integer, ForeignKey("notification_templates.id", ondelete="SET NULL"), nullable=True)
    settings = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    template = orm_relationship("NotificationTemplate")


class CollectionLogEntry(Base):
    __tablename__ = "collection_log"

    id = Column(Integer, primary_key=True, index=True)
    apartment_id = Column(Integer, ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id = Column(Integer, ForeignKey("collection_stages.id"), nullable=False, index=True)
    action_taken = Column(String, nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    triggered_at = Column(DateTime, default=utcnow, nullable=False)

    apartment = orm_relationship("Apartment")
    stage = orm_relationship("CollectionStage")
