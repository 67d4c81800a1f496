"""Billing ledger and debt-collection schema.

Revision ID: 0001_billing_ledger
Revises:
Create Date: 2026-10-17

"""

from alembic import op
import sqlalchemy as sa


revision = "0001_billing_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("actor", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("target_entity_type", sa.String(), nullable=True),
        sa.Column("target_entity_id", sa.String(), nullable=True),
        sa.Column("before", sa.Text(), nullable=True),
        sa.Column("after", sa.Text(), nullable=True),
    )
    op.create_index(op.f("ix_audit_logs_id"), "audit_logs", ["id"], unique=False)
    op.create_index(op.f("ix_audit_logs_timestamp"), "audit_logs", ["timestamp"], unique=False)

    op.create_table(
        "buildings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("monthly_fee", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_buildings_id"), "buildings", ["id"], unique=False)

    op.create_table(
        "notification_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(), nullable=False, unique=True),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_notification_templates_id"), "notification_templates", ["id"], unique=False)

    op.create_table(
        "collection_stages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("stage_number", sa.Integer(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("days_overdue", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("notification_templates.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_collection_stages_id"), "collection_stages", ["id"], unique=False)

    op.create_table(
        "apartments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("building_id", sa.Integer(), sa.ForeignKey("buildings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("apartment_number", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="occupied"),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("subscription_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("occupancy_start", sa.Date(), nullable=True),
        sa.Column("cached_balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column(
            "collection_stage_id",
            sa.Integer(),
            sa.ForeignKey("collection_stages.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("debt_since", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("building_id", "apartment_number", name="uq_apartment_number"),
    )
    op.create_index(op.f("ix_apartments_id"), "apartments", ["id"], unique=False)
    op.create_index(op.f("ix_apartments_building_id"), "apartments", ["building_id"], unique=False)

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("building_id", sa.Integer(), sa.ForeignKey("buildings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("apartment_id", sa.Integer(), sa.ForeignKey("apartments.id", ondelete="CASCADE"), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("expense_date", sa.Date(), nullable=False),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recurring_type", sa.String(), nullable=True),
        sa.Column("recurring_start_date", sa.Date(), nullable=True),
        sa.Column("recurring_end_date", sa.Date(), nullable=True),
        sa.Column(
            "parent_expense_id",
            sa.Integer(),
            sa.ForeignKey("expenses.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_expenses_id"), "expenses", ["id"], unique=False)
    op.create_index(op.f("ix_expenses_building_id"), "expenses", ["building_id"], unique=False)
    op.create_index(op.f("ix_expenses_parent_expense_id"), "expenses", ["parent_expense_id"], unique=False)

    op.create_table(
        "apartment_expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("apartment_id", sa.Integer(), sa.ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("expense_id", sa.Integer(), sa.ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_paid", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_paid >= 0", name="ck_apartment_expense_paid_non_negative"),
        sa.CheckConstraint("amount_paid <= amount", name="ck_apartment_expense_paid_within_amount"),
    )
    op.create_index(op.f("ix_apartment_expenses_id"), "apartment_expenses", ["id"], unique=False)
    op.create_index(op.f("ix_apartment_expenses_apartment_id"), "apartment_expenses", ["apartment_id"], unique=False)
    op.create_index(op.f("ix_apartment_expenses_expense_id"), "apartment_expenses", ["expense_id"], unique=False)

    op.create_table(
        "subscription_charges",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("apartment_id", sa.Integer(), sa.ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_paid", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("apartment_id", "period", name="uq_subscription_charge_period"),
        sa.CheckConstraint("amount_paid >= 0", name="ck_subscription_paid_non_negative"),
        sa.CheckConstraint("amount_paid <= amount", name="ck_subscription_paid_within_amount"),
    )
    op.create_index(op.f("ix_subscription_charges_id"), "subscription_charges", ["id"], unique=False)
    op.create_index(
        op.f("ix_subscription_charges_apartment_id"), "subscription_charges", ["apartment_id"], unique=False
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("apartment_id", sa.Integer(), sa.ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_canceled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_payments_id"), "payments", ["id"], unique=False)
    op.create_index(op.f("ix_payments_apartment_id"), "payments", ["apartment_id"], unique=False)

    op.create_table(
        "payment_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "apartment_expense_id",
            sa.Integer(),
            sa.ForeignKey("apartment_expenses.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "subscription_charge_id",
            sa.Integer(),
            sa.ForeignKey("subscription_charges.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("subscription_period", sa.String(length=7), nullable=True),
        sa.Column("obligation_ref", sa.String(), nullable=False),
        sa.Column("amount_allocated", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_payment_allocations_id"), "payment_allocations", ["id"], unique=False)
    op.create_index(op.f("ix_payment_allocations_payment_id"), "payment_allocations", ["payment_id"], unique=False)
    op.create_index(
        op.f("ix_payment_allocations_apartment_expense_id"),
        "payment_allocations",
        ["apartment_expense_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_allocations_subscription_charge_id"),
        "payment_allocations",
        ["subscription_charge_id"],
        unique=False,
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("apartment_id", sa.Integer(), sa.ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("reference_type", sa.String(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("actor", sa.String(), nullable=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_ledger_entries_id"), "ledger_entries", ["id"], unique=False)
    op.create_index(op.f("ix_ledger_entries_apartment_id"), "ledger_entries", ["apartment_id"], unique=False)

    op.create_table(
        "collection_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("apartment_id", sa.Integer(), sa.ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("stage_id", sa.Integer(), sa.ForeignKey("collection_stages.id"), nullable=False),
        sa.Column("action_taken", sa.String(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("triggered_at", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_collection_log_id"), "collection_log", ["id"], unique=False)
    op.create_index(op.f("ix_collection_log_apartment_id"), "collection_log", ["apartment_id"], unique=False)
    op.create_index(op.f("ix_collection_log_stage_id"), "collection_log", ["stage_id"], unique=False)


def downgrade() -> None:
    op.drop_table("collection_log")
    op.drop_table("ledger_entries")
    op.drop_table("payment_allocations")
    op.drop_table("payments")
    op.drop_table("subscription_charges")
    op.drop_table("apartment_expenses")
    op.drop_table("expenses")
    op.drop_table("apartments")
    op.drop_table("collection_stages")
    op.drop_table("notification_templates")
    op.drop_table("buildings")
    op.drop_table("audit_logs")
