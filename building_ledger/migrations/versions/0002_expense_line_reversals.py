"""Apartment expense cancellation flag and recurring materialization marker.

Revision ID: 0002_expense_line_reversals
Revises: 0001_billing_ledger
Create Date: 2026-10-18

"""

from alembic import op
import sqlalchemy as sa


revision = "0002_expense_line_reversals"
down_revision = "0001_billing_ledger"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("apartment_expenses") as batch_op:
        batch_op.add_column(sa.Column("is_canceled", sa.Boolean(), nullable=False, server_default=sa.false()))
    with op.batch_alter_table("expenses") as batch_op:
        batch_op.add_column(sa.Column("last_materialized_date", sa.Date(), nullable=True))

    # Templates already caught up before this revision are marked through their latest instance.
    op.execute(
        """
        UPDATE expenses
        SET last_materialized_date = (
            SELECT MAX(children.expense_date) FROM expenses AS children
            WHERE children.parent_expense_id = expenses.id
        )
        WHERE is_recurring
        """
    )


def downgrade() -> None:
    with op.batch_alter_table("expenses") as batch_op:
        batch_op.drop_column("last_materialized_date")
    with op.batch_alter_table("apartment_expenses") as batch_op:
        batch_op.drop_column("is_canceled")
