"""invoice due dates

Revision ID: 0003_invoice_due_dates
Revises: 0002_invoices
Create Date: 2026-04-07
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0003_invoice_due_dates"
down_revision = "0002_invoices"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Payment terms drive the due date; both stay nullable for existing drafts.
    op.add_column("invoices", sa.Column("payment_terms_days", sa.Integer(), nullable=True))
    op.add_column("invoices", sa.Column("due_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("invoices") as batch_op:
        batch_op.drop_column("due_at")
        batch_op.drop_column("payment_terms_days")
