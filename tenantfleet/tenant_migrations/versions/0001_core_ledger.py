"""core ledger tables

Revision ID: 0001_core_ledger
Revises:
Create Date: 2026-03-02
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_core_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Reference currencies are seeded at provisioning time.
    op.create_table(
        "currencies",
        sa.Column("code", sa.String(length=3), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("minor_units", sa.Integer(), nullable=False, server_default="2"),
    )

    op.create_table(
        "ledger_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("account_type", sa.String(), nullable=False),
        sa.Column("currency_code", sa.String(length=3), sa.ForeignKey("currencies.code"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("code", name="uq_ledger_accounts_code"),
    )

    op.create_table(
        "journal_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("ledger_accounts.id"), nullable=False),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("memo", sa.Text(), nullable=True),
    )
    op.create_index("ix_journal_entries_account_id", "journal_entries", ["account_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_journal_entries_account_id", table_name="journal_entries")
    op.drop_table("journal_entries")
    op.drop_table("ledger_accounts")
    op.drop_table("currencies")
