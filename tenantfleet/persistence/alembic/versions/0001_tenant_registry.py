"""tenant registry and lifecycle ledgers

Revision ID: 0001_tenant_registry
Revises:
Create Date: 2026-03-02
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_tenant_registry"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    # Registry of record: one row per tenant, never physically deleted.
    op.create_table(
        "tenants",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("database_locator", sa.String(), nullable=False),
        sa.Column("lifecycle_state", sa.String(), nullable=False),
        sa.Column("plan", sa.String(), nullable=True),
        sa.Column("resource_limits_json", JSON_TYPE, nullable=True),
        sa.Column("last_migrated_version", sa.String(), nullable=True),
        sa.Column("last_backup_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("database_locator", name="uq_tenants_database_locator"),
    )
    op.create_index("ix_tenants_lifecycle_state", "tenants", ["lifecycle_state"], unique=False)

    # Immutable backup records; retention deletes whole rows.
    op.create_table(
        "tenant_backups",
        sa.Column("backup_id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.tenant_id"), nullable=False),
        sa.Column("storage_locator", sa.String(), nullable=False),
        sa.Column("taken_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("checksum", sa.String(), nullable=False),
        sa.Column("schema_revision", sa.String(), nullable=True),
        sa.Column("encrypted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("signature", sa.String(), nullable=True),
        sa.UniqueConstraint("storage_locator", name="uq_tenant_backups_storage_locator"),
    )
    op.create_index(
        "ix_tenant_backups_tenant_taken", "tenant_backups", ["tenant_id", "taken_at"], unique=False
    )

    # Fleet migration runs and their ordered per-tenant outcomes.
    op.create_table(
        "migration_runs",
        sa.Column("run_id", sa.String(), primary_key=True),
        sa.Column("target_revision", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("filter_json", JSON_TYPE, nullable=True),
    )
    op.create_table(
        "migration_outcomes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("run_id", sa.String(), sa.ForeignKey("migration_runs.run_id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("from_revision", sa.String(), nullable=True),
        sa.Column("to_revision", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_migration_outcomes_run_id", "migration_outcomes", ["run_id"], unique=False)
    op.create_index("ix_migration_outcomes_tenant", "migration_outcomes", ["tenant_id"], unique=False)

    # In-flight provisioning is only visible here until the tenant record lands.
    op.create_table(
        "provisioning_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("baseline_revision", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("database_locator", sa.String(), nullable=True),
        sa.Column("steps_completed", JSON_TYPE, nullable=True),
        sa.Column("steps_skipped", JSON_TYPE, nullable=True),
        sa.Column("failed_step", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_provisioning_jobs_tenant", "provisioning_jobs", ["tenant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_provisioning_jobs_tenant", table_name="provisioning_jobs")
    op.drop_table("provisioning_jobs")
    op.drop_index("ix_migration_outcomes_tenant", table_name="migration_outcomes")
    op.drop_index("ix_migration_outcomes_run_id", table_name="migration_outcomes")
    op.drop_table("migration_outcomes")
    op.drop_table("migration_runs")
    op.drop_index("ix_tenant_backups_tenant_taken", table_name="tenant_backups")
    op.drop_table("tenant_backups")
    op.drop_index("ix_tenants_lifecycle_state", table_name="tenants")
    op.drop_table("tenants")
