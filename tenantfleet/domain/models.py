from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON on sqlite for local development.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"
    __table_args__ = (Index("ix_tenants_lifecycle_state", "lifecycle_state"),)

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    # Locator is assigned once and unique forever; records are never deleted.
    database_locator: Mapped[str] = mapped_column(String, unique=True)
    lifecycle_state: Mapped[str] = mapped_column(String)
    # Opaque plan label owned by billing; limits below are derived from it upstream.
    plan: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_limits_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    last_migrated_version: Mapped[str | None] = mapped_column(String, nullable=True)
    last_backup_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantBackup(Base):
    __tablename__ = "tenant_backups"
    __table_args__ = (Index("ix_tenant_backups_tenant_taken", "tenant_id", "taken_at"),)

    # Backup rows are immutable; retention removes whole rows with their blobs.
    backup_id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.tenant_id"))
    storage_locator: Mapped[str] = mapped_column(String, unique=True)
    taken_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    size_bytes: Mapped[int] = mapped_column(BigInteger)
    checksum: Mapped[str] = mapped_column(String)
    schema_revision: Mapped[str | None] = mapped_column(String, nullable=True)
    encrypted: Mapped[bool] = mapped_column(default=False)
    signature: Mapped[str | None] = mapped_column(String, nullable=True)


class MigrationRunRow(Base):
    __tablename__ = "migration_runs"

    run_id: Mapped[str] = mapped_column(String, primary_key=True)
    target_revision: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    filter_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)


class MigrationOutcomeRow(Base):
    __tablename__ = "migration_outcomes"
    __table_args__ = (Index("ix_migration_outcomes_tenant", "tenant_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String, ForeignKey("migration_runs.run_id"), index=True)
    # Preserve per-run ordering of outcomes for reports.
    position: Mapped[int] = mapped_column(Integer)
    tenant_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    from_revision: Mapped[str | None] = mapped_column(String, nullable=True)
    to_revision: Mapped[str | None] = mapped_column(String, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class ProvisioningJob(Base):
    __tablename__ = "provisioning_jobs"
    __table_args__ = (Index("ix_provisioning_jobs_tenant", "tenant_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    baseline_revision: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    database_locator: Mapped[str | None] = mapped_column(String, nullable=True)
    steps_completed: Mapped[list[str]] = mapped_column(JsonType, default=list)
    steps_skipped: Mapped[list[str]] = mapped_column(JsonType, default=list)
    failed_step: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
