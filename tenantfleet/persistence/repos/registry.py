from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantfleet.core.errors import (
    LocatorCollision,
    StateConflict,
    TenantAlreadyExists,
    UnknownTenant,
)
from tenantfleet.domain.lifecycle import LifecycleState
from tenantfleet.domain.models import (
    MigrationOutcomeRow,
    MigrationRunRow,
    ProvisioningJob,
    Tenant,
    TenantBackup,
)
from tenantfleet.domain.records import (
    BackupRecord,
    DatabaseLocator,
    MigrationRun,
    ResourceLimits,
    TenantFilter,
    TenantOutcome,
    TenantRecord,
)
from tenantfleet.services.registry import (
    ExpectedState,
    as_utc,
    normalize_expected,
    utc_now,
    validate_update,
)


def _to_record(row: Tenant) -> TenantRecord:
    return TenantRecord(
        tenant_id=row.tenant_id,
        database_locator=DatabaseLocator.parse(row.database_locator),
        lifecycle_state=LifecycleState(row.lifecycle_state),
        resource_limits=ResourceLimits.from_dict(row.resource_limits_json),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        last_migrated_version=row.last_migrated_version,
        last_backup_at=as_utc(row.last_backup_at),
        plan=row.plan,
    )


def _to_backup(row: TenantBackup) -> BackupRecord:
    return BackupRecord(
        backup_id=row.backup_id,
        tenant_id=row.tenant_id,
        storage_locator=row.storage_locator,
        taken_at=as_utc(row.taken_at),
        size_bytes=int(row.size_bytes),
        checksum=row.checksum,
        schema_revision=row.schema_revision,
        encrypted=bool(row.encrypted),
        signature=row.signature,
    )


# Registry Store backed by the control-plane database
class SqlRegistryStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, tenant_id: str) -> TenantRecord | None:
        async with self._session_factory() as session:
            row = await session.get(Tenant, tenant_id)
            return _to_record(row) if row is not None else None

    async def list(self, tenant_filter: TenantFilter | None = None) -> list[TenantRecord]:
        stmt = select(Tenant)
        if tenant_filter is not None:
            if tenant_filter.states:
                stmt = stmt.where(Tenant.lifecycle_state.in_([state.value for state in tenant_filter.states]))
            if tenant_filter.tenant_ids is not None:
                stmt = stmt.where(Tenant.tenant_id.in_(sorted(tenant_filter.tenant_ids)))
            if tenant_filter.plans is not None:
                stmt = stmt.where(Tenant.plan.in_(sorted(tenant_filter.plans)))
        async with self._session_factory() as session:
            rows = (await session.execute(stmt.order_by(Tenant.tenant_id))).scalars().all()
        return [_to_record(row) for row in rows]

    async def create(self, record: TenantRecord) -> TenantRecord:
        locator = str(record.database_locator)
        async with self._session_factory() as session:
            if await session.get(Tenant, record.tenant_id) is not None:
                raise TenantAlreadyExists(f"tenant {record.tenant_id!r} already registered", tenant_id=record.tenant_id)
            if await self._locator_taken(session, locator):
                raise LocatorCollision(f"locator {locator} already assigned", tenant_id=record.tenant_id)
            row = Tenant(
                tenant_id=record.tenant_id,
                database_locator=locator,
                lifecycle_state=record.lifecycle_state.value,
                plan=record.plan,
                resource_limits_json=record.resource_limits.to_dict(),
                last_migrated_version=record.last_migrated_version,
                last_backup_at=record.last_backup_at,
                created_at=record.created_at,
                updated_at=record.updated_at,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                # A concurrent writer won the primary key or locator uniqueness race.
                await session.rollback()
                raise TenantAlreadyExists(
                    f"tenant {record.tenant_id!r} or locator {locator} already registered",
                    tenant_id=record.tenant_id,
                ) from exc
            return _to_record(row)

    async def conditional_update(
        self,
        tenant_id: str,
        *,
        expected_state: ExpectedState,
        new_state: LifecycleState | None = None,
        fields: dict[str, Any] | None = None,
    ) -> TenantRecord:
        expected = normalize_expected(expected_state)
        fields = dict(fields or {})
        validate_update(tenant_id, expected, new_state, fields)
        values: dict[str, Any] = {"updated_at": utc_now()}
        if new_state is not None:
            values["lifecycle_state"] = LifecycleState(new_state).value
        if "resource_limits" in fields:
            limits = fields.pop("resource_limits")
            values["resource_limits_json"] = limits.to_dict() if isinstance(limits, ResourceLimits) else dict(limits)
        values.update(fields)
        stmt = (
            update(Tenant)
            .where(
                Tenant.tenant_id == tenant_id,
                Tenant.lifecycle_state.in_([state.value for state in expected]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            row = await session.get(Tenant, tenant_id, populate_existing=True)
            if row is None:
                raise UnknownTenant(tenant_id)
            if (result.rowcount or 0) == 0:
                raise StateConflict(
                    f"tenant {tenant_id!r} is {row.lifecycle_state}, expected one of "
                    + ", ".join(sorted(state.value for state in expected)),
                    tenant_id=tenant_id,
                )
            return _to_record(row)

    async def locator_taken(self, database_locator: str) -> bool:
        async with self._session_factory() as session:
            return await self._locator_taken(session, database_locator)

    async def _locator_taken(self, session: AsyncSession, database_locator: str) -> bool:
        # Records are never deleted, so this covers every locator ever assigned.
        result = await session.execute(select(Tenant.tenant_id).where(Tenant.database_locator == database_locator))
        return result.first() is not None

    async def add_backup(self, record: BackupRecord) -> BackupRecord:
        async with self._session_factory() as session:
            session.add(
                TenantBackup(
                    backup_id=record.backup_id,
                    tenant_id=record.tenant_id,
                    storage_locator=record.storage_locator,
                    taken_at=record.taken_at,
                    size_bytes=record.size_bytes,
                    checksum=record.checksum,
                    schema_revision=record.schema_revision,
                    encrypted=record.encrypted,
                    signature=record.signature,
                )
            )
            await session.commit()
        return record

    async def get_backup(self, backup_id: str) -> BackupRecord | None:
        async with self._session_factory() as session:
            row = await session.get(TenantBackup, backup_id)
            return _to_backup(row) if row is not None else None

    async def list_backups(self, tenant_id: str) -> list[BackupRecord]:
        # Newest first so retention keeps the head of the list.
        stmt = (
            select(TenantBackup)
            .where(TenantBackup.tenant_id == tenant_id)
            .order_by(TenantBackup.taken_at.desc(), TenantBackup.backup_id.desc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_backup(row) for row in rows]

    async def delete_backup(self, backup_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(TenantBackup).where(TenantBackup.backup_id == backup_id))
            await session.commit()

    async def save_migration_run(self, run: MigrationRun) -> None:
        # Upsert the run header and replace its outcomes so reruns of save stay idempotent.
        async with self._session_factory() as session:
            row = await session.get(MigrationRunRow, run.run_id)
            if row is None:
                row = MigrationRunRow(run_id=run.run_id, target_revision=run.target_revision)
                session.add(row)
            row.status = run.status
            row.started_at = run.started_at
            row.completed_at = run.completed_at
            row.filter_json = run.tenant_filter.to_dict() if run.tenant_filter is not None else None
            await session.execute(delete(MigrationOutcomeRow).where(MigrationOutcomeRow.run_id == run.run_id))
            for position, outcome in enumerate(run.outcomes):
                session.add(
                    MigrationOutcomeRow(
                        run_id=run.run_id,
                        position=position,
                        tenant_id=outcome.tenant_id,
                        status=outcome.status,
                        from_revision=outcome.from_revision,
                        to_revision=outcome.to_revision,
                        attempts=outcome.attempts,
                        error_code=outcome.error_code,
                        error_message=outcome.error_message,
                    )
                )
            await session.commit()

    async def get_migration_run(self, run_id: str) -> MigrationRun | None:
        async with self._session_factory() as session:
            row = await session.get(MigrationRunRow, run_id)
            if row is None:
                return None
            outcome_rows = (
                await session.execute(
                    select(MigrationOutcomeRow)
                    .where(MigrationOutcomeRow.run_id == run_id)
                    .order_by(MigrationOutcomeRow.position)
                )
            ).scalars().all()
        return MigrationRun(
            run_id=row.run_id,
            target_revision=row.target_revision,
            started_at=as_utc(row.started_at),
            completed_at=as_utc(row.completed_at),
            outcomes=[
                TenantOutcome(
                    tenant_id=item.tenant_id,
                    status=item.status,
                    attempts=item.attempts,
                    from_revision=item.from_revision,
                    to_revision=item.to_revision,
                    error_code=item.error_code,
                    error_message=item.error_message,
                )
                for item in outcome_rows
            ],
        )

    async def start_provisioning_job(self, tenant_id: str, baseline_revision: str) -> str:
        job_id = uuid4().hex
        async with self._session_factory() as session:
            session.add(
                ProvisioningJob(
                    id=job_id,
                    tenant_id=tenant_id,
                    baseline_revision=baseline_revision,
                    status=LifecycleState.PROVISIONING.value,
                    steps_completed=[],
                    steps_skipped=[],
                    started_at=utc_now(),
                )
            )
            await session.commit()
        return job_id

    async def update_provisioning_job(self, job_id: str, **fields: Any) -> None:
        async with self._session_factory() as session:
            job = await session.get(ProvisioningJob, job_id)
            if job is None:
                return
            for key, value in fields.items():
                setattr(job, key, value)
            if fields.get("status") in {"completed", "failed", "cancelled"}:
                job.completed_at = utc_now()
            await session.commit()

    async def get_provisioning_job(self, job_id: str) -> ProvisioningJob | None:
        async with self._session_factory() as session:
            return await session.get(ProvisioningJob, job_id)
