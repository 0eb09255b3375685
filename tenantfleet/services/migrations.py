from __future__ import annotations

import logging
import time
from uuid import uuid4

from tenantfleet.core.config import Settings, get_settings
from tenantfleet.core.errors import StateConflict, TenantFleetError, UnknownTenant, error_code_for
from tenantfleet.domain.lifecycle import LifecycleState
from tenantfleet.domain.records import (
    OUTCOME_CANCELLED,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCEEDED,
    OUTCOME_UP_TO_DATE,
    MigrationRun,
    TenantFilter,
    TenantOutcome,
    TenantRecord,
)
from tenantfleet.persistence.servers import TenantDatabaseServer
from tenantfleet.persistence.tenant_schema import current_revision_at, resolve_revision, upgrade_database
from tenantfleet.services.registry import RegistryStore, utc_now
from tenantfleet.services.resilience import (
    CancellationToken,
    RetryPolicy,
    TenantGuard,
    attempt_with_retry,
    fan_out,
)
from tenantfleet.services.telemetry import increment_counter, record_operation, set_gauge


logger = logging.getLogger(__name__)

# Applied DDL is recorded even if the tenant was suspended while it ran.
_VERSION_ADVANCE_STATES = frozenset({LifecycleState.ACTIVE, LifecycleState.SUSPENDED})


def _error_outcome(tenant_id: str, exc: BaseException, *, attempts: int, from_revision: str | None) -> TenantOutcome:
    return TenantOutcome(
        tenant_id=tenant_id,
        status=OUTCOME_FAILED,
        attempts=attempts,
        from_revision=from_revision,
        to_revision=from_revision,
        error_code=error_code_for(exc),
        error_message=str(exc)[:2000],
    )


# Applies tenant schema revisions across the fleet, one isolated unit per tenant
class MigrationOrchestrator:
    def __init__(
        self,
        registry: RegistryStore,
        server: TenantDatabaseServer,
        *,
        guard: TenantGuard | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry
        self._server = server
        self._guard = guard or TenantGuard()
        self._settings = settings or get_settings()

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            timeout_s=float(self._settings.migration_timeout_s),
            max_attempts=self._settings.migration_max_attempts,
            backoff_ms=self._settings.migration_backoff_ms,
        )

    async def migrate_fleet(
        self,
        target_revision: str,
        tenant_filter: TenantFilter | None = None,
        *,
        cancel: CancellationToken | None = None,
        concurrency: int | None = None,
    ) -> MigrationRun:
        # Unknown targets fail before any tenant is touched.
        target = resolve_revision(target_revision)
        tenant_filter = tenant_filter or TenantFilter()
        records = await self._registry.list(tenant_filter)
        run = MigrationRun(
            run_id=uuid4().hex,
            target_revision=target,
            started_at=utc_now(),
            tenant_filter=tenant_filter,
        )
        workers = max(1, concurrency or self._settings.migration_concurrency)
        logger.info(
            "migration_run_started run=%s target=%s tenants=%s workers=%s",
            run.run_id,
            target,
            len(records),
            workers,
        )
        set_gauge("migration_run_tenants", len(records))

        async def _unit(record: TenantRecord) -> TenantOutcome:
            return await self._migrate_tenant(record, target)

        def _on_error(record: TenantRecord, exc: Exception) -> TenantOutcome:
            return _error_outcome(record.tenant_id, exc, attempts=1, from_revision=record.last_migrated_version)

        def _on_cancelled(record: TenantRecord) -> TenantOutcome:
            return TenantOutcome(
                tenant_id=record.tenant_id,
                status=OUTCOME_CANCELLED,
                from_revision=record.last_migrated_version,
                to_revision=record.last_migrated_version,
            )

        run.outcomes = await fan_out(
            records,
            _unit,
            concurrency=workers,
            on_error=_on_error,
            on_cancelled=_on_cancelled,
            cancel=cancel,
        )
        run.completed_at = utc_now()
        await self._registry.save_migration_run(run)
        increment_counter("migration_runs_total")
        increment_counter("migration_tenants_failed_total", len(run.failed))
        logger.info(
            "migration_run_completed run=%s target=%s status=%s succeeded=%s failed=%s",
            run.run_id,
            target,
            run.status,
            len(run.succeeded),
            len(run.failed),
        )
        return run

    async def _migrate_tenant(self, record: TenantRecord, target: str) -> TenantOutcome:
        tenant_id = record.tenant_id
        started = time.monotonic()
        async with self._guard.hold(tenant_id, "migrate"):
            # Re-read under the lock; the tenant may have been suspended since enumeration.
            current = await self._registry.get(tenant_id)
            if current is None or current.lifecycle_state != LifecycleState.ACTIVE:
                state = current.lifecycle_state.value if current is not None else "missing"
                logger.info("migration_tenant_skipped tenant=%s state=%s", tenant_id, state)
                return TenantOutcome(
                    tenant_id=tenant_id,
                    status=OUTCOME_SKIPPED,
                    from_revision=record.last_migrated_version,
                    to_revision=record.last_migrated_version,
                    error_message=f"tenant is {state}",
                )

            outcome = await attempt_with_retry(
                lambda: upgrade_database(self._server, current.database_locator, target),
                policy=self.retry_policy,
                label=f"migrate:{tenant_id}",
            )
            record_operation(
                operation="migrate",
                tenant_id=tenant_id,
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=outcome.ok,
            )
            if outcome.error is not None:
                logger.error(
                    "migration_tenant_failed tenant=%s target=%s attempts=%s error=%s",
                    tenant_id,
                    target,
                    outcome.attempts,
                    outcome.error,
                )
                return _error_outcome(
                    tenant_id,
                    outcome.error,
                    attempts=outcome.attempts,
                    from_revision=current.last_migrated_version,
                )

            before, after = outcome.value or (None, None)
            status = OUTCOME_UP_TO_DATE if before == after else OUTCOME_SUCCEEDED
            await self._record_version(tenant_id, after)
            logger.info(
                "migration_tenant_done tenant=%s status=%s from=%s to=%s attempts=%s",
                tenant_id,
                status,
                before,
                after,
                outcome.attempts,
            )
            return TenantOutcome(
                tenant_id=tenant_id,
                status=status,
                attempts=outcome.attempts,
                from_revision=before,
                to_revision=after,
            )

    async def _record_version(self, tenant_id: str, revision: str | None) -> None:
        try:
            await self._registry.conditional_update(
                tenant_id,
                expected_state=_VERSION_ADVANCE_STATES,
                fields={"last_migrated_version": revision},
            )
        except StateConflict:
            # Restoring or deactivated tenants keep their recorded version; the DDL is still logged.
            logger.warning("migration_version_not_recorded tenant=%s revision=%s", tenant_id, revision)

    async def current_revision(self, tenant_id: str) -> str | None:
        record = await self._registry.get(tenant_id)
        if record is None:
            raise UnknownTenant(tenant_id)
        return await current_revision_at(self._server, record.database_locator)

    # Single-tenant variant used by operators to retry one failed tenant
    async def migrate_tenant(self, tenant_id: str, target_revision: str) -> TenantOutcome:
        record = await self._registry.get(tenant_id)
        if record is None:
            raise UnknownTenant(tenant_id)
        target = resolve_revision(target_revision)
        try:
            return await self._migrate_tenant(record, target)
        except TenantFleetError as exc:
            return _error_outcome(tenant_id, exc, attempts=1, from_revision=record.last_migrated_version)
