from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from sqlalchemy import Integer, String, column, insert, select, table

from tenantfleet.core.config import Settings, get_settings, split_csv
from tenantfleet.core.errors import (
    LocatorCollision,
    OperationCancelled,
    ProvisioningFailed,
    TenantAlreadyExists,
)
from tenantfleet.domain.lifecycle import LifecycleState
from tenantfleet.domain.records import DatabaseLocator, ResourceLimits, TenantRecord
from tenantfleet.persistence.servers import TenantDatabaseServer
from tenantfleet.persistence.tenant_schema import (
    current_revision_at,
    resolve_revision,
    revision_reached,
    upgrade_database,
)
from tenantfleet.services.registry import RegistryStore, utc_now
from tenantfleet.services.resilience import (
    CancellationToken,
    RetryPolicy,
    TenantGuard,
    attempt_with_retry,
)
from tenantfleet.services.telemetry import increment_counter, record_operation


logger = logging.getLogger(__name__)

STEP_ALLOCATE_LOCATOR = "allocate_locator"
STEP_CREATE_DATABASE = "create_database"
STEP_CREATE_SCHEMAS = "create_schemas"
STEP_APPLY_BASELINE = "apply_baseline"
STEP_SEED_REFERENCE_DATA = "seed_reference_data"
STEP_REGISTER = "register"

PROVISIONING_STEPS = (
    STEP_ALLOCATE_LOCATOR,
    STEP_CREATE_DATABASE,
    STEP_CREATE_SCHEMAS,
    STEP_APPLY_BASELINE,
    STEP_SEED_REFERENCE_DATA,
    STEP_REGISTER,
)

# Default reference currencies (ISO 4217 code, name, minor units).
DEFAULT_CURRENCIES = (
    ("USD", "US Dollar", 2),
    ("EUR", "Euro", 2),
    ("GBP", "Pound Sterling", 2),
    ("JPY", "Yen", 0),
    ("CHF", "Swiss Franc", 2),
)

_currencies = table(
    "currencies",
    column("code", String),
    column("name", String),
    column("minor_units", Integer),
)

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_MAX_SUFFIX = 1000


def database_name_for(tenant_id: str, *, prefix: str, max_length: int, suffix: int = 0) -> str:
    # Deterministic database name: <prefix><slug>_<hash8>[_<suffix>].
    digest = hashlib.sha256(tenant_id.encode("utf-8")).hexdigest()[:8]
    tail = f"_{digest}" + (f"_{suffix}" if suffix else "")
    slug = _SLUG_RE.sub("_", tenant_id.lower()).strip("_") or "tenant"
    room = max(1, max_length - len(prefix) - len(tail))
    return f"{prefix}{slug[:room].rstrip('_') or 't'}{tail}"


@dataclass
class _ProvisionContext:
    tenant_id: str
    baseline_revision: str
    limits: ResourceLimits
    plan: str | None
    locator: DatabaseLocator | None = None
    record: TenantRecord | None = None
    schema_revision: str | None = None
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def last_step(self) -> str | None:
        done = [step for step in PROVISIONING_STEPS if step in self.completed or step in self.skipped]
        return done[-1] if done else None

    @property
    def bound_locator(self) -> DatabaseLocator:
        if self.locator is None:
            raise RuntimeError(f"no database locator allocated for tenant {self.tenant_id!r}")
        return self.locator


class Provisioner:
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
        self._steps: dict[str, Callable[[_ProvisionContext], Awaitable[bool]]] = {
            STEP_ALLOCATE_LOCATOR: self._allocate_locator,
            STEP_CREATE_DATABASE: self._create_database,
            STEP_CREATE_SCHEMAS: self._create_schemas,
            STEP_APPLY_BASELINE: self._apply_baseline,
            STEP_SEED_REFERENCE_DATA: self._seed_reference_data,
            STEP_REGISTER: self._register,
        }

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            timeout_s=float(self._settings.provision_step_timeout_s),
            max_attempts=self._settings.provision_max_attempts,
            backoff_ms=self._settings.provision_backoff_ms,
        )

    async def provision(
        self,
        tenant_id: str,
        baseline_revision: str,
        *,
        limits: ResourceLimits | None = None,
        plan: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> TenantRecord:
        if not tenant_id or not tenant_id.strip():
            raise ValueError("tenant_id must be a non-empty string")
        existing = await self._registry.get(tenant_id)
        if existing is not None:
            return existing
        baseline = resolve_revision(baseline_revision)

        async with self._guard.hold(tenant_id, "provision"):
            # A concurrent provision for the same tenant may have finished while we waited.
            existing = await self._registry.get(tenant_id)
            if existing is not None:
                logger.info("provision_already_registered tenant=%s", tenant_id)
                return existing

            ctx = _ProvisionContext(
                tenant_id=tenant_id,
                baseline_revision=baseline,
                limits=limits or ResourceLimits.defaults(self._settings),
                plan=plan,
            )
            job_id = await self._registry.start_provisioning_job(tenant_id, baseline)
            started = time.monotonic()
            logger.info("provision_started tenant=%s baseline=%s job=%s", tenant_id, baseline, job_id)
            try:
                await self._run_steps(job_id, ctx, cancel)
            except OperationCancelled as exc:
                await self._registry.update_provisioning_job(job_id, status="cancelled", error_message=exc.message)
                self._record(tenant_id, started, success=False)
                logger.warning("provision_cancelled tenant=%s checkpoint=%s", tenant_id, exc.checkpoint)
                raise
            except ProvisioningFailed as exc:
                await self._registry.update_provisioning_job(
                    job_id,
                    status="failed",
                    failed_step=exc.step,
                    error_message=str(exc.cause or exc)[:2000],
                )
                increment_counter("provisioning_failed_total")
                self._record(tenant_id, started, success=False)
                logger.error("provision_failed tenant=%s step=%s error=%s", tenant_id, exc.step, exc.cause)
                raise

            await self._registry.update_provisioning_job(job_id, status="completed")
            increment_counter("provisioning_completed_total")
            self._record(tenant_id, started, success=True)
            logger.info(
                "provision_completed tenant=%s locator=%s skipped=%s",
                tenant_id,
                ctx.locator,
                ",".join(ctx.skipped) or "-",
            )
            if ctx.record is None:
                raise ProvisioningFailed(tenant_id, STEP_REGISTER)
            return ctx.record

    async def _run_steps(self, job_id: str, ctx: _ProvisionContext, cancel: CancellationToken | None) -> None:
        policy = self.retry_policy
        for step in PROVISIONING_STEPS:
            if cancel is not None:
                cancel.raise_if_cancelled(tenant_id=ctx.tenant_id, checkpoint=ctx.last_step)
            run_step = self._steps[step]
            outcome = await attempt_with_retry(
                lambda: run_step(ctx),
                policy=policy,
                label=f"provision:{step}:{ctx.tenant_id}",
            )
            if not outcome.ok:
                raise ProvisioningFailed(ctx.tenant_id, step, outcome.error) from outcome.error
            if outcome.value:
                ctx.completed.append(step)
            else:
                ctx.skipped.append(step)
            await self._registry.update_provisioning_job(
                job_id,
                steps_completed=list(ctx.completed),
                steps_skipped=list(ctx.skipped),
                database_locator=str(ctx.locator) if ctx.locator else None,
            )
            logger.debug(
                "provision_step tenant=%s step=%s did_work=%s attempts=%s",
                ctx.tenant_id,
                step,
                outcome.value,
                outcome.attempts,
            )

    # Each step returns True when it changed something and False when it found the work done.

    async def _allocate_locator(self, ctx: _ProvisionContext) -> bool:
        if ctx.locator is not None:
            return False
        for suffix in range(_MAX_SUFFIX):
            name = database_name_for(
                ctx.tenant_id,
                prefix=self._settings.tenant_db_name_prefix,
                max_length=self._settings.tenant_db_name_max_length,
                suffix=suffix,
            )
            locator = self._server.allocate_locator(name)
            if not await self._registry.locator_taken(str(locator)):
                ctx.locator = locator
                return True
            logger.warning("locator_collision tenant=%s locator=%s", ctx.tenant_id, locator)
        raise LocatorCollision(f"no free database name for tenant {ctx.tenant_id!r}", tenant_id=ctx.tenant_id)

    async def _create_database(self, ctx: _ProvisionContext) -> bool:
        locator = ctx.bound_locator
        if await self._server.database_exists(locator):
            return False
        await self._server.create_database(locator)
        return True

    async def _create_schemas(self, ctx: _ProvisionContext) -> bool:
        created = await self._server.prepare_database(
            ctx.bound_locator,
            schemas=split_csv(self._settings.tenant_schemas),
            extensions=split_csv(self._settings.tenant_extensions),
        )
        return bool(created)

    async def _apply_baseline(self, ctx: _ProvisionContext) -> bool:
        locator = ctx.bound_locator
        current = await current_revision_at(self._server, locator)
        if revision_reached(current, ctx.baseline_revision):
            # A database already past baseline registers the revision it actually carries.
            ctx.schema_revision = current
            return False
        _, ctx.schema_revision = await upgrade_database(self._server, locator, ctx.baseline_revision)
        return True

    async def _seed_reference_data(self, ctx: _ProvisionContext) -> bool:
        locator = ctx.bound_locator
        if not self._settings.tenant_seed_enabled:
            return False
        async with self._server.admin_engine(locator) as engine:
            async with engine.begin() as conn:
                present = set((await conn.execute(select(_currencies.c.code))).scalars().all())
                missing = [
                    {"code": code, "name": name, "minor_units": minor_units}
                    for code, name, minor_units in DEFAULT_CURRENCIES
                    if code not in present
                ]
                if missing:
                    await conn.execute(insert(_currencies), missing)
        return bool(missing)

    async def _register(self, ctx: _ProvisionContext) -> bool:
        now = utc_now()
        record = TenantRecord(
            tenant_id=ctx.tenant_id,
            database_locator=ctx.bound_locator,
            lifecycle_state=LifecycleState.ACTIVE,
            resource_limits=ctx.limits,
            created_at=now,
            updated_at=now,
            last_migrated_version=ctx.schema_revision or ctx.baseline_revision,
            plan=ctx.plan,
        )
        try:
            ctx.record = await self._registry.create(record)
        except TenantAlreadyExists:
            # Another process registered the tenant first; its record wins.
            existing = await self._registry.get(ctx.tenant_id)
            if existing is None:
                raise
            ctx.record = existing
            return False
        return True

    def _record(self, tenant_id: str, started: float, *, success: bool) -> None:
        record_operation(
            operation="provision",
            tenant_id=tenant_id,
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=success,
        )
