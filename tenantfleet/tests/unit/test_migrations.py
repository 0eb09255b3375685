from __future__ import annotations

import pytest
from sqlalchemy import text

from tenantfleet.core.errors import MigrationPartialFailure, UnknownRevision, UnknownTenant
from tenantfleet.domain.lifecycle import LifecycleState
from tenantfleet.domain.records import (
    OUTCOME_CANCELLED,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCEEDED,
    OUTCOME_UP_TO_DATE,
    TenantFilter,
)
from tenantfleet.persistence.tenant_schema import current_revision_at
from tenantfleet.services import migrations as migrations_module
from tenantfleet.services import telemetry
from tenantfleet.services.migrations import MigrationOrchestrator
from tenantfleet.services.provisioning import Provisioner
from tenantfleet.services.resilience import CancellationToken


BASELINE = "0001_core_ledger"
INVOICES = "0002_invoices"
HEAD = "0003_invoice_due_dates"


async def _provision(registry, server, *tenant_ids: str) -> None:
    provisioner = Provisioner(registry, server)
    for tenant_id in tenant_ids:
        await provisioner.provision(tenant_id, BASELINE)


async def _revision(registry, server, tenant_id: str) -> str | None:
    record = await registry.get(tenant_id)
    return await current_revision_at(server, record.database_locator)


async def _suspend(registry, tenant_id: str) -> None:
    await registry.conditional_update(
        tenant_id, expected_state=LifecycleState.ACTIVE, new_state=LifecycleState.SUSPENDED
    )


@pytest.mark.asyncio
async def test_failure_on_one_tenant_does_not_block_others(registry, server) -> None:
    await _provision(registry, server, "a", "b")
    b = await registry.get("b")
    # A hand-made table collides with the next revision on tenant b only.
    async with server.admin_engine(b.database_locator) as engine:
        async with engine.begin() as conn:
            await conn.execute(text("CREATE TABLE invoices (id INTEGER PRIMARY KEY)"))

    run = await MigrationOrchestrator(registry, server).migrate_fleet(INVOICES)

    assert run.succeeded == ["a"]
    assert run.failed == ["b"]
    assert run.status == "partial"
    failed = run.outcome_for("b")
    assert failed.status == OUTCOME_FAILED
    assert failed.attempts == 1
    assert failed.error_code == "OperationalError"
    assert failed.to_revision == BASELINE

    assert await _revision(registry, server, "a") == INVOICES
    assert await _revision(registry, server, "b") == BASELINE
    assert (await registry.get("a")).last_migrated_version == INVOICES
    assert (await registry.get("b")).last_migrated_version == BASELINE

    with pytest.raises(MigrationPartialFailure) as excinfo:
        run.raise_for_failures()
    assert excinfo.value.failed_tenants == ["b"]

    stored = await registry.get_migration_run(run.run_id)
    assert stored.target_revision == INVOICES
    assert [item.status for item in stored.outcomes] == [OUTCOME_SUCCEEDED, OUTCOME_FAILED]
    assert telemetry.get_counter("migration_tenants_failed_total") == 1
    assert telemetry.get_gauge("migration_run_tenants") == 2


@pytest.mark.asyncio
async def test_rerun_reports_up_to_date(registry, server) -> None:
    await _provision(registry, server, "a")
    orchestrator = MigrationOrchestrator(registry, server)
    first = await orchestrator.migrate_fleet(INVOICES)
    assert first.outcome_for("a").status == OUTCOME_SUCCEEDED

    second = await orchestrator.migrate_fleet(INVOICES)
    outcome = second.outcome_for("a")
    assert outcome.status == OUTCOME_UP_TO_DATE
    assert outcome.from_revision == outcome.to_revision == INVOICES
    assert second.status == "succeeded"

    # Older targets are never downgraded.
    older = await orchestrator.migrate_fleet(BASELINE)
    assert older.outcome_for("a").status == OUTCOME_UP_TO_DATE
    assert await _revision(registry, server, "a") == INVOICES


@pytest.mark.asyncio
async def test_head_resolves_to_latest_revision(registry, server) -> None:
    await _provision(registry, server, "a")
    run = await MigrationOrchestrator(registry, server).migrate_fleet("head")
    assert run.target_revision == HEAD
    assert run.outcome_for("a").to_revision == HEAD
    assert await _revision(registry, server, "a") == HEAD


@pytest.mark.asyncio
async def test_unknown_revision_touches_nothing(registry, server) -> None:
    await _provision(registry, server, "a")
    with pytest.raises(UnknownRevision):
        await MigrationOrchestrator(registry, server).migrate_fleet("0042_missing")
    assert await _revision(registry, server, "a") == BASELINE


@pytest.mark.asyncio
async def test_suspended_tenants_are_not_enumerated(registry, server) -> None:
    await _provision(registry, server, "a", "b")
    await _suspend(registry, "b")
    run = await MigrationOrchestrator(registry, server).migrate_fleet(INVOICES)
    assert [item.tenant_id for item in run.outcomes] == ["a"]
    assert await _revision(registry, server, "b") == BASELINE


@pytest.mark.asyncio
async def test_filter_narrows_fleet(registry, server) -> None:
    await _provision(registry, server, "a", "b", "c")
    run = await MigrationOrchestrator(registry, server).migrate_fleet(
        INVOICES, TenantFilter(tenant_ids=frozenset({"a", "c"}))
    )
    assert [item.tenant_id for item in run.outcomes] == ["a", "c"]
    assert await _revision(registry, server, "b") == BASELINE


@pytest.mark.asyncio
async def test_tenant_suspended_mid_run_is_skipped(registry, server, monkeypatch) -> None:
    await _provision(registry, server, "a", "b")
    original = migrations_module.upgrade_database

    async def upgrade_and_suspend_b(srv, locator, revision):
        result = await original(srv, locator, revision)
        if (await registry.get("b")).lifecycle_state == LifecycleState.ACTIVE:
            await _suspend(registry, "b")
        return result

    monkeypatch.setattr(migrations_module, "upgrade_database", upgrade_and_suspend_b)
    run = await MigrationOrchestrator(registry, server).migrate_fleet(INVOICES, concurrency=1)

    assert run.outcome_for("a").status == OUTCOME_SUCCEEDED
    skipped = run.outcome_for("b")
    assert skipped.status == OUTCOME_SKIPPED
    assert skipped.error_message == "tenant is suspended"
    assert run.failed == ["b"]
    assert await _revision(registry, server, "b") == BASELINE


@pytest.mark.asyncio
async def test_version_recorded_when_suspended_during_upgrade(registry, server, monkeypatch) -> None:
    await _provision(registry, server, "a")
    original = migrations_module.upgrade_database

    async def upgrade_then_suspend(srv, locator, revision):
        result = await original(srv, locator, revision)
        await _suspend(registry, "a")
        return result

    monkeypatch.setattr(migrations_module, "upgrade_database", upgrade_then_suspend)
    run = await MigrationOrchestrator(registry, server).migrate_fleet(INVOICES)

    assert run.outcome_for("a").status == OUTCOME_SUCCEEDED
    record = await registry.get("a")
    assert record.lifecycle_state == LifecycleState.SUSPENDED
    assert record.last_migrated_version == INVOICES


@pytest.mark.asyncio
async def test_cancellation_leaves_unstarted_tenants_untouched(registry, server, monkeypatch) -> None:
    await _provision(registry, server, "a", "b", "c")
    cancel = CancellationToken()
    original = migrations_module.upgrade_database

    async def upgrade_then_cancel(srv, locator, revision):
        result = await original(srv, locator, revision)
        cancel.cancel("operator interrupt")
        return result

    monkeypatch.setattr(migrations_module, "upgrade_database", upgrade_then_cancel)
    run = await MigrationOrchestrator(registry, server).migrate_fleet(INVOICES, cancel=cancel, concurrency=1)

    assert run.status == "cancelled"
    assert run.outcome_for("a").status == OUTCOME_SUCCEEDED
    assert run.outcome_for("b").status == OUTCOME_CANCELLED
    assert run.outcome_for("c").status == OUTCOME_CANCELLED
    assert await _revision(registry, server, "b") == BASELINE
    assert (await registry.get_migration_run(run.run_id)).status == "cancelled"


@pytest.mark.asyncio
async def test_transient_failure_is_retried(registry, server, monkeypatch) -> None:
    await _provision(registry, server, "a")
    original = migrations_module.upgrade_database
    calls = {"count": 0}

    async def flaky_upgrade(srv, locator, revision):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConnectionResetError("connection reset by peer")
        return await original(srv, locator, revision)

    monkeypatch.setattr(migrations_module, "upgrade_database", flaky_upgrade)
    run = await MigrationOrchestrator(registry, server).migrate_fleet(INVOICES)
    outcome = run.outcome_for("a")
    assert outcome.status == OUTCOME_SUCCEEDED
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_single_tenant_migration_and_revision_lookup(registry, server) -> None:
    await _provision(registry, server, "a")
    orchestrator = MigrationOrchestrator(registry, server)
    assert await orchestrator.current_revision("a") == BASELINE

    outcome = await orchestrator.migrate_tenant("a", HEAD)
    assert outcome.status == OUTCOME_SUCCEEDED
    assert outcome.from_revision == BASELINE
    assert await orchestrator.current_revision("a") == HEAD

    with pytest.raises(UnknownTenant):
        await orchestrator.migrate_tenant("ghost", HEAD)


@pytest.mark.asyncio
async def test_parallel_workers_migrate_every_tenant(registry, server) -> None:
    tenants = ("a", "b", "c", "d")
    await _provision(registry, server, *tenants)
    run = await MigrationOrchestrator(registry, server).migrate_fleet(HEAD, concurrency=4)

    assert run.status == "succeeded"
    assert run.succeeded == list(tenants)
    for tenant_id in tenants:
        assert await _revision(registry, server, tenant_id) == HEAD
        assert (await registry.get(tenant_id)).last_migrated_version == HEAD
