from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from tenantfleet.core.errors import (
    InvalidStateTransition,
    LocatorCollision,
    StateConflict,
    TenantAlreadyExists,
    UnknownTenant,
)
from tenantfleet.domain.lifecycle import LifecycleState
from tenantfleet.domain.records import (
    OUTCOME_FAILED,
    OUTCOME_SUCCEEDED,
    BackupRecord,
    MigrationRun,
    TenantFilter,
    TenantOutcome,
)
from tenantfleet.services.registry import utc_now
from tenantfleet.tests.utils.records import make_limits, make_record


@pytest.mark.asyncio
async def test_create_and_get_round_trip(registry) -> None:
    created = await registry.create(make_record("acme", plan="growth", limits=make_limits(pool_size=4)))
    fetched = await registry.get("acme")
    assert fetched == created
    assert fetched.lifecycle_state == LifecycleState.ACTIVE
    assert fetched.resource_limits.pool_size == 4
    assert fetched.plan == "growth"
    assert await registry.get("missing") is None


@pytest.mark.asyncio
async def test_create_rejects_duplicate_tenant(registry) -> None:
    await registry.create(make_record("acme"))
    with pytest.raises(TenantAlreadyExists):
        await registry.create(make_record("acme", database="tenant_other"))


@pytest.mark.asyncio
async def test_locator_is_never_reused(registry) -> None:
    await registry.create(make_record("acme", database="tenant_shared"))
    await registry.conditional_update(
        "acme", expected_state=LifecycleState.ACTIVE, new_state=LifecycleState.DEACTIVATED
    )
    # Deactivated tenants still own their locator.
    with pytest.raises(LocatorCollision):
        await registry.create(make_record("globex", database="tenant_shared"))
    assert await registry.locator_taken("localhost:0/tenant_shared")


@pytest.mark.asyncio
async def test_list_filters_by_state_ids_and_plan(registry) -> None:
    await registry.create(make_record("a", plan="free"))
    await registry.create(make_record("b", plan="growth"))
    await registry.create(make_record("c", plan="growth", state=LifecycleState.SUSPENDED))

    active = await registry.list(TenantFilter())
    assert [item.tenant_id for item in active] == ["a", "b"]

    growth = await registry.list(TenantFilter(plans=frozenset({"growth"})))
    assert [item.tenant_id for item in growth] == ["b"]

    picked = await registry.list(
        TenantFilter(tenant_ids=frozenset({"a", "c"}), states=frozenset(LifecycleState))
    )
    assert [item.tenant_id for item in picked] == ["a", "c"]
    assert len(await registry.list()) == 3


@pytest.mark.asyncio
async def test_conditional_update_applies_when_state_matches(registry) -> None:
    await registry.create(make_record("acme"))
    updated = await registry.conditional_update(
        "acme",
        expected_state=LifecycleState.ACTIVE,
        new_state=LifecycleState.SUSPENDED,
        fields={"plan": "enterprise"},
    )
    assert updated.lifecycle_state == LifecycleState.SUSPENDED
    assert updated.plan == "enterprise"
    assert updated.updated_at >= updated.created_at


@pytest.mark.asyncio
async def test_conditional_update_conflict_leaves_record_untouched(registry) -> None:
    await registry.create(make_record("acme", state=LifecycleState.SUSPENDED))
    with pytest.raises(StateConflict):
        await registry.conditional_update(
            "acme",
            expected_state=LifecycleState.ACTIVE,
            new_state=LifecycleState.RESTORING,
        )
    record = await registry.get("acme")
    assert record.lifecycle_state == LifecycleState.SUSPENDED


@pytest.mark.asyncio
async def test_conditional_update_validates_before_writing(registry) -> None:
    await registry.create(make_record("acme"))
    with pytest.raises(UnknownTenant):
        await registry.conditional_update("ghost", expected_state=LifecycleState.ACTIVE, fields={"plan": "x"})
    with pytest.raises(InvalidStateTransition):
        await registry.conditional_update(
            "acme", expected_state=LifecycleState.ACTIVE, new_state=LifecycleState.RESTORE_FAILED
        )
    with pytest.raises(ValueError):
        await registry.conditional_update(
            "acme", expected_state=LifecycleState.ACTIVE, fields={"tenant_id": "renamed"}
        )


@pytest.mark.asyncio
async def test_concurrent_compare_and_swap_has_single_winner(registry) -> None:
    await registry.create(make_record("acme"))

    async def _attempt(target: LifecycleState):
        return await registry.conditional_update(
            "acme", expected_state=LifecycleState.ACTIVE, new_state=target
        )

    results = await asyncio.gather(
        _attempt(LifecycleState.SUSPENDED),
        _attempt(LifecycleState.RESTORING),
        return_exceptions=True,
    )
    winners = [item for item in results if not isinstance(item, Exception)]
    losers = [item for item in results if isinstance(item, StateConflict)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert (await registry.get("acme")).lifecycle_state == winners[0].lifecycle_state


@pytest.mark.asyncio
async def test_backups_listed_newest_first(registry) -> None:
    await registry.create(make_record("acme"))
    now = utc_now()
    for offset, backup_id in enumerate(["old", "mid", "new"]):
        await registry.add_backup(
            BackupRecord(
                backup_id=backup_id,
                tenant_id="acme",
                storage_locator=f"acme/{backup_id}.snap",
                taken_at=now - timedelta(days=3 - offset),
                size_bytes=10,
                checksum="0" * 64,
            )
        )
    listed = await registry.list_backups("acme")
    assert [item.backup_id for item in listed] == ["new", "mid", "old"]
    await registry.delete_backup("mid")
    assert await registry.get_backup("mid") is None
    assert (await registry.get_backup("new")).storage_locator == "acme/new.snap"


@pytest.mark.asyncio
async def test_migration_run_persisted_with_ordered_outcomes(registry) -> None:
    run = MigrationRun(
        run_id="run-1",
        target_revision="0002_invoices",
        started_at=utc_now(),
        outcomes=[
            TenantOutcome("b", OUTCOME_FAILED, attempts=1, error_code="OperationalError"),
            TenantOutcome("a", OUTCOME_SUCCEEDED, attempts=2, from_revision="0001_core_ledger"),
        ],
        tenant_filter=TenantFilter(),
    )
    run.completed_at = utc_now()
    await registry.save_migration_run(run)
    # Saving again replaces outcomes rather than duplicating them.
    await registry.save_migration_run(run)

    loaded = await registry.get_migration_run("run-1")
    assert [item.tenant_id for item in loaded.outcomes] == ["b", "a"]
    assert loaded.outcomes[1].attempts == 2
    assert loaded.status == "partial"
    assert await registry.get_migration_run("missing") is None


@pytest.mark.asyncio
async def test_provisioning_job_ledger(registry) -> None:
    job_id = await registry.start_provisioning_job("acme", "0001_core_ledger")
    await registry.update_provisioning_job(job_id, steps_completed=["allocate_locator"])
    await registry.update_provisioning_job(job_id, status="failed", failed_step="create_database")
    job = await registry.get_provisioning_job(job_id)
    assert job.status == "failed"
    assert job.failed_step == "create_database"
    assert job.steps_completed == ["allocate_locator"]
    assert job.completed_at is not None
