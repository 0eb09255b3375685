from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import text

from tenantfleet.core.errors import ConnectionClosed, PoolExhausted, TenantSuspended, UnknownTenant
from tenantfleet.domain.lifecycle import LifecycleState
from tenantfleet.services.router import ConnectionRouter
from tenantfleet.tests.utils.records import make_limits, make_record


async def _register(registry, server, tenant_id: str, **kwargs):
    record = make_record(tenant_id, **kwargs)
    await server.create_database(record.database_locator)
    return await registry.create(record)


class CountingFactory:
    def __init__(self, server) -> None:
        self._server = server
        self.calls: list[str] = []

    def __call__(self, locator, limits):
        self.calls.append(locator.database)
        return self._server.create_pool_engine(locator, limits)


@pytest.mark.asyncio
async def test_resolve_returns_live_connection(registry, server) -> None:
    await _register(registry, server, "acme")
    router = ConnectionRouter(registry, server)
    try:
        async with router.connect("acme") as conn:
            assert (await conn.execute(text("SELECT 1"))).scalar_one() == 1
        lease = await router.resolve("acme")
        async with lease as conn:
            assert (await conn.execute(text("SELECT 2"))).scalar_one() == 2
        assert router.pool_for("acme").in_flight == 0
    finally:
        await router.close()


@pytest.mark.asyncio
async def test_resolve_rejects_unknown_and_unroutable_tenants(registry, server) -> None:
    await _register(registry, server, "paused", state=LifecycleState.SUSPENDED)
    await _register(registry, server, "restoring", state=LifecycleState.RESTORING)
    router = ConnectionRouter(registry, server)
    with pytest.raises(UnknownTenant):
        await router.resolve("ghost")
    with pytest.raises(TenantSuspended) as excinfo:
        await router.resolve("paused")
    assert excinfo.value.state == "suspended"
    with pytest.raises(TenantSuspended):
        await router.resolve("restoring")
    assert router.stats() == {}


@pytest.mark.asyncio
async def test_concurrent_first_use_creates_one_pool(registry, server) -> None:
    await _register(registry, server, "acme", limits=make_limits(pool_size=5, max_connections=5))
    factory = CountingFactory(server)
    router = ConnectionRouter(registry, server, engine_factory=factory)
    try:
        leases = await asyncio.gather(*(router.resolve("acme") for _ in range(5)))
        assert factory.calls == ["tenant_acme"]
        assert {id(lease.pool) for lease in leases} == {id(router.pool_for("acme"))}
        for lease in leases:
            await lease.release()
    finally:
        await router.close()


@pytest.mark.asyncio
async def test_tenants_never_share_pools(registry, server) -> None:
    await _register(registry, server, "a")
    await _register(registry, server, "b")
    router = ConnectionRouter(registry, server)
    try:
        lease_a, lease_b = await asyncio.gather(router.resolve("a"), router.resolve("b"))
        assert lease_a.pool is not lease_b.pool
        assert lease_a.pool.engine is not lease_b.pool.engine
        await lease_a.release()
        await lease_b.release()
    finally:
        await router.close()


@pytest.mark.asyncio
async def test_saturated_pool_raises_without_blocking_other_tenants(registry, server) -> None:
    tight = make_limits(pool_size=1, max_overflow=0, max_connections=1, pool_timeout_s=0.05)
    await _register(registry, server, "busy", limits=tight)
    await _register(registry, server, "calm")
    router = ConnectionRouter(registry, server)
    try:
        held = await router.resolve("busy")
        with pytest.raises(PoolExhausted):
            await router.resolve("busy")
        # Another tenant is unaffected by the saturated pool.
        other = await asyncio.wait_for(router.resolve("calm"), timeout=1.0)
        await other.release()
        await held.release()
        again = await router.resolve("busy")
        await again.release()
    finally:
        await router.close()


@pytest.mark.asyncio
async def test_evict_force_closes_outstanding_leases(registry, server) -> None:
    await _register(registry, server, "acme")
    factory = CountingFactory(server)
    router = ConnectionRouter(registry, server, engine_factory=factory)
    lease = await router.resolve("acme")
    assert await router.evict("acme", grace_s=0.01)
    assert lease.closed
    with pytest.raises(ConnectionClosed):
        _ = lease.connection
    with pytest.raises(ConnectionClosed):
        await lease.execute(text("SELECT 1"))
    # Releasing after eviction is a no-op.
    await lease.release()
    assert router.pool_for("acme") is None

    async with router.connect("acme") as conn:
        assert (await conn.execute(text("SELECT 1"))).scalar_one() == 1
    assert len(factory.calls) == 2
    await router.close()


@pytest.mark.asyncio
async def test_evict_waits_for_in_flight_work_to_drain(registry, server) -> None:
    await _register(registry, server, "acme")
    router = ConnectionRouter(registry, server)
    lease = await router.resolve("acme")
    eviction = asyncio.create_task(router.evict("acme", grace_s=2.0))
    await asyncio.sleep(0.05)
    assert not eviction.done()
    await lease.release()
    assert await asyncio.wait_for(eviction, timeout=1.0)
    assert not lease.closed
    assert await router.evict("acme") is False


@pytest.mark.asyncio
async def test_idle_eviction_respects_window_and_refcount(registry, server) -> None:
    await _register(registry, server, "idle", limits=make_limits(idle_timeout_s=10))
    await _register(registry, server, "working", limits=make_limits(idle_timeout_s=10))
    now = {"t": 0.0}
    router = ConnectionRouter(registry, server, time_source=lambda: now["t"])
    try:
        lease = await router.resolve("idle")
        await lease.release()
        working = await router.resolve("working")

        now["t"] = 5.0
        assert await router.evict_idle() == []

        now["t"] = 11.0
        assert await router.evict_idle() == ["idle"]
        assert router.pool_for("idle") is None
        # A pool with a checkout in flight is never idle.
        assert router.pool_for("working") is not None
        assert router.stats()["working"]["in_flight"] == 1
        await working.release()

        now["t"] = 30.0
        assert await router.evict_idle() == ["working"]

        # Eviction is not a ban: the next resolve builds a fresh pool.
        async with router.connect("idle") as conn:
            assert (await conn.execute(text("SELECT 1"))).scalar_one() == 1
        assert router.pool_for("idle") is not None
    finally:
        await router.close()


@pytest.mark.asyncio
async def test_sweeper_start_stop(registry, server) -> None:
    router = ConnectionRouter(registry, server)
    router.start()
    router.start()
    await router.stop()
    await router.stop()


class HookedRegistry:
    # Runs ``after_next_read`` once, between the registry read and the caller continuing.
    def __init__(self, inner) -> None:
        self._inner = inner
        self.after_next_read = None

    async def get(self, tenant_id: str):
        record = await self._inner.get(tenant_id)
        hook, self.after_next_read = self.after_next_read, None
        if hook is not None:
            await hook()
        return record


@pytest.mark.asyncio
async def test_restore_starting_mid_resolve_denies_the_lease(registry, server) -> None:
    await _register(registry, server, "acme")
    hooked = HookedRegistry(registry)
    router = ConnectionRouter(hooked, server)

    async def begin_restore() -> None:
        await registry.conditional_update(
            "acme", expected_state=LifecycleState.ACTIVE, new_state=LifecycleState.RESTORING
        )
        # No pool exists yet, so this eviction has nothing to close.
        assert await router.evict("acme", grace_s=0) is False

    hooked.after_next_read = begin_restore
    try:
        with pytest.raises(TenantSuspended) as excinfo:
            await router.resolve("acme")
        assert excinfo.value.state == "restoring"
        assert router.pool_for("acme") is None
    finally:
        await router.close()


@pytest.mark.asyncio
async def test_suspension_after_second_read_is_closed_by_eviction(registry, server) -> None:
    await _register(registry, server, "acme")
    router = ConnectionRouter(registry, server)
    lease = await router.resolve("acme")
    await registry.conditional_update(
        "acme", expected_state=LifecycleState.ACTIVE, new_state=LifecycleState.SUSPENDED
    )
    assert await router.evict("acme", grace_s=0)
    assert lease.closed
    with pytest.raises(TenantSuspended):
        await router.resolve("acme")
