from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from sqlalchemy.exc import ResourceClosedError
from sqlalchemy.exc import TimeoutError as SqlPoolTimeout
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from tenantfleet.core.config import Settings, get_settings
from tenantfleet.core.errors import ConnectionClosed, PoolExhausted, TenantSuspended, UnknownTenant
from tenantfleet.domain.lifecycle import ROUTABLE_STATES
from tenantfleet.domain.records import DatabaseLocator, ResourceLimits, TenantRecord
from tenantfleet.persistence.servers import TenantDatabaseServer
from tenantfleet.services.registry import RegistryStore
from tenantfleet.services.resilience import KeyedLocks
from tenantfleet.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

EngineFactory = Callable[[DatabaseLocator, ResourceLimits], AsyncEngine]


class TenantPool:
    # Live pool handle for one tenant, owned by the router.

    def __init__(
        self,
        tenant_id: str,
        engine: AsyncEngine,
        limits: ResourceLimits,
        *,
        created_at: float,
    ) -> None:
        self.tenant_id = tenant_id
        self.engine = engine
        self.limits = limits
        self.created_at = created_at
        self.last_used = created_at
        self.in_flight = 0
        self.closed = False
        self.leases: set[TenantLease] = set()
        self._slots = asyncio.Semaphore(limits.connection_cap)
        self._drained = asyncio.Event()
        self._drained.set()

    def _enter(self) -> None:
        # Waiters count as in flight so idle eviction never races a pending checkout.
        self.in_flight += 1
        self._drained.clear()

    def _exit(self, now: float) -> None:
        self.in_flight -= 1
        self.last_used = now
        if self.in_flight == 0:
            self._drained.set()

    async def wait_drained(self, timeout_s: float) -> bool:
        if self.in_flight == 0:
            return True
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=timeout_s)
            return True
        except asyncio.TimeoutError:
            return False


class TenantLease:
    # A checked-out connection for one tenant; release it exactly once.

    def __init__(self, pool: TenantPool, connection: AsyncConnection, time_source: Callable[[], float]) -> None:
        self._pool = pool
        self._connection = connection
        self._time = time_source
        self._released = False
        self._closed = False

    @property
    def tenant_id(self) -> str:
        return self._pool.tenant_id

    @property
    def pool(self) -> TenantPool:
        return self._pool

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connection(self) -> AsyncConnection:
        if self._closed:
            raise ConnectionClosed(self.tenant_id)
        return self._connection

    async def execute(self, statement: Any, parameters: Any = None):
        try:
            return await self.connection.execute(statement, parameters)
        except ResourceClosedError as exc:
            raise ConnectionClosed(self.tenant_id) from exc

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            if not self._closed:
                await self._connection.close()
        finally:
            self._free_slot()

    async def _force_close(self) -> None:
        # Eviction path: fail the holder's next use and hand the slot back.
        self._closed = True
        if self._released:
            return
        self._released = True
        try:
            await self._connection.invalidate()
            await self._connection.close()
        except Exception as exc:  # noqa: BLE001 - connection may already be broken
            logger.warning("lease_force_close_failed tenant=%s", self.tenant_id, exc_info=exc)
        finally:
            self._free_slot()

    def _free_slot(self) -> None:
        self._pool.leases.discard(self)
        self._pool._slots.release()
        self._pool._exit(self._time())

    async def __aenter__(self) -> AsyncConnection:
        return self.connection

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.release()


class ConnectionRouter:
    def __init__(
        self,
        registry: RegistryStore,
        server: TenantDatabaseServer,
        *,
        settings: Settings | None = None,
        engine_factory: EngineFactory | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._registry = registry
        self._settings = settings or get_settings()
        self._engine_factory = engine_factory or server.create_pool_engine
        self._time = time_source or time.monotonic
        self._pools: dict[str, TenantPool] = {}
        self._creation_locks = KeyedLocks()
        self._sweeper: asyncio.Task[None] | None = None

    # Check out a connection from the tenant's pool, creating the pool on first use.
    async def resolve(self, tenant_id: str) -> TenantLease:
        record = await self._routable_record(tenant_id)
        pool = await self._get_or_create_pool(record)
        lease = await self._checkout(pool)
        # Suspend and restore write the state before evicting, so a lease taken
        # while that eviction ran is caught by reading the state again here.
        try:
            await self._routable_record(tenant_id)
        except BaseException as exc:
            await lease.release()
            if isinstance(exc, (UnknownTenant, TenantSuspended)):
                await self.evict(tenant_id, grace_s=0)
            raise
        return lease

    async def _routable_record(self, tenant_id: str) -> TenantRecord:
        record = await self._registry.get(tenant_id)
        if record is None:
            raise UnknownTenant(tenant_id)
        if record.lifecycle_state not in ROUTABLE_STATES:
            increment_counter("router_denied_total")
            raise TenantSuspended(tenant_id, record.lifecycle_state.value)
        return record

    @asynccontextmanager
    async def connect(self, tenant_id: str) -> AsyncIterator[AsyncConnection]:
        lease = await self.resolve(tenant_id)
        try:
            yield lease.connection
        finally:
            await lease.release()

    async def _get_or_create_pool(self, record: TenantRecord) -> TenantPool:
        pool = self._pools.get(record.tenant_id)
        if pool is not None and not pool.closed:
            return pool
        async with self._creation_locks.hold(record.tenant_id):
            pool = self._pools.get(record.tenant_id)
            if pool is None or pool.closed:
                engine = self._engine_factory(record.database_locator, record.resource_limits)
                pool = TenantPool(
                    record.tenant_id,
                    engine,
                    record.resource_limits,
                    created_at=self._time(),
                )
                self._pools[record.tenant_id] = pool
                increment_counter("router_pools_created_total")
                set_gauge("router_pools_active", len(self._pools))
                logger.info(
                    "tenant_pool_created tenant=%s cap=%s",
                    record.tenant_id,
                    record.resource_limits.connection_cap,
                )
            return pool

    async def _checkout(self, pool: TenantPool) -> TenantLease:
        timeout_s = pool.limits.pool_timeout_s
        pool._enter()
        try:
            await asyncio.wait_for(pool._slots.acquire(), timeout=timeout_s)
        except asyncio.TimeoutError:
            pool._exit(self._time())
            increment_counter("router_pool_exhausted_total")
            raise PoolExhausted(pool.tenant_id, timeout_s) from None
        except BaseException:
            pool._exit(self._time())
            raise
        if pool.closed:
            pool._slots.release()
            pool._exit(self._time())
            raise ConnectionClosed(pool.tenant_id)
        try:
            connection = await pool.engine.connect()
        except SqlPoolTimeout as exc:
            pool._slots.release()
            pool._exit(self._time())
            raise PoolExhausted(pool.tenant_id, timeout_s) from exc
        except BaseException:
            pool._slots.release()
            pool._exit(self._time())
            raise
        lease = TenantLease(pool, connection, self._time)
        pool.leases.add(lease)
        pool.last_used = self._time()
        increment_counter("router_checkouts_total")
        return lease

    # Remove the tenant's pool, drain in-flight work, then hard-close leftovers.
    async def evict(self, tenant_id: str, *, grace_s: float | None = None) -> bool:
        async with self._creation_locks.hold(tenant_id):
            pool = self._pools.pop(tenant_id, None)
        if pool is None:
            return False
        grace = self._settings.router_evict_grace_s if grace_s is None else grace_s
        await self._close_pool(pool, grace)
        return True

    async def _close_pool(self, pool: TenantPool, grace_s: float) -> None:
        pool.closed = True
        drained = await pool.wait_drained(grace_s)
        outstanding = list(pool.leases)
        for lease in outstanding:
            await lease._force_close()
        await pool.engine.dispose()
        set_gauge("router_pools_active", len(self._pools))
        increment_counter("router_evictions_total")
        logger.info(
            "tenant_pool_evicted tenant=%s drained=%s force_closed=%s",
            pool.tenant_id,
            drained,
            len(outstanding),
        )

    # Evict pools with no checkout within their idle window.
    async def evict_idle(self) -> list[str]:
        evicted: list[str] = []
        for tenant_id, pool in list(self._pools.items()):
            if not self._is_idle(pool):
                continue
            async with self._creation_locks.hold(tenant_id):
                # Re-check under the lock; a checkout may have started meanwhile.
                current = self._pools.get(tenant_id)
                if current is not pool or not self._is_idle(pool):
                    continue
                self._pools.pop(tenant_id)
            await self._close_pool(pool, 0)
            evicted.append(tenant_id)
        return evicted

    def _is_idle(self, pool: TenantPool) -> bool:
        return pool.in_flight == 0 and (self._time() - pool.last_used) >= pool.limits.idle_timeout_s

    async def _sweep_loop(self) -> None:
        interval = max(1, self._settings.router_sweep_interval_s)
        while True:
            await asyncio.sleep(interval)
            try:
                evicted = await self.evict_idle()
                if evicted:
                    logger.info("idle_pools_evicted count=%s", len(evicted))
            except Exception:  # noqa: BLE001 - keep sweeping on transient failures
                logger.exception("idle_pool_sweep_failed")

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def close(self) -> None:
        await self.stop()
        for tenant_id in list(self._pools):
            await self.evict(tenant_id, grace_s=0)

    def pool_for(self, tenant_id: str) -> TenantPool | None:
        return self._pools.get(tenant_id)

    def stats(self) -> dict[str, dict[str, Any]]:
        now = self._time()
        return {
            tenant_id: {
                "in_flight": pool.in_flight,
                "connection_cap": pool.limits.connection_cap,
                "idle_s": round(now - pool.last_used, 3),
                "age_s": round(now - pool.created_at, 3),
            }
            for tenant_id, pool in self._pools.items()
        }
