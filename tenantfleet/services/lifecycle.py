from __future__ import annotations

import logging

from tenantfleet.core.errors import InvalidStateTransition, StateConflict, UnknownTenant
from tenantfleet.domain.lifecycle import LifecycleState, transition_allowed
from tenantfleet.domain.records import TenantRecord
from tenantfleet.services.registry import RegistryStore
from tenantfleet.services.router import ConnectionRouter
from tenantfleet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


# Operator transitions that change whether a tenant is reachable
class TenantLifecycle:
    def __init__(self, registry: RegistryStore, router: ConnectionRouter | None = None) -> None:
        self._registry = registry
        self._router = router

    async def _transition(
        self,
        tenant_id: str,
        expected: frozenset[LifecycleState],
        target: LifecycleState,
    ) -> TenantRecord:
        record = await self._registry.get(tenant_id)
        if record is None:
            raise UnknownTenant(tenant_id)
        if record.lifecycle_state == target:
            return record
        # Operator transitions are narrower than the full state machine.
        if record.lifecycle_state not in expected or not transition_allowed(record.lifecycle_state, target):
            raise InvalidStateTransition(tenant_id, record.lifecycle_state.value, target.value)
        try:
            updated = await self._registry.conditional_update(
                tenant_id,
                expected_state=expected,
                new_state=target,
            )
        except StateConflict:
            # Lost a race to a concurrent writer that already applied the same transition.
            current = await self._registry.get(tenant_id)
            if current is not None and current.lifecycle_state == target:
                return current
            raise
        increment_counter(f"lifecycle_{target.value}_total")
        logger.info(
            "tenant_lifecycle_changed tenant=%s from=%s to=%s",
            tenant_id,
            record.lifecycle_state.value,
            target.value,
        )
        return updated

    async def suspend(self, tenant_id: str, *, grace_s: float | None = None) -> TenantRecord:
        record = await self._transition(tenant_id, frozenset({LifecycleState.ACTIVE}), LifecycleState.SUSPENDED)
        # New resolves already fail; drain whatever is still checked out.
        if self._router is not None:
            await self._router.evict(tenant_id, grace_s=grace_s)
        return record

    async def resume(self, tenant_id: str) -> TenantRecord:
        return await self._transition(tenant_id, frozenset({LifecycleState.SUSPENDED}), LifecycleState.ACTIVE)

    async def deactivate(self, tenant_id: str, *, grace_s: float | None = None) -> TenantRecord:
        record = await self._transition(
            tenant_id,
            frozenset({LifecycleState.ACTIVE, LifecycleState.SUSPENDED}),
            LifecycleState.DEACTIVATED,
        )
        if self._router is not None:
            await self._router.evict(tenant_id, grace_s=grace_s)
        return record
