from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Collection, Protocol

from tenantfleet.domain.lifecycle import LifecycleState, transition_allowed
from tenantfleet.core.errors import InvalidStateTransition
from tenantfleet.domain.records import (
    BackupRecord,
    MigrationRun,
    TenantFilter,
    TenantRecord,
)


# Fields a conditional update may touch; tenant_id and database_locator are immutable.
MUTABLE_FIELDS = frozenset({"last_migrated_version", "last_backup_at", "resource_limits", "plan"})

ExpectedState = LifecycleState | Collection[LifecycleState]


# Lifecycle state only changes through ``conditional_update``, so two components can never race a
# tenant into inconsistent states.
class RegistryStore(Protocol):
    async def get(self, tenant_id: str) -> TenantRecord | None:
        ...

    async def list(self, tenant_filter: TenantFilter | None = None) -> list[TenantRecord]:
        ...

    async def create(self, record: TenantRecord) -> TenantRecord:
        ...

    async def conditional_update(
        self,
        tenant_id: str,
        *,
        expected_state: ExpectedState,
        new_state: LifecycleState | None = None,
        fields: dict[str, Any] | None = None,
    ) -> TenantRecord:
        ...

    async def locator_taken(self, database_locator: str) -> bool:
        ...

    async def add_backup(self, record: BackupRecord) -> BackupRecord:
        ...

    async def get_backup(self, backup_id: str) -> BackupRecord | None:
        ...

    async def list_backups(self, tenant_id: str) -> list[BackupRecord]:
        ...

    async def delete_backup(self, backup_id: str) -> None:
        ...

    async def save_migration_run(self, run: MigrationRun) -> None:
        ...

    async def get_migration_run(self, run_id: str) -> MigrationRun | None:
        ...

    async def start_provisioning_job(self, tenant_id: str, baseline_revision: str) -> str:
        ...

    async def update_provisioning_job(self, job_id: str, **fields: Any) -> None:
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # sqlite drops tzinfo on round-trip; treat stored naive values as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_expected(expected_state: ExpectedState) -> frozenset[LifecycleState]:
    if isinstance(expected_state, (LifecycleState, str)):
        return frozenset({LifecycleState(expected_state)})
    return frozenset(LifecycleState(item) for item in expected_state)


def validate_update(
    tenant_id: str,
    expected: frozenset[LifecycleState],
    new_state: LifecycleState | None,
    fields: dict[str, Any],
) -> None:
    # Reject writes outside the state machine before touching storage.
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"fields not updatable: {', '.join(sorted(unknown))}")
    if new_state is None:
        return
    for current in expected:
        if current != new_state and not transition_allowed(current, new_state):
            raise InvalidStateTransition(tenant_id, current.value, LifecycleState(new_state).value)
