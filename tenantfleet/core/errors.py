from __future__ import annotations

from typing import Iterable


class TenantFleetError(Exception):
    """Base error for tenantfleet."""

    code = "TENANTFLEET_ERROR"

    def __init__(self, message: str, *, tenant_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id

    def to_dict(self) -> dict[str, str | None]:
        # Keep a stable error shape for control-plane reports.
        return {"code": self.code, "message": self.message, "tenant_id": self.tenant_id}


class UnknownTenant(TenantFleetError):
    """No tenant record exists for the requested tenant id."""

    code = "UNKNOWN_TENANT"

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"unknown tenant {tenant_id!r}", tenant_id=tenant_id)


class TenantSuspended(TenantFleetError):
    """Tenant lifecycle state forbids routed access."""

    code = "TENANT_SUSPENDED"

    def __init__(self, tenant_id: str, state: str) -> None:
        super().__init__(f"tenant {tenant_id!r} is {state}", tenant_id=tenant_id)
        self.state = state


class PoolExhausted(TenantFleetError):
    """Tenant pool stayed saturated past the bounded wait."""

    code = "POOL_EXHAUSTED"

    def __init__(self, tenant_id: str, timeout_s: float) -> None:
        super().__init__(
            f"no connection available for tenant {tenant_id!r} within {timeout_s:.1f}s",
            tenant_id=tenant_id,
        )
        self.timeout_s = timeout_s


class ConnectionClosed(TenantFleetError):
    """The tenant pool was evicted while the lease was outstanding."""

    code = "CONNECTION_CLOSED"

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"connection for tenant {tenant_id!r} was closed by eviction", tenant_id=tenant_id)


class ProvisioningFailed(TenantFleetError):
    """A provisioning step failed; the tenant stays unregistered."""

    code = "PROVISIONING_FAILED"

    def __init__(self, tenant_id: str, step: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"provisioning {tenant_id!r} failed at step {step}{detail}", tenant_id=tenant_id)
        self.step = step
        self.cause = cause


class MigrationPartialFailure(TenantFleetError):
    """One or more tenants did not reach the target revision."""

    code = "MIGRATION_PARTIAL_FAILURE"

    def __init__(self, target_revision: str, failed_tenants: Iterable[str]) -> None:
        self.failed_tenants = sorted(failed_tenants)
        super().__init__(
            f"{len(self.failed_tenants)} tenant(s) not migrated to {target_revision}: "
            + ", ".join(self.failed_tenants)
        )
        self.target_revision = target_revision


class UnknownRevision(TenantFleetError):
    """Requested migration revision is not in the tenant script directory."""

    code = "UNKNOWN_REVISION"

    def __init__(self, revision: str) -> None:
        super().__init__(f"unknown tenant migration revision {revision!r}")
        self.revision = revision


class BackupVerificationFailed(TenantFleetError):
    """Stored snapshot could not be verified; no backup record is written."""

    code = "BACKUP_VERIFICATION_FAILED"


class RestoreFailed(TenantFleetError):
    """Restore did not complete; tenant is left in RESTORE_FAILED."""

    code = "RESTORE_FAILED"

    def __init__(self, message: str, *, tenant_id: str, cause: BaseException | None = None) -> None:
        super().__init__(message, tenant_id=tenant_id)
        self.cause = cause


class InvalidStateTransition(TenantFleetError):
    """Lifecycle transition is not part of the state machine."""

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, tenant_id: str, current: str, target: str) -> None:
        super().__init__(f"tenant {tenant_id!r} cannot move from {current} to {target}", tenant_id=tenant_id)
        self.current = current
        self.target = target


class StateConflict(TenantFleetError):
    """Conditional update lost: the record was not in the expected state."""

    code = "STATE_CONFLICT"


class TenantAlreadyExists(TenantFleetError):
    """A tenant record with this id is already registered."""

    code = "TENANT_ALREADY_EXISTS"


class LocatorCollision(TenantFleetError):
    """Database locator is already assigned to another tenant."""

    code = "LOCATOR_COLLISION"


class TenantBusy(TenantFleetError):
    """Another process holds the maintenance lease for this tenant."""

    code = "TENANT_BUSY"


class OperationCancelled(TenantFleetError):
    """Caller cancelled a long-running operation at a unit boundary."""

    code = "OPERATION_CANCELLED"

    def __init__(self, message: str, *, tenant_id: str | None = None, checkpoint: str | None = None) -> None:
        super().__init__(message, tenant_id=tenant_id)
        self.checkpoint = checkpoint


def error_code_for(exc: BaseException) -> str:
    # Driver exceptions carry their own ``code`` attribute; only ours are stable.
    if isinstance(exc, TenantFleetError):
        return exc.code
    return type(exc).__name__
