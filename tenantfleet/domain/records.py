from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from tenantfleet.core.config import Settings, get_settings
from tenantfleet.core.errors import MigrationPartialFailure
from tenantfleet.domain.lifecycle import LifecycleState


@dataclass(frozen=True)
class DatabaseLocator:
    # Connection coordinates without credentials; credentials come from settings per role.
    host: str
    port: int
    database: str

    def __str__(self) -> str:
        return f"{self.host}:{self.port}/{self.database}"

    @classmethod
    def parse(cls, raw: str) -> "DatabaseLocator":
        address, _, database = raw.partition("/")
        host, _, port = address.rpartition(":")
        if not host or not database or not port.isdigit():
            raise ValueError(f"malformed database locator {raw!r}")
        return cls(host=host, port=int(port), database=database)


@dataclass(frozen=True)
class ResourceLimits:
    pool_size: int
    max_overflow: int
    pool_timeout_s: float
    idle_timeout_s: int
    max_connections: int

    @property
    def connection_cap(self) -> int:
        # Concurrent leases never exceed the pool's own ceiling.
        return max(1, min(self.max_connections, self.pool_size + self.max_overflow))

    @classmethod
    def defaults(cls, settings: Settings | None = None) -> "ResourceLimits":
        settings = settings or get_settings()
        ceiling = settings.tenant_pool_size + settings.tenant_max_overflow
        return cls(
            pool_size=max(1, settings.tenant_pool_size),
            max_overflow=max(0, settings.tenant_max_overflow),
            pool_timeout_s=settings.tenant_pool_timeout_s,
            idle_timeout_s=settings.tenant_idle_timeout_s,
            max_connections=settings.tenant_max_connections or ceiling,
        )

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None, settings: Settings | None = None) -> "ResourceLimits":
        # Missing keys fall back to settings so older records keep working.
        base = asdict(cls.defaults(settings))
        base.update({key: value for key, value in (payload or {}).items() if key in base})
        return cls(
            pool_size=int(base["pool_size"]),
            max_overflow=int(base["max_overflow"]),
            pool_timeout_s=float(base["pool_timeout_s"]),
            idle_timeout_s=int(base["idle_timeout_s"]),
            max_connections=int(base["max_connections"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TenantRecord:
    tenant_id: str
    database_locator: DatabaseLocator
    lifecycle_state: LifecycleState
    resource_limits: ResourceLimits
    created_at: datetime
    updated_at: datetime
    last_migrated_version: str | None = None
    last_backup_at: datetime | None = None
    plan: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "database_locator": str(self.database_locator),
            "lifecycle_state": self.lifecycle_state.value,
            "resource_limits": self.resource_limits.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_migrated_version": self.last_migrated_version,
            "last_backup_at": self.last_backup_at.isoformat() if self.last_backup_at else None,
            "plan": self.plan,
        }


@dataclass(frozen=True)
class BackupRecord:
    backup_id: str
    tenant_id: str
    storage_locator: str
    taken_at: datetime
    size_bytes: int
    checksum: str
    schema_revision: str | None = None
    encrypted: bool = False
    signature: str | None = None

    def signing_payload(self) -> bytes:
        # Canonical field order for HMAC signing; the signature itself is excluded.
        parts = [
            self.backup_id,
            self.tenant_id,
            self.storage_locator,
            self.taken_at.isoformat(),
            str(self.size_bytes),
            self.checksum,
            self.schema_revision or "",
            "1" if self.encrypted else "0",
        ]
        return "|".join(parts).encode("utf-8")

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["taken_at"] = self.taken_at.isoformat()
        return payload


@dataclass(frozen=True)
class TenantFilter:
    # Narrow fleet operations to explicit tenants and/or plans.
    tenant_ids: frozenset[str] | None = None
    plans: frozenset[str] | None = None
    states: frozenset[LifecycleState] = field(default_factory=lambda: frozenset({LifecycleState.ACTIVE}))

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_ids": sorted(self.tenant_ids) if self.tenant_ids is not None else None,
            "plans": sorted(self.plans) if self.plans is not None else None,
            "states": sorted(state.value for state in self.states),
        }


OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_UP_TO_DATE = "up_to_date"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_CANCELLED = "cancelled"

# Outcomes that leave the tenant on the target revision.
_ON_TARGET = {OUTCOME_SUCCEEDED, OUTCOME_UP_TO_DATE}


@dataclass(frozen=True)
class TenantOutcome:
    tenant_id: str
    status: str
    attempts: int = 0
    from_revision: str | None = None
    to_revision: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def on_target(self) -> bool:
        return self.status in _ON_TARGET

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MigrationRun:
    run_id: str
    target_revision: str
    started_at: datetime
    outcomes: list[TenantOutcome] = field(default_factory=list)
    completed_at: datetime | None = None
    tenant_filter: TenantFilter | None = None

    @property
    def succeeded(self) -> list[str]:
        return [item.tenant_id for item in self.outcomes if item.on_target]

    @property
    def failed(self) -> list[str]:
        # Every tenant not on the target revision is surfaced, including skipped and cancelled ones.
        return [item.tenant_id for item in self.outcomes if not item.on_target]

    @property
    def status(self) -> str:
        if any(item.status == OUTCOME_CANCELLED for item in self.outcomes):
            return "cancelled"
        return "succeeded" if not self.failed else "partial"

    def outcome_for(self, tenant_id: str) -> TenantOutcome | None:
        return next((item for item in self.outcomes if item.tenant_id == tenant_id), None)

    def raise_for_failures(self) -> None:
        if self.failed:
            raise MigrationPartialFailure(self.target_revision, self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "target_revision": self.target_revision,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "outcomes": [item.to_dict() for item in self.outcomes],
        }
