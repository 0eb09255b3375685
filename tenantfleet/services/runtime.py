from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantfleet.core.config import Settings, get_settings
from tenantfleet.persistence.db import get_sessionmaker
from tenantfleet.persistence.repos.registry import SqlRegistryStore
from tenantfleet.persistence.servers import TenantDatabaseServer, get_tenant_server
from tenantfleet.services.backup import BackupCoordinator
from tenantfleet.services.lifecycle import TenantLifecycle
from tenantfleet.services.migrations import MigrationOrchestrator
from tenantfleet.services.provisioning import Provisioner
from tenantfleet.services.resilience import TenantGuard
from tenantfleet.services.router import ConnectionRouter
from tenantfleet.services.storage import BlobStorage, LocalBlobStorage


@dataclass
class Fleet:
    # One wiring of every lifecycle component around a shared registry, router and guard.
    registry: SqlRegistryStore
    server: TenantDatabaseServer
    router: ConnectionRouter
    provisioner: Provisioner
    migrations: MigrationOrchestrator
    backups: BackupCoordinator
    lifecycle: TenantLifecycle

    async def close(self) -> None:
        await self.router.close()


def build_fleet(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    server: TenantDatabaseServer | None = None,
    storage: BlobStorage | None = None,
) -> Fleet:
    settings = settings or get_settings()
    registry = SqlRegistryStore(session_factory or get_sessionmaker())
    server = server or get_tenant_server(settings)
    # Shared so provisioning, migrations and backups never overlap on one tenant.
    guard = TenantGuard()
    router = ConnectionRouter(registry, server, settings=settings)
    return Fleet(
        registry=registry,
        server=server,
        router=router,
        provisioner=Provisioner(registry, server, guard=guard, settings=settings),
        migrations=MigrationOrchestrator(registry, server, guard=guard, settings=settings),
        backups=BackupCoordinator(
            registry,
            server,
            router=router,
            storage=storage or LocalBlobStorage(Path(settings.backup_local_dir)),
            guard=guard,
            settings=settings,
        ),
        lifecycle=TenantLifecycle(registry, router),
    )
