from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from tenantfleet.core.config import get_settings
from tenantfleet.domain.models import Base
from tenantfleet.persistence.repos.registry import SqlRegistryStore
from tenantfleet.persistence.servers import SqliteServer
from tenantfleet.services import telemetry


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path: Path):
    # Keep every test on local sqlite files and off Redis.
    monkeypatch.setenv("TENANT_LOCK_REDIS_ENABLED", "false")
    monkeypatch.setenv("TENANT_DB_BACKEND", "sqlite")
    monkeypatch.setenv("TENANT_SQLITE_DIR", str(tmp_path / "tenants"))
    monkeypatch.setenv("BACKUP_LOCAL_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("PROVISION_BACKOFF_MS", "1")
    monkeypatch.setenv("MIGRATION_BACKOFF_MS", "1")
    monkeypatch.setenv("BACKUP_BACKOFF_MS", "1")
    monkeypatch.setenv("ROUTER_EVICT_GRACE_S", "0.05")
    get_settings.cache_clear()
    telemetry.reset()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def control_engine(tmp_path: Path):
    # File-backed so concurrent sessions see each other's commits.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'control.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(control_engine):
    return async_sessionmaker(control_engine, expire_on_commit=False)


@pytest.fixture
def registry(session_factory) -> SqlRegistryStore:
    return SqlRegistryStore(session_factory)


@pytest.fixture
def server(tmp_path: Path) -> SqliteServer:
    return SqliteServer(tmp_path / "tenants")
