from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import tempfile
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Protocol

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from tenantfleet.core.config import Settings, get_settings
from tenantfleet.domain.records import DatabaseLocator, ResourceLimits


logger = logging.getLogger(__name__)

_SQLITE_HEADER = b"SQLite format 3\x00"

# Drops every user schema so objects created after the snapshot cannot survive a restore.
_DROP_USER_SCHEMAS = """
DO $tenantfleet$
DECLARE
    target record;
BEGIN
    FOR target IN
        SELECT nspname FROM pg_namespace
        WHERE nspname NOT IN ('pg_catalog', 'information_schema')
          AND nspname NOT LIKE 'pg_toast%'
          AND nspname NOT LIKE 'pg_temp_%'
    LOOP
        EXECUTE format('DROP SCHEMA %I CASCADE', target.nspname);
    END LOOP;
END
$tenantfleet$;
CREATE SCHEMA public;
"""

_GRANT_SCHEMA_USAGE = """
DO $tenantfleet$
DECLARE
    target record;
BEGIN
    FOR target IN
        SELECT nspname FROM pg_namespace
        WHERE nspname NOT IN ('pg_catalog', 'information_schema')
          AND nspname NOT LIKE 'pg_toast%'
          AND nspname NOT LIKE 'pg_temp_%'
    LOOP
        EXECUTE format('GRANT USAGE ON SCHEMA %I TO %I', target.nspname, {app_user});
    END LOOP;
END
$tenantfleet$;
"""


def replace_contents_script(payload: bytes, app_user: str) -> bytes:
    # The dump is framed by a full wipe and the app role's schema grants; psql runs it as one transaction.
    grants = _GRANT_SCHEMA_USAGE.replace("{app_user}", "'" + app_user.replace("'", "''") + "'")
    return _DROP_USER_SCHEMAS.encode("utf-8") + payload + b"\n" + grants.encode("utf-8")


class TenantDatabaseServer(Protocol):
    def allocate_locator(self, database_name: str) -> DatabaseLocator:
        ...

    async def database_exists(self, locator: DatabaseLocator) -> bool:
        ...

    async def create_database(self, locator: DatabaseLocator) -> None:
        ...

    async def prepare_database(
        self, locator: DatabaseLocator, *, schemas: list[str], extensions: list[str]
    ) -> list[str]:
        ...

    def admin_engine(self, locator: DatabaseLocator) -> AbstractAsyncContextManager[AsyncEngine]:
        ...

    def create_pool_engine(self, locator: DatabaseLocator, limits: ResourceLimits) -> AsyncEngine:
        ...

    async def snapshot(self, locator: DatabaseLocator) -> bytes:
        ...

    async def load_snapshot(self, locator: DatabaseLocator, payload: bytes) -> None:
        ...


# Tenant databases living on a Postgres cluster.
class PostgresServer:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def allocate_locator(self, database_name: str) -> DatabaseLocator:
        return DatabaseLocator(
            host=self._settings.tenant_db_host,
            port=self._settings.tenant_db_port,
            database=database_name,
        )

    def _url(self, locator: DatabaseLocator, *, admin: bool, database: str | None = None) -> URL:
        settings = self._settings
        return URL.create(
            drivername=settings.tenant_db_driver,
            username=settings.tenant_db_admin_user if admin else settings.tenant_db_app_user,
            password=settings.tenant_db_admin_password if admin else settings.tenant_db_app_password,
            host=locator.host,
            port=locator.port,
            database=database or locator.database,
        )

    def _cli_url(self, locator: DatabaseLocator) -> str:
        # pg_dump/psql want a libpq URL, not the SQLAlchemy async driver name.
        url = self._url(locator, admin=True)
        url = url.set(drivername=url.drivername.split("+", 1)[0])
        return url.render_as_string(hide_password=False)

    @asynccontextmanager
    async def _maintenance_connection(self, locator: DatabaseLocator):
        # CREATE DATABASE cannot run inside a transaction block.
        engine = create_async_engine(
            self._url(locator, admin=True, database=self._settings.tenant_db_maintenance_db),
            poolclass=NullPool,
            isolation_level="AUTOCOMMIT",
        )
        try:
            async with engine.connect() as conn:
                yield conn
        finally:
            await engine.dispose()

    async def database_exists(self, locator: DatabaseLocator) -> bool:
        async with self._maintenance_connection(locator) as conn:
            result = await conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": locator.database},
            )
            return result.first() is not None

    async def create_database(self, locator: DatabaseLocator) -> None:
        async with self._maintenance_connection(locator) as conn:
            quote = conn.dialect.identifier_preparer.quote
            await conn.execute(text(f"CREATE DATABASE {quote(locator.database)}"))
            await conn.execute(
                text(
                    f"GRANT CONNECT ON DATABASE {quote(locator.database)} "
                    f"TO {quote(self._settings.tenant_db_app_user)}"
                )
            )
        logger.info("tenant_database_created locator=%s", locator)

    async def prepare_database(
        self, locator: DatabaseLocator, *, schemas: list[str], extensions: list[str]
    ) -> list[str]:
        created: list[str] = []
        async with self.admin_engine(locator) as engine:
            async with engine.begin() as conn:
                quote = conn.dialect.identifier_preparer.quote
                app_user = quote(self._settings.tenant_db_app_user)
                for extension in extensions:
                    exists = await conn.execute(
                        text("SELECT 1 FROM pg_extension WHERE extname = :name"), {"name": extension}
                    )
                    if exists.first() is None:
                        await conn.execute(text(f"CREATE EXTENSION IF NOT EXISTS {quote(extension)}"))
                        created.append(f"extension:{extension}")
                for schema in schemas:
                    exists = await conn.execute(
                        text("SELECT 1 FROM pg_namespace WHERE nspname = :name"), {"name": schema}
                    )
                    if exists.first() is None:
                        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {quote(schema)}"))
                        created.append(f"schema:{schema}")
                    await conn.execute(text(f"GRANT USAGE ON SCHEMA {quote(schema)} TO {app_user}"))
        return created

    @asynccontextmanager
    async def admin_engine(self, locator: DatabaseLocator) -> AsyncIterator[AsyncEngine]:
        engine = create_async_engine(self._url(locator, admin=True), poolclass=NullPool)
        try:
            yield engine
        finally:
            await engine.dispose()

    def create_pool_engine(self, locator: DatabaseLocator, limits: ResourceLimits) -> AsyncEngine:
        engine_kwargs: dict[str, Any] = {
            "pool_pre_ping": True,
            "pool_size": limits.pool_size,
            "max_overflow": limits.max_overflow,
            "pool_timeout": limits.pool_timeout_s,
            "pool_recycle": self._settings.tenant_pool_recycle_s,
        }
        if self._settings.tenant_statement_timeout_ms > 0:
            engine_kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(self._settings.tenant_statement_timeout_ms))}
            }
        return create_async_engine(self._url(locator, admin=False), **engine_kwargs)

    async def snapshot(self, locator: DatabaseLocator) -> bytes:
        # Plain dump; load_snapshot wipes the database itself before replaying it.
        proc = await asyncio.create_subprocess_exec(
            "pg_dump",
            "--no-owner",
            "--no-privileges",
            self._cli_url(locator),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise RuntimeError(f"pg_dump failed: {stderr.decode('utf-8', errors='ignore')}")
        return stdout

    async def load_snapshot(self, locator: DatabaseLocator, payload: bytes) -> None:
        proc = await asyncio.create_subprocess_exec(
            "psql",
            "--single-transaction",
            "-v",
            "ON_ERROR_STOP=1",
            "--quiet",
            self._cli_url(locator),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate(replace_contents_script(payload, self._settings.tenant_db_app_user))
        if proc.returncode != 0:
            raise RuntimeError(f"psql restore failed: {stderr.decode('utf-8', errors='ignore')}")


# File-backed tenant databases for local development.
class SqliteServer:
    def __init__(self, base_dir: Path | str | None = None) -> None:
        self._base_dir = Path(base_dir or get_settings().tenant_sqlite_dir)

    def allocate_locator(self, database_name: str) -> DatabaseLocator:
        return DatabaseLocator(host="localhost", port=0, database=database_name)

    def path_for(self, locator: DatabaseLocator) -> Path:
        return self._base_dir / f"{locator.database}.db"

    def _url(self, locator: DatabaseLocator) -> str:
        return f"sqlite+aiosqlite:///{self.path_for(locator)}"

    async def database_exists(self, locator: DatabaseLocator) -> bool:
        return self.path_for(locator).exists()

    async def create_database(self, locator: DatabaseLocator) -> None:
        path = self.path_for(locator)
        path.parent.mkdir(parents=True, exist_ok=True)
        # An empty file is a valid sqlite database.
        path.touch(exist_ok=True)
        logger.info("tenant_database_created locator=%s path=%s", locator, path)

    async def prepare_database(
        self, locator: DatabaseLocator, *, schemas: list[str], extensions: list[str]
    ) -> list[str]:
        # sqlite has no schemas or extensions; nothing to create.
        if schemas or extensions:
            logger.debug("sqlite_prepare_noop locator=%s schemas=%s extensions=%s", locator, schemas, extensions)
        return []

    @asynccontextmanager
    async def admin_engine(self, locator: DatabaseLocator) -> AsyncIterator[AsyncEngine]:
        engine = create_async_engine(self._url(locator), poolclass=NullPool)
        try:
            yield engine
        finally:
            await engine.dispose()

    def create_pool_engine(self, locator: DatabaseLocator, limits: ResourceLimits) -> AsyncEngine:
        return create_async_engine(
            self._url(locator),
            poolclass=AsyncAdaptedQueuePool,
            pool_pre_ping=True,
            pool_size=limits.pool_size,
            max_overflow=limits.max_overflow,
            pool_timeout=limits.pool_timeout_s,
        )

    async def snapshot(self, locator: DatabaseLocator) -> bytes:
        return await asyncio.to_thread(self._snapshot_sync, self.path_for(locator))

    @staticmethod
    def _snapshot_sync(path: Path) -> bytes:
        # Online backup API gives a consistent copy even with open readers.
        if not path.exists():
            raise FileNotFoundError(f"tenant database missing: {path}")
        with tempfile.TemporaryDirectory() as tmp_dir:
            target = Path(tmp_dir) / "snapshot.db"
            source_conn = sqlite3.connect(path)
            target_conn = sqlite3.connect(target)
            try:
                source_conn.backup(target_conn)
            finally:
                target_conn.close()
                source_conn.close()
            return target.read_bytes()

    async def load_snapshot(self, locator: DatabaseLocator, payload: bytes) -> None:
        await asyncio.to_thread(self._load_sync, self.path_for(locator), payload)

    @staticmethod
    def _load_sync(path: Path, payload: bytes) -> None:
        if not payload.startswith(_SQLITE_HEADER):
            raise ValueError("snapshot payload is not a sqlite database")
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".restore")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            # Atomic swap: readers see the old or the new file, never a partial one.
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def get_tenant_server(settings: Settings | None = None) -> TenantDatabaseServer:
    settings = settings or get_settings()
    backend = settings.tenant_db_backend.lower()
    if backend == "postgres":
        return PostgresServer(settings)
    if backend == "sqlite":
        return SqliteServer(settings.tenant_sqlite_dir)
    raise ValueError(f"unsupported tenant_db_backend {settings.tenant_db_backend!r}")
