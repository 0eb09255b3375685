from __future__ import annotations

import asyncio
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from alembic.util import CommandError
from sqlalchemy.engine import Connection

from tenantfleet.core.errors import UnknownRevision
from tenantfleet.domain.records import DatabaseLocator
from tenantfleet.persistence.servers import TenantDatabaseServer


TENANT_SCRIPT_LOCATION = Path(__file__).resolve().parents[1] / "tenant_migrations"


def tenant_alembic_config(connection: Connection | None = None) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(TENANT_SCRIPT_LOCATION))
    if connection is not None:
        # env.py runs against this connection instead of building its own engine.
        cfg.attributes["connection"] = connection
    return cfg


def tenant_script_directory() -> ScriptDirectory:
    return ScriptDirectory.from_config(tenant_alembic_config())


def resolve_revision(revision: str) -> str:
    # Concrete revision id for ``revision``; "head" is allowed.
    try:
        script = tenant_script_directory().get_revision(revision)
    except CommandError as exc:
        raise UnknownRevision(revision) from exc
    if script is None:
        raise UnknownRevision(revision)
    return script.revision


def revision_reached(current: str | None, target: str) -> bool:
    # True when ``target`` is ``current`` or one of its ancestors.
    if current is None:
        return False
    if current == target:
        return True
    try:
        lineage = tenant_script_directory().walk_revisions(base="base", head=current)
        return any(script.revision == target for script in lineage)
    except CommandError:
        # A revision the script directory doesn't know means the database is ahead of us.
        return False


def read_current_revision(connection: Connection) -> str | None:
    return MigrationContext.configure(connection).get_current_revision()


def apply_upgrade(connection: Connection, revision: str) -> None:
    command.upgrade(tenant_alembic_config(connection), revision)


_alembic_locks: dict[asyncio.AbstractEventLoop, asyncio.Lock] = {}


def alembic_lock() -> asyncio.Lock:
    # alembic's ``context`` and ``op`` are module-level proxies, so one tenant at a time per process.
    loop = asyncio.get_running_loop()
    lock = _alembic_locks.get(loop)
    if lock is None:
        for stale in [known for known in _alembic_locks if known.is_closed()]:
            _alembic_locks.pop(stale, None)
        lock = _alembic_locks[loop] = asyncio.Lock()
    return lock


async def current_revision_at(server: TenantDatabaseServer, locator: DatabaseLocator) -> str | None:
    async with server.admin_engine(locator) as engine:
        async with engine.connect() as conn:
            async with alembic_lock():
                return await conn.run_sync(read_current_revision)


# Returns (from_revision, to_revision); a database at or past the target is left untouched.
async def upgrade_database(
    server: TenantDatabaseServer, locator: DatabaseLocator, revision: str
) -> tuple[str | None, str | None]:
    async with server.admin_engine(locator) as engine:
        async with engine.begin() as conn:
            async with alembic_lock():
                before = await conn.run_sync(read_current_revision)
                if revision_reached(before, revision):
                    return before, before
                await conn.run_sync(apply_upgrade, revision)
                after = await conn.run_sync(read_current_revision)
    return before, after
