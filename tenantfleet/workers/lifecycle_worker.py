from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from tenantfleet.core.config import get_settings
from tenantfleet.core.logging import configure_logging
from tenantfleet.domain.lifecycle import LifecycleState
from tenantfleet.domain.records import TenantFilter
from tenantfleet.services.runtime import Fleet, build_fleet


logger = logging.getLogger(__name__)


def _filter_from_payload(payload: dict | None) -> TenantFilter | None:
    # Accept the same filter shape the CLI and run ledger use.
    if not payload:
        return None
    tenant_ids = payload.get("tenant_ids")
    plans = payload.get("plans")
    states = payload.get("states")
    return TenantFilter(
        tenant_ids=frozenset(tenant_ids) if tenant_ids is not None else None,
        plans=frozenset(plans) if plans is not None else None,
        states=frozenset(LifecycleState(item) for item in states) if states else frozenset({LifecycleState.ACTIVE}),
    )


async def migrate_fleet_job(ctx, target_revision: str, tenant_filter: dict | None = None) -> dict:
    fleet: Fleet = ctx["fleet"]
    run = await fleet.migrations.migrate_fleet(target_revision, _filter_from_payload(tenant_filter))
    logger.info("migrate_fleet_job_done run=%s status=%s", run.run_id, run.status)
    return run.to_dict()


async def backup_fleet_job(ctx, tenant_filter: dict | None = None) -> list[dict]:
    fleet: Fleet = ctx["fleet"]
    outcomes = await fleet.backups.backup_fleet(_filter_from_payload(tenant_filter))
    return [item.to_dict() for item in outcomes]


async def nightly_backup(ctx) -> None:
    await backup_fleet_job(ctx)


async def prune_backups_job(ctx) -> int:
    fleet: Fleet = ctx["fleet"]
    pruned = await fleet.backups.prune_backups()
    return len(pruned)


async def _startup(ctx) -> None:
    # Build the lifecycle components once per worker process.
    configure_logging()
    ctx["fleet"] = build_fleet()
    ctx["fleet"].router.start()


async def _shutdown(ctx) -> None:
    fleet = ctx.get("fleet")
    if fleet is not None:
        await fleet.close()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.lifecycle_queue_name
    # Fleet jobs isolate tenant failures themselves; never re-run a whole fleet job.
    max_tries = 1
    job_timeout = settings.migration_timeout_s * 4
    functions = [migrate_fleet_job, backup_fleet_job, prune_backups_job]
    cron_jobs = [
        cron(nightly_backup, hour={settings.backup_cron_hour}, minute={0}),
        cron(prune_backups_job, hour={settings.prune_cron_hour}, minute={0}),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
