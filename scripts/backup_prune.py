from __future__ import annotations

import argparse
import asyncio
import json
from datetime import timedelta

from tenantfleet.core.config import get_settings
from tenantfleet.core.logging import configure_logging
from tenantfleet.domain.lifecycle import LifecycleState
from tenantfleet.domain.records import TenantFilter
from tenantfleet.services.registry import utc_now
from tenantfleet.services.runtime import build_fleet


async def _run_prune(tenant_id: str | None, retention_days: int, min_keep: int, dry_run: bool) -> None:
    # Prune backups beyond retention while keeping the newest few per tenant.
    settings = get_settings().model_copy(
        update={"backup_retention_days": retention_days, "backup_retention_min_keep": min_keep}
    )
    fleet = build_fleet(settings)
    try:
        if dry_run:
            cutoff = utc_now() - timedelta(days=retention_days)
            every_state = TenantFilter(states=frozenset(LifecycleState))
            tenant_ids = [tenant_id] if tenant_id else [item.tenant_id for item in await fleet.registry.list(every_state)]
            candidates = []
            # Zero or negative retention disables pruning entirely.
            for current in tenant_ids if retention_days > 0 else []:
                backups = await fleet.registry.list_backups(current)
                candidates.extend(item.backup_id for item in backups[min_keep:] if item.taken_at < cutoff)
            print(json.dumps({"dry_run": True, "would_prune": candidates}, indent=2))
            return
        pruned = await fleet.backups.prune_backups(tenant_id)
    finally:
        await fleet.close()
    print(json.dumps({"pruned_backups": [item.backup_id for item in pruned]}, indent=2))


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune tenant backups beyond retention")
    parser.add_argument("--tenant", default=None)
    parser.add_argument("--retention-days", type=int, default=None)
    parser.add_argument("--min-keep", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    configure_logging()
    settings = get_settings()
    retention = args.retention_days if args.retention_days is not None else settings.backup_retention_days
    min_keep = args.min_keep if args.min_keep is not None else settings.backup_retention_min_keep
    asyncio.run(_run_prune(args.tenant, retention, min_keep, args.dry_run))


if __name__ == "__main__":
    main()
