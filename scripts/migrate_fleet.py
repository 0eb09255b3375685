from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys

from tenantfleet.core.errors import TenantFleetError
from tenantfleet.core.logging import configure_logging
from tenantfleet.domain.records import TenantFilter
from tenantfleet.services import telemetry
from tenantfleet.services.resilience import CancellationToken
from tenantfleet.services.runtime import build_fleet


async def _run_migrate(target: str, tenant_filter: TenantFilter, concurrency: int | None) -> int:
    # Ctrl-C stops new tenants from starting; in-flight tenants finish their transaction.
    cancel = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, cancel.cancel, "interrupted by operator")
    fleet = build_fleet()
    try:
        run = await fleet.migrations.migrate_fleet(target, tenant_filter, cancel=cancel, concurrency=concurrency)
    except TenantFleetError as exc:
        print(json.dumps({"error": exc.to_dict()}, indent=2))
        return 2
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        await fleet.close()
    report = run.to_dict()
    report["telemetry"] = telemetry.snapshot()
    print(json.dumps(report, indent=2))
    return 0 if not run.failed else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate every active tenant database to a revision")
    parser.add_argument("target_revision")
    parser.add_argument("--tenant", action="append", default=None, help="limit to tenant ids (repeatable)")
    parser.add_argument("--plan", action="append", default=None, help="limit to billing plans (repeatable)")
    parser.add_argument("--concurrency", type=int, default=None)
    args = parser.parse_args()

    configure_logging()
    tenant_filter = TenantFilter(
        tenant_ids=frozenset(args.tenant) if args.tenant else None,
        plans=frozenset(args.plan) if args.plan else None,
    )
    sys.exit(asyncio.run(_run_migrate(args.target_revision, tenant_filter, args.concurrency)))


if __name__ == "__main__":
    main()
