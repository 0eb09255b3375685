from __future__ import annotations

import argparse
import asyncio
import json
import sys

from tenantfleet.core.config import get_settings
from tenantfleet.core.errors import TenantFleetError
from tenantfleet.core.logging import configure_logging
from tenantfleet.domain.records import ResourceLimits
from tenantfleet.services.runtime import build_fleet


async def _run_provision(tenant_id: str, baseline: str, plan: str | None, limits: ResourceLimits | None) -> int:
    # Provision one tenant end to end and print the resulting record.
    fleet = build_fleet()
    try:
        record = await fleet.provisioner.provision(tenant_id, baseline, limits=limits, plan=plan)
    except TenantFleetError as exc:
        print(json.dumps({"error": exc.to_dict(), "step": getattr(exc, "step", None)}, indent=2))
        return 1
    finally:
        await fleet.close()
    print(json.dumps(record.to_dict(), indent=2))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision a tenant database and register the tenant")
    parser.add_argument("tenant_id")
    parser.add_argument("--baseline", default="head", help="tenant migration revision to start from")
    parser.add_argument("--plan", default=None)
    parser.add_argument("--pool-size", type=int, default=None)
    parser.add_argument("--max-overflow", type=int, default=None)
    parser.add_argument("--max-connections", type=int, default=None)
    args = parser.parse_args()

    configure_logging()
    limits = None
    if args.pool_size is not None or args.max_overflow is not None or args.max_connections is not None:
        # Unspecified limits keep the configured defaults.
        defaults = ResourceLimits.defaults(get_settings()).to_dict()
        overrides = {
            "pool_size": args.pool_size,
            "max_overflow": args.max_overflow,
            "max_connections": args.max_connections,
        }
        defaults.update({key: value for key, value in overrides.items() if value is not None})
        limits = ResourceLimits.from_dict(defaults)
    sys.exit(asyncio.run(_run_provision(args.tenant_id, args.baseline, args.plan, limits)))


if __name__ == "__main__":
    main()
