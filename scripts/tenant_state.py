from __future__ import annotations

import argparse
import asyncio
import json
import sys

from tenantfleet.core.errors import TenantFleetError, UnknownTenant
from tenantfleet.core.logging import configure_logging
from tenantfleet.services.runtime import build_fleet


async def _run_action(action: str, tenant_id: str, grace_s: float | None) -> int:
    # Apply an operator lifecycle transition, or show the record with its live revision.
    fleet = build_fleet()
    try:
        if action == "show":
            record = await fleet.registry.get(tenant_id)
            if record is None:
                raise UnknownTenant(tenant_id)
            payload = record.to_dict()
            payload["live_revision"] = await fleet.migrations.current_revision(tenant_id)
            print(json.dumps(payload, indent=2))
            return 0
        if action == "suspend":
            record = await fleet.lifecycle.suspend(tenant_id, grace_s=grace_s)
        elif action == "resume":
            record = await fleet.lifecycle.resume(tenant_id)
        else:
            record = await fleet.lifecycle.deactivate(tenant_id, grace_s=grace_s)
    except TenantFleetError as exc:
        print(json.dumps({"error": exc.to_dict()}, indent=2))
        return 1
    finally:
        await fleet.close()
    print(json.dumps(record.to_dict(), indent=2))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect or change a tenant's lifecycle state")
    parser.add_argument("action", choices=["show", "suspend", "resume", "deactivate"])
    parser.add_argument("tenant_id")
    parser.add_argument("--grace-s", type=float, default=None, help="drain window before pools are closed")
    args = parser.parse_args()

    configure_logging()
    sys.exit(asyncio.run(_run_action(args.action, args.tenant_id, args.grace_s)))


if __name__ == "__main__":
    main()
