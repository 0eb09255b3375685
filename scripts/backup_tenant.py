from __future__ import annotations

import argparse
import asyncio
import json
import sys

from tenantfleet.core.errors import TenantFleetError
from tenantfleet.core.logging import configure_logging
from tenantfleet.services.runtime import build_fleet


async def _run_backup(tenant_id: str | None, list_only: bool) -> int:
    # Back up one tenant, the whole fleet, or list existing backups.
    fleet = build_fleet()
    try:
        if tenant_id is None:
            outcomes = await fleet.backups.backup_fleet()
            print(json.dumps([item.to_dict() for item in outcomes], indent=2))
            return 0 if all(item.status == "succeeded" for item in outcomes) else 1
        if list_only:
            backups = await fleet.backups.list_backups(tenant_id)
            print(json.dumps([item.to_dict() for item in backups], indent=2))
            return 0
        backup = await fleet.backups.backup(tenant_id)
    except TenantFleetError as exc:
        print(json.dumps({"error": exc.to_dict()}, indent=2))
        return 1
    finally:
        await fleet.close()
    print(json.dumps(backup.to_dict(), indent=2))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Create verified tenant database backups")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--tenant", default=None)
    target.add_argument("--all", action="store_true", help="back up every active or suspended tenant")
    parser.add_argument("--list", action="store_true", help="list backups for --tenant instead")
    args = parser.parse_args()

    configure_logging()
    sys.exit(asyncio.run(_run_backup(None if args.all else args.tenant, args.list)))


if __name__ == "__main__":
    main()
