from __future__ import annotations

import argparse
import asyncio
import json
import sys

from tenantfleet.core.errors import TenantFleetError
from tenantfleet.core.logging import configure_logging
from tenantfleet.services.runtime import build_fleet


async def _run_restore(tenant_id: str, backup_id: str | None) -> int:
    # Restore a tenant from a named backup, or from its newest one.
    fleet = build_fleet()
    try:
        if backup_id is not None:
            backup = await fleet.registry.get_backup(backup_id)
        else:
            backups = await fleet.backups.list_backups(tenant_id)
            backup = backups[0] if backups else None
        if backup is None:
            print(json.dumps({"error": {"code": "BACKUP_NOT_FOUND", "tenant_id": tenant_id, "backup_id": backup_id}}))
            return 1
        record = await fleet.backups.restore(tenant_id, backup)
    except TenantFleetError as exc:
        print(json.dumps({"error": exc.to_dict()}, indent=2))
        return 1
    finally:
        await fleet.close()
    print(json.dumps({"restored_from": backup.backup_id, "tenant": record.to_dict()}, indent=2))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Restore a tenant database from a verified backup")
    parser.add_argument("tenant_id")
    parser.add_argument("--backup-id", default=None, help="defaults to the newest backup")
    args = parser.parse_args()

    configure_logging()
    sys.exit(asyncio.run(_run_restore(args.tenant_id, args.backup_id)))


if __name__ == "__main__":
    main()
