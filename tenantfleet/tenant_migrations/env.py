from __future__ import annotations

from alembic import context


config = context.config

# Tenant upgrades always run on a connection handed in by tenantfleet.
connection = config.attributes.get("connection")
if connection is None:
    raise RuntimeError("tenant migrations must run through tenantfleet with a bound connection")

context.configure(
    connection=connection,
    target_metadata=None,
    # sqlite needs batch mode for ALTER TABLE.
    render_as_batch=connection.dialect.name == "sqlite",
    transaction_per_migration=False,
)

with context.begin_transaction():
    context.run_migrations()
