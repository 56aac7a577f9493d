"""Alembic environment for branch databases.

Branch revisions always run on a connection handed in by
``BranchMigrationRunner`` through ``config.attributes["connection"]``; there
is no URL to resolve and no offline mode.
"""

from __future__ import annotations

from alembic import context

config = context.config

connection = config.attributes.get("connection")
if connection is None:
    raise RuntimeError(
        "Branch migrations need a live branch connection; run them through "
        "headoffice.tenancy.migrations.BranchMigrationRunner."
    )

context.configure(
    connection=connection,
    target_metadata=None,
    render_as_batch=connection.dialect.name == "sqlite",
)

with context.begin_transaction():
    context.run_migrations()
