"""Alembic-driven schema migrations for a single branch database.

Branch revisions live in ``headoffice/branch_schema`` and form one linear
chain. ``BranchMigrationRunner`` applies them through a ``BranchContext`` so
every branch migrates over its own routed connection.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Connection

from headoffice.errors import SchemaOperationError
from headoffice.tenancy.context_factory import BranchContext
from headoffice.tenancy.schema import missing_tables

logger = logging.getLogger("headoffice.tenancy.migrations")

BRANCH_SCRIPT_LOCATION = Path(__file__).resolve().parent.parent / "branch_schema"

REQUIRED_TABLES = (
    "users",
    "categories",
    "products",
    "customers",
    "suppliers",
    "sales",
    "sale_line_items",
    "settings",
    "sync_queue",
    "alembic_version",
)


def branch_alembic_config(connection: Optional[Connection] = None) -> Config:
    config = Config()
    config.set_main_option("script_location", str(BRANCH_SCRIPT_LOCATION))
    if connection is not None:
        config.attributes["connection"] = connection
    return config


def revision_order() -> list[str]:
    """All branch revisions, oldest first."""
    script = ScriptDirectory.from_config(branch_alembic_config())
    return [rev.revision for rev in reversed(list(script.walk_revisions()))]


def _current_revision(conn: Connection) -> Optional[str]:
    return MigrationContext.configure(conn).get_current_revision()


def _applied_revisions(conn: Connection) -> list[str]:
    order = revision_order()
    current = _current_revision(conn)
    if current is None:
        return []
    if current not in order:
        raise SchemaOperationError(f"Branch database is at unknown revision {current!r}")
    return order[: order.index(current) + 1]


def _upgrade(conn: Connection, target: str) -> None:
    command.upgrade(branch_alembic_config(conn), target)


def _downgrade(conn: Connection, target: str) -> None:
    command.downgrade(branch_alembic_config(conn), target)


class BranchMigrationRunner:
    """Reads and advances the schema revision of one branch database."""

    def __init__(self, context: BranchContext) -> None:
        self.context = context

    async def current(self) -> Optional[str]:
        return await self.context.run_sync(_current_revision)

    async def applied(self) -> list[str]:
        return await self.context.run_sync(_applied_revisions)

    async def pending(self) -> list[str]:
        applied = set(await self.applied())
        return [rev for rev in revision_order() if rev not in applied]

    async def upgrade(self, target: Optional[str] = None) -> list[str]:
        """Apply outstanding revisions up to ``target`` (default: head).

        Returns the revisions applied by this call, oldest first. Running it
        on an up-to-date database applies nothing.
        """
        before = set(await self.applied())
        await self.context.run_sync(_upgrade, target or "head")
        await self.context.commit()
        after = await self.applied()
        applied_now = [rev for rev in after if rev not in before]
        if applied_now:
            logger.info(
                "Applied branch revisions %s",
                ", ".join(applied_now),
                extra={"branch_id": self.context.branch_id},
            )
        return applied_now

    async def downgrade_one(self) -> Optional[str]:
        """Revert the most recent revision; returns it, or None at base."""
        applied = await self.applied()
        if not applied:
            return None
        await self.context.run_sync(_downgrade, "-1")
        await self.context.commit()
        return applied[-1]

    async def missing_tables(self) -> list[str]:
        return await self.context.run_sync(missing_tables, REQUIRED_TABLES)

    async def validate(self) -> bool:
        missing = await self.missing_tables()
        if missing:
            logger.warning(
                "Missing required tables: %s",
                ", ".join(missing),
                extra={"branch_id": self.context.branch_id},
            )
        return not missing
