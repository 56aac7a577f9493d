"""Dialect-aware schema introspection and bootstrap helpers.

Each dialect answers "does this column exist?" differently, so ad hoc patches
that must be safe to re-run go through ``column_exists`` before altering.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.engine import Connection
from sqlalchemy.sql import text

from headoffice.errors import ConfigurationError
from headoffice.models.branch import DatabaseProvider
from headoffice.tenancy.connection_strings import ConnectionDescriptor, coerce_provider
from headoffice.tenancy.context_factory import CONNECT_ERRORS, connection_error, create_branch_engine

logger = logging.getLogger("headoffice.tenancy.schema")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_COLUMN_EXISTS_SQL = {
    DatabaseProvider.SQLITE: (
        "SELECT COUNT(*) FROM pragma_table_info(:table) WHERE name = :column"
    ),
    DatabaseProvider.MYSQL: (
        "SELECT COUNT(*) FROM INFORMATION_SCHEMA.COLUMNS "
        "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = :table AND COLUMN_NAME = :column"
    ),
    DatabaseProvider.MSSQL: (
        "SELECT COUNT(*) FROM sys.columns "
        "WHERE object_id = OBJECT_ID(:table) AND name = :column"
    ),
    DatabaseProvider.POSTGRESQL: (
        "SELECT COUNT(*) FROM information_schema.columns "
        "WHERE table_schema = current_schema() AND table_name = :table AND column_name = :column"
    ),
}

_DATABASE_EXISTS_SQL = {
    DatabaseProvider.POSTGRESQL: "SELECT 1 FROM pg_database WHERE datname = :name",
    DatabaseProvider.MSSQL: "SELECT 1 FROM sys.databases WHERE name = :name",
    DatabaseProvider.MYSQL: "SELECT 1 FROM INFORMATION_SCHEMA.SCHEMATA WHERE SCHEMA_NAME = :name",
}

_CREATE_DATABASE_SQL = {
    DatabaseProvider.POSTGRESQL: 'CREATE DATABASE "{name}"',
    DatabaseProvider.MSSQL: "CREATE DATABASE [{name}]",
    DatabaseProvider.MYSQL: "CREATE DATABASE IF NOT EXISTS `{name}`",
}


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ConfigurationError(f"Unsafe SQL identifier {name!r}")
    return name


def column_exists(conn: Connection, provider: Any, table: str, column: str) -> bool:
    """Return True when ``table.column`` exists on the connected database."""
    provider = coerce_provider(provider)
    sql = _COLUMN_EXISTS_SQL[provider]
    count = conn.execute(text(sql), {"table": table, "column": column}).scalar()
    return bool(count)


def add_column_if_missing(
    conn: Connection,
    provider: Any,
    table: str,
    column: str,
    ddl_type: str,
    index_name: str | None = None,
) -> bool:
    """Add a nullable column (and optional index) unless it is already there."""
    _check_identifier(table)
    _check_identifier(column)
    if column_exists(conn, provider, table, column):
        return False

    logger.info("Adding column %s.%s", table, column)
    conn.execute(text(f"ALTER TABLE {table} ADD {column} {ddl_type} NULL"))
    if index_name:
        _check_identifier(index_name)
        conn.execute(text(f"CREATE INDEX {index_name} ON {table} ({column})"))
    return True


def list_tables(conn: Connection) -> list[str]:
    return list(inspect(conn).get_table_names())


def missing_tables(conn: Connection, required: tuple[str, ...] | list[str]) -> list[str]:
    present = {name.lower() for name in list_tables(conn)}
    return [name for name in required if name.lower() not in present]


async def ensure_database_exists(descriptor: ConnectionDescriptor) -> bool:
    """Create the branch database on its server when it is missing.

    Returns True when a database was created. SQLite files appear on first
    connect, so nothing happens for that dialect.
    """
    provider = descriptor.provider
    if provider == DatabaseProvider.SQLITE:
        return False

    name = _check_identifier(descriptor.database_name)
    engine = create_branch_engine(
        descriptor,
        url=descriptor.server_url(),
        isolation_level="AUTOCOMMIT",
    )
    try:
        async with engine.connect() as conn:
            exists = (await conn.execute(text(_DATABASE_EXISTS_SQL[provider]), {"name": name})).scalar()
            created = not exists
            if created:
                await conn.execute(text(_CREATE_DATABASE_SQL[provider].format(name=name)))
    except CONNECT_ERRORS as exc:
        raise connection_error(descriptor, exc) from exc
    finally:
        await engine.dispose()

    if created:
        logger.info(
            "Created branch database %s",
            name,
            extra={"branch_code": descriptor.branch_code, "provider": provider.value},
        )
    return created
