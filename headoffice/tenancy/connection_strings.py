"""Connection descriptors for branch databases.

Every branch names one of four SQL dialects. This module turns a branch row
into a ``ConnectionDescriptor``: the dialect-style ``Key=Value;...``
connection string the admin UI shows and logs (masked), plus the SQLAlchemy
URL and driver arguments used to actually open connections.

Building a descriptor never opens a connection. The only side effect is
creating the directory that will hold a SQLite branch file.
"""

from __future__ import annotations

import logging
import re
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from sqlalchemy.engine import URL

from headoffice.config import settings
from headoffice.errors import ConfigurationError
from headoffice.models.branch import DEFAULT_PORTS, DatabaseProvider, SslMode

logger = logging.getLogger("headoffice.tenancy.connection_strings")

# Numeric codes used by older admin clients (0..3) and common spellings.
_PROVIDER_ALIASES = {
    "0": DatabaseProvider.SQLITE,
    "1": DatabaseProvider.MSSQL,
    "2": DatabaseProvider.POSTGRESQL,
    "3": DatabaseProvider.MYSQL,
    "sqlserver": DatabaseProvider.MSSQL,
    "postgres": DatabaseProvider.POSTGRESQL,
    "mariadb": DatabaseProvider.MYSQL,
}

_POSTGRES_SSL_NAMES = {
    SslMode.DISABLE: "Disable",
    SslMode.REQUIRE: "Require",
    SslMode.VERIFY_CA: "VerifyCA",
    SslMode.VERIFY_FULL: "VerifyFull",
}

_MYSQL_SSL_NAMES = {
    SslMode.DISABLE: "None",
    SslMode.REQUIRE: "Required",
    SslMode.VERIFY_CA: "VerifyCA",
    SslMode.VERIFY_FULL: "VerifyFull",
}

# asyncpg accepts libpq sslmode names.
_ASYNCPG_SSL = {
    SslMode.DISABLE: "disable",
    SslMode.REQUIRE: "require",
    SslMode.VERIFY_CA: "verify-ca",
    SslMode.VERIFY_FULL: "verify-full",
}

# Passthrough keys the async drivers understand, keyed by lowercased name
# without spaces. Other keys stay in the connection string only.
_ASYNCPG_PASSTHROUGH = {
    "timeout": "timeout",
    "commandtimeout": "command_timeout",
}

_AIOMYSQL_PASSTHROUGH = {
    "connectiontimeout": "connect_timeout",
    "connecttimeout": "connect_timeout",
}

_SAFE_CODE = re.compile(r"^[A-Za-z0-9_-]+$")
_PASSWORD_PATTERN = re.compile(r"(Password|Pwd)=([^;]*)", re.IGNORECASE)


@dataclass(frozen=True, repr=False)
class ConnectionDescriptor:
    """Fully-built, dialect-specific connection configuration for one branch."""

    provider: DatabaseProvider
    connection_string: str
    url: URL
    connect_args: dict[str, Any] = field(default_factory=dict)
    database_name: str = ""
    branch_id: Optional[str] = None
    branch_code: Optional[str] = None

    def server_url(self) -> URL:
        """URL for server-level statements such as ``CREATE DATABASE``."""
        if self.provider == DatabaseProvider.POSTGRESQL:
            return self.url.set(database="postgres")
        if self.provider == DatabaseProvider.MYSQL:
            return self.url.set(database=None)
        if self.provider == DatabaseProvider.MSSQL:
            return self.url.set(database="master")
        return self.url

    @property
    def masked(self) -> str:
        return mask_connection_string(self.connection_string)

    def __str__(self) -> str:
        return self.masked

    def __repr__(self) -> str:
        return (
            f"ConnectionDescriptor(provider={self.provider.value!r}, "
            f"branch_code={self.branch_code!r}, connection_string={self.masked!r})"
        )


@dataclass(frozen=True)
class DescriptorResult:
    """Outcome of ``try_build_descriptor``: exactly one of the fields is set."""

    descriptor: Optional[ConnectionDescriptor] = None
    error: Optional[ConfigurationError] = None

    @property
    def ok(self) -> bool:
        return self.descriptor is not None

    def unwrap(self) -> ConnectionDescriptor:
        if self.descriptor is None:
            raise self.error or ConfigurationError("Descriptor was not built")
        return self.descriptor


def mask_connection_string(connection_string: str) -> str:
    return _PASSWORD_PATTERN.sub(r"\1=***", connection_string)


def coerce_provider(value: Any) -> DatabaseProvider:
    """Map a stored provider value onto ``DatabaseProvider`` or fail."""
    if isinstance(value, DatabaseProvider):
        return value
    raw = str(value if value is not None else "").strip().lower()
    if raw in _PROVIDER_ALIASES:
        return _PROVIDER_ALIASES[raw]
    try:
        return DatabaseProvider(raw)
    except ValueError:
        raise ConfigurationError(f"Database provider {value!r} is not supported") from None


def coerce_ssl_mode(value: Any) -> SslMode:
    if value is None or value == "":
        return SslMode.DISABLE
    if isinstance(value, SslMode):
        return value
    normalized = str(value).strip().lower().replace("-", "").replace("_", "")
    for mode in SslMode:
        if mode.value.replace("_", "") == normalized:
            return mode
    raise ConfigurationError(f"SSL mode {value!r} is not supported")


def parse_additional_params(raw: Optional[str]) -> dict[str, str]:
    """Split ``key=value;key=value`` passthrough parameters."""
    params: dict[str, str] = {}
    for segment in (raw or "").split(";"):
        segment = segment.strip()
        if not segment:
            continue
        key, sep, value = segment.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"Malformed additional parameter {segment!r}; expected key=value")
        params[key.strip()] = value.strip()
    return params


def driver_params(params: dict[str, str], supported: dict[str, str], branch: Any) -> dict[str, float]:
    """Map passthrough parameters onto driver keyword arguments."""
    kwargs: dict[str, float] = {}
    for key, value in params.items():
        name = supported.get(key.replace(" ", "").lower())
        if name is None:
            logger.debug("Passthrough parameter %s has no driver equivalent; kept in connection string only", key)
            continue
        try:
            kwargs[name] = float(value)
        except ValueError:
            raise ConfigurationError(
                f"Additional parameter {key!r} must be numeric, got {value!r}",
                branch_id=getattr(branch, "id", None),
            ) from None
    return kwargs


def _append_passthrough(parts: list[str], branch: Any) -> None:
    extra = (getattr(branch, "db_additional_params", None) or "").strip().strip(";")
    if extra:
        parts.append(extra)


def _require_server_fields(branch: Any, provider: DatabaseProvider) -> tuple[str, int, str]:
    host = (getattr(branch, "db_server", None) or "").strip()
    database = (getattr(branch, "db_name", None) or "").strip()
    if not host:
        raise ConfigurationError(
            f"{provider.value} branch requires a database server", branch_id=getattr(branch, "id", None)
        )
    if not database:
        raise ConfigurationError(
            f"{provider.value} branch requires a database name", branch_id=getattr(branch, "id", None)
        )
    port = getattr(branch, "db_port", None) or DEFAULT_PORTS[provider]
    return host, int(port), database


def _require_credentials(branch: Any, provider: DatabaseProvider) -> tuple[str, str]:
    username = (getattr(branch, "db_username", None) or "").strip()
    if not username:
        raise ConfigurationError(
            f"{provider.value} branch requires a database username", branch_id=getattr(branch, "id", None)
        )
    return username, getattr(branch, "db_password", None) or ""


# ── Per-dialect builders ─────────────────────────────────────

def build_sqlite(branch: Any, data_root: str) -> ConnectionDescriptor:
    # Only the branch code matters; server, port and credentials are ignored.
    code = (getattr(branch, "code", None) or "").strip()
    if not code or not _SAFE_CODE.match(code):
        raise ConfigurationError(
            f"SQLite branch requires a plain branch code, got {code!r}", branch_id=getattr(branch, "id", None)
        )

    path = Path(data_root) / "Branches" / code / "Database" / f"{code}.db"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigurationError(
            f"Cannot create SQLite directory {path.parent}: {exc}", branch_id=getattr(branch, "id", None)
        ) from exc

    return ConnectionDescriptor(
        provider=DatabaseProvider.SQLITE,
        connection_string=f"Data Source={path.as_posix()}",
        url=URL.create("sqlite+aiosqlite", database=path.as_posix()),
        database_name=code,
        branch_id=getattr(branch, "id", None),
        branch_code=code,
    )


def build_mssql(branch: Any, data_root: str) -> ConnectionDescriptor:
    host, port, database = _require_server_fields(branch, DatabaseProvider.MSSQL)
    username = (getattr(branch, "db_username", None) or "").strip()
    password = getattr(branch, "db_password", None) or ""

    parts = [f"Server={host},{port}", f"Database={database}"]
    query: dict[str, str] = {"driver": settings.mssql_odbc_driver}
    if username:
        parts.append(f"User Id={username}")
        parts.append(f"Password={password}")
    else:
        parts.append("Integrated Security=true")
        query["Trusted_Connection"] = "yes"

    if getattr(branch, "trust_server_certificate", False):
        parts.append("TrustServerCertificate=True")
        query["TrustServerCertificate"] = "yes"

    _append_passthrough(parts, branch)
    query.update(parse_additional_params(getattr(branch, "db_additional_params", None)))

    return ConnectionDescriptor(
        provider=DatabaseProvider.MSSQL,
        connection_string=";".join(parts),
        url=URL.create(
            "mssql+aioodbc",
            username=username or None,
            password=password if username else None,
            host=host,
            port=port,
            database=database,
            query=query,
        ),
        database_name=database,
        branch_id=getattr(branch, "id", None),
        branch_code=getattr(branch, "code", None),
    )


def build_postgresql(branch: Any, data_root: str) -> ConnectionDescriptor:
    host, port, database = _require_server_fields(branch, DatabaseProvider.POSTGRESQL)
    username, password = _require_credentials(branch, DatabaseProvider.POSTGRESQL)
    ssl_mode = coerce_ssl_mode(getattr(branch, "ssl_mode", None))

    parts = [
        f"Host={host}",
        f"Port={port}",
        f"Database={database}",
        f"Username={username}",
        f"Password={password}",
        f"SSL Mode={_POSTGRES_SSL_NAMES[ssl_mode]}",
    ]
    _append_passthrough(parts, branch)

    connect_args: dict[str, Any] = {"ssl": _ASYNCPG_SSL[ssl_mode]}
    connect_args.update(
        driver_params(
            parse_additional_params(getattr(branch, "db_additional_params", None)),
            _ASYNCPG_PASSTHROUGH,
            branch,
        )
    )

    return ConnectionDescriptor(
        provider=DatabaseProvider.POSTGRESQL,
        connection_string=";".join(parts),
        url=URL.create(
            "postgresql+asyncpg",
            username=username,
            password=password,
            host=host,
            port=port,
            database=database,
        ),
        connect_args=connect_args,
        database_name=database,
        branch_id=getattr(branch, "id", None),
        branch_code=getattr(branch, "code", None),
    )


def _mysql_ssl_context(ssl_mode: SslMode) -> Optional[ssl.SSLContext]:
    if ssl_mode == SslMode.DISABLE:
        return None
    context = ssl.create_default_context()
    if ssl_mode == SslMode.REQUIRE:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    elif ssl_mode == SslMode.VERIFY_CA:
        context.check_hostname = False
    return context


def build_mysql(branch: Any, data_root: str) -> ConnectionDescriptor:
    host, port, database = _require_server_fields(branch, DatabaseProvider.MYSQL)
    username, password = _require_credentials(branch, DatabaseProvider.MYSQL)
    ssl_mode = coerce_ssl_mode(getattr(branch, "ssl_mode", None))

    parts = [
        f"Server={host}",
        f"Port={port}",
        f"Database={database}",
        f"Uid={username}",
        f"Pwd={password}",
        f"SSL Mode={_MYSQL_SSL_NAMES[ssl_mode]}",
        # caching_sha2_password over plain connections needs the server's RSA key
        "AllowPublicKeyRetrieval=True",
    ]
    _append_passthrough(parts, branch)

    query = {"charset": "utf8mb4"}
    connect_args: dict[str, Any] = driver_params(
        parse_additional_params(getattr(branch, "db_additional_params", None)),
        _AIOMYSQL_PASSTHROUGH,
        branch,
    )
    context = _mysql_ssl_context(ssl_mode)
    if context is not None:
        connect_args["ssl"] = context

    return ConnectionDescriptor(
        provider=DatabaseProvider.MYSQL,
        connection_string=";".join(parts),
        url=URL.create(
            "mysql+aiomysql",
            username=username,
            password=password,
            host=host,
            port=port,
            database=database,
            query=query,
        ),
        connect_args=connect_args,
        database_name=database,
        branch_id=getattr(branch, "id", None),
        branch_code=getattr(branch, "code", None),
    )


_BUILDERS: dict[DatabaseProvider, Callable[[Any, str], ConnectionDescriptor]] = {
    DatabaseProvider.SQLITE: build_sqlite,
    DatabaseProvider.MSSQL: build_mssql,
    DatabaseProvider.POSTGRESQL: build_postgresql,
    DatabaseProvider.MYSQL: build_mysql,
}


def build_descriptor(branch: Any, data_root: Optional[str] = None) -> ConnectionDescriptor:
    """Build the connection descriptor for ``branch``.

    Raises ``ConfigurationError`` for an unsupported dialect or missing
    required fields; never returns a partial descriptor.
    """
    provider = coerce_provider(getattr(branch, "database_provider", None))
    descriptor = _BUILDERS[provider](branch, data_root or settings.branch_data_root)
    logger.debug(
        "Built %s descriptor: %s",
        provider.value,
        descriptor.masked,
        extra={"branch_code": getattr(branch, "code", None), "provider": provider.value},
    )
    return descriptor


def try_build_descriptor(branch: Any, data_root: Optional[str] = None) -> DescriptorResult:
    """Like ``build_descriptor`` but reports configuration errors as a value."""
    try:
        return DescriptorResult(descriptor=build_descriptor(branch, data_root))
    except ConfigurationError as exc:
        if exc.branch_id is None:
            exc.branch_id = getattr(branch, "id", None)
        return DescriptorResult(error=exc)
