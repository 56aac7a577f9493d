"""Tests for per-dialect connection descriptor building."""

from __future__ import annotations

import ssl
from pathlib import Path

import pytest

from headoffice.errors import ConfigurationError
from headoffice.models.branch import DatabaseProvider
from headoffice.tenancy.connection_strings import (
    build_descriptor,
    coerce_provider,
    coerce_ssl_mode,
    mask_connection_string,
    parse_additional_params,
    try_build_descriptor,
)


def test_sqlite_path_derives_from_code_and_creates_directory(make_branch, data_root):
    branch = make_branch(code="RUH01", db_server="ignored-host", db_port=9999, db_name="ignored")

    descriptor = build_descriptor(branch, data_root)

    expected = Path(data_root) / "Branches" / "RUH01" / "Database" / "RUH01.db"
    assert descriptor.provider == DatabaseProvider.SQLITE
    assert descriptor.connection_string == f"Data Source={expected.as_posix()}"
    assert descriptor.url.drivername == "sqlite+aiosqlite"
    assert descriptor.url.database == expected.as_posix()
    assert expected.parent.is_dir()
    # No connection is opened, so the file itself does not exist yet.
    assert not expected.exists()


@pytest.mark.parametrize("code", ["", "../evil", "a/b", "B 1"])
def test_sqlite_rejects_unsafe_codes(make_branch, data_root, code):
    with pytest.raises(ConfigurationError):
        build_descriptor(make_branch(code=code), data_root)


def test_mssql_with_credentials(make_branch, data_root):
    branch = make_branch(
        database_provider="mssql",
        db_server="sql.branch.local",
        db_port=1433,
        db_name="POS_JED",
        db_username="pos",
        db_password="s3cret",
    )

    descriptor = build_descriptor(branch, data_root)

    assert descriptor.connection_string == (
        "Server=sql.branch.local,1433;Database=POS_JED;User Id=pos;Password=s3cret"
    )
    assert descriptor.url.drivername == "mssql+aioodbc"
    assert descriptor.url.query["driver"]
    assert "Trusted_Connection" not in descriptor.url.query


def test_mssql_without_username_uses_integrated_security(make_branch, data_root):
    branch = make_branch(
        database_provider="mssql",
        db_server="sql.branch.local",
        db_name="POS_JED",
        trust_server_certificate=True,
    )

    descriptor = build_descriptor(branch, data_root)

    assert descriptor.connection_string == (
        "Server=sql.branch.local,1433;Database=POS_JED;Integrated Security=true;TrustServerCertificate=True"
    )
    assert descriptor.url.query["Trusted_Connection"] == "yes"
    assert descriptor.url.query["TrustServerCertificate"] == "yes"
    assert descriptor.url.username is None


def test_postgresql_ssl_modes_and_default_port(make_branch, data_root):
    branch = make_branch(
        database_provider="postgresql",
        db_server="pg.branch.local",
        db_name="pos_dmm",
        db_username="pos",
        db_password="pw",
        ssl_mode="verify_full",
    )

    descriptor = build_descriptor(branch, data_root)

    assert descriptor.connection_string == (
        "Host=pg.branch.local;Port=5432;Database=pos_dmm;Username=pos;Password=pw;SSL Mode=VerifyFull"
    )
    assert descriptor.url.drivername == "postgresql+asyncpg"
    assert descriptor.url.port == 5432
    assert descriptor.connect_args == {"ssl": "verify-full"}
    assert descriptor.server_url().database == "postgres"


def test_postgresql_requires_username(make_branch, data_root):
    branch = make_branch(database_provider="postgresql", db_server="pg", db_name="pos")
    with pytest.raises(ConfigurationError, match="username"):
        build_descriptor(branch, data_root)


def test_mysql_always_allows_public_key_retrieval(make_branch, data_root):
    for mode, label in [("disable", "None"), ("require", "Required")]:
        branch = make_branch(
            database_provider="mysql",
            db_server="mysql.branch.local",
            db_name="pos_mak",
            db_username="pos",
            db_password="pw",
            ssl_mode=mode,
        )
        descriptor = build_descriptor(branch, data_root)

        assert descriptor.connection_string.startswith(
            "Server=mysql.branch.local;Port=3306;Database=pos_mak;Uid=pos;Pwd=pw;"
        )
        assert f"SSL Mode={label}" in descriptor.connection_string
        assert descriptor.connection_string.endswith("AllowPublicKeyRetrieval=True")
        assert descriptor.url.drivername == "mysql+aiomysql"
        assert descriptor.server_url().database is None

    assert isinstance(descriptor.connect_args["ssl"], ssl.SSLContext)


def test_additional_params_pass_through_verbatim(make_branch, data_root):
    branch = make_branch(
        database_provider="postgresql",
        db_server="pg",
        db_name="pos",
        db_username="pos",
        db_password="pw",
        db_additional_params="Timeout=30;Pooling=true",
    )

    descriptor = build_descriptor(branch, data_root)

    assert descriptor.connection_string.endswith(";SSL Mode=Disable;Timeout=30;Pooling=true")
    # Only keys asyncpg accepts reach the driver, under its own names.
    assert dict(descriptor.url.query) == {}
    assert descriptor.connect_args == {"ssl": "disable", "timeout": 30.0}


def test_mysql_passthrough_maps_connection_timeout(make_branch, data_root):
    branch = make_branch(
        database_provider="mysql",
        db_server="m",
        db_name="pos",
        db_username="pos",
        db_password="pw",
        db_additional_params="ConnectionTimeout=5;Pooling=true",
    )

    descriptor = build_descriptor(branch, data_root)

    assert descriptor.connection_string.endswith(";ConnectionTimeout=5;Pooling=true")
    assert dict(descriptor.url.query) == {"charset": "utf8mb4"}
    assert descriptor.connect_args == {"connect_timeout": 5.0}


def test_non_numeric_driver_timeout_is_configuration_error(make_branch, data_root):
    branch = make_branch(
        id="b-7",
        database_provider="postgresql",
        db_server="pg",
        db_name="pos",
        db_username="pos",
        db_additional_params="Command Timeout=soon",
    )

    with pytest.raises(ConfigurationError, match="numeric") as excinfo:
        build_descriptor(branch, data_root)
    assert excinfo.value.branch_id == "b-7"


def test_malformed_additional_params_rejected():
    with pytest.raises(ConfigurationError):
        parse_additional_params("Timeout=30;garbage")
    assert parse_additional_params(None) == {}
    assert parse_additional_params(" a=1 ; ;b = 2;") == {"a": "1", "b": "2"}


@pytest.mark.parametrize("provider", ["mssql", "postgresql", "mysql"])
def test_server_dialects_require_host_and_database(make_branch, data_root, provider):
    with pytest.raises(ConfigurationError, match="server"):
        build_descriptor(make_branch(database_provider=provider, db_name="pos", db_username="u"), data_root)
    with pytest.raises(ConfigurationError, match="database name"):
        build_descriptor(make_branch(database_provider=provider, db_server="h", db_username="u"), data_root)


def test_unsupported_provider_is_configuration_error(make_branch, data_root):
    with pytest.raises(ConfigurationError, match="not supported"):
        build_descriptor(make_branch(database_provider="oracle"), data_root)


def test_try_build_descriptor_reports_error_as_value(make_branch, data_root):
    failed = try_build_descriptor(make_branch(id="b-9", database_provider="oracle"), data_root)
    assert not failed.ok
    assert failed.descriptor is None
    assert failed.error.branch_id == "b-9"
    with pytest.raises(ConfigurationError):
        failed.unwrap()

    built = try_build_descriptor(make_branch(), data_root)
    assert built.ok
    assert built.unwrap().provider == DatabaseProvider.SQLITE


def test_provider_and_ssl_coercion():
    assert coerce_provider("PostgreSQL") == DatabaseProvider.POSTGRESQL
    assert coerce_provider("1") == DatabaseProvider.MSSQL
    assert coerce_provider("sqlserver") == DatabaseProvider.MSSQL
    assert coerce_provider(DatabaseProvider.MYSQL) == DatabaseProvider.MYSQL
    assert coerce_ssl_mode(None).value == "disable"
    assert coerce_ssl_mode("verify-ca").value == "verify_ca"
    with pytest.raises(ConfigurationError):
        coerce_ssl_mode("sometimes")


def test_passwords_are_masked_in_text_forms(make_branch, data_root):
    branch = make_branch(
        database_provider="mysql",
        db_server="m",
        db_name="pos",
        db_username="pos",
        db_password="hunter2",
    )
    descriptor = build_descriptor(branch, data_root)

    assert "hunter2" in descriptor.connection_string
    assert "hunter2" not in str(descriptor)
    assert "hunter2" not in repr(descriptor)
    assert mask_connection_string("Server=x;Password=abc;Pwd=def") == "Server=x;Password=***;Pwd=***"
