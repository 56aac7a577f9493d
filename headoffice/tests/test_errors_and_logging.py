from __future__ import annotations

import logging

from headoffice.errors import (
    BranchConnectionError,
    ConfigurationError,
    SchemaOperationError,
    describe_exception,
)
from headoffice.logging_config import JSONFormatter


def test_error_payloads_carry_code_and_branch():
    err = SchemaOperationError("Schema update failed", branch_id="b-1")

    assert err.status_code == 500
    assert err.to_dict() == {
        "error": {"code": "SCHEMA_OPERATION_ERROR", "message": "Schema update failed", "branch_id": "b-1"}
    }
    assert ConfigurationError().to_dict()["error"]["code"] == "CONFIGURATION_ERROR"


def test_connection_error_is_builtin_connection_error():
    err = BranchConnectionError("down")
    assert isinstance(err, ConnectionError)
    assert err.status_code == 503


def test_describe_exception_flattens_causes():
    try:
        try:
            raise OSError("unable to open database file")
        except OSError as inner:
            raise BranchConnectionError("Cannot connect to branch B1") from inner
    except BranchConnectionError as exc:
        assert describe_exception(exc) == "Cannot connect to branch B1 -> unable to open database file"


def test_formatter_appends_branch_context():
    record = logging.LogRecord(
        name="headoffice.tenancy.cache",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Cached connection descriptor for branch %s",
        args=("RUH01",),
        exc_info=None,
    )
    record.branch_id = "b-1"
    record.provider = "sqlite"

    line = JSONFormatter().format(record)

    assert "Cached connection descriptor for branch RUH01" in line
    assert "branch_id=b-1" in line
    assert "provider=sqlite" in line
