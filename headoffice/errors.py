"""Typed errors raised by the branch routing core and the admin flow."""

from __future__ import annotations

from typing import Any, Optional


class HeadOfficeError(Exception):
    """Base exception for all head office errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        branch_id: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.branch_id = branch_id
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.branch_id:
            error["branch_id"] = self.branch_id
        return {"error": error}


class ConfigurationError(HeadOfficeError):
    """Branch connection settings are unsupported or inconsistent."""

    def __init__(self, message: str = "Invalid branch database configuration", branch_id: Optional[str] = None) -> None:
        super().__init__(code="CONFIGURATION_ERROR", message=message, status_code=400, branch_id=branch_id)


class BranchConnectionError(HeadOfficeError, ConnectionError):
    """The driver could not open or use a branch connection."""

    def __init__(self, message: str = "Branch database connection failed", branch_id: Optional[str] = None) -> None:
        super().__init__(code="CONNECTION_ERROR", message=message, status_code=503, branch_id=branch_id)


class SchemaOperationError(HeadOfficeError):
    def __init__(self, message: str = "Branch schema operation failed", branch_id: Optional[str] = None) -> None:
        super().__init__(code="SCHEMA_OPERATION_ERROR", message=message, status_code=500, branch_id=branch_id)


class BranchNotFoundError(HeadOfficeError):
    def __init__(self, message: str = "Branch not found", branch_id: Optional[str] = None) -> None:
        super().__init__(code="BRANCH_NOT_FOUND", message=message, status_code=404, branch_id=branch_id)


class BranchConflictError(HeadOfficeError):
    def __init__(self, message: str = "Branch already exists", branch_id: Optional[str] = None) -> None:
        super().__init__(code="BRANCH_CONFLICT", message=message, status_code=409, branch_id=branch_id)


def describe_exception(exc: BaseException) -> str:
    """Flatten an exception and its causes into one ``a -> b`` message."""
    parts: list[str] = []
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        message = str(current).strip() or current.__class__.__name__
        if message not in parts:
            parts.append(message)
        current = current.__cause__ or current.__context__
    return " -> ".join(parts)
