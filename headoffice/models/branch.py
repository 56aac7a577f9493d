"""Branch (tenant) model: one independently-configured branch database."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import BaseModel, Field, field_validator

from headoffice.database import Base


class DatabaseProvider(str, enum.Enum):
    SQLITE = "sqlite"
    MSSQL = "mssql"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class SslMode(str, enum.Enum):
    DISABLE = "disable"
    REQUIRE = "require"
    VERIFY_CA = "verify_ca"
    VERIFY_FULL = "verify_full"


# Fields whose change must invalidate the cached connection descriptor.
CONNECTION_FIELDS = (
    "database_provider",
    "db_server",
    "db_port",
    "db_name",
    "db_username",
    "db_password",
    "db_additional_params",
    "trust_server_certificate",
    "ssl_mode",
)

DEFAULT_PORTS = {
    DatabaseProvider.SQLITE: 0,
    DatabaseProvider.MSSQL: 1433,
    DatabaseProvider.POSTGRESQL: 5432,
    DatabaseProvider.MYSQL: 3306,
}


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    code: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    name_en: Mapped[str] = mapped_column(String(200))
    name_ar: Mapped[str] = mapped_column(String(200), default="")

    database_provider: Mapped[str] = mapped_column(String(20), default=DatabaseProvider.SQLITE.value)
    db_server: Mapped[str] = mapped_column(String(255), default="")
    db_port: Mapped[int] = mapped_column(Integer, default=0)
    db_name: Mapped[str] = mapped_column(String(100), default="")
    db_username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    db_password: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    db_additional_params: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    trust_server_certificate: Mapped[bool] = mapped_column(Boolean, default=False)
    ssl_mode: Mapped[str] = mapped_column(String(20), default=SslMode.DISABLE.value)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Branch {self.code} ({self.database_provider})>"


# ── Pydantic Schemas ─────────────────────────────────────────

class BranchCreate(BaseModel):
    code: str = Field(min_length=1, max_length=20, pattern=r"^[A-Z0-9]+$")
    name_en: str = Field(min_length=1, max_length=200)
    name_ar: str = Field(default="", max_length=200)
    database_provider: DatabaseProvider = DatabaseProvider.SQLITE
    db_server: str = Field(default="", max_length=255)
    db_port: int = Field(default=0, ge=0, le=65535)
    db_name: str = Field(default="", max_length=100)
    db_username: str | None = Field(default=None, max_length=100)
    db_password: str | None = Field(default=None, max_length=255)
    db_additional_params: str | None = Field(default=None, max_length=500)
    trust_server_certificate: bool = False
    ssl_mode: SslMode = SslMode.DISABLE
    is_active: bool = True

    @field_validator("code", mode="before")
    @classmethod
    def _upper_code(cls, value: object) -> object:
        return value.strip().upper() if isinstance(value, str) else value


class BranchUpdate(BaseModel):
    name_en: str | None = Field(default=None, max_length=200)
    name_ar: str | None = Field(default=None, max_length=200)
    database_provider: DatabaseProvider | None = None
    db_server: str | None = Field(default=None, max_length=255)
    db_port: int | None = Field(default=None, ge=0, le=65535)
    db_name: str | None = Field(default=None, max_length=100)
    db_username: str | None = Field(default=None, max_length=100)
    db_password: str | None = Field(default=None, max_length=255)
    db_additional_params: str | None = Field(default=None, max_length=500)
    trust_server_certificate: bool | None = None
    ssl_mode: SslMode | None = None
    is_active: bool | None = None


class BranchResponse(BaseModel):
    id: str
    code: str
    name_en: str
    name_ar: str
    database_provider: str
    db_server: str
    db_port: int
    db_name: str
    db_username: Optional[str] = None
    db_additional_params: Optional[str] = None
    trust_server_certificate: bool
    ssl_mode: str
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ConnectionTestResult(BaseModel):
    success: bool
    message: str
    latency_ms: float | None = None
