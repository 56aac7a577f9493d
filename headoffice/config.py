"""Head office configuration loaded from environment variables."""

from __future__ import annotations

import json
from pydantic_settings import BaseSettings
from pydantic import Field, AliasChoices


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # Head office database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./headoffice.db",
        alias="DATABASE_URL",
    )
    auto_create_schema: bool = Field(default=True, alias="AUTO_CREATE_SCHEMA")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    cors_origins: str = Field(default='["http://localhost:3000"]', alias="CORS_ORIGINS")
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    strict_startup_validation: bool = Field(default=False, alias="STRICT_STARTUP_VALIDATION")

    # Admin JWT
    jwt_secret: str = Field(default="change-me-in-production-headoffice", alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    admin_roles: str = Field(default="admin", alias="ADMIN_ROLES")

    # Branch databases
    branch_data_root: str = Field(default="Upload", alias="BRANCH_DATA_ROOT")
    mssql_odbc_driver: str = Field(default="ODBC Driver 18 for SQL Server", alias="MSSQL_ODBC_DRIVER")
    auto_provision_branches: bool = Field(default=True, alias="AUTO_PROVISION_BRANCHES")

    # Branch migrations
    migration_sweep_enabled: bool = Field(default=True, alias="MIGRATION_SWEEP_ENABLED")
    migration_sweep_interval_seconds: int = Field(
        default=300,
        validation_alias=AliasChoices("MIGRATION_SWEEP_INTERVAL_SECONDS", "MIGRATION_SWEEP_INTERVAL"),
    )
    migration_sweep_initial_delay_seconds: int = Field(
        default=30, alias="MIGRATION_SWEEP_INITIAL_DELAY_SECONDS"
    )
    migration_max_retries: int = Field(default=3, alias="MIGRATION_MAX_RETRIES")
    migration_lock_timeout_minutes: int = Field(default=10, alias="MIGRATION_LOCK_TIMEOUT_MINUTES")

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"production", "prod"}

    @property
    def admin_roles_set(self) -> set[str]:
        return {role.strip().lower() for role in self.admin_roles.split(",") if role.strip()}

    @property
    def cors_origins_list(self) -> list[str]:
        raw = (self.cors_origins or "").strip()
        if not raw:
            return []

        # Supports JSON list format and comma-separated format.
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(origin).strip() for origin in parsed if str(origin).strip()]
            except json.JSONDecodeError:
                pass

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
