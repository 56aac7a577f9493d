"""Per-branch migration bookkeeping stored in the head office database."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from pydantic import BaseModel, Field

from headoffice.database import Base


class MigrationStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    REQUIRES_MANUAL_INTERVENTION = "requires_manual_intervention"


class BranchMigrationState(Base):
    __tablename__ = "branch_migration_states"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    branch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("branches.id", ondelete="CASCADE"), unique=True, index=True
    )
    last_migration_applied: Mapped[str] = mapped_column(String(150), default="")
    status: Mapped[str] = mapped_column(String(40), default=MigrationStatus.PENDING.value, index=True)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Single-flight lock: owner token plus expiry so a crashed holder is recoverable.
    lock_owner_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    lock_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


# ── Pydantic Schemas ─────────────────────────────────────────

class MigrationResult(BaseModel):
    success: bool = False
    error_message: str | None = None
    applied_migrations: list[str] = Field(default_factory=list)
    branches_processed: int = 0
    branches_succeeded: int = 0
    branches_failed: int = 0
    # Branch code -> error message, filled by sweeps.
    branch_errors: dict[str, str] = Field(default_factory=dict)
    duration_ms: float = 0.0


class MigrationHistory(BaseModel):
    branch_id: str
    branch_code: str
    applied_migrations: list[str]
    pending_migrations: list[str]
    last_migration_date: Optional[datetime] = None
    status: str
    retry_count: int
    error_details: Optional[str] = None


class MigrationStateResponse(BaseModel):
    branch_id: str
    branch_code: str
    last_migration_applied: str
    status: str
    last_attempt_at: Optional[datetime] = None
    retry_count: int
    error_details: Optional[str] = None
    is_locked: bool
    lock_expires_at: Optional[datetime] = None
