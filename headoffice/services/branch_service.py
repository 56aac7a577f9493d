"""Branch administration: CRUD plus the cache and provisioning side effects."""

from __future__ import annotations

import logging
import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from headoffice.config import settings
from headoffice.errors import (
    BranchConflictError,
    BranchNotFoundError,
    HeadOfficeError,
    describe_exception,
)
from headoffice.models.branch import (
    CONNECTION_FIELDS,
    Branch,
    BranchCreate,
    BranchUpdate,
    ConnectionTestResult,
)
from headoffice.models.migration_state import MigrationResult
from headoffice.services.branch_migrations import BranchMigrationManager
from headoffice.tenancy.context_factory import DbContextFactory, db_context_factory
from headoffice.utils.time import utc_now_naive

logger = logging.getLogger("headoffice.branches")


def _stored(value: object) -> object:
    # Enums are persisted by value.
    return getattr(value, "value", value)


class BranchService:
    def __init__(
        self,
        session: AsyncSession,
        factory: Optional[DbContextFactory] = None,
        auto_provision: Optional[bool] = None,
    ) -> None:
        self.session = session
        self.factory = factory if factory is not None else db_context_factory
        self.auto_provision = settings.auto_provision_branches if auto_provision is None else auto_provision
        self.migrations = BranchMigrationManager(session, self.factory)

    async def list_branches(self, include_inactive: bool = False) -> list[Branch]:
        query = select(Branch).order_by(Branch.code)
        if not include_inactive:
            query = query.where(Branch.is_active)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_branch(self, branch_id: str) -> Branch:
        branch = await self.session.get(Branch, branch_id)
        if branch is None:
            raise BranchNotFoundError(f"Branch {branch_id} not found", branch_id=branch_id)
        return branch

    async def get_branch_by_code(self, code: str) -> Optional[Branch]:
        result = await self.session.execute(select(Branch).where(Branch.code == code.upper()))
        return result.scalar_one_or_none()

    async def create_branch(self, data: BranchCreate) -> Branch:
        if await self.get_branch_by_code(data.code) is not None:
            raise BranchConflictError(f"Branch code {data.code} already exists")

        branch = Branch(**{key: _stored(value) for key, value in data.model_dump().items()})
        now = utc_now_naive()
        branch.created_at = now
        branch.updated_at = now
        self.session.add(branch)
        await self.session.commit()
        await self.session.refresh(branch)
        logger.info("Created branch %s", branch.code, extra={"branch_id": branch.id, "provider": branch.database_provider})

        if self.auto_provision and branch.is_active:
            await self._provision_quietly(branch)
        return branch

    async def update_branch(self, branch_id: str, data: BranchUpdate) -> Branch:
        branch = await self.get_branch(branch_id)
        changes = data.model_dump(exclude_unset=True)

        connection_changed = False
        for key, value in changes.items():
            value = _stored(value)
            if getattr(branch, key) == value:
                continue
            setattr(branch, key, value)
            if key in CONNECTION_FIELDS:
                connection_changed = True

        branch.updated_at = utc_now_naive()
        await self.session.commit()
        await self.session.refresh(branch)

        if connection_changed:
            # Later handles must see the new server or credentials.
            self.factory.invalidate_context(branch.id)
            logger.info("Connection settings changed for branch %s", branch.code, extra={"branch_id": branch.id})
            if self.auto_provision and branch.is_active:
                await self._provision_quietly(branch)
        return branch

    async def deactivate_branch(self, branch_id: str) -> Branch:
        branch = await self.get_branch(branch_id)
        branch.is_active = False
        branch.updated_at = utc_now_naive()
        await self.session.commit()
        self.factory.invalidate_context(branch.id)
        logger.info("Deactivated branch %s", branch.code, extra={"branch_id": branch.id})
        return branch

    async def test_connection(self, branch_id: str) -> ConnectionTestResult:
        branch = await self.get_branch(branch_id)
        started = time.perf_counter()
        try:
            async with self.factory.create_branch_context(branch) as ctx:
                ok = await ctx.test_connection()
        except HeadOfficeError as exc:
            logger.warning(
                "Connection test failed for branch %s: %s",
                branch.code,
                exc.message,
                extra={"branch_id": branch.id},
            )
            return ConnectionTestResult(success=False, message=describe_exception(exc))

        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        if not ok:
            return ConnectionTestResult(success=False, message="Unexpected response to SELECT 1", latency_ms=latency_ms)
        return ConnectionTestResult(success=True, message="Connection successful", latency_ms=latency_ms)

    async def provision_branch(self, branch_id: str) -> MigrationResult:
        await self.get_branch(branch_id)
        return await self.migrations.apply_migrations(branch_id)

    async def _provision_quietly(self, branch: Branch) -> None:
        result = await self.migrations.apply_migrations(branch.id)
        if not result.success:
            logger.warning(
                "Auto-provisioning failed for branch %s: %s",
                branch.code,
                result.error_message,
                extra={"branch_id": branch.id},
            )
