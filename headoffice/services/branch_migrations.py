"""Branch schema ensure/migrate orchestration.

``ensure_branch_schema`` brings one branch database up to the current head.
``apply_migrations`` wraps it with head office bookkeeping (status, retries,
a per-branch lock) and ``ensure_all_branches`` sweeps every active branch,
recording each branch's outcome without letting one failure stop the rest.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import timedelta
from typing import Optional

from alembic.util.exc import CommandError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from headoffice.config import settings
from headoffice.errors import (
    BranchNotFoundError,
    HeadOfficeError,
    SchemaOperationError,
    describe_exception,
)
from headoffice.models.branch import Branch
from headoffice.models.migration_state import (
    BranchMigrationState,
    MigrationHistory,
    MigrationResult,
    MigrationStateResponse,
    MigrationStatus,
)
from headoffice.tenancy.context_factory import DbContextFactory, db_context_factory
from headoffice.tenancy.migrations import BranchMigrationRunner
from headoffice.tenancy.schema import ensure_database_exists
from headoffice.utils.time import utc_now_naive

logger = logging.getLogger("headoffice.migrations")

# Serializes lock-row reads and writes within this process.
_state_lock = asyncio.Lock()


class BranchMigrationManager:
    """Applies branch schema revisions and tracks their state per branch."""

    def __init__(
        self,
        session: AsyncSession,
        factory: Optional[DbContextFactory] = None,
        max_retries: Optional[int] = None,
        lock_timeout_minutes: Optional[int] = None,
    ) -> None:
        self.session = session
        self.factory = factory if factory is not None else db_context_factory
        self.max_retries = max_retries if max_retries is not None else settings.migration_max_retries
        self.lock_timeout = timedelta(
            minutes=lock_timeout_minutes
            if lock_timeout_minutes is not None
            else settings.migration_lock_timeout_minutes
        )

    # ── Core ensure step ─────────────────────────────────────

    async def ensure_branch_schema(self, branch: Branch, target: Optional[str] = None) -> list[str]:
        """Create the branch database if needed and apply pending revisions.

        ``ConfigurationError`` and ``BranchConnectionError`` propagate as-is;
        any other schema failure is raised as ``SchemaOperationError``.
        Returns the revisions applied by this call.
        """
        logger.info("Ensuring database schema for branch %s", branch.code, extra={"branch_id": branch.id})
        descriptor = self.factory.descriptor_for(branch)
        try:
            await ensure_database_exists(descriptor)
            async with self.factory.create_branch_context(branch) as ctx:
                runner = BranchMigrationRunner(ctx)
                applied = await runner.upgrade(target)
                if target is None and not await runner.validate():
                    raise SchemaOperationError(
                        "Schema integrity validation failed after applying migrations",
                        branch_id=branch.id,
                    )
        except HeadOfficeError:
            raise
        except (SQLAlchemyError, CommandError) as exc:
            raise SchemaOperationError(
                f"Schema update failed for branch {branch.code}: {describe_exception(exc)}",
                branch_id=branch.id,
            ) from exc

        if applied:
            logger.info(
                "Branch database schema updated for %s: %s",
                branch.code,
                ", ".join(applied),
                extra={"branch_id": branch.id},
            )
        else:
            logger.info("No pending migrations for branch %s", branch.code, extra={"branch_id": branch.id})
        return applied

    # ── Tracked migration runs ───────────────────────────────

    async def apply_migrations(self, branch_id: str, target: Optional[str] = None) -> MigrationResult:
        started = time.perf_counter()
        result = MigrationResult()

        branch = await self.session.get(Branch, branch_id)
        if branch is None:
            result.error_message = "Branch not found"
            result.duration_ms = _elapsed_ms(started)
            return result

        owner = await self._acquire_lock(branch_id)
        if owner is None:
            logger.warning("Cannot acquire migration lock for branch %s", branch.code, extra={"branch_id": branch_id})
            result.error_message = "Migration already in progress for this branch"
            result.duration_ms = _elapsed_ms(started)
            return result

        result.branches_processed = 1
        try:
            await self._update_state(branch_id, MigrationStatus.IN_PROGRESS)
            try:
                applied = await self.ensure_branch_schema(branch, target)
            except HeadOfficeError as exc:
                logger.error(
                    "Error applying migrations to branch %s: %s",
                    branch.code,
                    exc.message,
                    extra={"branch_id": branch_id},
                )
                await self._record_failure(branch_id, exc)
                result.error_message = exc.message
                result.branches_failed = 1
            except Exception as exc:
                logger.exception(
                    "Unexpected error applying migrations to branch %s",
                    branch.code,
                    extra={"branch_id": branch_id},
                )
                error = SchemaOperationError(describe_exception(exc), branch_id=branch_id)
                await self._record_failure(branch_id, error)
                result.error_message = error.message
                result.branches_failed = 1
            else:
                last = await self._last_applied(branch)
                await self._update_state(branch_id, MigrationStatus.COMPLETED, last_migration=last)
                result.success = True
                result.applied_migrations = applied
                result.branches_succeeded = 1
                if not applied:
                    result.error_message = "No pending migrations"
        finally:
            await self._release_lock(branch_id, owner)
            result.duration_ms = _elapsed_ms(started)

        return result

    async def ensure_all_branches(self) -> MigrationResult:
        """Migrate every active branch, isolating failures per branch."""
        started = time.perf_counter()
        result = MigrationResult(success=True)
        failed_codes: list[str] = []

        branches = await self._active_branches()
        logger.info("Found %d active branches to check", len(branches))

        for branch in branches:
            code, branch_id = branch.code, branch.id
            try:
                branch_result = await self.apply_migrations(branch_id)
            except Exception as exc:
                logger.exception("Unexpected error migrating branch %s", code, extra={"branch_id": branch_id})
                await self.session.rollback()
                branch_result = MigrationResult(error_message=describe_exception(exc))

            result.branches_processed += 1
            if branch_result.success:
                result.branches_succeeded += 1
                result.applied_migrations.extend(f"[{code}] {rev}" for rev in branch_result.applied_migrations)
            else:
                result.branches_failed += 1
                result.success = False
                failed_codes.append(code)
                result.branch_errors[code] = branch_result.error_message or "Unknown error"

        if failed_codes:
            result.error_message = "Failed branches: " + ", ".join(failed_codes)
        result.duration_ms = _elapsed_ms(started)

        logger.info(
            "Completed branch migration sweep: %d/%d succeeded in %.0fms",
            result.branches_succeeded,
            result.branches_processed,
            result.duration_ms,
        )
        return result

    apply_migrations_to_all_branches = ensure_all_branches

    # ── Inspection ───────────────────────────────────────────

    async def get_pending_migrations(self, branch_id: str) -> list[str]:
        branch = await self._require_branch(branch_id)
        async with self.factory.create_branch_context(branch) as ctx:
            return await BranchMigrationRunner(ctx).pending()

    async def get_migration_history(self, branch_id: str) -> MigrationHistory:
        branch = await self._require_branch(branch_id)
        state = await self._get_or_create_state(branch_id)
        async with self.factory.create_branch_context(branch) as ctx:
            runner = BranchMigrationRunner(ctx)
            applied = await runner.applied()
            pending = await runner.pending()

        return MigrationHistory(
            branch_id=branch.id,
            branch_code=branch.code,
            applied_migrations=applied,
            pending_migrations=pending,
            last_migration_date=state.last_attempt_at,
            status=state.status,
            retry_count=state.retry_count,
            error_details=state.error_details,
        )

    async def validate_branch_database(self, branch_id: str) -> bool:
        branch = await self.session.get(Branch, branch_id)
        if branch is None:
            return False
        try:
            async with self.factory.create_branch_context(branch) as ctx:
                return await BranchMigrationRunner(ctx).validate()
        except (HeadOfficeError, SQLAlchemyError):
            logger.exception("Error validating branch database %s", branch.code, extra={"branch_id": branch_id})
            return False

    async def rollback_last_migration(self, branch_id: str) -> MigrationResult:
        started = time.perf_counter()
        result = MigrationResult(branches_processed=1)
        branch = await self._require_branch(branch_id)

        owner = await self._acquire_lock(branch_id)
        if owner is None:
            result.branches_processed = 0
            result.error_message = "Migration already in progress for this branch"
            result.duration_ms = _elapsed_ms(started)
            return result

        try:
            async with self.factory.create_branch_context(branch) as ctx:
                runner = BranchMigrationRunner(ctx)
                reverted = await runner.downgrade_one()
                current = await runner.current()
        except (HeadOfficeError, SQLAlchemyError, CommandError) as exc:
            logger.error("Rollback failed for branch %s: %s", branch.code, describe_exception(exc))
            result.error_message = describe_exception(exc)
            result.branches_failed = 1
        else:
            if reverted is None:
                result.error_message = "No migrations to roll back"
            else:
                result.applied_migrations = [reverted]
                await self._update_state(branch_id, MigrationStatus.PENDING, last_migration=current or "")
            result.success = True
            result.branches_succeeded = 1
        finally:
            await self._release_lock(branch_id, owner)
            result.duration_ms = _elapsed_ms(started)

        return result

    async def list_states(self) -> list[MigrationStateResponse]:
        rows = await self.session.execute(
            select(BranchMigrationState, Branch.code)
            .join(Branch, Branch.id == BranchMigrationState.branch_id)
            .order_by(Branch.code)
        )
        return [
            MigrationStateResponse(
                branch_id=state.branch_id,
                branch_code=code,
                last_migration_applied=state.last_migration_applied,
                status=state.status,
                last_attempt_at=state.last_attempt_at,
                retry_count=state.retry_count,
                error_details=state.error_details,
                is_locked=state.lock_owner_id is not None,
                lock_expires_at=state.lock_expires_at,
            )
            for state, code in rows.all()
        ]

    # ── State bookkeeping ────────────────────────────────────

    async def _require_branch(self, branch_id: str) -> Branch:
        branch = await self.session.get(Branch, branch_id)
        if branch is None:
            raise BranchNotFoundError(f"Branch {branch_id} not found", branch_id=branch_id)
        return branch

    async def _active_branches(self) -> list[Branch]:
        rows = await self.session.execute(
            select(Branch).where(Branch.is_active).order_by(Branch.code)
        )
        return list(rows.scalars().all())

    async def _last_applied(self, branch: Branch) -> str:
        async with self.factory.create_branch_context(branch) as ctx:
            return await BranchMigrationRunner(ctx).current() or ""

    async def _get_or_create_state(self, branch_id: str) -> BranchMigrationState:
        result = await self.session.execute(
            select(BranchMigrationState).where(BranchMigrationState.branch_id == branch_id)
        )
        state = result.scalar_one_or_none()
        if state is None:
            now = utc_now_naive()
            state = BranchMigrationState(
                branch_id=branch_id,
                status=MigrationStatus.PENDING.value,
                last_migration_applied="",
                retry_count=0,
                last_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            self.session.add(state)
            await self.session.commit()
        return state

    async def _acquire_lock(self, branch_id: str) -> Optional[str]:
        async with _state_lock:
            state = await self._get_or_create_state(branch_id)
            now = utc_now_naive()

            if state.lock_expires_at is not None and state.lock_expires_at < now:
                logger.warning("Migration lock expired for branch %s, clearing", branch_id, extra={"branch_id": branch_id})
                state.lock_owner_id = None
                state.lock_expires_at = None

            if state.lock_owner_id:
                return None

            owner = str(uuid.uuid4())
            state.lock_owner_id = owner
            state.lock_expires_at = now + self.lock_timeout
            state.updated_at = now
            await self.session.commit()
            return owner

    async def _release_lock(self, branch_id: str, owner: str) -> None:
        async with _state_lock:
            result = await self.session.execute(
                select(BranchMigrationState).where(BranchMigrationState.branch_id == branch_id)
            )
            state = result.scalar_one_or_none()
            if state is None or state.lock_owner_id != owner:
                return
            state.lock_owner_id = None
            state.lock_expires_at = None
            state.updated_at = utc_now_naive()
            await self.session.commit()

    async def _update_state(
        self,
        branch_id: str,
        status: MigrationStatus,
        last_migration: Optional[str] = None,
    ) -> None:
        state = await self._get_or_create_state(branch_id)
        now = utc_now_naive()
        state.status = status.value
        state.last_attempt_at = now
        state.updated_at = now
        if last_migration is not None:
            state.last_migration_applied = last_migration
        if status == MigrationStatus.COMPLETED:
            state.retry_count = 0
            state.error_details = None
        await self.session.commit()

    async def _record_failure(self, branch_id: str, exc: HeadOfficeError) -> None:
        state = await self._get_or_create_state(branch_id)
        now = utc_now_naive()
        state.retry_count += 1
        state.status = (
            MigrationStatus.REQUIRES_MANUAL_INTERVENTION.value
            if state.retry_count >= self.max_retries
            else MigrationStatus.FAILED.value
        )
        state.error_details = exc.message
        state.last_attempt_at = now
        state.updated_at = now
        await self.session.commit()
        logger.info(
            "Updated migration state for branch %s: status=%s retry_count=%d",
            branch_id,
            state.status,
            state.retry_count,
            extra={"branch_id": branch_id},
        )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
