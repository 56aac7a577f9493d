"""Branch schema migration API endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from headoffice.api.auth import AdminPrincipal, require_admin
from headoffice.database import get_session
from headoffice.models.migration_state import (
    MigrationHistory,
    MigrationResult,
    MigrationStateResponse,
)
from headoffice.services.branch_migrations import BranchMigrationManager
from headoffice.tenancy.context_factory import DbContextFactory, get_context_factory

router = APIRouter(prefix="/api/v1/migrations", tags=["migrations"])
logger = logging.getLogger("headoffice.api.migrations")


def get_migration_manager(
    session: AsyncSession = Depends(get_session),
    factory: DbContextFactory = Depends(get_context_factory),
) -> BranchMigrationManager:
    return BranchMigrationManager(session, factory)


@router.get("/branches/status", response_model=list[MigrationStateResponse])
async def migration_status(
    manager: BranchMigrationManager = Depends(get_migration_manager),
    _: AdminPrincipal = Depends(require_admin),
):
    return await manager.list_states()


@router.post("/branches/apply-all", response_model=MigrationResult)
async def apply_to_all_branches(
    manager: BranchMigrationManager = Depends(get_migration_manager),
    principal: AdminPrincipal = Depends(require_admin),
):
    logger.info("Migration sweep requested by %s", principal.subject)
    return await manager.apply_migrations_to_all_branches()


@router.post("/branches/{branch_id}/apply", response_model=MigrationResult)
async def apply_to_branch(
    branch_id: str,
    target: str | None = Query(None, description="Revision to upgrade to; defaults to head"),
    manager: BranchMigrationManager = Depends(get_migration_manager),
    _: AdminPrincipal = Depends(require_admin),
):
    return await manager.apply_migrations(branch_id, target)


@router.get("/branches/{branch_id}/pending", response_model=list[str])
async def pending_migrations(
    branch_id: str,
    manager: BranchMigrationManager = Depends(get_migration_manager),
    _: AdminPrincipal = Depends(require_admin),
):
    return await manager.get_pending_migrations(branch_id)


@router.get("/branches/{branch_id}/history", response_model=MigrationHistory)
async def migration_history(
    branch_id: str,
    manager: BranchMigrationManager = Depends(get_migration_manager),
    _: AdminPrincipal = Depends(require_admin),
):
    return await manager.get_migration_history(branch_id)


@router.get("/branches/{branch_id}/validate")
async def validate_branch(
    branch_id: str,
    manager: BranchMigrationManager = Depends(get_migration_manager),
    _: AdminPrincipal = Depends(require_admin),
):
    is_valid = await manager.validate_branch_database(branch_id)
    return {"branch_id": branch_id, "is_valid": is_valid}


@router.post("/branches/{branch_id}/rollback", response_model=MigrationResult)
async def rollback_branch(
    branch_id: str,
    manager: BranchMigrationManager = Depends(get_migration_manager),
    principal: AdminPrincipal = Depends(require_admin),
):
    logger.warning("Rollback of branch %s requested by %s", branch_id, principal.subject)
    return await manager.rollback_last_migration(branch_id)
