"""Branch administration API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from headoffice.api.auth import AdminPrincipal, require_admin
from headoffice.database import get_session
from headoffice.models.branch import (
    BranchCreate,
    BranchResponse,
    BranchUpdate,
    ConnectionTestResult,
)
from headoffice.models.migration_state import MigrationResult
from headoffice.services.branch_service import BranchService
from headoffice.tenancy.context_factory import DbContextFactory, get_context_factory

router = APIRouter(prefix="/api/v1/branches", tags=["branches"])


def get_branch_service(
    session: AsyncSession = Depends(get_session),
    factory: DbContextFactory = Depends(get_context_factory),
) -> BranchService:
    return BranchService(session, factory)


@router.get("", response_model=list[BranchResponse])
async def list_branches(
    include_inactive: bool = Query(False),
    service: BranchService = Depends(get_branch_service),
    _: AdminPrincipal = Depends(require_admin),
):
    branches = await service.list_branches(include_inactive=include_inactive)
    return [BranchResponse.model_validate(b) for b in branches]


@router.post("", response_model=BranchResponse, status_code=201)
async def create_branch(
    data: BranchCreate,
    service: BranchService = Depends(get_branch_service),
    _: AdminPrincipal = Depends(require_admin),
):
    branch = await service.create_branch(data)
    return BranchResponse.model_validate(branch)


@router.post("/cache/invalidate")
async def invalidate_cache(
    branch_id: str | None = Query(None),
    factory: DbContextFactory = Depends(get_context_factory),
    _: AdminPrincipal = Depends(require_admin),
):
    """Drop cached connection descriptors for one branch or all branches."""
    removed = factory.invalidate_context(branch_id)
    return {"invalidated": removed, "branch_id": branch_id, "cache": factory.cache.stats()}


@router.get("/{branch_id}", response_model=BranchResponse)
async def get_branch(
    branch_id: str,
    service: BranchService = Depends(get_branch_service),
    _: AdminPrincipal = Depends(require_admin),
):
    return BranchResponse.model_validate(await service.get_branch(branch_id))


@router.patch("/{branch_id}", response_model=BranchResponse)
async def update_branch(
    branch_id: str,
    data: BranchUpdate,
    service: BranchService = Depends(get_branch_service),
    _: AdminPrincipal = Depends(require_admin),
):
    branch = await service.update_branch(branch_id, data)
    return BranchResponse.model_validate(branch)


@router.delete("/{branch_id}", response_model=BranchResponse)
async def deactivate_branch(
    branch_id: str,
    service: BranchService = Depends(get_branch_service),
    _: AdminPrincipal = Depends(require_admin),
):
    """Deactivate a branch. Its database is left untouched."""
    branch = await service.deactivate_branch(branch_id)
    return BranchResponse.model_validate(branch)


@router.post("/{branch_id}/test-connection", response_model=ConnectionTestResult)
async def test_branch_connection(
    branch_id: str,
    service: BranchService = Depends(get_branch_service),
    _: AdminPrincipal = Depends(require_admin),
):
    return await service.test_connection(branch_id)


@router.post("/{branch_id}/provision", response_model=MigrationResult)
async def provision_branch(
    branch_id: str,
    service: BranchService = Depends(get_branch_service),
    _: AdminPrincipal = Depends(require_admin),
):
    return await service.provision_branch(branch_id)
