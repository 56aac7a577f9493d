"""Tests for branch administration and its cache side effects."""

from __future__ import annotations

import pytest

from headoffice.errors import BranchConflictError, BranchNotFoundError
from headoffice.models.branch import BranchCreate, BranchUpdate, DatabaseProvider
from headoffice.models.migration_state import MigrationStatus
from headoffice.services.branch_service import BranchService


def _create(code: str, **extra) -> BranchCreate:
    return BranchCreate(code=code, name_en=f"Branch {code}", **extra)


@pytest.mark.asyncio
async def test_create_rejects_duplicate_codes(db_session, branch_factory):
    service = BranchService(db_session, branch_factory, auto_provision=False)
    await service.create_branch(_create("RUH01"))

    with pytest.raises(BranchConflictError):
        await service.create_branch(_create("ruh01"))


@pytest.mark.asyncio
async def test_create_auto_provisions_branch_database(db_session, branch_factory):
    service = BranchService(db_session, branch_factory, auto_provision=True)

    branch = await service.create_branch(_create("JED01"))

    states = await service.migrations.list_states()
    assert [(s.branch_code, s.status) for s in states] == [("JED01", MigrationStatus.COMPLETED.value)]
    assert await service.migrations.get_pending_migrations(branch.id) == []


@pytest.mark.asyncio
async def test_connection_field_change_invalidates_only_that_branch(db_session, branch_factory):
    service = BranchService(db_session, branch_factory, auto_provision=False)
    a = await service.create_branch(_create("A1"))
    b = await service.create_branch(_create("B1"))
    branch_factory.descriptor_for(a)
    branch_factory.descriptor_for(b)

    await service.update_branch(a.id, BranchUpdate(db_additional_params="Cache=Shared"))

    assert a.id not in branch_factory.cache
    assert b.id in branch_factory.cache


@pytest.mark.asyncio
async def test_display_field_change_keeps_cache_entry(db_session, branch_factory):
    service = BranchService(db_session, branch_factory, auto_provision=False)
    branch = await service.create_branch(_create("A1"))
    branch_factory.descriptor_for(branch)

    updated = await service.update_branch(branch.id, BranchUpdate(name_en="Riyadh Central"))

    assert updated.name_en == "Riyadh Central"
    assert branch.id in branch_factory.cache


@pytest.mark.asyncio
async def test_setting_same_connection_value_does_not_invalidate(db_session, branch_factory):
    service = BranchService(db_session, branch_factory, auto_provision=False)
    branch = await service.create_branch(_create("A1"))
    branch_factory.descriptor_for(branch)

    await service.update_branch(branch.id, BranchUpdate(database_provider=DatabaseProvider.SQLITE))

    assert branch.id in branch_factory.cache


@pytest.mark.asyncio
async def test_deactivate_hides_branch_and_invalidates(db_session, branch_factory):
    service = BranchService(db_session, branch_factory, auto_provision=False)
    branch = await service.create_branch(_create("A1"))
    branch_factory.descriptor_for(branch)

    await service.deactivate_branch(branch.id)

    assert branch.id not in branch_factory.cache
    assert await service.list_branches() == []
    assert [b.code for b in await service.list_branches(include_inactive=True)] == ["A1"]


@pytest.mark.asyncio
async def test_test_connection_reports_success_and_failure(db_session, branch_factory):
    service = BranchService(db_session, branch_factory, auto_provision=False)
    good = await service.create_branch(_create("A1"))
    bad = await service.create_branch(
        _create("PG1", database_provider=DatabaseProvider.POSTGRESQL, db_server="pg.local", db_name="pos")
    )

    ok = await service.test_connection(good.id)
    assert ok.success
    assert ok.latency_ms is not None

    # Missing username is a configuration error, reported rather than raised.
    failed = await service.test_connection(bad.id)
    assert not failed.success
    assert "username" in failed.message
    assert failed.latency_ms is None


@pytest.mark.asyncio
async def test_test_connection_reports_unreachable_mysql_with_passthrough(db_session, branch_factory):
    pytest.importorskip("aiomysql")
    service = BranchService(db_session, branch_factory, auto_provision=False)
    branch = await service.create_branch(
        _create(
            "MY1",
            database_provider=DatabaseProvider.MYSQL,
            db_server="127.0.0.1",
            db_port=1,
            db_name="pos",
            db_username="pos",
            db_password="pw",
            db_additional_params="ConnectionTimeout=5",
        )
    )

    result = await service.test_connection(branch.id)

    assert not result.success
    assert "Cannot connect to branch MY1" in result.message


@pytest.mark.asyncio
async def test_missing_branch_raises_not_found(db_session, branch_factory):
    service = BranchService(db_session, branch_factory, auto_provision=False)
    with pytest.raises(BranchNotFoundError):
        await service.get_branch("missing")
    with pytest.raises(BranchNotFoundError):
        await service.provision_branch("missing")
