"""Shared test fixtures for head office backend tests."""

from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from headoffice.database import Base
from headoffice.models import branch, migration_state  # noqa: F401
from headoffice.tenancy.connection_strings import build_descriptor
from headoffice.tenancy.context_cache import BranchContextCache
from headoffice.tenancy.context_factory import DbContextFactory


@pytest_asyncio.fixture
async def db_session():
    """Create a fresh in-memory head office database per test."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def data_root(tmp_path):
    return str(tmp_path / "Upload")


@pytest.fixture
def branch_cache(data_root):
    return BranchContextCache(builder=lambda b: build_descriptor(b, data_root))


@pytest.fixture
def branch_factory(branch_cache):
    return DbContextFactory(branch_cache)


def _branch_stub(**overrides):
    values = {
        "id": "b-1",
        "code": "B001",
        "database_provider": "sqlite",
        "db_server": "",
        "db_port": 0,
        "db_name": "",
        "db_username": None,
        "db_password": None,
        "db_additional_params": None,
        "trust_server_certificate": False,
        "ssl_mode": "disable",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def make_branch():
    """Factory for plain stand-ins of ``Branch`` rows."""
    return _branch_stub
