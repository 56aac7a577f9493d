"""Branch-scoped data-access handles.

``DbContextFactory.create_branch_context(branch)`` returns a ``BranchContext``
bound to that branch's cached descriptor. Each handle owns its own engine
(``NullPool``) and session, created lazily on first use and released when the
``async with`` block exits::

    async with factory.create_branch_context(branch) as ctx:
        rows = (await ctx.execute(text("SELECT * FROM products"))).all()
        await ctx.commit()

Nothing is opened at construction time. A descriptor the driver rejects
surfaces as ``BranchConnectionError`` on the first query.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy.exc import ArgumentError, DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool
from sqlalchemy.sql import text

from headoffice.errors import BranchConnectionError, describe_exception
from headoffice.tenancy.connection_strings import ConnectionDescriptor
from headoffice.tenancy.context_cache import BranchContextCache

logger = logging.getLogger("headoffice.tenancy.factory")

T = TypeVar("T")

# Failures that mean "could not reach/open the branch database". Drivers
# raise TypeError when connect() is handed keywords they do not accept.
CONNECT_ERRORS = (DBAPIError, ArgumentError, ImportError, OSError, TypeError)


def connection_error(descriptor: ConnectionDescriptor, exc: BaseException) -> BranchConnectionError:
    return BranchConnectionError(
        f"Cannot connect to branch {descriptor.branch_code or descriptor.branch_id} "
        f"({descriptor.provider.value}): {describe_exception(exc)}",
        branch_id=descriptor.branch_id,
    )


def create_branch_engine(descriptor: ConnectionDescriptor, **kwargs: Any) -> AsyncEngine:
    """Engine for one unit of work; ``NullPool`` so closing it leaves nothing open."""
    url = kwargs.pop("url", descriptor.url)
    try:
        return create_async_engine(
            url,
            poolclass=NullPool,
            connect_args=dict(descriptor.connect_args),
            **kwargs,
        )
    except CONNECT_ERRORS as exc:
        raise connection_error(descriptor, exc) from exc


class BranchContext:
    """Short-lived data-access handle for a single branch unit of work."""

    def __init__(self, descriptor: ConnectionDescriptor) -> None:
        self.descriptor = descriptor
        self._engine: Optional[AsyncEngine] = None
        self._session: Optional[AsyncSession] = None
        self._connected = False
        self._closed = False

    @property
    def branch_id(self) -> Optional[str]:
        return self.descriptor.branch_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def engine(self) -> AsyncEngine:
        if self._closed:
            raise RuntimeError("BranchContext is closed")
        if self._engine is None:
            self._engine = create_branch_engine(self.descriptor)
        return self._engine

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            self._session = AsyncSession(self.engine, expire_on_commit=False)
        return self._session

    async def _ready(self) -> AsyncSession:
        session = self.session
        if not self._connected:
            try:
                await session.connection()
            except CONNECT_ERRORS as exc:
                raise connection_error(self.descriptor, exc) from exc
            self._connected = True
        return session

    def _translate(self, exc: DBAPIError) -> BaseException:
        if exc.connection_invalidated:
            return connection_error(self.descriptor, exc)
        return exc

    async def connection(self) -> AsyncConnection:
        session = await self._ready()
        try:
            return await session.connection()
        except DBAPIError as exc:
            raise self._translate(exc) from exc

    async def execute(self, statement: Any, params: Optional[dict] = None):
        session = await self._ready()
        try:
            return await session.execute(statement, params)
        except DBAPIError as exc:
            translated = self._translate(exc)
            if translated is exc:
                raise
            raise translated from exc

    async def scalar(self, statement: Any, params: Optional[dict] = None):
        result = await self.execute(statement, params)
        return result.scalar()

    async def scalars(self, statement: Any, params: Optional[dict] = None) -> list:
        result = await self.execute(statement, params)
        return list(result.scalars().all())

    async def run_sync(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn(sync_connection, ...)`` on this handle's connection."""
        conn = await self.connection()
        return await conn.run_sync(fn, *args, **kwargs)

    async def commit(self) -> None:
        session = await self._ready()
        await session.commit()

    async def rollback(self) -> None:
        if self._session is not None:
            await self._session.rollback()

    async def test_connection(self) -> bool:
        return await self.scalar(text("SELECT 1")) == 1

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._session is not None:
                await self._session.close()
        finally:
            if self._engine is not None:
                await self._engine.dispose()
            self._session = None
            self._engine = None

    async def __aenter__(self) -> "BranchContext":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and self._session is not None and self._connected:
            try:
                await self._session.rollback()
            except CONNECT_ERRORS:
                logger.warning(
                    "Rollback failed while releasing branch handle",
                    extra={"branch_id": self.branch_id},
                    exc_info=True,
                )
        await self.close()


class DbContextFactory:
    """Hands out independent ``BranchContext`` handles backed by a shared cache."""

    def __init__(self, cache: Optional[BranchContextCache] = None) -> None:
        self.cache = cache if cache is not None else BranchContextCache()

    def descriptor_for(self, branch: Any) -> ConnectionDescriptor:
        return self.cache.get_or_build(branch)

    def create_branch_context(self, branch: Any) -> BranchContext:
        return BranchContext(self.cache.get_or_build(branch))

    get_or_build_context = create_branch_context

    def invalidate_context(self, branch_id: Optional[str] = None) -> bool:
        return self.cache.invalidate(branch_id)


context_cache = BranchContextCache()
db_context_factory = DbContextFactory(context_cache)


def get_context_factory() -> DbContextFactory:
    """Dependency returning the process-wide factory."""
    return db_context_factory
