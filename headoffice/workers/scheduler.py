"""Background migration sweep that keeps every active branch schema current."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from headoffice.config import settings
from headoffice.database import async_session
from headoffice.models.migration_state import MigrationResult
from headoffice.services.branch_migrations import BranchMigrationManager
from headoffice.tenancy.context_factory import DbContextFactory, db_context_factory
from headoffice.utils.time import utc_now

logger = logging.getLogger("headoffice.scheduler")


class MigrationOrchestrator:
    """Asyncio-based periodic sweep running inside the FastAPI event loop.

    Waits ``initial_delay`` seconds after start, then calls
    ``ensure_all_branches`` every ``interval`` seconds. A failed sweep is
    logged and the loop keeps going.
    """

    def __init__(
        self,
        interval: Optional[int] = None,
        initial_delay: Optional[int] = None,
        factory: Optional[DbContextFactory] = None,
        session_factory=None,
    ) -> None:
        self.interval = interval if interval is not None else settings.migration_sweep_interval_seconds
        self.initial_delay = (
            initial_delay if initial_delay is not None else settings.migration_sweep_initial_delay_seconds
        )
        self.factory = factory if factory is not None else db_context_factory
        self.session_factory = session_factory or async_session
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[MigrationResult] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Migration orchestrator started (interval={self.interval}s)")

    async def stop(self) -> None:
        """Stop the sweep loop gracefully."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Migration orchestrator stopped")

    async def _run_loop(self) -> None:
        try:
            await asyncio.sleep(self.initial_delay)
        except asyncio.CancelledError:
            return

        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error during migration sweep: {e}")
                await asyncio.sleep(10)  # back off on error

    async def run_once(self) -> MigrationResult:
        """Run a single sweep over all active branches."""
        logger.info("Starting scheduled migration sweep for all branches")
        async with self.session_factory() as session:
            manager = BranchMigrationManager(session, self.factory)
            result = await manager.ensure_all_branches()

        self.last_run_at = utc_now()
        self.last_result = result
        if result.success:
            logger.info(
                "Migration sweep completed: %d branches processed, %d succeeded",
                result.branches_processed,
                result.branches_succeeded,
            )
        else:
            logger.warning(
                "Migration sweep completed with failures: %d failed. %s",
                result.branches_failed,
                result.error_message,
            )
        return result


# Global orchestrator instance
orchestrator = MigrationOrchestrator()
