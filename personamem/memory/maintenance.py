"""Periodic decay and near-duplicate merging.

Runs as a background asyncio task, waking every ``interval`` seconds to
walk every stored user and apply one decay pass followed by one merge
pass. Each user is processed through MemoryManager.run_maintenance, so
it is serialized with request-path mutations for the same user. A
failure for one user is logged and counted; the pass continues with the
next user.

Classes:
    MaintenanceReport: Outcome of one pass over all users.
    MaintenanceJob: Background loop driving the passes.
"""

import asyncio
from datetime import datetime
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from ..exceptions import PersonaMemError
from .manager import MemoryManager

logger = structlog.get_logger("personamem.maintenance")


class MaintenanceReport(BaseModel):
    """Outcome of one maintenance pass."""

    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    users_processed: int = 0
    memories_deactivated: int = 0
    memories_merged: int = 0
    failures: int = 0


class MaintenanceJob:
    """Background loop for memory decay and merging.

    Args:
        manager: MemoryManager owning the user stores.
        interval: Seconds between passes (default daily).
    """

    def __init__(self, manager: MemoryManager, interval: float = 86400):
        self.manager = manager
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[MaintenanceReport] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Spawn the background loop. No-op if already running."""
        if self._running:
            logger.warning("maintenance_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="memory-maintenance")
        logger.info("maintenance_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the loop, cancelling an in-flight pass."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("maintenance_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except (PersonaMemError, OSError) as e:
                logger.error("maintenance_loop_error", error=str(e), exc_type=type(e).__name__)
                await asyncio.sleep(self.interval)

    async def run_once(self, now: Optional[datetime] = None) -> MaintenanceReport:
        """Run one decay + merge pass over every stored user."""
        now = now or datetime.now()
        report = MaintenanceReport(started_at=now)

        for user_id in await self.manager.list_user_ids():
            try:
                result = await self.manager.run_maintenance(user_id, now)
            except PersonaMemError as e:
                report.failures += 1
                logger.error(
                    "maintenance_user_failed",
                    user_id=user_id,
                    error=str(e),
                    exc_type=type(e).__name__,
                )
                continue
            report.users_processed += 1
            report.memories_deactivated += result["deactivated"]
            report.memories_merged += result["merged"]
            if result["deactivated"] or result["merged"]:
                logger.debug("maintenance_user_done", user_id=user_id, **result)

        report.finished_at = datetime.now()
        self.last_report = report
        logger.info(
            "maintenance_pass_complete",
            users=report.users_processed,
            deactivated=report.memories_deactivated,
            merged=report.memories_merged,
            failures=report.failures,
        )
        return report
