"""Supervised fire-and-forget tasks.

Extraction and summarization run after the primary operation has
returned. Each one is wrapped with an outer timeout, kept referenced
until it finishes, and its failure is logged instead of silently
vanishing with the task object.
"""

import asyncio
from typing import Awaitable, Optional, Set

import structlog

from .exceptions import PersonaMemError

logger = structlog.get_logger("personamem.conversation")


def log_task_exception(task: asyncio.Task):
    """Log exceptions from fire-and-forget tasks instead of silently swallowing them."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        fields = {"task": task.get_name(), "error": str(exc), "exc_type": type(exc).__name__}
        if isinstance(exc, PersonaMemError):
            fields["retryable"] = exc.is_retryable
        logger.error("background_task_failed", **fields)


class BackgroundTaskSupervisor:
    """Owns the background tasks spawned by the engine.

    Args:
        default_timeout: Seconds before a task is cancelled, unless
            ``spawn`` is given its own timeout.
    """

    def __init__(self, default_timeout: float = 90):
        self.default_timeout = default_timeout
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        coro: Awaitable,
        name: str,
        timeout: Optional[float] = None,
    ) -> asyncio.Task:
        """Schedule ``coro`` in the background under ``timeout``."""
        budget = timeout if timeout is not None else self.default_timeout

        async def _supervised():
            try:
                return await asyncio.wait_for(coro, timeout=budget)
            except asyncio.TimeoutError:
                logger.warning("background_task_timeout", task=name, timeout=budget)
                raise

        task = asyncio.create_task(_supervised(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(log_task_exception)
        return task

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for all pending tasks; cancel whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("background_tasks_cancelled", count=len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)


# Global supervisor
_supervisor: Optional[BackgroundTaskSupervisor] = None


def get_supervisor() -> BackgroundTaskSupervisor:
    """Get or create the global background task supervisor."""
    global _supervisor
    if _supervisor is None:
        from .config import get_config
        _supervisor = BackgroundTaskSupervisor(get_config().background_task_timeout)
    return _supervisor
