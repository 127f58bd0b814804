"""Detached background tasks with an error boundary."""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class DetachedTasks:
    """Launches fire-and-forget coroutines on the running event loop.

    The caller never awaits what it spawns.  Each task holds a strong
    reference here until it finishes (the loop itself only keeps weak ones),
    and any exception is logged at the task boundary instead of surfacing as
    "Task exception was never retrieved".  Cancelling the caller does not
    cancel the spawned task.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        """Number of spawned tasks that have not finished yet."""
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Schedule ``coro`` and return immediately.  Must be called inside a running loop."""
        task = asyncio.get_running_loop().create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every outstanding task (used on shutdown and in tests).

        Tasks still running after ``timeout`` are left alone, not cancelled.
        """
        while self._tasks:
            pending = list(self._tasks)
            _, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning(
                    "%d background task(s) still running after %.1fs", len(not_done), timeout
                )
                return

    @staticmethod
    async def _guard(coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.warning("Background task %s was cancelled", name)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Background task %s failed: %s", name, exc, exc_info=True)
