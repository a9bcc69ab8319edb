from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Optional

from medhub.logging import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    """Fire-and-forget side effects whose failure must never reach the caller.

    Holds strong references so tasks are not garbage collected mid-flight;
    failures are logged when the task settles.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("background_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "background_task_failed",
                task=task.get_name(),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for tasks started on the running loop to settle."""
        loop = asyncio.get_running_loop()
        tasks = [t for t in self._tasks if t.get_loop() is loop and not t.done()]
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("background_tasks_abandoned", count=len(pending))
