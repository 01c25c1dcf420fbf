"""In-process background task runner.

Generation jobs outlive the HTTP request that accepted them, so they run as
detached asyncio tasks owned by the runner rather than by the request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Keeps strong references to detached tasks until they finish."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        if self._closed:
            coro.close()
            raise RuntimeError("background runner is shut down")
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s crashed: %s", task.get_name(), exc, exc_info=exc)

    async def shutdown(self, timeout: float | None = 10.0) -> None:
        """Cancel whatever is still running and wait for it to unwind."""
        self._closed = True
        tasks = list(self._tasks)
        if not tasks:
            return
        logger.info("Cancelling %d background task(s)", len(tasks))
        for task in tasks:
            task.cancel()
        done, still_running = await asyncio.wait(tasks, timeout=timeout)
        if still_running:
            logger.warning("%d background task(s) did not stop in time", len(still_running))
