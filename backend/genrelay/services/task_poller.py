"""Polling loop for provider-side async tasks.

Adapters that submit a job and receive a task id hand ``wait_for_task`` a
``poll`` coroutine; the loop ticks on a fixed interval (optionally doubling up
to a cap) until the task succeeds, fails, is cancelled, attempts run
out, or the stop signal fires.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from genrelay.config import get_settings
from genrelay.errors import (
    PollingCancelledError,
    PollingExhaustedError,
    TaskFailedError,
)
from genrelay.schemas.generation import GenerationResult

logger = logging.getLogger(__name__)


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED)


_RANK = {TaskStatus.PENDING: 0, TaskStatus.RUNNING: 1}

_STATUS_ALIASES: dict[str, TaskStatus] = {
    "pending": TaskStatus.PENDING,
    "queued": TaskStatus.PENDING,
    "in_queue": TaskStatus.PENDING,
    "created": TaskStatus.PENDING,
    "running": TaskStatus.RUNNING,
    "processing": TaskStatus.RUNNING,
    "in_progress": TaskStatus.RUNNING,
    "started": TaskStatus.RUNNING,
    "succeeded": TaskStatus.SUCCEEDED,
    "success": TaskStatus.SUCCEEDED,
    "completed": TaskStatus.SUCCEEDED,
    "done": TaskStatus.SUCCEEDED,
    "ok": TaskStatus.SUCCEEDED,
    "failed": TaskStatus.FAILED,
    "failure": TaskStatus.FAILED,
    "error": TaskStatus.FAILED,
    "cancelled": TaskStatus.CANCELLED,
    "canceled": TaskStatus.CANCELLED,
    "aborted": TaskStatus.CANCELLED,
    "stopped": TaskStatus.CANCELLED,
}


def map_status(raw: str | None) -> TaskStatus:
    """Map a provider status string onto TaskStatus; unknown values mean running."""
    key = (raw or "").strip().lower()
    return _STATUS_ALIASES.get(key, TaskStatus.RUNNING)


@dataclass
class AsyncTask:
    """Snapshot of a provider-side task as reported by one poll."""

    id: str
    status: TaskStatus = TaskStatus.PENDING
    progress: float = 0.0
    result: GenerationResult | None = None
    error: Exception | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def advance(self, status: TaskStatus) -> bool:
        """Move forward to ``status``; regressions and exits from terminal states are ignored."""
        if self.status.is_terminal or status == self.status:
            return False
        if not status.is_terminal and _RANK[status] < _RANK[self.status]:
            return False
        self.status = status
        self.updated_at = datetime.now(timezone.utc)
        return True


@dataclass(frozen=True)
class PollConfig:
    interval: float = 5.0
    max_attempts: int = 120
    backoff: bool = False
    backoff_max: float = 30.0


DEFAULT_POLL_CONFIG = PollConfig()
FAL_POLL_CONFIG = PollConfig(interval=2.0, max_attempts=60)
VOLCENGINE_POLL_CONFIG = PollConfig(interval=5.0, max_attempts=120)
DASHSCOPE_POLL_CONFIG = PollConfig(interval=3.0, max_attempts=100)


def default_poll_config() -> PollConfig:
    """Poll settings from the environment (POLL_INTERVAL and friends)."""
    settings = get_settings()
    return PollConfig(
        interval=settings.POLL_INTERVAL,
        max_attempts=settings.POLL_MAX_ATTEMPTS,
        backoff=settings.POLL_BACKOFF,
        backoff_max=settings.POLL_BACKOFF_MAX,
    )


PollFn = Callable[[str], Awaitable[AsyncTask]]


async def _wait_tick(interval: float, cancel: asyncio.Event | None) -> bool:
    """Sleep one interval; returns True if the stop signal fired instead."""
    if cancel is None:
        await asyncio.sleep(interval)
        return False
    try:
        await asyncio.wait_for(cancel.wait(), timeout=interval)
    except asyncio.TimeoutError:
        return False
    return True


async def wait_for_task(
    task_id: str,
    poll: PollFn,
    config: PollConfig | None = None,
    *,
    cancel: asyncio.Event | None = None,
) -> GenerationResult:
    """Poll ``task_id`` until it reaches a terminal state.

    Errors raised by ``poll`` propagate immediately. A failed task raises its
    own error when it carries one, otherwise TaskFailedError.
    """
    if not task_id:
        raise ValueError("task id is required")

    config = config or default_poll_config()
    interval = config.interval if config.interval > 0 else DEFAULT_POLL_CONFIG.interval
    max_attempts = config.max_attempts if config.max_attempts > 0 else DEFAULT_POLL_CONFIG.max_attempts

    tracked = AsyncTask(id=task_id)
    attempts = 0

    while True:
        if cancel is not None and cancel.is_set():
            raise PollingCancelledError("polling cancelled", task_id=task_id)
        if await _wait_tick(interval, cancel):
            raise PollingCancelledError("polling cancelled", task_id=task_id)

        task = await poll(task_id)
        attempts += 1
        if not tracked.advance(task.status) and task.status != tracked.status:
            logger.debug("Task %s reported %s after %s, ignoring", task_id, task.status.value, tracked.status.value)

        if tracked.status == TaskStatus.SUCCEEDED:
            result = task.result or GenerationResult()
            if not result.task_id:
                result.task_id = task_id
            return result

        if tracked.status == TaskStatus.FAILED:
            if task.error is not None:
                raise task.error
            raise TaskFailedError("task failed without error message", task_id=task_id)

        if tracked.status == TaskStatus.CANCELLED:
            raise TaskFailedError("task was cancelled", task_id=task_id)

        if attempts >= max_attempts:
            raise PollingExhaustedError(
                f"polling exceeded maximum attempts ({max_attempts})", task_id=task_id,
            )

        if config.backoff:
            interval *= 2
            if config.backoff_max > 0 and interval > config.backoff_max:
                interval = config.backoff_max
        logger.debug("Task %s still %s (attempt %d/%d)", task_id, tracked.status.value, attempts, max_attempts)
