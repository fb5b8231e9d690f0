# src/formcache/sync.py
"""
Background task queue for best-effort side effects.

Remote upserts and remote → local backfills must never hold up, or fail,
the caller's read/write. They are submitted here instead: a bounded FIFO
drained by a single worker task, each job retried with exponential backoff
and jitter. When the queue is full the new job is dropped with a warning.

Usage::

    tasks = BackgroundTaskQueue(max_size=100, max_retries=3)
    tasks.submit("upsert_listing_images_L1", lambda: backup.push(record, category))
    ...
    await tasks.join()   # wait for idle (tests, shutdown)
    await tasks.close()
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def execute_with_retry(
    operation: Callable[[], Coroutine[Any, Any, T]],
    max_retries: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 5.0,
    retryable_exceptions: Tuple[type, ...] = (Exception,),
) -> T:
    """
    Execute an async operation with exponential backoff retry.

    Args:
        operation: Async callable to execute
        max_retries: Maximum number of retries
        base_delay: Initial delay between retries
        max_delay: Maximum delay between retries
        retryable_exceptions: Exceptions that trigger retry

    Returns:
        Result of the operation

    Raises:
        Last exception if all retries fail
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except retryable_exceptions as e:
            last_exception = e
            if attempt < max_retries:
                delay = min(base_delay * (2 ** attempt), max_delay)
                delay *= (0.5 + random.random())  # jitter
                logger.warning(
                    "Operation failed (attempt %d/%d): %s. Retrying in %.2fs...",
                    attempt + 1, max_retries + 1, e, delay,
                )
                await asyncio.sleep(delay)

    raise last_exception  # type: ignore[misc]


@dataclass
class BackgroundJob:
    name: str
    operation: Callable[[], Awaitable[Any]]


class BackgroundTaskQueue:
    """
    Bounded single-worker queue with per-job retry.

    The worker is started lazily on the first ``submit`` from inside a
    running event loop.

    Args:
        max_size: Maximum number of pending jobs.
        max_retries: Retries per job after the first attempt.
        base_delay: First backoff delay in seconds.
        max_delay: Backoff ceiling in seconds.
    """

    def __init__(
        self,
        max_size: int = 100,
        max_retries: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 5.0,
    ) -> None:
        self._queue: asyncio.Queue[BackgroundJob] = asyncio.Queue(maxsize=max_size)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._worker: Optional[asyncio.Task] = None
        self._closed = False
        self._stats = {"submitted": 0, "completed": 0, "failed": 0, "dropped": 0}

    def stats(self) -> dict[str, int]:
        return {**self._stats, "pending": self._queue.qsize()}

    def submit(self, name: str, operation: Callable[[], Awaitable[Any]]) -> bool:
        """
        Queue a job. Returns False when the job was dropped (queue full or closed).
        """
        if self._closed:
            logger.warning("Background queue closed; dropping job %s.", name)
            self._stats["dropped"] += 1
            return False
        try:
            self._queue.put_nowait(BackgroundJob(name=name, operation=operation))
        except asyncio.QueueFull:
            logger.warning("Background queue full (%d); dropping job %s.", self._queue.maxsize, name)
            self._stats["dropped"] += 1
            return False
        self._stats["submitted"] += 1
        self._ensure_worker()
        return True

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await execute_with_retry(
                    job.operation,
                    max_retries=self._max_retries,
                    base_delay=self._base_delay,
                    max_delay=self._max_delay,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["failed"] += 1
                logger.error("Background job %s failed after retries: %s", job.name, e)
            else:
                self._stats["completed"] += 1
                logger.debug("Background job %s completed.", job.name)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every submitted job has finished."""
        await self._queue.join()

    async def close(self, drain: bool = True) -> None:
        """Stop accepting jobs, optionally finish pending ones, and stop the worker."""
        self._closed = True
        if drain and self._worker is not None and not self._worker.done():
            await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None


__all__ = [
    "BackgroundJob",
    "BackgroundTaskQueue",
    "execute_with_retry",
]
