"""Async utilities for running blocking filesystem and VCS work concurrently.

The hash engine, staging copy and conflict detection all schedule blocking
calls through a ``WorkerPool``: a semaphore-gated task group owned by one
sync session.  Its contract:

* at most ``limit`` tasks are in flight at once;
* every task is awaited before ``map()`` returns;
* after the first failure, tasks that have not started yet are skipped and
  that first failure is re-raised once the group has settled.
"""

import asyncio
import logging
import os
from typing import Any, Callable, Coroutine, Iterable, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")
logger = logging.getLogger(__name__)


class _Skipped(Exception):
    """Marks a task that never started because a sibling failed."""


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a synchronous function in a thread without blocking the event loop.

    Does NOT take a pool slot; use ``WorkerPool.run`` for bounded work.
    """
    return await asyncio.to_thread(func, *args, **kwargs)


def adaptive_limit(base: int | None = None) -> int:
    """Derive a pool size from CPU parallelism and the current load average.

    Starts from ``2 * cpus`` (or *base*) and scales it by the idle headroom
    ``1 - load1 / cpus``, never below a quarter.  Platforms without
    ``os.getloadavg`` get the unscaled value.
    """
    cpus = os.cpu_count() or 1
    start = base if base is not None else cpus * 2
    try:
        load1, _, _ = os.getloadavg()
    except (AttributeError, OSError):
        return max(1, start)
    headroom = max(0.25, 1.0 - load1 / cpus)
    limit = max(1, int(start * headroom))
    logger.debug(
        "Adaptive concurrency: cpus=%d load1=%.2f limit=%d", cpus, load1, limit
    )
    return limit


class WorkerPool:
    """Bounded-concurrency task group.

    Args:
        limit: Maximum number of tasks running at once (>= 1).
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"worker pool limit must be >= 1, got {limit}")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.in_flight = 0
        self.peak_in_flight = 0

    async def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run one blocking call in a thread while holding a pool slot."""
        async with self._semaphore:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                return await asyncio.to_thread(func, *args, **kwargs)
            finally:
                self.in_flight -= 1

    async def map(self, func: Callable[[T], R], items: Iterable[T]) -> list[R]:
        """Apply blocking *func* to every item with bounded concurrency.

        Returns:
            Results in input order.

        Raises:
            Exception: The first failure, after every task has settled.
        """
        failed = asyncio.Event()

        async def _one(item: T) -> R:
            async with self._semaphore:
                if failed.is_set():
                    raise _Skipped
                self.in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
                try:
                    return await asyncio.to_thread(func, item)
                except Exception:
                    failed.set()
                    raise
                finally:
                    self.in_flight -= 1

        outcomes = await asyncio.gather(
            *(_one(item) for item in items), return_exceptions=True
        )
        return _first_error_or_results(outcomes)


async def gather_all(coros: Sequence[Coroutine[Any, Any, T]]) -> list[T]:
    """Await every coroutine, then re-raise the first real failure.

    Unlike a bare ``asyncio.gather`` the siblings of a failed coroutine are
    never left running when the caller moves on to cleanup.
    """
    outcomes = await asyncio.gather(*coros, return_exceptions=True)
    return _first_error_or_results(outcomes)


def _first_error_or_results(outcomes: Sequence[Any]) -> list[Any]:
    for outcome in outcomes:
        if isinstance(outcome, _Skipped):
            continue
        if isinstance(outcome, BaseException):
            raise outcome
    return list(outcomes)
