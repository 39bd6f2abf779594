"""
Periodic job scheduling.

The ledger's reconciliation poll and the kill switch poll run as periodic
jobs. AsyncioScheduler runs them as background tasks on the event loop;
ManualScheduler runs them only when a test or backtest advances its clock.

Example:
    ```python
    scheduler = AsyncioScheduler()
    scheduler.every(60.0, ledger.check_pending_orders, name="reconcile")
    ...
    await scheduler.shutdown()
    ```
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from .clock import SimClock
from .logger import get_logger

logger = get_logger(__name__)

Job = Callable[[], Awaitable[object]]


class Scheduler(Protocol):
    """Registers coroutine functions to run at a fixed interval."""

    def every(self, interval_seconds: float, job: Job, name: str) -> None: ...

    def cancel(self, name: str) -> None: ...


# =============================================================================
# Live Scheduler
# =============================================================================


class AsyncioScheduler:
    """Runs each job in its own asyncio task, sleeping between runs."""

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def every(self, interval_seconds: float, job: Job, name: str) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be positive, got {interval_seconds}")
        self.cancel(name)
        self._tasks[name] = asyncio.create_task(self._run(interval_seconds, job, name), name=name)
        logger.info("job_scheduled", job=name, interval_seconds=interval_seconds)

    def cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()
            logger.info("job_cancelled", job=name)

    async def shutdown(self) -> None:
        """Cancel every job and wait for the tasks to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def job_names(self) -> list[str]:
        return sorted(self._tasks)

    async def _run(self, interval_seconds: float, job: Job, name: str) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("job_failed", job=name, error=str(e), exc_info=True)


# =============================================================================
# Virtual-Time Scheduler
# =============================================================================


@dataclass
class _ManualJob:
    interval_seconds: float
    job: Job
    next_run: float


class ManualScheduler:
    """
    Scheduler driven by explicit time advances.

    Jobs are due once the virtual time reaches their next run time. When a
    SimClock is attached it is advanced along with the scheduler.
    """

    def __init__(self, clock: SimClock | None = None):
        self._clock = clock
        self._elapsed = 0.0
        self._jobs: dict[str, _ManualJob] = {}

    def every(self, interval_seconds: float, job: Job, name: str) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be positive, got {interval_seconds}")
        self._jobs[name] = _ManualJob(interval_seconds, job, self._elapsed + interval_seconds)

    def cancel(self, name: str) -> None:
        self._jobs.pop(name, None)

    @property
    def job_names(self) -> list[str]:
        return sorted(self._jobs)

    async def advance(self, seconds: float) -> int:
        """
        Move virtual time forward and run every job that fell due.

        Args:
            seconds: Virtual seconds to advance

        Returns:
            Number of job runs performed
        """
        target = self._elapsed + seconds
        runs = 0
        while True:
            due = [
                (job.next_run, name)
                for name, job in self._jobs.items()
                if job.next_run <= target
            ]
            if not due:
                break
            next_run, name = min(due)
            self._move_to(next_run)
            job = self._jobs[name]
            job.next_run = next_run + job.interval_seconds
            try:
                await job.job()
            except Exception as e:
                logger.error("job_failed", job=name, error=str(e), exc_info=True)
            runs += 1
        self._move_to(target)
        return runs

    def _move_to(self, elapsed: float) -> None:
        if self._clock is not None and elapsed > self._elapsed:
            self._clock.advance_seconds(elapsed - self._elapsed)
        self._elapsed = max(self._elapsed, elapsed)
