"""
Periodic job runner.

A PeriodicJob calls an async function every *interval* seconds. Each run
executes in its own task, so the timer keeps ticking while a slow run is
in progress; a tick that finds the previous run still going is skipped.
Run failures are logged and never stop the loop.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from .logger import get_logger

logger = get_logger(__name__)


class PeriodicJob:
    """Interval runner with overlap skipping."""

    def __init__(
        self,
        name: str,
        fn: Callable[[], Awaitable[object]],
        interval_seconds: float,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.fn = fn
        self.interval_seconds = interval_seconds
        self.runs = 0
        self.failures = 0
        self.skipped = 0
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_progress(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    async def start(self):
        """Start the timer loop; the first run fires immediately."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._loop())
        logger.info(f"Job {self.name} started (every {self.interval_seconds:g}s)")

    async def stop(self):
        """Stop ticking and wait for an in-flight run to finish."""
        if not self._running:
            return
        self._running = False

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._run_task:
            await asyncio.gather(self._run_task, return_exceptions=True)
            self._run_task = None

        logger.info(
            f"Job {self.name} stopped (runs={self.runs}, failures={self.failures}, "
            f"skipped={self.skipped})"
        )

    async def tick(self) -> bool:
        """
        Launch one run unless the previous one is still in progress.

        Returns:
            True if a run was launched.
        """
        if self.in_progress:
            self.skipped += 1
            logger.warning(f"Job {self.name}: previous run still in progress, skipping tick")
            return False
        self._run_task = asyncio.create_task(self._run())
        return True

    async def _run(self):
        try:
            await self.fn()
            self.runs += 1
        except Exception:
            self.failures += 1
            logger.exception(f"Job {self.name} failed")

    async def _loop(self):
        while self._running:
            await self.tick()
            await asyncio.sleep(self.interval_seconds)

    def __repr__(self) -> str:
        return (
            f"<PeriodicJob {self.name} every={self.interval_seconds:g}s "
            f"running={self._running}>"
        )
