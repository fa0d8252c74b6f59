"""Periodic retry sweep.

Runs ``DispatchCoordinator.run_due_retries`` on a fixed interval, either as
a background task inside the API process or as a standalone worker
(``courier-sweep``). Any number of runners may share one store.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from .coordinator import DispatchCoordinator

logger = logging.getLogger(__name__)


class SweepRunner:
    """Drives the retry sweep on an interval.

    A failing run is logged and the loop carries on with the next one.

    Example:
        ```python
        runner = SweepRunner(coordinator, interval_seconds=60)
        runner.start()
        ...
        await runner.stop()
        ```
    """

    def __init__(self, coordinator: DispatchCoordinator, interval_seconds: float = 60.0) -> None:
        self._coordinator = coordinator
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Run one sweep.

        Returns:
            Number of entries processed, 0 if the run failed.
        """
        try:
            return await self._coordinator.run_due_retries()
        except Exception:
            logger.exception("Retry sweep failed")
            return 0

    async def run_forever(self) -> None:
        """Sweep until ``stop()`` is called."""
        logger.info("Retry sweep started (interval %.1fs)", self._interval)
        while not self._stopping.is_set():
            await self.run_once()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
        logger.info("Retry sweep stopped")

    def start(self) -> None:
        """Start sweeping in a background task on the running loop."""
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self.run_forever(), name="courier-retry-sweep")

    async def stop(self) -> None:
        """Stop the background task, letting an in-progress run finish."""
        self._stopping.set()
        if self._task is None:
            return
        task, self._task = self._task, None
        try:
            await asyncio.wait_for(task, timeout=self._interval + 5)
        except TimeoutError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
