"""
Cooperative recurring tasks.

Timer-driven maintenance (dedup sweeps, load monitoring, alert
evaluation) runs through :class:`RecurringTask`. Tests call ``tick()``
directly instead of waiting on wall-clock timers.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from clinic_resilience.telemetry import ResilienceLogger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


class RecurringTask:
    """Runs an async callback on a fixed interval.

    A failing callback is logged and the loop keeps running; the next
    interval gets a fresh attempt.

    Example:
        >>> task = RecurringTask("dedup_sweep", 60.0, deduplicator.tick)
        >>> task.start()
        >>> await task.tick()  # run once now
        >>> await task.stop()
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
        logger: ResilienceLogger | None = None,
    ) -> None:
        """Initialize recurring task.

        Args:
            name: Task name used in logs
            interval_seconds: Delay between runs
            callback: Async callback to run
            logger: Structured logger
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._name = name
        self._interval = interval_seconds
        self._callback = callback
        self._logger = logger or ResilienceLogger()
        self._task: asyncio.Task[None] | None = None
        self._runs = 0
        self._failures = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def runs(self) -> int:
        return self._runs

    @property
    def failures(self) -> int:
        return self._failures

    async def tick(self) -> None:
        """Run the callback once."""
        self._runs += 1
        try:
            await self._callback()
        except Exception as e:
            self._failures += 1
            self._logger.error(
                "scheduler",
                f"Recurring task '{self._name}' failed",
                error=e,
                task=self._name,
            )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.tick()

    def start(self) -> None:
        """Start the loop on the running event loop (idempotent)."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._loop(), name=f"recurring:{self._name}"
        )
        self._logger.debug("scheduler", f"Started '{self._name}'", interval=self._interval)

    async def stop(self) -> None:
        """Stop the loop and wait for it to finish (idempotent)."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            # Re-raise only if the caller itself is being cancelled
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        self._logger.debug("scheduler", f"Stopped '{self._name}'")

    def __repr__(self) -> str:
        return (
            f"RecurringTask(name={self._name!r}, interval={self._interval}, "
            f"running={self.is_running})"
        )
