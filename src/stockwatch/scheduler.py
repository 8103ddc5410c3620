"""Fixed-interval trigger for the price fetch run.

Runs inside the pipeline's event loop so that the run, the stream consumers
and the queue consumer share one loop::

    IntervalScheduler
      start()  ─ no-op while disabled
        └── task: while not stop.wait(interval): tick()
                     tick(): skipped if a run is still active
                             else tick_count += 1; await callback()
      stop()   ─ set stop, wait for the current tick

Runs never overlap. A tick that fails is logged and the loop continues.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from stockwatch.core.logging import get_logger
from stockwatch.core.models import utcnow

logger = get_logger(__name__)

TickCallback = Callable[[], Awaitable[Any]]


class IntervalScheduler:
    """Calls ``callback`` every ``interval_seconds`` while enabled.

    Example:
        scheduler = IntervalScheduler(orchestrator.run, 60.0, enabled=True)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    name = "interval"

    def __init__(
        self,
        callback: TickCallback,
        interval_seconds: float = 60.0,
        *,
        enabled: bool = False,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._callback = callback
        self._interval = interval_seconds
        self._enabled = enabled
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._active = False
        self._tick_count = 0
        self._skipped_count = 0
        self._failure_count = 0
        self._last_tick: datetime | None = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    async def tick(self) -> bool:
        """Invoke the callback once unless a previous invocation is still active.

        Returns:
            False if the tick was skipped
        """
        if self._active:
            self._skipped_count += 1
            logger.warning("scheduler.tick_skipped", reason="run still active")
            return False

        self._active = True
        self._tick_count += 1
        self._last_tick = utcnow()
        try:
            await self._callback()
        except Exception as e:
            self._failure_count += 1
            logger.exception("scheduler.tick_failed", error=str(e))
        finally:
            self._active = False
        return True

    async def _loop(self) -> None:
        logger.info("scheduler.started", interval_seconds=self._interval)
        while True:
            try:
                await asyncio.wait_for(self._stop.wait(), self._interval)
                break
            except asyncio.TimeoutError:
                pass
            if self._enabled:
                await self.tick()
        logger.info("scheduler.stopped", tick_count=self._tick_count)

    async def start(self) -> None:
        if not self._enabled:
            logger.info("scheduler.disabled")
            return
        if self._task is not None and not self._task.done():
            logger.warning("scheduler.already_started")
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="stockwatch-scheduler")

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight tick finish."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def skipped_count(self) -> int:
        return self._skipped_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick

    def health(self) -> dict[str, Any]:
        return {
            "healthy": not self._enabled or self.is_running,
            "backend": self.name,
            "enabled": self._enabled,
            "tick_count": self._tick_count,
            "skipped_count": self._skipped_count,
            "failure_count": self._failure_count,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "interval_seconds": self._interval,
        }
