"""
Periodic task runner for the background schedulers.

Runs an async callable on a fixed cadence inside the FastAPI lifespan.
A tick that is still in flight when another is requested is skipped, and
exceptions raised by the callable are logged and swallowed so the next
tick runs normally.
"""
from __future__ import annotations

import asyncio
import random
import structlog
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()

TickFn = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """
    Drives `fn` every `interval_s` seconds, plus up to `jitter_s` random delay.

        task = PeriodicTask("routine_scheduler", 30, scheduler.tick)
        await task.start()
        ...
        await task.stop()
    """

    def __init__(self, name: str, interval_s: float, fn: TickFn, jitter_s: float = 0.0):
        self.name = name
        self.interval_s = interval_s
        self.jitter_s = jitter_s
        self._fn = fn
        self._running = False
        self._in_tick = False
        self._task: Optional[asyncio.Task] = None
        self.ticks_run = 0
        self.ticks_skipped = 0
        self.ticks_failed = 0

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the tick loop as a background task."""
        if self.is_running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("periodic_task_started", task=self.name, interval_s=self.interval_s)

    async def stop(self) -> None:
        """Gracefully stop the loop, cancelling an in-flight tick."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("periodic_task_stopped", task=self.name)

    async def _loop(self) -> None:
        while self._running:
            await self.run_once()
            delay = self.interval_s
            if self.jitter_s > 0:
                delay += random.uniform(0, self.jitter_s)
            await asyncio.sleep(delay)

    async def run_once(self) -> Any:
        """
        Run a single tick now.

        Returns the callable's result, or None when the tick was skipped
        because another one is still running or when it raised.
        """
        if self._in_tick:
            self.ticks_skipped += 1
            logger.warning("periodic_task_overlap_skipped", task=self.name)
            return None

        self._in_tick = True
        try:
            result = await self._fn()
            self.ticks_run += 1
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.ticks_failed += 1
            logger.error("periodic_task_tick_failed", task=self.name, error=str(e), exc_info=True)
            return None
        finally:
            self._in_tick = False

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self.is_running,
            "interval_s": self.interval_s,
            "ticks_run": self.ticks_run,
            "ticks_skipped": self.ticks_skipped,
            "ticks_failed": self.ticks_failed,
        }
