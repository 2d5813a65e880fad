"""
GasWatch Scheduler
==================

Named periodic tasks, each with its own cancellation handle.

A tick never overlaps the previous tick of the same task: the next tick
starts ``interval`` seconds after the previous one *started*, or
immediately if the previous one overran.  Exceptions raised by a tick are
logged and counted; they never end the loop.

Shutdown lets an in-flight tick finish (bounded by ``grace`` seconds)
before the task is cancelled.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from .logger import get_logger

logger = get_logger('scheduler')

TickCallback = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """Runs ``callback`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"{name}: interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._idle = asyncio.Event()
        self._idle.set()
        self.run_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None
        self.last_duration_ms: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name=f"periodic-{self.name}")
        return self

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        if not self._run_immediately:
            await asyncio.sleep(self.interval)
        while not self._stopping:
            started = loop.time()
            self._idle.clear()
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.error_count += 1
                self.last_error = str(exc)
                logger.error(f"Periodic task '{self.name}' tick failed: {exc}", exc_info=True)
            finally:
                self._idle.set()
            self.run_count += 1
            elapsed = loop.time() - started
            self.last_duration_ms = elapsed * 1000
            if self._stopping:
                break
            await asyncio.sleep(max(0.0, self.interval - elapsed))

    async def stop(self, grace: float = 0.0) -> None:
        """Stop the loop, letting an in-flight tick run for up to ``grace`` seconds."""
        self._stopping = True
        task = self._task
        if task is None or task.done():
            return
        if grace > 0 and not self._idle.is_set():
            try:
                await asyncio.wait_for(asyncio.shield(self._idle.wait()), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(f"Periodic task '{self.name}' did not finish within {grace}s; cancelling")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def status(self) -> Dict[str, Any]:
        return {
            'interval': self.interval,
            'running': self.running,
            'run_count': self.run_count,
            'error_count': self.error_count,
            'last_error': self.last_error,
            'last_duration_ms': (
                round(self.last_duration_ms, 2) if self.last_duration_ms is not None else None
            ),
        }


class Scheduler:
    """Owns every timer-driven side effect of the process."""

    def __init__(self) -> None:
        self._tasks: Dict[str, PeriodicTask] = {}

    def every(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        run_immediately: bool = False,
    ) -> PeriodicTask:
        """Register and start a periodic task."""
        if name in self._tasks and self._tasks[name].running:
            raise ValueError(f"Periodic task '{name}' is already scheduled")
        task = PeriodicTask(name, interval, callback, run_immediately=run_immediately)
        self._tasks[name] = task
        task.start()
        logger.debug(f"Scheduled '{name}' every {interval}s")
        return task

    def get(self, name: str) -> Optional[PeriodicTask]:
        return self._tasks.get(name)

    async def cancel(self, name: str, grace: float = 0.0) -> None:
        task = self._tasks.pop(name, None)
        if task is not None:
            await task.stop(grace)

    async def stop(self, grace: float = 0.0) -> None:
        """Stop every task concurrently."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        if tasks:
            await asyncio.gather(*(t.stop(grace) for t in tasks), return_exceptions=True)

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {name: task.status() for name, task in self._tasks.items()}
