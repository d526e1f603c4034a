"""Asyncio timer tasks with explicit cancellation handles."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Set, Union

logger = logging.getLogger("agency_console.timers")

TimerCallback = Callable[[], Union[Awaitable[None], None]]


class TimerHandle:
    """Cancellation token for a scheduled timer."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._task: Optional[asyncio.Task[None]] = None
        self._cancelled = False

    def _attach(self, task: "asyncio.Task[None]") -> None:
        self._task = task

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


async def _invoke(callback: TimerCallback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class TimerScheduler:
    """Owns a set of independent timers that can all be cancelled at once.

    Timers never affect each other: cancelling or restarting one leaves the
    rest running.
    """

    def __init__(self) -> None:
        self._handles: Set[TimerHandle] = set()
        self._closed = False

    @property
    def active(self) -> int:
        return sum(1 for handle in self._handles if not handle.done)

    def call_later(self, delay: float, callback: TimerCallback, *, name: str = "timer") -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""

        handle = TimerHandle(name)

        async def runner() -> None:
            await asyncio.sleep(delay)
            await self._run(handle, callback)

        return self._start(handle, runner)

    def call_every(
        self,
        interval: float,
        callback: TimerCallback,
        *,
        name: str = "interval",
    ) -> TimerHandle:
        """Run ``callback`` every ``interval`` seconds until cancelled."""

        if interval <= 0:
            raise ValueError("Interval must be positive")
        handle = TimerHandle(name)

        async def runner() -> None:
            while not handle.cancelled:
                await asyncio.sleep(interval)
                await self._run(handle, callback)

        return self._start(handle, runner)

    def cancel_all(self) -> None:
        self._closed = True
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()

    def _start(self, handle: TimerHandle, runner: Callable[[], Awaitable[None]]) -> TimerHandle:
        if self._closed:
            raise RuntimeError("Timer scheduler has been closed")
        task = asyncio.get_running_loop().create_task(runner(), name=handle.name)
        handle._attach(task)
        self._handles.add(handle)
        task.add_done_callback(lambda _: self._handles.discard(handle))
        return handle

    async def _run(self, handle: TimerHandle, callback: TimerCallback) -> None:
        if handle.cancelled:
            return
        try:
            await _invoke(callback)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer %s callback failed", handle.name)


__all__ = ["TimerCallback", "TimerHandle", "TimerScheduler"]
