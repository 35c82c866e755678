"""Cancellable timers and an injectable clock.

Payment watchers never call asyncio.sleep directly: they ask a timer factory
for a repeating or one-shot timer and keep the returned handle, so every timer
can be cancelled on success, expiry, close or session teardown. Tests swap in
a fake factory that advances time by hand.
"""
import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return utc_now()


async def run_callback(callback: TimerCallback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class TimerHandle:
    """Cancellation handle returned by every timer."""

    def __init__(self, task: Optional[asyncio.Task] = None):
        self._task = task
        self.cancelled = False

    def attach(self, task: asyncio.Task) -> None:
        self._task = task

    @property
    def active(self) -> bool:
        return not self.cancelled and self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._task is None or self._task.done():
            return
        # A callback cancelling its own timer finishes its current run
        if self._task is asyncio.current_task():
            return
        self._task.cancel()


class AsyncioTimerFactory:
    """Timers backed by asyncio tasks on the running loop."""

    def every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()
        handle.attach(asyncio.create_task(self._run_every(handle, interval, callback)))
        return handle

    def once(self, delay: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()
        handle.attach(asyncio.create_task(self._run_once(handle, delay, callback)))
        return handle

    async def _run_every(self, handle: TimerHandle, interval: float, callback: TimerCallback) -> None:
        while not handle.cancelled:
            await asyncio.sleep(interval)
            if handle.cancelled:
                return
            try:
                await run_callback(callback)
            except Exception as e:
                logger.exception(f"Repeating timer callback failed: {e}")

    async def _run_once(self, handle: TimerHandle, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        if handle.cancelled:
            return
        try:
            await run_callback(callback)
        except Exception as e:
            logger.exception(f"Timer callback failed: {e}")
