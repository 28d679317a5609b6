from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from ..constants import MAX_TIMER_STEP_MS

log = logging.getLogger("warden.scheduler")

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


@dataclass(eq=False)
class TimerHandle:
    """Cancellation token for one scheduled callback. Ids are never reused by the scheduler that issued it."""

    delay_ms: float
    id: int
    steps: int = 0
    cancelled: bool = False
    fired: bool = False
    _task: Optional[asyncio.Task[None]] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.cancelled or self.fired


class DelayScheduler:
    """Fires callbacks after arbitrarily long delays.

    Delays above ``max_step_ms`` are slept in chained steps of exactly
    ``max_step_ms`` until the remainder fits in one step.
    """

    def __init__(self, max_step_ms: int = MAX_TIMER_STEP_MS) -> None:
        if max_step_ms <= 0:
            raise ValueError("max_step_ms must be positive")
        self.max_step_ms = max_step_ms
        self._ids = itertools.count(1)
        self._live: dict[int, TimerHandle] = {}

    @property
    def active(self) -> int:
        return len(self._live)

    def schedule(self, delay_ms: float, callback: TimerCallback) -> TimerHandle:
        if not callable(callback):
            raise TypeError("callback must be callable")
        handle = TimerHandle(delay_ms=max(0.0, float(delay_ms)), id=next(self._ids))
        loop = asyncio.get_running_loop()
        handle._task = loop.create_task(self._run(handle, callback), name=f"warden-timer-{handle.id}")
        self._live[handle.id] = handle
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is None or handle.done:
            return
        handle.cancelled = True
        self._live.pop(handle.id, None)
        if handle._task is not None and not handle._task.done():
            handle._task.cancel()

    def cancel_all(self) -> int:
        handles = list(self._live.values())
        for handle in handles:
            self.cancel(handle)
        return len(handles)

    async def _run(self, handle: TimerHandle, callback: TimerCallback) -> None:
        remaining = handle.delay_ms
        try:
            while remaining > self.max_step_ms:
                await asyncio.sleep(self.max_step_ms / 1000)
                if handle.cancelled:
                    return
                remaining -= self.max_step_ms
                handle.steps += 1
            await asyncio.sleep(remaining / 1000)
            if handle.cancelled:
                return
            handle.steps += 1
            handle.fired = True
            self._live.pop(handle.id, None)

            result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.exception("Timer %s callback failed", handle.id)
        finally:
            self._live.pop(handle.id, None)
