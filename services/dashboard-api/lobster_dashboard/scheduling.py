"""Cancellable delayed calls and a trailing-edge debouncer on the running event loop."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any, Optional

# Strong references to tasks spawned by fired schedules until they finish.
_running: set[asyncio.Task] = set()


class ScheduledTask:
    """Handle for one delayed call; ``cancel()`` is a no-op once the call has fired."""

    def __init__(self, fn: Callable[..., Any], delay: float, args: tuple[Any, ...]) -> None:
        self._fn = fn
        self._args = args
        self._cancelled = False
        self._fired = False
        self.task: Optional[asyncio.Task] = None
        self._handle = asyncio.get_running_loop().call_later(delay, self._fire)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    def cancel(self) -> None:
        if self._fired or self._cancelled:
            return
        self._cancelled = True
        self._handle.cancel()

    def _fire(self) -> None:
        self._fired = True
        result = self._fn(*self._args)
        if inspect.isawaitable(result):
            self.task = asyncio.ensure_future(result)
            _running.add(self.task)
            self.task.add_done_callback(_running.discard)


def schedule(fn: Callable[..., Any], delay: float, *args: Any) -> ScheduledTask:
    return ScheduledTask(fn, delay, args)


class Debouncer:
    """Collapse bursts of ``trigger()`` calls into one call after ``delay`` of quiet.

    Each trigger replaces the pending call, so the call that finally runs
    receives the arguments of the last trigger.
    """

    def __init__(self, fn: Callable[..., Any], delay: float) -> None:
        self._fn = fn
        self._delay = delay
        self._pending: Optional[ScheduledTask] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None and not (self._pending.fired or self._pending.cancelled)

    def trigger(self, *args: Any) -> ScheduledTask:
        if self._pending is not None:
            self._pending.cancel()
        self._pending = schedule(self._fn, self._delay, *args)
        return self._pending

    def cancel(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
