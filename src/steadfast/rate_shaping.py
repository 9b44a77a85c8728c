# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Debounce and throttle: reshape a stream of calls in time.

Both return None to the caller. Coroutine functions are scheduled as tasks
on the running loop; plain functions are called directly.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable
from typing import Any

from lionherd_core.libs.concurrency import is_coro_func

__all__ = ("Debounced", "Throttled", "debounce", "throttle")

logger = logging.getLogger(__name__)


class _Shaper:
    def __init__(self, func: Callable[..., Any]):
        functools.update_wrapper(self, func)
        self.func = func
        self._is_coro = is_coro_func(func)
        self._tasks: set[asyncio.Task] = set()

    @property
    def _name(self) -> str:
        return getattr(self.func, "__name__", repr(self.func))

    def _invoke(self, args: tuple, kwargs: dict) -> None:
        if not self._is_coro:
            self.func(*args, **kwargs)
            return
        task = asyncio.ensure_future(self.func(*args, **kwargs))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            logger.error(f"{self._name} raised {type(exc).__name__}: {exc}")


class Debounced(_Shaper):
    """Trailing-edge debounce.

    Every call re-arms a timer of ``delay`` seconds; when it fires, the
    function runs once with the arguments of the latest call.
    """

    def __init__(self, func: Callable[..., Any], delay: float):
        if delay < 0:
            raise ValueError("delay must be >= 0")
        super().__init__(func)
        self.delay = delay
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.delay, self._fire, args, kwargs)

    def _fire(self, args: tuple, kwargs: dict) -> None:
        self._timer = None
        self._invoke(args, kwargs)

    def cancel(self) -> None:
        """Drop the pending call, if any."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class Throttled(_Shaper):
    """Leading-edge throttle.

    A call runs immediately unless one ran less than ``limit`` seconds ago,
    in which case it is dropped. Dropped calls are never replayed.
    """

    def __init__(self, func: Callable[..., Any], limit: float):
        if limit < 0:
            raise ValueError("limit must be >= 0")
        super().__init__(func)
        self.limit = limit
        self._last_call: float | None = None

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        now = time.monotonic()  # usable without a running loop
        if self._last_call is not None and now - self._last_call < self.limit:
            logger.debug(f"Throttled call to {self._name} dropped")
            return
        self._last_call = now
        self._invoke(args, kwargs)

    def reset(self) -> None:
        """End the current cooldown early."""
        self._last_call = None


def debounce(func: Callable[..., Any], delay: float) -> Debounced:
    """Collapse bursts of calls into one trailing call after ``delay`` seconds of quiet."""
    return Debounced(func, delay)


def throttle(func: Callable[..., Any], limit: float) -> Throttled:
    """Let at most one call through per ``limit`` seconds, dropping the rest."""
    return Throttled(func, limit)
