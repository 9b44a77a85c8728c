# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import functools
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

__all__ = ("ConcurrencyQueue", "QueueTask", "create_queue")

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QueueTask(Generic[T]):
    """A submitted operation and the handle its outcome is delivered to."""

    work: Callable[[], Awaitable[T]]
    handle: asyncio.Future


class ConcurrencyQueue:
    """Run submitted async operations with at most ``concurrency`` in flight.

    The backlog is an unbounded FIFO. Admission follows submission order;
    completion order is whatever order the operations finish in. Running
    count and backlog are only mutated on the event loop thread, so no lock
    is needed.

    Examples:
        >>> queue = ConcurrencyQueue(3)
        >>> handles = [queue.add(fetch_balance, addr) for addr in wallets]
        >>> balances = await asyncio.gather(*handles)
    """

    def __init__(self, concurrency: int):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self._backlog: deque[QueueTask] = deque()
        self._running = 0
        self._tasks: set[asyncio.Task] = set()
        self._idle: asyncio.Event | None = None

    @property
    def size(self) -> int:
        """Operations waiting for admission."""
        return len(self._backlog)

    @property
    def running(self) -> int:
        """Operations currently executing."""
        return self._running

    def add(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> asyncio.Future:
        """Submit an operation.

        Must be called from within a running event loop.

        Returns:
            Future resolving with the operation's result or failing with its
            error. Cancelling it before admission drops the operation;
            cancelling it afterwards does not stop the operation.
        """
        loop = asyncio.get_running_loop()
        task = QueueTask(work=functools.partial(func, *args, **kwargs), handle=loop.create_future())
        self._backlog.append(task)
        logger.debug(f"Queued task, backlog={len(self._backlog)} running={self._running}")
        self._admit()
        return task.handle

    def _admit(self) -> None:
        while self._running < self.concurrency and self._backlog:
            task = self._backlog.popleft()
            if task.handle.done():
                # cancelled while waiting
                continue
            self._running += 1
            runner = asyncio.ensure_future(self._run(task))
            self._tasks.add(runner)
            runner.add_done_callback(self._tasks.discard)

        if self._idle is not None and not self._running and not self._backlog:
            self._idle.set()

    async def _run(self, task: QueueTask) -> None:
        try:
            result = await task.work()
        except asyncio.CancelledError:
            task.handle.cancel()
            raise
        except Exception as e:
            logger.debug(f"Queued task failed with {type(e).__name__}: {e}")
            if not task.handle.done():
                task.handle.set_exception(e)
        else:
            if not task.handle.done():
                task.handle.set_result(result)
        finally:
            self._running -= 1
            self._admit()

    async def join(self) -> None:
        """Wait until the backlog is empty and nothing is running."""
        if not self._running and not self._backlog:
            return
        if self._idle is None or self._idle.is_set():
            self._idle = asyncio.Event()
        await self._idle.wait()


def create_queue(concurrency: int) -> ConcurrencyQueue:
    """Create a ConcurrencyQueue admitting ``concurrency`` operations at a time."""
    return ConcurrencyQueue(concurrency)
