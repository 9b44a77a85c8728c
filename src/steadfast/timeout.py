# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from .errors import OperationTimeoutError

__all__ = ("race_with_timeout", "with_timeout")

T = TypeVar("T")
logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MESSAGE = "Operation timed out"

# Operations that lost a race keep running; hold them until they finish.
_abandoned: set[asyncio.Future] = set()


def _discard_outcome(task: asyncio.Future) -> None:
    _abandoned.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Abandoned operation finished with {type(exc).__name__}: {exc}")
    else:
        logger.debug("Abandoned operation finished, result discarded")


def _abandon(task: asyncio.Future, cancel: bool) -> None:
    if cancel:
        task.cancel()
    if task.done():
        _discard_outcome(task)
        return
    _abandoned.add(task)
    task.add_done_callback(_discard_outcome)


async def with_timeout(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    timeout: float,
    message: str = DEFAULT_TIMEOUT_MESSAGE,
    cancel_on_timeout: bool = False,
    **kwargs: Any,
) -> T:
    """Race an operation against a timer.

    Whichever settles first decides the outcome. When the timer wins the
    operation is NOT cancelled unless ``cancel_on_timeout`` is set: it keeps
    running in the background and its eventual result or error is dropped.

    Args:
        func: Async function to guard
        *args: Positional arguments for func
        timeout: Seconds to wait before giving up
        message: Message of the raised OperationTimeoutError
        cancel_on_timeout: Cancel the operation instead of abandoning it
        **kwargs: Keyword arguments for func

    Raises:
        OperationTimeoutError: If the timer elapses first
    """
    if timeout < 0:
        raise ValueError("timeout must be >= 0")

    task = asyncio.ensure_future(func(*args, **kwargs))
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        _abandon(task, cancel_on_timeout)
        raise
    if task in done:
        return task.result()

    logger.warning(f"{getattr(func, '__name__', func)!s} timed out after {timeout:.2f}s")
    _abandon(task, cancel_on_timeout)
    raise OperationTimeoutError(message, timeout=timeout)


async def race_with_timeout(
    awaitables: Iterable[Awaitable[T]],
    timeout: float,
    message: str = DEFAULT_TIMEOUT_MESSAGE,
) -> T:
    """Return the outcome of whichever awaitable settles first, within ``timeout``.

    The first to settle wins even if it failed. Losers are left running.

    Raises:
        OperationTimeoutError: If nothing settles in time
        ValueError: If no awaitables are given
    """
    tasks = [asyncio.ensure_future(aw) for aw in awaitables]
    if not tasks:
        raise ValueError("race_with_timeout needs at least one awaitable")

    done, pending = await asyncio.wait(
        tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
    )
    for task in pending:
        _abandon(task, cancel=False)

    if not done:
        logger.warning(f"Race of {len(tasks)} operations timed out after {timeout:.2f}s")
        raise OperationTimeoutError(message, timeout=timeout)

    # Preserve submission order among tasks that finished in the same tick.
    winner = next(t for t in tasks if t in done)
    for task in done:
        if task is not winner:
            _abandon(task, cancel=False)
    return winner.result()
