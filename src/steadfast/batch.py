# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Helpers for running many operations: fixed batches, one-by-one, or retried fan-out."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .retrying import retry
from .task_queue import ConcurrencyQueue

__all__ = ("BatchOutcome", "batch_process", "retry_batch", "sequential")

T = TypeVar("T")
R = TypeVar("R")
logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchOutcome(Generic[T]):
    """Outcome of one operation in a retried batch."""

    success: bool
    data: T | None = None
    error: Exception | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.success:
            out["data"] = self.data
        else:
            out["error"] = str(self.error)
        return out


async def batch_process(
    items: Sequence[T], func: Callable[[T], Awaitable[R]], batch_size: int
) -> list[R]:
    """Apply ``func`` to items in consecutive slices of ``batch_size``.

    Each slice runs concurrently and must finish before the next starts.
    Results keep the input order; the first error aborts the run.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    results: list[R] = []
    for start in range(0, len(items), batch_size):
        batch = items[start : start + batch_size]
        results.extend(await asyncio.gather(*(func(item) for item in batch)))
    return results


async def sequential(
    items: Iterable[T], func: Callable[[T, int], Awaitable[R]]
) -> list[R]:
    """Apply ``func(item, index)`` to each item, one at a time, in order."""
    results: list[R] = []
    for index, item in enumerate(items):
        results.append(await func(item, index))
    return results


async def retry_batch(
    funcs: Iterable[Callable[[], Awaitable[T]]],
    *,
    concurrency: int = 5,
    stop_on_error: bool = False,
    **retry_kwargs: Any,
) -> list[BatchOutcome[T]]:
    """Run zero-argument operations under ``retry`` with bounded concurrency.

    Args:
        funcs: Operations to run
        concurrency: Maximum operations in flight
        stop_on_error: Raise the first final failure instead of collecting
            it. Operations not yet started are dropped; started ones are
            awaited before raising.
        **retry_kwargs: Options forwarded to ``retry``

    Returns:
        One BatchOutcome per operation, in input order
    """
    queue = ConcurrencyQueue(concurrency)
    handles = [queue.add(retry, func, **retry_kwargs) for func in funcs]
    if not handles:
        return []

    return_when = asyncio.FIRST_EXCEPTION if stop_on_error else asyncio.ALL_COMPLETED
    done, pending = await asyncio.wait(handles, return_when=return_when)

    if stop_on_error:
        failed = [h for h in handles if h in done and h.exception() is not None]
        if failed:
            for handle in pending:
                handle.cancel()
            await queue.join()
            logger.warning(
                f"Batch stopped after failure, {len(pending)} of {len(handles)} unfinished"
            )
            raise failed[0].exception()

    outcomes: list[BatchOutcome[T]] = []
    for handle in handles:
        error = handle.exception()
        if error is None:
            outcomes.append(BatchOutcome(success=True, data=handle.result()))
        else:
            outcomes.append(BatchOutcome(success=False, error=error))

    logger.debug(
        f"Batch finished: {sum(o.success for o in outcomes)}/{len(outcomes)} succeeded"
    )
    return outcomes
