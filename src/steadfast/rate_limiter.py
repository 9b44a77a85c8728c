# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from lionherd_core.libs.concurrency import Lock, current_time, sleep

from .retrying import RetryPolicy, retry

__all__ = ("RateLimitedRetry",)

T = TypeVar("T")
logger = logging.getLogger(__name__)


class RateLimitedRetry:
    """Run operations one at a time, no faster than ``requests_per_second``.

    Consecutive operations start at least ``1 / requests_per_second``
    seconds apart; each runs under ``retry`` with the given options, and
    its retries do not count as new starts. Submissions are served in
    arrival order.

    Examples:
        >>> limiter = RateLimitedRetry(2.0, max_attempts=3, initial_delay=0.5)
        >>> results = await asyncio.gather(*(limiter.execute(fetch, a) for a in wallets))
    """

    def __init__(self, requests_per_second: float, **retry_kwargs: Any):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be > 0")
        self.requests_per_second = requests_per_second
        self.interval = 1.0 / requests_per_second
        self.policy = RetryPolicy(**retry_kwargs)
        self._next_start: float | None = None
        self._turn = Lock()

    async def _wait_for_slot(self) -> None:
        now = current_time()
        if self._next_start is not None and now < self._next_start:
            wait_time = self._next_start - now
            logger.debug(f"Rate limited, waiting {wait_time:.2f}s")
            await sleep(wait_time)
            now = current_time()
        self._next_start = now + self.interval

    async def execute(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        async with self._turn:
            await self._wait_for_slot()
            return await retry(func, *args, **self.policy.as_kwargs(), **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests_per_second": self.requests_per_second,
            "retry": self.policy.to_dict(),
        }
