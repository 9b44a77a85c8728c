# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from lionherd_core.libs.concurrency import sleep
from pydantic import BaseModel, ConfigDict, Field

from .errors import PollExceededError

__all__ = ("PollPolicy", "poll")

T = TypeVar("T")
logger = logging.getLogger(__name__)


class PollPolicy(BaseModel):
    """Polling configuration: fixed interval, bounded attempts."""

    model_config = ConfigDict(frozen=True)

    condition: Callable[[Any], bool]
    interval: float = Field(1.0, ge=0)
    max_attempts: int = Field(10, ge=1)
    on_poll: Callable[[int, Any], Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "condition": self.condition,
            "interval": self.interval,
            "max_attempts": self.max_attempts,
            "on_poll": self.on_poll,
        }

    def as_kwargs(self) -> dict[str, Any]:
        """Convert policy to kwargs for poll."""
        return self.to_dict()


async def poll(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    condition: Callable[[T], bool],
    interval: float = 1.0,
    max_attempts: int = 10,
    on_poll: Callable[[int, T], Any] | None = None,
    **kwargs: Any,
) -> T:
    """Invoke ``func`` until ``condition`` holds for its result.

    Waits ``interval`` seconds between attempts, never after the last one.
    Errors raised by ``func`` propagate immediately.

    Raises:
        PollExceededError: After ``max_attempts`` results that all failed
            the condition
    """
    policy = PollPolicy(
        condition=condition, interval=interval, max_attempts=max_attempts, on_poll=on_poll
    )
    name = getattr(func, "__name__", repr(func))
    result: Any = None

    for attempt in range(1, policy.max_attempts + 1):
        result = await func(*args, **kwargs)
        if policy.on_poll is not None:
            policy.on_poll(attempt, result)

        if policy.condition(result):
            logger.debug(f"Poll of {name} satisfied on attempt {attempt}")
            return result

        if attempt < policy.max_attempts:
            await sleep(policy.interval)

    logger.warning(f"Poll of {name} gave up after {policy.max_attempts} attempts")
    raise PollExceededError(
        f"Polling exceeded maximum attempts ({policy.max_attempts})",
        attempts=policy.max_attempts,
        last_result=result,
    )
