# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import functools
import logging
import random
from collections.abc import Awaitable, Callable, Collection
from typing import Any, TypeVar

from lionherd_core.libs.concurrency import sleep
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .timeout import DEFAULT_TIMEOUT_MESSAGE, with_timeout

__all__ = (
    "RetryPolicy",
    "make_retryable",
    "retry",
    "retry_for_errors",
    "retry_with_timeout",
)

T = TypeVar("T")
logger = logging.getLogger(__name__)

DEFAULT_MAX_DELAY = 30.0


class RetryPolicy(BaseModel):
    """Retry configuration with exponential backoff + jitter.

    Immutable; one policy can be shared by any number of calls since no
    state is kept between them.

    Attributes:
        max_attempts: Total invocations allowed, first one included
        initial_delay: Seconds to wait after the first failure
        backoff_multiplier: Factor applied to the delay after each failure
        max_delay: Upper bound in seconds for any single wait. Defaults to
            30.0, or to ``initial_delay`` when that is larger.
        exponential_backoff: Grow delays geometrically; when False they
            grow linearly as ``initial_delay * attempt``
        jitter: Multiply each wait by a random value in [0.5, 1.0]
        retry_on: Exception types that may be retried; others raise at once
        should_retry: Extra predicate over the error; False raises at once
        on_retry: Observer called as ``on_retry(attempt, error)`` before
            each wait. Side effects only.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    max_attempts: int = Field(3, ge=1)
    initial_delay: float = Field(1.0, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1)
    max_delay: float = Field(DEFAULT_MAX_DELAY, ge=0)
    exponential_backoff: bool = True
    jitter: bool = True
    retry_on: tuple[type[BaseException], ...] = (Exception,)
    should_retry: Callable[[Exception], bool] | None = None
    on_retry: Callable[[int, Exception], Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_max_delay(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("max_delay") is None:
            data = {k: v for k, v in data.items() if k != "max_delay"}
            initial = data.get("initial_delay")
            if isinstance(initial, (int, float)) and initial > DEFAULT_MAX_DELAY:
                data["max_delay"] = initial
        return data

    @model_validator(mode="after")
    def _validate_delays(self):
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self

    def calculate_delay(self, attempt: int) -> float:
        """Delay to wait after failed ``attempt`` (1-indexed).

        Returns:
            ``min(initial_delay * backoff_multiplier**(attempt-1), max_delay)``
            (``initial_delay * attempt`` without exponential backoff),
            scaled into [0.5x, 1.0x] when jitter is on
        """
        if self.exponential_backoff:
            delay = self.initial_delay * (self.backoff_multiplier ** (attempt - 1))
        else:
            delay = self.initial_delay * attempt
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random() * 0.5)
        return delay

    def is_retryable(self, error: Exception) -> bool:
        if not isinstance(error, self.retry_on):
            return False
        return self.should_retry is None or bool(self.should_retry(error))

    def to_dict(self) -> dict[str, Any]:
        """Serialize policy to dict."""
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "backoff_multiplier": self.backoff_multiplier,
            "max_delay": self.max_delay,
            "exponential_backoff": self.exponential_backoff,
            "jitter": self.jitter,
            "retry_on": self.retry_on,
            "should_retry": self.should_retry,
            "on_retry": self.on_retry,
        }

    def as_kwargs(self) -> dict[str, Any]:
        """Convert policy to kwargs for retry."""
        return self.to_dict()


async def retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    max_delay: float | None = None,
    exponential_backoff: bool = True,
    jitter: bool = True,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    should_retry: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[int, Exception], Any] | None = None,
    **kwargs: Any,
) -> T:
    """Invoke an async function until it succeeds or attempts run out.

    Attempts are strictly sequential. Every failure but the last is reported
    only through ``on_retry``; the last one is re-raised unchanged.

    Args:
        func: Async function to retry
        *args: Positional arguments for func
        max_attempts: Total invocations allowed (default: 3)
        initial_delay: Seconds before the second attempt (default: 1.0)
        backoff_multiplier: Growth factor of the delay (default: 2.0)
        max_delay: Cap on any single delay (default: 30.0, raised to
            initial_delay when that is larger)
        exponential_backoff: Geometric growth; False grows linearly
            (default: True)
        jitter: Randomize delays into [0.5x, 1.0x] (default: True)
        retry_on: Exception types eligible for retry (default: Exception)
        should_retry: Predicate vetoing retries for specific errors
        on_retry: ``on_retry(attempt, error)`` called before each wait
        **kwargs: Keyword arguments for func

    Returns:
        Result from the first successful invocation

    Raises:
        The last error once attempts are exhausted, or the first error that
        is not retryable
    """
    policy = RetryPolicy(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        backoff_multiplier=backoff_multiplier,
        max_delay=max_delay,
        exponential_backoff=exponential_backoff,
        jitter=jitter,
        retry_on=retry_on,
        should_retry=should_retry,
        on_retry=on_retry,
    )
    name = getattr(func, "__name__", repr(func))

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not policy.is_retryable(e):
                logger.debug(f"{name} raised non-retryable {type(e).__name__}: {e}")
                raise

            if attempt >= policy.max_attempts:
                logger.error(f"All {policy.max_attempts} attempts exhausted for {name}: {e}")
                raise

            if policy.on_retry is not None:
                policy.on_retry(attempt, e)

            delay = policy.calculate_delay(attempt)
            logger.debug(
                f"Attempt {attempt}/{policy.max_attempts} for {name} failed, "
                f"retrying after {delay:.2f}s: {e}"
            )
            await sleep(delay)

    raise RuntimeError("Unexpected retry loop exit")


async def retry_with_timeout(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    timeout: float,
    message: str = DEFAULT_TIMEOUT_MESSAGE,
    **kwargs: Any,
) -> T:
    """Run the whole retry loop under a single deadline.

    ``kwargs`` are split by ``retry``: its own options are consumed there and
    the rest reach ``func``. The retry loop keeps running after a timeout.
    """
    return await with_timeout(retry, func, *args, timeout=timeout, message=message, **kwargs)


def make_retryable(
    func: Callable[..., Awaitable[T]] | None = None, **retry_kwargs: Any
) -> Any:
    """Decorate an async function so every call goes through ``retry``.

    Usable bare (``@make_retryable``) or with options
    (``@make_retryable(max_attempts=5)``).
    """
    RetryPolicy(**retry_kwargs)  # fail fast on bad options

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry(fn, *args, **retry_kwargs, **kwargs)

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


def retry_for_errors(
    codes: Collection[str], **retry_kwargs: Any
) -> Callable[..., Awaitable[Any]]:
    """Build a retry runner that only retries errors with a matching code.

    An error's code is its ``code`` attribute when set, else its class name.

    Examples:
        >>> run = retry_for_errors({"ECONNRESET", "ReadTimeout"}, max_attempts=4)
        >>> data = await run(fetch_positions, wallet)
    """
    allowed = frozenset(codes)

    def matches(error: Exception) -> bool:
        code = getattr(error, "code", None) or type(error).__name__
        return code in allowed

    async def runner(func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        return await retry(func, *args, should_retry=matches, **retry_kwargs, **kwargs)

    return runner
