# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from lionherd_core.libs.concurrency import Lock, current_time

from .errors import CircuitOpenError

__all__ = ("CircuitBreaker", "CircuitState", "circuit_breaker")

T = TypeVar("T")
logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states.

    Values:
        CLOSED: Normal operation, requests pass through
        OPEN: Dependency failing, requests rejected until the cooldown ends
        HALF_OPEN: Probing recovery with a bounded number of calls. Only
            used when ``half_open_max_calls`` is configured.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fail-fast circuit breaker owning one failure counter.

    By default the breaker has two states. Once ``cooldown`` seconds have
    passed since the last failure, each call is let through as a single
    optimistic trial: success closes the circuit and clears the counter,
    failure bumps the counter and reopens it. Setting
    ``half_open_max_calls`` enables a HALF_OPEN state that admits at most
    that many concurrent trial calls after the cooldown.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        *,
        half_open_max_calls: int | None = None,
        excluded_exceptions: set[type[Exception]] | None = None,
        on_open: Callable[[], Any] | None = None,
        on_close: Callable[[], Any] | None = None,
        name: str = "default",
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if cooldown < 0:
            raise ValueError("cooldown must be >= 0")
        if half_open_max_calls is not None and half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be >= 1")

        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.half_open_max_calls = half_open_max_calls
        self.excluded_exceptions = excluded_exceptions or set()
        self.on_open = on_open
        self.on_close = on_close
        self.name = name

        # State variables
        self.failure_count = 0
        self.state = CircuitState.CLOSED
        self.last_failure_time = 0.0
        self._half_open_calls = 0
        self._lock = Lock()

        self._metrics = {
            "success_count": 0,
            "failure_count": 0,
            "rejected_count": 0,
            "state_changes": [],
        }

        logger.debug(
            f"Initialized CircuitBreaker '{self.name}' with failure_threshold={failure_threshold}, "
            f"cooldown={cooldown}, half_open_max_calls={half_open_max_calls}"
        )

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    @property
    def metrics(self) -> dict[str, Any]:
        """Get circuit breaker metrics."""
        return {**self._metrics, "state_changes": list(self._metrics["state_changes"])}

    def to_dict(self) -> dict[str, Any]:
        """Serialize circuit breaker configuration."""
        return {
            "failure_threshold": self.failure_threshold,
            "cooldown": self.cooldown,
            "half_open_max_calls": self.half_open_max_calls,
            "name": self.name,
        }

    def reset(self) -> None:
        """Forget all failures and close the circuit."""
        self.failure_count = 0
        self.last_failure_time = 0.0
        self._half_open_calls = 0
        self.state = CircuitState.CLOSED
        logger.info(f"Circuit '{self.name}' reset")

    def _change_state(self, new_state: CircuitState) -> None:
        old_state = self.state
        if new_state == old_state:
            return

        self.state = new_state
        self._metrics["state_changes"].append(
            {
                "time": current_time(),
                "from": old_state.value,
                "to": new_state.value,
            }
        )
        logger.info(
            f"Circuit '{self.name}' state changed from {old_state.value} to {new_state.value}"
        )

        if new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
        elif new_state == CircuitState.CLOSED:
            self.failure_count = 0
            self._notify(self.on_close)
        elif new_state == CircuitState.OPEN:
            self._notify(self.on_open)

    def _notify(self, observer: Callable[[], Any] | None) -> None:
        if observer is None:
            return
        try:
            observer()
        except Exception:
            logger.exception(f"Circuit '{self.name}' state observer failed")

    async def _check_state(self) -> tuple[bool, float]:
        """Check if request can proceed.

        Returns:
            Tuple of (can_proceed, retry_after_seconds)
        """
        async with self._lock:
            if self.state == CircuitState.OPEN:
                elapsed = current_time() - self.last_failure_time
                if elapsed < self.cooldown:
                    remaining = self.cooldown - elapsed
                    self._metrics["rejected_count"] += 1
                    logger.warning(
                        f"Circuit '{self.name}' is OPEN, rejecting request. "
                        f"Try again in {remaining:.2f}s"
                    )
                    return False, remaining

                if self.half_open_max_calls is None:
                    logger.debug(f"Circuit '{self.name}' cooled down, allowing trial call")
                    return True, 0.0

                self._change_state(CircuitState.HALF_OPEN)

            if self.state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    self._metrics["rejected_count"] += 1
                    logger.warning(
                        f"Circuit '{self.name}' is HALF_OPEN and at capacity. Try again later."
                    )
                    return False, self.cooldown

                self._half_open_calls += 1

            return True, 0.0

    async def execute(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit rejects the call; ``func`` is
                not invoked and the failure counter is left unchanged
        """
        can_proceed, retry_after = await self._check_state()
        if not can_proceed:
            raise CircuitOpenError(
                f"Circuit breaker '{self.name}' is open. Retry after {retry_after:.2f} seconds",
                retry_after=retry_after,
            )

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            async with self._lock:
                if any(isinstance(e, exc_type) for exc_type in self.excluded_exceptions):
                    if self.state == CircuitState.HALF_OPEN:
                        self._half_open_calls -= 1
                    raise

                self.failure_count += 1
                self.last_failure_time = current_time()
                self._metrics["failure_count"] += 1
                logger.warning(
                    f"Circuit '{self.name}' failure: {e}. "
                    f"Count: {self.failure_count}/{self.failure_threshold}"
                )

                if self.state == CircuitState.HALF_OPEN or (
                    self.failure_count >= self.failure_threshold
                ):
                    self._change_state(CircuitState.OPEN)
            raise

        async with self._lock:
            self._metrics["success_count"] += 1
            self.failure_count = 0
            self._change_state(CircuitState.CLOSED)

        return result


def circuit_breaker(
    func: Callable[..., Awaitable[T]], **breaker_kwargs: Any
) -> Callable[..., Awaitable[T]]:
    """Wrap an async function with its own CircuitBreaker.

    The breaker is exposed as ``wrapped.breaker``.

    Examples:
        >>> safe_fetch = circuit_breaker(fetch_prices, failure_threshold=3, cooldown=30.0)
        >>> prices = await safe_fetch("ETH")
    """
    breaker_kwargs.setdefault("name", getattr(func, "__name__", "default"))
    breaker = CircuitBreaker(**breaker_kwargs)

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        return await breaker.execute(func, *args, **kwargs)

    wrapper.breaker = breaker
    return wrapper
