# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import builtins
from typing import Any

from lionherd_core.errors import ConnectionError, LionherdError, TimeoutError

__all__ = (
    "CircuitOpenError",
    "OperationTimeoutError",
    "PollExceededError",
)


class OperationTimeoutError(TimeoutError, builtins.TimeoutError):
    """Raised when a guarded operation does not settle within its timeout.

    Also a builtin TimeoutError so ``except TimeoutError`` works without
    importing lionherd_core.
    """

    default_message = "Operation timed out"
    default_retryable = True

    def __init__(
        self,
        message: str | None = None,
        *,
        timeout: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        if timeout is not None:
            details = details or {}
            details["timeout"] = timeout
        super().__init__(message=message, details=details)
        self.timeout = timeout


class CircuitOpenError(ConnectionError, builtins.ConnectionError):
    """Raised when a circuit breaker rejects a call without invoking it.

    Inherits from ConnectionError as the breaker stands in for an
    unavailable dependency. Carries no cause: nothing was attempted.
    """

    default_message = "Circuit breaker is open"
    default_retryable = True

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        if retry_after is not None:
            details = details or {}
            details["retry_after"] = retry_after
        super().__init__(message=message, details=details, retryable=True)
        self.retry_after = retry_after


class PollExceededError(LionherdError):
    """Raised when polling runs out of attempts before the condition holds."""

    default_message = "Polling exceeded maximum attempts"
    default_retryable = False

    def __init__(
        self,
        message: str | None = None,
        *,
        attempts: int = 0,
        last_result: Any = None,
    ):
        super().__init__(message=message, details={"attempts": attempts})
        self.attempts = attempts
        self.last_result = last_result
