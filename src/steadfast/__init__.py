# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Resilience and concurrency control for unreliable async operations."""

from .batch import BatchOutcome, batch_process, retry_batch, sequential
from .cache import CacheEntry, MemoCache, memoize
from .circuit import CircuitBreaker, CircuitState, circuit_breaker
from .errors import CircuitOpenError, OperationTimeoutError, PollExceededError
from .polling import PollPolicy, poll
from .rate_limiter import RateLimitedRetry
from .rate_shaping import Debounced, Throttled, debounce, throttle
from .retrying import (
    RetryPolicy,
    make_retryable,
    retry,
    retry_for_errors,
    retry_with_timeout,
)
from .safe import safe_run
from .task_queue import ConcurrencyQueue, QueueTask, create_queue
from .timeout import race_with_timeout, with_timeout

__version__ = "1.0.0"

__all__ = (
    # Errors
    "CircuitOpenError",
    "OperationTimeoutError",
    "PollExceededError",
    # Execution wrappers
    "safe_run",
    "race_with_timeout",
    "with_timeout",
    "RetryPolicy",
    "make_retryable",
    "retry",
    "retry_for_errors",
    "retry_with_timeout",
    "CircuitBreaker",
    "CircuitState",
    "circuit_breaker",
    "PollPolicy",
    "poll",
    # Concurrency
    "ConcurrencyQueue",
    "QueueTask",
    "create_queue",
    "BatchOutcome",
    "batch_process",
    "retry_batch",
    "sequential",
    # Caching
    "CacheEntry",
    "MemoCache",
    "memoize",
    # Rate control
    "Debounced",
    "Throttled",
    "debounce",
    "throttle",
    "RateLimitedRetry",
)
