# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

__all__ = ("safe_run",)

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def safe_run(
    func: Callable[..., Awaitable[T]] | Awaitable[T], *args: Any, **kwargs: Any
) -> tuple[Exception, None] | tuple[None, T]:
    """Run an operation and return its outcome as an ``(error, value)`` pair.

    Exactly one slot is populated. Cancellation is not an outcome and still
    propagates.

    Args:
        func: Async callable, or an awaitable that was already created
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Examples:
        >>> error, data = await safe_run(fetch_balance, address)
        >>> if error is not None:
        ...     handle(error)
    """
    try:
        if inspect.isawaitable(func):
            result = await func
        else:
            result = await func(*args, **kwargs)
    except Exception as e:
        logger.debug(f"safe_run captured {type(e).__name__}: {e}")
        return e, None
    return None, result
