# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import functools
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from lionherd_core.libs.concurrency import current_time

__all__ = ("CacheEntry", "MemoCache", "memoize")

T = TypeVar("T")
logger = logging.getLogger(__name__)

_MISSING = object()


def default_key(*args: Any, **kwargs: Any) -> str:
    """JSON rendering of the call arguments; non-JSON values fall back to repr.

    Positional and keyword arguments are kept in separate slots, so a call
    passing a list and a dict positionally never shares a key with a call
    using keywords.
    """
    return json.dumps({"args": args, "kwargs": kwargs}, sort_keys=True, default=repr)


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    inserted_at: float


class MemoCache:
    """Key-addressed store with optional TTL and FIFO eviction.

    Eviction removes the oldest *inserted* entry; reads never change the
    order. Re-inserting a key counts as a fresh insertion.
    Timestamps come from the running event loop's clock.
    """

    def __init__(self, *, ttl: float | None = None, max_size: int = 100):
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be > 0 or None")
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.ttl = ttl
        self.max_size = max_size
        self._entries: dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING, count=False) is not _MISSING

    def keys(self) -> list[str]:
        """Keys from oldest to newest insertion."""
        return list(self._entries)

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return self.ttl is None or current_time() - entry.inserted_at < self.ttl

    def get(self, key: str, default: Any = None, *, count: bool = True) -> Any:
        entry = self._entries.get(key)
        if entry is not None and not self._is_fresh(entry):
            del self._entries[key]
            logger.debug(f"Cache entry '{key}' expired")
            entry = None

        if count:
            if entry is None:
                self.misses += 1
            else:
                self.hits += 1
        return default if entry is None else entry.value

    def set(self, key: str, value: Any) -> None:
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(key=key, value=value, inserted_at=current_time())
        while len(self._entries) > self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            logger.debug(f"Evicted cache entry '{oldest}'")

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
        }


def memoize(
    func: Callable[..., Awaitable[T]] | None = None,
    *,
    ttl: float | None = None,
    max_size: int = 100,
    key_fn: Callable[..., str] | None = None,
    coalesce: bool = False,
) -> Any:
    """Cache the results of an async function.

    Concurrent calls that miss on the same key each invoke ``func``; the
    last to finish owns the entry. With ``coalesce=True`` later callers
    await the in-flight computation instead. Failures are never cached.

    Args:
        func: Async function to wrap (omit to use as ``@memoize(...)``)
        ttl: Seconds an entry stays valid (None = forever)
        max_size: Maximum entries kept
        key_fn: Builds the cache key from the call arguments
        coalesce: Share one in-flight computation per key

    Returns:
        Wrapped function with the same signature; its cache is available
        as ``wrapped.cache``
    """
    cache = MemoCache(ttl=ttl, max_size=max_size)
    make_key = key_fn or default_key

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        in_flight: dict[str, asyncio.Future] = {}

        async def compute(key: str, args: tuple, kwargs: dict) -> T:
            value = await fn(*args, **kwargs)
            cache.set(key, value)
            return value

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            key = make_key(*args, **kwargs)
            cached = cache.get(key, _MISSING)
            if cached is not _MISSING:
                return cached

            if not coalesce:
                return await compute(key, args, kwargs)

            pending = in_flight.get(key)
            if pending is None:
                pending = asyncio.ensure_future(compute(key, args, kwargs))
                in_flight[key] = pending
                pending.add_done_callback(lambda _: in_flight.pop(key, None))
            # shield: one caller being cancelled must not cancel the others
            return await asyncio.shield(pending)

        wrapper.cache = cache
        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
