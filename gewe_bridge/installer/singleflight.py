"""Keyed single-flight coordination for asyncio.

Concurrent callers asking for the same key share one in-flight task; once
the task completes its result is remembered and returned directly.
Different keys run independently.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._inflight: dict[str, asyncio.Task[T]] = {}
        self._results: dict[str, T] = {}

    def completed(self, key: str) -> bool:
        return key in self._results

    def forget(self, key: str) -> None:
        self._results.pop(key, None)

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self._lock:
            if key in self._results:
                return self._results[key]
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.ensure_future(self._run(key, fn))
                self._inflight[key] = task
        # a cancelled waiter must not cancel the shared task
        return await asyncio.shield(task)

    async def _run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await fn()
            self._results[key] = result
            return result
        finally:
            self._inflight.pop(key, None)
