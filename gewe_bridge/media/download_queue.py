"""Throttled single-worker queue for remote media downloads.

Jobs run strictly one at a time in FIFO order. Before each job the worker
sleeps a random delay in ``[min_delay_ms, max_delay_ms]`` so that calls to
the provider's download endpoints are spread out. A key admitted within the
last 12 hours is rejected.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from gewe_bridge.webhook.idempotency import DEDUPE_TTL_SECONDS, IdempotencyCache

logger = logging.getLogger(__name__)

DEFAULT_MIN_DELAY_MS = 3000
DEFAULT_MAX_DELAY_MS = 10000


@dataclass(frozen=True)
class DownloadJob:
    key: str
    action: Callable[[], Awaitable[None]]


class DownloadQueue:
    """FIFO job queue drained by one asyncio worker task."""

    def __init__(
        self,
        min_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        dedupe: IdempotencyCache | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._min_delay_ms = DEFAULT_MIN_DELAY_MS if min_delay_ms is None else min_delay_ms
        self._max_delay_ms = DEFAULT_MAX_DELAY_MS if max_delay_ms is None else max_delay_ms
        self._dedupe = dedupe or IdempotencyCache(ttl_seconds=DEDUPE_TTL_SECONDS)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._jobs: deque[DownloadJob] = deque()
        self._worker: asyncio.Task[None] | None = None

    def update_delay_range(
        self, min_delay_ms: int | None = None, max_delay_ms: int | None = None,
    ) -> None:
        if min_delay_ms is not None and min_delay_ms >= 0:
            self._min_delay_ms = min_delay_ms
        if max_delay_ms is not None and max_delay_ms >= 0:
            self._max_delay_ms = max_delay_ms

    def next_delay_ms(self) -> int:
        low = max(0, self._min_delay_ms)
        high = max(low, self._max_delay_ms)
        if high == low:
            return low
        return self._rng.randint(low, high)

    @property
    def pending(self) -> int:
        return len(self._jobs)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def enqueue(self, key: str, action: Callable[[], Awaitable[None]]) -> bool:
        """Queue a job; False when the key was already seen in the TTL window."""
        if self._dedupe.is_duplicate(key):
            return False
        self._jobs.append(DownloadJob(key=key, action=action))
        if not self.running:
            self._worker = asyncio.get_running_loop().create_task(self._run())
        return True

    async def _run(self) -> None:
        while self._jobs:
            job = self._jobs.popleft()
            await self._sleep(self.next_delay_ms() / 1000)
            try:
                await job.action()
            except Exception:
                logger.exception("Download job %s failed", job.key)

    async def join(self) -> None:
        """Wait until the worker has drained the queue."""
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)
