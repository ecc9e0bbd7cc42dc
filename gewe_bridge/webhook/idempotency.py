"""Time-windowed idempotency cache for webhook message ids.

Keys are ``appId:newMessageId``. Entries older than the TTL (12 hours) are
purged before every lookup; check-and-insert happens under one lock so
concurrent deliveries of the same callback admit exactly one.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

DEDUPE_TTL_SECONDS = 12 * 60 * 60


class IdempotencyCache:
    """Rejects keys already seen within the TTL window."""

    def __init__(
        self,
        ttl_seconds: float = DEDUPE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        cutoff = now - self._ttl_seconds
        expired = [key for key, ts in self._seen.items() if ts < cutoff]
        for key in expired:
            del self._seen[key]

    def is_duplicate(self, key: str) -> bool:
        """Return True if key was seen; otherwise record it and return False."""
        with self._lock:
            now = self._clock()
            self._purge(now)
            if key in self._seen:
                return True
            self._seen[key] = now
            return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
