"""Audit trail for webhook and delivery decisions, written as JSON Lines."""

from __future__ import annotations

import logging
from pathlib import Path

from gewe_bridge.locking import exclusive_lock
from gewe_bridge.models import AuditEvent

logger = logging.getLogger(__name__)


class AuditLogger:
    """Append-only JSON Lines writer with size-based rotation."""

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path).expanduser()
        self._max_bytes = max_bytes
        self._backup_count = backup_count

    def _backup(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _maybe_rotate(self) -> None:
        if not self.log_path.exists() or self.log_path.stat().st_size < self._max_bytes:
            return
        self._backup(self._backup_count).unlink(missing_ok=True)
        for i in range(self._backup_count - 1, 0, -1):
            if self._backup(i).exists():
                self._backup(i).rename(self._backup(i + 1))
        self.log_path.rename(self._backup(1))

    def log(self, event: AuditEvent) -> None:
        line = event.model_dump_json(exclude_none=True)
        lock_file = self.log_path.parent / f".{self.log_path.name}.lock"
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with exclusive_lock(lock_file):
                self._maybe_rotate()
                with open(self.log_path, "a") as f:
                    f.write(line + "\n")
        except OSError as exc:
            # best-effort: auditing never blocks message handling
            logger.warning("Failed to write audit event to %s: %s", self.log_path, exc)
