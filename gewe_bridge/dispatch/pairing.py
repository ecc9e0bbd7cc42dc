"""Pairing requests for unknown direct-message senders."""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8


class PairingStore(Protocol):
    def read_allow_from(self) -> list[str]: ...

    def upsert_request(self, sender_id: str, name: str | None = None) -> tuple[str, bool]: ...

    def approve(self, code: str) -> str | None: ...


@dataclass
class PairingRequest:
    sender_id: str
    code: str
    name: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


def generate_pairing_code() -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(CODE_LENGTH))


def build_pairing_reply(sender_id: str, code: str) -> str:
    return (
        "This assistant only talks to approved contacts.\n"
        f"Your WeChat id: {sender_id}\n"
        f"Pairing code: {code}\n"
        "Ask the owner to approve this code."
    )


class InMemoryPairingStore:
    """Process-local store; approved senders extend the allowlists."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[str, PairingRequest] = {}
        self._approved: list[str] = []

    def read_allow_from(self) -> list[str]:
        with self._lock:
            return list(self._approved)

    def upsert_request(self, sender_id: str, name: str | None = None) -> tuple[str, bool]:
        """Return (code, created); repeat requests keep their first code."""
        with self._lock:
            existing = self._pending.get(sender_id)
            if existing is not None:
                if name:
                    existing.name = name
                return existing.code, False
            request = PairingRequest(sender_id=sender_id, code=generate_pairing_code(), name=name)
            self._pending[sender_id] = request
            return request.code, True

    def approve(self, code: str) -> str | None:
        """Approve a pending code; returns the sender id or None."""
        wanted = code.strip().upper()
        with self._lock:
            for sender_id, request in self._pending.items():
                if request.code == wanted:
                    del self._pending[sender_id]
                    if sender_id not in self._approved:
                        self._approved.append(sender_id)
                    return sender_id
        return None

    def pending(self) -> list[PairingRequest]:
        with self._lock:
            return list(self._pending.values())
