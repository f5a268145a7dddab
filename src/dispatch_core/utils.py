"""
Small helpers shared by the components: keyed locks and size estimates.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator


class KeyedLocks:
    """One asyncio.Lock per key, created on demand and dropped when idle.

    Used so that allow+mark-trial, begin+create-record and add/flush are
    atomic per destination / idempotency key / batch key while unrelated
    keys proceed in parallel.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def payload_size(payload: Any) -> int:
    """Byte size of a payload as it would go over the wire."""
    if isinstance(payload, (bytes, bytearray)):
        return len(payload)
    if isinstance(payload, str):
        return len(payload.encode("utf-8"))
    try:
        return len(json.dumps(payload, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        # worst case fixed cost
        return 256


def require_key(value: str, name: str) -> str:
    """Precondition check for identities (destination, idempotency key, batch key)."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value
