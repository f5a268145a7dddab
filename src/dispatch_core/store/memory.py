from __future__ import annotations

from typing import Optional

from loguru import logger

from ..errors import PersistenceUnavailableError
from ..models import CircuitState, IdempotencyRecord


class InMemoryStore:
    """Dict-backed PersistenceStore.

    Default store for tests and single-process use. Set ``available`` to
    False to simulate an outage: every call then raises
    PersistenceUnavailableError.
    """

    def __init__(self) -> None:
        self.circuits: dict[str, CircuitState] = {}
        self.records: dict[str, IdempotencyRecord] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise PersistenceUnavailableError("in-memory store marked unavailable")

    async def load_circuit(self, destination: str) -> Optional[CircuitState]:
        self._check()
        return self.circuits.get(destination)

    async def load_circuits(self) -> list[CircuitState]:
        self._check()
        return list(self.circuits.values())

    async def save_circuit(self, state: CircuitState) -> None:
        self._check()
        self.circuits[state.destination] = state

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        self._check()
        return self.records.get(key)

    async def put_record(self, record: IdempotencyRecord) -> None:
        self._check()
        self.records[record.key] = record

    async def delete_record(self, key: str) -> bool:
        self._check()
        return self.records.pop(key, None) is not None

    async def purge_expired(self, now: float) -> int:
        self._check()
        expired = [k for k, r in self.records.items() if r.is_expired(now)]
        for k in expired:
            del self.records[k]
        if expired:
            logger.debug(f"Purged {len(expired)} expired idempotency records")
        return len(expired)
