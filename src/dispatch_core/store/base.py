from __future__ import annotations

from typing import Optional, Protocol

from ..models import CircuitState, IdempotencyRecord


class PersistenceStore(Protocol):
    """Durable backing for circuit state and idempotency records.

    Every method may raise PersistenceUnavailableError; callers convert
    that into a fail-closed decision.
    """

    async def load_circuit(self, destination: str) -> Optional[CircuitState]: ...

    async def load_circuits(self) -> list[CircuitState]: ...

    async def save_circuit(self, state: CircuitState) -> None: ...

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]: ...

    async def put_record(self, record: IdempotencyRecord) -> None: ...

    async def delete_record(self, key: str) -> bool: ...

    async def purge_expired(self, now: float) -> int: ...
