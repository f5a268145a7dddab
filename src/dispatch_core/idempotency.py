"""
Duplicate-delivery suppression under at-least-once redelivery.

``begin`` is an atomic test-and-set per idempotency key: of any number of
concurrent callers exactly one is Admitted. Outcomes are recorded with
``complete``/``fail`` and retained for ``retention_period``; afterwards the
key behaves as unseen. A Pending record older than ``max_pending_age`` is
taken to belong to a crashed worker and can be admitted again.

Records live in the PersistenceStore. If the store cannot be reached,
``begin`` answers Unavailable and the caller must not send.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

from loguru import logger

from .clock import Clock, SystemClock
from .errors import PersistenceUnavailableError
from .metrics import IDEMPOTENCY_DECISIONS_TOTAL
from .models import IdempotencyRecord, RecordStatus
from .store import InMemoryStore, PersistenceStore
from .utils import KeyedLocks, require_key


@dataclass(frozen=True)
class IdempotencyConfig:
    retention_period: float = 48 * 3600.0  # seconds a resolved record is kept
    max_pending_age: float = 300.0  # seconds before a Pending record is reclaimable

    def __post_init__(self) -> None:
        if self.retention_period <= 0:
            raise ValueError("retention_period must be > 0")
        if self.max_pending_age <= 0:
            raise ValueError("max_pending_age must be > 0")


@dataclass(frozen=True)
class Admitted:
    key: str
    reclaimed: bool = False  # True when taking over a stale Pending record


@dataclass(frozen=True)
class AlreadyInFlight:
    key: str
    since: float


@dataclass(frozen=True)
class AlreadyCompleted:
    key: str
    status: RecordStatus
    result: Any = None


@dataclass(frozen=True)
class Unavailable:
    key: str


BeginDecision = Union[Admitted, AlreadyInFlight, AlreadyCompleted, Unavailable]


class IdempotencyChecker:
    def __init__(
        self,
        config: IdempotencyConfig | None = None,
        *,
        store: PersistenceStore | None = None,
        clock: Clock | None = None,
    ):
        self._cfg = config or IdempotencyConfig()
        self._store = store if store is not None else InMemoryStore()
        self._clock = clock or SystemClock()
        self._locks = KeyedLocks()

    @property
    def config(self) -> IdempotencyConfig:
        return self._cfg

    async def begin(self, key: str) -> BeginDecision:
        require_key(key, "idempotency_key")
        async with self._locks.hold(key):
            try:
                decision = await self._begin(key)
            except PersistenceUnavailableError as e:
                logger.warning(f"Idempotency store unavailable for {key}, refusing admission: {e}")
                decision = Unavailable(key)

        IDEMPOTENCY_DECISIONS_TOTAL.labels(decision=type(decision).__name__).inc()
        return decision

    async def complete(self, key: str, result: Any = None) -> bool:
        """Pending -> Completed with ``result`` cached. False if not Pending or store down."""
        return await self._resolve(key, RecordStatus.COMPLETED, result)

    async def fail(self, key: str) -> bool:
        """Pending -> Failed. The key stays suppressed until the record expires."""
        return await self._resolve(key, RecordStatus.FAILED, None)

    async def release(self, key: str) -> bool:
        """Roll back an admission that never reached the sender.

        Deletes a Pending record so the key reads as unseen again. Returns
        False when there was nothing Pending to release or the store is down.
        """
        require_key(key, "idempotency_key")
        async with self._locks.hold(key):
            try:
                rec = await self._store.get_record(key)
                if rec is None or rec.status != RecordStatus.PENDING:
                    return False
                await self._store.delete_record(key)
            except PersistenceUnavailableError as e:
                logger.warning(
                    f"Could not release {key} (reclaimable after max_pending_age): {e}"
                )
                return False
        logger.debug(f"Released idempotency key {key}")
        return True

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        """Current record for ``key`` with expiry applied (None if unseen or expired)."""
        rec = await self._store.get_record(key)
        if rec is None or rec.is_expired(self._clock.now()):
            return None
        return rec

    async def purge_expired(self) -> int:
        try:
            return await self._store.purge_expired(self._clock.now())
        except PersistenceUnavailableError as e:
            logger.warning(f"Idempotency sweep skipped: {e}")
            return 0

    # --------------------------- internals

    async def _begin(self, key: str) -> BeginDecision:
        now = self._clock.now()
        rec = await self._store.get_record(key)
        if rec is not None and rec.is_expired(now):
            rec = None

        if rec is None:
            await self._store.put_record(
                IdempotencyRecord(key=key, status=RecordStatus.PENDING, recorded_at=now)
            )
            return Admitted(key)

        if rec.status == RecordStatus.PENDING:
            age = now - rec.recorded_at
            if age < self._cfg.max_pending_age:
                return AlreadyInFlight(key, since=rec.recorded_at)
            logger.warning(f"Reclaiming {key}: pending for {age:.0f}s")
            await self._store.put_record(
                IdempotencyRecord(key=key, status=RecordStatus.PENDING, recorded_at=now)
            )
            return Admitted(key, reclaimed=True)

        return AlreadyCompleted(key, status=rec.status, result=rec.result)

    async def _resolve(self, key: str, status: RecordStatus, result: Any) -> bool:
        require_key(key, "idempotency_key")
        async with self._locks.hold(key):
            try:
                rec = await self._store.get_record(key)
                if rec is None or rec.status != RecordStatus.PENDING:
                    logger.debug(f"Ignoring {status.value} for {key}: no pending record")
                    return False
                now = self._clock.now()
                await self._store.put_record(
                    IdempotencyRecord(
                        key=key,
                        status=status,
                        recorded_at=now,
                        result=result,
                        expires_at=now + self._cfg.retention_period,
                    )
                )
            except PersistenceUnavailableError as e:
                logger.warning(f"Could not record {status.value} for {key}: {e}")
                return False
        return True
