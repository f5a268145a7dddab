"""
Per-key batching buffer with size/bytes/age flush thresholds.

Items are appended to the open batch of their batch key in arrival order.
``flush`` detaches that batch and leaves the key empty, so anything added
afterwards starts the next batch; ``add`` and ``flush`` on the same key
hold the same lock and never interleave.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .clock import Clock, SystemClock
from .metrics import BATCH_FLUSH_SIZE
from .models import BufferedBatch, DeliveryAttempt
from .utils import KeyedLocks, payload_size, require_key


@dataclass(frozen=True)
class BufferConfig:
    """Flush thresholds; whichever is reached first wins."""

    max_batch_size: int = 1000  # items per batch
    max_batch_bytes: int = 1_048_576  # ~1MB of payload
    max_batch_age: float = 5.0  # seconds since the batch's first item

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.max_batch_bytes < 1:
            raise ValueError("max_batch_bytes must be >= 1")
        if self.max_batch_age <= 0:
            raise ValueError("max_batch_age must be > 0")


@dataclass(frozen=True)
class Accepted:
    batch_key: str
    position: int  # 0-based index of the item within its batch
    flush_due: bool


class Buffer:
    """Accumulates DeliveryAttempts per batch key.

    Usage:
        buf = Buffer(BufferConfig(max_batch_size=3))
        for attempt in attempts:
            acc = await buf.add(attempt.destination, attempt)
            if acc.flush_due:
                batch = await buf.flush(acc.batch_key)
    """

    def __init__(self, config: BufferConfig | None = None, *, clock: Clock | None = None):
        self._cfg = config or BufferConfig()
        self._clock = clock or SystemClock()
        self._batches: dict[str, BufferedBatch] = {}
        self._flush_requested: set[str] = set()
        self._members: set[str] = set()  # idempotency keys currently buffered
        self._locks = KeyedLocks()

    @property
    def config(self) -> BufferConfig:
        return self._cfg

    # --------------------------- public API

    async def add(self, batch_key: str, item: DeliveryAttempt) -> Accepted:
        require_key(batch_key, "batch_key")
        async with self._locks.hold(batch_key):
            batch = self._batches.get(batch_key)
            if batch is None:
                batch = self._batches[batch_key] = BufferedBatch(
                    batch_key=batch_key, opened_at=self._clock.now()
                )
            batch.items.append(item)
            batch.size_bytes += payload_size(item.payload)
            self._members.add(item.idempotency_key)

            return Accepted(
                batch_key=batch_key,
                position=len(batch.items) - 1,
                flush_due=self._due(batch_key, batch),
            )

    async def should_flush(self, batch_key: str) -> bool:
        async with self._locks.hold(batch_key):
            batch = self._batches.get(batch_key)
            return batch is not None and self._due(batch_key, batch)

    def request_flush(self, batch_key: str) -> None:
        """External flush signal; honoured by the next should_flush/due_keys check."""
        if batch_key in self._batches:
            self._flush_requested.add(batch_key)

    async def flush(self, batch_key: str) -> Optional[BufferedBatch]:
        """Detach the current batch for ``batch_key``. Returns None when empty."""
        async with self._locks.hold(batch_key):
            batch = self._batches.pop(batch_key, None)
            self._flush_requested.discard(batch_key)
            if batch is None or not batch.items:
                return None
            for item in batch.items:
                self._members.discard(item.idempotency_key)

        BATCH_FLUSH_SIZE.observe(len(batch.items))
        logger.debug(
            f"Flushed batch {batch_key}: {len(batch.items)} items, {batch.size_bytes} bytes"
        )
        return batch

    async def due_keys(self) -> list[str]:
        """Keys whose batch currently meets a flush condition."""
        due = []
        for key in list(self._batches):
            if await self.should_flush(key):
                due.append(key)
        return due

    async def flush_all(self) -> list[BufferedBatch]:
        """Detach every non-empty batch (used on graceful drain)."""
        out = []
        for key in list(self._batches):
            batch = await self.flush(key)
            if batch is not None:
                out.append(batch)
        return out

    def pending(self, batch_key: str) -> int:
        batch = self._batches.get(batch_key)
        return len(batch.items) if batch else 0

    def __contains__(self, idempotency_key: object) -> bool:
        """True while an attempt with this idempotency key waits in some batch."""
        return idempotency_key in self._members

    def __len__(self) -> int:
        return sum(len(b.items) for b in self._batches.values())

    # --------------------------- internals

    def _due(self, batch_key: str, batch: BufferedBatch) -> bool:
        if not batch.items:
            return False
        if batch_key in self._flush_requested:
            return True
        if len(batch.items) >= self._cfg.max_batch_size:
            return True
        if batch.size_bytes >= self._cfg.max_batch_bytes:
            return True
        return self._clock.now() - batch.opened_at >= self._cfg.max_batch_age
