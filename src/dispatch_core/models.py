"""
Data model for dispatch-core.

Jobs arrive as pydantic models (validated at the edge); everything the
components own internally is a frozen dataclass replaced wholesale on
each transition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class DispatchJob(BaseModel):
    """One unit of work pulled from the queue."""

    idempotency_key: str
    destination: str
    template_id: str
    variables: dict[str, str] = Field(default_factory=dict)

    @field_validator("idempotency_key", "destination", "template_id")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must be a non-empty string")
        return v


@dataclass(frozen=True)
class DeliveryAttempt:
    """An admitted, rendered job. Immutable once created."""

    idempotency_key: str
    destination: str
    payload: str | bytes
    enqueued_at: float
    trial: bool = False  # holds the HalfOpen trial for its destination


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitState:
    """Health of one destination.

    Attributes:
        status: CLOSED, OPEN or HALF_OPEN
        consecutive_failures: failures counted in the current window
        opened_at: when the circuit last opened (None while never opened)
        trial_in_flight: a HalfOpen trial has been handed out
        window_started_at: first failure counted in the current window
        trial_started_at: when the current HalfOpen trial was handed out
    """

    destination: str
    status: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    trial_in_flight: bool = False
    window_started_at: Optional[float] = None
    trial_started_at: Optional[float] = None


class RecordStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class IdempotencyRecord:
    """Outcome bookkeeping for one idempotency key.

    ``expires_at`` is None while Pending; pending records age out through
    ``max_pending_age`` instead.
    """

    key: str
    status: RecordStatus
    recorded_at: float
    result: Any = None
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass
class BufferedBatch:
    """Items accumulated under one batch key, in admission order."""

    batch_key: str
    opened_at: float
    items: list[DeliveryAttempt] = field(default_factory=list)
    size_bytes: int = 0

    def __len__(self) -> int:
        return len(self.items)
