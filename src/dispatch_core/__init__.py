"""
dispatch-core

Resilience core of a batch-sending dispatch worker: per-destination
circuit breaker, per-key batching buffer and idempotency checker,
composed by a Dispatcher and run by a DispatchCoordinator.

Usage:
    from dispatch_core import Dispatcher, DispatchCoordinator, DispatchJob, PayloadBuilder

    dispatcher = Dispatcher(sender, PayloadBuilder({"welcome": '{"hi": "{{name}}"}'}))
    async with DispatchCoordinator(dispatcher, on_deferred=requeue) as coord:
        await coord.submit(DispatchJob(idempotency_key="k1", destination="d1",
                                       template_id="welcome", variables={"name": "Ada"}))
"""

from .breaker import Admit, BreakerConfig, CircuitBreaker, CircuitReport, Reject
from .buffer import Accepted, Buffer, BufferConfig
from .clock import Clock, ManualClock, SystemClock
from .coordinator import CoordinatorHealth, DispatchCoordinator, JobQueue
from .dispatcher import (
    BatchReport,
    CircuitOpenRejection,
    Dispatcher,
    DuplicateDelivery,
    Enqueued,
    PersistenceUnavailable,
)
from .errors import (
    DispatchError,
    PersistenceUnavailableError,
    QueueFullError,
    UnknownTemplateError,
)
from .events import CircuitEvent, EventBus, log_circuit_event
from .idempotency import (
    AlreadyCompleted,
    AlreadyInFlight,
    Admitted,
    IdempotencyChecker,
    IdempotencyConfig,
    Unavailable,
)
from .models import (
    BufferedBatch,
    CircuitState,
    CircuitStatus,
    DeliveryAttempt,
    DispatchJob,
    IdempotencyRecord,
    RecordStatus,
)
from .settings import DispatchSettings, get_settings
from .store import InMemoryStore, PersistenceStore, PostgresStore
from .template import PayloadBuilder, render
from .types import Sender, SendFailure, SendResult, SendSuccess

__version__ = "0.1.0"
__all__ = [
    # components
    "CircuitBreaker",
    "Buffer",
    "IdempotencyChecker",
    "Dispatcher",
    "DispatchCoordinator",
    "JobQueue",
    "PayloadBuilder",
    "render",
    # config
    "BreakerConfig",
    "BufferConfig",
    "IdempotencyConfig",
    "DispatchSettings",
    "get_settings",
    # outcomes
    "Admit",
    "Reject",
    "Accepted",
    "Admitted",
    "AlreadyInFlight",
    "AlreadyCompleted",
    "Unavailable",
    "Enqueued",
    "DuplicateDelivery",
    "CircuitOpenRejection",
    "PersistenceUnavailable",
    "SendSuccess",
    "SendFailure",
    "SendResult",
    "BatchReport",
    "CircuitReport",
    "CoordinatorHealth",
    # model
    "DispatchJob",
    "DeliveryAttempt",
    "CircuitState",
    "CircuitStatus",
    "IdempotencyRecord",
    "RecordStatus",
    "BufferedBatch",
    # collaborators
    "Sender",
    "PersistenceStore",
    "InMemoryStore",
    "PostgresStore",
    "Clock",
    "SystemClock",
    "ManualClock",
    "CircuitEvent",
    "EventBus",
    "log_circuit_event",
    # errors
    "DispatchError",
    "PersistenceUnavailableError",
    "QueueFullError",
    "UnknownTemplateError",
]
