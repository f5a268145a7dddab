"""
Prometheus metrics for dispatch-core.

Registered in the global REGISTRY at import; expose them with
``prometheus_client.start_http_server`` in the surrounding application.
"""

from prometheus_client import Counter, Gauge, Histogram

from .models import CircuitStatus

DISPATCH_OUTCOMES_TOTAL = Counter(
    "dispatch_outcomes_total",
    "Dispatch decisions by outcome",
    ["outcome"],
)

IDEMPOTENCY_DECISIONS_TOTAL = Counter(
    "dispatch_idempotency_decisions_total",
    "Idempotency begin() decisions",
    ["decision"],
)

CIRCUIT_TRANSITIONS_TOTAL = Counter(
    "dispatch_circuit_transitions_total",
    "Circuit breaker transitions",
    ["destination", "to_state"],
)

CIRCUIT_STATE = Gauge(
    "dispatch_circuit_state",
    "Circuit state per destination (0=closed, 1=half_open, 2=open)",
    ["destination"],
)

BATCH_FLUSH_SIZE = Histogram(
    "dispatch_batch_flush_size",
    "Items per flushed batch",
    buckets=[1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500],
)

SEND_LATENCY_SECONDS = Histogram(
    "dispatch_send_latency_seconds",
    "Sender call latency",
    ["outcome"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

QUEUE_DEPTH = Gauge(
    "dispatch_queue_depth",
    "Jobs waiting in the coordinator queue",
    ["coordinator"],
)

_STATE_VALUES = {
    CircuitStatus.CLOSED: 0,
    CircuitStatus.HALF_OPEN: 1,
    CircuitStatus.OPEN: 2,
}


def circuit_state_value(status: CircuitStatus) -> int:
    return _STATE_VALUES[status]
