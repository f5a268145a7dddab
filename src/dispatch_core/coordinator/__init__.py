"""Dispatch Coordinator

Worker runtime for the dispatch core:
- JobQueue (bounded, watermarks, block/error overflow)
- N worker tasks feeding Dispatcher.dispatch
- periodic flush timer + idempotency sweep
- graceful drain on shutdown
"""

from .queue import JobQueue, OverflowStrategy, BackpressureCallback
from .coordinator import DispatchCoordinator, CoordinatorHealth

__all__ = [
    "JobQueue",
    "OverflowStrategy",
    "BackpressureCallback",
    "DispatchCoordinator",
    "CoordinatorHealth",
]
