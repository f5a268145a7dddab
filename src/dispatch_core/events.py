"""
Circuit transition events.

In-process pub/sub so that several parties can react to a destination
changing health (logging, alerting webhooks, a retry scheduler pausing a
destination) without the breaker knowing about any of them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from .models import CircuitStatus


@dataclass(frozen=True)
class CircuitEvent:
    """Immutable record of one breaker transition.

    Attributes:
        destination: Destination whose circuit changed
        previous: Status before the transition
        current: Status after the transition
        failures: Consecutive failures at the time of the transition
        reason: Short context (e.g., "threshold", "trial_failed", "trial_succeeded", "forced")
        at: Clock time of the transition
    """

    destination: str
    previous: CircuitStatus
    current: CircuitStatus
    failures: int
    reason: str
    at: float

    @property
    def opened(self) -> bool:
        return self.current == CircuitStatus.OPEN


class EventSubscriber(Protocol):
    async def __call__(self, event: CircuitEvent) -> None: ...


class EventBus:
    """Best-effort fan-out of CircuitEvents.

    Subscribers are called in registration order. One subscriber raising
    does not stop the others.

    Example:
        bus = EventBus()

        async def page_oncall(event: CircuitEvent):
            if event.opened:
                await pager.notify(event.destination)

        bus.subscribe(page_oncall)
        breaker = CircuitBreaker(cfg, events=bus)
    """

    def __init__(self) -> None:
        self._subs: list[EventSubscriber] = []

    def subscribe(self, callback: EventSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Circuit event subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: EventSubscriber) -> None:
        """Remove a subscriber; no-op if it was never added."""
        try:
            self._subs.remove(callback)
        except ValueError:
            return
        logger.debug(f"Circuit event subscriber removed (total: {len(self._subs)})")

    async def publish(self, event: CircuitEvent) -> None:
        if not self._subs:
            return

        for callback in list(self._subs):
            try:
                await callback(event)
            except Exception as exc:
                logger.warning(
                    f"Circuit event subscriber failed for {event.destination}: "
                    f"{type(exc).__name__}: {exc}"
                )

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)


async def log_circuit_event(event: CircuitEvent) -> None:
    """Subscriber that writes transitions to the log."""
    msg = (
        f"Circuit {event.destination}: {event.previous.value} -> {event.current.value} "
        f"({event.reason}, failures={event.failures})"
    )
    if event.opened:
        logger.warning(msg)
    else:
        logger.info(msg)
