"""
Per-destination circuit breaker.

States:
    CLOSED     every attempt admitted; failures counted in a rolling window
    OPEN       attempts rejected until ``reset_timeout`` has passed since opening
    HALF_OPEN  exactly one trial attempt admitted; its outcome closes or reopens

The breaker never calls the destination. It answers ``allow`` with an
Admit or Reject and evolves state from ``record_success`` /
``record_failure``. State for each destination lives in an explicit
mapping owned by the breaker and is written through to the
PersistenceStore on every transition. When the store cannot be read or
written the breaker fails closed for that destination.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Union

from loguru import logger

from .clock import Clock, SystemClock
from .errors import PersistenceUnavailableError
from .events import CircuitEvent, EventBus
from .metrics import CIRCUIT_STATE, CIRCUIT_TRANSITIONS_TOTAL, circuit_state_value
from .models import CircuitState, CircuitStatus
from .store import InMemoryStore, PersistenceStore
from .utils import KeyedLocks, require_key


@dataclass(frozen=True)
class BreakerConfig:
    """Breaker policy.

    Attributes:
        failure_threshold: consecutive failures that open the circuit
        failure_window: seconds; failures older than this (measured from the
            first counted failure) no longer count toward the threshold
        reset_timeout: seconds an open circuit waits before allowing a trial
    """

    failure_threshold: int = 5
    failure_window: float = 60.0
    reset_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.failure_window <= 0:
            raise ValueError("failure_window must be > 0")
        if self.reset_timeout <= 0:
            raise ValueError("reset_timeout must be > 0")


@dataclass(frozen=True)
class Admit:
    destination: str
    trial: bool = False


@dataclass(frozen=True)
class Reject:
    """Attempt refused without reaching the destination.

    ``reason`` is one of "open", "trial_in_flight" or "state_unknown".
    ``retry_after`` is a hint in seconds when one can be computed.
    """

    destination: str
    reason: str
    retry_after: Optional[float] = None


AllowDecision = Union[Admit, Reject]


@dataclass(frozen=True)
class CircuitReport:
    """Monitoring view of one destination."""

    destination: str
    status: CircuitStatus
    failures: int
    opened_at: Optional[float]
    is_available: bool


class CircuitBreaker:
    """Admit/deny gate per destination.

    Example:
        breaker = CircuitBreaker(BreakerConfig(failure_threshold=3))
        decision = await breaker.allow("https://hooks.example.com/a")
        if isinstance(decision, Admit):
            ...
            await breaker.record_success("https://hooks.example.com/a")
    """

    def __init__(
        self,
        config: BreakerConfig | None = None,
        *,
        store: PersistenceStore | None = None,
        clock: Clock | None = None,
        events: EventBus | None = None,
    ):
        self._cfg = config or BreakerConfig()
        self._store = store if store is not None else InMemoryStore()
        self._clock = clock or SystemClock()
        self._events = events
        self._states: dict[str, CircuitState] = {}
        self._locks = KeyedLocks()

    @property
    def config(self) -> BreakerConfig:
        return self._cfg

    async def warm(self) -> int:
        """Load every persisted circuit into memory (startup). Returns count loaded."""
        try:
            states = await self._store.load_circuits()
        except PersistenceUnavailableError as e:
            logger.warning(f"Circuit state unavailable at startup, failing closed: {e}")
            return 0
        for s in states:
            self._states[s.destination] = s
            CIRCUIT_STATE.labels(destination=s.destination).set(circuit_state_value(s.status))
        logger.info(f"Loaded {len(states)} circuit states")
        return len(states)

    # --------------------------- decisions

    async def allow(self, destination: str) -> AllowDecision:
        require_key(destination, "destination")
        event: CircuitEvent | None = None

        async with self._locks.hold(destination):
            state = await self._load(destination)
            if state is None:
                return Reject(destination, "state_unknown")

            now = self._clock.now()
            reset = self._cfg.reset_timeout

            if state.status == CircuitStatus.CLOSED:
                return Admit(destination)

            if state.status == CircuitStatus.OPEN:
                elapsed = reset if state.opened_at is None else now - state.opened_at
                if elapsed < reset:
                    return Reject(destination, "open", retry_after=reset - elapsed)
                new = replace(
                    state,
                    status=CircuitStatus.HALF_OPEN,
                    trial_in_flight=True,
                    trial_started_at=now,
                )
                if not await self._commit(new):
                    return Reject(destination, "state_unknown")
                event = self._event(state, new, "reset_timeout", now)
            else:
                waited = reset if state.trial_started_at is None else now - state.trial_started_at
                if state.trial_in_flight and waited < reset:
                    return Reject(destination, "trial_in_flight", retry_after=reset - waited)
                if state.trial_in_flight:
                    logger.warning(
                        f"Circuit {destination}: trial unresolved after {waited:.1f}s, "
                        "handing out a new one"
                    )
                new = replace(state, trial_in_flight=True, trial_started_at=now)
                if not await self._commit(new):
                    return Reject(destination, "state_unknown")

        if event:
            await self._emit(event)
        return Admit(destination, trial=True)

    async def record_success(self, destination: str) -> Optional[CircuitStatus]:
        """Feed a successful send back. Returns the resulting status (None if unknown)."""
        require_key(destination, "destination")
        event: CircuitEvent | None = None

        async with self._locks.hold(destination):
            state = await self._load(destination)
            if state is None:
                return None
            now = self._clock.now()

            if state.status == CircuitStatus.CLOSED:
                if state.consecutive_failures == 0 and state.window_started_at is None:
                    return state.status
                new = replace(state, consecutive_failures=0, window_started_at=None)
            elif state.status == CircuitStatus.HALF_OPEN:
                new = replace(
                    state,
                    status=CircuitStatus.CLOSED,
                    consecutive_failures=0,
                    window_started_at=None,
                    trial_in_flight=False,
                    trial_started_at=None,
                )
                event = self._event(state, new, "trial_succeeded", now)
            else:
                # late success from an attempt admitted before the circuit opened
                return state.status

            if not await self._commit(new):
                return None

        if event:
            await self._emit(event)
        return new.status

    async def record_failure(self, destination: str) -> Optional[CircuitStatus]:
        """Feed a failed send back. Returns the resulting status (None if unknown)."""
        require_key(destination, "destination")
        event: CircuitEvent | None = None

        async with self._locks.hold(destination):
            state = await self._load(destination)
            if state is None:
                return None
            now = self._clock.now()

            if state.status == CircuitStatus.OPEN:
                # opened_at only moves on a failed trial
                return state.status

            if state.status == CircuitStatus.HALF_OPEN:
                new = replace(
                    state,
                    status=CircuitStatus.OPEN,
                    consecutive_failures=state.consecutive_failures + 1,
                    opened_at=now,
                    trial_in_flight=False,
                    trial_started_at=None,
                )
                event = self._event(state, new, "trial_failed", now)
            else:
                window_start = state.window_started_at
                if window_start is None or now - window_start >= self._cfg.failure_window:
                    failures, window_start = 1, now
                else:
                    failures = state.consecutive_failures + 1

                if failures >= self._cfg.failure_threshold:
                    new = replace(
                        state,
                        status=CircuitStatus.OPEN,
                        consecutive_failures=failures,
                        window_started_at=window_start,
                        opened_at=now,
                    )
                    event = self._event(state, new, "threshold", now)
                else:
                    new = replace(
                        state, consecutive_failures=failures, window_started_at=window_start
                    )

            if not await self._commit(new):
                return None

        if event:
            await self._emit(event)
        return new.status

    # --------------------------- admin / monitoring

    async def force_state(self, destination: str, status: CircuitStatus) -> bool:
        """Administrative override. Returns False if the change could not be persisted."""
        require_key(destination, "destination")
        async with self._locks.hold(destination):
            state = await self._load(destination)
            if state is None:
                return False
            now = self._clock.now()
            if status == CircuitStatus.OPEN:
                new = replace(
                    state, status=status, opened_at=now, trial_in_flight=False, trial_started_at=None
                )
            elif status == CircuitStatus.CLOSED:
                new = CircuitState(destination=destination, opened_at=state.opened_at)
            else:
                new = replace(state, status=status, trial_in_flight=False, trial_started_at=None)
            if not await self._commit(new):
                return False
            event = self._event(state, new, "forced", now)

        await self._emit(event)
        return True

    async def status(self, destination: str) -> Optional[CircuitReport]:
        require_key(destination, "destination")
        async with self._locks.hold(destination):
            state = await self._load(destination)
        if state is None:
            return None

        now = self._clock.now()
        failures = state.consecutive_failures
        if (
            state.status == CircuitStatus.CLOSED
            and state.window_started_at is not None
            and now - state.window_started_at >= self._cfg.failure_window
        ):
            failures = 0

        if state.status == CircuitStatus.CLOSED:
            available = True
        elif state.status == CircuitStatus.OPEN:
            available = (
                state.opened_at is None or now - state.opened_at >= self._cfg.reset_timeout
            )
        else:
            available = not state.trial_in_flight

        return CircuitReport(
            destination=destination,
            status=state.status,
            failures=failures,
            opened_at=state.opened_at,
            is_available=available,
        )

    def open_destinations(self) -> list[str]:
        """Destinations currently not CLOSED (cached view, no store round-trip)."""
        return sorted(d for d, s in self._states.items() if s.status != CircuitStatus.CLOSED)

    # --------------------------- internals

    async def _load(self, destination: str) -> Optional[CircuitState]:
        cached = self._states.get(destination)
        if cached is not None:
            return cached
        try:
            state = await self._store.load_circuit(destination)
        except PersistenceUnavailableError as e:
            logger.warning(f"Circuit state for {destination} unavailable, rejecting: {e}")
            return None
        state = state or CircuitState(destination=destination)
        self._states[destination] = state
        return state

    async def _commit(self, new: CircuitState) -> bool:
        try:
            await self._store.save_circuit(new)
        except PersistenceUnavailableError as e:
            # state is unknown from here on; the next call re-reads the store
            self._states.pop(new.destination, None)
            logger.warning(f"Could not persist circuit state for {new.destination}: {e}")
            return False
        self._states[new.destination] = new
        CIRCUIT_STATE.labels(destination=new.destination).set(circuit_state_value(new.status))
        return True

    def _event(
        self, old: CircuitState, new: CircuitState, reason: str, now: float
    ) -> CircuitEvent:
        return CircuitEvent(
            destination=new.destination,
            previous=old.status,
            current=new.status,
            failures=new.consecutive_failures,
            reason=reason,
            at=now,
        )

    async def _emit(self, event: CircuitEvent) -> None:
        if event.previous != event.current:
            CIRCUIT_TRANSITIONS_TOTAL.labels(
                destination=event.destination, to_state=event.current.value
            ).inc()
        if event.opened:
            logger.warning(
                f"Circuit OPEN for {event.destination} ({event.reason}, "
                f"failures={event.failures})"
            )
        else:
            logger.debug(
                f"Circuit {event.destination}: {event.previous.value} -> {event.current.value}"
            )
        if self._events is not None:
            await self._events.publish(event)
