"""
Dispatcher: idempotency -> circuit breaker -> buffer -> sender.

For each job:
    1. render the payload (unknown template ids fail before any state changes)
    2. IdempotencyChecker.begin; anything but Admitted short-circuits
    3. CircuitBreaker.allow; a Reject releases the idempotency admission
       and the job is handed back for deferral
    4. Buffer.add; when the batch is due it is flushed and sent right away

Each flushed batch goes to the Sender item by item in admission order and
every outcome is fed back to the breaker (per destination) and the
idempotency checker (per key). Items whose circuit is no longer closed
when their turn comes are not sent: their admission is released and
they are reported as deferred. Only the HalfOpen trial itself goes out.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger

from .breaker import CircuitBreaker, Reject
from .buffer import Buffer
from .clock import Clock, SystemClock
from .idempotency import Admitted, AlreadyInFlight, IdempotencyChecker, Unavailable
from .metrics import DISPATCH_OUTCOMES_TOTAL, SEND_LATENCY_SECONDS
from .errors import DispatchError
from .models import BufferedBatch, CircuitStatus, DeliveryAttempt, DispatchJob, RecordStatus
from .template import PayloadBuilder
from .types import Sender, SendFailure, SendResult, SendSuccess


@dataclass(frozen=True)
class Enqueued:
    attempt: DeliveryAttempt
    flushed: bool = False


@dataclass(frozen=True)
class DuplicateDelivery:
    """Do not re-dispatch. ``result`` is the cached outcome when there is one."""

    key: str
    in_flight: bool
    status: Optional[RecordStatus] = None
    result: Any = None


@dataclass(frozen=True)
class CircuitOpenRejection:
    """Destination is failing; requeue/defer the job. Nothing was sent."""

    key: str
    destination: str
    reason: str
    retry_after: Optional[float] = None


@dataclass(frozen=True)
class PersistenceUnavailable:
    """State could not be read or written; admission refused (fail-closed)."""

    key: str
    component: str  # "idempotency" or "breaker"


DispatchOutcome = Union[Enqueued, DuplicateDelivery, CircuitOpenRejection, PersistenceUnavailable]


@dataclass
class BatchReport:
    batch_key: str
    succeeded: list[DeliveryAttempt] = field(default_factory=list)
    failed: list[tuple[DeliveryAttempt, str]] = field(default_factory=list)
    deferred: list[DeliveryAttempt] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.deferred)


ReportCallback = Callable[[BatchReport], Awaitable[None]]


def _by_destination(attempt: DeliveryAttempt) -> str:
    return attempt.destination


class Dispatcher:
    def __init__(
        self,
        sender: Sender,
        payloads: PayloadBuilder,
        *,
        breaker: CircuitBreaker | None = None,
        buffer: Buffer | None = None,
        idempotency: IdempotencyChecker | None = None,
        clock: Clock | None = None,
        send_timeout: float | None = 30.0,
        batch_key: Callable[[DeliveryAttempt], str] = _by_destination,
        on_report: ReportCallback | None = None,
    ):
        self._sender = sender
        self._payloads = payloads
        self._clock = clock or SystemClock()
        self.breaker = breaker if breaker is not None else CircuitBreaker(clock=self._clock)
        self.buffer = buffer if buffer is not None else Buffer(clock=self._clock)
        self.idempotency = (
            idempotency if idempotency is not None else IdempotencyChecker(clock=self._clock)
        )
        self._send_timeout = send_timeout
        self._batch_key = batch_key
        self._on_report = on_report

    async def dispatch(self, job: DispatchJob) -> DispatchOutcome:
        outcome = await self._dispatch(job)
        DISPATCH_OUTCOMES_TOTAL.labels(outcome=type(outcome).__name__).inc()
        return outcome

    async def flush(self, batch_key: str) -> Optional[BatchReport]:
        """Flush one batch key and send it. None when nothing was buffered."""
        batch = await self.buffer.flush(batch_key)
        if batch is None:
            return None
        return await self._deliver(batch)

    async def flush_due(self) -> list[BatchReport]:
        """Flush and send every batch whose size/bytes/age/signal threshold is met."""
        reports = []
        for key in await self.buffer.due_keys():
            report = await self.flush(key)
            if report is not None:
                reports.append(report)
        return reports

    async def drain(self) -> list[BatchReport]:
        """Flush and send everything still buffered (graceful shutdown)."""
        batches = await self.buffer.flush_all()
        if batches:
            logger.info(f"Draining {sum(len(b) for b in batches)} buffered items")
        return [await self._deliver(b) for b in batches]

    # --------------------------- internals

    async def _dispatch(self, job: DispatchJob) -> DispatchOutcome:
        key, destination = job.idempotency_key, job.destination
        payload = self._payloads.build(job.template_id, job.variables)

        decision = await self.idempotency.begin(key)
        if isinstance(decision, Unavailable):
            return PersistenceUnavailable(key, "idempotency")
        if isinstance(decision, AlreadyInFlight):
            logger.debug(f"Duplicate {key}: already in flight")
            return DuplicateDelivery(key, in_flight=True)
        if not isinstance(decision, Admitted):
            logger.debug(f"Duplicate {key}: already {decision.status.value}")
            return DuplicateDelivery(
                key, in_flight=False, status=decision.status, result=decision.result
            )
        if decision.reclaimed and key in self.buffer:
            # the earlier attempt never left the buffer and will still be sent
            logger.debug(f"Duplicate {key}: reclaimed while still buffered")
            return DuplicateDelivery(key, in_flight=True)

        gate = await self.breaker.allow(destination)
        if isinstance(gate, Reject):
            await self.idempotency.release(key)
            if gate.reason == "state_unknown":
                return PersistenceUnavailable(key, "breaker")
            logger.debug(f"Deferring {key}: circuit {gate.reason} for {destination}")
            return CircuitOpenRejection(key, destination, gate.reason, gate.retry_after)

        attempt = DeliveryAttempt(
            idempotency_key=key,
            destination=destination,
            payload=payload,
            enqueued_at=self._clock.now(),
            trial=gate.trial,
        )
        batch_key = self._batch_key(attempt)
        accepted = await self.buffer.add(batch_key, attempt)
        flush_now = accepted.flush_due or gate.trial  # the trial should not wait out max_batch_age

        if flush_now:
            await self.flush(batch_key)
        return Enqueued(attempt, flushed=flush_now)

    async def _deliver(self, batch: BufferedBatch) -> BatchReport:
        report = BatchReport(batch_key=batch.batch_key)
        for attempt in batch.items:
            if not attempt.trial and not await self._closed(attempt.destination):
                # circuit opened after admission; hand the key back instead of sending
                await self.idempotency.release(attempt.idempotency_key)
                report.deferred.append(attempt)
                continue

            result = await self._send(attempt)
            try:
                await self._record(attempt, result)
            except DispatchError as exc:
                logger.error(
                    f"Could not record outcome for {attempt.idempotency_key}: "
                    f"{type(exc).__name__}: {exc}"
                )
            if isinstance(result, SendSuccess):
                report.succeeded.append(attempt)
            else:
                report.failed.append((attempt, result.reason))

        if report.deferred:
            logger.warning(
                f"Batch {batch.batch_key}: {len(report.deferred)} items deferred, circuit not closed"
            )

        if report.failed:
            logger.error(
                f"Batch {batch.batch_key}: {len(report.failed)}/{report.total} sends failed "
                f"(first: {report.failed[0][1]})"
            )
        else:
            logger.debug(f"Batch {batch.batch_key}: {len(report.succeeded)} sent")

        if self._on_report is not None:
            try:
                await self._on_report(report)
            except Exception as exc:
                logger.warning(f"on_report callback failed: {type(exc).__name__}: {exc}")
        return report

    async def _closed(self, destination: str) -> bool:
        report = await self.breaker.status(destination)
        return report is not None and report.status == CircuitStatus.CLOSED

    async def _record(self, attempt: DeliveryAttempt, result: SendResult) -> None:
        if isinstance(result, SendSuccess):
            await self.breaker.record_success(attempt.destination)
            await self.idempotency.complete(attempt.idempotency_key, result.response)
        else:
            await self.breaker.record_failure(attempt.destination)
            await self.idempotency.fail(attempt.idempotency_key)

    async def _send(self, attempt: DeliveryAttempt) -> SendResult:
        started = time.perf_counter()
        try:
            call = self._sender.send(attempt.destination, attempt.payload)
            if self._send_timeout is not None:
                result = await asyncio.wait_for(call, timeout=self._send_timeout)
            else:
                result = await call
        except asyncio.TimeoutError:
            result = SendFailure(f"timeout after {self._send_timeout}s")
        except Exception as exc:
            result = SendFailure(f"{type(exc).__name__}: {exc}")

        if not isinstance(result, (SendSuccess, SendFailure)):
            result = SendSuccess(response=result)

        outcome = "success" if isinstance(result, SendSuccess) else "failure"
        SEND_LATENCY_SECONDS.labels(outcome=outcome).observe(time.perf_counter() - started)
        return result
