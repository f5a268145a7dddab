from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from loguru import logger

from ..dispatcher import CircuitOpenRejection, Dispatcher, PersistenceUnavailable
from ..metrics import QUEUE_DEPTH
from ..models import DispatchJob
from ..types import DeferredCallback
from .queue import BackpressureCallback, JobQueue, OverflowStrategy

ErrorCallback = Callable[[DispatchJob, Exception], Awaitable[None]]


@dataclass(frozen=True)
class CoordinatorHealth:
    workers_alive: int
    queue_size: int
    capacity: int
    buffered_items: int
    open_circuits: tuple[str, ...]


class DispatchCoordinator:
    """Worker runtime around a Dispatcher.

    producer -> JobQueue -> N workers -> Dispatcher (-> Buffer -> Sender)

    A timer task flushes due batches every ``flush_interval`` seconds and
    sweeps expired idempotency records every ``sweep_interval`` seconds.
    Jobs the dispatcher defers (circuit open, state unavailable) go to
    ``on_deferred`` so the caller can requeue them upstream.

    Example:
        async with DispatchCoordinator(dispatcher, workers=4, on_deferred=requeue) as coord:
            async for job in source:
                await coord.submit(job)
        # queue drained, timer stopped, remaining batches sent
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        capacity: int = 10_000,
        workers: int = 4,
        flush_interval: float = 0.5,
        sweep_interval: float = 60.0,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        overflow_strategy: OverflowStrategy = "block",
        on_deferred: Optional[DeferredCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_backpressure_high: Optional[BackpressureCallback] = None,
        on_backpressure_low: Optional[BackpressureCallback] = None,
        coord_id: str = "default",
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if flush_interval <= 0 or sweep_interval <= 0:
            raise ValueError("flush_interval and sweep_interval must be > 0")

        self._d = dispatcher
        self._q = JobQueue(
            capacity,
            high_watermark,
            low_watermark,
            overflow_strategy=overflow_strategy,
            on_high=on_backpressure_high,
            on_low=on_backpressure_low,
        )
        self._n_workers = workers
        self._flush_interval = flush_interval
        self._sweep_interval = sweep_interval
        self._on_deferred = on_deferred
        self._on_error = on_error
        self._coord_id = coord_id

        self._workers: list[asyncio.Task] = []
        self._busy: set[asyncio.Task] = set()
        self._timer: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self._started = False

    # --------------------------- lifecycle

    async def start(self) -> None:
        if self._started:
            return
        await self._d.breaker.warm()
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._work(i), name=f"{self._coord_id}-worker-{i}")
            for i in range(self._n_workers)
        ]
        self._timer = asyncio.create_task(self._tick(), name=f"{self._coord_id}-timer")
        self._started = True
        logger.info(f"DispatchCoordinator {self._coord_id} started ({self._n_workers} workers)")

    async def stop(self, drain: bool = True, timeout: float = 10.0) -> None:
        """Stop workers and timer. With ``drain`` wait for queued jobs, then send all buffered batches.

        A graceful stop never interrupts a delivery in progress: the timer and
        any busy worker finish the batch they hold before exiting, since a
        detached batch is no longer visible to the final drain.
        """
        if not self._started:
            return
        if drain:
            try:
                await asyncio.wait_for(self._q.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"DispatchCoordinator {self._coord_id}: drain timed out with "
                    f"{self._q.size} jobs queued"
                )

        self._stopping.set()
        tasks = [*self._workers, *([self._timer] if self._timer else [])]
        for t in tasks:
            if not drain or (t is not self._timer and t not in self._busy):
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers, self._timer = [], None
        self._started = False

        if drain:
            await self._d.drain()
        logger.info(f"DispatchCoordinator {self._coord_id} stopped")

    async def __aenter__(self) -> "DispatchCoordinator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop(drain=True)

    # --------------------------- producer API

    async def submit(self, job: DispatchJob) -> None:
        await self._q.put(job)

    async def submit_many(self, jobs: Iterable[DispatchJob]) -> None:
        for job in jobs:
            await self._q.put(job)

    def health(self) -> CoordinatorHealth:
        return CoordinatorHealth(
            workers_alive=sum(1 for t in self._workers if not t.done()),
            queue_size=self._q.size,
            capacity=self._q.capacity,
            buffered_items=len(self._d.buffer),
            open_circuits=tuple(self._d.breaker.open_destinations()),
        )

    # --------------------------- tasks

    async def _work(self, worker_id: int) -> None:
        me = asyncio.current_task()
        while not self._stopping.is_set():
            job = await self._q.get()
            self._busy.add(me)
            try:
                outcome = await self._d.dispatch(job)
                if isinstance(outcome, (CircuitOpenRejection, PersistenceUnavailable)):
                    if self._on_deferred is not None:
                        await self._on_deferred(job, outcome)
                    else:
                        logger.warning(
                            f"Job {job.idempotency_key} deferred ({type(outcome).__name__}) "
                            "and no on_deferred callback is set"
                        )
            except Exception as exc:
                logger.error(
                    f"Worker {worker_id} could not dispatch {job.idempotency_key}: "
                    f"{type(exc).__name__}: {exc}"
                )
                if self._on_error is not None:
                    await self._on_error(job, exc)
            finally:
                self._busy.discard(me)
                self._q.task_done()

    async def _tick(self) -> None:
        loop = asyncio.get_running_loop()
        last_sweep = loop.time()
        while True:
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._flush_interval)
                return
            except asyncio.TimeoutError:
                pass
            QUEUE_DEPTH.labels(coordinator=self._coord_id).set(self._q.size)
            try:
                await self._d.flush_due()
                if loop.time() - last_sweep >= self._sweep_interval:
                    last_sweep = loop.time()
                    await self._d.idempotency.purge_expired()
            except Exception:
                logger.exception(f"DispatchCoordinator {self._coord_id}: periodic flush failed")
