from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Literal, Optional

from ..errors import QueueFullError
from ..models import DispatchJob

OverflowStrategy = Literal["block", "error"]
BackpressureCallback = Callable[[], Awaitable[None]]


class JobQueue:
    """Bounded in-process job queue with high/low watermarks.

    Jobs are never dropped: when full, ``put`` either waits ("block") or
    raises QueueFullError ("error") so the upstream queue keeps the job.
    """

    def __init__(
        self,
        capacity: int,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        *,
        overflow_strategy: OverflowStrategy = "block",
        on_high: Optional[BackpressureCallback] = None,
        on_low: Optional[BackpressureCallback] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._q: asyncio.Queue[DispatchJob] = asyncio.Queue(maxsize=capacity)

        self._high_wm = (
            high_watermark if high_watermark is not None else max(1, int(0.8 * capacity))
        )
        self._low_wm = low_watermark if low_watermark is not None else int(0.5 * capacity)
        self._overflow = overflow_strategy
        self._on_high = on_high
        self._on_low = on_low
        self._high_fired = False  # avoid duplicate signals

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return self._q.qsize()

    async def put(self, job: DispatchJob) -> None:
        if self._overflow == "error" and self._q.full():
            raise QueueFullError("JobQueue is full")
        await self._q.put(job)
        await self._maybe_signal_high()

    async def get(self, timeout: float | None = None) -> DispatchJob:
        """Next job; raises asyncio.TimeoutError if none arrives within ``timeout``."""
        if timeout is None:
            job = await self._q.get()
        else:
            job = await asyncio.wait_for(self._q.get(), timeout=timeout)
        await self._maybe_signal_low()
        return job

    def task_done(self) -> None:
        self._q.task_done()

    async def join(self) -> None:
        """Wait until every job taken with ``get`` has been marked done."""
        await self._q.join()

    async def _maybe_signal_high(self) -> None:
        if not self._high_fired and self.size >= self._high_wm:
            self._high_fired = True
            if self._on_high:
                await self._on_high()

    async def _maybe_signal_low(self) -> None:
        if self._high_fired and self.size <= self._low_wm:
            self._high_fired = False
            if self._on_low:
                await self._on_low()
