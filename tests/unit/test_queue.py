"""
Unit tests for JobQueue.
"""

import asyncio

import pytest

from dispatch_core import DispatchJob, JobQueue, QueueFullError


def job(i):
    return DispatchJob(idempotency_key=f"k{i}", destination="d1", template_id="plain")


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        JobQueue(0)


@pytest.mark.asyncio
async def test_fifo_and_size():
    q = JobQueue(10)
    for i in range(3):
        await q.put(job(i))
    assert q.size == 3
    assert [(await q.get()).idempotency_key for _ in range(3)] == ["k0", "k1", "k2"]
    assert q.size == 0


@pytest.mark.asyncio
async def test_error_overflow():
    q = JobQueue(2, overflow_strategy="error")
    await q.put(job(0))
    await q.put(job(1))
    with pytest.raises(QueueFullError):
        await q.put(job(2))


@pytest.mark.asyncio
async def test_block_overflow_waits_for_space():
    q = JobQueue(1)
    await q.put(job(0))
    pending = asyncio.create_task(q.put(job(1)))
    await asyncio.sleep(0.01)
    assert not pending.done()

    await q.get()
    await asyncio.wait_for(pending, timeout=1.0)
    assert q.size == 1


@pytest.mark.asyncio
async def test_get_timeout():
    q = JobQueue(1)
    with pytest.raises(asyncio.TimeoutError):
        await q.get(timeout=0.01)


@pytest.mark.asyncio
async def test_watermark_callbacks_fire_once():
    events = []

    async def on_high():
        events.append("high")

    async def on_low():
        events.append("low")

    q = JobQueue(10, high_watermark=4, low_watermark=1, on_high=on_high, on_low=on_low)
    for i in range(6):
        await q.put(job(i))
    assert events == ["high"]

    for _ in range(5):
        await q.get()
    assert events == ["high", "low"]


@pytest.mark.asyncio
async def test_join_waits_for_task_done():
    q = JobQueue(5)
    await q.put(job(0))
    await q.get()
    joiner = asyncio.create_task(q.join())
    await asyncio.sleep(0.01)
    assert not joiner.done()
    q.task_done()
    await asyncio.wait_for(joiner, timeout=1.0)
