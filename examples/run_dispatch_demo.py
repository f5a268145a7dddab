"""
Demo: DispatchCoordinator with a flaky webhook destination.

Shows batching, duplicate suppression, the circuit opening on a failing
destination, deferral of rejected jobs and graceful drain.
"""

import asyncio
import random

from loguru import logger

from dispatch_core import (
    CircuitBreaker,
    DispatchCoordinator,
    Dispatcher,
    DispatchJob,
    EventBus,
    PayloadBuilder,
    SendFailure,
    SendSuccess,
    get_settings,
    log_circuit_event,
    Buffer,
    IdempotencyChecker,
    PostgresStore,
)


class FlakySender:
    """Succeeds for every destination except ``down``, which always 503s."""

    def __init__(self, down: str):
        self.down = down

    async def send(self, destination, payload):
        await asyncio.sleep(random.uniform(0.001, 0.005))  # simulate network
        if destination == self.down:
            return SendFailure("HTTP 503")
        return SendSuccess({"status": 202})


async def run(settings, store):
    bus = EventBus()
    bus.subscribe(log_circuit_event)

    deferred = []
    released = []  # buffered before the circuit opened, handed back unsent

    async def on_deferred(job, outcome):
        deferred.append(job)

    async def on_report(report):
        released.extend(report.deferred)

    dispatcher = Dispatcher(
        FlakySender(down="https://hooks.example.com/down"),
        PayloadBuilder({"order.created": '{"event": "order.created", "order": "{{order_id}}"}'}),
        breaker=CircuitBreaker(settings.breaker_config(), store=store, events=bus),
        buffer=Buffer(settings.buffer_config()),
        idempotency=IdempotencyChecker(settings.idempotency_config(), store=store),
        send_timeout=settings.send_timeout,
        on_report=on_report,
    )

    destinations = ["https://hooks.example.com/up", "https://hooks.example.com/down"]
    async with DispatchCoordinator(
        dispatcher,
        workers=settings.workers,
        capacity=settings.queue_capacity,
        flush_interval=settings.flush_interval,
        on_deferred=on_deferred,
    ) as coord:
        logger.info("🚀 Submitting 2,000 jobs (10% redelivered duplicates)")
        for i in range(2_000):
            key = f"order-{i if random.random() > 0.1 else max(0, i - 1)}"
            await coord.submit(
                DispatchJob(
                    idempotency_key=key,
                    destination=destinations[i % 2],
                    template_id="order.created",
                    variables={"order_id": key},
                )
            )
        await asyncio.sleep(0.5)
        h = coord.health()
        logger.info(
            f"Health: workers={h.workers_alive} queue={h.queue_size}/{h.capacity} "
            f"buffered={h.buffered_items} open={list(h.open_circuits)}"
        )

    logger.info(
        f"✅ Demo complete; {len(deferred)} jobs deferred and {len(released)} "
        "buffered attempts released for requeue"
    )


async def main():
    settings = get_settings()
    store = settings.persistence_store()  # DISPATCH_DATABASE_URL selects Postgres
    if isinstance(store, PostgresStore):
        async with store:
            await store.ensure_schema()
            await run(settings, store)
    else:
        await run(settings, store)


if __name__ == "__main__":
    asyncio.run(main())
