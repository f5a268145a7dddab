"""
Unit tests for Dispatcher orchestration.
"""

import asyncio

import pytest

from dispatch_core import (
    BreakerConfig,
    Buffer,
    BufferConfig,
    CircuitBreaker,
    CircuitOpenRejection,
    CircuitStatus,
    Dispatcher,
    DispatchError,
    DispatchJob,
    DuplicateDelivery,
    Enqueued,
    IdempotencyChecker,
    InMemoryStore,
    PersistenceUnavailable,
    PersistenceUnavailableError,
    RecordStatus,
    UnknownTemplateError,
)


def job(key, dest="d1", template="plain", **variables):
    return DispatchJob(
        idempotency_key=key,
        destination=dest,
        template_id=template,
        variables=variables or {"name": key},
    )


@pytest.fixture
def make_dispatcher(clock, store, sender, payloads):
    def _make(batch_size=1, threshold=3, reset=30.0, max_age=5.0, **kw):
        return Dispatcher(
            kw.pop("sender", sender),
            payloads,
            breaker=CircuitBreaker(
                BreakerConfig(failure_threshold=threshold, reset_timeout=reset),
                store=store,
                clock=clock,
            ),
            buffer=Buffer(BufferConfig(max_batch_size=batch_size, max_batch_age=max_age), clock=clock),
            idempotency=IdempotencyChecker(store=store, clock=clock),
            clock=clock,
            **kw,
        )

    return _make


@pytest.mark.asyncio
async def test_admitted_job_is_rendered_buffered_and_sent(make_dispatcher, sender, store):
    d = make_dispatcher(batch_size=1)
    outcome = await d.dispatch(job("k1", name="Ada"))

    assert isinstance(outcome, Enqueued)
    assert outcome.flushed
    assert outcome.attempt.payload == "hello Ada"
    assert sender.calls == [("d1", "hello Ada")]
    assert store.records["k1"].status == RecordStatus.COMPLETED
    assert store.records["k1"].result == {"status": 200}


@pytest.mark.asyncio
async def test_batches_until_size_reached(make_dispatcher, sender):
    d = make_dispatcher(batch_size=3)
    assert not (await d.dispatch(job("A"))).flushed
    assert not (await d.dispatch(job("B"))).flushed
    assert sender.calls == []

    assert (await d.dispatch(job("C"))).flushed
    assert [p for _, p in sender.calls] == ["hello A", "hello B", "hello C"]


@pytest.mark.asyncio
async def test_duplicate_in_flight_and_completed(make_dispatcher, sender):
    d = make_dispatcher(batch_size=10)
    await d.dispatch(job("k1"))

    dup = await d.dispatch(job("k1"))
    assert dup == DuplicateDelivery("k1", in_flight=True)

    await d.drain()
    done = await d.dispatch(job("k1"))
    assert isinstance(done, DuplicateDelivery)
    assert not done.in_flight
    assert done.status == RecordStatus.COMPLETED
    assert done.result == {"status": 200}
    assert len(sender.calls) == 1


@pytest.mark.asyncio
async def test_send_failure_feeds_breaker_and_idempotency(make_dispatcher, sender, store):
    sender.failing.add("d1")
    d = make_dispatcher(batch_size=1, threshold=2)

    await d.dispatch(job("k1"))
    assert store.records["k1"].status == RecordStatus.FAILED
    assert store.circuits["d1"].consecutive_failures == 1

    await d.dispatch(job("k2"))
    assert store.circuits["d1"].status == CircuitStatus.OPEN


@pytest.mark.asyncio
async def test_open_circuit_rejects_without_sending_and_releases_key(
    make_dispatcher, sender, store
):
    sender.failing.add("d1")
    d = make_dispatcher(batch_size=1, threshold=1)
    await d.dispatch(job("k1"))
    calls = len(sender.calls)

    rejected = await d.dispatch(job("k2"))
    assert isinstance(rejected, CircuitOpenRejection)
    assert rejected.reason == "open"
    assert rejected.destination == "d1"
    assert rejected.retry_after == pytest.approx(30.0)
    assert len(sender.calls) == calls
    assert "k2" not in store.records  # released, not stuck in flight


@pytest.mark.asyncio
async def test_rejected_job_can_be_retried_after_reset(make_dispatcher, sender, clock):
    sender.failing.add("d1")
    d = make_dispatcher(batch_size=10, threshold=1, reset=30.0)
    await d.dispatch(job("k1"))
    await d.drain()

    assert isinstance(await d.dispatch(job("k2")), CircuitOpenRejection)

    sender.failing.clear()
    clock.advance(30)
    outcome = await d.dispatch(job("k2"))
    assert isinstance(outcome, Enqueued)
    assert outcome.flushed  # trial is sent right away despite batch_size=10
    assert (await d.breaker.status("d1")).status == CircuitStatus.CLOSED


@pytest.mark.asyncio
async def test_sender_exception_and_timeout_are_failures(
    make_dispatcher, sender, make_sender, store
):
    sender.raising.add("d1")
    d = make_dispatcher(batch_size=1)
    await d.dispatch(job("k1"))
    assert store.records["k1"].status == RecordStatus.FAILED

    slow = make_sender(delay=0.2)
    d2 = make_dispatcher(batch_size=1, sender=slow, send_timeout=0.01)
    await d2.dispatch(job("k2", dest="d2"))
    assert store.records["k2"].status == RecordStatus.FAILED
    assert store.circuits["d2"].consecutive_failures == 1


@pytest.mark.asyncio
async def test_report_callback(make_dispatcher, sender):
    reports = []

    async def on_report(report):
        reports.append(report)

    sender.failing.add("bad")
    d = make_dispatcher(batch_size=2, on_report=on_report)
    await d.dispatch(job("a", dest="good"))
    await d.dispatch(job("b", dest="good"))
    await d.dispatch(job("c", dest="bad"))
    await d.drain()

    assert [(r.batch_key, len(r.succeeded), len(r.failed)) for r in reports] == [
        ("good", 2, 0),
        ("bad", 0, 1),
    ]
    assert reports[1].failed[0][1] == "HTTP 503"


@pytest.mark.asyncio
async def test_report_callback_error_does_not_break_delivery(make_dispatcher, store):
    async def broken(report):
        raise RuntimeError("boom")

    d = make_dispatcher(batch_size=1, on_report=broken)
    await d.dispatch(job("k1"))
    assert store.records["k1"].status == RecordStatus.COMPLETED


@pytest.mark.asyncio
async def test_flush_due_respects_age(make_dispatcher, sender, clock):
    d = make_dispatcher(batch_size=100, max_age=5.0)
    await d.dispatch(job("k1"))
    assert await d.flush_due() == []
    clock.advance(5)
    reports = await d.flush_due()
    assert len(reports) == 1 and reports[0].total == 1
    assert await d.flush("d1") is None


@pytest.mark.asyncio
async def test_unknown_template_raises_before_state_changes(make_dispatcher, store):
    d = make_dispatcher()
    with pytest.raises(UnknownTemplateError):
        await d.dispatch(job("k1", template="nope"))
    assert store.records == {}


@pytest.mark.asyncio
async def test_store_outage_refuses_and_sends_nothing(make_dispatcher, sender, store):
    d = make_dispatcher()
    store.available = False
    outcome = await d.dispatch(job("k1"))
    assert outcome == PersistenceUnavailable("k1", "idempotency")
    assert sender.calls == []


@pytest.mark.asyncio
async def test_breaker_state_unknown_is_persistence_unavailable(make_dispatcher, sender, store):
    class FlakyCircuitStore(type(store)):
        async def load_circuit(self, destination):
            raise PersistenceUnavailableError("circuits down")

    flaky = FlakyCircuitStore()
    d = make_dispatcher()
    d.breaker = CircuitBreaker(store=flaky)
    d.idempotency = IdempotencyChecker(store=flaky)

    outcome = await d.dispatch(job("k1"))
    assert outcome == PersistenceUnavailable("k1", "breaker")
    assert "k1" not in flaky.records
    assert sender.calls == []


@pytest.mark.asyncio
async def test_custom_batch_key(make_dispatcher, sender):
    d = make_dispatcher(batch_size=2, batch_key=lambda a: "all")
    await d.dispatch(job("a", dest="d1"))
    out = await d.dispatch(job("b", dest="d2"))
    assert out.flushed
    assert [dest for dest, _ in sender.calls] == ["d1", "d2"]


@pytest.mark.asyncio
async def test_concurrent_dispatch_same_key_sends_once(make_dispatcher, sender):
    d = make_dispatcher(batch_size=1)
    outcomes = await asyncio.gather(*[d.dispatch(job("k1")) for _ in range(10)])
    assert sum(isinstance(o, Enqueued) for o in outcomes) == 1
    assert len(sender.calls) == 1


def test_job_requires_identities():
    with pytest.raises(ValueError):
        DispatchJob(idempotency_key="k", destination="", template_id="t")
    with pytest.raises(ValueError):
        DispatchJob(idempotency_key=" ", destination="d", template_id="t")



@pytest.mark.asyncio
async def test_keeps_the_components_it_is_given(clock, sender, payloads):
    buf = Buffer(BufferConfig(max_batch_size=2), clock=clock)
    breaker = CircuitBreaker(clock=clock)
    checker = IdempotencyChecker(clock=clock)
    d = Dispatcher(sender, payloads, breaker=breaker, buffer=buf, idempotency=checker, clock=clock)

    assert d.buffer is buf
    assert d.breaker is breaker
    assert d.idempotency is checker
    assert not (await d.dispatch(job("A"))).flushed
    assert (await d.dispatch(job("B"))).flushed


@pytest.mark.asyncio
async def test_batch_stops_sending_once_circuit_opens(make_dispatcher, sender, store):
    reports = []

    async def on_report(report):
        reports.append(report)

    sender.failing.add("d1")
    d = make_dispatcher(batch_size=10, threshold=3, on_report=on_report)
    for i in range(10):
        await d.dispatch(job(f"k{i}"))

    assert len(sender.calls) == 3
    assert store.circuits["d1"].status == CircuitStatus.OPEN
    report = reports[0]
    assert len(report.failed) == 3
    assert [a.idempotency_key for a in report.deferred] == [f"k{i}" for i in range(3, 10)]
    assert report.total == 10
    # deferred keys are released, so a requeued job is admitted again later
    assert all(f"k{i}" not in store.records for i in range(3, 10))


@pytest.mark.asyncio
async def test_trial_flush_sends_only_the_trial(make_dispatcher, sender, store, clock):
    reports = []

    async def on_report(report):
        reports.append(report)

    d = make_dispatcher(batch_size=10, threshold=1, reset=30.0, on_report=on_report)
    await d.dispatch(job("A"))
    await d.dispatch(job("B"))
    await d.breaker.force_state("d1", CircuitStatus.OPEN)
    clock.advance(30)

    outcome = await d.dispatch(job("C"))
    assert outcome.flushed and outcome.attempt.trial
    assert sender.calls == [("d1", "hello C")]
    assert [a.idempotency_key for a in reports[0].deferred] == ["A", "B"]
    assert store.records["C"].status == RecordStatus.COMPLETED
    assert "A" not in store.records and "B" not in store.records
    assert store.circuits["d1"].status == CircuitStatus.CLOSED


@pytest.mark.asyncio
async def test_reclaimed_key_still_buffered_is_not_buffered_again(
    make_dispatcher, sender, store, clock
):
    # max_pending_age defaults to 300s, so the record goes stale before the batch ages out
    d = make_dispatcher(batch_size=10, max_age=600.0)
    await d.dispatch(job("k1"))
    clock.advance(301)

    again = await d.dispatch(job("k1"))
    assert again == DuplicateDelivery("k1", in_flight=True)
    assert len(d.buffer) == 1

    await d.drain()
    assert len(sender.calls) == 1
    assert store.records["k1"].status == RecordStatus.COMPLETED


@pytest.mark.asyncio
async def test_record_error_does_not_abandon_rest_of_batch(make_dispatcher, sender, clock):
    class RejectingStore(InMemoryStore):
        async def put_record(self, record):
            if record.key == "a" and record.status != RecordStatus.PENDING:
                raise DispatchError("cannot store result for a")
            await super().put_record(record)

    bad = RejectingStore()
    d = make_dispatcher(batch_size=2)
    d.idempotency = IdempotencyChecker(store=bad, clock=clock)

    await d.dispatch(job("a"))
    await d.dispatch(job("b"))

    assert [p for _, p in sender.calls] == ["hello a", "hello b"]
    assert bad.records["a"].status == RecordStatus.PENDING
    assert bad.records["b"].status == RecordStatus.COMPLETED
