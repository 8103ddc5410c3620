"""Tests for stockwatch.streams — filters, batching, partial failure, bounded retry."""

import asyncio
from decimal import Decimal

import pytest

from stockwatch.core.errors import MalformedEventError
from stockwatch.core.models import PriceObservation, RecordType, Symbol, WriteKind, utcnow
from stockwatch.store import InMemorySymbolStore
from stockwatch.streams import (
    BatchResponse,
    ChangeStream,
    DeadLetterStore,
    StreamConsumer,
    StreamFilter,
)

PRICES = StreamFilter.of([RecordType.PRICE])


class RecordingHandler:
    """Batch handler that records batches and fails the ids it is told to."""

    def __init__(self, fail_always=(), fail_once=(), raise_error=False):
        self.batches = []
        self.fail_always = set(fail_always)
        self.fail_once = set(fail_once)
        self.raise_error = raise_error

    async def __call__(self, events):
        self.batches.append(events)
        if self.raise_error:
            raise RuntimeError("handler crashed")
        response = BatchResponse()
        for event in events:
            if event.ticker in self.fail_always:
                response.fail(event.event_id)
            elif event.ticker in self.fail_once:
                self.fail_once.discard(event.ticker)
                response.fail(event.event_id)
        return response

    def deliveries(self, ticker):
        return sum(1 for batch in self.batches for event in batch if event.ticker == ticker)


def write_prices(store, *tickers, value="1"):
    for ticker in tickers:
        store.put(PriceObservation(ticker, Decimal(value), utcnow()).to_item())


@pytest.fixture
def store():
    return InMemorySymbolStore()


@pytest.fixture
def stream(store):
    return ChangeStream().attach(store)


def make_consumer(stream, handler, **kwargs):
    kwargs.setdefault("batching_window", 0.0)
    return stream.subscribe(StreamConsumer("test-consumer", handler, PRICES, **kwargs))


class TestStreamFilter:
    def test_record_type_and_kind(self, store, stream):
        handler = RecordingHandler()
        consumer = stream.subscribe(
            StreamConsumer(
                "modifies", handler, StreamFilter.of([RecordType.PRICE], [WriteKind.MODIFY])
            )
        )
        store.put(Symbol("AAPL", "Apple").to_item())
        write_prices(store, "AAPL")
        assert consumer.pending == 0

        write_prices(store, "AAPL", value="2")
        assert consumer.pending == 1

    def test_fan_out_to_every_consumer(self, store, stream):
        first = make_consumer(stream, RecordingHandler())
        second = make_consumer(stream, RecordingHandler())
        write_prices(store, "AAPL")
        assert first.pending == second.pending == 1
        assert stream.pending == 2


class TestBatching:
    @pytest.mark.asyncio
    async def test_batch_size_bound(self, store, stream):
        handler = RecordingHandler()
        consumer = make_consumer(stream, handler, batch_size=10)
        write_prices(store, *[f"T{i:02d}" for i in range(25)])

        results = await consumer.drain()

        assert [r.delivered for r in results] == [10, 10, 5]
        assert [len(b) for b in handler.batches] == [10, 10, 5]

    @pytest.mark.asyncio
    async def test_order_preserved_within_batches(self, store, stream):
        handler = RecordingHandler()
        consumer = make_consumer(stream, handler, batch_size=2)
        write_prices(store, "A", "B", "C")
        await consumer.drain()
        assert [e.ticker for b in handler.batches for e in b] == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_partial_batch_after_window(self, store, stream):
        handler = RecordingHandler()
        consumer = make_consumer(stream, handler, batch_size=10, batching_window=0.05)
        write_prices(store, "AAPL", "GOOG")

        result = await asyncio.wait_for(consumer.process_next(), timeout=2)

        assert result.delivered == 2

    @pytest.mark.asyncio
    async def test_full_batch_does_not_wait_for_window(self, store, stream):
        handler = RecordingHandler()
        consumer = make_consumer(stream, handler, batch_size=2, batching_window=30.0)
        write_prices(store, "AAPL", "GOOG")

        result = await asyncio.wait_for(consumer.process_next(), timeout=2)

        assert result.delivered == 2

    @pytest.mark.asyncio
    async def test_waits_for_first_event(self, store, stream):
        handler = RecordingHandler()
        consumer = make_consumer(stream, handler, batch_size=1)

        task = asyncio.create_task(consumer.process_next())
        await asyncio.sleep(0.01)
        assert not task.done()

        write_prices(store, "AAPL")
        result = await asyncio.wait_for(task, timeout=2)
        assert result.delivered == 1

    @pytest.mark.asyncio
    async def test_nothing_buffered(self, stream):
        consumer = make_consumer(stream, RecordingHandler())
        assert await consumer.process_next(wait=False) is None

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            StreamConsumer("x", RecordingHandler(), PRICES, batch_size=0)


class TestFailures:
    @pytest.mark.asyncio
    async def test_redelivery_resumes_from_first_failure(self, store, stream):
        handler = RecordingHandler(fail_once={"GOOG"})
        consumer = make_consumer(stream, handler)
        write_prices(store, "AAPL", "GOOG", "MSFT")

        results = await consumer.drain()

        assert handler.deliveries("AAPL") == 1
        assert handler.deliveries("GOOG") == 2
        assert handler.deliveries("MSFT") == 2
        assert [e.ticker for e in handler.batches[1]] == ["GOOG", "MSFT"]
        assert results[0].retried == 1
        assert results[0].requeued == 1
        assert results[0].failed == 1
        assert len(consumer.dead_letters) == 0

    @pytest.mark.asyncio
    async def test_events_after_dead_letter_still_delivered(self, store, stream):
        handler = RecordingHandler(fail_always={"AAPL"})
        consumer = make_consumer(stream, handler)
        write_prices(store, "AAPL", "GOOG")

        await consumer.drain()

        [entry] = consumer.dead_letters.list_unresolved()
        assert entry.event.ticker == "AAPL"
        assert [e.ticker for e in handler.batches[-1]] == ["GOOG"]
        assert consumer.pending == 0

    @pytest.mark.asyncio
    async def test_retried_at_most_once_then_dead_lettered(self, store, stream):
        dead_letters = DeadLetterStore()
        handler = RecordingHandler(fail_always={"GOOG"})
        consumer = make_consumer(stream, handler, dead_letters=dead_letters)
        write_prices(store, "AAPL", "GOOG")

        await consumer.drain()

        assert handler.deliveries("GOOG") == 2
        assert consumer.pending == 0
        [entry] = dead_letters.list_unresolved()
        assert entry.event.ticker == "GOOG"
        assert entry.consumer == "test-consumer"
        assert entry.attempts == 2

    @pytest.mark.asyncio
    async def test_no_retries_configured(self, store, stream):
        handler = RecordingHandler(fail_always={"GOOG"})
        consumer = make_consumer(stream, handler, max_retry_attempts=0)
        write_prices(store, "GOOG")

        await consumer.drain()

        assert handler.deliveries("GOOG") == 1
        assert len(consumer.dead_letters) == 1

    @pytest.mark.asyncio
    async def test_handler_exception_fails_whole_batch(self, store, stream):
        handler = RecordingHandler(raise_error=True)
        consumer = make_consumer(stream, handler)
        write_prices(store, "AAPL", "GOOG")

        await consumer.drain()

        assert len(handler.batches) == 2
        entries = consumer.dead_letters.list_unresolved()
        assert {e.event.ticker for e in entries} == {"AAPL", "GOOG"}
        assert all(e.error == "handler crashed" for e in entries)

    @pytest.mark.asyncio
    async def test_non_retryable_exception_skips_redelivery(self, store, stream):
        async def handler(events):
            raise MalformedEventError("unreadable batch")

        consumer = make_consumer(stream, handler)
        write_prices(store, "AAPL")

        results = await consumer.drain()

        assert len(results) == 1
        assert results[0].dead_lettered == 1
        assert results[0].retried == 0

    @pytest.mark.asyncio
    async def test_cancelled_batch_is_requeued(self, store, stream):
        started = asyncio.Event()

        async def slow_handler(events):
            started.set()
            await asyncio.sleep(10)
            return BatchResponse()

        consumer = make_consumer(stream, slow_handler)
        write_prices(store, "AAPL")

        task = asyncio.create_task(consumer.process_next())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert consumer.pending == 1


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_consumes_until_stopped(self, store, stream):
        handler = RecordingHandler()
        consumer = make_consumer(stream, handler)
        stop = asyncio.Event()
        task = asyncio.create_task(consumer.run(stop))

        write_prices(store, "AAPL")
        for _ in range(100):
            if handler.batches:
                break
            await asyncio.sleep(0.01)

        stop.set()
        await asyncio.wait_for(task, timeout=2)
        assert handler.deliveries("AAPL") == 1
