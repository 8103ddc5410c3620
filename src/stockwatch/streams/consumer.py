"""Change stream consumers — the table's change feed as a typed channel.

WHY
───
The delta calculator and the event dispatcher are triggered by table
writes, not by each other. Each of them is attached to the change feed
through a ``StreamConsumer`` that mirrors an event-source mapping:

- a **filter** over record type and write kind (INSERT / MODIFY),
- a **batch size** bound and a **batching window** (records are buffered
  until the batch is full or the window has elapsed),
- **partial-batch failure reporting with checkpoints**: the handler returns
  the ids of the events it could not process. The earliest failed event is
  the checkpoint; it and every event after it go back to the head of the
  buffer in their original order, so a ticker's changes are never applied
  out of order. Handlers should stop at their first failure,
- a **bounded retry** (``max_retry_attempts``, 1 by default) after which the
  event goes to the ``DeadLetterStore``. A handler that raises a
  non-retryable error dead-letters its whole batch at once.

ARCHITECTURE
────────────
::

    SymbolStore.put() ──► ChangeStream.publish(event)
                              │ fan-out, one buffer per consumer
                              ▼
    StreamConsumer(filter, batch_size, window, max_retry_attempts)
      ├── .offer(event)           ─ filter + buffer
      ├── .process_next(wait)     ─ one handler invocation
      ├── .drain()                ─ invoke until the buffer is empty
      └── .run(stop)              ─ long-running consumer loop
              │
              ▼
      handler(batch) -> BatchResponse(batch_item_failures=[event_id, ...])
              │
              ├── before the checkpoint ─ dropped from the stream
              ├── failed, attempts left ─ requeued at the head of the buffer
              ├── failed, exhausted     ─ DeadLetterStore.add()
              └── after the checkpoint  ─ requeued behind it, same attempt

Delivery is at-least-once: a redelivered event may already have been
partially applied, so handlers must be idempotent.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

from stockwatch.core.errors import is_retryable
from stockwatch.core.logging import LogContext, get_logger
from stockwatch.core.models import PK, ChangeEvent, RecordType, WriteKind
from stockwatch.streams.dlq import DeadLetterStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class StreamFilter:
    """Which change events a consumer receives.

    The record type is read from the new image's ``PK`` (falling back to the
    event keys), so a filter on ``PRICE`` never sees SYMBOL or DELTA writes.
    """

    record_types: frozenset[RecordType]
    event_names: frozenset[WriteKind] = frozenset({WriteKind.INSERT, WriteKind.MODIFY})

    @classmethod
    def of(
        cls,
        record_types: Iterable[RecordType],
        event_names: Iterable[WriteKind] = (WriteKind.INSERT, WriteKind.MODIFY),
    ) -> StreamFilter:
        return cls(frozenset(record_types), frozenset(event_names))

    def matches(self, event: ChangeEvent) -> bool:
        if event.event_name not in self.event_names:
            return False
        image = event.new_image or {}
        pk = image.get(PK) or event.record_type
        return pk in {record_type.value for record_type in self.record_types}


@dataclass
class BatchResponse:
    """Handler result: ids of the events that must be redelivered."""

    batch_item_failures: list[str] = field(default_factory=list)

    def fail(self, event_id: str) -> None:
        self.batch_item_failures.append(event_id)

    @property
    def ok(self) -> bool:
        return not self.batch_item_failures


BatchHandler = Callable[[list[ChangeEvent]], Awaitable[BatchResponse]]


@dataclass
class Delivery:
    """A buffered change event and the delivery attempt it is on (1-based)."""

    event: ChangeEvent
    attempt: int = 1


@dataclass
class BatchResult:
    """Outcome of one handler invocation."""

    consumer: str
    delivered: int
    failed: int = 0
    retried: int = 0
    requeued: int = 0
    dead_lettered: int = 0


class StreamConsumer:
    """Batching, retrying consumer of the change feed.

    Parameters
    ----------
    name : str
        Consumer name, used in logs and dead letters.
    handler : BatchHandler
        Async callable invoked with each batch.
    stream_filter : StreamFilter
        Which events to buffer.
    batch_size : int
        Maximum events per invocation (default 10).
    batching_window : float
        Seconds to keep gathering after the first buffered event before a
        partial batch is delivered (default 5).
    max_retry_attempts : int
        Redeliveries per failed event before it is dead-lettered (default 1).
    """

    def __init__(
        self,
        name: str,
        handler: BatchHandler,
        stream_filter: StreamFilter,
        *,
        batch_size: int = 10,
        batching_window: float = 5.0,
        max_retry_attempts: int = 1,
        dead_letters: DeadLetterStore | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.name = name
        self.handler = handler
        self.stream_filter = stream_filter
        self.batch_size = batch_size
        self.batching_window = batching_window
        self.max_retry_attempts = max_retry_attempts
        self.dead_letters = dead_letters if dead_letters is not None else DeadLetterStore()
        self._pending: deque[Delivery] = deque()
        self._arrived = asyncio.Event()

    # ── Intake ───────────────────────────────────────────────────────

    def offer(self, event: ChangeEvent) -> bool:
        """Buffer an event if it passes the filter."""
        if not self.stream_filter.matches(event):
            return False
        self._pending.append(Delivery(event))
        self._arrived.set()
        return True

    def requeue(self, event: ChangeEvent) -> None:
        """Put an event back on the stream as a fresh delivery (operator replay)."""
        self._pending.append(Delivery(event))
        self._arrived.set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ── Delivery ─────────────────────────────────────────────────────

    async def _collect(self, wait: bool) -> list[Delivery]:
        if wait:
            while not self._pending:
                self._arrived.clear()
                await self._arrived.wait()

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.batching_window
            while len(self._pending) < self.batch_size:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                self._arrived.clear()
                try:
                    await asyncio.wait_for(self._arrived.wait(), remaining)
                except asyncio.TimeoutError:
                    break

        batch: list[Delivery] = []
        while self._pending and len(batch) < self.batch_size:
            batch.append(self._pending.popleft())
        return batch

    async def process_next(self, wait: bool = True) -> BatchResult | None:
        """Collect one batch and invoke the handler.

        Args:
            wait: Block for the first event and the batching window. With
                ``wait=False`` whatever is buffered is delivered immediately.

        Returns:
            BatchResult, or None if nothing was buffered (``wait=False`` only)
        """
        batch = await self._collect(wait)
        if not batch:
            return None

        events = [delivery.event for delivery in batch]
        error: str | None = None
        retryable = True
        async with LogContext(consumer=self.name):
            try:
                response = await self.handler(events)
                failed_ids = set(response.batch_item_failures)
            except asyncio.CancelledError:
                self._pending.extendleft(reversed(batch))
                raise
            except Exception as e:
                error = str(e)
                retryable = is_retryable(e)
                logger.exception(
                    "stream.batch_failed", size=len(batch), error=error, retryable=retryable
                )
                failed_ids = {event.event_id for event in events}

            unknown = failed_ids - {event.event_id for event in events}
            if unknown:
                logger.warning("stream.unknown_failure_ids", event_ids=sorted(unknown))

            result = BatchResult(consumer=self.name, delivered=len(batch))
            checkpoint = next(
                (i for i, d in enumerate(batch) if d.event.event_id in failed_ids), len(batch)
            )
            redeliver: list[Delivery] = []
            for delivery in batch[checkpoint:]:
                if delivery.event.event_id not in failed_ids:
                    # behind the checkpoint: not yet applied, same attempt
                    redeliver.append(delivery)
                    result.requeued += 1
                    continue
                result.failed += 1
                if retryable and delivery.attempt <= self.max_retry_attempts:
                    redeliver.append(Delivery(delivery.event, delivery.attempt + 1))
                    result.retried += 1
                else:
                    self.dead_letters.add(
                        delivery.event,
                        consumer=self.name,
                        attempts=delivery.attempt,
                        error=error or "reported as batch item failure",
                    )
                    result.dead_lettered += 1

            self._pending.extendleft(reversed(redeliver))
            if redeliver:
                self._arrived.set()

            logger.info(
                "stream.batch_processed",
                delivered=result.delivered,
                failed=result.failed,
                retried=result.retried,
                requeued=result.requeued,
                dead_lettered=result.dead_lettered,
            )
        return result

    async def drain(self) -> list[BatchResult]:
        """Invoke the handler until nothing is buffered, retries included."""
        results = []
        while self._pending:
            result = await self.process_next(wait=False)
            if result is not None:
                results.append(result)
        return results

    async def run(self, stop: asyncio.Event) -> None:
        """Consume until ``stop`` is set."""
        logger.info("stream.consumer_started", consumer=self.name)
        while not stop.is_set():
            work = asyncio.ensure_future(self.process_next())
            stopper = asyncio.ensure_future(stop.wait())
            done, pending = await asyncio.wait(
                {work, stopper}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if work in done and work.exception() is not None:
                logger.error("stream.consumer_error", consumer=self.name, error=str(work.exception()))
        logger.info("stream.consumer_stopped", consumer=self.name)


class ChangeStream:
    """Fan-out of a store's change feed to its consumers."""

    def __init__(self) -> None:
        self._consumers: list[StreamConsumer] = []

    def attach(self, store) -> ChangeStream:
        """Start receiving the change events of ``store``."""
        store.add_listener(self.publish)
        return self

    def subscribe(self, consumer: StreamConsumer) -> StreamConsumer:
        self._consumers.append(consumer)
        return consumer

    def publish(self, event: ChangeEvent) -> None:
        for consumer in self._consumers:
            consumer.offer(event)

    @property
    def consumers(self) -> list[StreamConsumer]:
        return list(self._consumers)

    @property
    def pending(self) -> int:
        return sum(consumer.pending for consumer in self._consumers)
