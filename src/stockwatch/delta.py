"""Delta Calculator — turns consecutive PRICE writes into DELTA rows.

Consumes PRICE INSERT/MODIFY change events. For each event with a prior
image it writes ``DELTA = new price - old price`` for the ticker. A first
observation (no prior image) has nothing to compare against and is skipped.

Failure handling per event:
    - malformed image -> logged and dropped
    - DELTA write failed -> reported as a batch item failure (redelivered once);
      the rest of the batch is left for redelivery so deltas stay in write order
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from stockwatch.core.errors import MalformedEventError, StockwatchError
from stockwatch.core.logging import get_logger
from stockwatch.core.models import (
    ChangeEvent,
    PriceDelta,
    PriceObservation,
    RecordType,
    WriteKind,
    utcnow,
)
from stockwatch.store.base import SymbolStore
from stockwatch.streams import BatchResponse, DeadLetterStore, StreamConsumer, StreamFilter

logger = get_logger(__name__)

PRICE_CHANGES = StreamFilter.of([RecordType.PRICE], [WriteKind.INSERT, WriteKind.MODIFY])


class DeltaCalculator:
    """Writes the DELTA row for each PRICE change that has a previous price."""

    name = "delta-calculator"

    def __init__(
        self,
        store: SymbolStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._clock = clock

    def process(self, event: ChangeEvent) -> PriceDelta | None:
        """Compute and write the delta for one PRICE change.

        Returns:
            The written delta, or None for a first observation

        Raises:
            MalformedEventError: The images are not PRICE rows
            WriteError: The DELTA row could not be written
        """
        if event.new_image is None:
            raise MalformedEventError("PRICE change has no new image").with_context(
                event_id=event.event_id
            )
        current = PriceObservation.from_item(event.new_image)

        if event.old_image is None:
            logger.debug("delta.skipped_first_observation", ticker=current.ticker)
            return None
        previous = PriceObservation.from_item(event.old_image)

        delta = PriceDelta(
            ticker=current.ticker,
            delta=current.price - previous.price,
            computed_at=self._clock(),
        )
        self.store.put(delta.to_item())
        logger.info(
            "delta.written",
            ticker=delta.ticker,
            delta=str(delta.delta),
            previous=str(previous.price),
            current=str(current.price),
        )
        return delta

    async def handle(self, events: list[ChangeEvent]) -> BatchResponse:
        response = BatchResponse()
        for event in events:
            try:
                self.process(event)
            except MalformedEventError as e:
                logger.warning("delta.malformed_event", event_id=event.event_id, error=str(e))
            except StockwatchError as e:
                logger.error(
                    "delta.write_failed",
                    event_id=event.event_id,
                    ticker=event.ticker,
                    error=e.to_dict(),
                )
                response.fail(event.event_id)
                # later changes of the batch are redelivered after this one
                break
        return response

    def consumer(
        self,
        *,
        batch_size: int = 10,
        batching_window: float = 5.0,
        max_retry_attempts: int = 1,
        dead_letters: DeadLetterStore | None = None,
    ) -> StreamConsumer:
        """Stream consumer over PRICE inserts and modifies."""
        return StreamConsumer(
            self.name,
            self.handle,
            PRICE_CHANGES,
            batch_size=batch_size,
            batching_window=batching_window,
            max_retry_attempts=max_retry_attempts,
            dead_letters=dead_letters,
        )
