"""Event Dispatcher — publishes domain events for DELTA (and PRICE) changes.

Two consumers of the change stream:

    event-dispatcher    DELTA MODIFY (+ INSERT with ``dispatch_delta_inserts``)
                        -> SymbolPriceDeltaEvent {symbol, delta, computed_at, type}
    price-event-sender  PRICE MODIFY, only with ``dispatch_price_events``
                        -> SymbolPriceEvent {symbol, price, observed_at, type}

Every published event carries the pipeline's source tag and the change
event id as its correlation id. A redelivered change event publishes again;
duplicates are tolerated downstream.
"""

from __future__ import annotations

from collections.abc import Callable

from stockwatch.core.errors import MalformedEventError, PublishError, StockwatchError
from stockwatch.core.events import Event, EventBus
from stockwatch.core.logging import get_logger
from stockwatch.core.models import (
    PRICE_DELTA_DETAIL_TYPE,
    PRICE_DETAIL_TYPE,
    ChangeEvent,
    PriceDelta,
    PriceDeltaEvent,
    PriceEvent,
    PriceObservation,
    RecordType,
    WriteKind,
)
from stockwatch.streams import BatchResponse, DeadLetterStore, StreamConsumer, StreamFilter

logger = get_logger(__name__)


class EventDispatcher:
    """Turns DELTA/PRICE change events into bus events.

    Args:
        bus: Where domain events are published
        source: Source tag stamped on every event
        dispatch_delta_inserts: Also dispatch the first DELTA write of a ticker
        dispatch_price_events: Also publish price events for PRICE modifies
    """

    name = "event-dispatcher"
    price_sender_name = "price-event-sender"

    def __init__(
        self,
        bus: EventBus,
        *,
        source: str = "stockwatch",
        dispatch_delta_inserts: bool = False,
        dispatch_price_events: bool = False,
    ) -> None:
        self.bus = bus
        self.source = source
        self.dispatch_delta_inserts = dispatch_delta_inserts
        self.dispatch_price_events = dispatch_price_events

    @property
    def delta_filter(self) -> StreamFilter:
        kinds = [WriteKind.MODIFY]
        if self.dispatch_delta_inserts:
            kinds.append(WriteKind.INSERT)
        return StreamFilter.of([RecordType.DELTA], kinds)

    @property
    def price_filter(self) -> StreamFilter:
        return StreamFilter.of([RecordType.PRICE], [WriteKind.MODIFY])

    # ── Event construction ───────────────────────────────────────────

    def delta_event(self, change: ChangeEvent) -> Event:
        if change.new_image is None:
            raise MalformedEventError("DELTA change has no new image")
        delta = PriceDelta.from_item(change.new_image)
        return Event(
            source=self.source,
            detail_type=PRICE_DELTA_DETAIL_TYPE,
            detail=PriceDeltaEvent.from_delta(delta).to_detail(),
            correlation_id=change.event_id,
        )

    def price_event(self, change: ChangeEvent) -> Event:
        if change.new_image is None:
            raise MalformedEventError("PRICE change has no new image")
        observation = PriceObservation.from_item(change.new_image)
        return Event(
            source=self.source,
            detail_type=PRICE_DETAIL_TYPE,
            detail=PriceEvent.from_observation(observation).to_detail(),
            correlation_id=change.event_id,
        )

    # ── Handlers ─────────────────────────────────────────────────────

    async def _publish_batch(
        self,
        events: list[ChangeEvent],
        build: Callable[[ChangeEvent], Event],
    ) -> BatchResponse:
        response = BatchResponse()
        for change in events:
            try:
                event = build(change)
            except MalformedEventError as e:
                logger.warning("dispatcher.malformed_event", event_id=change.event_id, error=str(e))
                continue

            try:
                await self.bus.publish(event)
            except StockwatchError as e:
                logger.error("dispatcher.publish_failed", event_id=change.event_id, error=e.to_dict())
                response.fail(change.event_id)
                break
            except Exception as e:
                error = PublishError(f"publish failed: {e}", cause=e).with_context(
                    event_id=change.event_id, ticker=change.ticker
                )
                logger.error("dispatcher.publish_failed", event_id=change.event_id, error=error.to_dict())
                response.fail(change.event_id)
                break

            logger.info(
                "dispatcher.event_published",
                detail_type=event.detail_type,
                ticker=change.ticker,
                bus_event_id=event.event_id,
            )
        return response

    async def handle(self, events: list[ChangeEvent]) -> BatchResponse:
        return await self._publish_batch(events, self.delta_event)

    async def handle_prices(self, events: list[ChangeEvent]) -> BatchResponse:
        return await self._publish_batch(events, self.price_event)

    def consumers(
        self,
        *,
        batch_size: int = 10,
        batching_window: float = 5.0,
        max_retry_attempts: int = 1,
        dead_letters: DeadLetterStore | None = None,
    ) -> list[StreamConsumer]:
        """Stream consumers for the enabled dispatch modes."""
        options = dict(
            batch_size=batch_size,
            batching_window=batching_window,
            max_retry_attempts=max_retry_attempts,
            dead_letters=dead_letters,
        )
        consumers = [StreamConsumer(self.name, self.handle, self.delta_filter, **options)]
        if self.dispatch_price_events:
            consumers.append(
                StreamConsumer(
                    self.price_sender_name, self.handle_prices, self.price_filter, **options
                )
            )
        return consumers
