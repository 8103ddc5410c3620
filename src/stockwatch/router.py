"""Event Router — bus subscription, queue envelope and terminal consumer.

ARCHITECTURE
────────────
::

    EventBus ──► EventRouter (pattern: source=["stockwatch"])
                   │  envelope {"rule": <rule name>, "event": <event wire dict>}
                   ▼
                MessageQueue
                   │  receive(max_messages=1)
                   ▼
                NotificationConsumer ──► Notifier.send(Notification)
                   ├── delivered       -> ack
                   ├── unknown type    -> ack, ignored
                   ├── malformed       -> ack, dropped
                   └── delivery failed -> left for redelivery

Messages are processed one at a time. A message that keeps failing is moved
to the queue's dead-letter queue once it exceeds the max receive count.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any

from stockwatch.core.errors import MalformedEventError
from stockwatch.core.events import Event, EventBus, EventPattern
from stockwatch.core.logging import get_logger
from stockwatch.core.models import (
    PRICE_DELTA_EVENT_TYPE,
    PRICE_EVENT_TYPE,
    PriceDeltaEvent,
    PriceEvent,
)
from stockwatch.notify import Notification, Notifier
from stockwatch.queue import MessageQueue, QueueMessage

logger = get_logger(__name__)


class EventRouter:
    """Envelopes matching bus events onto a queue.

    Args:
        bus: Bus to subscribe to
        queue: Target queue
        rule_name: Name carried in every envelope
        pattern: Subscription filter; defaults to the ``stockwatch`` source
    """

    def __init__(
        self,
        bus: EventBus,
        queue: MessageQueue,
        *,
        rule_name: str = "stockwatch-notifications",
        pattern: EventPattern | None = None,
    ) -> None:
        self.bus = bus
        self.queue = queue
        self.rule_name = rule_name
        self.pattern = pattern or EventPattern(source=["stockwatch"])
        self._subscription_id: str | None = None
        self.routed = 0

    async def start(self) -> None:
        if self._subscription_id is None:
            self._subscription_id = await self.bus.subscribe(self.pattern, self.route)
            logger.info("router.started", rule=self.rule_name, source=self.pattern.source)

    async def stop(self) -> None:
        if self._subscription_id is not None:
            await self.bus.unsubscribe(self._subscription_id)
            self._subscription_id = None

    def envelope(self, event: Event) -> str:
        return json.dumps({"rule": self.rule_name, "event": event.to_dict()})

    async def route(self, event: Event) -> None:
        message_id = await self.queue.send(self.envelope(event))
        self.routed += 1
        logger.debug(
            "router.event_enqueued",
            rule=self.rule_name,
            event_id=event.event_id,
            message_id=message_id,
        )


class Outcome(str, Enum):
    DELIVERED = "delivered"
    IGNORED = "ignored"
    DROPPED = "dropped"
    FAILED = "failed"


def build_notification(body: str) -> Notification | None:
    """Turn a queued envelope into a notification.

    Returns:
        The notification, or None for an event type nobody subscribes to

    Raises:
        MalformedEventError: The envelope or its detail is unusable
    """
    try:
        envelope = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedEventError("queued message is not JSON", cause=e) from e

    if not isinstance(envelope, dict):
        raise MalformedEventError("envelope is not an object")
    event = envelope.get("event")
    if not isinstance(event, dict):
        raise MalformedEventError("envelope has no event")
    detail = event.get("detail")
    if not isinstance(detail, dict):
        raise MalformedEventError("event has no detail").with_context(event_id=event.get("id"))

    event_type = detail.get("type")
    attributes: dict[str, Any]
    if event_type == PRICE_DELTA_EVENT_TYPE:
        delta_event = PriceDeltaEvent.from_detail(detail)
        subject = f"PriceDeltaEvent: {delta_event.symbol}"
        attributes = {"price_delta": str(delta_event.delta)}
        symbol = delta_event.symbol
    elif event_type == PRICE_EVENT_TYPE:
        price_event = PriceEvent.from_detail(detail)
        subject = f"PriceEvent: {price_event.symbol}"
        attributes = {"price": str(price_event.price)}
        symbol = price_event.symbol
    else:
        return None

    return Notification(
        subject=subject,
        message=json.dumps(detail),
        attributes={"symbol": symbol, "type": event_type, **attributes},
    )


class NotificationConsumer:
    """Terminal consumer draining the queue one message at a time.

    Args:
        queue: Queue to drain
        notifier: Delivery channel
        redelivery_delay: When set, a failed message is released after this
            many seconds instead of waiting out its visibility timeout
    """

    def __init__(
        self,
        queue: MessageQueue,
        notifier: Notifier,
        *,
        redelivery_delay: float | None = None,
    ) -> None:
        self.queue = queue
        self.notifier = notifier
        self.redelivery_delay = redelivery_delay

    async def _handle(self, message: QueueMessage) -> Outcome:
        try:
            notification = build_notification(message.body)
        except MalformedEventError as e:
            logger.warning("router.malformed_message", message_id=message.message_id, error=str(e))
            await self.queue.ack(message.receipt_handle)
            return Outcome.DROPPED

        if notification is None:
            logger.info("router.unknown_event_type", message_id=message.message_id)
            await self.queue.ack(message.receipt_handle)
            return Outcome.IGNORED

        result = await self.notifier.send(notification)
        if not result.success:
            logger.warning(
                "router.delivery_failed",
                message_id=message.message_id,
                receive_count=message.receive_count,
                channel=result.channel_name,
                error=result.message,
            )
            if self.redelivery_delay is not None:
                await self.queue.nack(message.receipt_handle, delay=self.redelivery_delay)
            return Outcome.FAILED

        await self.queue.ack(message.receipt_handle)
        logger.info(
            "router.notification_delivered",
            message_id=message.message_id,
            subject=notification.subject,
            channel=result.channel_name,
        )
        return Outcome.DELIVERED

    async def process_one(self) -> Outcome | None:
        """Receive and handle a single message. None if nothing is visible."""
        messages = await self.queue.receive(max_messages=1)
        if not messages:
            return None
        return await self._handle(messages[0])

    async def drain(self) -> dict[Outcome, int]:
        """Handle messages until none is visible."""
        counts = {outcome: 0 for outcome in Outcome}
        while True:
            outcome = await self.process_one()
            if outcome is None:
                return counts
            counts[outcome] += 1

    async def run(self, stop: asyncio.Event, poll_interval: float = 1.0) -> None:
        """Consume until ``stop`` is set."""
        logger.info("router.consumer_started")
        while not stop.is_set():
            outcome = await self.process_one()
            if outcome is None:
                try:
                    await asyncio.wait_for(stop.wait(), poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("router.consumer_stopped")
