"""
In-process event bus.

Used by single-process deployments and the test suite. Delivery happens
inside ``publish``: matching subscribers are awaited one after another in
subscription order, so the router enqueues events in the order the
dispatcher published them. A failing subscriber is logged and counted and
the remaining subscribers still run; ``publish`` then raises a retryable
``PublishError`` so the caller redelivers the event. Subscribers that
already succeeded see it again, which is the at-least-once contract the
dispatcher already documents.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass

from stockwatch.core.errors import PublishError
from stockwatch.core.events import Event, EventHandler, EventPattern
from stockwatch.core.logging import get_logger

__all__ = ["InMemoryEventBus"]

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Subscription:
    id: str
    pattern: EventPattern
    handler: EventHandler


class InMemoryEventBus:
    """Event bus with no broker behind it.

    ``published`` keeps every accepted event, which is what tests and the
    CLI inspect after a run.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, _Subscription] = {}
        self._ids = itertools.count(1)
        self._published: list[Event] = []
        self._closed = False
        self.handler_errors = 0

    async def publish(self, event: Event) -> None:
        """Deliver ``event`` to every matching subscriber.

        Raises:
            PublishError: The bus is closed, or a subscriber failed
        """
        if self._closed:
            raise PublishError("event bus is closed").with_context(event_id=event.event_id)
        self._published.append(event)

        targets = [s for s in self._subscriptions.values() if s.pattern.matches(event)]
        failed: dict[str, Exception] = {}
        for subscription in targets:
            try:
                await subscription.handler(event)
            except Exception as e:
                self.handler_errors += 1
                failed[subscription.id] = e
                logger.warning(
                    "events.handler_failed",
                    subscription_id=subscription.id,
                    detail_type=event.detail_type,
                    event_id=event.event_id,
                    error=str(e),
                )
        logger.debug(
            "events.published",
            event_id=event.event_id,
            delivered_to=len(targets) - len(failed),
            failed=len(failed),
        )

        if failed:
            first = next(iter(failed.values()))
            raise PublishError(
                f"{len(failed)} of {len(targets)} subscribers failed: {first}", cause=first
            ).with_context(event_id=event.event_id, subscriptions=sorted(failed))

    async def subscribe(self, pattern: EventPattern, handler: EventHandler) -> str:
        subscription = _Subscription(f"sub-{next(self._ids)}", pattern, handler)
        self._subscriptions[subscription.id] = subscription
        return subscription.id

    async def unsubscribe(self, subscription_id: str) -> None:
        self._subscriptions.pop(subscription_id, None)

    async def close(self) -> None:
        """Refuse further publishes and drop every subscription."""
        self._closed = True
        self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def published(self) -> list[Event]:
        return list(self._published)
