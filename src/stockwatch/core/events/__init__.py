"""Publish/subscribe bus for domain events.

Why This Package Exists
-----------------------
The event dispatcher must not know who consumes delta events, and the
router must not know who produces them. The ``EventBus`` protocol decouples
the two: producers ``publish`` events tagged with a ``source`` and a
``detail_type``; subscribers register an ``EventPattern`` and an async
handler.

Usage::

    from stockwatch.core.events import Event, EventPattern
    from stockwatch.core.events.memory import InMemoryEventBus

    bus = InMemoryEventBus()

    async def handler(event: Event):
        print(event.detail["symbol"], event.detail["delta"])

    await bus.subscribe(EventPattern(source=["stockwatch"]), handler)
    await bus.publish(Event(
        source="stockwatch",
        detail_type="SymbolPriceDeltaEvent",
        detail={"symbol": "AAPL", "delta": "5", "type": "price_delta"},
    ))

Modules
-------
memory      InMemoryEventBus -- asyncio, single process
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

__all__ = [
    "Event",
    "EventPattern",
    "EventBus",
    "EventHandler",
]


# ── Event Model ──────────────────────────────────────────────────────────


@dataclass
class Event:
    """Domain event routed through the bus.

    Attributes:
        source: Producing system (the pipeline's source tag)
        detail_type: Kind of event (e.g. ``SymbolPriceDeltaEvent``)
        detail: Event-specific data
        timestamp: When the event was published (UTC)
        event_id: Unique event identifier
        correlation_id: Optional ID linking the event to the change that caused it
    """

    source: str
    detail_type: str
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Wire shape used when the event is enveloped onto a queue."""
        return {
            "id": self.event_id,
            "source": self.source,
            "detail-type": self.detail_type,
            "time": self.timestamp.isoformat(),
            "detail": dict(self.detail),
            "correlation_id": self.correlation_id,
        }


@dataclass(frozen=True)
class EventPattern:
    """Subscription filter over ``source`` and optionally ``detail_type``.

    Each field is a list of accepted values; ``None`` accepts anything.

    Examples:
        - ``EventPattern(source=["stockwatch"])`` matches every pipeline event
        - ``EventPattern(source=["stockwatch"], detail_type=["SymbolPriceDeltaEvent"])``
          matches only delta events
    """

    source: list[str] | None = None
    detail_type: list[str] | None = None

    def matches(self, event: Event) -> bool:
        if self.source is not None and event.source not in self.source:
            return False
        if self.detail_type is not None and event.detail_type not in self.detail_type:
            return False
        return True


# ── Type Aliases ─────────────────────────────────────────────────────────

EventHandler = Callable[[Event], Awaitable[None]]


# ── EventBus Protocol ────────────────────────────────────────────────────


@runtime_checkable
class EventBus(Protocol):
    """Protocol for event bus implementations."""

    async def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers.

        Raises:
            PublishError: If the bus cannot accept the event
        """
        ...

    async def subscribe(self, pattern: EventPattern, handler: EventHandler) -> str:
        """Subscribe to events matching a pattern.

        Returns:
            Subscription ID for later unsubscription
        """
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        """Remove a subscription."""
        ...

    async def close(self) -> None:
        """Clean up resources."""
        ...
