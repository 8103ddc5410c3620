"""
Notifier channels for the terminal queue consumer.

A notification is what a subscriber receives for one domain event: a
subject line, the raw event detail as message body, and string attributes
that subscribers can filter on::

    Notification(
        subject="PriceDeltaEvent: BINANCE:BTCUSDT",
        message='{"symbol": "BINANCE:BTCUSDT", "delta": "14.5", ...}',
        attributes={"symbol": "BINANCE:BTCUSDT", "type": "price_delta", "price_delta": "14.5"},
    )

Channels return a ``DeliveryResult`` instead of raising, so the consumer
decides between acknowledge and redelivery from ``result.success``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import httpx
from rich.console import Console
from rich.markup import escape

from stockwatch.core.errors import DeliveryError
from stockwatch.core.logging import get_logger
from stockwatch.core.models import utcnow

logger = get_logger(__name__)


@dataclass
class Notification:
    """One message for subscribers."""

    subject: str
    message: str
    attributes: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "message": self.message,
            "attributes": dict(self.attributes),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""

    channel_name: str
    success: bool
    message: str | None = None
    response: dict[str, Any] | None = None
    error: Exception | None = None
    delivered_at: datetime = field(default_factory=utcnow)

    @classmethod
    def ok(cls, channel_name: str, message: str | None = None, **kwargs: Any) -> DeliveryResult:
        return cls(channel_name=channel_name, success=True, message=message, **kwargs)

    @classmethod
    def fail(cls, channel_name: str, error: Exception) -> DeliveryResult:
        return cls(channel_name=channel_name, success=False, error=error, message=str(error))


@runtime_checkable
class Notifier(Protocol):
    @property
    def name(self) -> str:
        ...

    async def send(self, notification: Notification) -> DeliveryResult:
        ...


class BaseNotifier(ABC):
    """Common enable/disable handling."""

    def __init__(self, name: str, *, enabled: bool = True):
        self._name = name
        self._enabled = enabled

    @property
    def name(self) -> str:
        return self._name

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    async def send(self, notification: Notification) -> DeliveryResult:
        if not self._enabled:
            return DeliveryResult.ok(self._name, "channel disabled")
        return await self._send(notification)

    @abstractmethod
    async def _send(self, notification: Notification) -> DeliveryResult:
        ...


class LogNotifier(BaseNotifier):
    """Writes notifications to the structured log."""

    def __init__(self, name: str = "log", **kwargs: Any):
        super().__init__(name, **kwargs)

    async def _send(self, notification: Notification) -> DeliveryResult:
        logger.info(
            "notify.delivered",
            channel=self._name,
            subject=notification.subject,
            attributes=notification.attributes,
        )
        return DeliveryResult.ok(self._name)


class ConsoleNotifier(BaseNotifier):
    """Prints notifications with rich markup, for development."""

    def __init__(self, name: str = "console", *, console: Console | None = None, **kwargs: Any):
        super().__init__(name, **kwargs)
        self._console = console or Console()

    async def _send(self, notification: Notification) -> DeliveryResult:
        self._console.print(f"[bold cyan]{escape(notification.subject)}[/bold cyan]")
        for key, value in notification.attributes.items():
            self._console.print(f"  {key}: {escape(value)}")
        return DeliveryResult.ok(self._name)


class InMemoryNotifier(BaseNotifier):
    """Records notifications; can be told to fail the next N deliveries."""

    def __init__(self, name: str = "memory", **kwargs: Any):
        super().__init__(name, **kwargs)
        self.sent: list[Notification] = []
        self.fail_next = 0
        self.attempts = 0

    async def _send(self, notification: Notification) -> DeliveryResult:
        self.attempts += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            return DeliveryResult.fail(self._name, DeliveryError("simulated delivery failure"))
        self.sent.append(notification)
        return DeliveryResult.ok(self._name)


class WebhookNotifier(BaseNotifier):
    """POSTs the notification as JSON to a URL."""

    def __init__(
        self,
        url: str,
        name: str = "webhook",
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ):
        super().__init__(name, **kwargs)
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _send(self, notification: Notification) -> DeliveryResult:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)

        try:
            response = await self._client.post(
                self._url,
                json=notification.to_dict(),
                headers=self._headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error = DeliveryError(
                f"webhook returned {e.response.status_code}", cause=e
            ).with_context(url=self._url, http_status=e.response.status_code)
            return DeliveryResult.fail(self._name, error)
        except httpx.HTTPError as e:
            error = DeliveryError(f"webhook request failed: {e}", cause=e).with_context(
                url=self._url
            )
            return DeliveryResult.fail(self._name, error)

        return DeliveryResult.ok(self._name, response={"status": response.status_code})

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
