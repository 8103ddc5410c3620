"""Application wiring — builds the whole pipeline from settings.

::

    SymbolStore ──► ChangeStream ──► delta-calculator   (PRICE INSERT/MODIFY)
                                 ├─► event-dispatcher   (DELTA MODIFY)
                                 └─► price-event-sender (PRICE MODIFY, optional)
                                            │
                                      InMemoryEventBus ──► EventRouter ──► InMemoryQueue
                                                                                 │
                                                       NotificationConsumer ◄────┘
                                                                 │
                                                              Notifier

Every collaborator can be injected; whatever is not injected is built from
``Settings``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime

from stockwatch.core.events import EventBus, EventPattern
from stockwatch.core.events.memory import InMemoryEventBus
from stockwatch.core.logging import get_logger
from stockwatch.core.models import utcnow
from stockwatch.core.secrets import CredentialStore, default_resolver
from stockwatch.core.settings import Settings, get_settings
from stockwatch.delta import DeltaCalculator
from stockwatch.dispatcher import EventDispatcher
from stockwatch.gateway import HttpQuoteGateway, QuoteGateway
from stockwatch.notify import ConsoleNotifier, LogNotifier, Notifier, WebhookNotifier
from stockwatch.orchestrator import PriceFetchOrchestrator, RunResult
from stockwatch.queue import InMemoryQueue, MessageQueue
from stockwatch.registry import SeedResult, parse_symbols, seed_symbols
from stockwatch.router import EventRouter, NotificationConsumer
from stockwatch.scheduler import IntervalScheduler
from stockwatch.store import SymbolStore, create_store
from stockwatch.streams import ChangeStream, DeadLetterStore, StreamConsumer

logger = get_logger(__name__)


def build_notifier(settings: Settings) -> Notifier:
    """Delivery channel selected by the ``notifier`` setting."""
    if settings.notifier == "webhook":
        if not settings.webhook_url:
            raise ValueError("notifier=webhook requires STOCKWATCH_WEBHOOK_URL")
        return WebhookNotifier(settings.webhook_url, timeout=settings.quote_timeout_seconds)
    if settings.notifier == "console":
        return ConsoleNotifier()
    return LogNotifier()


class StockwatchApp:
    """The assembled pipeline."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: SymbolStore | None = None,
        gateway: QuoteGateway | None = None,
        credentials: CredentialStore | None = None,
        bus: EventBus | None = None,
        queue: MessageQueue | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings

        self.store = store if store is not None else create_store(s.table_backend, s.table_path)
        self.bus = bus if bus is not None else InMemoryEventBus()
        if queue is None:
            queue = InMemoryQueue(
                s.router_rule_name,
                visibility_timeout=s.queue_visibility_timeout_seconds,
                max_receive_count=s.queue_max_receive_count,
            )
        self.queue = queue
        self.notifier = notifier if notifier is not None else build_notifier(s)
        if gateway is None:
            gateway = HttpQuoteGateway(
                s.quote_base_url,
                timeout=s.quote_timeout_seconds,
                resolution=s.quote_resolution,
                window_seconds=s.quote_window_seconds,
            )
        self.gateway = gateway
        self.credentials = credentials if credentials is not None else default_resolver(s.secrets_dir)

        # Change stream and its consumers
        self.dead_letters = DeadLetterStore()
        self.stream = ChangeStream().attach(self.store)
        self.delta_calculator = DeltaCalculator(self.store, clock=clock)
        self.dispatcher = EventDispatcher(
            self.bus,
            source=s.event_source,
            dispatch_delta_inserts=s.dispatch_delta_inserts,
            dispatch_price_events=s.dispatch_price_events,
        )
        options = dict(
            batch_size=s.stream_batch_size,
            batching_window=s.stream_batching_window_seconds,
            max_retry_attempts=s.stream_max_retry_attempts,
            dead_letters=self.dead_letters,
        )
        self.stream.subscribe(self.delta_calculator.consumer(**options))
        for consumer in self.dispatcher.consumers(**options):
            self.stream.subscribe(consumer)

        # Routing and notification
        self.router = EventRouter(
            self.bus,
            self.queue,
            rule_name=s.router_rule_name,
            pattern=EventPattern(source=[s.event_source]),
        )
        self.notifications = NotificationConsumer(self.queue, self.notifier)

        self.orchestrator = PriceFetchOrchestrator(
            self.store,
            self.gateway,
            self.credentials,
            secret_name=s.api_key_secret_name,
            concurrency=s.fetch_concurrency,
            clock=clock,
        )
        self.scheduler = IntervalScheduler(
            self.orchestrator.run,
            s.schedule_interval_seconds,
            enabled=s.scheduler_enabled,
        )

    # ── Operations ───────────────────────────────────────────────────

    def seed(self, raw_symbols: str | None = None) -> SeedResult:
        """Seed the symbol registry from JSON text (defaults to settings)."""
        symbols = parse_symbols(raw_symbols if raw_symbols is not None else self.settings.symbols)
        return seed_symbols(self.store, symbols)

    async def start(self) -> None:
        await self.router.start()

    async def drain(self) -> None:
        """Deliver everything buffered in the streams and the queue."""
        while True:
            for consumer in self.stream.consumers:
                await consumer.drain()
            if self.stream.pending == 0:
                break
        await self.notifications.drain()

    async def fetch_once(self) -> RunResult:
        """One orchestrator run, then drain the pipeline until quiescent."""
        await self.start()
        result = await self.orchestrator.run()
        await self.drain()
        return result

    def consumer(self, name: str) -> StreamConsumer:
        for consumer in self.stream.consumers:
            if consumer.name == name:
                return consumer
        raise KeyError(name)

    def replay_dead_letter(self, dead_letter_id: str) -> bool:
        """Put a dead-lettered change event back on its consumer's stream."""
        entry = self.dead_letters.take_for_replay(dead_letter_id)
        if entry is None:
            return False
        self.consumer(entry.consumer).requeue(entry.event)
        logger.info("app.dead_letter_replayed", dead_letter_id=dead_letter_id, consumer=entry.consumer)
        return True

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Run the scheduler and every consumer until ``stop`` is set."""
        await self.start()
        tasks = [
            asyncio.create_task(consumer.run(stop), name=f"stream-{consumer.name}")
            for consumer in self.stream.consumers
        ]
        tasks.append(asyncio.create_task(self.notifications.run(stop), name="notifications"))

        if not self.scheduler.enabled:
            logger.warning("app.scheduler_disabled")
        await self.scheduler.start()
        try:
            await stop.wait()
        finally:
            await self.scheduler.stop()
            stop.set()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        await self.router.stop()
        for closable in (self.gateway, self.notifier):
            aclose = getattr(closable, "aclose", None)
            if aclose is not None:
                await aclose()
        await self.bus.close()
        self.store.close()


def build_app(settings: Settings | None = None, **overrides) -> StockwatchApp:
    """Build the pipeline, injecting any of the ``StockwatchApp`` collaborators."""
    return StockwatchApp(settings, **overrides)
