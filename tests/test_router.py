"""Tests for stockwatch.router — envelope routing and the terminal consumer."""

import asyncio
import json
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest

from stockwatch.core.events import Event, EventPattern
from stockwatch.core.models import (
    PRICE_DELTA_DETAIL_TYPE,
    PRICE_DETAIL_TYPE,
    PriceDelta,
    PriceDeltaEvent,
    PriceEvent,
    PriceObservation,
)
from stockwatch.notify import ConsoleNotifier, LogNotifier, Notification, WebhookNotifier
from stockwatch.router import EventRouter, NotificationConsumer, Outcome, build_notification

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def delta_event(symbol="BINANCE:BTCUSDT", delta="14.5", source="stockwatch"):
    detail = PriceDeltaEvent.from_delta(PriceDelta(symbol, Decimal(delta), T0)).to_detail()
    return Event(source=source, detail_type=PRICE_DELTA_DETAIL_TYPE, detail=detail)


def price_event(symbol="AAPL", price="105"):
    detail = PriceEvent.from_observation(PriceObservation(symbol, Decimal(price), T0)).to_detail()
    return Event(source="stockwatch", detail_type=PRICE_DETAIL_TYPE, detail=detail)


@pytest.fixture
async def router(bus, queue):
    router = EventRouter(bus, queue, rule_name="stockwatch-notifications")
    await router.start()
    return router


@pytest.fixture
def terminal(queue, notifier):
    return NotificationConsumer(queue, notifier)


class TestEventRouter:
    @pytest.mark.asyncio
    async def test_envelopes_matching_events(self, router, bus, queue):
        event = delta_event()
        await bus.publish(event)

        [message] = queue.peek()
        envelope = json.loads(message.body)
        assert envelope["rule"] == "stockwatch-notifications"
        assert envelope["event"]["id"] == event.event_id
        assert envelope["event"]["detail"]["symbol"] == "BINANCE:BTCUSDT"

    @pytest.mark.asyncio
    async def test_ignores_other_sources(self, router, bus, queue):
        await bus.publish(delta_event(source="elsewhere"))
        assert queue.depth == 0

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, router, bus, queue):
        await router.stop()
        await bus.publish(delta_event())
        assert queue.depth == 0

    @pytest.mark.asyncio
    async def test_detail_type_filter(self, bus, queue):
        router = EventRouter(
            bus, queue, pattern=EventPattern(source=["stockwatch"], detail_type=[PRICE_DETAIL_TYPE])
        )
        await router.start()
        await bus.publish(delta_event())
        await bus.publish(price_event())
        assert router.routed == 1


class TestBuildNotification:
    def test_delta_notification(self):
        body = json.dumps({"rule": "r", "event": delta_event().to_dict()})
        notification = build_notification(body)

        assert notification.subject == "PriceDeltaEvent: BINANCE:BTCUSDT"
        assert notification.attributes == {
            "symbol": "BINANCE:BTCUSDT",
            "type": "price_delta",
            "price_delta": "14.5",
        }
        assert json.loads(notification.message)["delta"] == "14.5"

    def test_price_notification(self):
        body = json.dumps({"rule": "r", "event": price_event().to_dict()})
        notification = build_notification(body)
        assert notification.subject == "PriceEvent: AAPL"
        assert notification.attributes["price"] == "105"

    def test_unknown_type(self):
        event = Event(source="stockwatch", detail_type="Other", detail={"type": "volume"})
        assert build_notification(json.dumps({"rule": "r", "event": event.to_dict()})) is None


class TestNotificationConsumer:
    @pytest.mark.asyncio
    async def test_delivers_and_acks(self, router, bus, queue, terminal, notifier):
        await bus.publish(delta_event())

        counts = await terminal.drain()

        assert counts[Outcome.DELIVERED] == 1
        assert notifier.sent[0].subject == "PriceDeltaEvent: BINANCE:BTCUSDT"
        assert queue.depth == 0

    @pytest.mark.asyncio
    async def test_one_message_at_a_time(self, router, bus, terminal, notifier):
        await bus.publish(delta_event("A"))
        await bus.publish(delta_event("B"))

        assert await terminal.process_one() == Outcome.DELIVERED
        assert len(notifier.sent) == 1
        await terminal.process_one()
        assert [n.attributes["symbol"] for n in notifier.sent] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_failed_delivery_is_redelivered(self, router, bus, queue, timer, terminal, notifier):
        notifier.fail_next = 1
        await bus.publish(delta_event())

        assert await terminal.process_one() == Outcome.FAILED
        assert queue.depth == 1
        assert await terminal.process_one() is None

        timer.advance(31)
        assert await terminal.process_one() == Outcome.DELIVERED
        assert queue.depth == 0

    @pytest.mark.asyncio
    async def test_persistent_failure_ends_in_dead_letter_queue(self, router, bus, queue, notifier):
        notifier.fail_next = 100
        terminal = NotificationConsumer(queue, notifier, redelivery_delay=0.0)
        await bus.publish(delta_event())

        counts = await terminal.drain()

        assert counts[Outcome.FAILED] == 3
        assert queue.depth == 0
        assert len(queue.dead_letter_queue.peek()) == 1

    @pytest.mark.asyncio
    async def test_unknown_type_acked_and_ignored(self, queue, terminal, notifier):
        event = Event(source="stockwatch", detail_type="Other", detail={"type": "volume"})
        await queue.send(json.dumps({"rule": "r", "event": event.to_dict()}))

        assert await terminal.process_one() == Outcome.IGNORED
        assert notifier.attempts == 0
        assert queue.depth == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            "not json",
            json.dumps(["list"]),
            json.dumps({"rule": "r"}),
            json.dumps({"rule": "r", "event": {"detail": "x"}}),
            json.dumps({"rule": "r", "event": {"detail": {"type": "price_delta", "symbol": ""}}}),
            json.dumps({"rule": "r", "event": {"detail": {"type": "price_delta", "symbol": "A"}}}),
        ],
    )
    async def test_malformed_messages_dropped(self, queue, terminal, notifier, body):
        await queue.send(body)

        assert await terminal.process_one() == Outcome.DROPPED
        assert notifier.attempts == 0
        assert queue.depth == 0

    @pytest.mark.asyncio
    async def test_run_loop(self, router, bus, terminal, notifier):
        stop = asyncio.Event()
        task = asyncio.create_task(terminal.run(stop, poll_interval=0.01))

        await bus.publish(delta_event())
        for _ in range(100):
            if notifier.sent:
                break
            await asyncio.sleep(0.01)

        stop.set()
        await asyncio.wait_for(task, timeout=2)
        assert len(notifier.sent) == 1


class TestNotifiers:
    @pytest.mark.asyncio
    async def test_log_notifier(self):
        result = await LogNotifier().send(Notification("s", "m"))
        assert result.success

    @pytest.mark.asyncio
    async def test_console_notifier(self):
        from rich.console import Console

        console = Console(record=True, width=120)
        result = await ConsoleNotifier(console=console).send(
            Notification("PriceDeltaEvent: AAPL", "{}", {"symbol": "AAPL"})
        )
        assert result.success
        assert "PriceDeltaEvent: AAPL" in console.export_text()

    @pytest.mark.asyncio
    async def test_disabled_channel_skips(self, notifier):
        notifier.disable()
        result = await notifier.send(Notification("s", "m"))
        assert result.success
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_webhook_posts_json(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(204)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = WebhookNotifier("https://hooks.test/notify", client=client)

        result = await notifier.send(Notification("PriceDeltaEvent: AAPL", "{}", {"symbol": "AAPL"}))

        assert result.success
        assert seen[0]["subject"] == "PriceDeltaEvent: AAPL"
        assert seen[0]["attributes"] == {"symbol": "AAPL"}

    @pytest.mark.asyncio
    async def test_webhook_failure_is_reported(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        notifier = WebhookNotifier("https://hooks.test/notify", client=client)

        result = await notifier.send(Notification("s", "m"))

        assert not result.success
        assert result.error.context.http_status == 502
