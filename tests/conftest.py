"""
Shared pytest fixtures for stockwatch tests.

This module provides:
- Settings isolation (``reset_settings`` around every test)
- In-memory store, bus, queue and notifier fakes
- A fake quote source served through ``httpx.MockTransport``
- A deterministic clock that advances one second per call
"""

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest

# Ensure stockwatch package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stockwatch.core.events.memory import InMemoryEventBus
from stockwatch.core.secrets import DictSecretBackend, SecretsResolver
from stockwatch.core.settings import Settings, reset_settings
from stockwatch.gateway import HttpQuoteGateway
from stockwatch.notify import InMemoryNotifier
from stockwatch.queue import InMemoryQueue
from stockwatch.store import InMemorySymbolStore

QUOTE_URL = "https://quotes.test/api/v1/crypto/candle"
API_KEY_NAME = "stockwatch_api_key"
API_KEY = "test-token"


class StepClock:
    """Callable clock returning ``start``, ``start + step``, ... on each call."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current


class ManualTimer:
    """Monotonic clock for queue visibility tests."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeQuoteSource:
    """Candle endpoint stand-in.

    ``prices`` maps ticker -> last close; ``statuses`` forces an HTTP status;
    ``timeouts`` raises a read timeout; ``bodies`` returns a raw JSON body.
    """

    def __init__(self) -> None:
        self.prices: dict[str, float | str] = {}
        self.statuses: dict[str, int] = {}
        self.timeouts: set[str] = set()
        self.bodies: dict[str, object] = {}
        self.requests: list[httpx.Request] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        ticker = request.url.params.get("symbol", "")
        if ticker in self.timeouts:
            raise httpx.ReadTimeout("timed out", request=request)
        if ticker in self.statuses:
            return httpx.Response(self.statuses[ticker], json={"error": "forced"})
        if ticker in self.bodies:
            return httpx.Response(200, json=self.bodies[ticker])
        if ticker not in self.prices:
            return httpx.Response(200, json={"s": "no_data"})
        price = self.prices[ticker]
        return httpx.Response(200, json={"c": [1.0, price], "s": "ok"})

    @property
    def tickers_requested(self) -> list[str]:
        return [request.url.params["symbol"] for request in self.requests]


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """Reset the settings singleton and strip STOCKWATCH_* variables."""
    import os

    for key in list(os.environ):
        if key.startswith("STOCKWATCH_"):
            monkeypatch.delenv(key)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def timer() -> ManualTimer:
    return ManualTimer()


@pytest.fixture
def store() -> InMemorySymbolStore:
    return InMemorySymbolStore()


@pytest.fixture
def quote_source() -> FakeQuoteSource:
    return FakeQuoteSource()


@pytest.fixture
def gateway(quote_source: FakeQuoteSource) -> HttpQuoteGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(quote_source.handle))
    return HttpQuoteGateway(QUOTE_URL, client=client)


@pytest.fixture
def credentials() -> SecretsResolver:
    return SecretsResolver([DictSecretBackend({API_KEY_NAME: API_KEY})])


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def queue(timer: ManualTimer) -> InMemoryQueue:
    return InMemoryQueue("notifications", visibility_timeout=30.0, max_receive_count=3, clock=timer)


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        table_backend="memory",
        stream_batching_window_seconds=0.0,
        quote_base_url=QUOTE_URL,
        api_key_secret_name=API_KEY_NAME,
    )
