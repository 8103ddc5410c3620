"""
Quote Gateway — adapter to the external candle/quote HTTP service.

Fetches the candles of the last minute for one symbol and normalizes the
response to a single number: the final close.

Request::

    GET {base_url}?symbol=BINANCE:BTCUSDT&token=...&resolution=1&from=<now-60>&to=<now>

Response (only ``c`` is used)::

    {"c": [43110.2, 43125.5], "h": [...], "l": [...], "o": [...],
     "s": "ok", "t": [...], "v": [...]}

Error classification:
    - 4xx                       -> QuoteClientError
    - 5xx                       -> QuoteServerError
    - timeout / transport error -> QuoteUnavailableError
    - missing/empty ``c``, non-numeric close, non-JSON body -> QuoteParseError

Rate Limits:
    The upstream quota is per API key. The orchestrator keeps calls serial by
    default; this adapter does not throttle on its own.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, runtime_checkable

import httpx

from stockwatch.core.errors import (
    QuoteClientError,
    QuoteParseError,
    QuoteServerError,
    QuoteUnavailableError,
)
from stockwatch.core.logging import get_logger
from stockwatch.core.models import utcnow
from stockwatch.core.secrets import SecretValue

logger = get_logger(__name__)


@runtime_checkable
class QuoteGateway(Protocol):
    """Anything that can produce the latest price for a ticker."""

    async def latest_price(self, ticker: str, token: SecretValue) -> Decimal:
        ...


def extract_latest_price(body: Any) -> Decimal:
    """Return the final close of a candle response.

    Raises:
        QuoteParseError: No usable close in the body
    """
    if not isinstance(body, dict):
        raise QuoteParseError(f"expected a JSON object, got {type(body).__name__}")

    closes = body.get("c")
    if not isinstance(closes, list) or not closes:
        status = body.get("s")
        raise QuoteParseError(f"response has no closes (s={status!r})")

    last = closes[-1]
    if isinstance(last, bool) or not isinstance(last, (int, float, str)):
        raise QuoteParseError(f"last close is not a number: {last!r}")
    if isinstance(last, float) and not math.isfinite(last):
        raise QuoteParseError(f"last close is not finite: {last!r}")

    try:
        price = Decimal(str(last))
    except InvalidOperation as e:
        raise QuoteParseError(f"last close is not a number: {last!r}", cause=e) from e
    if not price.is_finite():
        raise QuoteParseError(f"last close is not finite: {last!r}")
    return price


class HttpQuoteGateway:
    """httpx-based quote gateway.

    Args:
        base_url: Candle endpoint
        timeout: Per-request timeout in seconds; a hung call fails its symbol only
        resolution: Candle resolution sent upstream
        window_seconds: Width of the ``from``/``to`` window ending now
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject a
            ``MockTransport`` here)
        clock: Source of "now" for the request window
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        resolution: str = "1",
        window_seconds: int = 60,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.resolution = resolution
        self.window_seconds = window_seconds
        self._client = client
        self._owns_client = client is None
        self._clock = clock

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _params(self, ticker: str, token: SecretValue) -> dict[str, str]:
        to_ts = int(self._clock().timestamp())
        return {
            "symbol": ticker,
            "token": token.get_secret(),
            "resolution": self.resolution,
            "from": str(to_ts - self.window_seconds),
            "to": str(to_ts),
        }

    async def latest_price(self, ticker: str, token: SecretValue) -> Decimal:
        client = self._get_client()
        try:
            response = await client.get(
                self.base_url,
                params=self._params(ticker, token),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise QuoteUnavailableError(
                f"quote request timed out after {self.timeout}s", cause=e
            ).with_context(ticker=ticker, url=self.base_url) from e
        except httpx.HTTPError as e:
            raise QuoteUnavailableError(
                f"quote request failed: {e}", cause=e
            ).with_context(ticker=ticker, url=self.base_url) from e

        status = response.status_code
        if 400 <= status < 500:
            raise QuoteClientError(
                f"quote source returned {status}"
            ).with_context(ticker=ticker, url=self.base_url, http_status=status)
        if status >= 500:
            raise QuoteServerError(
                f"quote source returned {status}"
            ).with_context(ticker=ticker, url=self.base_url, http_status=status)
        if not 200 <= status < 300:
            raise QuoteUnavailableError(
                f"unexpected status {status}"
            ).with_context(ticker=ticker, url=self.base_url, http_status=status)

        try:
            body = response.json()
        except ValueError as e:
            raise QuoteParseError("response body is not JSON", cause=e).with_context(
                ticker=ticker, url=self.base_url, http_status=status
            ) from e

        try:
            price = extract_latest_price(body)
        except QuoteParseError as e:
            raise e.with_context(ticker=ticker, url=self.base_url, http_status=status)

        logger.debug("gateway.price_fetched", ticker=ticker, price=str(price))
        return price

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpQuoteGateway:
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()
