"""Price Fetch Orchestrator — one scheduled run of the fetch workflow.

WHY
───
Every interval the latest price of every registered symbol has to land in
the PRICE partition. That write is what drives the rest of the pipeline
(delta calculation, dispatch, notification), so the orchestrator's only side
effect is PRICE rows.

ARCHITECTURE
────────────
::

    PriceFetchOrchestrator.run()
      1. credentials.resolve_secret_value(name)  ─ missing -> CredentialUnavailableError
      2. store.list_symbols()                    ─ unreadable -> StorageError
      3. for each symbol, gated by Semaphore(concurrency):
             gateway.latest_price(ticker, token) ─ FetchError -> recorded, skipped
             store.put(PRICE, newer ObservedAt)  ─ WriteError -> recorded, skipped
      4. RunResult(processed, failed, failures)

The semaphore width defaults to 1: quote calls are serial and PRICE rows
are written in symbol order. Failed symbols are not retried within a run;
the next scheduled run picks them up again.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from stockwatch.core.errors import CredentialUnavailableError, FetchError, StockwatchError
from stockwatch.core.logging import LogContext, get_logger
from stockwatch.core.models import Item, PriceObservation, Symbol, utcnow
from stockwatch.core.secrets import CredentialStore, MissingSecretError, SecretValue
from stockwatch.gateway import QuoteGateway
from stockwatch.store.base import SymbolStore

logger = get_logger(__name__)


@dataclass
class SymbolFailure:
    """Why one symbol produced no PRICE write in a run."""

    ticker: str
    error_type: str
    message: str


@dataclass
class RunResult:
    """Outcome of a single orchestrator run."""

    run_id: str
    started_at: datetime
    completed_at: datetime | None = None
    processed: int = 0
    failures: list[SymbolFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def succeeded(self) -> int:
        return self.processed - self.failed

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "failures": [
                {"ticker": f.ticker, "error_type": f.error_type, "message": f.message}
                for f in self.failures
            ],
        }


def newer_than_stored(observed_at: datetime) -> Callable[[Item | None], bool]:
    """Write condition keeping ObservedAt strictly increasing per ticker."""

    def condition(current: Item | None) -> bool:
        if current is None:
            return True
        try:
            stored = datetime.fromisoformat(current["ObservedAt"])
        except (KeyError, TypeError, ValueError):
            return True
        if stored.tzinfo is None:
            # rows written without an offset are UTC
            stored = stored.replace(tzinfo=UTC)
        return observed_at > stored

    return condition


class PriceFetchOrchestrator:
    """Fetch the latest price of every registered symbol and write it.

    Args:
        store: Table holding the SYMBOL and PRICE partitions
        gateway: Quote source adapter
        credentials: Where the API key is resolved from
        secret_name: Name of the API key secret
        concurrency: Width of the fetch semaphore (1 = serial)
        clock: Source of ``ObservedAt`` timestamps
    """

    def __init__(
        self,
        store: SymbolStore,
        gateway: QuoteGateway,
        credentials: CredentialStore,
        *,
        secret_name: str = "stockwatch_api_key",
        concurrency: int = 1,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.gateway = gateway
        self.credentials = credentials
        self.secret_name = secret_name
        self.concurrency = concurrency
        self._clock = clock

    def _resolve_token(self) -> SecretValue:
        try:
            return self.credentials.resolve_secret_value(self.secret_name)
        except MissingSecretError as e:
            raise CredentialUnavailableError(self.secret_name, cause=e) from e

    @staticmethod
    def _record_failure(result: RunResult, symbol: Symbol, error: StockwatchError) -> None:
        result.failures.append(SymbolFailure(symbol.ticker, type(error).__name__, error.message))
        logger.warning("orchestrator.symbol_failed", ticker=symbol.ticker, error=error.to_dict())

    async def _fetch_one(
        self,
        symbol: Symbol,
        token: SecretValue,
        semaphore: asyncio.Semaphore,
        result: RunResult,
    ) -> None:
        async with semaphore:
            try:
                price = await self.gateway.latest_price(symbol.ticker, token)
                observation = PriceObservation(
                    ticker=symbol.ticker, price=price, observed_at=self._clock()
                )
                self.store.put(
                    observation.to_item(),
                    condition=newer_than_stored(observation.observed_at),
                )
            except StockwatchError as e:
                self._record_failure(result, symbol, e)
                return
            except Exception as e:
                error = FetchError(f"unexpected error: {e}", cause=e).with_context(
                    ticker=symbol.ticker, stage="orchestrator"
                )
                self._record_failure(result, symbol, error)
                return

            logger.info(
                "orchestrator.price_written",
                ticker=symbol.ticker,
                price=str(observation.price),
            )

    async def run(self) -> RunResult:
        """Execute one fetch run.

        Raises:
            CredentialUnavailableError: The API key could not be resolved; no
                PRICE row is written
            StorageError: The symbol list could not be read
        """
        result = RunResult(run_id=uuid.uuid4().hex[:12], started_at=utcnow())

        async with LogContext(run_id=result.run_id):
            logger.info("orchestrator.run_started", concurrency=self.concurrency)

            try:
                token = self._resolve_token()
            except CredentialUnavailableError:
                logger.error("orchestrator.credential_unavailable", secret=self.secret_name)
                raise

            symbols = self.store.list_symbols()
            result.processed = len(symbols)
            if not symbols:
                result.completed_at = utcnow()
                logger.info("orchestrator.no_symbols")
                return result

            semaphore = asyncio.Semaphore(self.concurrency)
            await asyncio.gather(
                *[self._fetch_one(symbol, token, semaphore, result) for symbol in symbols]
            )

            result.completed_at = utcnow()
            logger.info(
                "orchestrator.run_complete",
                processed=result.processed,
                failed=result.failed,
                duration_seconds=result.duration_seconds,
            )
        return result
