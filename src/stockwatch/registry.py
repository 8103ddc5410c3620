"""Symbol registry seeder.

Bootstraps the SYMBOL partition from a list of ``{name, symbol}`` pairs.
Each entry is written with create-if-absent, so seeding the same list twice
(or a superset of it) leaves existing rows untouched and never emits a second
change event for them.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stockwatch.core.errors import SeedError
from stockwatch.core.logging import get_logger
from stockwatch.core.models import Symbol
from stockwatch.store.base import SymbolStore

logger = get_logger(__name__)


class SeedOutcome(str, Enum):
    CREATED = "created"
    EXISTS = "exists"
    FAILED = "failed"


@dataclass
class SeedEntryResult:
    ticker: str
    outcome: SeedOutcome
    error: str | None = None


@dataclass
class SeedResult:
    """Run status plus one outcome per entry, in input order."""

    entries: list[SeedEntryResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(entry.outcome != SeedOutcome.FAILED for entry in self.entries)

    def count(self, outcome: SeedOutcome) -> int:
        return sum(1 for entry in self.entries if entry.outcome == outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "created": self.count(SeedOutcome.CREATED),
            "exists": self.count(SeedOutcome.EXISTS),
            "failed": self.count(SeedOutcome.FAILED),
            "entries": [
                {"ticker": e.ticker, "outcome": e.outcome.value, "error": e.error}
                for e in self.entries
            ],
        }


def _parse_entry(index: int, entry: Any) -> Symbol | SeedError:
    if not isinstance(entry, dict):
        return SeedError(f"entry {index} is not an object").with_context(ticker=f"#{index}")
    name, ticker = entry.get("name"), entry.get("symbol")
    if not isinstance(ticker, str) or not ticker.strip():
        return SeedError(f"entry {index} has no symbol").with_context(ticker=f"#{index}")
    if not isinstance(name, str) or not name.strip():
        return SeedError(f"entry {index} ({ticker}) has no name").with_context(
            ticker=ticker.strip()
        )
    return Symbol(ticker=ticker.strip(), display_name=name.strip())


def parse_symbols(raw: str) -> list[Symbol | SeedError]:
    """Parse ``[{"name": "BTC", "symbol": "BINANCE:BTCUSDT"}, ...]``.

    An invalid entry is returned as a ``SeedError`` in its place, so
    ``seed_symbols`` can report it without dropping the valid ones.

    Raises:
        SeedError: Invalid JSON, or not a JSON array
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SeedError(f"symbol list is not valid JSON: {e.msg}", cause=e) from e

    if not isinstance(data, list):
        raise SeedError("symbol list must be a JSON array")

    return [_parse_entry(index, entry) for index, entry in enumerate(data)]


def seed_symbols(store: SymbolStore, symbols: Iterable[Symbol | SeedError]) -> SeedResult:
    """Ensure each symbol exists as a SYMBOL row.

    A failure on one entry (including an entry that did not parse) is
    recorded and the remaining entries are still attempted.
    """
    result = SeedResult()
    for symbol in symbols:
        if isinstance(symbol, SeedError):
            ticker = symbol.context.ticker or "?"
            logger.error("seeder.entry_invalid", ticker=ticker, error=symbol.message)
            result.entries.append(SeedEntryResult(ticker, SeedOutcome.FAILED, symbol.message))
            continue
        try:
            event = store.put_if_absent(symbol.to_item())
        except Exception as e:
            logger.error("seeder.entry_failed", ticker=symbol.ticker, error=str(e))
            result.entries.append(SeedEntryResult(symbol.ticker, SeedOutcome.FAILED, str(e)))
            continue

        outcome = SeedOutcome.CREATED if event is not None else SeedOutcome.EXISTS
        logger.debug("seeder.entry_seeded", ticker=symbol.ticker, outcome=outcome.value)
        result.entries.append(SeedEntryResult(symbol.ticker, outcome))

    logger.info(
        "seeder.complete",
        success=result.success,
        created=result.count(SeedOutcome.CREATED),
        exists=result.count(SeedOutcome.EXISTS),
        failed=result.count(SeedOutcome.FAILED),
    )
    return result
