"""Records, change events and domain event payloads.

The table holds three record types under one composite key
``(PK=record type, SK=ticker)``. Rows travel through the change stream as
flat attribute maps (``images``) in the table's wire shape::

    {"PK": "PRICE", "SK": "BINANCE:BTCUSDT", "Price": "43125.5",
     "ObservedAt": "2026-10-19T12:00:00+00:00"}

Decimals are kept as strings in images so that no precision is lost between
the quote source and the delta arithmetic.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from stockwatch.core.errors import MalformedEventError

Item = dict[str, str]

PK = "PK"
SK = "SK"


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class RecordType(str, Enum):
    """Partition of the table a record lives in."""

    SYMBOL = "SYMBOL"
    PRICE = "PRICE"
    DELTA = "DELTA"


class WriteKind(str, Enum):
    """Kind of write that produced a change event."""

    INSERT = "INSERT"
    MODIFY = "MODIFY"


def _require(item: Item, attribute: str, record_type: RecordType) -> str:
    value = item.get(attribute)
    if value is None or value == "":
        raise MalformedEventError(
            f"{record_type.value} image is missing attribute {attribute!r}"
        ).with_context(ticker=item.get(SK))
    return value


def _decimal(item: Item, attribute: str, record_type: RecordType) -> Decimal:
    raw = _require(item, attribute, record_type)
    try:
        value = Decimal(raw)
    except InvalidOperation as e:
        raise MalformedEventError(
            f"{record_type.value} attribute {attribute!r} is not a number: {raw!r}",
            cause=e,
        ).with_context(ticker=item.get(SK)) from e
    if not value.is_finite():
        raise MalformedEventError(
            f"{record_type.value} attribute {attribute!r} is not finite: {raw!r}"
        ).with_context(ticker=item.get(SK))
    return value


def _timestamp(item: Item, attribute: str, record_type: RecordType) -> datetime:
    raw = _require(item, attribute, record_type)
    try:
        return datetime.fromisoformat(raw)
    except ValueError as e:
        raise MalformedEventError(
            f"{record_type.value} attribute {attribute!r} is not a timestamp: {raw!r}",
            cause=e,
        ).with_context(ticker=item.get(SK)) from e


def _check_partition(item: Item, record_type: RecordType) -> str:
    if item.get(PK) != record_type.value:
        raise MalformedEventError(
            f"expected a {record_type.value} image, got PK={item.get(PK)!r}"
        )
    return _require(item, SK, record_type)


@dataclass(frozen=True)
class Symbol:
    """A tracked ticker identifier plus a display name."""

    ticker: str
    display_name: str

    def to_item(self) -> Item:
        return {PK: RecordType.SYMBOL.value, SK: self.ticker, "Name": self.display_name}

    @classmethod
    def from_item(cls, item: Item) -> Symbol:
        ticker = _check_partition(item, RecordType.SYMBOL)
        return cls(ticker=ticker, display_name=item.get("Name", ticker))


@dataclass(frozen=True)
class PriceObservation:
    """The latest known price for a symbol at a point in time."""

    ticker: str
    price: Decimal
    observed_at: datetime

    def to_item(self) -> Item:
        return {
            PK: RecordType.PRICE.value,
            SK: self.ticker,
            "Price": str(self.price),
            "ObservedAt": self.observed_at.isoformat(),
        }

    @classmethod
    def from_item(cls, item: Item) -> PriceObservation:
        ticker = _check_partition(item, RecordType.PRICE)
        return cls(
            ticker=ticker,
            price=_decimal(item, "Price", RecordType.PRICE),
            observed_at=_timestamp(item, "ObservedAt", RecordType.PRICE),
        )


@dataclass(frozen=True)
class PriceDelta:
    """Signed difference between two consecutive price observations."""

    ticker: str
    delta: Decimal
    computed_at: datetime

    def to_item(self) -> Item:
        return {
            PK: RecordType.DELTA.value,
            SK: self.ticker,
            "Delta": str(self.delta),
            "ComputedAt": self.computed_at.isoformat(),
        }

    @classmethod
    def from_item(cls, item: Item) -> PriceDelta:
        ticker = _check_partition(item, RecordType.DELTA)
        return cls(
            ticker=ticker,
            delta=_decimal(item, "Delta", RecordType.DELTA),
            computed_at=_timestamp(item, "ComputedAt", RecordType.DELTA),
        )


@dataclass(frozen=True)
class ChangeEvent:
    """Before/after images of a single table write.

    Attributes:
        event_name: INSERT for a first write of the key, MODIFY afterwards
        keys: ``{"PK": ..., "SK": ...}`` of the written row
        new_image: Row after the write
        old_image: Row before the write, None on INSERT
        sequence_number: Monotonic position in the table's change feed
    """

    event_name: WriteKind
    keys: dict[str, str]
    new_image: Item | None
    old_image: Item | None = None
    sequence_number: int = 0
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def record_type(self) -> str | None:
        return self.keys.get(PK)

    @property
    def ticker(self) -> str | None:
        return self.keys.get(SK)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_name": self.event_name.value,
            "sequence_number": self.sequence_number,
            "keys": dict(self.keys),
            "new_image": dict(self.new_image) if self.new_image is not None else None,
            "old_image": dict(self.old_image) if self.old_image is not None else None,
            "created_at": self.created_at.isoformat(),
        }


# ── Domain events ────────────────────────────────────────────────────────

PRICE_DELTA_EVENT_TYPE = "price_delta"
PRICE_EVENT_TYPE = "price"

PRICE_DELTA_DETAIL_TYPE = "SymbolPriceDeltaEvent"
PRICE_DETAIL_TYPE = "SymbolPriceEvent"


@dataclass(frozen=True)
class PriceDeltaEvent:
    """Domain event published for a computed delta."""

    symbol: str
    delta: Decimal
    computed_at: datetime
    type: str = PRICE_DELTA_EVENT_TYPE

    @classmethod
    def from_delta(cls, delta: PriceDelta) -> PriceDeltaEvent:
        return cls(symbol=delta.ticker, delta=delta.delta, computed_at=delta.computed_at)

    def to_detail(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "delta": str(self.delta),
            "computed_at": self.computed_at.isoformat(),
            "type": self.type,
        }

    @classmethod
    def from_detail(cls, detail: dict[str, Any]) -> PriceDeltaEvent:
        symbol = detail.get("symbol")
        if not symbol:
            raise MalformedEventError("empty symbol")
        item = {PK: RecordType.DELTA.value, SK: symbol,
                "Delta": str(detail.get("delta", "")),
                "ComputedAt": str(detail.get("computed_at", ""))}
        delta = PriceDelta.from_item(item)
        return cls(symbol=symbol, delta=delta.delta, computed_at=delta.computed_at)


@dataclass(frozen=True)
class PriceEvent:
    """Domain event published for a new price observation."""

    symbol: str
    price: Decimal
    observed_at: datetime
    type: str = PRICE_EVENT_TYPE

    @classmethod
    def from_observation(cls, observation: PriceObservation) -> PriceEvent:
        return cls(
            symbol=observation.ticker,
            price=observation.price,
            observed_at=observation.observed_at,
        )

    def to_detail(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": str(self.price),
            "observed_at": self.observed_at.isoformat(),
            "type": self.type,
        }

    @classmethod
    def from_detail(cls, detail: dict[str, Any]) -> PriceEvent:
        symbol = detail.get("symbol")
        if not symbol:
            raise MalformedEventError("empty symbol")
        item = {PK: RecordType.PRICE.value, SK: symbol,
                "Price": str(detail.get("price", "")),
                "ObservedAt": str(detail.get("observed_at", ""))}
        observation = PriceObservation.from_item(item)
        return cls(symbol=symbol, price=observation.price, observed_at=observation.observed_at)


__all__ = [
    "Item",
    "PK",
    "SK",
    "utcnow",
    "RecordType",
    "WriteKind",
    "Symbol",
    "PriceObservation",
    "PriceDelta",
    "ChangeEvent",
    "PRICE_DELTA_EVENT_TYPE",
    "PRICE_EVENT_TYPE",
    "PRICE_DELTA_DETAIL_TYPE",
    "PRICE_DETAIL_TYPE",
    "PriceDeltaEvent",
    "PriceEvent",
]
