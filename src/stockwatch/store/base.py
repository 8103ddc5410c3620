"""Symbol Store — the single table shared by every pipeline stage.

WHY
───
All coordination between stages happens through this table: the seeder
creates SYMBOL rows, the orchestrator overwrites PRICE rows, the delta
calculator overwrites DELTA rows. Every write emits a ``ChangeEvent`` with
before/after images to the registered listeners (the change stream), which
is what triggers the downstream stages.

ARCHITECTURE
────────────
::

    SymbolStore (ABC)
      ├── .put(item, condition=None)   ─ upsert, emits INSERT/MODIFY
      ├── .put_if_absent(item)         ─ create-only, no event if present
      ├── .get(record_type, ticker)    ─ single row
      ├── .query(record_type)          ─ whole partition, ordered by ticker
      └── .add_listener(callback)      ─ change feed subscription

    Backends implement ``_read`` / ``_write`` / ``_scan``:
      InMemorySymbolStore  (memory.py)
      SQLiteSymbolStore    (sqlite.py)

Writes are row-level and last-write-wins. The store lock only serializes
read-modify-write of a single put so that each change event carries the
exact image it replaced.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable

from stockwatch.core.errors import StaleWriteError, StorageError, WriteError
from stockwatch.core.logging import get_logger
from stockwatch.core.models import (
    PK,
    SK,
    ChangeEvent,
    Item,
    PriceDelta,
    PriceObservation,
    RecordType,
    Symbol,
    WriteKind,
)

logger = get_logger(__name__)

ChangeListener = Callable[[ChangeEvent], None]
WriteCondition = Callable[[Item | None], bool]


class SymbolStore(ABC):
    """Key/value table addressed by ``(record type, ticker)``."""

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []
        self._sequence = 0
        self._lock = threading.RLock()

    # ── Backend hooks ────────────────────────────────────────────────

    @abstractmethod
    def _read(self, pk: str, sk: str) -> Item | None:
        ...

    @abstractmethod
    def _write(self, item: Item) -> None:
        ...

    @abstractmethod
    def _scan(self, pk: str) -> list[Item]:
        ...

    def close(self) -> None:
        """Release backend resources."""

    # ── Change feed ──────────────────────────────────────────────────

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback invoked with every change event, in write order."""
        self._listeners.append(listener)

    def _emit(self, event: ChangeEvent) -> None:
        for listener in self._listeners:
            listener(event)

    # ── Operations ───────────────────────────────────────────────────

    def get(self, record_type: RecordType, ticker: str) -> Item | None:
        try:
            item = self._read(record_type.value, ticker)
        except Exception as e:
            raise StorageError(f"read failed for {record_type.value}/{ticker}", cause=e) from e
        return dict(item) if item is not None else None

    def query(self, record_type: RecordType) -> list[Item]:
        """Return every row of one partition, ordered by ticker."""
        try:
            items = self._scan(record_type.value)
        except Exception as e:
            raise StorageError(f"query failed for {record_type.value}", cause=e) from e
        return sorted((dict(item) for item in items), key=lambda item: item[SK])

    def put(self, item: Item, condition: WriteCondition | None = None) -> ChangeEvent:
        """Upsert a row and emit its change event.

        Args:
            item: Row image, must carry ``PK`` and ``SK``
            condition: Called with the current row (or None); the write is
                rejected with ``StaleWriteError`` when it returns False

        Raises:
            StaleWriteError: The condition rejected the write
            WriteError: The backend failed
        """
        pk, sk = self._keys(item)
        with self._lock:
            old = self.get(RecordType(pk), sk)
            if condition is not None and not condition(old):
                raise StaleWriteError(
                    f"conditional write rejected for {pk}/{sk}"
                ).with_context(ticker=sk)

            try:
                self._write(dict(item))
            except Exception as e:
                raise WriteError(f"write failed for {pk}/{sk}", cause=e).with_context(
                    ticker=sk
                ) from e

            self._sequence += 1
            event = ChangeEvent(
                event_name=WriteKind.MODIFY if old is not None else WriteKind.INSERT,
                keys={PK: pk, SK: sk},
                new_image=dict(item),
                old_image=old,
                sequence_number=self._sequence,
            )
            self._emit(event)
        return event

    def put_if_absent(self, item: Item) -> ChangeEvent | None:
        """Create a row only if its key does not exist yet.

        Returns:
            The INSERT change event, or None if the row already existed
        """
        try:
            return self.put(item, condition=lambda old: old is None)
        except StaleWriteError:
            return None

    @staticmethod
    def _keys(item: Item) -> tuple[str, str]:
        pk, sk = item.get(PK), item.get(SK)
        if not pk or not sk:
            raise WriteError(f"item is missing its key: {item!r}")
        try:
            RecordType(pk)
        except ValueError as e:
            raise WriteError(f"unknown record type {pk!r}", cause=e) from e
        return pk, sk

    # ── Typed helpers ────────────────────────────────────────────────

    def list_symbols(self) -> list[Symbol]:
        return [Symbol.from_item(item) for item in self.query(RecordType.SYMBOL)]

    def get_price(self, ticker: str) -> PriceObservation | None:
        item = self.get(RecordType.PRICE, ticker)
        return PriceObservation.from_item(item) if item is not None else None

    def get_delta(self, ticker: str) -> PriceDelta | None:
        item = self.get(RecordType.DELTA, ticker)
        return PriceDelta.from_item(item) if item is not None else None

    def list_prices(self) -> list[PriceObservation]:
        return [PriceObservation.from_item(item) for item in self.query(RecordType.PRICE)]

    def list_deltas(self) -> list[PriceDelta]:
        return [PriceDelta.from_item(item) for item in self.query(RecordType.DELTA)]
