"""In-memory symbol store for tests and single-process runs."""

from __future__ import annotations

from stockwatch.core.models import PK, SK, Item
from stockwatch.store.base import SymbolStore


class InMemorySymbolStore(SymbolStore):
    """Dict-backed table. Contents live as long as the process."""

    def __init__(self) -> None:
        super().__init__()
        self._rows: dict[tuple[str, str], Item] = {}

    def _read(self, pk: str, sk: str) -> Item | None:
        return self._rows.get((pk, sk))

    def _write(self, item: Item) -> None:
        self._rows[(item[PK], item[SK])] = item

    def _scan(self, pk: str) -> list[Item]:
        return [item for (row_pk, _), item in self._rows.items() if row_pk == pk]

    def __len__(self) -> int:
        return len(self._rows)
