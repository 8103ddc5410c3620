"""SQLite-backed symbol store.

One table, one row per ``(pk, sk)``; the row image is stored as JSON so the
change feed can hand out exactly what was written.

Example::

    store = SQLiteSymbolStore("./stockwatch.db")
    store.put(Symbol("BINANCE:BTCUSDT", "BTC").to_item())
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

from stockwatch.core.models import PK, SK, Item
from stockwatch.store.base import SymbolStore

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    pk TEXT NOT NULL,
    sk TEXT NOT NULL,
    item TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    PRIMARY KEY (pk, sk)
)
"""


class SQLiteSymbolStore(SymbolStore):
    """Durable table on a local SQLite file (``":memory:"`` for a throwaway one)."""

    def __init__(self, path: str | Path = ":memory:"):
        super().__init__()
        self._path = str(path)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute(SCHEMA)
        self._conn.commit()

    def _read(self, pk: str, sk: str) -> Item | None:
        cursor = self._conn.cursor()
        cursor.execute("SELECT item FROM records WHERE pk = ? AND sk = ?", (pk, sk))
        row = cursor.fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def _write(self, item: Item) -> None:
        cursor = self._conn.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO records (pk, sk, item)
                VALUES (?, ?, ?)
                ON CONFLICT (pk, sk) DO UPDATE SET
                    item = excluded.item,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (item[PK], item[SK], json.dumps(item, sort_keys=True)),
            )
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise

    def _scan(self, pk: str) -> list[Item]:
        cursor = self._conn.cursor()
        cursor.execute("SELECT item FROM records WHERE pk = ? ORDER BY sk", (pk,))
        return [json.loads(row[0]) for row in cursor.fetchall()]

    def close(self) -> None:
        self._conn.close()
