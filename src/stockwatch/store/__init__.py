"""Symbol Store backends."""

from stockwatch.store.base import ChangeListener, SymbolStore, WriteCondition
from stockwatch.store.memory import InMemorySymbolStore
from stockwatch.store.sqlite import SQLiteSymbolStore


def create_store(backend: str = "memory", path: str | None = None) -> SymbolStore:
    """Factory matching the ``table_backend`` setting."""
    if backend == "memory":
        return InMemorySymbolStore()
    if backend == "sqlite":
        return SQLiteSymbolStore(path or ":memory:")
    raise ValueError(f"Unknown table backend: {backend}")


__all__ = [
    "ChangeListener",
    "SymbolStore",
    "WriteCondition",
    "InMemorySymbolStore",
    "SQLiteSymbolStore",
    "create_store",
]
