"""Dead letters — change events that exhausted their redeliveries.

WHY
───
A change event that fails its first delivery and its single retry must not
disappear silently, and must not be retried forever either. It lands here,
with the consumer name, attempt count and last error, so an operator can
inspect it, replay it into its consumer, or mark it resolved.

ARCHITECTURE
────────────
::

    DeadLetterStore
      ├── .add(event, consumer, attempts, error)
      ├── .get(dead_letter_id)
      ├── .list_unresolved(consumer=None)
      ├── .resolve(dead_letter_id, resolved_by)
      ├── .take_for_replay(dead_letter_id)  ─ hand back the event, mark replayed
      └── .stats()
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from stockwatch.core.logging import get_logger
from stockwatch.core.models import ChangeEvent, utcnow

logger = get_logger(__name__)


@dataclass
class DeadLetter:
    """A change event parked for operator inspection."""

    event: ChangeEvent
    consumer: str
    attempts: int
    error: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    replayed_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "consumer": self.consumer,
            "attempts": self.attempts,
            "error": self.error,
            "event_id": self.event.event_id,
            "event_name": self.event.event_name.value,
            "keys": dict(self.event.keys),
            "created_at": self.created_at.isoformat(),
            "replayed_at": self.replayed_at.isoformat() if self.replayed_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
        }


class DeadLetterStore:
    """In-process on-failure destination shared by the stream consumers."""

    def __init__(self) -> None:
        self._entries: dict[str, DeadLetter] = {}
        self._lock = threading.Lock()

    def add(
        self,
        event: ChangeEvent,
        consumer: str,
        attempts: int,
        error: str | None = None,
    ) -> DeadLetter:
        entry = DeadLetter(event=event, consumer=consumer, attempts=attempts, error=error)
        with self._lock:
            self._entries[entry.id] = entry
        logger.warning(
            "dlq.event_dead_lettered",
            dead_letter_id=entry.id,
            consumer=consumer,
            event_id=event.event_id,
            ticker=event.ticker,
            attempts=attempts,
            error=error,
        )
        return entry

    def get(self, dead_letter_id: str) -> DeadLetter | None:
        with self._lock:
            return self._entries.get(dead_letter_id)

    def list_unresolved(self, consumer: str | None = None) -> list[DeadLetter]:
        with self._lock:
            entries = [
                e for e in self._entries.values()
                if not e.is_resolved and (consumer is None or e.consumer == consumer)
            ]
        return sorted(entries, key=lambda e: e.created_at)

    def list_all(self, consumer: str | None = None) -> list[DeadLetter]:
        with self._lock:
            entries = [
                e for e in self._entries.values()
                if consumer is None or e.consumer == consumer
            ]
        return sorted(entries, key=lambda e: e.created_at)

    def resolve(self, dead_letter_id: str, resolved_by: str = "operator") -> bool:
        """Mark an entry as handled.

        Returns:
            True if updated, False if not found or already resolved
        """
        with self._lock:
            entry = self._entries.get(dead_letter_id)
            if entry is None or entry.is_resolved:
                return False
            entry.resolved_at = utcnow()
            entry.resolved_by = resolved_by
        logger.info("dlq.resolved", dead_letter_id=dead_letter_id, resolved_by=resolved_by)
        return True

    def take_for_replay(self, dead_letter_id: str) -> DeadLetter | None:
        """Hand an unresolved entry back for replay and resolve it as replayed."""
        with self._lock:
            entry = self._entries.get(dead_letter_id)
            if entry is None or entry.is_resolved:
                return None
            now = utcnow()
            entry.replayed_at = now
            entry.resolved_at = now
            entry.resolved_by = "replay"
        return entry

    def stats(self) -> dict[str, Any]:
        with self._lock:
            entries = list(self._entries.values())
        by_consumer: dict[str, int] = {}
        for entry in entries:
            if not entry.is_resolved:
                by_consumer[entry.consumer] = by_consumer.get(entry.consumer, 0) + 1
        return {
            "total": len(entries),
            "unresolved": sum(1 for e in entries if not e.is_resolved),
            "resolved": sum(1 for e in entries if e.is_resolved),
            "by_consumer": by_consumer,
        }

    def __len__(self) -> int:
        return len(self._entries)
