"""Durable-queue fake with visibility timeout and a dead-letter queue.

Semantics follow a hosted message queue:

- ``receive`` hides each returned message for ``visibility_timeout`` seconds
  and hands out a fresh receipt handle; a message that is not acknowledged
  in time becomes visible again (redelivery).
- ``ack`` deletes the message, ``nack`` makes it visible again immediately
  (or after ``delay``).
- A message received more than ``max_receive_count`` times is moved to the
  dead-letter queue instead of being delivered again.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from stockwatch.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class QueueMessage:
    """A queued message body plus its delivery bookkeeping."""

    body: str
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    receive_count: int = 0
    receipt_handle: str | None = None
    visible_at: float = 0.0


@runtime_checkable
class MessageQueue(Protocol):
    async def send(self, body: str) -> str:
        ...

    async def receive(self, max_messages: int = 1) -> list[QueueMessage]:
        ...

    async def ack(self, receipt_handle: str) -> bool:
        ...

    async def nack(self, receipt_handle: str, delay: float = 0.0) -> bool:
        ...


class InMemoryQueue:
    """In-process queue.

    Args:
        name: Queue name used in logs
        visibility_timeout: Seconds a received message stays hidden
        max_receive_count: Receives allowed before dead-lettering; None disables
        dead_letter_queue: Where exhausted messages go (created if omitted)
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        name: str = "queue",
        *,
        visibility_timeout: float = 30.0,
        max_receive_count: int | None = 3,
        dead_letter_queue: InMemoryQueue | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.max_receive_count = max_receive_count
        self._clock = clock
        self._messages: dict[str, QueueMessage] = {}
        self._lock = asyncio.Lock()
        if max_receive_count is not None and dead_letter_queue is None:
            dead_letter_queue = InMemoryQueue(
                f"{name}-dlq", max_receive_count=None, clock=clock
            )
        self.dead_letter_queue = dead_letter_queue

    async def send(self, body: str) -> str:
        message = QueueMessage(body=body, visible_at=self._clock())
        async with self._lock:
            self._messages[message.message_id] = message
        logger.debug("queue.message_sent", queue=self.name, message_id=message.message_id)
        return message.message_id

    async def receive(self, max_messages: int = 1) -> list[QueueMessage]:
        """Return up to ``max_messages`` visible messages, oldest first."""
        now = self._clock()
        received: list[QueueMessage] = []
        exhausted: list[QueueMessage] = []
        async with self._lock:
            for message in list(self._messages.values()):
                if len(received) >= max_messages:
                    break
                if message.visible_at > now:
                    continue
                if (
                    self.max_receive_count is not None
                    and message.receive_count >= self.max_receive_count
                ):
                    del self._messages[message.message_id]
                    exhausted.append(message)
                    continue
                message.receive_count += 1
                message.receipt_handle = uuid.uuid4().hex
                message.visible_at = now + self.visibility_timeout
                received.append(message)

        for message in exhausted:
            logger.warning(
                "queue.message_dead_lettered",
                queue=self.name,
                message_id=message.message_id,
                receive_count=message.receive_count,
            )
            if self.dead_letter_queue is not None:
                await self.dead_letter_queue.send(message.body)
        return received

    def _by_handle(self, receipt_handle: str) -> QueueMessage | None:
        for message in self._messages.values():
            if message.receipt_handle == receipt_handle:
                return message
        return None

    async def ack(self, receipt_handle: str) -> bool:
        """Delete a received message. False if the handle is stale."""
        async with self._lock:
            message = self._by_handle(receipt_handle)
            if message is None:
                return False
            del self._messages[message.message_id]
        return True

    async def nack(self, receipt_handle: str, delay: float = 0.0) -> bool:
        """Make a received message visible again after ``delay`` seconds."""
        async with self._lock:
            message = self._by_handle(receipt_handle)
            if message is None:
                return False
            message.visible_at = self._clock() + delay
            message.receipt_handle = None
        return True

    @property
    def depth(self) -> int:
        """Messages not yet deleted, in flight included."""
        return len(self._messages)

    @property
    def visible(self) -> int:
        now = self._clock()
        return sum(1 for message in self._messages.values() if message.visible_at <= now)

    def peek(self) -> list[QueueMessage]:
        return list(self._messages.values())
