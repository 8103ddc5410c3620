"""Change stream: filtered, batched, retried delivery of table writes."""

from stockwatch.streams.consumer import (
    BatchHandler,
    BatchResponse,
    BatchResult,
    ChangeStream,
    Delivery,
    StreamConsumer,
    StreamFilter,
)
from stockwatch.streams.dlq import DeadLetter, DeadLetterStore

__all__ = [
    "BatchHandler",
    "BatchResponse",
    "BatchResult",
    "ChangeStream",
    "Delivery",
    "StreamConsumer",
    "StreamFilter",
    "DeadLetter",
    "DeadLetterStore",
]
