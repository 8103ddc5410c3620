"""
Structured error types for the stockwatch pipeline.

Every stage of the pipeline contains failures at the narrowest scope it can:
a single symbol, a single change event, a single queued message. To make
that possible the stages need to know, for any exception, whether it is
worth retrying and which record it belongs to. StockwatchError and its
subclasses carry exactly that:

- **Category:** What kind of error (source, storage, config, validation, ...)
- **Retryable:** Whether redelivery has a chance of succeeding
- **Context:** Ticker, stage, event id, URL and HTTP status where known
- **Cause:** Chained underlying exception for root cause analysis

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                      StockwatchError                          │
        │             (category, retryable, context, cause)             │
        ├──────────────────────────────────────────────────────────────┤
        │                                                               │
        │  CredentialUnavailableError   FetchError          WriteError  │
        │  (CONFIG, fatal to a run)     (SOURCE)            (STORAGE)   │
        │                                   │                   │       │
        │                   QuoteClientError (4xx)      StaleWriteError │
        │                   QuoteServerError (5xx)                      │
        │                   QuoteUnavailableError                       │
        │                   QuoteParseError                             │
        │                                                               │
        │  MalformedEventError   PublishError       DeliveryError       │
        │  (VALIDATION, drop)    (NETWORK, retry)   (NETWORK, retry)    │
        │                                                               │
        │  StorageError          SeedError                              │
        │  (STORAGE)             (VALIDATION)                           │
        └──────────────────────────────────────────────────────────────┘

Usage:
    from stockwatch.core.errors import QuoteServerError

    if response.status_code >= 500:
        raise QuoteServerError("quote source returned 503").with_context(
            ticker="BINANCE:BTCUSDT", http_status=503
        )
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Self


class ErrorCategory(str, Enum):
    """What went wrong, at the granularity the stages route on."""

    NETWORK = "NETWORK"          # unreachable, timed out
    STORAGE = "STORAGE"          # table read/write
    SOURCE = "SOURCE"            # quote API answered with an error
    PARSE = "PARSE"              # quote body without a usable price
    VALIDATION = "VALIDATION"    # malformed events, bad symbol lists
    CONFIG = "CONFIG"            # missing credential, bad settings
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Where an error happened.

    ``to_dict`` drops unset fields and flattens ``metadata``, so the result
    can be handed straight to a log call.

    Attributes:
        stage: ``orchestrator``, ``delta``, ``dispatcher``, ``router`` or ``seeder``
        run_id: Orchestrator run identifier
        ticker: Symbol the failure belongs to
        event_id: Change event or queue message identifier
        url: Endpoint being called (never includes the token)
        http_status: Status code of the failed response
        metadata: Anything else passed to ``with_context``
    """

    stage: str | None = None
    run_id: str | None = None
    ticker: str | None = None
    event_id: str | None = None
    url: str | None = None
    http_status: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def set(self, key: str, value: Any) -> None:
        if key in _CONTEXT_FIELDS:
            setattr(self, key, value)
        else:
            self.metadata[key] = value

    def to_dict(self) -> dict[str, Any]:
        values = {name: getattr(self, name) for name in _CONTEXT_FIELDS}
        return {k: v for k, v in values.items() if v is not None} | self.metadata


_CONTEXT_FIELDS = tuple(f.name for f in fields(ErrorContext) if f.name != "metadata")


class StockwatchError(Exception):
    """Root of every error the pipeline raises on purpose.

    Subclasses pick ``default_category``/``default_retryable``; a raising
    site only overrides them when it knows better.
    """

    default_category = ErrorCategory.INTERNAL
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category if category is not None else self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.context = context if context is not None else ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **values: Any) -> Self:
        """Attach context and return the error, for ``raise X(...).with_context(...)``."""
        for key, value in values.items():
            self.context.set(key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if context := self.context.to_dict():
            data["context"] = context
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION
# =============================================================================


class CredentialUnavailableError(StockwatchError):
    """The quote-source API key could not be resolved. Fatal to a run."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False

    def __init__(self, secret_name: str, *, cause: Exception | None = None):
        super().__init__(f"Credential unavailable: {secret_name}", cause=cause)
        self.secret_name = secret_name


# =============================================================================
# QUOTE SOURCE
# =============================================================================


class FetchError(StockwatchError):
    """A single symbol's quote could not be fetched."""

    default_category = ErrorCategory.SOURCE
    default_retryable = False


class QuoteClientError(FetchError):
    """Quote source answered with a 4xx status."""


class QuoteServerError(FetchError):
    """Quote source answered with a 5xx status."""

    default_retryable = True


class QuoteUnavailableError(FetchError):
    """Quote source could not be reached or did not answer in time."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class QuoteParseError(FetchError):
    """Quote response did not contain a usable latest price."""

    default_category = ErrorCategory.PARSE


# =============================================================================
# STORAGE
# =============================================================================


class StorageError(StockwatchError):
    """The symbol table could not be read."""

    default_category = ErrorCategory.STORAGE
    default_retryable = True


class WriteError(StorageError):
    """A single record could not be written."""


class StaleWriteError(WriteError):
    """A PRICE write was older than (or as old as) the stored observation."""

    default_retryable = False


# =============================================================================
# EVENTS AND DELIVERY
# =============================================================================


class MalformedEventError(StockwatchError):
    """
    A change event or queued message is missing expected fields.

    Never retryable: redelivering the same bytes cannot fix them.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class PublishError(StockwatchError):
    """A domain event could not be published onto the bus."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class DeliveryError(StockwatchError):
    """A notification could not be delivered by the terminal consumer."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class SeedError(StockwatchError):
    """The symbol list handed to the seeder is invalid."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


def is_retryable(error: BaseException) -> bool:
    """Retry decision for arbitrary exceptions.

    Unknown exceptions are treated as retryable so that a bug in a handler
    still gets its single redelivery before it is dead-lettered.
    """
    if isinstance(error, StockwatchError):
        return error.retryable
    return True


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "StockwatchError",
    "CredentialUnavailableError",
    "FetchError",
    "QuoteClientError",
    "QuoteServerError",
    "QuoteUnavailableError",
    "QuoteParseError",
    "StorageError",
    "WriteError",
    "StaleWriteError",
    "MalformedEventError",
    "PublishError",
    "DeliveryError",
    "SeedError",
    "is_retryable",
]
