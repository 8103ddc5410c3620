"""stockwatch.core -- errors, logging, settings, secrets, records and the event bus.

Architecture::

    errors.py      Structured error hierarchy (StockwatchError and stage errors)
    logging.py     structlog configuration, LogContext
    settings.py    pydantic-settings Settings (STOCKWATCH_* environment)
    secrets.py     SecretsResolver with env/file/dict backends
    models.py      Table records, change events, domain event payloads
    events/        EventBus protocol and the in-memory bus
"""
