"""Configuration management using Pydantic Settings."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYMBOLS = (
    '[{"name": "BTC", "symbol": "BINANCE:BTCUSDT"},'
    ' {"name": "ETH", "symbol": "BINANCE:ETHUSDT"}]'
)


class Settings(BaseSettings):
    """Application settings loaded from ``STOCKWATCH_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="STOCKWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Table
    table_backend: Literal["memory", "sqlite"] = "sqlite"
    table_path: str = "./stockwatch.db"

    # Quote source
    quote_base_url: str = "https://finnhub.io/api/v1/crypto/candle"
    quote_timeout_seconds: float = 10.0
    quote_resolution: str = "1"
    quote_window_seconds: int = 60
    api_key_secret_name: str = "stockwatch_api_key"
    secrets_dir: str = "/run/secrets"

    # Orchestrator
    fetch_concurrency: int = Field(default=1, ge=1)

    # Change stream consumers
    stream_batch_size: int = Field(default=10, ge=1)
    stream_batching_window_seconds: float = 5.0
    stream_max_retry_attempts: int = Field(default=1, ge=0)

    # Event bus
    event_source: str = "stockwatch"
    dispatch_delta_inserts: bool = False
    dispatch_price_events: bool = False

    # Router + queue
    router_rule_name: str = "stockwatch-notifications"
    queue_visibility_timeout_seconds: float = 30.0
    queue_max_receive_count: int = Field(default=3, ge=1)
    notifier: Literal["log", "console", "webhook"] = "log"
    webhook_url: str | None = None

    # Scheduling
    schedule_interval_seconds: float = 60.0
    scheduler_enabled: bool = False

    # Seeder
    symbols: str = DEFAULT_SYMBOLS

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "console"


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (for testing)."""
    global _settings
    _settings = None
