"""
stockwatch - symbol price tracking with change-driven delta notifications.

Pipeline::

    seed -> SYMBOL rows
    scheduled run -> PRICE rows -> DELTA rows -> bus events -> queue -> notifier
"""

__version__ = "0.1.0"

from stockwatch.app import StockwatchApp, build_app  # noqa: E402

__all__ = ["StockwatchApp", "build_app", "__version__"]
