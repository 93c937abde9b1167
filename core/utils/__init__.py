"""
Core Utilities Package

This package contains utility functions and helpers used throughout the application.

Modules:
    - time: Timestamp normalization, bucketing and expiry helpers
    - symbols: Symbol normalization and base asset extraction
    - change: Relative change for differential broadcasts
"""

from core.utils.change import relative_change
from core.utils.symbols import base_asset, normalize_symbol
from core.utils.time import current_utc_datetime, days_until, interval_seconds, time_bucket, to_utc_datetime

__all__ = [
    "to_utc_datetime",
    "current_utc_datetime",
    "time_bucket",
    "days_until",
    "interval_seconds",
    "normalize_symbol",
    "base_asset",
    "relative_change",
]
