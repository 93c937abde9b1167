"""
Time Utilities

Exchanges return timestamps in different formats:
- Binance / Bybit / Deribit: milliseconds since epoch (e.g., 1704110400000)
- Some payloads: seconds since epoch (e.g., 1704110400)
- We need: Python datetime objects in UTC

Besides normalization, this module provides the bucketing and expiry helpers
used for cache keys, price windows and dated-contract basis math.
"""

import math
from datetime import datetime, timezone
from typing import Optional, Union


def to_utc_datetime(timestamp: Union[int, float]) -> datetime:
    """
    Convert a timestamp (seconds or milliseconds) to UTC datetime.

    Detection Logic:
        - If timestamp > 1e12: assumed to be milliseconds
        - Otherwise: assumed to be seconds

    Args:
        timestamp: Unix timestamp in seconds or milliseconds

    Returns:
        datetime: Timezone-aware datetime object in UTC

    Raises:
        ValueError: If timestamp is negative or invalid

    Examples:
        >>> to_utc_datetime(1704110400000)
        datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
        >>> to_utc_datetime(1704110400)
        datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
    """
    if timestamp < 0:
        raise ValueError(f"Timestamp cannot be negative: {timestamp}")

    if timestamp > 1e12:
        timestamp = timestamp / 1000.0

    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OSError, OverflowError, ValueError) as e:
        raise ValueError(f"Invalid timestamp: {timestamp}. Error: {e}")


def current_utc_datetime() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def time_bucket(timestamp: float, window_seconds: float) -> int:
    """
    Index of the fixed window containing a timestamp.

    Args:
        timestamp: Unix timestamp in seconds
        window_seconds: Window length (e.g. 600 for 10-minute buckets)

    Returns:
        int: floor(timestamp / window_seconds)

    Example:
        >>> time_bucket(1704110999, 600)
        2840184
    """
    if window_seconds <= 0:
        raise ValueError(f"Window must be positive: {window_seconds}")
    return int(math.floor(timestamp / window_seconds))


def days_until(expiry: datetime, now: Optional[datetime] = None) -> float:
    """
    Fractional days between now and an expiry.

    Args:
        expiry: Contract expiry (naive datetimes are treated as UTC)
        now: Reference time (defaults to current UTC time)

    Returns:
        float: Days to expiry (negative once expired)

    Example:
        >>> days_until(datetime(2024, 3, 29, 8, tzinfo=timezone.utc),
        ...            now=datetime(2024, 3, 19, 8, tzinfo=timezone.utc))
        10.0
    """
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    now = now or current_utc_datetime()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (expiry - now).total_seconds() / 86400.0


INTERVAL_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def interval_seconds(interval: str) -> int:
    """
    Length of a kline interval string in seconds.

    Examples:
        >>> interval_seconds("1h")
        3600
        >>> interval_seconds("15m")
        900

    Raises:
        ValueError: For unknown units or non-positive counts ("1M" is not
                    supported, months have no fixed length)
    """
    count, unit = interval[:-1], interval[-1:]
    if unit not in INTERVAL_UNITS or not count.isdigit() or int(count) <= 0:
        raise ValueError(f"Unsupported interval: '{interval}'")
    return int(count) * INTERVAL_UNITS[unit]
