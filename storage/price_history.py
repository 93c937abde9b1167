"""
Price History Store

Fixed-capacity rolling window of price samples per symbol, the input of the
indicator engine.

Features:
    - ingest(): append a sample, evicting the oldest when the window is full
    - replace_latest(): update the newest sample in place (running close)
    - snapshot(): immutable tuple copy for computation (never a live reference)
    - initialize_from_backfill(): seed a symbol that has no history yet, so
      indicators are computable right away instead of after the window fills
    - Symbols are independent; each gets its own window on first sample

Usage:
    store = PriceHistoryStore(capacity=250)
    store.ingest("BTCUSDT", 50000.0, datetime.now(timezone.utc))
    prices = [s.price for s in store.snapshot("BTCUSDT")]

Notes:
    Only the ingestion path mutates a window. All access happens on the event
    loop thread, so no locking is needed.
"""

from collections import deque
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from core.logging import get_logger
from core.schemas import PriceSample
from core.utils.symbols import normalize_symbol


logger = get_logger(__name__)


class PriceHistoryStore:
    """
    Per-symbol ring buffers of PriceSample.

    Attributes:
        capacity: Maximum samples kept per symbol (default 250)

    Example:
        >>> store = PriceHistoryStore(capacity=3)
        >>> for i, price in enumerate([1.0, 2.0, 3.0, 4.0]):
        ...     store.ingest("BTCUSDT", price, to_utc_datetime(1704110400 + i))
        >>> [s.price for s in store.snapshot("BTCUSDT")]
        [2.0, 3.0, 4.0]
    """

    def __init__(self, capacity: int = 250):
        if capacity <= 0:
            raise ValueError(f"Capacity must be positive: {capacity}")
        self.capacity = capacity
        self._windows: Dict[str, Deque[PriceSample]] = {}

    def ingest(self, symbol: str, price: float, timestamp: datetime) -> PriceSample:
        """
        Append a sample for symbol.

        Returns:
            The stored PriceSample

        Raises:
            pydantic.ValidationError: If price is not positive
        """
        sample = PriceSample(symbol=symbol, price=price, timestamp=timestamp)
        self.append(sample)
        return sample

    def append(self, sample: PriceSample) -> None:
        """Append an already-built sample (deque(maxlen) evicts the oldest)."""
        window = self._windows.get(sample.symbol)
        if window is None:
            window = deque(maxlen=self.capacity)
            self._windows[sample.symbol] = window
            logger.debug(f"Created price history for {sample.symbol}")
        window.append(sample)

    def replace_latest(self, sample: PriceSample) -> None:
        """
        Overwrite the newest sample of its symbol (append if the window is empty).

        Used to keep a running close for the interval still in progress.
        """
        window = self._windows.get(sample.symbol)
        if not window:
            self.append(sample)
            return
        window[-1] = sample

    def snapshot(self, symbol: str) -> Tuple[PriceSample, ...]:
        """Immutable copy of a symbol's window, oldest first (empty if unknown)."""
        window = self._windows.get(normalize_symbol(symbol))
        return tuple(window) if window else ()

    def prices(self, symbol: str) -> List[float]:
        return [sample.price for sample in self.snapshot(symbol)]

    def latest(self, symbol: str) -> Optional[PriceSample]:
        window = self._windows.get(normalize_symbol(symbol))
        return window[-1] if window else None

    def has_history(self, symbol: str) -> bool:
        return bool(self._windows.get(normalize_symbol(symbol)))

    def symbols(self) -> List[str]:
        return sorted(self._windows.keys())

    def initialize_from_backfill(self, symbol: str, samples: Iterable[PriceSample]) -> bool:
        """
        Seed a symbol's window from historical samples.

        Only applies when the symbol has no history yet; streaming samples
        that arrived first always win.

        Args:
            symbol: Trading pair
            samples: Historical samples in any order

        Returns:
            bool: True if the window was seeded
        """
        symbol = normalize_symbol(symbol)
        if self.has_history(symbol):
            logger.debug(f"Backfill skipped for {symbol}: history already present")
            return False

        ordered = sorted(
            (s for s in samples if s.symbol == symbol),
            key=lambda s: s.timestamp
        )
        if not ordered:
            return False

        self._windows[symbol] = deque(ordered[-self.capacity:], maxlen=self.capacity)
        logger.info(f"Backfilled {len(self._windows[symbol])} samples for {symbol}")
        return True

    def __len__(self) -> int:
        return len(self._windows)
