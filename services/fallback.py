"""
Fallback Producer

Last line of defence for basis requests when every live exchange failed.

Order of preference:
    1. The last good live composite for the symbol ("cached_fallback"),
       remembered for an hour after each successful aggregation
    2. A generated mock around a plausible contango ("mock")

Results are always labeled through CompositeResult.data_source so clients can
tell live data from degraded data.
"""

import random
from typing import Dict, Optional

from core.logging import get_logger
from core.schemas import AnomalyReport, CompositeResult
from core.utils.symbols import base_asset, normalize_symbol
from services.basis import classify_regime
from storage.cache import CoalescingCache


logger = get_logger(__name__)

# Reference spot levels for mock generation
MOCK_SPOT_PRICES: Dict[str, float] = {
    "BTC": 67234.0,
    "ETH": 3500.0,
}
MOCK_BASIS = 8.2
MOCK_TENOR_DAYS = 90


class FallbackProducer:
    """
    Serves labeled substitutes for a composite basis.

    Attributes:
        cache: Shared cache holding the last good composite per symbol
        ttl: Lifetime of a remembered composite (seconds)

    Example:
        >>> fallback = FallbackProducer(cache)
        >>> fallback.remember(composite)
        >>> fallback.produce("BTCUSDT").data_source
        'cached_fallback'
    """

    KEY_PREFIX = "basis_fallback"

    def __init__(self, cache: CoalescingCache, ttl: float = 3600, rng: Optional[random.Random] = None):
        self.cache = cache
        self.ttl = ttl
        self._rng = rng or random.Random()

    def _key(self, symbol: str) -> str:
        return f"{self.KEY_PREFIX}:{normalize_symbol(symbol)}"

    def remember(self, result: CompositeResult) -> None:
        """Store a live composite as the fallback for its symbol."""
        if result.data_source != "live":
            return
        self.cache.set(self._key(result.symbol), result, self.ttl)

    def produce(self, symbol: str, failures: Optional[Dict[str, str]] = None) -> CompositeResult:
        """
        Cached fallback if one is remembered, otherwise a mock.

        Args:
            symbol: Trading pair
            failures: Exchange -> reason from the failed live cycle

        Returns:
            CompositeResult labeled "cached_fallback" or "mock"
        """
        symbol = normalize_symbol(symbol)
        failures = dict(failures or {})

        cached = self.cache.get(self._key(symbol))
        if cached is not None:
            logger.info(f"Serving cached fallback basis for {symbol}")
            return cached.model_copy(update={"data_source": "cached_fallback", "failures": failures})

        logger.warning(f"No live or cached basis for {symbol}; serving mock data")
        return self.mock(symbol, failures)

    def mock(self, symbol: str, failures: Optional[Dict[str, str]] = None) -> CompositeResult:
        """Plausible composite: spot +/- 1000 around the reference, basis 8.2 +/- 4."""
        reference = MOCK_SPOT_PRICES.get(base_asset(symbol), 100.0)
        spot = reference + (self._rng.random() - 0.5) * 2000 * (reference / MOCK_SPOT_PRICES["BTC"])
        basis = round(MOCK_BASIS + (self._rng.random() - 0.5) * 8, 2)
        derivative = spot * (1 + basis / 100 * MOCK_TENOR_DAYS / 365)

        return CompositeResult(
            symbol=symbol,
            spot_price=round(spot, 2),
            derivative_price=round(derivative, 2),
            basis=basis,
            regime=classify_regime(basis),
            agreement=0.0,
            anomaly=AnomalyReport(),
            confidence=0.0,
            sources=[],
            failures=dict(failures or {}),
            data_source="mock",
        )
