"""
Exchange Adapter - Abstract Contract for All Exchanges

This module defines the abstract base class every exchange adapter implements.
The aggregator works with ExchangeAdapter only; it never branches on which
exchange it is talking to or on that exchange's field shapes.

Design Philosophy:
    "Program to an interface, not an implementation"

    Each adapter turns its exchange's raw REST payloads into one normalized
    ExchangeObservation (spot, derivative, implied annualized basis, volume).
    Adding an exchange means adding an adapter and registering it; the
    aggregator does not change.

Example:
    class DeribitAdapter(ExchangeAdapter):
        name = "deribit"
        contract_type = "dated"
        confidence_prior = 0.9

        async def fetch_observation(self, symbol):
            # Deribit-specific requests and parsing
            ...

    manager.register(DeribitAdapter(client))
    observation = await manager.get_adapter("deribit").fetch_observation("BTCUSDT")

Basis Math:
    - Dated contracts: (F - S) / S * 365 / days_to_expiry * 100
    - Perpetuals: funding rate per interval * intervals per year * 100
"""

from abc import ABC, abstractmethod
from typing import Dict

from core.schemas import ContractType, ExchangeObservation


HOURS_PER_YEAR = 365 * 24


class ExchangeAdapter(ABC):
    """
    Abstract Base Class for Exchange Adapters

    Class Attributes:
        name: Unique identifier for the exchange (lowercase); also the
              provider name used by the rate-limited gateway
        contract_type: "dated" or "perpetual"
        confidence_prior: Static trust in this exchange's data (0-1]
        capabilities: Features the adapter supports beyond observations

    Abstract Methods (MUST be implemented):
        - fetch_observation: Fetch and normalize one ExchangeObservation

    Optional Methods (can be overridden):
        - initialize: Open HTTP sessions
        - shutdown: Close HTTP sessions

    Notes:
        - fetch_observation raises on any failure; the aggregator records the
          failure reason and keeps going with the remaining exchanges
    """

    # ============================================
    # Class Attributes (must be set by subclasses)
    # ============================================

    name: str
    """Unique exchange identifier (lowercase). Example: "binance", "deribit" """

    contract_type: ContractType = "perpetual"

    confidence_prior: float = 0.5

    capabilities: Dict[str, bool] = {
        "observation": True,
        "klines": False,
    }

    # ============================================
    # Observation
    # ============================================

    @abstractmethod
    async def fetch_observation(self, symbol: str) -> ExchangeObservation:
        """
        Fetch the exchange's current basis observation for a symbol.

        Args:
            symbol: Canonical trading pair in uppercase (e.g., "BTCUSDT")

        Returns:
            ExchangeObservation: Normalized spot/derivative/basis snapshot

        Raises:
            UpstreamError: If the exchange returned an error or malformed payload
            GatewayError: If the rate-limited gateway refused or timed out a call

        Example:
            >>> obs = await adapter.fetch_observation("BTCUSDT")
            >>> print(f"{obs.exchange}: {obs.implied_basis:.2f}%")
        """
        ...

    # ============================================
    # Optional Lifecycle Methods
    # ============================================

    async def initialize(self) -> None:
        """
        Initialize the adapter (open the REST client session).

        Called by ExchangeManager.initialize_all(). Should be idempotent.
        """
        pass

    async def shutdown(self) -> None:
        """
        Close the adapter's REST client session.

        Called by ExchangeManager.shutdown_all(). Should not raise.
        """
        pass

    # ============================================
    # Helper Methods
    # ============================================

    def supports(self, feature: str) -> bool:
        """Check if this adapter supports a specific feature."""
        return self.capabilities.get(feature, False)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name='{self.name}')>"


# ============================================
# Basis Helpers
# ============================================

def dated_basis(spot: float, future: float, days_to_expiry: float) -> float:
    """
    Annualized basis of a dated future, in percent.

    Args:
        spot: Spot/index price
        future: Futures price
        days_to_expiry: Days until expiry (must be > 0)

    Example:
        >>> round(dated_basis(50000, 51000, 73), 2)
        10.0
    """
    if spot <= 0 or days_to_expiry <= 0:
        raise ValueError(f"Invalid basis inputs: spot={spot}, days={days_to_expiry}")
    return (future - spot) / spot * (365.0 / days_to_expiry) * 100.0


def funding_basis(funding_rate: float, interval_hours: float) -> float:
    """
    Annualized basis implied by a perpetual funding rate, in percent.

    Args:
        funding_rate: Funding rate per interval (0.0001 = 0.01%)
        interval_hours: Funding interval length (8 for Binance/Bybit, 1 for Hyperliquid)

    Example:
        >>> round(funding_basis(0.0001, 8), 3)
        10.95
    """
    if interval_hours <= 0:
        raise ValueError(f"Funding interval must be positive: {interval_hours}")
    return funding_rate * (HOURS_PER_YEAR / interval_hours) * 100.0
