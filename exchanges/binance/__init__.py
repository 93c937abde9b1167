"""
Binance Exchange Adapter

Implements ExchangeAdapter for Binance Futures (USD-M perpetuals).

Endpoints Used:
    REST:
        - GET /fapi/v1/premiumIndex - Mark price, index price, last funding rate
        - GET /fapi/v1/ticker/24hr - 24h quote volume
        - GET /fapi/v1/klines - History backfill for the Price History Store

    WebSocket:
        - wss://fstream.binance.com/ws - {symbol}@miniTicker price feed

Basis:
    Perpetual, funding every 8 hours: implied basis = rate * 1095 * 100
"""

import asyncio
from typing import List, Optional

from core.exchange_interface import ExchangeAdapter, funding_basis
from core.schemas import ExchangeObservation, PriceSample
from core.utils.time import current_utc_datetime, to_utc_datetime
from services.rate_limiter import ProviderGateway
from .api_client import BinanceAPIClient
from .ws_client import BinanceTickerStream, parse_mini_ticker

__all__ = ["BinanceAdapter", "BinanceAPIClient", "BinanceTickerStream", "parse_mini_ticker"]


class BinanceAdapter(ExchangeAdapter):
    """
    Binance Futures Exchange Adapter

    Attributes:
        name: "binance"
        contract_type: "perpetual"
        confidence_prior: 0.85 (deepest perpetual book)
        client: BinanceAPIClient (session opened in initialize())

    Example:
        >>> adapter = BinanceAdapter()
        >>> await adapter.initialize()
        >>> obs = await adapter.fetch_observation("BTCUSDT")
        >>> samples = await adapter.fetch_history("BTCUSDT", "1h", 250)
        >>> await adapter.shutdown()
    """

    name = "binance"
    contract_type = "perpetual"
    confidence_prior = 0.85
    capabilities = {"observation": True, "klines": True}

    FUNDING_INTERVAL_HOURS = 8

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[BinanceAPIClient] = None,
        gateway: Optional[ProviderGateway] = None
    ):
        self.client = client or BinanceAPIClient(base_url=base_url, gateway=gateway)

    async def initialize(self) -> None:
        await self.client.__aenter__()

    async def shutdown(self) -> None:
        await self.client.__aexit__(None, None, None)

    async def fetch_observation(self, symbol: str) -> ExchangeObservation:
        """
        Combine premium index and 24h ticker into an observation.

        Spot is the index price; derivative is the mark price.
        """
        premium, ticker = await asyncio.gather(
            self.client.get_premium_index(symbol),
            self.client.get_ticker_24h(symbol),
        )

        timestamp = to_utc_datetime(premium["time"]) if premium.get("time") else current_utc_datetime()

        return ExchangeObservation(
            exchange=self.name,
            symbol=symbol,
            spot_price=premium["index_price"],
            derivative_price=premium["mark_price"],
            contract_type=self.contract_type,
            implied_basis=funding_basis(premium["funding_rate"], self.FUNDING_INTERVAL_HOURS),
            volume_24h=ticker["quote_volume"],
            confidence_prior=self.confidence_prior,
            timestamp=timestamp,
            instrument=symbol.upper(),
            funding_rate=premium["funding_rate"],
        )

    async def fetch_history(self, symbol: str, interval: str, limit: int) -> List[PriceSample]:
        """Closing prices for history backfill, oldest first."""
        return await self.client.get_klines(symbol, interval, limit)
