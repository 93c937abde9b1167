"""
Bybit Exchange Adapter

Implements ExchangeAdapter for Bybit linear (USDT) perpetuals.

Endpoints Used:
    REST (GET requests to https://api.bybit.com/v5/market):
        - /tickers?category=linear - mark, index, funding rate, 24h turnover

Basis:
    Perpetual; the funding interval comes from the ticker (8h by default).
"""

from typing import Optional

from core.exchange_interface import ExchangeAdapter, funding_basis
from core.schemas import ExchangeObservation
from core.utils.time import current_utc_datetime
from services.rate_limiter import ProviderGateway
from .api_client import BybitAPIClient

__all__ = ["BybitAdapter", "BybitAPIClient"]


class BybitAdapter(ExchangeAdapter):
    """
    Bybit Exchange Adapter

    Attributes:
        name: "bybit"
        contract_type: "perpetual"
        confidence_prior: 0.8
        client: BybitAPIClient
    """

    name = "bybit"
    contract_type = "perpetual"
    confidence_prior = 0.8

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[BybitAPIClient] = None,
        gateway: Optional[ProviderGateway] = None
    ):
        self.client = client or BybitAPIClient(base_url=base_url, gateway=gateway)

    async def initialize(self) -> None:
        await self.client.__aenter__()

    async def shutdown(self) -> None:
        await self.client.__aexit__(None, None, None)

    async def fetch_observation(self, symbol: str) -> ExchangeObservation:
        ticker = await self.client.get_linear_ticker(symbol)

        return ExchangeObservation(
            exchange=self.name,
            symbol=symbol,
            spot_price=ticker["index_price"],
            derivative_price=ticker["mark_price"],
            contract_type=self.contract_type,
            implied_basis=funding_basis(ticker["funding_rate"], ticker["funding_interval_hours"]),
            volume_24h=ticker["turnover_24h"],
            confidence_prior=self.confidence_prior,
            timestamp=current_utc_datetime(),
            instrument=symbol.upper(),
            funding_rate=ticker["funding_rate"],
        )
