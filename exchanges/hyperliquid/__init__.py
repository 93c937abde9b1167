"""
Hyperliquid Exchange Adapter

Implements ExchangeAdapter for Hyperliquid perpetuals.

Endpoints Used:
    REST (POST https://api.hyperliquid.xyz/info):
        - {"type": "metaAndAssetCtxs"} - mark, oracle, hourly funding, day volume

Limitations:
    - Uses coin symbols (BTC, ETH) instead of pairs; BTCUSDT is mapped to BTC
    - Funding settles hourly, so the implied basis annualizes over 8760 intervals
"""

from typing import Optional

from core.exchange_interface import ExchangeAdapter, funding_basis
from core.schemas import ExchangeObservation
from core.utils.symbols import base_asset
from core.utils.time import current_utc_datetime
from services.rate_limiter import ProviderGateway
from .api_client import HyperliquidAPIClient

__all__ = ["HyperliquidAdapter", "HyperliquidAPIClient"]


class HyperliquidAdapter(ExchangeAdapter):
    """
    Hyperliquid Exchange Adapter

    Attributes:
        name: "hyperliquid"
        contract_type: "perpetual"
        confidence_prior: 0.7 (thinner on-chain venue)
        client: HyperliquidAPIClient
    """

    name = "hyperliquid"
    contract_type = "perpetual"
    confidence_prior = 0.7

    FUNDING_INTERVAL_HOURS = 1

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[HyperliquidAPIClient] = None,
        gateway: Optional[ProviderGateway] = None
    ):
        self.client = client or HyperliquidAPIClient(base_url=base_url, gateway=gateway)

    async def initialize(self) -> None:
        await self.client.__aenter__()

    async def shutdown(self) -> None:
        await self.client.__aexit__(None, None, None)

    async def fetch_observation(self, symbol: str) -> ExchangeObservation:
        coin = base_asset(symbol)
        ctx = await self.client.get_asset_context(coin)

        return ExchangeObservation(
            exchange=self.name,
            symbol=symbol,
            spot_price=ctx["oracle_price"],
            derivative_price=ctx["mark_price"],
            contract_type=self.contract_type,
            implied_basis=funding_basis(ctx["funding_rate"], self.FUNDING_INTERVAL_HOURS),
            volume_24h=ctx["day_notional_volume"],
            confidence_prior=self.confidence_prior,
            timestamp=current_utc_datetime(),
            instrument=coin,
            funding_rate=ctx["funding_rate"],
        )
