"""
Deribit Exchange Adapter

Implements ExchangeAdapter for Deribit dated (quarterly) futures, the only
dated-contract source in the composite. Its basis needs no normalization.

Endpoints Used:
    REST (GET https://www.deribit.com/api/v2/public):
        - get_instruments - active futures and their expiries
        - ticker - mark/last price, index price, 24h USD volume

Contract Selection:
    The soonest quarterly future with at least MIN_DAYS_TO_EXPIRY days left.
    If no quarterly qualifies, the soonest dated future that does.

Basis:
    (F - S) / S * 365 / days * 100, days rounded up and at least 1
"""

import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.errors import UpstreamError
from core.exchange_interface import ExchangeAdapter, dated_basis
from core.schemas import ExchangeObservation
from core.utils.symbols import base_asset
from core.utils.time import current_utc_datetime, days_until, to_utc_datetime
from services.rate_limiter import ProviderGateway
from .api_client import DeribitAPIClient

__all__ = ["DeribitAdapter", "DeribitAPIClient", "select_contract"]


MIN_DAYS_TO_EXPIRY = 7


def select_contract(
    futures: List[Dict[str, Any]],
    now: Optional[datetime] = None,
    min_days: float = MIN_DAYS_TO_EXPIRY
) -> Dict[str, Any]:
    """
    Pick the contract to quote from a list of dated futures.

    Args:
        futures: Instruments as returned by DeribitAPIClient.get_futures()
        now: Reference time (defaults to now)
        min_days: Minimum days left; contracts closer to expiry are skipped

    Raises:
        UpstreamError: If no future qualifies
    """
    candidates = [
        item for item in futures
        if days_until(to_utc_datetime(item["expiration_timestamp"]), now) >= min_days
    ]
    candidates.sort(key=lambda item: item["expiration_timestamp"])

    for item in candidates:
        if item.get("settlement_period") == "quarter":
            return item
    if candidates:
        return candidates[0]

    raise UpstreamError("deribit", f"No dated future with at least {min_days} days to expiry")


class DeribitAdapter(ExchangeAdapter):
    """
    Deribit Exchange Adapter

    Attributes:
        name: "deribit"
        contract_type: "dated"
        confidence_prior: 0.9 (direct dated-contract basis)
        client: DeribitAPIClient
    """

    name = "deribit"
    contract_type = "dated"
    confidence_prior = 0.9

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[DeribitAPIClient] = None,
        gateway: Optional[ProviderGateway] = None
    ):
        self.client = client or DeribitAPIClient(base_url=base_url, gateway=gateway)

    async def initialize(self) -> None:
        await self.client.__aenter__()

    async def shutdown(self) -> None:
        await self.client.__aexit__(None, None, None)

    async def fetch_observation(self, symbol: str) -> ExchangeObservation:
        currency = base_asset(symbol)
        now = current_utc_datetime()

        contract = select_contract(await self.client.get_futures(currency), now)
        ticker = await self.client.get_ticker(contract["instrument_name"])

        expiry = to_utc_datetime(contract["expiration_timestamp"])
        days = max(1, math.ceil(days_until(expiry, now)))
        future_price = ticker["last_price"] or ticker["mark_price"]
        spot = ticker["index_price"]

        return ExchangeObservation(
            exchange=self.name,
            symbol=symbol,
            spot_price=spot,
            derivative_price=future_price,
            contract_type=self.contract_type,
            days_to_expiry=days,
            implied_basis=dated_basis(spot, future_price, days),
            volume_24h=ticker["volume_usd"],
            confidence_prior=self.confidence_prior,
            timestamp=to_utc_datetime(ticker["timestamp"]) if ticker.get("timestamp") else now,
            instrument=contract["instrument_name"],
        )
