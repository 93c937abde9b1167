"""
Unit Tests for Exchange Adapters and the Exchange Manager

These tests verify that each adapter:
- Turns its client's normalized payload into an ExchangeObservation
- Annualizes funding or dated basis correctly
And that the Deribit contract selection and ExchangeManager registry behave.

Client methods are monkeypatched, or the client session is replaced by an
in-memory one that counts requests in flight; no network is used.

Run with:
    pytest tests/unit/test_adapters.py -v
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.config import Settings
from core.errors import RequestTimeout, UpstreamError
from core.exchange_interface import dated_basis, funding_basis
from core.exchange_manager import ExchangeManager
from core.schemas import ProviderLimiterConfig
from exchanges.binance import BinanceAdapter
from exchanges.bybit import BybitAdapter
from exchanges.deribit import DeribitAdapter, select_contract
from exchanges.hyperliquid import HyperliquidAdapter
from services.rate_limiter import ProviderGateway


def ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


# ============================================
# Basis Helpers
# ============================================

class TestBasisHelpers:
    """dated_basis / funding_basis"""

    def test_dated_basis(self):
        assert dated_basis(50000, 51000, 73) == pytest.approx(10.0)

    def test_funding_basis_eight_hour(self):
        assert funding_basis(0.0001, 8) == pytest.approx(10.95)

    def test_funding_basis_hourly(self):
        assert funding_basis(0.0000125, 1) == pytest.approx(10.95)

    def test_invalid_inputs(self):
        with pytest.raises(ValueError):
            dated_basis(50000, 51000, 0)
        with pytest.raises(ValueError):
            funding_basis(0.0001, 0)


# ============================================
# Perpetual Adapters
# ============================================

class TestPerpetualAdapters:
    """Binance, Bybit and Hyperliquid observations"""

    @pytest.mark.asyncio
    async def test_binance_observation(self, monkeypatch):
        adapter = BinanceAdapter()

        async def premium(symbol):
            return {"mark_price": 50050.0, "index_price": 50000.0, "funding_rate": 0.0001, "time": 1704110400000}

        async def ticker(symbol):
            return {"last_price": 50040.0, "quote_volume": 9e9}

        monkeypatch.setattr(adapter.client, "get_premium_index", premium)
        monkeypatch.setattr(adapter.client, "get_ticker_24h", ticker)

        obs = await adapter.fetch_observation("BTCUSDT")

        assert obs.exchange == "binance"
        assert obs.contract_type == "perpetual"
        assert obs.spot_price == 50000.0
        assert obs.derivative_price == 50050.0
        assert obs.implied_basis == pytest.approx(10.95)
        assert obs.volume_24h == 9e9
        assert obs.confidence_prior == 0.85
        assert obs.days_to_expiry is None
        assert obs.timestamp == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_binance_history_delegates_to_klines(self, monkeypatch):
        adapter = BinanceAdapter()
        calls = []

        async def klines(symbol, interval, limit):
            calls.append((symbol, interval, limit))
            return []

        monkeypatch.setattr(adapter.client, "get_klines", klines)

        assert await adapter.fetch_history("BTCUSDT", "1h", 250) == []
        assert calls == [("BTCUSDT", "1h", 250)]
        assert adapter.supports("klines") is True

    @pytest.mark.asyncio
    async def test_bybit_uses_reported_funding_interval(self, monkeypatch):
        adapter = BybitAdapter()

        async def ticker(symbol):
            return {
                "mark_price": 50050.0,
                "index_price": 50000.0,
                "funding_rate": 0.0001,
                "funding_interval_hours": 4.0,
                "turnover_24h": 2.5e9,
            }

        monkeypatch.setattr(adapter.client, "get_linear_ticker", ticker)

        obs = await adapter.fetch_observation("BTCUSDT")

        assert obs.exchange == "bybit"
        assert obs.implied_basis == pytest.approx(21.9)
        assert obs.volume_24h == 2.5e9
        assert obs.confidence_prior == 0.8
        assert adapter.supports("klines") is False

    @pytest.mark.asyncio
    async def test_hyperliquid_maps_pair_to_coin(self, monkeypatch):
        adapter = HyperliquidAdapter()
        requested = []

        async def context(coin):
            requested.append(coin)
            return {"mark_price": 3505.0, "oracle_price": 3500.0, "funding_rate": 0.0000125, "day_notional_volume": 4e8}

        monkeypatch.setattr(adapter.client, "get_asset_context", context)

        obs = await adapter.fetch_observation("ETHUSDT")

        assert requested == ["ETH"]
        assert obs.instrument == "ETH"
        assert obs.implied_basis == pytest.approx(10.95)
        assert obs.confidence_prior == 0.7

    @pytest.mark.asyncio
    async def test_client_errors_propagate(self, monkeypatch):
        adapter = BybitAdapter()

        async def ticker(symbol):
            raise UpstreamError("bybit", "No linear ticker for BTCUSDT")

        monkeypatch.setattr(adapter.client, "get_linear_ticker", ticker)

        with pytest.raises(UpstreamError):
            await adapter.fetch_observation("BTCUSDT")


# ============================================
# Deribit
# ============================================

class TestDeribit:
    """Contract selection and dated basis"""

    NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)

    def futures(self):
        return [
            {"instrument_name": "BTC-8MAR24", "expiration_timestamp": ms(self.NOW + timedelta(days=7, hours=8)), "settlement_period": "week"},
            {"instrument_name": "BTC-29MAR24", "expiration_timestamp": ms(self.NOW + timedelta(days=28, hours=8)), "settlement_period": "quarter"},
            {"instrument_name": "BTC-28JUN24", "expiration_timestamp": ms(self.NOW + timedelta(days=119, hours=8)), "settlement_period": "quarter"},
        ]

    def test_prefers_soonest_quarterly(self):
        assert select_contract(self.futures(), self.NOW)["instrument_name"] == "BTC-29MAR24"

    def test_skips_contracts_too_close_to_expiry(self):
        chosen = select_contract(self.futures(), self.NOW + timedelta(days=25))
        assert chosen["instrument_name"] == "BTC-28JUN24"

    def test_falls_back_to_non_quarterly(self):
        weekly_only = self.futures()[:1]
        assert select_contract(weekly_only, self.NOW)["instrument_name"] == "BTC-8MAR24"

    def test_nothing_qualifies(self):
        with pytest.raises(UpstreamError, match="No dated future"):
            select_contract(self.futures()[:1], self.NOW + timedelta(days=5))

    @pytest.mark.asyncio
    async def test_observation_has_dated_basis(self, monkeypatch):
        adapter = DeribitAdapter()
        expiry = datetime.now(timezone.utc) + timedelta(days=90, hours=1)
        requested = {}

        async def get_futures(currency):
            requested["currency"] = currency
            return [{"instrument_name": "BTC-QTR", "expiration_timestamp": ms(expiry), "settlement_period": "quarter"}]

        async def get_ticker(instrument_name):
            requested["instrument"] = instrument_name
            return {
                "mark_price": 50990.0,
                "last_price": 51000.0,
                "index_price": 50000.0,
                "volume_usd": 3e8,
                "timestamp": None,
            }

        monkeypatch.setattr(adapter.client, "get_futures", get_futures)
        monkeypatch.setattr(adapter.client, "get_ticker", get_ticker)

        obs = await adapter.fetch_observation("BTCUSDT")

        assert requested == {"currency": "BTC", "instrument": "BTC-QTR"}
        assert obs.contract_type == "dated"
        assert obs.days_to_expiry == 91
        assert obs.derivative_price == 51000.0
        assert obs.implied_basis == pytest.approx(dated_basis(50000.0, 51000.0, 91))
        assert obs.confidence_prior == 0.9

    @pytest.mark.asyncio
    async def test_mark_price_used_without_trades(self, monkeypatch):
        adapter = DeribitAdapter()
        expiry = datetime.now(timezone.utc) + timedelta(days=30, hours=1)

        async def get_futures(currency):
            return [{"instrument_name": "BTC-QTR", "expiration_timestamp": ms(expiry), "settlement_period": "quarter"}]

        async def get_ticker(instrument_name):
            return {"mark_price": 50500.0, "last_price": None, "index_price": 50000.0, "volume_usd": 0.0, "timestamp": None}

        monkeypatch.setattr(adapter.client, "get_futures", get_futures)
        monkeypatch.setattr(adapter.client, "get_ticker", get_ticker)

        obs = await adapter.fetch_observation("BTCUSDT")

        assert obs.derivative_price == 50500.0
        assert obs.volume_24h == 0.0


# ============================================
# Exchange Manager
# ============================================

class TestExchangeManager:
    """Registry and lifecycle"""

    def test_default_adapters(self):
        manager = ExchangeManager.with_default_adapters(Settings(_env_file=None))
        assert manager.list_exchanges() == ["binance", "bybit", "hyperliquid", "deribit"]
        assert len(manager) == 4

    def test_default_adapters_share_the_gateway(self):
        config = Settings(_env_file=None)
        gateway = ProviderGateway(config.limiter_configs())

        manager = ExchangeManager.with_default_adapters(config, gateway)

        assert all(a.client.gateway is gateway for a in manager.all_adapters())

    def test_duplicate_registration_rejected(self):
        manager = ExchangeManager([BybitAdapter()])
        with pytest.raises(ValueError, match="already registered"):
            manager.register(BybitAdapter())

    def test_lookup_is_case_insensitive(self):
        adapter = DeribitAdapter()
        manager = ExchangeManager([adapter])

        assert manager.get_adapter("Deribit") is adapter
        assert manager.has_exchange("DERIBIT")
        with pytest.raises(ValueError, match="not supported"):
            manager.get_adapter("kraken")

    @pytest.mark.asyncio
    async def test_initialize_and_shutdown_open_and_close_sessions(self):
        manager = ExchangeManager([BybitAdapter(), DeribitAdapter()])

        await manager.initialize_all()
        assert all(a.client.session is not None for a in manager.all_adapters())

        await manager.shutdown_all()
        assert all(a.client.session is None for a in manager.all_adapters())


# ============================================
# Gateway on the Wire
# ============================================

PREMIUM = {"markPrice": "50050.0", "indexPrice": "50000.0", "lastFundingRate": "0.0001", "time": 1704110400000}
TICKER = {"lastPrice": "50010.0", "quoteVolume": "1000000.0"}


class CountingResponse:
    def __init__(self, session, status, payload):
        self.session = session
        self.status = status
        self.payload = payload

    async def __aenter__(self):
        self.session.calls += 1
        self.session.in_flight += 1
        self.session.peak = max(self.session.peak, self.session.in_flight)
        await asyncio.sleep(0.01)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.session.in_flight -= 1

    async def json(self):
        return self.payload

    async def text(self):
        return "busy"


class CountingSession:
    """Stands in for aiohttp.ClientSession; statuses are served in order, then 200"""

    closed = False

    def __init__(self, statuses=()):
        self.statuses = list(statuses)
        self.calls = 0
        self.in_flight = 0
        self.peak = 0

    def get(self, url, params=None, timeout=None):
        status = self.statuses.pop(0) if self.statuses else 200
        payload = PREMIUM if url.endswith("premiumIndex") else TICKER
        return CountingResponse(self, status, payload)


def binance_on_gateway(reservoir=10, max_concurrent=1, timeout=5.0, statuses=()):
    gateway = ProviderGateway({
        "binance": ProviderLimiterConfig(
            provider="binance", reservoir=reservoir, refresh_interval=3600, max_concurrent=max_concurrent
        )
    }, default_timeout=timeout)
    adapter = BinanceAdapter(gateway=gateway)
    adapter.client.session = CountingSession(statuses)
    adapter.client.RETRY_BACKOFF = 0
    return adapter, gateway.limiter("binance")


class TestGatewayOnTheWire:
    """Every HTTP call an adapter makes goes through the gateway on its own"""

    @pytest.mark.asyncio
    async def test_concurrent_calls_respect_max_concurrent(self):
        adapter, limiter = binance_on_gateway(max_concurrent=1)

        observation = await adapter.fetch_observation("BTCUSDT")

        session = adapter.client.session
        assert observation.volume_24h == 1000000.0
        assert session.calls == 2
        assert session.peak == 1
        assert limiter.tokens == 8
        assert limiter.completed == 2

    @pytest.mark.asyncio
    async def test_each_retry_takes_a_token(self):
        adapter, limiter = binance_on_gateway(statuses=[429])

        await adapter.fetch_observation("BTCUSDT")

        assert adapter.client.session.calls == 3
        assert limiter.tokens == 7

    @pytest.mark.asyncio
    async def test_quota_counts_http_calls_not_observations(self):
        adapter, limiter = binance_on_gateway(reservoir=1, max_concurrent=2, timeout=0.1)

        with pytest.raises(RequestTimeout):
            await adapter.fetch_observation("BTCUSDT")

        assert adapter.client.session.calls == 1
        assert limiter.tokens == 0
