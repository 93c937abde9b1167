"""
Unit Tests for Binance API Client

These tests verify that the BinanceAPIClient:
- Correctly formats API requests
- Normalizes premium index, 24h ticker and kline payloads
- Raises UpstreamError on malformed payloads
- Retries rate-limit responses and gives up after MAX_ATTEMPTS

Run with:
    pytest tests/unit/test_binance_api_client.py -v
"""

import pytest
import pytest_asyncio
from datetime import datetime, timezone

from core.errors import UpstreamError
from core.schemas import PriceSample
from exchanges.binance.api_client import BinanceAPIClient


# ============================================
# Fixtures
# ============================================

@pytest_asyncio.fixture
async def api_client():
    """Create a BinanceAPIClient instance for testing"""
    async with BinanceAPIClient() as client:
        client.RETRY_BACKOFF = 0
        yield client


class MockResponse:
    def __init__(self, status, json_data=None):
        self.status = status
        self._json_data = json_data

    async def json(self):
        return self._json_data

    async def text(self):
        return "error body"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass


# ============================================
# Tests for Premium Index & Ticker
# ============================================

class TestGetPremiumIndex:
    """Tests for get_premium_index method"""

    @pytest.mark.asyncio
    async def test_returns_normalized_fields(self, api_client, monkeypatch):
        captured = {}

        async def mock_get(path, params=None):
            captured["path"] = path
            captured["params"] = params
            return {
                "symbol": "BTCUSDT",
                "markPrice": "50050.00",
                "indexPrice": "50000.00",
                "lastFundingRate": "0.00010000",
                "time": 1704110400000,
            }

        monkeypatch.setattr(api_client, "_get", mock_get)

        result = await api_client.get_premium_index("btcusdt")

        assert captured["path"] == "/fapi/v1/premiumIndex"
        assert captured["params"] == {"symbol": "BTCUSDT"}
        assert result == {
            "mark_price": 50050.0,
            "index_price": 50000.0,
            "funding_rate": 0.0001,
            "time": 1704110400000,
        }

    @pytest.mark.asyncio
    async def test_missing_field_raises_upstream_error(self, api_client, monkeypatch):
        async def mock_get(path, params=None):
            return {"symbol": "BTCUSDT", "markPrice": "50050.00"}

        monkeypatch.setattr(api_client, "_get", mock_get)

        with pytest.raises(UpstreamError, match="Malformed premiumIndex"):
            await api_client.get_premium_index("BTCUSDT")


class TestGetTicker24h:
    """Tests for get_ticker_24h method"""

    @pytest.mark.asyncio
    async def test_returns_quote_volume(self, api_client, monkeypatch):
        async def mock_get(path, params=None):
            assert path == "/fapi/v1/ticker/24hr"
            return {"symbol": "BTCUSDT", "lastPrice": "50010.5", "quoteVolume": "12500000000.25"}

        monkeypatch.setattr(api_client, "_get", mock_get)

        result = await api_client.get_ticker_24h("BTCUSDT")

        assert result == {"last_price": 50010.5, "quote_volume": 12500000000.25}

    @pytest.mark.asyncio
    async def test_non_numeric_raises_upstream_error(self, api_client, monkeypatch):
        async def mock_get(path, params=None):
            return {"lastPrice": "n/a", "quoteVolume": "1"}

        monkeypatch.setattr(api_client, "_get", mock_get)

        with pytest.raises(UpstreamError) as exc_info:
            await api_client.get_ticker_24h("BTCUSDT")
        assert exc_info.value.provider == "binance"


# ============================================
# Tests for Klines
# ============================================

class TestGetKlines:
    """Tests for get_klines method"""

    @pytest.mark.asyncio
    async def test_returns_close_price_samples(self, api_client, monkeypatch):
        mock_response = [
            [
                1609459200000,  # Open time
                "29000.00",     # Open
                "29500.00",     # High
                "28500.00",     # Low
                "29200.00",     # Close
                "1000.5",       # Volume
                1609462799999,  # Close time
                "29150000.0",   # Quote volume
                1523,           # Number of trades
                "500.25",       # Taker buy base
                "14575000.0",   # Taker buy quote
                "0"             # Ignore
            ]
        ]

        async def mock_get(path, params=None):
            return mock_response

        monkeypatch.setattr(api_client, "_get", mock_get)

        result = await api_client.get_klines("BTCUSDT", "1h", limit=1)

        assert len(result) == 1
        assert isinstance(result[0], PriceSample)
        assert result[0].symbol == "BTCUSDT"
        assert result[0].price == 29200.0
        assert result[0].timestamp.tzinfo == timezone.utc
        assert result[0].timestamp.replace(microsecond=0) == datetime(2021, 1, 1, 0, 59, 59, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_caps_limit_at_1500(self, api_client, monkeypatch):
        captured_params = {}

        async def mock_get(path, params=None):
            captured_params.update(params)
            return []

        monkeypatch.setattr(api_client, "_get", mock_get)

        await api_client.get_klines("ethusdt", "1m", limit=5000)

        assert captured_params["limit"] == 1500
        assert captured_params["symbol"] == "ETHUSDT"
        assert captured_params["interval"] == "1m"

    @pytest.mark.asyncio
    async def test_short_row_raises_upstream_error(self, api_client, monkeypatch):
        async def mock_get(path, params=None):
            return [[1609459200000, "29000.00"]]

        monkeypatch.setattr(api_client, "_get", mock_get)

        with pytest.raises(UpstreamError, match="Malformed kline"):
            await api_client.get_klines("BTCUSDT")


# ============================================
# Tests for Context Manager
# ============================================

class TestContextManager:
    """Tests for async context manager functionality"""

    @pytest.mark.asyncio
    async def test_context_manager_creates_and_closes_session(self):
        client = BinanceAPIClient()
        assert client.session is None

        async with client as c:
            assert c.session is not None

        assert client.session is None

    @pytest.mark.asyncio
    async def test_get_raises_if_session_not_opened(self):
        client = BinanceAPIClient()

        with pytest.raises(RuntimeError, match="not initialized"):
            await client._get("/test")


# ============================================
# Tests for Error Handling
# ============================================

class TestErrorHandling:
    """Tests for error handling and retry logic"""

    @pytest.mark.asyncio
    async def test_get_retries_on_rate_limit(self, api_client):
        call_count = 0

        def mock_get(url, params=None, headers=None, timeout=None):
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                return MockResponse(429)
            return MockResponse(200, {"success": True})

        api_client.session.get = mock_get

        result = await api_client._get("/test")

        assert call_count == 3
        assert result == {"success": True}

    @pytest.mark.asyncio
    async def test_get_fails_after_max_retries(self, api_client):
        def mock_get(url, params=None, headers=None, timeout=None):
            return MockResponse(429)

        api_client.session.get = mock_get

        with pytest.raises(UpstreamError, match="Failed to fetch"):
            await api_client._get("/test")

    @pytest.mark.asyncio
    async def test_non_retryable_status_fails_immediately(self, api_client):
        call_count = 0

        def mock_get(url, params=None, headers=None, timeout=None):
            nonlocal call_count
            call_count += 1
            return MockResponse(400)

        api_client.session.get = mock_get

        with pytest.raises(UpstreamError, match="HTTP 400"):
            await api_client._get("/test")
        assert call_count == 1
