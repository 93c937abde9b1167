"""
Binance REST API Client

This module provides an async HTTP client for the Binance Futures (USD-M) REST API.
It handles:
- HTTP requests with retry logic
- Rate limit responses (429, 418, 503) with backoff
- Error handling and logging
- Parsing of the premium index, 24h ticker and kline payloads

API Documentation:
    https://binance-docs.github.io/apidocs/futures/en/

Rate Limits:
    - Weight-based system, 2400 weight per minute
    - Every HTTP attempt goes through the ProviderGateway ("binance" provider)
      when one is given; retries take a token each

Usage:
    async with BinanceAPIClient() as client:
        premium = await client.get_premium_index("BTCUSDT")
        samples = await client.get_klines("BTCUSDT", "1h", limit=250)
"""

import aiohttp
import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

from core.errors import UpstreamError
from core.logging import get_logger, log_api_request, log_api_response
from core.schemas import PriceSample
from core.utils.time import to_utc_datetime
from services.rate_limiter import ProviderGateway, through_gateway


class BinanceAPIClient:
    """
    Async HTTP client for Binance Futures REST API

    Attributes:
        BASE_URL: Default Binance Futures API base URL
        base_url: Base URL in use (overridable for testnets)
        session: aiohttp ClientSession for HTTP requests
        gateway: Rate-limited gateway wrapping each HTTP attempt (optional)

    Example:
        >>> async with BinanceAPIClient() as client:
        ...     premium = await client.get_premium_index("BTCUSDT")
        ...     print(premium["mark_price"], premium["funding_rate"])

    Notes:
        - Uses context manager for automatic session cleanup
        - No API key needed; all endpoints used are public
    """

    BASE_URL = "https://fapi.binance.com"
    MAX_ATTEMPTS = 3
    RETRY_BACKOFF = 1.5

    def __init__(self, base_url: Optional[str] = None, gateway: Optional[ProviderGateway] = None):
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.logger = get_logger(__name__)
        self.session: Optional[aiohttp.ClientSession] = None
        self.gateway = gateway

    # ============================================
    # Context Manager for Session Management
    # ============================================

    async def __aenter__(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self.logger.debug("BinanceAPIClient session created")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.debug("BinanceAPIClient session closed")

    # ============================================
    # HTTP Request Handler with Retry Logic
    # ============================================

    async def _send(self, path: str, params: Optional[Dict[str, Any]]) -> Tuple[Optional[int], Any]:
        """
        One HTTP round trip, without retries.

        Returns:
            (status, body): JSON body on 200, text otherwise.
                            (None, reason) on a transport failure.
        """
        try:
            async with self.session.get(
                f"{self.base_url}{path}",
                params=params,
                timeout=aiohttp.ClientTimeout(total=10)
            ) as resp:
                if resp.status == 200:
                    return resp.status, await resp.json()
                return resp.status, await resp.text()
        except asyncio.TimeoutError:
            return None, "timeout"
        except aiohttp.ClientError as e:
            return None, str(e) or e.__class__.__name__

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make GET request to Binance API with retry logic.

        Every attempt is a separate gateway request, so each one takes a
        token and a concurrency slot, and the backoff sleep holds neither.

        Args:
            path: API endpoint path (e.g., "/fapi/v1/klines")
            params: Optional query parameters

        Returns:
            JSON response from API

        Raises:
            RuntimeError: If the session was never opened
            UpstreamError: If the request fails after all retries or with a
                           non-retryable HTTP status
            GatewayError: If the gateway refused or timed out an attempt

        Rate Limit Handling:
            - 429: Too many requests
            - 418: IP banned (temporary)
            - 503: Service unavailable

            Retry delay: 1.5s * (attempt + 1)
        """
        if not self.session:
            raise RuntimeError("Client session not initialized. Use 'async with' statement.")

        log_api_request("binance", path, params)
        started = time.monotonic()
        last_error = "no attempt made"

        for attempt in range(self.MAX_ATTEMPTS):
            status, body = await through_gateway(self.gateway, "binance", lambda: self._send(path, params))

            if status == 200:
                log_api_response("binance", path, status, time.monotonic() - started)
                return body

            if status is None:
                last_error = body
                self.logger.error(f"Request failed on {path}: {body} (attempt {attempt + 1}/{self.MAX_ATTEMPTS})")
                await asyncio.sleep(1.0 * (attempt + 1))
                continue

            if status in (429, 418, 503):
                delay = self.RETRY_BACKOFF * (attempt + 1)
                last_error = f"HTTP {status}"
                self.logger.warning(
                    f"Rate limited (HTTP {status}) on {path}. "
                    f"Retrying in {delay:.1f}s... (attempt {attempt + 1}/{self.MAX_ATTEMPTS})"
                )
                await asyncio.sleep(delay)
                continue

            self.logger.error(f"HTTP {status} on {path}: {body}")
            raise UpstreamError("binance", f"HTTP {status} on {path}")

        raise UpstreamError("binance", f"Failed to fetch {path} after {self.MAX_ATTEMPTS} attempts ({last_error})")

    # ============================================
    # API Methods
    # ============================================

    async def get_premium_index(self, symbol: str) -> Dict[str, float]:
        """
        Fetch mark price, index price and latest funding rate.

        Binance Endpoint:
            GET /fapi/v1/premiumIndex

        Response Format:
            {
              "symbol": "BTCUSDT",
              "markPrice": "50050.00",
              "indexPrice": "50000.00",
              "lastFundingRate": "0.00010000",
              "nextFundingTime": 1597392000000,
              "time": 1597370495002
            }

        Returns:
            {"mark_price", "index_price", "funding_rate", "time"}

        Raises:
            UpstreamError: If the payload is missing fields
        """
        data = await self._get("/fapi/v1/premiumIndex", {"symbol": symbol.upper()})

        try:
            return {
                "mark_price": float(data["markPrice"]),
                "index_price": float(data["indexPrice"]),
                "funding_rate": float(data["lastFundingRate"]),
                "time": data.get("time"),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError("binance", f"Malformed premiumIndex payload for {symbol}: {e}")

    async def get_ticker_24h(self, symbol: str) -> Dict[str, float]:
        """
        Fetch 24h rolling ticker statistics.

        Binance Endpoint:
            GET /fapi/v1/ticker/24hr

        Returns:
            {"last_price", "quote_volume"} where quote_volume is USDT notional
        """
        data = await self._get("/fapi/v1/ticker/24hr", {"symbol": symbol.upper()})

        try:
            return {
                "last_price": float(data["lastPrice"]),
                "quote_volume": float(data["quoteVolume"]),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError("binance", f"Malformed ticker payload for {symbol}: {e}")

    async def get_klines(self, symbol: str, interval: str = "1h", limit: int = 250) -> List[PriceSample]:
        """
        Fetch historical klines as closing-price samples.

        Args:
            symbol: Trading pair (e.g., "BTCUSDT")
            interval: Kline interval (e.g., "1m", "1h")
            limit: Number of klines (max 1500)

        Returns:
            List of PriceSample (close price at close time), oldest first

        Binance Endpoint:
            GET /fapi/v1/klines

        Response Format:
            [
              [
                1499040000000,      // Open time
                "0.01634000",       // Open
                "0.80000000",       // High
                "0.01575800",       // Low
                "0.01577100",       // Close
                "148976.11427815",  // Volume
                1499644799999,      // Close time
                ...
              ]
            ]
        """
        params = {
            "symbol": symbol.upper(),
            "interval": interval,
            "limit": min(limit, 1500)
        }

        self.logger.info(f"Fetching klines: {symbol} {interval} (limit={params['limit']})")
        data = await self._get("/fapi/v1/klines", params)

        try:
            samples = [
                PriceSample(
                    symbol=symbol,
                    price=float(item[4]),
                    timestamp=to_utc_datetime(item[6])
                )
                for item in data
            ]
        except (IndexError, TypeError, ValueError) as e:
            raise UpstreamError("binance", f"Malformed kline payload for {symbol}: {e}")

        self.logger.info(f"Fetched {len(samples)} klines for {symbol}")
        return samples
