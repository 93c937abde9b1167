"""
Bybit REST API Client

This module provides an async HTTP client for the Bybit v5 market API.
It handles:
- HTTP GET requests with retry logic
- Bybit's retCode error envelope
- Parsing of linear perpetual tickers

API Documentation:
    https://bybit-exchange.github.io/docs/v5/market/tickers

Usage:
    async with BybitAPIClient() as client:
        ticker = await client.get_linear_ticker("BTCUSDT")
"""

import aiohttp
import asyncio
import time
from typing import Any, Dict, Optional, Tuple

from core.errors import UpstreamError
from core.logging import get_logger, log_api_request, log_api_response
from services.rate_limiter import ProviderGateway, through_gateway


class BybitAPIClient:
    """
    Async HTTP client for Bybit REST API

    Attributes:
        BASE_URL: Default Bybit v5 market API base URL
        session: aiohttp ClientSession for HTTP requests
        gateway: Rate-limited gateway wrapping each HTTP attempt (optional)

    Notes:
        - Every response is wrapped as {"retCode": 0, "retMsg": "OK", "result": {...}};
          a non-zero retCode is an upstream error and is not retried
        - Uses GET requests with query parameters
    """

    BASE_URL = "https://api.bybit.com/v5/market"
    MAX_ATTEMPTS = 3

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
            self.logger.debug("BybitAPIClient session created")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.debug("BybitAPIClient session closed")

    # ============================================
    # HTTP Request Handler with Retry Logic
    # ============================================

    async def _send(self, url: str, params: Dict[str, Any]) -> Tuple[Optional[int], Any]:
        """One round trip: (status, JSON or text), or (None, reason) if the transport failed."""
        try:
            async with self.session.get(
                url,
                params=params,
                timeout=aiohttp.ClientTimeout(total=10)
            ) as response:
                if response.status == 200:
                    return response.status, await response.json()
                return response.status, await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return None, str(e) or e.__class__.__name__

    async def _get(self, endpoint: str, params: Dict[str, Any] = None) -> Any:
        """
        Make GET request to Bybit API with retry logic.

        Args:
            endpoint: API endpoint (e.g., "/tickers")
            params: Query parameters

        Returns:
            The "result" object of the response envelope

        Raises:
            UpstreamError: On a non-zero retCode, a non-retryable HTTP status,
                           or when all retry attempts fail
            GatewayError: If the gateway refused or timed out an attempt
        """
        if not self.session:
            raise RuntimeError("Client session not initialized. Use 'async with' statement.")

        url = f"{self.base_url}{endpoint}"
        log_api_request("bybit", endpoint, params)
        started = time.monotonic()
        params = params or {}
        last_error = "no attempt made"

        for attempt in range(self.MAX_ATTEMPTS):
            status, body = await through_gateway(self.gateway, "bybit", lambda: self._send(url, params))

            if status == 200:
                log_api_response("bybit", endpoint, status, time.monotonic() - started)

                if body.get("retCode") != 0:
                    raise UpstreamError("bybit", f"API error: {body.get('retMsg', 'Unknown error')}")

                return body.get("result", {})

            if status is not None and status not in (429, 503):
                raise UpstreamError("bybit", f"HTTP {status}: {body}")

            last_error = body if status is None else f"HTTP {status}"

            if attempt < self.MAX_ATTEMPTS - 1:
                wait_time = 2 ** attempt
                self.logger.warning(
                    f"Bybit API request failed (attempt {attempt + 1}), retrying in {wait_time}s: {last_error}"
                )
                await asyncio.sleep(wait_time)

        self.logger.error(f"Bybit API request failed after {self.MAX_ATTEMPTS} attempts: {last_error}")
        raise UpstreamError("bybit", f"Request to {endpoint} failed after {self.MAX_ATTEMPTS} attempts ({last_error})")

    # ============================================
    # Market Data Methods
    # ============================================

    async def get_linear_ticker(self, symbol: str) -> Dict[str, float]:
        """
        Fetch the linear perpetual ticker for a symbol.

        Bybit Endpoint:
            GET /v5/market/tickers?category=linear&symbol=BTCUSDT

        Response Format (result):
            {
              "category": "linear",
              "list": [{
                "symbol": "BTCUSDT",
                "markPrice": "50050.00",
                "indexPrice": "50000.00",
                "fundingRate": "0.0001",
                "fundingIntervalHour": "8",
                "turnover24h": "2500000000.12",
                ...
              }]
            }

        Returns:
            {"mark_price", "index_price", "funding_rate", "funding_interval_hours", "turnover_24h"}
        """
        result = await self._get("/tickers", {"category": "linear", "symbol": symbol.upper()})

        items = result.get("list") or []
        if not items:
            raise UpstreamError("bybit", f"No linear ticker for {symbol}")

        item = items[0]
        try:
            return {
                "mark_price": float(item["markPrice"]),
                "index_price": float(item["indexPrice"]),
                "funding_rate": float(item["fundingRate"]),
                "funding_interval_hours": float(item.get("fundingIntervalHour") or 8),
                "turnover_24h": float(item.get("turnover24h") or 0),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError("bybit", f"Malformed ticker payload for {symbol}: {e}")
