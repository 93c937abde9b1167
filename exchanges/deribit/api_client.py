"""
Deribit REST API Client

This module provides an async HTTP client for the Deribit public API v2.
It handles:
- HTTP GET requests with retry logic
- Deribit's JSON-RPC error envelope
- Listing dated futures and reading their tickers

API Documentation:
    https://docs.deribit.com/#market-data

Rate Limits:
    - Public endpoints allow roughly 500 requests per minute per IP
    - Pacing is done by the ProviderGateway ("deribit" provider)

Usage:
    async with DeribitAPIClient() as client:
        futures = await client.get_futures("BTC")
        ticker = await client.get_ticker(futures[0]["instrument_name"])
"""

import aiohttp
import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

from core.errors import UpstreamError
from core.logging import get_logger, log_api_request, log_api_response
from services.rate_limiter import ProviderGateway, through_gateway


class DeribitAPIClient:
    """
    Async HTTP client for Deribit public REST API

    Attributes:
        BASE_URL: Default Deribit public API base URL
        session: aiohttp ClientSession for HTTP requests
        gateway: Rate-limited gateway wrapping each HTTP attempt (optional)

    Notes:
        - Responses are {"jsonrpc": "2.0", "result": ...} or {"error": {"code", "message"}}
        - Errors come back with HTTP 400 and a JSON body; they are not retried
    """

    BASE_URL = "https://www.deribit.com/api/v2/public"
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
            self.logger.debug("DeribitAPIClient session created")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.debug("DeribitAPIClient session closed")

    # ============================================
    # HTTP Request Handler with Retry Logic
    # ============================================

    async def _send(self, method: str, params: Optional[Dict[str, Any]]) -> Tuple[Optional[int], Any]:
        """
        One HTTP round trip, without retries.

        Returns:
            (status, body) where body is the decoded JSON, or None when the
            body is not JSON. (None, reason) on a transport failure.
        """
        try:
            async with self.session.get(
                f"{self.base_url}/{method}",
                params=params,
                timeout=aiohttp.ClientTimeout(total=10)
            ) as resp:
                try:
                    return resp.status, await resp.json()
                except (aiohttp.ContentTypeError, ValueError):
                    return resp.status, None
        except asyncio.TimeoutError:
            return None, "timeout"
        except aiohttp.ClientError as e:
            return None, str(e) or e.__class__.__name__

    async def _get(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Call a public JSON-RPC method over GET with retry logic.

        Each attempt is its own gateway request.

        Args:
            method: Method name without prefix (e.g., "ticker")
            params: Query parameters

        Returns:
            The "result" member of the response

        Raises:
            UpstreamError: On an error envelope, a non-retryable HTTP status,
                           or when all retries fail
            GatewayError: If the gateway refused or timed out an attempt
        """
        if not self.session:
            raise RuntimeError("Client session not initialized. Use 'async with' statement.")

        log_api_request("deribit", method, params)
        started = time.monotonic()
        last_error = "no attempt made"

        for attempt in range(self.MAX_ATTEMPTS):
            status, data = await through_gateway(self.gateway, "deribit", lambda: self._send(method, params))

            if status is None:
                last_error = data
                self.logger.error(f"Request failed on {method}: {data} (attempt {attempt + 1}/{self.MAX_ATTEMPTS})")
                await asyncio.sleep(1.0 * (attempt + 1))
                continue

            if status in (429, 503):
                delay = self.RETRY_BACKOFF * (attempt + 1)
                last_error = f"HTTP {status}"
                self.logger.warning(
                    f"Rate limited (HTTP {status}) on {method}. "
                    f"Retrying in {delay:.1f}s... (attempt {attempt + 1}/{self.MAX_ATTEMPTS})"
                )
                await asyncio.sleep(delay)
                continue

            if not isinstance(data, dict):
                raise UpstreamError("deribit", f"HTTP {status} on {method}: non-JSON body")

            if "error" in data:
                error = data["error"] or {}
                raise UpstreamError(
                    "deribit",
                    f"{method} error {error.get('code')}: {error.get('message', 'unknown')}"
                )

            if status != 200 or "result" not in data:
                raise UpstreamError("deribit", f"HTTP {status} on {method}: missing result")

            log_api_response("deribit", method, status, time.monotonic() - started)
            return data["result"]

        raise UpstreamError("deribit", f"Failed to call {method} after {self.MAX_ATTEMPTS} attempts ({last_error})")

    # ============================================
    # API Methods
    # ============================================

    async def get_futures(self, currency: str) -> List[Dict[str, Any]]:
        """
        List active dated futures for a currency (perpetual excluded).

        Deribit Endpoint:
            GET /public/get_instruments?currency=BTC&kind=future&expired=false

        Response Format (result):
            [
              {
                "instrument_name": "BTC-27DEC24",
                "expiration_timestamp": 1735286400000,
                "settlement_period": "quarter",
                "is_active": true,
                ...
              },
              {"instrument_name": "BTC-PERPETUAL", "settlement_period": "perpetual", ...}
            ]

        Returns:
            Instruments sorted by expiration_timestamp, soonest first
        """
        result = await self._get("get_instruments", {
            "currency": currency.upper(),
            "kind": "future",
            "expired": "false",
        })

        if not isinstance(result, list):
            raise UpstreamError("deribit", f"Malformed instruments payload for {currency}")

        futures = [
            item for item in result
            if item.get("settlement_period") != "perpetual"
            and item.get("is_active", True)
            and item.get("expiration_timestamp")
        ]
        futures.sort(key=lambda item: item["expiration_timestamp"])
        return futures

    async def get_ticker(self, instrument_name: str) -> Dict[str, float]:
        """
        Fetch a futures ticker.

        Deribit Endpoint:
            GET /public/ticker?instrument_name=BTC-27DEC24

        Returns:
            {"mark_price", "last_price", "index_price", "volume_usd", "timestamp"}
        """
        result = await self._get("ticker", {"instrument_name": instrument_name})

        try:
            last_price = result.get("last_price")
            return {
                "mark_price": float(result["mark_price"]),
                "last_price": float(last_price) if last_price is not None else None,
                "index_price": float(result["index_price"]),
                "volume_usd": float((result.get("stats") or {}).get("volume_usd") or 0),
                "timestamp": result.get("timestamp"),
            }
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise UpstreamError("deribit", f"Malformed ticker payload for {instrument_name}: {e}")
