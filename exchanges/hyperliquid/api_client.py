"""
Hyperliquid REST API Client

This module provides an async HTTP client for the Hyperliquid info endpoint.
It handles:
- HTTP POST requests with retry logic
- Rate limit handling
- Parsing of per-asset perpetual contexts

API Documentation:
    https://hyperliquid.gitbook.io/hyperliquid-docs/for-developers/api/info-endpoint/perpetuals

Usage:
    async with HyperliquidAPIClient() as client:
        ctx = await client.get_asset_context("BTC")
"""

import aiohttp
import asyncio
import time
from typing import Any, Dict, Optional, Tuple

from core.errors import UpstreamError
from core.logging import get_logger, log_api_request, log_api_response
from services.rate_limiter import ProviderGateway, through_gateway


class HyperliquidAPIClient:
    """
    Async HTTP client for Hyperliquid REST API

    Attributes:
        BASE_URL: Hyperliquid info endpoint
        session: aiohttp ClientSession for HTTP requests
        gateway: Rate-limited gateway wrapping each HTTP attempt (optional)

    Notes:
        - All requests are POSTs with a {"type": ...} JSON payload
        - Markets are addressed by coin ("BTC"), not by pair
    """

    BASE_URL = "https://api.hyperliquid.xyz/info"
    MAX_ATTEMPTS = 3
    RETRY_BACKOFF = 1.5

    def __init__(self, base_url: Optional[str] = None, gateway: Optional[ProviderGateway] = None):
        self.base_url = base_url or self.BASE_URL
        self.logger = get_logger(__name__)
        self.session: Optional[aiohttp.ClientSession] = None
        self.gateway = gateway

    # ============================================
    # Context Manager for Session Management
    # ============================================

    async def __aenter__(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self.logger.debug("HyperliquidAPIClient session created")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.debug("HyperliquidAPIClient session closed")

    # ============================================
    # HTTP Request Handler with Retry Logic
    # ============================================

    async def _send(self, payload: Dict[str, Any]) -> Tuple[Optional[int], Any]:
        """One POST: (status, JSON or text), or (None, reason) if the transport failed."""
        try:
            async with self.session.post(
                self.base_url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=aiohttp.ClientTimeout(total=10)
            ) as resp:
                if resp.status == 200:
                    return resp.status, await resp.json()
                return resp.status, await resp.text()
        except asyncio.TimeoutError:
            return None, "timeout"
        except aiohttp.ClientError as e:
            return None, str(e) or e.__class__.__name__

    async def _post(self, payload: Dict[str, Any]) -> Any:
        """
        Make POST request to Hyperliquid API with retry logic.

        Args:
            payload: JSON payload for the POST request

        Returns:
            JSON response from API

        Raises:
            UpstreamError: If the request fails after all retries
            GatewayError: If the gateway refused or timed out an attempt

        Rate Limit Handling:
            - 429 / 503: retried after 1.5s * (attempt + 1), outside the
              gateway slot; the retry takes a new one
        """
        if not self.session:
            raise RuntimeError("Client session not initialized. Use 'async with' statement.")

        request_type = payload.get("type", "unknown")
        log_api_request("hyperliquid", "/info", payload)
        started = time.monotonic()
        last_error = "no attempt made"

        for attempt in range(self.MAX_ATTEMPTS):
            status, body = await through_gateway(self.gateway, "hyperliquid", lambda: self._send(payload))

            if status == 200:
                log_api_response("hyperliquid", f"/info {request_type}", status, time.monotonic() - started)
                return body

            if status is None:
                last_error = body
                self.logger.error(f"Request failed on {request_type}: {body} (attempt {attempt + 1}/{self.MAX_ATTEMPTS})")
                await asyncio.sleep(1.0 * (attempt + 1))
                continue

            if status in (429, 503):
                delay = self.RETRY_BACKOFF * (attempt + 1)
                last_error = f"HTTP {status}"
                self.logger.warning(
                    f"Rate limited (HTTP {status}) on {request_type}. "
                    f"Retrying in {delay:.1f}s... (attempt {attempt + 1}/{self.MAX_ATTEMPTS})"
                )
                await asyncio.sleep(delay)
                continue

            self.logger.error(f"HTTP {status} on {request_type}: {body}")
            raise UpstreamError("hyperliquid", f"HTTP {status} on {request_type}")

        raise UpstreamError("hyperliquid", f"Failed to POST {request_type} after {self.MAX_ATTEMPTS} attempts ({last_error})")

    # ============================================
    # API Methods
    # ============================================

    async def get_asset_context(self, coin: str) -> Dict[str, float]:
        """
        Fetch the perpetual context (mark, oracle, funding, volume) for one coin.

        Hyperliquid Endpoint:
            POST /info with {"type": "metaAndAssetCtxs"}

        Response Format:
            [
              {"universe": [{"name": "BTC", "szDecimals": 5, ...}, ...]},
              [{"funding": "0.0000125", "markPx": "50050.0", "oraclePx": "50000.0",
                "dayNtlVlm": "1200000000.0", "openInterest": "...", ...}, ...]
            ]

            Contexts are positional: ctxs[i] belongs to universe[i].

        Returns:
            {"mark_price", "oracle_price", "funding_rate", "day_notional_volume"}
            where funding_rate is the hourly rate

        Raises:
            UpstreamError: If the coin is not listed or the payload is malformed
        """
        data = await self._post({"type": "metaAndAssetCtxs"})

        try:
            universe = data[0]["universe"]
            contexts = data[1]
        except (IndexError, KeyError, TypeError) as e:
            raise UpstreamError("hyperliquid", f"Malformed metaAndAssetCtxs payload: {e}")

        coin = coin.upper()
        for index, asset in enumerate(universe):
            if asset.get("name") == coin:
                if index >= len(contexts):
                    break
                ctx = contexts[index]
                try:
                    return {
                        "mark_price": float(ctx["markPx"]),
                        "oracle_price": float(ctx["oraclePx"]),
                        "funding_rate": float(ctx["funding"]),
                        "day_notional_volume": float(ctx.get("dayNtlVlm") or 0),
                    }
                except (KeyError, TypeError, ValueError) as e:
                    raise UpstreamError("hyperliquid", f"Malformed context for {coin}: {e}")

        raise UpstreamError("hyperliquid", f"Coin {coin} not listed")
