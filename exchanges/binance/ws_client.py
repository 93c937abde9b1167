"""
Binance WebSocket Client

This module provides async WebSocket streaming of Binance Futures mini-tickers,
the price feed behind the Price History Store.
It handles:
- WebSocket connections with automatic reconnection
- Subscribing to several symbols over one connection
- Exponential backoff on failures
- Graceful shutdown
- Parsing ticker events into PriceSample

Stream:
    - Individual symbol mini ticker: {symbol}@miniTicker (1s updates)

WebSocket Documentation:
    https://binance-docs.github.io/apidocs/futures/en/#websocket-market-streams

Usage:
    async with BinanceTickerStream(["BTCUSDT", "ETHUSDT"]) as stream:
        async for message in stream.listen():
            sample = parse_mini_ticker(message)
"""

import aiohttp
import asyncio
import json
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional

from core.logging import get_logger, log_websocket_event
from core.schemas import PriceSample
from core.utils.time import to_utc_datetime


class BinanceTickerStream:
    """
    Async WebSocket client for Binance Futures mini-ticker streams.

    One connection carries the mini-ticker stream of every requested symbol.
    The subscription is (re)sent after every successful connect, so it
    survives reconnects.

    Attributes:
        BASE_URL: Binance Futures raw WebSocket endpoint
        symbols: Subscribed trading pairs (lowercase)
        max_reconnect_delay: Maximum delay between reconnection attempts (seconds)

    Example:
        >>> async with BinanceTickerStream(["BTCUSDT"]) as stream:
        ...     async for msg in stream.listen():
        ...         print(msg["s"], msg["c"])

    Notes:
        - Reconnects automatically with exponential backoff
        - Use as async context manager for proper cleanup
    """

    BASE_URL = "wss://fstream.binance.com/ws"

    def __init__(
        self,
        symbols: Iterable[str],
        base_url: Optional[str] = None,
        max_reconnect_delay: int = 30
    ):
        self.symbols: List[str] = [s.lower() for s in symbols]
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.max_reconnect_delay = max_reconnect_delay

        self.session: Optional[aiohttp.ClientSession] = None
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._is_running = False
        self._reconnect_attempt = 0
        self._request_id = 0

        self.logger = get_logger(__name__)

    @property
    def streams(self) -> List[str]:
        return [f"{symbol}@miniTicker" for symbol in self.symbols]

    # ============================================
    # Context Manager for Session Management
    # ============================================

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        self._is_running = True
        self.logger.debug(f"BinanceTickerStream session created for {', '.join(self.streams)}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self._is_running = False
        await self.close()

    # ============================================
    # WebSocket Connection Management
    # ============================================

    async def connect(self) -> None:
        """
        Open the WebSocket and subscribe to every mini-ticker stream.

        Raises:
            RuntimeError: If session not initialized
            aiohttp.ClientError: If connection fails
        """
        if not self.session:
            raise RuntimeError("Client session not initialized. Use 'async with' statement.")

        self.logger.info(f"Connecting to {self.base_url}")

        self.ws = await self.session.ws_connect(
            self.base_url,
            heartbeat=30,
            timeout=aiohttp.ClientTimeout(total=10)
        )
        self._request_id += 1
        await self.ws.send_json({
            "method": "SUBSCRIBE",
            "params": self.streams,
            "id": self._request_id,
        })
        self._reconnect_attempt = 0
        log_websocket_event("binance", "connected", details=", ".join(self.streams))

    async def close(self) -> None:
        """Close WebSocket connection and session (safe to call repeatedly)."""
        self._is_running = False

        if self.ws and not self.ws.closed:
            await self.ws.close()

        if self.session and not self.session.closed:
            await self.session.close()
            self.logger.debug("BinanceTickerStream session closed")

    def next_delay(self) -> int:
        """
        Advance the reconnect counter and return the backoff delay.

        Strategy: min(2^(attempt-1), max_reconnect_delay) -> 1s, 2s, 4s, ...
        """
        self._reconnect_attempt += 1
        return min(2 ** (self._reconnect_attempt - 1), self.max_reconnect_delay)

    # ============================================
    # Message Streaming with Auto-Reconnect
    # ============================================

    async def listen(self) -> AsyncGenerator[Dict[str, Any], None]:
        """
        Listen for ticker events with automatic reconnection.

        Yields:
            Dict[str, Any]: Raw mini-ticker event ({"e": "24hrMiniTicker", "s", "c", "E", ...}).
                            Subscription acknowledgements are not yielded.
        """
        while self._is_running:
            try:
                if not self.ws or self.ws.closed:
                    await self.connect()

                async for msg in self.ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        try:
                            data = json.loads(msg.data)
                        except json.JSONDecodeError as e:
                            self.logger.error(f"Failed to parse JSON: {msg.data[:100]}... Error: {e}")
                            continue

                        if isinstance(data, dict) and data.get("e") == "24hrMiniTicker":
                            yield data
                        else:
                            self.logger.debug(f"Control message: {data}")

                    elif msg.type == aiohttp.WSMsgType.CLOSED:
                        log_websocket_event("binance", "disconnected", details=str(msg.data))
                        break

                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        log_websocket_event("binance", "error", details=str(msg.data))
                        break

            except asyncio.CancelledError:
                self.logger.info("Ticker listener cancelled")
                raise

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log_websocket_event("binance", "error", details=str(e))

            if self._is_running:
                delay = self.next_delay()
                self.logger.warning(f"Reconnecting in {delay}s... (attempt {self._reconnect_attempt})")
                await asyncio.sleep(delay)

        self.logger.info("Ticker listener stopped")


# ============================================
# Message Parsing
# ============================================

def parse_mini_ticker(message: Dict[str, Any]) -> Optional[PriceSample]:
    """
    Convert a mini-ticker event into a PriceSample.

    Message Format:
        {
          "e": "24hrMiniTicker",
          "E": 123456789,        // Event time (ms)
          "s": "BTCUSDT",
          "c": "50000.10",       // Close (last) price
          ...
        }

    Returns:
        PriceSample, or None for events without a usable positive price
    """
    try:
        price = float(message["c"])
        if price <= 0:
            return None
        return PriceSample(
            symbol=message["s"],
            price=price,
            timestamp=to_utc_datetime(message["E"])
        )
    except (KeyError, TypeError, ValueError):
        return None
