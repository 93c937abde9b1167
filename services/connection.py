"""
Client Connection State Machine

One ClientConnection per WebSocket client. Transport events drive explicit
state transitions, and those transitions drive broadcaster subscriptions:

    CONNECTING --open()--> OPEN --subscribe_symbol--> SUBSCRIBED(topics)
    SUBSCRIBED --unsubscribe_symbol (last one)--> OPEN
    any state --close()--> CLOSED

Inbound control messages:
    {"type": "subscribe_symbol", "symbol": "BTCUSDT"}
    {"type": "unsubscribe_symbol", "symbol": "BTCUSDT"}
    {"type": "get_current_indicators"}            (optional "symbol")
    {"type": "ping"}

Subscribing to a symbol subscribes to its indicator topic ("BTCUSDT") and its
basis topic ("basis:BTCUSDT"). Unknown message types and unsupported symbols
get an error reply; the connection stays open.
"""

import json
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from core.logging import get_logger, log_websocket_event
from core.schemas import (
    ConnectionEstablished,
    CurrentIndicators,
    ErrorMessage,
    OutboundMessage,
    Pong,
    SubscriptionConfirmed,
    UnsubscriptionConfirmed,
)
from core.utils.symbols import normalize_symbol
from services.broadcaster import Sender, StreamBroadcaster


logger = get_logger(__name__)

IndicatorSource = Callable[[], Dict[str, Any]]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


def topics_for_symbol(symbol: str) -> List[str]:
    """Broadcaster topics carrying updates for a symbol."""
    return [symbol, f"basis:{symbol}"]


class ClientConnection:
    """
    Per-client protocol handler.

    Attributes:
        client_id: Unique id (also the broadcaster key)
        state: Current ConnectionState
        symbols: Symbols the client is subscribed to

    Example:
        >>> conn = ClientConnection("c1", websocket, broadcaster, ["BTCUSDT"], engine.current_all)
        >>> await conn.open()
        >>> await conn.handle_message({"type": "subscribe_symbol", "symbol": "BTCUSDT"})
        >>> conn.state
        <ConnectionState.SUBSCRIBED: 'subscribed'>
        >>> await conn.close()
    """

    def __init__(
        self,
        client_id: str,
        sender: Sender,
        broadcaster: StreamBroadcaster,
        supported_symbols: Iterable[str],
        indicator_source: Optional[IndicatorSource] = None
    ):
        self.client_id = client_id
        self.sender = sender
        self.broadcaster = broadcaster
        self.supported_symbols = [normalize_symbol(s) for s in supported_symbols]
        self.indicator_source = indicator_source
        self.state = ConnectionState.CONNECTING
        self.symbols: Set[str] = set()

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "subscribe_symbol": self._on_subscribe,
            "unsubscribe_symbol": self._on_unsubscribe,
            "get_current_indicators": self._on_get_current_indicators,
            "ping": self._on_ping,
        }

    # ============================================
    # Transport Events
    # ============================================

    async def open(self) -> None:
        """Register with the broadcaster and greet the client."""
        if self.state is not ConnectionState.CONNECTING:
            raise RuntimeError(f"Cannot open connection in state {self.state.value}")

        self.broadcaster.register(self.client_id, self.sender)
        self.state = ConnectionState.OPEN
        log_websocket_event("client", "connected", details=self.client_id)

        await self._reply(ConnectionEstablished(
            client_id=self.client_id,
            supported_symbols=self.supported_symbols,
        ))

    async def close(self) -> None:
        """Drop every subscription; safe to call more than once."""
        if self.state is ConnectionState.CLOSED:
            return
        self.broadcaster.disconnect(self.client_id)
        self.symbols.clear()
        self.state = ConnectionState.CLOSED
        log_websocket_event("client", "disconnected", details=self.client_id)

    async def handle_text(self, raw: str) -> None:
        """Parse a text frame and dispatch it."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            await self._error("Invalid JSON message")
            return
        await self.handle_message(message)

    async def handle_message(self, message: Any) -> None:
        """Dispatch one inbound control message."""
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CLOSED):
            logger.debug(f"Ignoring message for {self.client_id} in state {self.state.value}")
            return

        if not isinstance(message, dict):
            await self._error("Message must be a JSON object")
            return

        message_type = message.get("type")
        handler = self._handlers.get(message_type)
        if handler is None:
            await self._error(f"Unknown message type: {message_type}")
            return

        await handler(message)

    # ============================================
    # Message Handlers
    # ============================================

    async def _on_subscribe(self, message: Dict[str, Any]) -> None:
        symbol = self._valid_symbol(message.get("symbol"))
        if symbol is None:
            await self._error(f"Unsupported symbol: {message.get('symbol')}")
            return

        topics = topics_for_symbol(symbol)
        for topic in topics:
            self.broadcaster.subscribe(self.client_id, topic)
        self.symbols.add(symbol)
        self.state = ConnectionState.SUBSCRIBED

        await self._reply(SubscriptionConfirmed(symbol=symbol, topics=topics))

    async def _on_unsubscribe(self, message: Dict[str, Any]) -> None:
        symbol = self._valid_symbol(message.get("symbol"))
        if symbol is None:
            await self._error(f"Unsupported symbol: {message.get('symbol')}")
            return

        for topic in topics_for_symbol(symbol):
            self.broadcaster.unsubscribe(self.client_id, topic)
        self.symbols.discard(symbol)
        if not self.symbols:
            self.state = ConnectionState.OPEN

        await self._reply(UnsubscriptionConfirmed(symbol=symbol))

    async def _on_get_current_indicators(self, message: Dict[str, Any]) -> None:
        current = self.indicator_source() if self.indicator_source else {}

        requested = message.get("symbol")
        if requested:
            symbol = self._valid_symbol(requested)
            if symbol is None:
                await self._error(f"Unsupported symbol: {requested}")
                return
            wanted = {symbol}
        else:
            wanted = self.symbols or set(current.keys())

        data = {symbol: current[symbol] for symbol in sorted(wanted) if symbol in current}
        await self._reply(CurrentIndicators(data=data))

    async def _on_ping(self, message: Dict[str, Any]) -> None:
        await self._reply(Pong())

    # ============================================
    # Helpers
    # ============================================

    def _valid_symbol(self, raw: Any) -> Optional[str]:
        if not isinstance(raw, str) or not raw.strip():
            return None
        symbol = normalize_symbol(raw)
        return symbol if symbol in self.supported_symbols else None

    async def _reply(self, message: OutboundMessage) -> None:
        delivered = await self.broadcaster.send(self.client_id, message.to_payload())
        if not delivered and self.state is not ConnectionState.CLOSED:
            # Broadcaster already dropped the client
            self.symbols.clear()
            self.state = ConnectionState.CLOSED

    async def _error(self, text: str) -> None:
        await self._reply(ErrorMessage(message=text))
