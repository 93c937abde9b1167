"""
FastAPI Application - Market Signal Core

Wires the core components together at startup, tears them down on shutdown,
and exposes them over a thin HTTP/WebSocket surface.

Components (built in lifespan, passed explicitly, no module singletons):
    - ProviderGateway: per-provider rate limiting
    - CoalescingCache: observation and backfill caching
    - PriceHistoryStore: rolling price windows
    - ExchangeManager: Binance, Bybit, Hyperliquid, Deribit adapters
    - StreamBroadcaster: topic fan-out to WebSocket clients
    - FallbackProducer / MultiExchangeAggregator: composite basis
    - IndicatorEngine: RSI/SMA with differential broadcasts
    - PriceFeed: Binance mini-ticker ingestion and backfill

Endpoints:
    - GET /basis/{symbol} - Composite basis (live or labeled fallback)
    - GET /indicators/{symbol} - Latest indicator snapshots
    - GET /history/{symbol} - Rolling price window
    - GET /status - Gateway, cache, broadcaster and aggregator state
    - WS  /ws - subscribe_symbol / unsubscribe_symbol / get_current_indicators / ping

Usage:
    uvicorn app.main:app --reload --host 0.0.0.0 --port 8000
"""

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from core.config import Settings, settings, validate_configuration
from core.errors import NoDataAvailable
from core.exchange_manager import ExchangeManager
from core.logging import configure_from_settings, logger
from core.utils.symbols import normalize_symbol
from exchanges.binance import BinanceTickerStream
from services.aggregator import AggregationConstants, MultiExchangeAggregator
from services.broadcaster import StreamBroadcaster
from services.connection import ClientConnection
from services.fallback import FallbackProducer
from services.indicator_engine import IndicatorEngine
from services.price_feed import PriceFeed
from services.rate_limiter import ProviderGateway
from storage.cache import CoalescingCache
from storage.price_history import PriceHistoryStore


# ============================================
# Service Container
# ============================================

@dataclass
class Services:
    """Every long-lived component, built once per application."""

    config: Settings
    gateway: ProviderGateway
    cache: CoalescingCache
    store: PriceHistoryStore
    manager: ExchangeManager
    broadcaster: StreamBroadcaster
    fallback: FallbackProducer
    aggregator: MultiExchangeAggregator
    engine: IndicatorEngine
    feed: Optional[PriceFeed] = None


def build_services(config: Settings) -> Services:
    """Construct the component graph from settings (nothing is started)."""
    gateway = ProviderGateway(config.limiter_configs(), default_timeout=config.request_timeout)
    cache = CoalescingCache(max_entries=config.cache_max_entries)
    store = PriceHistoryStore(capacity=config.history_capacity)
    manager = ExchangeManager.with_default_adapters(config, gateway)
    broadcaster = StreamBroadcaster()
    fallback = FallbackProducer(cache)

    aggregator = MultiExchangeAggregator(
        manager,
        cache,
        broadcaster=broadcaster,
        fallback=fallback,
        constants=AggregationConstants.from_settings(config),
        interval_seconds=config.aggregation_interval_seconds,
    )

    engine = IndicatorEngine(
        store,
        broadcaster,
        rsi_periods=config.rsi_periods_list,
        ma_periods=config.ma_periods_list,
        rsi_threshold=config.rsi_broadcast_threshold,
        ma_threshold=config.ma_broadcast_threshold,
        interval_seconds=config.indicator_interval_seconds,
        overbought=config.rsi_overbought,
        oversold=config.rsi_oversold,
    )

    feed = None
    if config.price_feed_enabled:
        feed = PriceFeed(
            store,
            broadcaster,
            cache,
            manager.get_adapter("binance"),
            config.symbols_list,
            backfill_interval=config.backfill_interval,
            backfill_ttl=config.backfill_cache_ttl,
            stream_factory=lambda symbols: BinanceTickerStream(
                symbols,
                base_url=config.binance_ws_url,
                max_reconnect_delay=config.ws_max_reconnect_delay,
            ),
        )

    return Services(
        config=config,
        gateway=gateway,
        cache=cache,
        store=store,
        manager=manager,
        broadcaster=broadcaster,
        fallback=fallback,
        aggregator=aggregator,
        engine=engine,
        feed=feed,
    )


# ============================================
# Lifespan Management
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""
    # Startup
    logger.info("=== Application Starting ===")
    try:
        validate_configuration(settings)
        configure_from_settings(settings)
        services = build_services(settings)
        app.state.services = services

        await services.gateway.start()
        await services.manager.initialize_all()
        if services.feed is not None:
            await services.feed.start()
        await services.engine.start(settings.symbols_list)
        await services.aggregator.start(settings.symbols_list)
        logger.info("=== Started Successfully ===")
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    # Shutdown
    logger.info("=== Shutting Down ===")
    try:
        await services.aggregator.stop()
        await services.engine.stop()
        if services.feed is not None:
            await services.feed.stop()
        await services.manager.shutdown_all()
        await services.gateway.stop()
        logger.info("=== Shutdown Complete ===")
    except Exception as e:
        logger.error(f"Shutdown error: {e}")


# ============================================
# FastAPI Application
# ============================================

app = FastAPI(
    title="Market Signal Core",
    description=(
        "Reconciled futures basis and streaming technical indicators.\n\n"
        "## REST Endpoints\n"
        "- `GET /basis/{symbol}` - Composite basis across exchanges\n"
        "- `GET /indicators/{symbol}` - Latest RSI / SMA snapshots\n"
        "- `GET /history/{symbol}` - Rolling price window\n"
        "- `GET /status` - Component status\n\n"
        "## WebSocket\n"
        "- `ws://{host}/ws` - send `subscribe_symbol`, `unsubscribe_symbol`, "
        "`get_current_indicators` or `ping`; receive `indicator_update`, "
        "`basis_update` and `price_update` for subscribed symbols"
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


def _services(app_: FastAPI) -> Services:
    return app_.state.services


def _require_symbol(services: Services, symbol: str) -> str:
    symbol = normalize_symbol(symbol)
    if symbol not in services.config.symbols_list:
        raise HTTPException(
            status_code=404,
            detail=f"Unsupported symbol: {symbol}. Supported: {', '.join(services.config.symbols_list)}"
        )
    return symbol


# ============================================
# REST Endpoints
# ============================================

@app.get("/basis/{symbol}", tags=["Basis"])
async def get_basis(symbol: str, request: Request):
    """Composite basis; falls back to the last good or mock result, labeled by data_source."""
    services = _services(request.app)
    symbol = _require_symbol(services, symbol)
    try:
        result = await services.aggregator.get_basis(symbol)
    except NoDataAvailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return result.model_dump(mode="json")


@app.get("/indicators/{symbol}", tags=["Indicators"])
async def get_indicators(symbol: str, request: Request):
    """Latest snapshot of every indicator period for the symbol."""
    services = _services(request.app)
    symbol = _require_symbol(services, symbol)
    current = services.engine.current(symbol)
    return {
        "symbol": symbol,
        "indicators": {key: snap.model_dump(mode="json") for key, snap in current.items()},
    }


@app.get("/history/{symbol}", tags=["Indicators"])
async def get_history(symbol: str, request: Request):
    """Rolling price window, oldest first."""
    services = _services(request.app)
    symbol = _require_symbol(services, symbol)
    samples = services.store.snapshot(symbol)
    return {
        "symbol": symbol,
        "capacity": services.store.capacity,
        "count": len(samples),
        "samples": [s.model_dump(mode="json") for s in samples],
    }


@app.get("/status", tags=["System"])
async def get_status(request: Request):
    services = _services(request.app)
    return {
        "symbols": services.config.symbols_list,
        "gateway": services.gateway.stats(),
        "cache": services.cache.metrics(),
        "broadcaster": services.broadcaster.stats(),
        "aggregator": services.aggregator.status(),
        "price_feed": {"enabled": services.feed is not None, "ticks": services.feed.ticks if services.feed else 0},
    }


# ============================================
# WebSocket Endpoint
# ============================================

@app.websocket("/ws")
async def websocket_stream(websocket: WebSocket):
    """
    Subscription channel for indicator, basis and price updates.

    Example:
        -> {"type": "subscribe_symbol", "symbol": "BTCUSDT"}
        <- {"type": "subscription_confirmed", "symbol": "BTCUSDT", "topics": [...]}
    """
    services = _services(websocket.app)
    await websocket.accept()

    connection = ClientConnection(
        client_id=uuid.uuid4().hex,
        sender=websocket,
        broadcaster=services.broadcaster,
        supported_symbols=services.config.symbols_list,
        indicator_source=services.engine.current_all,
    )

    try:
        await connection.open()
        while True:
            raw = await websocket.receive_text()
            await connection.handle_text(raw)
    except WebSocketDisconnect:
        logger.info(f"WS disconnected: {connection.client_id}")
    except Exception as e:
        logger.error(f"WS error for {connection.client_id}: {e}")
    finally:
        await connection.close()
