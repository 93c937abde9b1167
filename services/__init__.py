"""
Services Package

Long-running and computational services built on the core and storage layers:
- rate_limiter: ProviderGateway (per-provider reservoirs, concurrency, queueing)
- indicators / indicator_engine: RSI and SMA math, periodic differential broadcasts
- basis / aggregator: multi-exchange basis reconciliation
- fallback: labeled cached or mock basis when every exchange fails
- broadcaster / connection: topic fan-out and per-client protocol state
- price_feed: Binance mini-ticker ingestion and kline backfill
"""
