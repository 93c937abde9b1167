"""
Exchange Adapters Package

One subpackage per exchange (Binance, Bybit, Hyperliquid, Deribit), each with:
- api_client.py: Async REST client (aiohttp, retry with backoff)
- __init__.py: Adapter implementing ExchangeAdapter.fetch_observation()

Binance also carries ws_client.py, the mini-ticker stream behind the price feed.
"""
