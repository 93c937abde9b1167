"""
Core Package

Contains the exchange-agnostic core logic including:
- ExchangeAdapter: Abstract base class every exchange adapter implements
- ExchangeManager: Registry of adapters and their session lifecycle
- Schemas: Pydantic models for observations, composites, indicators and messages
- Errors: MarketDataError hierarchy shared by gateway, aggregator and indicators

The aggregator only ever sees ExchangeObservation, so adding an exchange never
touches reconciliation code.
"""
