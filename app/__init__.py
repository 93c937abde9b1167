"""
FastAPI Application Package

Builds the component graph at startup and exposes composite basis,
indicators and price history over REST, plus one WebSocket endpoint for
subscriptions.
"""
