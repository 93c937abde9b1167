"""
Test Suite

Structure:
- tests/unit/: Tests for individual components (cache, gateway, history,
  indicators, aggregator, broadcaster, adapters). HTTP is always mocked.

Uses pytest with pytest-asyncio for testing async functionality.
"""
