"""
Unit Tests for the Fallback Producer

Run with:
    pytest tests/unit/test_fallback.py -v
"""

import random

import pytest

from core.schemas import CompositeResult
from services.basis import classify_regime
from services.fallback import FallbackProducer
from storage.cache import CoalescingCache


def make_composite(basis: float = 9.5, data_source: str = "live") -> CompositeResult:
    return CompositeResult(
        symbol="BTCUSDT",
        spot_price=50000.0,
        derivative_price=51000.0,
        basis=basis,
        regime=classify_regime(basis),
        agreement=0.95,
        confidence=0.9,
        sources=["deribit", "binance"],
        data_source=data_source,
    )


class TestFallbackProducer:
    """Cached fallback first, mock otherwise, always labeled"""

    def test_mock_when_nothing_remembered(self):
        fallback = FallbackProducer(CoalescingCache(), rng=random.Random(7))

        result = fallback.produce("BTCUSDT", {"deribit": "UpstreamError: down"})

        assert result.data_source == "mock"
        assert result.failures == {"deribit": "UpstreamError: down"}
        assert result.confidence == 0.0
        assert result.sources == []
        assert 4.2 <= result.basis <= 12.2
        assert 66234.0 <= result.spot_price <= 68234.0
        assert result.regime == classify_regime(result.basis)

    def test_mock_futures_follow_basis(self):
        result = FallbackProducer(CoalescingCache(), rng=random.Random(1)).mock("BTCUSDT")

        expected = result.spot_price * (1 + result.basis / 100 * 90 / 365)
        assert result.derivative_price == pytest.approx(expected, rel=1e-4)

    def test_cached_fallback_after_remember(self):
        cache = CoalescingCache()
        fallback = FallbackProducer(cache)
        live = make_composite()

        fallback.remember(live)
        result = fallback.produce("btcusdt", {"binance": "RequestTimeout"})

        assert result.data_source == "cached_fallback"
        assert result.basis == live.basis
        assert result.failures == {"binance": "RequestTimeout"}
        assert live.data_source == "live"
        assert "basis_fallback:BTCUSDT" in cache

    def test_degraded_results_are_not_remembered(self):
        cache = CoalescingCache()
        fallback = FallbackProducer(cache)

        fallback.remember(make_composite(data_source="mock"))

        assert "basis_fallback:BTCUSDT" not in cache
        assert fallback.produce("BTCUSDT").data_source == "mock"

    def test_remembered_result_expires(self):
        now = [1000.0]
        cache = CoalescingCache(clock=lambda: now[0])
        fallback = FallbackProducer(cache, ttl=3600)

        fallback.remember(make_composite())
        now[0] += 3601

        assert fallback.produce("BTCUSDT").data_source == "mock"
