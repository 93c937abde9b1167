"""
Unit Tests for Indicator Math

These tests verify RSI (Wilder), SMA, classification and trend alignment.

Run with:
    pytest tests/unit/test_indicators.py -v
"""

import pytest

from core.errors import InsufficientHistory
from services.indicators import classify_ma, classify_rsi, rsi, rsi_series, sma, trend_alignment


class TestRSI:
    """Wilder RSI"""

    def test_monotonic_rise_is_100(self):
        assert rsi([float(p) for p in range(1, 30)], period=14) == 100.0

    def test_monotonic_fall_is_0(self):
        assert rsi([float(p) for p in range(30, 1, -1)], period=14) == 0.0

    def test_flat_series_is_neutral(self):
        assert rsi([100.0] * 20, period=14) == 50.0

    def test_alternating_equal_moves_is_50(self):
        prices = [100.0 + (i % 2) for i in range(30)]
        assert rsi(prices, period=14) == pytest.approx(50.0, abs=5.0)

    def test_series_length(self):
        prices = [float(p) for p in range(1, 21)]
        assert len(rsi_series(prices, period=14)) == len(prices) - 14

    def test_known_value(self):
        """Gains 1,1 and loss 1 over period 3 then smoothing"""
        prices = [10.0, 11.0, 12.0, 11.0, 12.0]
        # avg_gain = 2/3, avg_loss = 1/3 -> RSI 66.67; then gain 1:
        # avg_gain = (2/3*2 + 1)/3 = 7/9, avg_loss = (1/3*2)/3 = 2/9 -> RS 3.5
        values = rsi_series(prices, period=3)
        assert values[0] == pytest.approx(66.6667, abs=1e-3)
        assert values[1] == pytest.approx(100 - 100 / 4.5, abs=1e-6)

    def test_insufficient_history_raises(self):
        with pytest.raises(InsufficientHistory) as exc_info:
            rsi([1.0] * 14, period=14)
        assert exc_info.value.required == 15
        assert exc_info.value.available == 14


class TestRSIClassification:
    """Overbought / oversold / normal with strength"""

    @pytest.mark.parametrize("value, expected", [
        (85.0, ("overbought", "strong")),
        (77.0, ("overbought", "moderate")),
        (71.0, ("overbought", "weak")),
        (50.0, ("normal", None)),
        (29.0, ("oversold", "weak")),
        (24.0, ("oversold", "moderate")),
        (15.0, ("oversold", "strong")),
    ])
    def test_classification(self, value, expected):
        assert classify_rsi(value) == expected

    def test_custom_thresholds(self):
        assert classify_rsi(65.0, overbought=60.0, oversold=40.0) == ("overbought", "moderate")


class TestMovingAverages:
    """SMA and position relative to price"""

    def test_sma_uses_last_period_prices(self):
        assert sma([1.0, 2.0, 3.0, 4.0, 5.0], period=2) == 4.5

    def test_sma_insufficient_history(self):
        with pytest.raises(InsufficientHistory):
            sma([1.0, 2.0], period=3)

    def test_classify_ma(self):
        position, deviation = classify_ma(105.0, 100.0)
        assert position == "above"
        assert deviation == pytest.approx(5.0)
        position, deviation = classify_ma(90.0, 100.0)
        assert position == "below"
        assert deviation == pytest.approx(-10.0)


class TestTrendAlignment:
    """Bullish stacking score"""

    def test_fully_stacked_is_strong_bullish(self):
        result = trend_alignment({20: 110.0, 50: 105.0, 100: 100.0, 200: 95.0})
        assert result["score"] == 4
        assert result["max_score"] == 4
        assert result["label"] == "Strong Bullish"
        assert result["alignment"] == "bullish"

    def test_inverted_is_neutral(self):
        result = trend_alignment({20: 90.0, 50: 95.0, 100: 100.0, 200: 105.0})
        assert result["score"] == 0
        assert result["label"] == "Neutral"
        assert result["alignment"] == "neutral"

    def test_partial_alignment(self):
        # 20>50 only
        result = trend_alignment({20: 100.0, 50: 99.0, 100: 101.0, 200: 102.0})
        assert result["score"] == 1
        assert result["label"] == "Weak Bullish"

    def test_missing_averages(self):
        assert trend_alignment({})["label"] == "Neutral"
        assert trend_alignment({20: 100.0, 50: 90.0})["max_score"] == 1
