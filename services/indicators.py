"""
Indicator Math

Pure functions over price sequences (oldest first):
    - rsi_series / rsi: Wilder's Relative Strength Index
    - sma: Simple moving average of the last N prices
    - classify_rsi: overbought / oversold / normal with strength
    - classify_ma: price above / below the average with percentage deviation
    - trend_alignment: how many moving averages are stacked bullishly

Fewer prices than a period needs raises InsufficientHistory; the indicator
engine catches it and leaves that period out of the cycle.
"""

import statistics
from typing import Dict, List, Optional, Sequence, Tuple

from core.errors import InsufficientHistory


# ============================================
# RSI
# ============================================

def rsi_series(prices: Sequence[float], period: int = 14) -> List[float]:
    """
    Wilder RSI for every point once the first `period` changes are known.

    The first average gain/loss is the simple mean of the first `period`
    changes; afterwards each average is smoothed as
    avg = (avg * (period - 1) + current) / period.

    Args:
        prices: Prices, oldest first
        period: Lookback period

    Returns:
        List of RSI values (len(prices) - period entries)

    Raises:
        InsufficientHistory: If fewer than period + 1 prices are available

    Example:
        >>> rsi_series([1, 2, 3, 4, 5], period=3)
        [100.0, 100.0]
    """
    if period <= 0:
        raise ValueError(f"Period must be positive: {period}")
    if len(prices) < period + 1:
        raise InsufficientHistory(period + 1, len(prices))

    changes = [prices[i] - prices[i - 1] for i in range(1, len(prices))]
    gains = [max(change, 0.0) for change in changes]
    losses = [max(-change, 0.0) for change in changes]

    avg_gain = statistics.fmean(gains[:period])
    avg_loss = statistics.fmean(losses[:period])
    values = [_rsi_from_averages(avg_gain, avg_loss)]

    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        values.append(_rsi_from_averages(avg_gain, avg_loss))

    return values


def _rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        # Flat series reads as neutral
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def rsi(prices: Sequence[float], period: int = 14) -> float:
    """Latest Wilder RSI value."""
    return rsi_series(prices, period)[-1]


def classify_rsi(
    value: float,
    overbought: float = 70.0,
    oversold: float = 30.0
) -> Tuple[str, Optional[str]]:
    """
    Classify an RSI value.

    Strength steps are 5 and 10 points past the threshold, so the defaults
    give weak/moderate/strong at 70/75/80 and 30/25/20.

    Returns:
        (classification, strength) where classification is "overbought",
        "oversold" or "normal" and strength is None for "normal"

    Example:
        >>> classify_rsi(77.0)
        ('overbought', 'moderate')
        >>> classify_rsi(50.0)
        ('normal', None)
    """
    if value >= overbought:
        if value >= overbought + 10:
            return "overbought", "strong"
        if value >= overbought + 5:
            return "overbought", "moderate"
        return "overbought", "weak"

    if value <= oversold:
        if value <= oversold - 10:
            return "oversold", "strong"
        if value <= oversold - 5:
            return "oversold", "moderate"
        return "oversold", "weak"

    return "normal", None


# ============================================
# Moving Averages
# ============================================

def sma(prices: Sequence[float], period: int) -> float:
    """
    Simple moving average of the last `period` prices.

    Raises:
        InsufficientHistory: If fewer than `period` prices are available
    """
    if period <= 0:
        raise ValueError(f"Period must be positive: {period}")
    if len(prices) < period:
        raise InsufficientHistory(period, len(prices))
    return statistics.fmean(prices[-period:])


def classify_ma(price: float, average: float) -> Tuple[str, float]:
    """
    Position of the price relative to a moving average.

    Returns:
        ("above" | "below", deviation in percent of the average)

    Example:
        >>> classify_ma(105.0, 100.0)
        ('above', 5.0)
    """
    deviation = (price - average) / average * 100.0 if average else 0.0
    return ("above" if price >= average else "below"), deviation


def trend_alignment(averages: Dict[int, float]) -> Dict[str, object]:
    """
    Score how bullishly the moving averages are stacked.

    One point for each adjacent pair where the shorter average is above the
    longer one, plus one if the shortest is above the longest. With the
    default 20/50/100/200 periods the score ranges 0-4.

    Args:
        averages: Period -> moving average value

    Returns:
        {"score", "max_score", "label", "alignment"}

    Example:
        >>> trend_alignment({20: 110, 50: 105, 100: 100, 200: 95})["label"]
        'Strong Bullish'
    """
    periods = sorted(averages)
    score = 0
    max_score = 0

    for shorter, longer in zip(periods, periods[1:]):
        max_score += 1
        if averages[shorter] > averages[longer]:
            score += 1

    if len(periods) > 2:
        max_score += 1
        if averages[periods[0]] > averages[periods[-1]]:
            score += 1

    if max_score == 0:
        label = "Neutral"
    elif score >= 3:
        label = "Strong Bullish"
    elif score >= 2:
        label = "Bullish"
    elif score == 1:
        label = "Weak Bullish"
    else:
        label = "Neutral"

    return {
        "score": score,
        "max_score": max_score,
        "label": label,
        "alignment": "bullish" if score >= 2 else "neutral",
    }
