"""
Basis Reconciliation Math

Pure functions used by the aggregator (and the fallback producer) to turn
several exchange observations into one composite basis:

    - normalize_basis: bring perpetual funding-implied basis onto a dated tenor
    - reconcile_weights: volume share blended with confidence prior share
    - agreement_score: exponential decay of dispersion, floored
    - detect_anomaly: static typical-range check with capped severity
    - composite_confidence: bounded blend of priors, agreement and source bonus
    - classify_regime: backwardation / neutral / healthy / overheated

All basis values are annualized percentages.
"""

import math
import statistics
from typing import Dict, Sequence

from core.schemas import AnomalyReport, ExchangeObservation, RegimeInfo


# ============================================
# Normalization & Weights
# ============================================

def normalize_basis(observation: ExchangeObservation, perpetual_factor: float = 1.2) -> float:
    """
    Basis on a common reference tenor.

    Dated contracts already carry a term basis and pass through. Funding
    implied basis of perpetuals is scaled by an empirical factor.
    """
    if observation.contract_type == "perpetual":
        return observation.implied_basis * perpetual_factor
    return observation.implied_basis


def reconcile_weights(
    observations: Sequence[ExchangeObservation],
    volume_weight: float = 0.7,
    prior_weight: float = 0.3
) -> Dict[str, Dict[str, float]]:
    """
    Per-exchange weights as a convex blend of volume share and prior share.

    When no exchange reports volume, the prior share alone decides.

    Returns:
        exchange -> {"weight", "volume_share", "prior_share"}

    Example:
        >>> weights = reconcile_weights([deribit_obs, binance_obs])
        >>> round(sum(w["weight"] for w in weights.values()), 6)
        1.0
    """
    total_volume = sum(obs.volume_24h for obs in observations)
    total_prior = sum(obs.confidence_prior for obs in observations)

    weights: Dict[str, Dict[str, float]] = {}
    for obs in observations:
        prior_share = obs.confidence_prior / total_prior
        if total_volume > 0:
            volume_share = obs.volume_24h / total_volume
            weight = volume_weight * volume_share + prior_weight * prior_share
        else:
            volume_share = 0.0
            weight = prior_share
        weights[obs.exchange] = {
            "weight": weight,
            "volume_share": volume_share,
            "prior_share": prior_share,
        }
    return weights


# ============================================
# Agreement & Anomalies
# ============================================

def agreement_score(bases: Sequence[float], decay: float = 10.0, floor: float = 0.3) -> float:
    """
    exp(-stdev / decay), never below floor.

    Uses the population standard deviation. A single value agrees with itself.

    Example:
        >>> round(agreement_score([10.0, 12.0]), 4)
        0.9048
    """
    if len(bases) < 2:
        return 1.0
    dispersion = statistics.pstdev(bases)
    return max(floor, math.exp(-dispersion / decay))


def detect_anomaly(
    basis: float,
    typical_min: float = -10.0,
    typical_max: float = 25.0,
    max_severity: float = 3.0
) -> AnomalyReport:
    """
    Flag a basis outside [typical_min, typical_max].

    Severity is the distance beyond the violated bound divided by the bound's
    magnitude, capped at max_severity.

    Example:
        >>> detect_anomaly(40.0).severity
        0.6
    """
    if typical_min <= basis <= typical_max:
        return AnomalyReport()

    bound = typical_max if basis > typical_max else typical_min
    scale = abs(bound) or 1.0
    severity = min(max_severity, abs(basis - bound) / scale)
    side = "above" if basis > typical_max else "below"

    return AnomalyReport(
        is_anomalous=True,
        severity=severity,
        bound=bound,
        message=f"Basis {basis:.2f}% is {side} the typical range [{typical_min}%, {typical_max}%]",
    )


def anomaly_factor(severity: float, max_severity: float = 3.0, penalty: float = 0.5) -> float:
    """Confidence multiplier for an anomaly; 1.0 when clean, (1 - penalty) at max severity."""
    if severity <= 0:
        return 1.0
    return 1.0 - penalty * min(severity, max_severity) / max_severity


def composite_confidence(
    priors: Sequence[float],
    agreement: float,
    bonus: float = 0.05,
    max_confidence: float = 0.95
) -> float:
    """
    min(max_confidence, 0.5 * mean(priors) + 0.5 * agreement + bonus)

    Non-decreasing in agreement with everything else fixed.
    """
    raw = 0.5 * statistics.fmean(priors) + 0.5 * agreement + bonus
    return min(max_confidence, raw)


# ============================================
# Regime
# ============================================

_REGIMES: Dict[str, Dict[str, str]] = {
    "backwardation": {"label": "Backwardation/Stress", "sentiment": "bearish"},
    "healthy": {"label": "Healthy Contango", "sentiment": "bullish"},
    "overheated": {"label": "Overheated Carry", "sentiment": "overheated"},
    "neutral": {"label": "Neutral", "sentiment": "neutral"},
}


def classify_regime(basis: float) -> RegimeInfo:
    """
    Bucket an annualized basis.

        <= 0        backwardation
        5 .. 12     healthy contango
        >= 15       overheated carry
        otherwise   neutral

    Example:
        >>> classify_regime(8.2).state
        'healthy'
    """
    if basis <= 0:
        state = "backwardation"
    elif 5 <= basis <= 12:
        state = "healthy"
    elif basis >= 15:
        state = "overheated"
    else:
        state = "neutral"
    return RegimeInfo(state=state, **_REGIMES[state])
