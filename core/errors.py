"""
Error Taxonomy

All failures raised by the core derive from MarketDataError so callers can
catch one base class at the seams (route handlers, background loops).

    MarketDataError
    ├── GatewayError
    │   ├── RateLimitExceeded   quota exhausted and the caller opted out of queuing
    │   ├── Overloaded          provider queue is full
    │   ├── RequestTimeout      deadline exceeded while queued or in flight
    │   └── UpstreamError       provider returned an error or malformed payload
    ├── NoDataAvailable         every exchange failed; callers fall back
    └── InsufficientHistory     not enough samples for an indicator period

RateLimitExceeded and Overloaded mean "retry later". InsufficientHistory is
never surfaced to API consumers; the affected indicator is simply omitted.
"""

from typing import Dict, Optional


class MarketDataError(Exception):
    """Base class for all market data core errors."""


class GatewayError(MarketDataError):
    """Failure attributed to a specific provider."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class RateLimitExceeded(GatewayError):
    """Quota exhausted and the request was not allowed to queue."""


class Overloaded(GatewayError):
    """The provider queue reached its maximum depth."""


class RequestTimeout(GatewayError):
    """The request exceeded its deadline while queued or in flight."""


class UpstreamError(GatewayError):
    """The provider call raised, returned an error status, or sent a malformed payload."""


class NoDataAvailable(MarketDataError):
    """
    Raised when no exchange produced a usable observation.

    Attributes:
        symbol: Instrument the aggregation was for
        failures: Mapping of exchange name to failure reason
    """

    def __init__(self, symbol: str, failures: Optional[Dict[str, str]] = None):
        self.symbol = symbol
        self.failures = dict(failures or {})
        reasons = "; ".join(f"{name}: {reason}" for name, reason in self.failures.items())
        super().__init__(f"No exchange data available for {symbol}" + (f" ({reasons})" if reasons else ""))


class InsufficientHistory(MarketDataError):
    """Fewer samples than an indicator period requires."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient history (need {required}, got {available})")
