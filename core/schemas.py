"""
Normalized Data Schemas

This module defines Pydantic models for every value that crosses a component
boundary: limiter configuration, price samples, indicator snapshots,
per-exchange observations, composite basis results and the messages pushed
to WebSocket clients.

Key Principle:
    Whichever exchange an observation comes from (Binance, Bybit, Hyperliquid,
    Deribit), it is normalized into ExchangeObservation before the aggregator
    sees it. The aggregator never branches on exchange-specific field shapes.

Models:
    - ProviderLimiterConfig: Per-provider quota and concurrency settings
    - PriceSample: One price observation for a symbol
    - IndicatorSnapshot: Latest value of one RSI/SMA period
    - ExchangeObservation: One exchange's view of spot, derivative and basis
    - ExchangeContribution: Weight and contribution of an exchange in a composite
    - RegimeInfo / AnomalyReport: Classification attached to a composite
    - CompositeResult: Reconciled basis across exchanges (immutable)
    - Outbound messages: connection_established, indicator_update, ...

Note:
    This module must not import core.config (config builds
    ProviderLimiterConfig instances from settings).
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.utils.symbols import normalize_symbol


ContractType = Literal["dated", "perpetual"]
DataSource = Literal["live", "cached_fallback", "mock"]
RegimeState = Literal["backwardation", "neutral", "healthy", "overheated"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# Rate Limiter Configuration
# ============================================

class ProviderLimiterConfig(BaseModel):
    """
    Rate limiter settings for a single upstream provider.

    Attributes:
        provider: Provider identifier (lowercase, e.g. "binance")
        reservoir: Requests allowed per refresh interval
        refresh_interval: Seconds between reservoir refills
        max_concurrent: Maximum requests in flight at once
        max_queue: Maximum queued requests before failing fast with Overloaded

    Example:
        >>> ProviderLimiterConfig(provider="binance", reservoir=1200,
        ...                       refresh_interval=60, max_concurrent=5)
    """

    provider: str = Field(..., description="Provider identifier")
    reservoir: int = Field(..., gt=0, description="Requests per refresh interval")
    refresh_interval: float = Field(..., gt=0, description="Reservoir refresh interval (seconds)")
    max_concurrent: int = Field(..., ge=1, description="Maximum in-flight requests")
    max_queue: int = Field(default=100, ge=0, description="Maximum queued requests")

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Ensure provider is lowercase"""
        return v.lower()


# ============================================
# Price History
# ============================================

class PriceSample(BaseModel):
    """
    A single price observation.

    Samples are immutable once created; the Price History Store hands out
    tuples of them so readers can never observe a mutation mid-computation.
    """

    symbol: str = Field(..., description="Trading pair symbol in uppercase")
    price: float = Field(..., gt=0, description="Observed price")
    timestamp: datetime = Field(..., description="Observation time (UTC)")

    model_config = ConfigDict(frozen=True)

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        """Canonical form: stripped and uppercase"""
        return normalize_symbol(v)


# ============================================
# Indicators
# ============================================

class IndicatorSnapshot(BaseModel):
    """
    Latest computed value for one indicator period of one symbol.

    Attributes:
        symbol: Trading pair
        family: "rsi" or "sma"
        period: Lookback period (e.g. 14 for RSI-14, 200 for SMA-200)
        value: Current indicator value
        previous_value: Value last broadcast to subscribers (None if never broadcast)
        classification: RSI: overbought/oversold/normal; SMA: above/below
        price: Price the indicator was computed against
        deviation_percent: Price deviation from the average in percent (SMA only)
        strength: weak/moderate/strong (RSI only, None when normal)
        timestamp: Computation time (UTC)

    Notes:
        - Snapshots replace each other per cycle and live only in memory
        - previous_value always refers to the last *broadcast* value, not the
          last computed one
    """

    symbol: str
    family: Literal["rsi", "sma"]
    period: int = Field(..., gt=0)
    value: float
    previous_value: Optional[float] = None
    classification: str
    price: float
    deviation_percent: Optional[float] = None
    strength: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> str:
        """Stable identifier of the indicator, e.g. "rsi_14" or "sma_200"."""
        return f"{self.family}_{self.period}"


# ============================================
# Exchange Observations
# ============================================

class ExchangeObservation(BaseModel):
    """
    One exchange's view of the basis for a symbol.

    Attributes:
        exchange: Source exchange (lowercase)
        symbol: Canonical symbol (e.g. BTCUSDT)
        spot_price: Spot/index price
        derivative_price: Futures or perpetual mark price
        contract_type: "dated" (quarterly future) or "perpetual"
        days_to_expiry: Days until expiry (dated only)
        implied_basis: Annualized basis in percent
        volume_24h: Trailing 24h volume, USD notional
        confidence_prior: Static trust in this exchange (0-1]
        timestamp: Observation time (UTC)
        instrument: Exchange instrument name (e.g. BTC-27DEC24)
        funding_rate: Latest funding rate per interval (perpetual only)

    Example:
        >>> ExchangeObservation(
        ...     exchange="deribit", symbol="BTCUSDT",
        ...     spot_price=50000, derivative_price=51000,
        ...     contract_type="dated", days_to_expiry=73,
        ...     implied_basis=10.0, volume_24h=2.5e8,
        ...     confidence_prior=0.9, timestamp=datetime.now(timezone.utc)
        ... )
    """

    exchange: str
    symbol: str
    spot_price: float = Field(..., gt=0)
    derivative_price: float = Field(..., gt=0)
    contract_type: ContractType
    days_to_expiry: Optional[float] = None
    implied_basis: float
    volume_24h: float = Field(default=0.0, ge=0)
    confidence_prior: float = Field(..., gt=0, le=1)
    timestamp: datetime = Field(default_factory=_utcnow)
    instrument: Optional[str] = None
    funding_rate: Optional[float] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("exchange")
    @classmethod
    def validate_exchange(cls, v: str) -> str:
        """Ensure exchange is lowercase"""
        return v.lower()

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        """Canonical form: stripped and uppercase"""
        return normalize_symbol(v)

    @model_validator(mode="after")
    def check_expiry(self) -> "ExchangeObservation":
        if self.contract_type == "dated" and (self.days_to_expiry is None or self.days_to_expiry <= 0):
            raise ValueError("Dated contracts require a positive days_to_expiry")
        if self.contract_type == "perpetual" and self.days_to_expiry is not None:
            raise ValueError("Perpetual contracts have no expiry")
        return self


# ============================================
# Composite Results
# ============================================

class ExchangeContribution(BaseModel):
    """Weight and contribution of one exchange within a composite."""

    exchange: str
    weight: float
    normalized_basis: float
    contribution: float
    volume_share: float
    prior_share: float

    model_config = ConfigDict(frozen=True)


class RegimeInfo(BaseModel):
    """Named bucket of the composite basis."""

    state: RegimeState
    label: str
    sentiment: str

    model_config = ConfigDict(frozen=True)


class AnomalyReport(BaseModel):
    """
    Result of the typical-range check on a composite basis.

    severity is the distance beyond the violated bound divided by the bound's
    magnitude, capped at a maximum multiple. 0.0 when in range.
    """

    is_anomalous: bool = False
    severity: float = 0.0
    bound: Optional[float] = None
    message: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CompositeResult(BaseModel):
    """
    Reconciled basis across all exchanges that answered in a cycle.

    Attributes:
        symbol: Trading pair
        spot_price: Weighted spot price
        derivative_price: Weighted derivative price
        basis: Weighted normalized annualized basis (percent)
        regime: Regime classification of basis
        contributions: Per-exchange weight and contribution metadata
        agreement: Agreement score (floor..1.0)
        anomaly: Anomaly report
        confidence: Composite confidence (0..max_confidence)
        sources: Exchanges that contributed
        failures: Exchange -> failure reason for this cycle
        data_source: "live", "cached_fallback" or "mock"
        timestamp: Computation time (UTC)

    Notes:
        - Frozen after construction; a new instance is produced every cycle
    """

    symbol: str
    spot_price: float
    derivative_price: float
    basis: float
    regime: RegimeInfo
    contributions: List[ExchangeContribution] = Field(default_factory=list)
    agreement: float
    anomaly: AnomalyReport = Field(default_factory=AnomalyReport)
    confidence: float
    sources: List[str] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)
    data_source: DataSource = "live"
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


# ============================================
# Outbound WebSocket Messages
# ============================================

class OutboundMessage(BaseModel):
    """
    Base for messages pushed to WebSocket clients.

    Field names follow the wire format (camelCase where clients expect it).
    Use to_payload() to obtain the JSON-ready dict.
    """

    type: str
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ConnectionEstablished(OutboundMessage):
    type: Literal["connection_established"] = "connection_established"
    client_id: str = Field(..., alias="clientId")
    supported_symbols: List[str] = Field(default_factory=list, alias="supportedSymbols")


class IndicatorUpdate(OutboundMessage):
    type: Literal["indicator_update"] = "indicator_update"
    symbol: str
    data: Dict[str, Any]


class PriceUpdate(OutboundMessage):
    type: Literal["price_update"] = "price_update"
    symbol: str
    price: float


class BasisUpdate(OutboundMessage):
    type: Literal["basis_update"] = "basis_update"
    symbol: str
    data: Dict[str, Any]


class SubscriptionConfirmed(OutboundMessage):
    type: Literal["subscription_confirmed"] = "subscription_confirmed"
    symbol: str
    topics: List[str]


class UnsubscriptionConfirmed(OutboundMessage):
    type: Literal["unsubscription_confirmed"] = "unsubscription_confirmed"
    symbol: str


class CurrentIndicators(OutboundMessage):
    type: Literal["current_indicators"] = "current_indicators"
    data: Dict[str, Any]


class Pong(OutboundMessage):
    type: Literal["pong"] = "pong"


class ErrorMessage(OutboundMessage):
    type: Literal["error"] = "error"
    message: str
