"""
Multi-Exchange Aggregator

Reconciles basis observations from every registered exchange adapter into a
single CompositeResult per symbol.

Cycle:
    1. Fetch one observation per adapter concurrently through the
       CoalescingCache (one fetch per exchange/symbol/time bucket). Each
       adapter sends its REST calls through the ProviderGateway one HTTP
       call at a time, so retries and multi-call observations are counted
    2. Record each failure as a reason string; never fail the whole cycle
       because one exchange failed
    3. No observation at all raises NoDataAvailable
    4. One observation is reshaped as-is (agreement 1.0, confidence = prior)
    5. Two or more are normalized, weighted, checked for agreement and
       anomalies, and combined (see services.basis)

Periodic mode:
    start(symbols) runs one task per symbol every `interval_seconds`. After
    each cycle a basis_update is published on topic "basis:{symbol}" when the
    basis moved by more than the relative threshold, the regime changed, or
    nothing was broadcast for the symbol yet.

Usage:
    aggregator = MultiExchangeAggregator(manager, cache, broadcaster, fallback)
    composite = await aggregator.get_basis("BTCUSDT")   # live or labeled fallback
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from core.errors import NoDataAvailable
from core.exchange_interface import ExchangeAdapter
from core.exchange_manager import ExchangeManager
from core.logging import get_logger
from core.schemas import BasisUpdate, CompositeResult, ExchangeContribution, ExchangeObservation
from core.utils.change import relative_change
from core.utils.symbols import normalize_symbol
from services.basis import (
    agreement_score,
    anomaly_factor,
    classify_regime,
    composite_confidence,
    detect_anomaly,
    normalize_basis,
    reconcile_weights,
)
from services.broadcaster import StreamBroadcaster
from services.fallback import FallbackProducer
from storage.cache import CoalescingCache


@dataclass(frozen=True)
class AggregationConstants:
    """Tunable reconciliation constants (defaults match Settings)."""

    perpetual_factor: float = 1.2
    volume_weight: float = 0.7
    prior_weight: float = 0.3
    agreement_decay: float = 10.0
    agreement_floor: float = 0.3
    typical_min: float = -10.0
    typical_max: float = 25.0
    max_severity: float = 3.0
    anomaly_penalty: float = 0.5
    multi_source_bonus: float = 0.05
    max_confidence: float = 0.95
    observation_ttl: float = 600.0
    broadcast_threshold: float = 0.05

    @classmethod
    def from_settings(cls, config) -> "AggregationConstants":
        return cls(
            perpetual_factor=config.perpetual_basis_factor,
            volume_weight=config.volume_weight,
            prior_weight=config.prior_weight,
            agreement_decay=config.agreement_decay,
            agreement_floor=config.agreement_floor,
            typical_min=config.basis_typical_min,
            typical_max=config.basis_typical_max,
            max_severity=config.anomaly_max_severity,
            anomaly_penalty=config.anomaly_confidence_penalty,
            multi_source_bonus=config.multi_source_bonus,
            max_confidence=config.max_confidence,
            observation_ttl=config.observation_cache_ttl,
            broadcast_threshold=config.basis_broadcast_threshold,
        )


class MultiExchangeAggregator:
    """
    Exchange-agnostic basis reconciliation.

    Attributes:
        manager: Registry of exchange adapters
        cache: Coalescing cache for per-exchange observations
        broadcaster: Destination of basis_update messages (optional)
        fallback: Producer used by get_basis() when every exchange failed (optional)
        constants: Reconciliation constants
        interval_seconds: Cadence of periodic cycles
    """

    def __init__(
        self,
        manager: ExchangeManager,
        cache: CoalescingCache,
        broadcaster: Optional[StreamBroadcaster] = None,
        fallback: Optional[FallbackProducer] = None,
        constants: Optional[AggregationConstants] = None,
        interval_seconds: float = 600.0,
        clock: Optional[Callable[[], float]] = None
    ) -> None:
        self.manager = manager
        self.cache = cache
        self.broadcaster = broadcaster
        self.fallback = fallback
        self.constants = constants or AggregationConstants()
        self.interval_seconds = interval_seconds
        self.clock = clock or time.time

        self._latest: Dict[str, CompositeResult] = {}
        self._last_broadcast: Dict[str, CompositeResult] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = asyncio.Event()
        self._logger = get_logger(__name__)

    # ============================================
    # Observation Fetching
    # ============================================

    def observation_key(self, exchange: str, symbol: str) -> str:
        return CoalescingCache.bucket_key(
            f"observation:{exchange}:{symbol}", self.clock(), self.constants.observation_ttl
        )

    async def _observe(self, adapter: ExchangeAdapter, symbol: str) -> ExchangeObservation:
        key = self.observation_key(adapter.name, symbol)
        return await self.cache.get_or_fetch(
            key, lambda: adapter.fetch_observation(symbol), ttl=self.constants.observation_ttl
        )

    async def collect(self, symbol: str) -> Tuple[List[ExchangeObservation], Dict[str, str]]:
        """
        Fetch one observation per adapter concurrently.

        Returns:
            (observations, failures) where failures maps exchange -> reason
        """
        symbol = normalize_symbol(symbol)
        adapters = [a for a in self.manager.all_adapters() if a.supports("observation")]

        outcomes = await asyncio.gather(
            *(self._observe(adapter, symbol) for adapter in adapters),
            return_exceptions=True
        )

        observations: List[ExchangeObservation] = []
        failures: Dict[str, str] = {}
        for adapter, outcome in zip(adapters, outcomes):
            if isinstance(outcome, ExchangeObservation):
                observations.append(outcome)
            elif isinstance(outcome, Exception):
                failures[adapter.name] = f"{outcome.__class__.__name__}: {outcome}"
                self._logger.warning(f"{adapter.name} observation failed for {symbol}: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                failures[adapter.name] = f"unexpected result type {type(outcome).__name__}"
                self._logger.warning(f"{adapter.name} returned {type(outcome).__name__} for {symbol}")

        return observations, failures

    # ============================================
    # Aggregation
    # ============================================

    async def aggregate(self, symbol: str) -> CompositeResult:
        """
        Reconcile every exchange's view of symbol.

        Raises:
            NoDataAvailable: If no exchange produced an observation
        """
        symbol = normalize_symbol(symbol)
        observations, failures = await self.collect(symbol)

        if not observations:
            self._logger.error(f"No exchange produced data for {symbol}: {failures}")
            raise NoDataAvailable(symbol, failures)

        if len(observations) == 1:
            result = self.from_single(observations[0], failures)
        else:
            result = self.combine(symbol, observations, failures)

        self._latest[symbol] = result
        if self.fallback is not None:
            self.fallback.remember(result)

        self._logger.info(
            f"{symbol} composite basis {result.basis:.2f}% ({result.regime.state}) "
            f"from {', '.join(result.sources)} | agreement={result.agreement:.3f} "
            f"confidence={result.confidence:.3f}"
        )
        return result

    def from_single(self, observation: ExchangeObservation, failures: Dict[str, str]) -> CompositeResult:
        """The lone observation reshaped; its own basis, agreement 1.0, confidence = its prior."""
        basis = observation.implied_basis
        c = self.constants
        return CompositeResult(
            symbol=observation.symbol,
            spot_price=observation.spot_price,
            derivative_price=observation.derivative_price,
            basis=basis,
            regime=classify_regime(basis),
            contributions=[ExchangeContribution(
                exchange=observation.exchange,
                weight=1.0,
                normalized_basis=basis,
                contribution=basis,
                volume_share=1.0 if observation.volume_24h > 0 else 0.0,
                prior_share=1.0,
            )],
            agreement=1.0,
            anomaly=detect_anomaly(basis, c.typical_min, c.typical_max, c.max_severity),
            confidence=observation.confidence_prior,
            sources=[observation.exchange],
            failures=dict(failures),
        )

    def combine(
        self,
        symbol: str,
        observations: List[ExchangeObservation],
        failures: Dict[str, str]
    ) -> CompositeResult:
        """Weighted composite of two or more observations."""
        c = self.constants
        weights = reconcile_weights(observations, c.volume_weight, c.prior_weight)
        normalized = {obs.exchange: normalize_basis(obs, c.perpetual_factor) for obs in observations}

        spot = sum(weights[obs.exchange]["weight"] * obs.spot_price for obs in observations)
        derivative = sum(weights[obs.exchange]["weight"] * obs.derivative_price for obs in observations)
        basis = sum(weights[ex]["weight"] * value for ex, value in normalized.items())

        agreement = agreement_score(list(normalized.values()), c.agreement_decay, c.agreement_floor)
        anomaly = detect_anomaly(basis, c.typical_min, c.typical_max, c.max_severity)
        confidence = composite_confidence(
            [obs.confidence_prior for obs in observations],
            agreement,
            bonus=c.multi_source_bonus,
            max_confidence=c.max_confidence,
        )
        confidence *= anomaly_factor(anomaly.severity, c.max_severity, c.anomaly_penalty)

        contributions = [
            ExchangeContribution(
                exchange=ex,
                weight=weights[ex]["weight"],
                normalized_basis=value,
                contribution=weights[ex]["weight"] * value,
                volume_share=weights[ex]["volume_share"],
                prior_share=weights[ex]["prior_share"],
            )
            for ex, value in normalized.items()
        ]

        return CompositeResult(
            symbol=symbol,
            spot_price=spot,
            derivative_price=derivative,
            basis=basis,
            regime=classify_regime(basis),
            contributions=contributions,
            agreement=agreement,
            anomaly=anomaly,
            confidence=confidence,
            sources=[obs.exchange for obs in observations],
            failures=dict(failures),
        )

    # ============================================
    # Access for Routes
    # ============================================

    def get_composite(self, topic: str) -> Optional[CompositeResult]:
        """Latest live composite for a symbol or "basis:{symbol}" topic, if any."""
        symbol = topic.split(":", 1)[1] if topic.startswith("basis:") else topic
        return self._latest.get(normalize_symbol(symbol))

    async def get_basis(self, symbol: str) -> CompositeResult:
        """
        Live composite, or a labeled fallback when every exchange failed.

        Raises:
            NoDataAvailable: If every exchange failed and no fallback is configured
        """
        try:
            return await self.aggregate(symbol)
        except NoDataAvailable as e:
            if self.fallback is None:
                raise
            return self.fallback.produce(e.symbol, e.failures)

    # ============================================
    # Periodic Cycles
    # ============================================

    def should_broadcast(self, result: CompositeResult) -> bool:
        previous = self._last_broadcast.get(result.symbol)
        if previous is None:
            return True
        if previous.regime.state != result.regime.state:
            return True
        return relative_change(result.basis, previous.basis) > self.constants.broadcast_threshold

    async def run_cycle(self, symbol: str) -> Optional[CompositeResult]:
        """
        Aggregate once and publish a basis_update when the change is significant.

        Returns:
            The composite, or None when every exchange failed this cycle
        """
        symbol = normalize_symbol(symbol)
        lock = self._locks.setdefault(symbol, asyncio.Lock())

        async with lock:
            try:
                result = await self.aggregate(symbol)
            except NoDataAvailable:
                return None

            if self.broadcaster is not None and self.should_broadcast(result):
                message = BasisUpdate(symbol=symbol, data=result.model_dump(mode="json"))
                delivered = await self.broadcaster.publish(f"basis:{symbol}", message.to_payload())
                self._last_broadcast[symbol] = result
                self._logger.info(f"{symbol}: basis_update delivered to {delivered} subscribers")

            return result

    async def start(self, symbols: Iterable[str]) -> None:
        if self._running.is_set():
            return
        self._running.set()
        for symbol in (normalize_symbol(s) for s in symbols):
            self._tasks[symbol] = asyncio.create_task(self._run_symbol(symbol), name=f"basis_{symbol}")
        self._logger.info(
            f"Aggregator started for {', '.join(self._tasks)} (every {self.interval_seconds:.0f}s)"
        )

    async def stop(self) -> None:
        if not self._running.is_set():
            return
        self._logger.info("Stopping aggregator...")
        self._running.clear()
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    async def _run_symbol(self, symbol: str) -> None:
        while self._running.is_set():
            try:
                await self.run_cycle(symbol)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error(f"Aggregation cycle error for {symbol}: {e}")
            await asyncio.sleep(self.interval_seconds)

    def status(self) -> Dict[str, Any]:
        return {
            "exchanges": self.manager.list_exchanges(),
            "symbols": {
                symbol: {
                    "basis": result.basis,
                    "regime": result.regime.state,
                    "confidence": result.confidence,
                    "sources": result.sources,
                    "failures": result.failures,
                    "timestamp": result.timestamp.isoformat(),
                }
                for symbol, result in self._latest.items()
            },
        }
