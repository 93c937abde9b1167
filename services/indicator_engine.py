"""
Indicator Engine

Recomputes RSI and SMA snapshots per symbol on a fixed cadence and decides
which of them are worth pushing to subscribers.

Scheduling:
    - One background task per symbol, sleeping `interval_seconds` between
      cycles; price ticks only feed the PriceHistoryStore
    - Cycles for one symbol are serialized by a per-symbol lock; symbols are
      independent of each other

Broadcast policy (differential updates):
    - A snapshot is forwarded when its indicator was never broadcast, or when
      its relative change from the last *broadcast* value exceeds the family
      threshold (RSI 2%, SMA 1% by default)
    - Sub-threshold snapshots replace the current snapshot but keep the last
      broadcast value, so slow drift still accumulates into a broadcast
    - Forwarded snapshots are published together as one indicator_update on
      topic `symbol`

Usage:
    engine = IndicatorEngine(store, broadcaster)
    await engine.start(["BTCUSDT", "ETHUSDT"])
    ...
    await engine.stop()
"""

import asyncio
import contextlib
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core.errors import InsufficientHistory
from core.logging import get_logger
from core.schemas import IndicatorSnapshot, IndicatorUpdate
from core.utils.change import relative_change
from core.utils.symbols import normalize_symbol
from services.broadcaster import StreamBroadcaster
from services.indicators import classify_ma, classify_rsi, rsi, sma, trend_alignment
from storage.price_history import PriceHistoryStore


class IndicatorEngine:
    """
    Periodic indicator computation with threshold-gated broadcasting.

    Attributes:
        store: Source of price snapshots
        broadcaster: Destination of indicator_update messages
        rsi_periods / ma_periods: Configured lookback periods
        thresholds: Family -> relative change required to broadcast
        interval_seconds: Cadence of the per-symbol cycle
    """

    def __init__(
        self,
        store: PriceHistoryStore,
        broadcaster: StreamBroadcaster,
        rsi_periods: Sequence[int] = (14, 21, 30),
        ma_periods: Sequence[int] = (20, 50, 100, 200),
        rsi_threshold: float = 0.02,
        ma_threshold: float = 0.01,
        interval_seconds: float = 300.0,
        overbought: float = 70.0,
        oversold: float = 30.0
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.rsi_periods = sorted(rsi_periods)
        self.ma_periods = sorted(ma_periods)
        self.thresholds = {"rsi": rsi_threshold, "sma": ma_threshold}
        self.interval_seconds = interval_seconds
        self.overbought = overbought
        self.oversold = oversold

        self._current: Dict[str, Dict[str, IndicatorSnapshot]] = {}
        self._last_broadcast: Dict[str, Dict[str, float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = asyncio.Event()
        self._logger = get_logger(__name__)

    # ============================================
    # Computation
    # ============================================

    def compute(self, symbol: str) -> List[IndicatorSnapshot]:
        """
        Compute every configured period from the current price window.

        Periods without enough history are left out. previous_value carries
        the last broadcast value of that indicator (None if never broadcast).
        """
        symbol = normalize_symbol(symbol)
        prices = self.store.prices(symbol)
        if not prices:
            return []

        price = prices[-1]
        last = self._last_broadcast.get(symbol, {})
        snapshots: List[IndicatorSnapshot] = []

        for period in self.rsi_periods:
            try:
                value = rsi(prices, period)
            except InsufficientHistory as e:
                self._logger.debug(f"{symbol} RSI-{period} skipped: {e}")
                continue
            classification, strength = classify_rsi(value, self.overbought, self.oversold)
            snapshots.append(IndicatorSnapshot(
                symbol=symbol,
                family="rsi",
                period=period,
                value=value,
                previous_value=last.get(f"rsi_{period}"),
                classification=classification,
                strength=strength,
                price=price,
            ))

        for period in self.ma_periods:
            try:
                value = sma(prices, period)
            except InsufficientHistory as e:
                self._logger.debug(f"{symbol} SMA-{period} skipped: {e}")
                continue
            position, deviation = classify_ma(price, value)
            snapshots.append(IndicatorSnapshot(
                symbol=symbol,
                family="sma",
                period=period,
                value=value,
                previous_value=last.get(f"sma_{period}"),
                classification=position,
                deviation_percent=deviation,
                price=price,
            ))

        return snapshots

    def should_broadcast(self, snapshot: IndicatorSnapshot) -> bool:
        if snapshot.previous_value is None:
            return True
        change = relative_change(snapshot.value, snapshot.previous_value)
        return change > self.thresholds[snapshot.family]

    async def run_cycle(self, symbol: str) -> Optional[Dict[str, Any]]:
        """
        One compute-and-maybe-broadcast cycle for a symbol.

        Returns:
            The published indicator_update payload, or None when nothing
            crossed its threshold
        """
        symbol = normalize_symbol(symbol)
        lock = self._locks.setdefault(symbol, asyncio.Lock())

        async with lock:
            snapshots = self.compute(symbol)
            if not snapshots:
                self._logger.debug(f"No indicators computable for {symbol} yet")
                return None

            current = self._current.setdefault(symbol, {})
            forwarded: List[IndicatorSnapshot] = []
            for snapshot in snapshots:
                current[snapshot.key] = snapshot
                if self.should_broadcast(snapshot):
                    forwarded.append(snapshot)

            if not forwarded:
                self._logger.debug(f"{symbol}: {len(snapshots)} indicators below broadcast threshold")
                return None

            last = self._last_broadcast.setdefault(symbol, {})
            for snapshot in forwarded:
                last[snapshot.key] = snapshot.value

            message = IndicatorUpdate(symbol=symbol, data=self._update_data(symbol, forwarded))
            payload = message.to_payload()
            delivered = await self.broadcaster.publish(symbol, payload)

        self._logger.info(
            f"{symbol}: broadcast {len(forwarded)}/{len(snapshots)} indicators to {delivered} subscribers"
        )
        return payload

    def _update_data(self, symbol: str, forwarded: List[IndicatorSnapshot]) -> Dict[str, Any]:
        averages = {
            snap.period: snap.value
            for snap in self._current.get(symbol, {}).values()
            if snap.family == "sma"
        }
        return {
            "price": forwarded[0].price,
            "indicators": {snap.key: snap.model_dump(mode="json") for snap in forwarded},
            "trend": trend_alignment(averages),
        }

    # ============================================
    # Current State
    # ============================================

    def current(self, symbol: str) -> Dict[str, IndicatorSnapshot]:
        """Latest snapshot per indicator key (broadcast or not)."""
        return dict(self._current.get(normalize_symbol(symbol), {}))

    def current_all(self) -> Dict[str, Dict[str, Any]]:
        """JSON-ready latest snapshots for every symbol."""
        return {
            symbol: {key: snap.model_dump(mode="json") for key, snap in snapshots.items()}
            for symbol, snapshots in self._current.items()
        }

    def last_broadcast(self, symbol: str) -> Dict[str, float]:
        return dict(self._last_broadcast.get(normalize_symbol(symbol), {}))

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self, symbols: Iterable[str]) -> None:
        if self._running.is_set():
            return
        self._running.set()
        for symbol in (normalize_symbol(s) for s in symbols):
            self._tasks[symbol] = asyncio.create_task(
                self._run_symbol(symbol), name=f"indicators_{symbol}"
            )
        self._logger.info(
            f"Indicator engine started for {', '.join(self._tasks)} (every {self.interval_seconds:.0f}s)"
        )

    async def stop(self) -> None:
        if not self._running.is_set():
            return
        self._logger.info("Stopping indicator engine...")
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
                self._logger.error(f"Indicator cycle error for {symbol}: {e}")
            await asyncio.sleep(self.interval_seconds)
