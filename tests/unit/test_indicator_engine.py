"""
Unit Tests for the Indicator Engine

These tests verify that IndicatorEngine:
- Broadcasts every indicator the first time it is computed
- Suppresses sub-threshold changes for any number of consecutive cycles
- Broadcasts once the change from the last *broadcast* value crosses the threshold
- Omits periods with insufficient history
- Serializes cycles per symbol

Run with:
    pytest tests/unit/test_indicator_engine.py -v
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from services.broadcaster import StreamBroadcaster
from services.indicator_engine import IndicatorEngine
from storage.price_history import PriceHistoryStore


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeSocket:
    """Records every JSON payload sent to it"""

    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


def feed(store: PriceHistoryStore, symbol: str, prices, start: int = 0) -> None:
    for i, price in enumerate(prices):
        store.ingest(symbol, price, T0 + timedelta(minutes=start + i))


@pytest.fixture
def setup():
    store = PriceHistoryStore(capacity=250)
    broadcaster = StreamBroadcaster()
    socket = FakeSocket()
    broadcaster.register("client-1", socket)
    broadcaster.subscribe("client-1", "BTCUSDT")
    return store, broadcaster, socket


def updates(socket: FakeSocket):
    return [m for m in socket.sent if m["type"] == "indicator_update"]


# ============================================
# Broadcast Policy
# ============================================

class TestBroadcastPolicy:
    """Differential updates against the last broadcast value"""

    @pytest.mark.asyncio
    async def test_first_cycle_broadcasts_everything(self, setup):
        store, broadcaster, socket = setup
        engine = IndicatorEngine(store, broadcaster, rsi_periods=[3], ma_periods=[5])
        feed(store, "BTCUSDT", [100.0, 101.0, 100.5, 102.0, 101.5, 103.0])

        payload = await engine.run_cycle("BTCUSDT")

        assert payload["type"] == "indicator_update"
        assert payload["symbol"] == "BTCUSDT"
        assert set(payload["data"]["indicators"]) == {"rsi_3", "sma_5"}
        assert payload["data"]["indicators"]["sma_5"]["previous_value"] is None
        assert payload["data"]["price"] == 103.0
        assert "trend" in payload["data"]
        assert len(updates(socket)) == 1

    @pytest.mark.asyncio
    async def test_sub_threshold_changes_never_broadcast(self, setup):
        store, broadcaster, socket = setup
        engine = IndicatorEngine(store, broadcaster, rsi_periods=[], ma_periods=[5])
        feed(store, "BTCUSDT", [100.0] * 5)
        await engine.run_cycle("BTCUSDT")

        for cycle in range(25):
            feed(store, "BTCUSDT", [100.05], start=10 + cycle)
            assert await engine.run_cycle("BTCUSDT") is None

        assert len(updates(socket)) == 1
        # Current snapshot moved on; last broadcast value did not
        assert engine.current("BTCUSDT")["sma_5"].value == pytest.approx(100.05)
        assert engine.last_broadcast("BTCUSDT")["sma_5"] == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_crossing_threshold_broadcasts_with_previous_value(self, setup):
        store, broadcaster, socket = setup
        engine = IndicatorEngine(store, broadcaster, rsi_periods=[], ma_periods=[5])
        feed(store, "BTCUSDT", [100.0] * 5)
        await engine.run_cycle("BTCUSDT")

        # SMA-5 becomes 102 (+2%, above the 1% threshold)
        feed(store, "BTCUSDT", [110.0], start=10)
        payload = await engine.run_cycle("BTCUSDT")

        snapshot = payload["data"]["indicators"]["sma_5"]
        assert snapshot["value"] == pytest.approx(102.0)
        assert snapshot["previous_value"] == pytest.approx(100.0)
        assert snapshot["classification"] == "above"
        assert len(updates(socket)) == 2

    @pytest.mark.asyncio
    async def test_slow_drift_accumulates_into_broadcast(self, setup):
        store, broadcaster, socket = setup
        engine = IndicatorEngine(store, broadcaster, rsi_periods=[], ma_periods=[1])
        feed(store, "BTCUSDT", [100.0])
        await engine.run_cycle("BTCUSDT")

        # +0.6% each step: first step suppressed, second crosses 1% cumulatively
        feed(store, "BTCUSDT", [100.6], start=1)
        assert await engine.run_cycle("BTCUSDT") is None
        feed(store, "BTCUSDT", [101.2], start=2)
        assert await engine.run_cycle("BTCUSDT") is not None

    @pytest.mark.asyncio
    async def test_only_changed_families_are_forwarded(self, setup):
        store, broadcaster, socket = setup
        engine = IndicatorEngine(store, broadcaster, rsi_periods=[3], ma_periods=[5])
        feed(store, "BTCUSDT", [100.0, 101.0, 100.0, 101.0, 100.0, 101.0])
        await engine.run_cycle("BTCUSDT")

        # Same alternation continues: SMA barely moves, RSI swings
        feed(store, "BTCUSDT", [100.0], start=10)
        payload = await engine.run_cycle("BTCUSDT")

        assert payload is not None
        assert "rsi_3" in payload["data"]["indicators"]
        assert "sma_5" not in payload["data"]["indicators"]


# ============================================
# History & State
# ============================================

class TestHistoryAndState:
    """Insufficient history and exposed state"""

    @pytest.mark.asyncio
    async def test_insufficient_history_omits_period(self, setup):
        store, broadcaster, socket = setup
        engine = IndicatorEngine(store, broadcaster, rsi_periods=[14], ma_periods=[3, 200])
        feed(store, "BTCUSDT", [100.0, 101.0, 102.0])

        payload = await engine.run_cycle("BTCUSDT")

        assert set(payload["data"]["indicators"]) == {"sma_3"}

    @pytest.mark.asyncio
    async def test_no_history_yields_nothing(self, setup):
        store, broadcaster, socket = setup
        engine = IndicatorEngine(store, broadcaster)

        assert await engine.run_cycle("BTCUSDT") is None
        assert socket.sent == []

    @pytest.mark.asyncio
    async def test_current_all_is_json_ready(self, setup):
        store, broadcaster, socket = setup
        engine = IndicatorEngine(store, broadcaster, rsi_periods=[3], ma_periods=[5])
        feed(store, "BTCUSDT", [100.0, 101.0, 100.5, 102.0, 101.5, 103.0])
        await engine.run_cycle("BTCUSDT")

        current = engine.current_all()

        assert set(current["BTCUSDT"]) == {"rsi_3", "sma_5"}
        assert isinstance(current["BTCUSDT"]["sma_5"]["timestamp"], str)

    @pytest.mark.asyncio
    async def test_rsi_classification_in_snapshot(self, setup):
        store, broadcaster, socket = setup
        engine = IndicatorEngine(store, broadcaster, rsi_periods=[14], ma_periods=[])
        feed(store, "BTCUSDT", [100.0 + i for i in range(20)])

        await engine.run_cycle("BTCUSDT")
        snapshot = engine.current("BTCUSDT")["rsi_14"]

        assert snapshot.value == 100.0
        assert snapshot.classification == "overbought"
        assert snapshot.strength == "strong"


# ============================================
# Scheduling
# ============================================

class TestScheduling:
    """Per-symbol serialization and lifecycle"""

    @pytest.mark.asyncio
    async def test_concurrent_cycles_for_one_symbol_broadcast_once(self, setup):
        store, broadcaster, socket = setup
        engine = IndicatorEngine(store, broadcaster, rsi_periods=[], ma_periods=[5])
        feed(store, "BTCUSDT", [100.0] * 5)

        results = await asyncio.gather(engine.run_cycle("BTCUSDT"), engine.run_cycle("BTCUSDT"))

        assert sum(1 for r in results if r is not None) == 1
        assert len(updates(socket)) == 1

    @pytest.mark.asyncio
    async def test_start_runs_first_cycle_and_stop_cancels(self, setup):
        store, broadcaster, socket = setup
        engine = IndicatorEngine(store, broadcaster, rsi_periods=[], ma_periods=[5], interval_seconds=3600)
        feed(store, "BTCUSDT", [100.0] * 5)

        await engine.start(["btcusdt"])
        await asyncio.sleep(0.01)
        await engine.stop()

        assert len(updates(socket)) == 1
        assert engine._tasks == {}
