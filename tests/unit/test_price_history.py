"""
Unit Tests for the Price History Store

These tests verify that PriceHistoryStore:
- Never holds more than `capacity` samples per symbol, evicting the oldest first
- Hands out immutable snapshots
- Seeds from backfill only when no history exists

Run with:
    pytest tests/unit/test_price_history.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from core.schemas import PriceSample
from storage.price_history import PriceHistoryStore


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


class TestIngest:
    """ingest() / snapshot() behaviour"""

    def test_capacity_is_never_exceeded_and_oldest_evicted(self):
        store = PriceHistoryStore(capacity=3)
        for i, price in enumerate([100.0, 101.0, 102.0, 103.0, 104.0]):
            store.ingest("BTCUSDT", price, at(i))
            assert len(store.snapshot("BTCUSDT")) <= 3

        assert store.prices("BTCUSDT") == [102.0, 103.0, 104.0]
        assert store.latest("BTCUSDT").price == 104.0

    def test_snapshot_is_an_immutable_copy(self):
        store = PriceHistoryStore(capacity=5)
        store.ingest("BTCUSDT", 100.0, at(0))

        snapshot = store.snapshot("BTCUSDT")
        store.ingest("BTCUSDT", 101.0, at(1))

        assert isinstance(snapshot, tuple)
        assert len(snapshot) == 1
        with pytest.raises(ValidationError):
            snapshot[0].price = 1.0

    def test_symbols_are_independent_and_normalized(self):
        store = PriceHistoryStore(capacity=2)
        store.ingest("btcusdt", 100.0, at(0))
        store.ingest("ETHUSDT", 2000.0, at(0))
        store.ingest("ETHUSDT", 2001.0, at(1))
        store.ingest("ETHUSDT", 2002.0, at(2))

        assert store.prices("BTCUSDT") == [100.0]
        assert store.prices("ethusdt") == [2001.0, 2002.0]
        assert store.symbols() == ["BTCUSDT", "ETHUSDT"]
        assert len(store) == 2

    def test_padded_symbol_lands_in_the_same_window(self):
        store = PriceHistoryStore()
        store.ingest(" btcusdt ", 100.0, at(0))
        store.ingest("BTCUSDT", 101.0, at(1))

        assert PriceSample(symbol=" ethusdt ", price=1.0, timestamp=T0).symbol == "ETHUSDT"
        assert store.symbols() == ["BTCUSDT"]
        assert store.prices(" btcusdt") == [100.0, 101.0]
        assert store.has_history("BTCUSDT") is True

    def test_unknown_symbol_yields_empty_snapshot(self):
        store = PriceHistoryStore()
        assert store.snapshot("SOLUSDT") == ()
        assert store.latest("SOLUSDT") is None
        assert store.has_history("SOLUSDT") is False

    def test_non_positive_price_rejected(self):
        store = PriceHistoryStore()
        with pytest.raises(ValidationError):
            store.ingest("BTCUSDT", 0.0, at(0))

    def test_invalid_capacity_rejected(self):
        with pytest.raises(ValueError):
            PriceHistoryStore(capacity=0)


class TestBackfill:
    """initialize_from_backfill() behaviour"""

    def test_backfill_seeds_sorted_and_trimmed(self):
        store = PriceHistoryStore(capacity=3)
        samples = [PriceSample(symbol="BTCUSDT", price=100.0 + i, timestamp=at(i)) for i in range(5)]

        assert store.initialize_from_backfill("BTCUSDT", reversed(samples)) is True
        assert store.prices("BTCUSDT") == [102.0, 103.0, 104.0]

    def test_backfill_skipped_when_history_exists(self):
        store = PriceHistoryStore(capacity=3)
        store.ingest("BTCUSDT", 500.0, at(10))
        samples = [PriceSample(symbol="BTCUSDT", price=100.0, timestamp=at(0))]

        assert store.initialize_from_backfill("BTCUSDT", samples) is False
        assert store.prices("BTCUSDT") == [500.0]

    def test_backfill_then_stream_keeps_capacity(self):
        store = PriceHistoryStore(capacity=3)
        samples = [PriceSample(symbol="BTCUSDT", price=100.0 + i, timestamp=at(i)) for i in range(3)]
        store.initialize_from_backfill("BTCUSDT", samples)
        store.ingest("BTCUSDT", 200.0, at(5))

        assert store.prices("BTCUSDT") == [101.0, 102.0, 200.0]

    def test_empty_backfill_does_not_create_history(self):
        store = PriceHistoryStore()
        assert store.initialize_from_backfill("BTCUSDT", []) is False
        assert store.has_history("BTCUSDT") is False
