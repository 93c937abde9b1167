"""
Price Feed

Keeps the PriceHistoryStore current from the Binance mini-ticker stream.

- On start, every tracked symbol without history is backfilled from Binance
  klines (through the cache; the adapter's client goes through the gateway),
  so indicators are computable immediately instead of after the window fills
- The window holds one sample per backfill interval, stamped with the
  interval's close time like a kline. Ticks inside the interval in progress
  update its running close; the first tick of a new interval appends.
  Ticks for an interval older than the newest sample are not recorded.
- Every tick, recorded or not, is published as a price_update on topic `symbol`
- The stream reconnects on its own; the feed only stops when stopped
"""

import asyncio
import contextlib
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.logging import get_logger
from core.schemas import PriceSample, PriceUpdate
from core.utils.symbols import normalize_symbol
from core.utils.time import interval_seconds, time_bucket, to_utc_datetime
from exchanges.binance import BinanceAdapter, BinanceTickerStream, parse_mini_ticker
from services.broadcaster import StreamBroadcaster
from storage.cache import CoalescingCache
from storage.price_history import PriceHistoryStore


StreamFactory = Callable[[List[str]], Any]


class PriceFeed:
    """
    Backfill plus streaming ingestion for a fixed set of symbols.

    Attributes:
        symbols: Tracked symbols (uppercase)
        backfill_interval: Kline interval used for backfill and for the
                           spacing of streamed samples (e.g. "1h")
        bucket_seconds: backfill_interval in seconds
        backfill_ttl: Cache lifetime of a backfill response (seconds)

    Example:
        >>> feed = PriceFeed(store, broadcaster, cache, BinanceAdapter(gateway=gateway), ["BTCUSDT"])
        >>> await feed.start()
        >>> await feed.stop()
    """

    def __init__(
        self,
        store: PriceHistoryStore,
        broadcaster: StreamBroadcaster,
        cache: CoalescingCache,
        adapter: BinanceAdapter,
        symbols: Iterable[str],
        backfill_interval: str = "1h",
        backfill_ttl: float = 300.0,
        stream_factory: Optional[StreamFactory] = None
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.cache = cache
        self.adapter = adapter
        self.symbols = [normalize_symbol(s) for s in symbols]
        self.backfill_interval = backfill_interval
        self.bucket_seconds = interval_seconds(backfill_interval)
        self.backfill_ttl = backfill_ttl
        self.stream_factory = stream_factory or (lambda symbols: BinanceTickerStream(symbols))

        self.ticks = 0
        self._task: Optional[asyncio.Task] = None
        self._logger = get_logger(__name__)

    # ============================================
    # Backfill
    # ============================================

    async def backfill(self, symbol: str) -> bool:
        """
        Seed a symbol's history from klines if it has none yet.

        Returns:
            bool: True if the window was seeded
        """
        symbol = normalize_symbol(symbol)
        if self.store.has_history(symbol):
            return False

        key = f"klines:{self.adapter.name}:{symbol}:{self.backfill_interval}:{self.store.capacity}"

        try:
            samples = await self.cache.get_or_fetch(
                key,
                lambda: self.adapter.fetch_history(symbol, self.backfill_interval, self.store.capacity),
                ttl=self.backfill_ttl
            )
        except Exception as e:
            self._logger.warning(f"Backfill failed for {symbol}: {e}")
            return False

        return self.store.initialize_from_backfill(symbol, samples)

    async def backfill_all(self) -> Dict[str, bool]:
        results = await asyncio.gather(*(self.backfill(symbol) for symbol in self.symbols))
        return dict(zip(self.symbols, results))

    # ============================================
    # Interval Folding
    # ============================================

    def _bucket(self, sample: PriceSample) -> int:
        return time_bucket(sample.timestamp.timestamp(), self.bucket_seconds)

    def close_of(self, sample: PriceSample) -> PriceSample:
        """sample re-stamped to the last millisecond of its interval."""
        end = to_utc_datetime((self._bucket(sample) + 1) * self.bucket_seconds)
        return sample.model_copy(update={"timestamp": end - timedelta(milliseconds=1)})

    def record(self, sample: PriceSample) -> bool:
        """
        Fold a tick into its symbol's window.

        Returns:
            bool: False if the tick belongs to an interval older than the
                  newest sample and was dropped
        """
        closed = self.close_of(sample)
        latest = self.store.latest(sample.symbol)

        if latest is not None:
            newest = self._bucket(latest)
            bucket = self._bucket(closed)
            if bucket < newest:
                return False
            if bucket == newest:
                self.store.replace_latest(closed)
                return True

        self.store.append(closed)
        return True

    # ============================================
    # Streaming
    # ============================================

    async def handle_message(self, message: Dict[str, Any]) -> Optional[PriceSample]:
        """Record one mini-ticker event and publish it; ignores untracked symbols."""
        sample = parse_mini_ticker(message)
        if sample is None or sample.symbol not in self.symbols:
            return None

        if not self.record(sample):
            self._logger.debug(f"Late tick for {sample.symbol} at {sample.timestamp} not recorded")
        self.ticks += 1

        update = PriceUpdate(symbol=sample.symbol, price=sample.price, timestamp=sample.timestamp)
        await self.broadcaster.publish(sample.symbol, update.to_payload())
        return sample

    async def _consume(self) -> None:
        async with self.stream_factory(self.symbols) as stream:
            async for message in stream.listen():
                try:
                    await self.handle_message(message)
                except Exception as e:
                    self._logger.error(f"Failed to ingest ticker {message.get('s')}: {e}")

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        if self._task is not None:
            return
        seeded = await self.backfill_all()
        self._logger.info(
            f"Price feed backfill: {', '.join(f'{s}={ok}' for s, ok in seeded.items())}"
        )
        self._task = asyncio.create_task(self._consume(), name="price_feed")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._logger.info("Stopping price feed...")
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
