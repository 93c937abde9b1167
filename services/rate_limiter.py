"""
Rate-Limited Provider Gateway

Per-provider request throttling and queuing over raw upstream calls.

Each provider gets an independent ProviderLimiter:
    - A token reservoir that refills to its full quota at fixed intervals
      (not a smooth leak)
    - A concurrency cap on in-flight requests, independent of the quota
    - A FIFO queue for requests that cannot start yet, bounded by max_queue

ProviderGateway.request() wraps one upstream call:
    - queue=False: fail with RateLimitExceeded instead of waiting
    - Queue at max depth: fail fast with Overloaded
    - Deadline exceeded while queued or in flight: RequestTimeout
    - Any other failure of the call: UpstreamError (provider name kept)

Usage:
    gateway = ProviderGateway(settings.limiter_configs(), default_timeout=15)
    await gateway.start()
    premium = await gateway.request("binance", lambda: client.get_premium_index("BTCUSDT"))
    await gateway.stop()
"""

import asyncio
import contextlib
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from core.errors import GatewayError, Overloaded, RateLimitExceeded, RequestTimeout, UpstreamError
from core.logging import get_logger
from core.schemas import ProviderLimiterConfig


Operation = Callable[[], Awaitable[Any]]


class ProviderLimiter:
    """
    Token reservoir plus concurrency cap for one provider.

    Attributes:
        config: Quota, refresh interval, concurrency cap and queue depth
        tokens: Requests still allowed in the current interval
        running: Requests currently in flight

    Invariants:
        - running never exceeds config.max_concurrent
        - refill() resets tokens to the full quota in one step
        - Waiters are released strictly in arrival order
    """

    def __init__(self, config: ProviderLimiterConfig):
        self.config = config
        self.tokens = config.reservoir
        self.running = 0
        self.errors = 0
        self.completed = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._logger = get_logger(f"{__name__}.{config.provider}")

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def queued(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def _can_start(self) -> bool:
        return self.tokens > 0 and self.running < self.config.max_concurrent

    def _take_slot(self) -> None:
        self.tokens -= 1
        self.running += 1

    async def acquire(self, queue: bool = True) -> None:
        """
        Wait for a token and a concurrency slot.

        Args:
            queue: Wait in the FIFO queue when no slot is free (default).
                   When False, fail immediately instead.

        Raises:
            RateLimitExceeded: No slot free and queue=False
            Overloaded: The queue is already at max depth
        """
        if not self._waiters and self._can_start():
            self._take_slot()
            return

        if not queue:
            raise RateLimitExceeded(self.provider, "quota or concurrency exhausted")

        if self.queued >= self.config.max_queue:
            raise Overloaded(self.provider, f"queue full ({self.config.max_queue} waiting)")

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was granted just before cancellation; give it back
                self.release()
            else:
                with contextlib.suppress(ValueError):
                    self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        """Free a concurrency slot and wake the next waiter(s)."""
        self.running = max(0, self.running - 1)
        self._dispatch()

    def refill(self) -> None:
        """Reset the reservoir to the full quota and wake waiters."""
        self.tokens = self.config.reservoir
        self._dispatch()

    def _dispatch(self) -> None:
        while self._waiters and self._can_start():
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._take_slot()
            waiter.set_result(None)

    async def run_refresh(self) -> None:
        """Refill the reservoir every refresh_interval seconds, forever."""
        while True:
            await asyncio.sleep(self.config.refresh_interval)
            self.refill()
            self._logger.debug(f"Reservoir refilled to {self.config.reservoir}")

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "queued": self.queued,
            "reservoir": self.tokens,
            "quota": self.config.reservoir,
            "max_concurrent": self.config.max_concurrent,
            "completed": self.completed,
            "errors": self.errors,
        }


class ProviderGateway:
    """
    Entry point for every upstream call.

    Attributes:
        limiters: Provider name -> ProviderLimiter
        default_timeout: Deadline (seconds) for queued plus in-flight time

    Example:
        >>> gateway = ProviderGateway({"deribit": ProviderLimiterConfig(
        ...     provider="deribit", reservoir=500, refresh_interval=60, max_concurrent=2)})
        >>> await gateway.start()
        >>> ticker = await gateway.request("deribit", lambda: client.get_ticker("BTC-27DEC24"))
    """

    def __init__(self, configs: Dict[str, ProviderLimiterConfig], default_timeout: float = 15.0):
        self.limiters: Dict[str, ProviderLimiter] = {
            name.lower(): ProviderLimiter(config) for name, config in configs.items()
        }
        self.default_timeout = default_timeout
        self._refresh_tasks: Dict[str, asyncio.Task] = {}
        self._logger = get_logger(__name__)

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        """Start one reservoir refresh task per provider."""
        for name, limiter in self.limiters.items():
            if name not in self._refresh_tasks:
                self._refresh_tasks[name] = asyncio.create_task(
                    limiter.run_refresh(), name=f"limiter_refresh_{name}"
                )
        self._logger.info(f"Provider gateway started for: {', '.join(self.limiters.keys())}")

    async def stop(self) -> None:
        for task in self._refresh_tasks.values():
            task.cancel()
        for task in self._refresh_tasks.values():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._refresh_tasks.clear()
        self._logger.info("Provider gateway stopped")

    # ============================================
    # Requests
    # ============================================

    def limiter(self, provider: str) -> ProviderLimiter:
        """
        Raises:
            ValueError: If the provider has no limiter configured
        """
        name = provider.lower()
        if name not in self.limiters:
            raise ValueError(
                f"Provider '{provider}' is not configured. "
                f"Available providers: {', '.join(self.limiters.keys())}"
            )
        return self.limiters[name]

    async def request(
        self,
        provider: str,
        operation: Operation,
        *,
        queue: bool = True,
        timeout: Optional[float] = None
    ) -> Any:
        """
        Run operation once a token and a concurrency slot are available.

        Args:
            provider: Provider name (e.g. "binance")
            operation: Zero-argument coroutine function performing the call
            queue: Wait for capacity (default) or fail with RateLimitExceeded
            timeout: Deadline in seconds covering queue wait and the call
                     (defaults to default_timeout)

        Returns:
            The operation's result

        Raises:
            RateLimitExceeded, Overloaded, RequestTimeout, UpstreamError
        """
        limiter = self.limiter(provider)
        deadline = timeout if timeout is not None else self.default_timeout

        try:
            return await asyncio.wait_for(self._run(limiter, operation, queue), timeout=deadline)
        except asyncio.TimeoutError:
            limiter.errors += 1
            self._logger.warning(f"{limiter.provider} request exceeded {deadline}s deadline")
            raise RequestTimeout(limiter.provider, f"deadline of {deadline}s exceeded")

    async def _run(self, limiter: ProviderLimiter, operation: Operation, queue: bool) -> Any:
        await limiter.acquire(queue)
        try:
            result = await operation()
        except GatewayError:
            limiter.errors += 1
            raise
        except Exception as e:
            limiter.errors += 1
            raise UpstreamError(limiter.provider, f"{e.__class__.__name__}: {e}") from e
        else:
            limiter.completed += 1
            return result
        finally:
            limiter.release()

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: limiter.stats() for name, limiter in self.limiters.items()}


async def through_gateway(gateway: Optional[ProviderGateway], provider: str, operation: Operation) -> Any:
    """
    Run one raw upstream call through the gateway when one is configured.

    REST clients call this once per HTTP attempt, so retries are counted
    and throttled like any other call.
    """
    if gateway is None:
        return await operation()
    return await gateway.request(provider, operation)
