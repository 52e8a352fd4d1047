"""Base class for external signal providers.

Every provider shares the same envelope around its network call:

- a per-symbol TTL cache, read without touching the network;
- single-flight: concurrent callers for one symbol share one in-flight fetch;
- a rate limiter (``aiolimiter``) plus a one-call-at-a-time semaphore;
- a circuit breaker that disables the source after ``failure_threshold``
  consecutive failures until ``reset()`` is called.

Subclasses implement only ``_fetch_signal``.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from contextlib import nullcontext
from typing import Any, Callable

from aiolimiter import AsyncLimiter

from consensus_engine.core.events import EventBus, SourceDisabled
from consensus_engine.errors import SourceFetchError, SourceUnavailableError
from consensus_engine.models.signal import RawSignal

logger = logging.getLogger(__name__)


class SignalSource(ABC):
    """One provider of BUY/HOLD/SELL opinions."""

    def __init__(
        self,
        name: str,
        *,
        cache_ttl_seconds: float = 300.0,
        rate_limit_ms: int = 1000,
        timeout_seconds: float = 10.0,
        failure_threshold: int = 3,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize source envelope.

        Args:
            name: Unique source name
            cache_ttl_seconds: Lifetime of a cached signal
            rate_limit_ms: Minimum spacing between network calls (0 disables limiting)
            timeout_seconds: Per-call timeout
            failure_threshold: Consecutive failures before the source disables itself
            event_bus: Receives SourceDisabled when the breaker opens
            clock: Monotonic clock used for cache ages
        """
        self.name = name
        self.cache_ttl_seconds = cache_ttl_seconds
        self.rate_limit_ms = rate_limit_ms
        self.timeout_seconds = timeout_seconds
        self.failure_threshold = failure_threshold
        self.event_bus = event_bus
        self._clock = clock

        self._limiter = AsyncLimiter(1, rate_limit_ms / 1000) if rate_limit_ms > 0 else None
        self._semaphore = asyncio.Semaphore(1)
        self._cache: dict[str, tuple[float, RawSignal]] = {}
        self._inflight: dict[str, asyncio.Task[RawSignal]] = {}

        self._failure_count = 0
        self._available = True
        self._fetch_count = 0
        self.last_error: str | None = None

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def fetch_count(self) -> int:
        """Network fetches attempted (cache hits excluded)."""
        return self._fetch_count

    @property
    def disabled_reason(self) -> str:
        return f"disabled after {self.failure_threshold} consecutive failures"

    def is_available(self) -> bool:
        return self._available

    def reset(self) -> None:
        """Re-enable the source, clear its failure count and its cache."""
        was_disabled = not self._available
        self._failure_count = 0
        self._available = True
        self.last_error = None
        self._cache.clear()
        if was_disabled:
            logger.info(f"🔄 Signal source {self.name} re-enabled")

    def clear_cache(self) -> None:
        self._cache.clear()

    def cached_signal(self, symbol: str) -> RawSignal | None:
        """Return a fresh cached signal, or None."""
        entry = self._cache.get(symbol)
        if entry is None:
            return None
        stored_at, signal = entry
        if self._clock() - stored_at >= self.cache_ttl_seconds:
            return None
        return signal

    async def get_signal(self, symbol: str) -> RawSignal:
        """
        Get this source's opinion on a symbol.

        Args:
            symbol: Symbol to evaluate

        Returns:
            RawSignal from cache or a fresh fetch

        Raises:
            SourceUnavailableError: Source is disabled
            SourceFetchError: Network, parse or timeout failure
        """
        if not self._available:
            raise SourceUnavailableError(self.name, self.disabled_reason)

        cached = self.cached_signal(symbol)
        if cached is not None:
            return cached

        task = self._inflight.get(symbol)
        if task is None:
            task = asyncio.create_task(self._fetch_and_record(symbol), name=f"{self.name}:{symbol}")
            self._inflight[symbol] = task
            task.add_done_callback(lambda t, s=symbol: self._on_fetch_done(s, t))

        # A caller that stops waiting must not cancel the shared fetch
        return await asyncio.shield(task)

    def _on_fetch_done(self, symbol: str, task: "asyncio.Task[RawSignal]") -> None:
        if self._inflight.get(symbol) is task:
            del self._inflight[symbol]
        if not task.cancelled():
            # Mark retrieved; waiters that gave up would otherwise trigger a warning
            task.exception()

    async def _fetch_and_record(self, symbol: str) -> RawSignal:
        limiter = self._limiter if self._limiter is not None else nullcontext()
        try:
            async with self._semaphore:
                async with limiter:
                    self._fetch_count += 1
                    signal = await asyncio.wait_for(
                        self._fetch_signal(symbol), timeout=self.timeout_seconds
                    )
        except SourceFetchError as e:
            self._record_failure(e.reason)
            raise
        except asyncio.TimeoutError:
            reason = f"timed out after {self.timeout_seconds}s"
            self._record_failure(reason)
            raise SourceFetchError(self.name, symbol, reason) from None
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            self._record_failure(reason)
            raise SourceFetchError(self.name, symbol, reason) from e

        self._failure_count = 0
        self.last_error = None
        self._cache[symbol] = (self._clock(), signal)
        logger.debug(f"{self.name} {symbol}: {signal.signal.value} ({signal.confidence:.0f})")
        return signal

    def _record_failure(self, reason: str) -> None:
        self._failure_count += 1
        self.last_error = reason
        logger.warning(
            f"⚠️ Signal source {self.name} failure "
            f"{self._failure_count}/{self.failure_threshold}: {reason}"
        )
        if self._available and self._failure_count >= self.failure_threshold:
            self._available = False
            logger.error(f"🔌 Signal source {self.name} {self.disabled_reason}")
            if self.event_bus is not None:
                self.event_bus.publish(
                    SourceDisabled(
                        source=self.name,
                        reason=self.disabled_reason,
                        failure_count=self._failure_count,
                    )
                )

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "available": self._available,
            "failure_count": self._failure_count,
            "last_error": self.last_error,
            "cached_symbols": len(self._cache),
            "fetch_count": self._fetch_count,
        }

    @abstractmethod
    async def _fetch_signal(self, symbol: str) -> RawSignal:
        """
        Fetch a fresh opinion from the provider.

        Args:
            symbol: Symbol to evaluate

        Returns:
            RawSignal tagged with this source's name

        Raises:
            SourceFetchError: Provider answered but the answer was unusable
        """
        ...
