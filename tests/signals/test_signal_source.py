"""Tests for the SignalSource envelope: cache, single-flight, rate limit, circuit breaker."""

import asyncio
import time

import pytest

from consensus_engine.core.events import EventBus, SourceDisabled
from consensus_engine.errors import SourceFetchError, SourceUnavailableError
from consensus_engine.models.signal import RawSignal, SignalType
from consensus_engine.signals.source import SignalSource
from consensus_engine.signals.stub_source import StubSignalSource


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class ExplodingSource(SignalSource):
    async def _fetch_signal(self, symbol: str) -> RawSignal:
        raise RuntimeError("socket closed")


class TestCache:
    """Cached signals are served without a network call until the TTL expires."""

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self):
        clock = FakeClock()
        source = StubSignalSource("s1", SignalType.BUY, cache_ttl_seconds=300, clock=clock)

        first = await source.get_signal("AAPL")
        clock.now += 299
        second = await source.get_signal("AAPL")

        assert first is second
        assert source.calls == 1
        assert source.fetch_count == 1

    @pytest.mark.asyncio
    async def test_expired_entry_refetched(self):
        clock = FakeClock()
        source = StubSignalSource("s1", SignalType.BUY, cache_ttl_seconds=300, clock=clock)

        await source.get_signal("AAPL")
        clock.now += 300
        source.set_next_signal(SignalType.SELL)
        refreshed = await source.get_signal("AAPL")

        assert refreshed.signal is SignalType.SELL
        assert source.calls == 2

    @pytest.mark.asyncio
    async def test_cache_is_per_symbol(self):
        source = StubSignalSource("s1", SignalType.HOLD)

        await source.get_signal("AAPL")
        await source.get_signal("MSFT")

        assert source.calls == 2
        assert source.get_status()["cached_symbols"] == 2

    @pytest.mark.asyncio
    async def test_clear_cache_forces_fetch(self):
        source = StubSignalSource("s1")
        await source.get_signal("AAPL")
        source.clear_cache()
        await source.get_signal("AAPL")
        assert source.calls == 2


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self):
        source = StubSignalSource("s1", SignalType.BUY, delay_seconds=0.05)

        results = await asyncio.gather(*(source.get_signal("AAPL") for _ in range(5)))

        assert source.calls == 1
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_fetch(self):
        source = StubSignalSource("s1", SignalType.BUY, delay_seconds=0.05)

        impatient = asyncio.create_task(source.get_signal("AAPL"))
        await asyncio.sleep(0.01)
        impatient.cancel()
        signal = await source.get_signal("AAPL")

        assert signal.signal is SignalType.BUY
        assert source.calls == 1


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_network_calls_are_spaced(self):
        source = StubSignalSource("s1", rate_limit_ms=100)

        started = time.monotonic()
        await source.get_signal("AAPL")
        await source.get_signal("MSFT")
        elapsed = time.monotonic() - started

        assert elapsed >= 0.08

    @pytest.mark.asyncio
    async def test_cache_hits_bypass_rate_limit(self):
        source = StubSignalSource("s1", rate_limit_ms=500)

        await source.get_signal("AAPL")
        started = time.monotonic()
        await source.get_signal("AAPL")

        assert time.monotonic() - started < 0.1


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_disables_after_threshold(self):
        bus = EventBus()
        sub = bus.subscribe(SourceDisabled)
        source = StubSignalSource("flaky", failure_threshold=3, event_bus=bus)
        source.fail_with("HTTP 503")

        for _ in range(2):
            with pytest.raises(SourceFetchError, match="HTTP 503"):
                await source.get_signal("AAPL")
        assert source.is_available() is True

        with pytest.raises(SourceFetchError):
            await source.get_signal("AAPL")

        assert source.is_available() is False
        assert source.failure_count == 3
        event = sub.get_nowait()
        assert isinstance(event, SourceDisabled)
        assert event.source == "flaky"
        assert event.failure_count == 3

    @pytest.mark.asyncio
    async def test_disabled_source_fails_fast(self):
        source = StubSignalSource("flaky", failure_threshold=1)
        source.fail_with("boom")
        with pytest.raises(SourceFetchError):
            await source.get_signal("AAPL")

        with pytest.raises(SourceUnavailableError):
            await source.get_signal("AAPL")
        assert source.calls == 1

    @pytest.mark.asyncio
    async def test_stays_disabled_after_provider_recovers(self):
        source = StubSignalSource("flaky", failure_threshold=1)
        source.fail_with("boom")
        with pytest.raises(SourceFetchError):
            await source.get_signal("AAPL")

        source.fail_with(None)
        with pytest.raises(SourceUnavailableError):
            await source.get_signal("AAPL")

    @pytest.mark.asyncio
    async def test_reset_re_enables(self):
        source = StubSignalSource("flaky", SignalType.BUY, failure_threshold=1)
        source.fail_with("boom")
        with pytest.raises(SourceFetchError):
            await source.get_signal("AAPL")

        source.fail_with(None)
        source.reset()

        assert source.is_available() is True
        assert source.failure_count == 0
        assert (await source.get_signal("AAPL")).signal is SignalType.BUY

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        source = StubSignalSource("flaky", failure_threshold=3)
        source.fail_with("boom")
        for symbol in ("A", "B"):
            with pytest.raises(SourceFetchError):
                await source.get_signal(symbol)
        assert source.failure_count == 2

        source.fail_with(None)
        await source.get_signal("C")

        assert source.failure_count == 0
        assert source.is_available() is True

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self):
        source = StubSignalSource("flaky", failure_threshold=5)
        source.fail_with("boom")
        with pytest.raises(SourceFetchError):
            await source.get_signal("AAPL")
        source.fail_with(None)

        await source.get_signal("AAPL")
        assert source.calls == 2


class TestFailureWrapping:
    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        source = StubSignalSource("slow", delay_seconds=0.5, timeout_seconds=0.05)

        with pytest.raises(SourceFetchError, match="timed out"):
            await source.get_signal("AAPL")
        assert source.failure_count == 1
        assert "timed out" in source.last_error

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self):
        source = ExplodingSource("broken", rate_limit_ms=0)

        with pytest.raises(SourceFetchError, match="RuntimeError: socket closed"):
            await source.get_signal("AAPL")
        assert source.get_status()["last_error"] == "RuntimeError: socket closed"
