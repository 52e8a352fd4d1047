"""Stub signal source returning controllable signals for testing."""

import asyncio
from typing import Any

from consensus_engine.errors import SourceFetchError
from consensus_engine.models.signal import RawSignal, SignalType

from .source import SignalSource


class StubSignalSource(SignalSource):
    """Source whose answer, latency and failures are set by the caller."""

    def __init__(
        self,
        name: str,
        signal: SignalType = SignalType.HOLD,
        confidence: float = 70.0,
        delay_seconds: float = 0.0,
        **kwargs: Any,
    ):
        """
        Initialize stub source.

        Args:
            name: Source name
            signal: Signal returned by every fetch
            confidence: Confidence returned by every fetch
            delay_seconds: Simulated network latency
            **kwargs: Forwarded to SignalSource
        """
        kwargs.setdefault("rate_limit_ms", 0)
        super().__init__(name, **kwargs)
        self._next_signal = signal
        self._confidence = confidence
        self.delay_seconds = delay_seconds
        self._failure: str | None = None
        self.calls = 0

    def set_next_signal(self, signal_type: SignalType, confidence: float | None = None) -> None:
        """
        Set the signal to return on the next fetch.

        Args:
            signal_type: Signal type to return
            confidence: Optional new confidence
        """
        self._next_signal = signal_type
        if confidence is not None:
            self._confidence = confidence

    def fail_with(self, reason: str | None) -> None:
        """Make subsequent fetches fail with ``reason``; None restores success."""
        self._failure = reason

    async def _fetch_signal(self, symbol: str) -> RawSignal:
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self._failure is not None:
            raise SourceFetchError(self.name, symbol, self._failure)
        return RawSignal(
            source=self.name,
            symbol=symbol,
            signal=self._next_signal,
            confidence=self._confidence,
            reason="stub",
        )
