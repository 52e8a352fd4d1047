"""Majority-vote aggregation across signal sources.

Every available source is queried concurrently. Sources that fail, are
disabled, or miss the outer deadline do not vote. A symbol gets a verdict only
when at least ``min_sources`` sources answered; BUY (or SELL) wins when its
votes reach ``required_votes(total_sources)``.

Stragglers are not cancelled: their fetch completes in the background and
refreshes the source's cache for the next cycle.
"""

import asyncio
import logging
import math
from typing import TYPE_CHECKING, Any, Iterable

from consensus_engine.config.models import SignalsConfig
from consensus_engine.core.events import EventBus, SignalsAggregated
from consensus_engine.errors import (
    EngineError,
    InsufficientSourcesError,
    SourceFetchError,
    SourceUnavailableError,
)
from consensus_engine.models.signal import AggregatedSignal, RawSignal, SignalType

from .source import SignalSource

if TYPE_CHECKING:
    from consensus_engine.monitoring.metrics import MetricsService

logger = logging.getLogger(__name__)

# Ratios are configured to two decimals (0.67 stands for two thirds)
VOTE_RATIO_TOLERANCE = 0.005


class SignalAggregator:
    """Concurrent fan-out and majority vote over registered sources."""

    def __init__(
        self,
        config: SignalsConfig,
        sources: Iterable[SignalSource] = (),
        event_bus: EventBus | None = None,
        metrics: "MetricsService | None" = None,
    ):
        """
        Initialize aggregator.

        Args:
            config: Vote ratios, timeout and minimum source count
            sources: Initial sources, in voting order
            event_bus: Receives SignalsAggregated after every verdict
            metrics: Optional Prometheus metrics
        """
        self.config = config
        self.event_bus = event_bus
        self.metrics = metrics
        self._sources: dict[str, SignalSource] = {}
        self._background: set[asyncio.Task[RawSignal]] = set()
        for source in sources:
            self.register_source(source)

    @property
    def sources(self) -> list[SignalSource]:
        return list(self._sources.values())

    def register_source(self, source: SignalSource) -> None:
        if source.name in self._sources:
            raise ValueError(f"Signal source '{source.name}' already registered")
        self._sources[source.name] = source

    def unregister_source(self, name: str) -> SignalSource | None:
        return self._sources.pop(name, None)

    def get_source(self, name: str) -> SignalSource | None:
        return self._sources.get(name)

    def vote_ratio(self, total_sources: int) -> float:
        """Required vote fraction for a source count, falling back to the default ratio."""
        return self.config.vote_ratios.get(total_sources, self.config.default_vote_ratio)

    def required_votes(self, total_sources: int) -> int:
        """
        Votes needed for a BUY or SELL verdict.

        The smallest k with k / n >= ratio, allowing for the ratio being
        rounded to two decimals. For n = 3, 4, 5, 6 this gives 2, 3, 4, 4.
        """
        if total_sources <= 0:
            return 0
        ratio = self.vote_ratio(total_sources)
        return max(1, math.ceil(total_sources * (ratio - VOTE_RATIO_TOLERANCE) - 1e-9))

    async def aggregate_signals(self, symbol: str) -> AggregatedSignal:
        """
        Collect one vote per available source and compute the verdict.

        Args:
            symbol: Symbol to evaluate

        Returns:
            AggregatedSignal over the sources that answered in time

        Raises:
            InsufficientSourcesError: Fewer than min_sources answered
        """
        sources = [s for s in self._sources.values() if s.is_available()]
        if not sources:
            raise InsufficientSourcesError(symbol, 0, self.config.min_sources)

        tasks: dict[SignalSource, asyncio.Task[RawSignal]] = {}
        for source in sources:
            task = asyncio.create_task(source.get_signal(symbol), name=f"vote:{source.name}:{symbol}")
            self._background.add(task)
            task.add_done_callback(self._on_background_done)
            tasks[source] = task

        timeout = self.config.aggregation_timeout_seconds
        done, _pending = await asyncio.wait(tasks.values(), timeout=timeout)

        signals: list[RawSignal] = []
        for source, task in tasks.items():
            if task not in done:
                logger.warning(f"⏱️ {source.name} did not answer for {symbol} within {timeout}s")
                self._record_fetch(source.name, "timeout")
                continue
            error = task.exception()
            if error is None:
                signals.append(task.result())
                self._record_fetch(source.name, "ok")
            elif isinstance(error, SourceUnavailableError):
                self._record_fetch(source.name, "unavailable")
            elif isinstance(error, SourceFetchError):
                logger.warning(f"{source.name} excluded for {symbol}: {error.reason}")
                self._record_fetch(source.name, "error")
            else:
                raise error

        if len(signals) < self.config.min_sources:
            logger.warning(
                f"❌ {symbol}: only {len(signals)} of {len(sources)} sources answered, "
                f"{self.config.min_sources} required"
            )
            raise InsufficientSourcesError(symbol, len(signals), self.config.min_sources)

        result = self._tally(symbol, signals)
        self._publish(result)
        return result

    async def aggregate_multiple_signals(self, symbols: list[str]) -> list[AggregatedSignal]:
        """
        Aggregate several symbols; failed symbols are omitted.

        Args:
            symbols: Symbols to evaluate

        Returns:
            Verdicts for the symbols that succeeded, in input order
        """
        outcomes = await asyncio.gather(
            *(self.aggregate_signals(symbol) for symbol in symbols),
            return_exceptions=True,
        )
        results: list[AggregatedSignal] = []
        for symbol, outcome in zip(symbols, outcomes):
            if isinstance(outcome, AggregatedSignal):
                results.append(outcome)
            elif isinstance(outcome, EngineError):
                logger.warning(f"Skipping {symbol}: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome
        return results

    def filter_buy_recommendations(self, signals: list[AggregatedSignal]) -> list[AggregatedSignal]:
        """Entries with should_buy, highest buy percentage first."""
        return sorted(
            (s for s in signals if s.should_buy),
            key=lambda s: s.buy_percentage,
            reverse=True,
        )

    def filter_sell_recommendations(self, signals: list[AggregatedSignal]) -> list[AggregatedSignal]:
        """Entries with should_sell, most sell votes first."""
        return sorted(
            (s for s in signals if s.should_sell),
            key=lambda s: s.sell_signals,
            reverse=True,
        )

    def select_best_buy_candidate(self, signals: list[AggregatedSignal]) -> AggregatedSignal | None:
        """
        Pick the strongest BUY verdict.

        Ranked by buy percentage, then absolute BUY votes, then number of
        responding sources. Returns None when no entry has should_buy.
        """
        candidates = [s for s in signals if s.should_buy]
        if not candidates:
            return None
        return max(candidates, key=lambda s: (s.buy_percentage, s.buy_signals, s.total_sources))

    def get_stats(self) -> dict[str, Any]:
        sources = self.sources
        return {
            "registered_sources": len(sources),
            "available_sources": sum(1 for s in sources if s.is_available()),
            "background_fetches": len(self._background),
            "sources": [s.get_status() for s in sources],
            "config": self.config.model_dump(),
        }

    def update_config(self, **changes: Any) -> SignalsConfig:
        """Replace configuration fields; the merged config is re-validated."""
        self.config = SignalsConfig.model_validate({**self.config.model_dump(), **changes})
        logger.info(f"Aggregator config updated: {sorted(changes)}")
        return self.config

    def _tally(self, symbol: str, signals: list[RawSignal]) -> AggregatedSignal:
        total = len(signals)
        buy_votes = sum(1 for s in signals if s.signal is SignalType.BUY)
        sell_votes = sum(1 for s in signals if s.signal is SignalType.SELL)
        hold_votes = total - buy_votes - sell_votes
        required = self.required_votes(total)

        result = AggregatedSignal(
            symbol=symbol,
            total_sources=total,
            buy_signals=buy_votes,
            hold_signals=hold_votes,
            sell_signals=sell_votes,
            buy_percentage=buy_votes / total * 100,
            should_buy=buy_votes >= required and buy_votes > sell_votes,
            should_sell=sell_votes >= required and sell_votes > buy_votes,
            signals=tuple(signals),
        )
        verdict = result.verdict.value
        logger.info(
            f"🗳️ {symbol}: {buy_votes} buy / {hold_votes} hold / {sell_votes} sell "
            f"of {total} (required {required}) -> {verdict}"
        )
        return result

    def _publish(self, result: AggregatedSignal) -> None:
        if self.metrics is not None:
            self.metrics.record_aggregation(result.symbol, result.verdict.value.lower())
        if self.event_bus is not None:
            self.event_bus.publish(
                SignalsAggregated(
                    symbol=result.symbol,
                    total_sources=result.total_sources,
                    buy_signals=result.buy_signals,
                    hold_signals=result.hold_signals,
                    sell_signals=result.sell_signals,
                    buy_percentage=result.buy_percentage,
                    should_buy=result.should_buy,
                    should_sell=result.should_sell,
                )
            )

    def _record_fetch(self, source: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_signal_fetch(source, outcome)

    def _on_background_done(self, task: "asyncio.Task[RawSignal]") -> None:
        self._background.discard(task)
        if not task.cancelled():
            task.exception()
