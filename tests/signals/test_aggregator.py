"""Tests for SignalAggregator majority voting."""

import pytest
from pydantic import ValidationError

from consensus_engine.config.models import SignalsConfig
from consensus_engine.core.events import EventBus, SignalsAggregated
from consensus_engine.errors import InsufficientSourcesError, SourceFetchError
from consensus_engine.models.signal import AggregatedSignal, RawSignal, SignalType
from consensus_engine.monitoring.metrics import MetricsService
from consensus_engine.signals.aggregator import SignalAggregator
from consensus_engine.signals.stub_source import StubSignalSource


class SymbolFailingSource(StubSignalSource):
    """Answers every symbol except the ones listed."""

    def __init__(self, name: str, failing: set[str], **kwargs):
        super().__init__(name, **kwargs)
        self.failing = failing

    async def _fetch_signal(self, symbol: str) -> RawSignal:
        if symbol in self.failing:
            raise SourceFetchError(self.name, symbol, "no coverage")
        return await super()._fetch_signal(symbol)


def make_sources(*signals: SignalType) -> list[StubSignalSource]:
    return [StubSignalSource(f"src{i}", signal) for i, signal in enumerate(signals)]


def verdict(symbol: str, buy: int, hold: int, sell: int, should_buy: bool) -> AggregatedSignal:
    total = buy + hold + sell
    return AggregatedSignal(
        symbol=symbol,
        total_sources=total,
        buy_signals=buy,
        hold_signals=hold,
        sell_signals=sell,
        buy_percentage=buy / total * 100,
        should_buy=should_buy,
        should_sell=False,
    )


B, H, S = SignalType.BUY, SignalType.HOLD, SignalType.SELL


class TestRequiredVotes:
    @pytest.mark.parametrize("total,required", [(3, 2), (4, 3), (5, 4), (6, 4)])
    def test_vote_table(self, total: int, required: int):
        aggregator = SignalAggregator(SignalsConfig())
        assert aggregator.required_votes(total) == required

    def test_default_ratio_for_unlisted_counts(self):
        aggregator = SignalAggregator(SignalsConfig())
        assert aggregator.vote_ratio(7) == 0.67
        assert aggregator.required_votes(2) == 2
        assert aggregator.required_votes(1) == 1

    def test_custom_ratios(self):
        aggregator = SignalAggregator(SignalsConfig(vote_ratios={3: 1.0}, default_vote_ratio=0.5))
        assert aggregator.required_votes(3) == 3
        assert aggregator.required_votes(4) == 2


class TestAggregateSignals:
    @pytest.mark.asyncio
    async def test_four_of_five_buy(self):
        aggregator = SignalAggregator(SignalsConfig(), make_sources(B, B, B, B, S))

        result = await aggregator.aggregate_signals("7203")

        assert result.total_sources == 5
        assert result.buy_signals == 4
        assert result.buy_percentage == pytest.approx(80.0)
        assert result.should_buy is True
        assert result.should_sell is False
        assert result.verdict is SignalType.BUY

    @pytest.mark.asyncio
    async def test_three_of_five_buy_is_not_enough(self):
        aggregator = SignalAggregator(SignalsConfig(), make_sources(B, B, B, S, S))

        result = await aggregator.aggregate_signals("7203")

        assert result.buy_percentage == pytest.approx(60.0)
        assert result.should_buy is False
        assert result.verdict is SignalType.HOLD

    @pytest.mark.asyncio
    async def test_tie_at_low_ratio_is_hold(self):
        config = SignalsConfig(vote_ratios={}, default_vote_ratio=0.5)
        aggregator = SignalAggregator(config, make_sources(B, B, S, S))

        result = await aggregator.aggregate_signals("7203")

        assert aggregator.required_votes(4) == 2
        assert result.should_buy is False
        assert result.should_sell is False
        assert result.verdict is SignalType.HOLD

    @pytest.mark.asyncio
    async def test_two_of_three_sell(self):
        aggregator = SignalAggregator(SignalsConfig(), make_sources(S, S, H))

        result = await aggregator.aggregate_signals("AAPL")

        assert result.should_sell is True
        assert result.should_buy is False
        assert result.sell_percentage == pytest.approx(200 / 3)

    @pytest.mark.asyncio
    async def test_vote_counts_sum_to_total(self):
        aggregator = SignalAggregator(SignalsConfig(), make_sources(B, H, S, H))

        result = await aggregator.aggregate_signals("AAPL")

        assert result.buy_signals + result.hold_signals + result.sell_signals == result.total_sources
        assert [s.source for s in result.signals] == ["src0", "src1", "src2", "src3"]

    @pytest.mark.asyncio
    async def test_slow_source_excluded_by_deadline(self):
        sources = make_sources(B, B, H)
        sources.append(StubSignalSource("slow", B, delay_seconds=0.3))
        metrics = MetricsService()
        aggregator = SignalAggregator(
            SignalsConfig(aggregation_timeout_seconds=0.05), sources, metrics=metrics
        )

        result = await aggregator.aggregate_signals("AAPL")

        assert result.total_sources == 3
        assert result.should_buy is True  # 2 of 3
        assert metrics.sample("signal_fetches_total", {"source": "slow", "outcome": "timeout"}) == 1

    @pytest.mark.asyncio
    async def test_failed_source_excluded(self):
        sources = make_sources(B, B, H)
        sources[2].fail_with("HTTP 500")
        aggregator = SignalAggregator(SignalsConfig(), sources)

        result = await aggregator.aggregate_signals("AAPL")

        assert result.total_sources == 2
        assert result.should_buy is True  # 2 of 2 at the default ratio

    @pytest.mark.asyncio
    async def test_disabled_source_not_queried(self):
        sources = make_sources(B, B, H)
        sources[2].failure_threshold = 1
        sources[2].fail_with("boom")
        aggregator = SignalAggregator(SignalsConfig(), sources)
        await aggregator.aggregate_signals("AAPL")
        calls_before = sources[2].calls

        await aggregator.aggregate_signals("MSFT")

        assert sources[2].is_available() is False
        assert sources[2].calls == calls_before

    @pytest.mark.asyncio
    async def test_insufficient_sources(self):
        sources = make_sources(B, B, B)
        sources[0].fail_with("down")
        sources[1].fail_with("down")
        aggregator = SignalAggregator(SignalsConfig(min_sources=2), sources)

        with pytest.raises(InsufficientSourcesError) as exc_info:
            await aggregator.aggregate_signals("AAPL")
        assert exc_info.value.responded == 1
        assert exc_info.value.required == 2

    @pytest.mark.asyncio
    async def test_no_sources_registered(self):
        aggregator = SignalAggregator(SignalsConfig())
        with pytest.raises(InsufficientSourcesError):
            await aggregator.aggregate_signals("AAPL")

    @pytest.mark.asyncio
    async def test_publishes_event_and_metrics(self):
        bus = EventBus()
        sub = bus.subscribe(SignalsAggregated)
        metrics = MetricsService()
        aggregator = SignalAggregator(SignalsConfig(), make_sources(B, B, H), event_bus=bus, metrics=metrics)

        await aggregator.aggregate_signals("AAPL")

        event = sub.get_nowait()
        assert event.symbol == "AAPL"
        assert event.should_buy is True
        assert metrics.sample("aggregations_total", {"symbol": "AAPL", "verdict": "buy"}) == 1
        assert metrics.sample("signal_fetches_total", {"source": "src0", "outcome": "ok"}) == 1


class TestAggregateMultiple:
    @pytest.mark.asyncio
    async def test_failed_symbol_omitted(self):
        sources = [
            SymbolFailingSource("a", {"BAD"}, signal=B),
            SymbolFailingSource("b", {"BAD"}, signal=B),
            StubSignalSource("c", B),
        ]
        aggregator = SignalAggregator(SignalsConfig(min_sources=2), sources)

        results = await aggregator.aggregate_multiple_signals(["AAPL", "BAD", "MSFT"])

        assert [r.symbol for r in results] == ["AAPL", "MSFT"]


class TestCandidateSelection:
    def test_filter_buy_sorted_by_percentage(self):
        aggregator = SignalAggregator(SignalsConfig())
        signals = [
            verdict("A", 2, 1, 0, True),
            verdict("B", 4, 0, 0, True),
            verdict("C", 1, 2, 0, False),
        ]

        filtered = aggregator.filter_buy_recommendations(signals)

        assert [s.symbol for s in filtered] == ["B", "A"]

    def test_best_candidate_ties_broken_by_votes_then_sources(self):
        aggregator = SignalAggregator(SignalsConfig())
        three_of_four = verdict("A", 3, 1, 0, True)
        six_of_eight = verdict("B", 6, 2, 0, True)

        assert aggregator.select_best_buy_candidate([three_of_four, six_of_eight]).symbol == "B"

    def test_best_candidate_none_without_buy(self):
        aggregator = SignalAggregator(SignalsConfig())
        assert aggregator.select_best_buy_candidate([verdict("A", 1, 2, 0, False)]) is None
        assert aggregator.select_best_buy_candidate([]) is None

    def test_filter_sell_sorted_by_votes(self):
        aggregator = SignalAggregator(SignalsConfig())
        weak = AggregatedSignal("A", 3, 0, 1, 2, 0.0, False, True)
        strong = AggregatedSignal("B", 4, 0, 0, 4, 0.0, False, True)

        assert [s.symbol for s in aggregator.filter_sell_recommendations([weak, strong])] == ["B", "A"]


class TestRegistration:
    def test_duplicate_name_rejected(self):
        aggregator = SignalAggregator(SignalsConfig(), [StubSignalSource("x")])
        with pytest.raises(ValueError, match="already registered"):
            aggregator.register_source(StubSignalSource("x"))

    def test_unregister(self):
        aggregator = SignalAggregator(SignalsConfig(), [StubSignalSource("x")])
        removed = aggregator.unregister_source("x")
        assert removed is not None
        assert aggregator.sources == []
        assert aggregator.unregister_source("x") is None

    def test_get_stats(self):
        aggregator = SignalAggregator(SignalsConfig(), make_sources(B, H))
        stats = aggregator.get_stats()
        assert stats["registered_sources"] == 2
        assert stats["available_sources"] == 2
        assert stats["sources"][0]["name"] == "src0"


class TestUpdateConfig:
    def test_valid_update(self):
        aggregator = SignalAggregator(SignalsConfig())
        aggregator.update_config(min_sources=3)
        assert aggregator.config.min_sources == 3

    def test_invalid_update_rejected(self):
        aggregator = SignalAggregator(SignalsConfig())
        with pytest.raises(ValidationError):
            aggregator.update_config(vote_ratios={3: 1.5})
        assert aggregator.config.vote_ratios[3] == 0.67
