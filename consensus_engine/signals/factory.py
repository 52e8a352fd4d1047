"""Build signal sources from configuration."""

import logging

from consensus_engine.config.models import SignalsConfig, SignalSourceConfig
from consensus_engine.core.events import EventBus
from consensus_engine.market_data.feed import PriceFeed
from consensus_engine.models.signal import SignalType

from .http_source import HttpSignalSource
from .price_action import PriceActionSignalSource
from .source import SignalSource
from .stub_source import StubSignalSource

logger = logging.getLogger(__name__)


def build_source(
    source_config: SignalSourceConfig,
    failure_threshold: int,
    price_feed: PriceFeed,
    market: str,
    event_bus: EventBus | None = None,
) -> SignalSource:
    """Instantiate one configured source."""
    common = dict(
        cache_ttl_seconds=source_config.cache_ttl_seconds,
        rate_limit_ms=source_config.rate_limit_ms,
        timeout_seconds=source_config.timeout_seconds,
        failure_threshold=failure_threshold,
        event_bus=event_bus,
    )
    if source_config.kind == "http":
        assert source_config.url is not None
        return HttpSignalSource(
            source_config.name,
            source_config.url,
            signal_field=source_config.signal_field,
            confidence_field=source_config.confidence_field,
            reason_field=source_config.reason_field,
            **common,
        )
    if source_config.kind == "price_action":
        return PriceActionSignalSource(source_config.name, price_feed, market=market, **common)
    return StubSignalSource(
        source_config.name,
        signal=SignalType(source_config.fixed_signal),
        **common,
    )


def build_sources(
    config: SignalsConfig,
    price_feed: PriceFeed,
    market: str,
    event_bus: EventBus | None = None,
) -> list[SignalSource]:
    """Instantiate every enabled source, in configuration order."""
    sources = [
        build_source(sc, config.failure_threshold, price_feed, market, event_bus)
        for sc in config.sources
        if sc.enabled
    ]
    logger.info(f"✅ {len(sources)} signal sources registered: {[s.name for s in sources]}")
    return sources
