"""Main entry point for the consensus trading engine."""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from consensus_engine.alerts.telegram import AlertPriority, TelegramAlerter, TelegramConfig
from consensus_engine.config.loader import load_config
from consensus_engine.config.models import EngineConfig
from consensus_engine.core.events import EventBus
from consensus_engine.core.portfolio_ledger import PortfolioLedger
from consensus_engine.core.session import SessionStatus
from consensus_engine.core.trading_loop import TradingLoop
from consensus_engine.errors import BrokerDisconnectedError
from consensus_engine.execution.broker import BrokerAdapter
from consensus_engine.execution.order_manager import OrderManager
from consensus_engine.execution.paper_broker import PaperBroker
from consensus_engine.execution.position_sizer import PositionSizer
from consensus_engine.market_data.feed import PriceFeed
from consensus_engine.market_data.stub_feed import StubPriceFeed
from consensus_engine.monitoring.metrics import MetricsConfig, MetricsService
from consensus_engine.monitoring.sentry_service import SentryConfig, SentryService
from consensus_engine.persistence.models import Base
from consensus_engine.persistence.repository import EngineRepository
from consensus_engine.risk.risk_manager import RiskManager
from consensus_engine.signals.aggregator import SignalAggregator
from consensus_engine.signals.factory import build_sources

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """Everything ``main`` wires together, for running and shutting down."""

    loop: TradingLoop
    event_bus: EventBus
    price_feed: PriceFeed
    broker: BrokerAdapter
    metrics: MetricsService


def build_broker(config: EngineConfig) -> BrokerAdapter:
    """Paper broker, or a ccxt exchange broker in live mode.

    Raises:
        ValueError: Live mode without CONSENSUS_BROKER_API_KEY/CONSENSUS_BROKER_SECRET
    """
    if config.broker.mode == "paper":
        return PaperBroker(starting_cash=config.broker.paper_starting_cash)

    from consensus_engine.execution.ccxt_broker import CcxtBroker

    api_key = os.environ.get("CONSENSUS_BROKER_API_KEY")
    secret = os.environ.get("CONSENSUS_BROKER_SECRET")
    if not api_key or not secret:
        raise ValueError("Live mode requires CONSENSUS_BROKER_API_KEY and CONSENSUS_BROKER_SECRET")
    return CcxtBroker.from_credentials(
        config.broker.exchange_id,
        api_key,
        secret,
        config.session.symbols,
        sandbox=config.broker.sandbox,
    )


def build_price_feed(config: EngineConfig) -> PriceFeed:
    """Stub prices unless CONSENSUS_MARKET_DATA_PROVIDER=ccxt or the broker is live."""
    provider = os.environ.get("CONSENSUS_MARKET_DATA_PROVIDER", "stub")
    if config.broker.mode == "live" or provider == "ccxt":
        from consensus_engine.market_data.ccxt_feed import CcxtPriceFeed

        return CcxtPriceFeed.from_exchange_id(config.broker.exchange_id, sandbox=config.broker.sandbox)
    return StubPriceFeed(default_price=50000.0)


def build_engine(
    config: EngineConfig,
    db_session: Session | None = None,
    *,
    broker: BrokerAdapter | None = None,
    price_feed: PriceFeed | None = None,
    sentry: SentryService | None = None,
    metrics: MetricsService | None = None,
) -> Engine:
    """Construct and wire every component of one engine instance."""
    event_bus = EventBus()
    metrics = metrics or MetricsService(
        MetricsConfig(enabled=config.monitoring.metrics_enabled, port=config.monitoring.metrics_port)
    )
    broker = broker or build_broker(config)
    price_feed = price_feed or build_price_feed(config)
    repository = EngineRepository(db_session) if db_session is not None else None

    starting_cash = config.broker.paper_starting_cash if config.broker.mode == "paper" else config.sizing.account_balance
    ledger = PortfolioLedger(starting_cash, timezone_name=config.session.trading_hours.timezone)

    aggregator = SignalAggregator(
        config.signals,
        build_sources(config.signals, price_feed, config.session.market, event_bus),
        event_bus=event_bus,
        metrics=metrics,
    )
    order_manager = OrderManager(
        broker,
        ledger,
        repository=repository,
        event_bus=event_bus,
        metrics=metrics,
        order_timeout_seconds=config.broker.order_timeout_seconds,
        submit_attempts=config.broker.order_submit_attempts,
    )
    loop = TradingLoop(
        config,
        aggregator=aggregator,
        price_feed=price_feed,
        broker=broker,
        ledger=ledger,
        position_sizer=PositionSizer(config.sizing, account_balance=starting_cash),
        risk_manager=RiskManager(config.risk, metrics=metrics),
        order_manager=order_manager,
        repository=repository,
        event_bus=event_bus,
        metrics=metrics,
        sentry=sentry,
    )
    return Engine(loop=loop, event_bus=event_bus, price_feed=price_feed, broker=broker, metrics=metrics)


async def run_engine(engine: Engine, config: EngineConfig, run_seconds: float | None = None) -> int:
    """
    Run a session until SIGINT/SIGTERM, a terminal status, or ``run_seconds``.

    Returns:
        Process exit code: 0 after a normal stop, 1 after ERROR or emergency stop
    """
    alert_task: asyncio.Task[None] | None = None
    token = os.environ.get("TELEGRAM_BOT_TOKEN", "")
    if config.alerts.telegram_enabled and token and config.alerts.telegram_chat_id:
        alerter = TelegramAlerter(
            TelegramConfig(
                bot_token=token,
                chat_id=config.alerts.telegram_chat_id,
                min_priority=AlertPriority[config.alerts.min_priority],
            )
        )
        alert_task = asyncio.create_task(alerter.consume(engine.event_bus.subscribe()))
        logger.info("✅ Telegram alerts enabled")

    if config.monitoring.start_metrics_server:
        engine.metrics.start_server()

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:  # pragma: no cover
            pass

    try:
        await engine.loop.start()
    except BrokerDisconnectedError as e:
        logger.error(f"❌ {e}")
        return 1

    closed = asyncio.create_task(engine.loop.wait_closed())
    stopper = asyncio.create_task(stop_requested.wait())
    await asyncio.wait({closed, stopper}, timeout=run_seconds, return_when=asyncio.FIRST_COMPLETED)
    stopper.cancel()

    if engine.loop.is_running:
        await engine.loop.stop("shutdown requested")
        await engine.loop.wait_closed()

    if alert_task is not None:
        alert_task.cancel()
    await engine.broker.close()
    await engine.price_feed.close()

    session = engine.loop.session
    stats = engine.loop.get_trading_stats()
    logger.info(
        f"📋 Session {stats['session_id']} {stats['status']}: trades={stats['trades_count']}, "
        f"pnl={stats['total_pnl']:+.2f}, equity={stats['equity']:.2f}"
    )
    if session is not None and session.stop_reason.startswith("emergency stop"):
        return 1
    return 0 if engine.loop.status is SessionStatus.STOPPED else 1


def main() -> int:
    """Main entry point for the trading engine."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    logger.info("🚀 Consensus Engine starting...")

    sentry = SentryService(SentryConfig.from_env())
    if sentry.initialize():
        logger.info(f"✅ Sentry initialized (env={sentry.config.environment})")
    else:
        logger.info("⚠️ Sentry not configured (set SENTRY_DSN to enable)")

    # Load configuration
    try:
        config = load_config()
        logger.info(f"✅ Configuration loaded: mode={config.broker.mode}, symbols={config.session.symbols}")
    except Exception as e:
        logger.error(f"❌ Failed to load configuration: {e}")
        sentry.capture_error(e, context={"phase": "config_load"})
        sentry.flush()
        return 1

    if not any(s.enabled for s in config.signals.sources):
        logger.error("❌ No signal sources configured")
        return 1

    database_url = os.environ.get("DATABASE_URL", "sqlite:///:memory:")
    logger.info(f"📊 Connecting to database: {database_url.split('@')[0]}...")
    try:
        db_engine = create_engine(database_url, echo=False)
        Base.metadata.create_all(db_engine)
        db_session = sessionmaker(bind=db_engine)()
        logger.info("✅ Database connected")
    except Exception as e:
        logger.error(f"❌ Database connection failed: {e}")
        sentry.capture_error(e, context={"phase": "db_connect"})
        sentry.flush()
        return 1

    try:
        engine = build_engine(config, db_session, sentry=sentry)
    except ValueError as e:
        logger.error(f"❌ {e}")
        db_session.close()
        return 1
    logger.info("✅ Engine initialized")

    run_seconds_env = os.environ.get("RUN_SECONDS")
    run_seconds = float(run_seconds_env) if run_seconds_env else None
    try:
        return asyncio.run(run_engine(engine, config, run_seconds))
    except KeyboardInterrupt:
        logger.info("⏸️  Shutdown requested by user")
        return 0
    except Exception as e:
        logger.error(f"❌ Engine error: {e}", exc_info=True)
        sentry.capture_error(e, context={"phase": "trading_loop"})
        return 1
    finally:
        sentry.flush()
        db_session.close()
        logger.info("🛑 Engine stopped")


def run() -> None:
    raise SystemExit(main())


if __name__ == "__main__":  # pragma: no cover
    run()
