"""Session scheduler driving consensus trading cycles.

Two timers share one tick lock so a trading cycle and a monitoring check
never run at the same time; a tick that finds the lock held is skipped.

Cycle (in the trading window):
    refresh pending orders -> prices -> mark to market
    -> [ACTIVE only] aggregate signals -> sell-consensus exits
       -> best BUY candidate -> size -> risk gate -> submit
    -> reconcile broker positions -> stop-loss / take-profit exits
    -> breach check

Monitoring: breach check (emergency stop when enabled) and broker health
(bounded reconnect, then ERROR).
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from consensus_engine.config.models import EngineConfig
from consensus_engine.core.events import EmergencyStop, EventBus, RiskAlert, SessionStatusChanged
from consensus_engine.core.portfolio_ledger import LedgerPosition, PortfolioLedger
from consensus_engine.core.reconnect import ReconnectSupervisor
from consensus_engine.core.session import SessionStatus, TradingSession
from consensus_engine.core.trading_hours import TradingHours
from consensus_engine.errors import BrokerDisconnectedError, ConnectivityError, EngineError
from consensus_engine.execution.broker import BrokerAdapter
from consensus_engine.execution.order_manager import OrderManager
from consensus_engine.execution.position_sizer import PositionSizer
from consensus_engine.market_data.feed import PriceFeed
from consensus_engine.market_data.statistics import annualized_volatility_pct
from consensus_engine.models.order import OrderRequest, OrderSide
from consensus_engine.models.signal import AggregatedSignal
from consensus_engine.risk.risk_manager import RiskBreach, RiskManager
from consensus_engine.signals.aggregator import SignalAggregator

if TYPE_CHECKING:
    from consensus_engine.monitoring.metrics import MetricsService
    from consensus_engine.monitoring.sentry_service import SentryService
    from consensus_engine.persistence.repository import EngineRepository

logger = logging.getLogger(__name__)


class TradingLoop:
    """Owns one trading session and everything a cycle touches."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        aggregator: SignalAggregator,
        price_feed: PriceFeed,
        broker: BrokerAdapter,
        ledger: PortfolioLedger,
        position_sizer: PositionSizer,
        risk_manager: RiskManager,
        order_manager: OrderManager,
        reconnect: ReconnectSupervisor | None = None,
        repository: "EngineRepository | None" = None,
        event_bus: EventBus | None = None,
        metrics: "MetricsService | None" = None,
        sentry: "SentryService | None" = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize trading loop.

        Args:
            config: Engine configuration
            aggregator: Consensus over the registered signal sources
            price_feed: Current prices and daily history
            broker: Broker adapter
            ledger: Session portfolio ledger
            position_sizer: Integrated position sizing
            risk_manager: Order risk gate and breach detection
            order_manager: Order submission and fill reconciliation
            reconnect: Broker reconnect supervisor (built from config if omitted)
            repository: Audit store
            event_bus: Engine event channel
            metrics: Prometheus metrics
            sentry: Error reporting
            clock: Returns the current aware datetime
        """
        self.config = config
        self.aggregator = aggregator
        self.price_feed = price_feed
        self.broker = broker
        self.ledger = ledger
        self.position_sizer = position_sizer
        self.risk_manager = risk_manager
        self.order_manager = order_manager
        self.reconnect = reconnect or ReconnectSupervisor(
            broker,
            interval_seconds=config.broker.reconnect_interval_seconds,
            max_retries=config.broker.max_retries,
            event_bus=event_bus,
        )
        self.repository = repository
        self.event_bus = event_bus
        self.metrics = metrics
        self.sentry = sentry
        self.trading_hours = TradingHours(config.session.trading_hours)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.session: TradingSession | None = None
        self.sessions_started = 0
        self.cycles_run = 0
        self.ticks_skipped = 0
        self._tick_lock = asyncio.Lock()
        self._cycle_task: asyncio.Task[None] | None = None
        self._monitor_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus | None:
        return self.session.status if self.session is not None else None

    @property
    def is_running(self) -> bool:
        return self.session is not None and self.session.is_running

    async def start(self, schedule: bool = True) -> TradingSession:
        """
        Start a new session.

        A repeat start while a session is ACTIVE or PAUSED logs a warning and
        returns the running session. After STOPPED or ERROR a fresh session
        is created.

        Args:
            schedule: Spawn the cycle and monitoring timers

        Raises:
            BrokerDisconnectedError: Broker could not be initialized
        """
        if self.session is not None and self.session.is_running:
            logger.warning(f"Session {self.session.id} already {self.session.status.value}; start ignored")
            return self.session

        session = TradingSession()
        self._log_session(session)

        if not await self._initialize_broker():
            session.transition_to(SessionStatus.STOPPED, "broker unavailable at start")
            self._log_session(session)
            raise BrokerDisconnectedError(self.config.broker.max_retries)

        self.session = session
        self.sessions_started += 1
        self.order_manager.session_id = session.id
        self.order_manager.accepting_entries = True
        self._transition(SessionStatus.ACTIVE, "started")
        logger.info(
            f"🚀 Session {session.id} started: symbols={self.config.session.symbols}, "
            f"window={self.trading_hours.describe()}"
        )
        if self.sentry is not None:
            self.sentry.set_session_context(
                session.id, self.config.broker.mode, self.config.session.symbols, self.ledger.equity
            )

        if schedule:
            self._cycle_task = asyncio.create_task(
                self._timer(self.run_cycle, self.config.session.cycle_interval_seconds, "cycle"),
                name=f"cycle:{session.id}",
            )
            self._monitor_task = asyncio.create_task(
                self._timer(self.run_monitoring, self.config.session.monitoring_interval_seconds, "monitor"),
                name=f"monitor:{session.id}",
            )
        return session

    async def _initialize_broker(self) -> bool:
        try:
            if await self.broker.initialize():
                return True
        except ConnectivityError as e:
            logger.warning(f"Broker initialize failed: {e}")
        return await self.reconnect.reconnect()

    def pause(self) -> bool:
        """ACTIVE -> PAUSED; a no-op in any other status."""
        if self.session is None or self.session.status is not SessionStatus.ACTIVE:
            logger.info(f"Pause ignored in status {self.status.value if self.status else 'none'}")
            return False
        self._transition(SessionStatus.PAUSED, "paused")
        return True

    def resume(self) -> bool:
        """PAUSED -> ACTIVE; a no-op in any other status."""
        if self.session is None or self.session.status is not SessionStatus.PAUSED:
            logger.info(f"Resume ignored in status {self.status.value if self.status else 'none'}")
            return False
        self._transition(SessionStatus.ACTIVE, "resumed")
        return True

    async def stop(self, reason: str = "manual stop") -> bool:
        """
        Stop the session; a no-op when already STOPPED or ERROR.

        Open orders are cancelled; open positions are kept.
        """
        if self.session is None or self.session.status.is_terminal:
            return False
        self._transition(SessionStatus.STOPPED, reason)
        self.order_manager.accepting_entries = False
        await self.order_manager.cancel_pending(reason)
        self._cancel_timers()
        logger.info(f"🛑 Session {self.session.id} stopped: {reason}")
        return True

    async def emergency_stop(self, reason: str) -> int:
        """
        Stop immediately, cancelling pending order submissions.

        Returns:
            Number of cancelled orders
        """
        session = self.session
        if session is None or session.status.is_terminal:
            return 0

        logger.error(f"🚨 EMERGENCY STOP: {reason}")
        self._transition(SessionStatus.STOPPED, f"emergency stop: {reason}")
        self.order_manager.accepting_entries = False
        cancelled = await self.order_manager.cancel_pending(f"emergency stop: {reason}")
        self._cancel_timers()
        self._publish(EmergencyStop(session_id=session.id, reason=reason, cancelled_orders=cancelled))
        if self.sentry is not None:
            self.sentry.capture_warning(f"Emergency stop: {reason}", context=self.get_trading_stats())
        return cancelled

    async def wait_closed(self) -> None:
        """Wait for the timers to finish."""
        tasks = [t for t in (self._cycle_task, self._monitor_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _transition(self, new_status: SessionStatus, reason: str = "") -> None:
        assert self.session is not None
        previous = self.session.transition_to(new_status, reason)
        self._refresh_session_totals()
        self._log_session(self.session)
        self._publish(
            SessionStatusChanged(
                session_id=self.session.id,
                previous=previous.value,
                current=new_status.value,
                reason=reason,
            )
        )
        if self.metrics is not None:
            self.metrics.set_session_status(new_status.value)
        logger.info(f"Session {self.session.id}: {previous.value} -> {new_status.value} {reason}".rstrip())

    def _log_session(self, session: TradingSession) -> None:
        if self.repository is not None:
            self.repository.log_session_status(session.to_record())

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in (self._cycle_task, self._monitor_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _timer(self, tick: Callable[[], Awaitable[Any]], interval: float, name: str) -> None:
        while self.is_running:
            await self._guarded_tick(tick, name)
            if not self.is_running:
                break
            await asyncio.sleep(interval)

    async def _guarded_tick(self, tick: Callable[[], Awaitable[Any]], name: str) -> None:
        if self._tick_lock.locked():
            self.ticks_skipped += 1
            logger.debug(f"{name} tick skipped: previous tick still running")
            return
        async with self._tick_lock:
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Unhandled error in {name} tick: {e}")
                if self.sentry is not None:
                    self.sentry.capture_error(e, context={"tick": name}, tags={"component": "trading_loop"})

    # ------------------------------------------------------------------
    # Trading cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> bool:
        """
        Run one trading cycle.

        Returns:
            False when the cycle was a no-op (no running session, or outside
            the trading window)
        """
        session = self.session
        if session is None or not session.is_running:
            return False
        if self.config.session.enforce_trading_hours and not self.trading_hours.is_open(self._clock()):
            logger.debug("Outside trading hours, cycle skipped")
            return False

        started = time.perf_counter()
        entries_allowed = session.status is SessionStatus.ACTIVE
        self.cycles_run += 1

        try:
            if self.sentry is not None:
                with self.sentry.transaction("cycle", "trading_cycle"):
                    await self._cycle_steps(entries_allowed)
            else:
                await self._cycle_steps(entries_allowed)
        except ConnectivityError as e:
            logger.warning(f"Broker connectivity lost during cycle: {e}")
            await self.handle_connectivity_loss(str(e))
            return True

        if self.is_running:
            await self.enforce_limits()
        self._after_tick()
        if self.metrics is not None:
            self.metrics.observe_cycle_duration(time.perf_counter() - started)
        return True

    async def _cycle_steps(self, entries_allowed: bool) -> None:
        await self.order_manager.refresh_pending()

        prices = await self._fetch_prices()
        self.ledger.mark_to_market(prices)

        if entries_allowed:
            tradable = [s for s in self.config.session.symbols if s in prices]
            verdicts = await self.aggregator.aggregate_multiple_signals(tradable)
            await self._signal_exits(verdicts)
            await self._entry(verdicts, prices)
            if not self.is_running:
                return

        await self._reconcile_positions()
        await self._protective_exits()

    async def _fetch_prices(self) -> dict[str, float]:
        symbols = list(dict.fromkeys([*self.config.session.symbols, *self.ledger.positions]))
        market = self.config.session.market
        prices: dict[str, float] = {}
        for symbol in symbols:
            price = await self.price_feed.get_current_price(symbol, market)
            if price is None or price <= 0:
                logger.warning(f"No price for {symbol}, skipping this cycle")
                continue
            prices[symbol] = price
        return prices

    async def _signal_exits(self, verdicts: list[AggregatedSignal]) -> None:
        for verdict in self.aggregator.filter_sell_recommendations(verdicts):
            position = self.ledger.get_position(verdict.symbol)
            if position is None:
                self._record_decision(verdict)
                continue
            logger.info(f"📉 Sell consensus on held {verdict.symbol} ({verdict.sell_signals}/{verdict.total_sources})")
            self._record_decision(verdict, reason="sell consensus exit")
            await self._exit(position, "signal_exit")

    async def _entry(self, verdicts: list[AggregatedSignal], prices: dict[str, float]) -> None:
        for verdict in verdicts:
            if not verdict.should_buy and not verdict.should_sell:
                self._record_decision(verdict)

        candidates = [
            v for v in self.aggregator.filter_buy_recommendations(verdicts)
            if not self.ledger.has_position(v.symbol) and not self.ledger.has_pending(v.symbol)
        ]
        for verdict in self.aggregator.filter_buy_recommendations(verdicts):
            if verdict not in candidates:
                self._record_decision(verdict, reason="position already open")

        best = self.aggregator.select_best_buy_candidate(candidates)
        if best is None:
            return
        for verdict in candidates:
            if verdict is not best:
                self._record_decision(verdict, reason="not the best candidate")

        try:
            await self._open_position(best, prices[best.symbol])
        except ConnectivityError:
            raise
        except EngineError as e:
            logger.warning(f"Entry for {best.symbol} skipped: {e}")

    async def _open_position(self, verdict: AggregatedSignal, price: float) -> None:
        symbol = verdict.symbol
        history = await self.price_feed.get_historical_data(
            symbol, self.config.session.market, self.config.session.history_days
        )
        if not history:
            logger.warning(f"No price history for {symbol}, entry skipped")
            self._record_decision(verdict, entry_price=price, reason="no price history")
            return

        volatility = annualized_volatility_pct(history)
        stop_loss, take_profit = self.risk_manager.stop_and_target(price)
        win_rate, avg_win, avg_loss = self._win_stats()

        snapshot = self.ledger.snapshot()
        if snapshot.equity > 0:
            self.position_sizer.update_balance(snapshot.equity)
        limits = self.risk_manager.constraints
        self.position_sizer.set_limits(limits.max_position_size, limits.max_portfolio_risk_pct)
        sizing = self.position_sizer.calculate_integrated(
            price,
            stop_loss,
            volatility,
            win_rate,
            avg_win,
            avg_loss,
            portfolio_risk_used=snapshot.open_risk,
        )
        if self.metrics is not None:
            self.metrics.record_sizing(sizing.method, sizing.recommended_size)

        decision_fields: dict[str, Any] = {
            "entry_price": price,
            "recommended_size": sizing.recommended_size,
            "stop_loss": stop_loss,
            "take_profit": take_profit,
        }
        if sizing.recommended_size <= 0:
            logger.info(f"{symbol}: sized to zero, no entry")
            self._record_decision(verdict, reason="position size is zero", **decision_fields)
            return

        order = OrderRequest(
            client_order_id=OrderManager.new_client_order_id("entry"),
            symbol=symbol,
            side=OrderSide.BUY,
            quantity=sizing.recommended_size,
            price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            market=self.config.session.market,
        )
        decision = self.risk_manager.check_order_risk(order, snapshot)
        self._record_decision(
            verdict,
            allowed=decision.allowed,
            rule=decision.rule.value,
            reason=decision.reason,
            **decision_fields,
        )
        if not decision.allowed:
            return

        if self.sentry is not None:
            self.sentry.add_breadcrumb(
                "order", f"entry {symbol}", {"size": sizing.recommended_size, "price": price}
            )
        await self.order_manager.submit(order, "entry")

    def _win_stats(self) -> tuple[float, float, float]:
        sizing = self.config.sizing
        if self.repository is not None:
            stats = self.repository.closed_trade_stats(min_trades=sizing.min_trades_for_stats)
            if stats is not None and stats.avg_win > 0 and stats.avg_loss > 0:
                return stats.win_rate_pct, stats.avg_win, stats.avg_loss
        return sizing.default_win_rate_pct, sizing.default_avg_win, sizing.default_avg_loss

    async def _reconcile_positions(self) -> None:
        """Compare broker holdings with the ledger; differences are logged only."""
        broker_positions = {p.symbol: p for p in await self.broker.get_positions()}
        for symbol, position in self.ledger.positions.items():
            held = broker_positions.get(symbol)
            held_qty = held.quantity if held is not None else 0.0
            if abs(held_qty - position.quantity) > 1e-9:
                logger.warning(
                    f"Position mismatch for {symbol}: ledger {position.quantity:g}, broker {held_qty:g}"
                )

    async def _protective_exits(self) -> None:
        for position, reason in self.ledger.breaching_positions():
            logger.info(
                f"🎯 {position.symbol} {reason} hit @ {position.current_price:.4f} "
                f"(entry {position.average_price:.4f})"
            )
            try:
                await self._exit(position, reason)
            except ConnectivityError:
                raise
            except EngineError as e:
                logger.warning(f"Exit for {position.symbol} failed: {e}")

    async def _exit(self, position: LedgerPosition, purpose: str) -> None:
        if self.ledger.has_pending(position.symbol):
            logger.info(f"Exit for {position.symbol} already pending")
            return
        order = OrderRequest(
            client_order_id=OrderManager.new_client_order_id(purpose),
            symbol=position.symbol,
            side=OrderSide.SELL,
            quantity=position.quantity,
            price=position.current_price,
            reduce_only=True,
            market=self.config.session.market,
        )
        await self.order_manager.submit(order, purpose)

    def _record_decision(self, verdict: AggregatedSignal, **fields: Any) -> None:
        if self.repository is None or self.session is None:
            return
        self.repository.record_decision(
            {
                "session_id": self.session.id,
                "symbol": verdict.symbol,
                "verdict": verdict.verdict.value,
                "total_sources": verdict.total_sources,
                "buy_signals": verdict.buy_signals,
                "hold_signals": verdict.hold_signals,
                "sell_signals": verdict.sell_signals,
                "buy_percentage": verdict.buy_percentage,
                "signals": [
                    {"source": s.source, "signal": s.signal.value, "confidence": s.confidence}
                    for s in verdict.signals
                ],
                **fields,
            }
        )

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def run_monitoring(self) -> list[RiskBreach]:
        """Run one monitoring check: risk breaches, then broker health."""
        if not self.is_running:
            return []

        self.ledger.roll_day()
        breaches = await self.enforce_limits()
        if not self.is_running:
            return breaches

        if not await self._broker_healthy():
            await self.handle_connectivity_loss("health check failed")
        self._after_tick()
        return breaches

    async def enforce_limits(self) -> list[RiskBreach]:
        """
        Publish a RiskAlert per breached hard limit and, when emergency stop
        is enabled, stop the session.
        """
        breaches = self.risk_manager.detect_breach(self.ledger.snapshot())
        for breach in breaches:
            logger.error(f"⚠️ Risk breach [{breach.kind}]: {breach.message}")
            self._publish(RiskAlert(kind=breach.kind, message=breach.message, value=breach.value, limit=breach.limit))

        if breaches and self.risk_manager.constraints.emergency_stop:
            await self.emergency_stop("; ".join(b.message for b in breaches))
        return breaches

    async def _broker_healthy(self) -> bool:
        try:
            return await self.broker.test_connection()
        except ConnectivityError:
            return False

    async def handle_connectivity_loss(self, reason: str) -> bool:
        """
        Reconnect the broker; after exhausting retries the session moves to ERROR.

        Returns:
            True when the broker is back
        """
        logger.warning(f"🔌 Broker connectivity lost ({reason}), reconnecting")
        if await self.reconnect.reconnect():
            return True

        error = BrokerDisconnectedError(self.reconnect.max_retries)
        if self.session is not None and self.session.is_running:
            self._transition(SessionStatus.ERROR, str(error))
            self._cancel_timers()
        if self.sentry is not None:
            self.sentry.capture_error(error, context={"reason": reason})
        return False

    def _after_tick(self) -> None:
        self._refresh_session_totals()
        snapshot = self.ledger.snapshot()
        if self.metrics is not None:
            self.metrics.set_equity(snapshot.equity)
            self.metrics.set_daily_pnl(snapshot.daily_pnl)
            self.metrics.set_open_positions(snapshot.open_positions)
        if self.repository is not None:
            self.repository.save_equity_snapshot(
                equity=snapshot.equity,
                cash=snapshot.cash,
                unrealized_pnl=snapshot.unrealized_pnl,
                realized_pnl_today=snapshot.daily_realized_pnl,
                drawdown_pct=snapshot.drawdown_pct,
                open_positions=snapshot.open_positions,
                session_id=self.session.id if self.session else None,
            )

    def _refresh_session_totals(self) -> None:
        if self.session is not None:
            self.session.trades_count = self.order_manager.filled_count
            self.session.total_pnl = self.ledger.total_realized

    def _publish(self, event: Any) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_trading_stats(self) -> dict[str, Any]:
        snapshot = self.ledger.snapshot()
        session = self.session
        return {
            "session_id": session.id if session else None,
            "status": session.status.value if session else None,
            "start_time": session.start_time.isoformat() if session and session.start_time else None,
            "trades_count": self.order_manager.filled_count,
            "total_pnl": self.ledger.total_realized,
            "equity": snapshot.equity,
            "cash": snapshot.cash,
            "unrealized_pnl": snapshot.unrealized_pnl,
            "daily_pnl": snapshot.daily_pnl,
            "drawdown_pct": snapshot.drawdown_pct,
            "portfolio_risk_pct": snapshot.portfolio_risk_pct,
            "open_positions": snapshot.open_positions,
            "pending_orders": snapshot.pending_orders,
            "cycles_run": self.cycles_run,
            "ticks_skipped": self.ticks_skipped,
        }

    async def health_check(self) -> dict[str, Any]:
        broker_ok = await self._broker_healthy()
        stats = self.aggregator.get_stats()
        sources_ok = stats["available_sources"] >= self.aggregator.config.min_sources
        return {
            "healthy": broker_ok and sources_ok and self.is_running,
            "session_status": self.status.value if self.status else None,
            "broker_connected": broker_ok,
            "available_sources": stats["available_sources"],
            "registered_sources": stats["registered_sources"],
            "trading_window_open": self.trading_hours.is_open(self._clock()),
        }
