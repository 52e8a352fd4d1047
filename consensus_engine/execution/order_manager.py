"""Order submission with confirm-before-commit ledger updates.

An order moves PENDING -> FILLED | REJECTED | CANCELLED | FAILED. The ledger
only changes holdings when the broker confirms a fill; until then the order
is tracked as pending so its risk counts against the portfolio.

Retries after an ambiguous failure (timeout or lost acknowledgement) reuse
the same client order id and look the order up first, so a retry never
creates a second order.
"""

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING

from consensus_engine.core.events import EventBus, OrderFilled, OrderRejected, OrderSubmitted
from consensus_engine.core.portfolio_ledger import PortfolioLedger
from consensus_engine.errors import ConnectivityError
from consensus_engine.execution.broker import BrokerAdapter
from consensus_engine.models.order import OrderRequest, OrderResult, OrderSide, OrderStatus

if TYPE_CHECKING:
    from consensus_engine.monitoring.metrics import MetricsService
    from consensus_engine.persistence.repository import EngineRepository

logger = logging.getLogger(__name__)


class OrderManager:
    """Places orders on a broker and reconciles confirmed fills into the ledger."""

    def __init__(
        self,
        broker: BrokerAdapter,
        ledger: PortfolioLedger,
        *,
        repository: "EngineRepository | None" = None,
        event_bus: EventBus | None = None,
        metrics: "MetricsService | None" = None,
        order_timeout_seconds: float = 10.0,
        submit_attempts: int = 3,
        retry_delay_seconds: float = 0.0,
        session_id: str = "",
    ):
        """
        Initialize order manager.

        Args:
            broker: Broker adapter
            ledger: Session portfolio ledger
            repository: Audit store for transactions and positions
            event_bus: Receives OrderSubmitted/OrderFilled/OrderRejected
            metrics: Prometheus metrics
            order_timeout_seconds: Per-call broker timeout
            submit_attempts: Attempts per order before giving up
            retry_delay_seconds: Pause between attempts
            session_id: Owning session, stamped on every transaction
        """
        self.broker = broker
        self.ledger = ledger
        self.repository = repository
        self.event_bus = event_bus
        self.metrics = metrics
        self.order_timeout_seconds = order_timeout_seconds
        self.submit_attempts = max(1, submit_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self.session_id = session_id

        # client_order_id -> (order, purpose)
        self._inflight: dict[str, tuple[OrderRequest, str]] = {}
        # Acknowledged by the broker, awaiting a fill
        self._open: dict[str, tuple[OrderRequest, str]] = {}
        self._finished: dict[str, OrderResult] = {}
        # Broker calls still running for in-flight orders
        self._placing: dict[str, asyncio.Future[tuple[OrderResult | None, str]]] = {}
        # In-flight orders withdrawn by cancel_pending -> cancel reason
        self._withdrawn: dict[str, str] = {}
        self._settled: dict[str, asyncio.Future[OrderResult]] = {}
        self.filled_count = 0
        # False after a stop: new entry orders are refused without reaching the broker
        self.accepting_entries = True

    @staticmethod
    def new_client_order_id(purpose: str = "entry") -> str:
        """Exchange-safe unique id, e.g. ``CE-EN-3f2a...``."""
        return f"CE-{purpose[:2].upper()}-{uuid.uuid4().hex[:20]}"

    @property
    def open_orders(self) -> list[OrderRequest]:
        return [order for order, _ in self._open.values()]

    @property
    def inflight_orders(self) -> list[OrderRequest]:
        return [order for order, _ in self._inflight.values()]

    def get_result(self, client_order_id: str) -> OrderResult | None:
        return self._finished.get(client_order_id)

    async def submit(self, order: OrderRequest, purpose: str = "entry") -> OrderResult:
        """
        Submit an order and apply the confirmed outcome.

        Args:
            order: Order to place
            purpose: "entry", "stop_loss", "take_profit", "signal_exit" or "emergency"

        Returns:
            OrderResult; PENDING when the broker acknowledged but has not filled yet

        Raises:
            ConnectivityError: Every attempt failed; the order is recorded FAILED
        """
        cid = order.client_order_id
        finished = self._finished.get(cid)
        if finished is not None:
            logger.info(f"Order {cid} already {finished.status.value}, not resubmitting")
            return finished

        if purpose == "entry" and not self.accepting_entries:
            refused = OrderResult(cid, OrderStatus.REJECTED, reason="entries halted")
            self._finished[cid] = refused
            self._record(order, purpose, refused)
            logger.warning(f"Entry {cid} for {order.symbol} refused: entries halted")
            return refused

        self.ledger.register_pending(order)
        self._inflight[cid] = (order, purpose)
        self._record(order, purpose, OrderResult(cid, OrderStatus.PENDING))
        self._publish(
            OrderSubmitted(
                client_order_id=cid,
                symbol=order.symbol,
                side=order.side.value,
                quantity=order.quantity,
                price=order.price,
                purpose=purpose,
            )
        )
        logger.info(
            f"📤 Submitting {purpose} {order.side.value} {order.quantity:g} {order.symbol} @ {order.price:.4f} ({cid})"
        )

        self._settled[cid] = asyncio.get_running_loop().create_future()
        placing = asyncio.ensure_future(self._place_with_retry(order))
        self._placing[cid] = placing
        try:
            result, last_error = await placing
        except asyncio.CancelledError:
            placing.cancel()
            reason = self._withdrawn.pop(cid, None)
            current = asyncio.current_task()
            if reason is None or (current is not None and current.cancelling()):
                self._abandon(order, purpose, reason or "submission cancelled")
                raise
            return await self._cancel_at_broker(order, purpose, reason)
        finally:
            self._placing.pop(cid, None)

        reason = self._withdrawn.pop(cid, None)
        if reason is not None and (result is None or result.status is OrderStatus.PENDING):
            return await self._cancel_at_broker(order, purpose, reason)

        if result is None:
            failure = OrderResult(
                cid,
                OrderStatus.FAILED,
                reason=f"no confirmation after {self.submit_attempts} attempts: {last_error}",
            )
            self._finalize(order, purpose, failure)
            raise ConnectivityError(f"order {cid} failed: {failure.reason}")

        return self._finalize(order, purpose, result)

    async def _place_with_retry(self, order: OrderRequest) -> tuple[OrderResult | None, str]:
        cid = order.client_order_id
        last_error = ""
        for attempt in range(1, self.submit_attempts + 1):
            try:
                if attempt > 1:
                    existing = await asyncio.wait_for(
                        self.broker.get_order(cid), timeout=self.order_timeout_seconds
                    )
                    if existing is not None:
                        logger.info(f"Order {cid} found at broker on retry: {existing.status.value}")
                        return existing, ""
                result = await asyncio.wait_for(
                    self.broker.place_order(order), timeout=self.order_timeout_seconds
                )
                return result, ""
            except asyncio.TimeoutError:
                last_error = f"timed out after {self.order_timeout_seconds}s"
            except ConnectivityError as e:
                last_error = str(e)

            logger.warning(f"⚠️ Order {cid} attempt {attempt}/{self.submit_attempts} failed: {last_error}")
            if attempt < self.submit_attempts and self.retry_delay_seconds > 0:
                await asyncio.sleep(self.retry_delay_seconds)

        return None, last_error

    def _finalize(self, order: OrderRequest, purpose: str, result: OrderResult) -> OrderResult:
        cid = order.client_order_id
        self._inflight.pop(cid, None)

        if result.status is OrderStatus.PENDING:
            self._open[cid] = (order, purpose)
            logger.info(f"⏳ Order {cid} acknowledged, awaiting fill")
            return result

        self._open.pop(cid, None)
        self._finished[cid] = result
        settled = self._settled.pop(cid, None)
        if settled is not None and not settled.done():
            settled.set_result(result)

        if result.status is OrderStatus.FILLED:
            quantity = result.filled_quantity if result.filled_quantity > 0 else order.quantity
            price = result.filled_price if result.filled_price is not None else order.price
            fill = self.ledger.apply_fill(order, quantity, price)
            self.filled_count += 1
            realized = fill.realized_pnl if order.side is OrderSide.SELL else None
            self._record(order, purpose, result, realized_pnl=realized)
            self._persist_position(order.symbol)
            self._publish(
                OrderFilled(
                    client_order_id=cid,
                    symbol=order.symbol,
                    side=order.side.value,
                    quantity=fill.quantity,
                    price=price,
                    purpose=purpose,
                    realized_pnl=fill.realized_pnl,
                )
            )
            if self.metrics is not None:
                self.metrics.record_order(order.symbol, order.side.value, result.status.value, realized)
            logger.info(
                f"✅ {purpose} {order.side.value} {fill.quantity:g} {order.symbol} filled @ {price:.4f}"
                + (f" (P&L {fill.realized_pnl:+.2f})" if realized is not None else "")
            )
            return result

        self.ledger.resolve_pending(cid)
        self._record(order, purpose, result)
        self._publish(
            OrderRejected(
                client_order_id=cid,
                symbol=order.symbol,
                status=result.status.value,
                reason=result.reason,
            )
        )
        if self.metrics is not None:
            self.metrics.record_order(order.symbol, order.side.value, result.status.value)
        logger.warning(f"❌ Order {cid} {result.status.value}: {result.reason}")
        return result

    def _abandon(self, order: OrderRequest, purpose: str, reason: str) -> None:
        logger.warning(f"Order {order.client_order_id} abandoned: {reason}")
        self._finalize(order, purpose, OrderResult(order.client_order_id, OrderStatus.CANCELLED, reason=reason))

    async def refresh_pending(self) -> list[OrderResult]:
        """
        Poll acknowledged orders and apply those that reached a final status.

        Raises:
            ConnectivityError: Broker unreachable
        """
        completed: list[OrderResult] = []
        for cid, (order, purpose) in list(self._open.items()):
            result = await asyncio.wait_for(self.broker.get_order(cid), timeout=self.order_timeout_seconds)
            if result is not None and result.status.is_terminal:
                completed.append(self._finalize(order, purpose, result))
        return completed

    async def cancel_pending(self, reason: str = "emergency stop") -> int:
        """
        Cancel every order awaiting a fill, including submissions still in flight.

        An in-flight submission has its broker call cancelled and is then
        withdrawn at the broker by the submitting task; this waits until that
        task settles the order. Orders the broker reports as filled are applied
        as fills instead. When the broker is unreachable the order is dropped
        from the ledger and recorded as cancelled.

        Returns:
            Number of orders cancelled
        """
        cancelled = 0
        for cid in list(self._inflight):
            settled = self._settled.get(cid)
            placing = self._placing.get(cid)
            if settled is None or placing is None:
                continue
            self._withdrawn[cid] = reason
            placing.cancel()
            try:
                result = await asyncio.wait_for(asyncio.shield(settled), timeout=self.order_timeout_seconds)
            except asyncio.TimeoutError:
                logger.error(f"In-flight order {cid} did not settle after cancel")
                continue
            if result.status is OrderStatus.CANCELLED:
                cancelled += 1

        for cid, (order, purpose) in list(self._open.items()):
            result = await self._cancel_at_broker(order, purpose, reason)
            if result.status is OrderStatus.CANCELLED:
                cancelled += 1

        if cancelled:
            logger.warning(f"🧹 Cancelled {cancelled} pending order(s): {reason}")
        return cancelled

    async def _cancel_at_broker(self, order: OrderRequest, purpose: str, reason: str) -> OrderResult:
        cid = order.client_order_id
        try:
            result = await asyncio.wait_for(self.broker.cancel_order(cid), timeout=self.order_timeout_seconds)
        except (ConnectivityError, asyncio.TimeoutError) as e:
            logger.error(f"Cancel of {cid} not confirmed ({e}); dropping from ledger")
            result = OrderResult(cid, OrderStatus.CANCELLED, reason=f"{reason} (unconfirmed)")

        if result.status is not OrderStatus.FILLED and result.status is not OrderStatus.CANCELLED:
            result = OrderResult(cid, OrderStatus.CANCELLED, broker_order_id=result.broker_order_id, reason=reason)
        return self._finalize(order, purpose, result)

    def _record(
        self,
        order: OrderRequest,
        purpose: str,
        result: OrderResult,
        realized_pnl: float | None = None,
    ) -> None:
        if self.repository is None:
            return
        self.repository.record_transaction(
            {
                "session_id": self.session_id,
                "client_order_id": order.client_order_id,
                "broker_order_id": result.broker_order_id,
                "symbol": order.symbol,
                "side": order.side.value,
                "purpose": purpose,
                "status": result.status.value,
                "quantity": order.quantity,
                "price": order.price,
                "filled_quantity": result.filled_quantity or None,
                "filled_price": result.filled_price,
                "realized_pnl": realized_pnl,
                "reason": result.reason or None,
            }
        )

    def _persist_position(self, symbol: str) -> None:
        if self.repository is None:
            return
        position = self.ledger.get_position(symbol)
        if position is None:
            self.repository.delete_position(symbol)
            return
        self.repository.upsert_position(
            {
                "symbol": symbol,
                "quantity": position.quantity,
                "average_price": position.average_price,
                "stop_loss": position.stop_loss,
                "take_profit": position.take_profit,
                "opened_at": position.opened_at,
            }
        )

    def _publish(self, event: OrderSubmitted | OrderFilled | OrderRejected) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event)
