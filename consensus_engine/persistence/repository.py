"""Engine repository for database persistence operations."""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo

import sqlalchemy as sa
from sqlalchemy.orm import Session

from consensus_engine.persistence.models import (
    Decision,
    EquitySnapshot,
    Event,
    PositionRecord,
    SessionLogEntry,
    Transaction,
)


@dataclass(frozen=True)
class TradeStats:
    """Win/loss statistics over closed (exit-filled) trades."""

    trades: int
    win_rate_pct: float
    avg_win: float
    avg_loss: float


def _json_serial(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


def _float(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


class EngineRepository:
    """Repository wrapping database operations for the engine."""

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def log_session_status(self, session_data: dict[str, Any]) -> None:
        """
        Append a session status row.

        Args:
            session_data: Dictionary with id, status and optional started_at,
                ended_at, trades_count, total_pnl, reason
        """
        entry = SessionLogEntry(
            session_id=session_data["id"],
            status=session_data["status"],
            started_at=session_data.get("started_at"),
            ended_at=session_data.get("ended_at"),
            trades_count=session_data.get("trades_count", 0),
            total_pnl=session_data.get("total_pnl", 0.0),
            reason=session_data.get("reason"),
            ts=datetime.now(timezone.utc),
        )
        self.session.add(entry)
        self.session.commit()

    def get_session_history(self, session_id: str) -> list[dict[str, Any]]:
        """Status rows of one session, oldest first."""
        rows = (
            self.session.query(SessionLogEntry)
            .filter(SessionLogEntry.session_id == session_id)
            .order_by(SessionLogEntry.ts.asc())
            .all()
        )
        return [
            {
                "id": row.session_id,
                "status": row.status,
                "ts": row.ts,
                "started_at": row.started_at,
                "ended_at": row.ended_at,
                "trades_count": row.trades_count,
                "total_pnl": float(row.total_pnl),
                "reason": row.reason,
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Decisions and transactions
    # ------------------------------------------------------------------

    def record_decision(self, decision_data: dict[str, Any]) -> str:
        """
        Save the outcome of one symbol evaluation.

        Args:
            decision_data: Decision data dictionary

        Returns:
            Decision ID
        """
        signals = decision_data.get("signals")
        decision = Decision(
            session_id=decision_data["session_id"],
            symbol=decision_data["symbol"],
            verdict=decision_data["verdict"],
            total_sources=decision_data["total_sources"],
            buy_signals=decision_data["buy_signals"],
            hold_signals=decision_data["hold_signals"],
            sell_signals=decision_data["sell_signals"],
            buy_percentage=decision_data["buy_percentage"],
            entry_price=decision_data.get("entry_price"),
            recommended_size=decision_data.get("recommended_size"),
            stop_loss=decision_data.get("stop_loss"),
            take_profit=decision_data.get("take_profit"),
            allowed=decision_data.get("allowed"),
            rule=decision_data.get("rule"),
            reason=decision_data.get("reason"),
            signals=json.loads(json.dumps(signals, default=_json_serial)) if signals is not None else None,
            ts=datetime.now(timezone.utc),
        )
        self.session.add(decision)
        self.session.commit()
        decision_id: str = str(decision.id)
        return decision_id

    def get_decisions(self, session_id: str, symbol: str | None = None) -> list[dict[str, Any]]:
        query = self.session.query(Decision).filter(Decision.session_id == session_id)
        if symbol is not None:
            query = query.filter(Decision.symbol == symbol)
        return [
            {
                "id": str(d.id),
                "symbol": d.symbol,
                "verdict": d.verdict,
                "buy_percentage": float(d.buy_percentage),
                "recommended_size": _float(d.recommended_size),
                "allowed": d.allowed,
                "rule": d.rule,
                "reason": d.reason,
                "ts": d.ts,
            }
            for d in query.order_by(Decision.ts.asc()).all()
        ]

    def record_transaction(self, tx_data: dict[str, Any]) -> str:
        """
        Save one order status change.

        Args:
            tx_data: Transaction data dictionary

        Returns:
            Transaction ID
        """
        tx = Transaction(
            session_id=tx_data["session_id"],
            client_order_id=tx_data["client_order_id"],
            broker_order_id=tx_data.get("broker_order_id"),
            symbol=tx_data["symbol"],
            side=tx_data["side"],
            purpose=tx_data["purpose"],
            status=tx_data["status"],
            quantity=tx_data["quantity"],
            price=tx_data["price"],
            filled_quantity=tx_data.get("filled_quantity"),
            filled_price=tx_data.get("filled_price"),
            realized_pnl=tx_data.get("realized_pnl"),
            reason=tx_data.get("reason"),
            ts=datetime.now(timezone.utc),
        )
        self.session.add(tx)
        self.session.commit()
        tx_id: str = str(tx.id)
        return tx_id

    def get_transactions(
        self, session_id: str | None = None, client_order_id: str | None = None
    ) -> list[dict[str, Any]]:
        query = self.session.query(Transaction)
        if session_id is not None:
            query = query.filter(Transaction.session_id == session_id)
        if client_order_id is not None:
            query = query.filter(Transaction.client_order_id == client_order_id)
        return [
            {
                "id": str(t.id),
                "client_order_id": t.client_order_id,
                "broker_order_id": t.broker_order_id,
                "symbol": t.symbol,
                "side": t.side,
                "purpose": t.purpose,
                "status": t.status,
                "quantity": float(t.quantity),
                "price": float(t.price),
                "filled_quantity": _float(t.filled_quantity),
                "filled_price": _float(t.filled_price),
                "realized_pnl": _float(t.realized_pnl),
                "reason": t.reason,
                "ts": t.ts,
            }
            for t in query.order_by(Transaction.ts.asc()).all()
        ]

    def closed_trade_stats(self, min_trades: int = 1) -> TradeStats | None:
        """
        Win rate and average win/loss over filled exit orders.

        Args:
            min_trades: Fewer closed trades than this returns None

        Returns:
            TradeStats, or None when history is too short
        """
        rows = (
            self.session.query(Transaction.realized_pnl)
            .filter(
                Transaction.status == "FILLED",
                Transaction.side == "SELL",
                Transaction.realized_pnl.is_not(None),
            )
            .all()
        )
        pnls = [float(r[0]) for r in rows]
        if not pnls or len(pnls) < min_trades:
            return None

        wins = [p for p in pnls if p > 0]
        losses = [-p for p in pnls if p < 0]
        return TradeStats(
            trades=len(pnls),
            win_rate_pct=len(wins) / len(pnls) * 100,
            avg_win=sum(wins) / len(wins) if wins else 0.0,
            avg_loss=sum(losses) / len(losses) if losses else 0.0,
        )

    def get_today_realized_pnl(self, timezone_str: str = "UTC") -> float:
        """
        Realized PnL of exit fills since local midnight.

        Args:
            timezone_str: Timezone string (e.g., "UTC", "Asia/Tokyo")
        """
        tz = ZoneInfo(timezone_str)
        start_of_day = datetime.now(tz).replace(hour=0, minute=0, second=0, microsecond=0)
        start_of_day_utc = start_of_day.astimezone(timezone.utc)

        total = (
            self.session.query(sa.func.sum(Transaction.realized_pnl))
            .filter(
                Transaction.status == "FILLED",
                Transaction.ts >= start_of_day_utc,
            )
            .scalar()
        )
        return float(total or 0.0)

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def upsert_position(self, position_data: dict[str, Any]) -> None:
        """Create or replace the stored position of a symbol."""
        record = self.session.get(PositionRecord, position_data["symbol"])
        if record is None:
            record = PositionRecord(
                symbol=position_data["symbol"],
                opened_at=position_data.get("opened_at") or datetime.now(timezone.utc),
                quantity=position_data["quantity"],
                average_price=position_data["average_price"],
            )
            self.session.add(record)
        record.quantity = position_data["quantity"]
        record.average_price = position_data["average_price"]
        record.stop_loss = position_data.get("stop_loss")
        record.take_profit = position_data.get("take_profit")
        self.session.commit()

    def delete_position(self, symbol: str) -> None:
        record = self.session.get(PositionRecord, symbol)
        if record is not None:
            self.session.delete(record)
            self.session.commit()

    def get_positions(self) -> list[dict[str, Any]]:
        return [
            {
                "symbol": p.symbol,
                "quantity": float(p.quantity),
                "average_price": float(p.average_price),
                "stop_loss": _float(p.stop_loss),
                "take_profit": _float(p.take_profit),
                "opened_at": p.opened_at,
            }
            for p in self.session.query(PositionRecord).order_by(PositionRecord.symbol).all()
        ]

    # ------------------------------------------------------------------
    # Events and equity
    # ------------------------------------------------------------------

    def append_event(
        self,
        event_type: str,
        level: str,
        payload: dict[str, Any],
        symbol: str | None = None,
        public_safe: bool = False,
    ) -> int:
        """
        Append an event to the events table.

        Args:
            event_type: Event type (e.g., "order.filled", "risk.alert")
            level: Log level (INFO, WARN, ERROR)
            payload: Event payload as dictionary
            symbol: Symbol the event concerns, if any
            public_safe: Whether event is safe for public dashboard

        Returns:
            Event sequence number
        """
        # Ensure payload is JSON serializable
        safe_payload = json.loads(json.dumps(payload, default=_json_serial))

        event_kwargs: dict[str, Any] = {
            "type": event_type,
            "level": level,
            "symbol": symbol,
            "payload": safe_payload,
            "public_safe": public_safe,
            "ts": datetime.now(timezone.utc),
        }

        # Handle SQLite sequence generation manually (no Identity support)
        if self.session.bind.dialect.name == "sqlite":
            max_seq = self.session.query(sa.func.max(Event.seq)).scalar() or 0
            event_kwargs["seq"] = max_seq + 1

        event = Event(**event_kwargs)
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        seq: int = event.seq
        return seq

    def get_events(self, event_type: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        query = self.session.query(Event)
        if event_type is not None:
            query = query.filter(Event.type == event_type)
        return [
            {"seq": e.seq, "type": e.type, "level": e.level, "symbol": e.symbol, "payload": e.payload, "ts": e.ts}
            for e in query.order_by(Event.seq.desc()).limit(limit).all()
        ]

    def save_equity_snapshot(
        self,
        equity: float,
        cash: float = 0.0,
        unrealized_pnl: float = 0.0,
        realized_pnl_today: float = 0.0,
        drawdown_pct: float = 0.0,
        open_positions: int = 0,
        session_id: str | None = None,
    ) -> None:
        """
        Save an equity snapshot.

        Args:
            equity: Current equity
            cash: Current cash balance
            unrealized_pnl: Current unrealized PnL
            realized_pnl_today: PnL realized today
            drawdown_pct: Drawdown from peak equity
            open_positions: Count of open positions
            session_id: Owning session
        """
        snapshot = EquitySnapshot(
            equity=equity,
            cash=cash,
            unrealized_pnl=unrealized_pnl,
            realized_pnl_today=realized_pnl_today,
            drawdown_pct=drawdown_pct,
            open_positions=open_positions,
            session_id=session_id,
            ts=datetime.now(timezone.utc),
        )
        self.session.add(snapshot)
        self.session.commit()

    def get_latest_equity(self) -> float | None:
        row = self.session.query(EquitySnapshot).order_by(EquitySnapshot.ts.desc()).first()
        return float(row.equity) if row is not None else None
