"""Database models for the engine's audit trail and position store.

Sessions log, decisions, transactions, events and equity snapshots are
append-only. Positions are the one mutable table, written only when a
fill is confirmed.
"""

import uuid
import datetime as dt
from decimal import Decimal
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Generic JSON for SQLite compatibility (SQLAlchemy handles mapping)
JSON_TYPE = sa.JSON().with_variant(JSONB, "postgresql")
NUMERIC_24_10 = sa.Numeric(24, 10)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


class SessionLogEntry(Base):
    """One status change of a trading session."""
    __tablename__ = "session_log"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(sa.Text(), nullable=False, index=True)
    ts: Mapped[dt.datetime] = mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    started_at: Mapped[dt.datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    ended_at: Mapped[dt.datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    trades_count: Mapped[int] = mapped_column(sa.Integer(), default=0, nullable=False)
    total_pnl: Mapped[Decimal] = mapped_column(NUMERIC_24_10, default=0, nullable=False)
    reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)


class Decision(Base):
    """Outcome of one symbol evaluation in one cycle."""
    __tablename__ = "decisions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(sa.Text(), nullable=False, index=True)
    ts: Mapped[dt.datetime] = mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False)
    symbol: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    verdict: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    total_sources: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    buy_signals: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    hold_signals: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    sell_signals: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    buy_percentage: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    entry_price: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    recommended_size: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    stop_loss: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    take_profit: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    allowed: Mapped[bool | None] = mapped_column(sa.Boolean(), nullable=True)
    rule: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    signals: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON_TYPE, nullable=True)


class Transaction(Base):
    """One order status change, keyed by client order id."""
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(sa.Text(), nullable=False, index=True)
    ts: Mapped[dt.datetime] = mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False)
    client_order_id: Mapped[str] = mapped_column(sa.Text(), nullable=False, index=True)
    broker_order_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    symbol: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    side: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    purpose: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    status: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    price: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    filled_quantity: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    filled_price: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    realized_pnl: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)


class PositionRecord(Base):
    """Current open position per symbol."""
    __tablename__ = "positions"

    symbol: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    quantity: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    average_price: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    stop_loss: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    take_profit: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    opened_at: Mapped[dt.datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class EquitySnapshot(Base):
    """Periodic portfolio valuation."""
    __tablename__ = "equity_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ts: Mapped[dt.datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    session_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    equity: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    cash: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    unrealized_pnl: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    realized_pnl_today: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    drawdown_pct: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    open_positions: Mapped[int] = mapped_column(sa.Integer(), nullable=False)


class Event(Base):
    """Engine event journal."""
    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seq: Mapped[int] = mapped_column(sa.BigInteger(), default=0, nullable=False)
    ts: Mapped[dt.datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    level: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    type: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    symbol: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON_TYPE, nullable=False)
    public_safe: Mapped[bool] = mapped_column(
        sa.Boolean(), server_default=sa.text("false"), nullable=False
    )
