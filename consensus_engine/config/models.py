"""Pydantic configuration models with type safety and validation."""

import re
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class SignalSourceConfig(BaseModel):
    """One external signal provider."""

    name: str = Field(min_length=1, description="Unique source name, used in logs and metrics")
    kind: Literal["http", "price_action", "stub"] = Field(
        default="http",
        description="Adapter type: http (JSON endpoint), price_action (quote scoring), stub (fixed answers)",
    )
    url: str | None = Field(
        default=None,
        description="Endpoint template for http sources; '{symbol}' is substituted",
    )
    enabled: bool = Field(default=True, description="Register this source with the aggregator")
    cache_ttl_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="How long a fetched signal is served from cache",
    )
    rate_limit_ms: int = Field(
        default=1000,
        ge=0,
        description="Minimum spacing between two network calls to this source",
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Per-call timeout for one fetch",
    )
    signal_field: str = Field(default="signal", description="JSON field carrying the opinion (http)")
    confidence_field: str = Field(default="confidence", description="JSON field carrying confidence (http)")
    reason_field: str = Field(default="reason", description="JSON field carrying the reason (http)")
    fixed_signal: Literal["BUY", "HOLD", "SELL"] = Field(
        default="HOLD",
        description="Answer returned by stub sources",
    )

    @model_validator(mode="after")
    def validate_url(self) -> "SignalSourceConfig":
        """HTTP sources need an endpoint."""
        if self.kind == "http" and not self.url:
            raise ValueError(f"Source '{self.name}' of kind http requires a url")
        return self


class SignalsConfig(BaseModel):
    """Signal aggregation configuration."""

    sources: list[SignalSourceConfig] = Field(
        default_factory=list,
        description="Signal providers polled on every aggregation",
    )
    vote_ratios: dict[int, float] = Field(
        default_factory=lambda: {3: 0.67, 4: 0.75, 5: 0.80, 6: 0.67},
        description="Required BUY/SELL vote fraction keyed by number of responding sources",
    )
    default_vote_ratio: float = Field(
        default=0.67,
        gt=0.0,
        le=1.0,
        description="Vote fraction for source counts missing from vote_ratios",
    )
    aggregation_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Outer deadline for one aggregation fan-out",
    )
    min_sources: int = Field(
        default=2,
        ge=1,
        description="Minimum responding sources for a valid verdict",
    )
    failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failures that disable a source until reset",
    )

    @field_validator("vote_ratios")
    @classmethod
    def validate_ratios(cls, v: dict[int, float]) -> dict[int, float]:
        """Ratios must be fractions in (0, 1] for positive source counts."""
        for count, ratio in v.items():
            if count < 1:
                raise ValueError(f"vote_ratios key must be >= 1, got {count}")
            if not 0.0 < ratio <= 1.0:
                raise ValueError(f"vote_ratios[{count}] must be in (0, 1], got {ratio}")
        return v

    @model_validator(mode="after")
    def validate_unique_names(self) -> "SignalsConfig":
        """Source names key caches and metrics, so they must be unique."""
        names = [s.name for s in self.sources]
        if len(names) != len(set(names)):
            raise ValueError("Signal source names must be unique")
        return self


class SizingConfig(BaseModel):
    """Position sizing parameters."""

    account_balance: float = Field(
        default=1_000_000.0,
        gt=0.0,
        description="Starting balance used until the broker reports one",
    )
    risk_per_trade_pct: float = Field(
        default=2.0,
        gt=0.0,
        le=100.0,
        description="Balance fraction risked per trade (FixedRisk and VolatilityBased)",
    )
    min_position_size: float = Field(
        default=0.0,
        ge=0.0,
        description="Smallest position value to open",
    )
    max_position_size: float = Field(
        default=100_000.0,
        gt=0.0,
        description="Largest position value to open",
    )
    max_portfolio_risk_pct: float = Field(
        default=10.0,
        gt=0.0,
        le=100.0,
        description="Total open risk budget as % of balance",
    )
    default_win_rate_pct: float = Field(
        default=55.0,
        ge=0.0,
        le=100.0,
        description="Kelly win rate prior used until enough trades close",
    )
    default_avg_win: float = Field(default=1.5, ge=0.0, description="Kelly average win prior")
    default_avg_loss: float = Field(default=1.0, ge=0.0, description="Kelly average loss prior")
    min_trades_for_stats: int = Field(
        default=20,
        ge=1,
        description="Closed trades required before realised stats replace the priors",
    )

    @model_validator(mode="after")
    def validate_bounds(self) -> "SizingConfig":
        """Ensure min_position_size <= max_position_size."""
        if self.min_position_size > self.max_position_size:
            raise ValueError(
                f"min_position_size ({self.min_position_size}) must not exceed "
                f"max_position_size ({self.max_position_size})"
            )
        return self


class RiskConfig(BaseModel):
    """Risk constraints enforced on every order."""

    max_position_size: float = Field(
        default=100_000.0,
        gt=0.0,
        description="Largest single order notional",
    )
    max_portfolio_risk_pct: float = Field(
        default=10.0,
        gt=0.0,
        le=100.0,
        description="Total open risk after the trade as % of equity",
    )
    max_risk_per_trade_pct: float = Field(
        default=5.0,
        gt=0.0,
        le=100.0,
        description="Single-trade risk as % of equity",
    )
    stop_loss_pct: float = Field(
        default=5.0,
        gt=0.0,
        lt=100.0,
        description="Stop distance below entry in %",
    )
    take_profit_pct: float = Field(
        default=10.0,
        gt=0.0,
        description="Take-profit distance above entry in %",
    )
    max_daily_loss: float = Field(
        default=50_000.0,
        gt=0.0,
        description="Realised loss plus worst-case trade risk allowed per day",
    )
    max_drawdown_pct: float = Field(
        default=20.0,
        gt=0.0,
        le=100.0,
        description="Peak-to-trough equity decline in %",
    )
    emergency_stop: bool = Field(
        default=True,
        description="Stop the session immediately when a hard limit is breached",
    )


class TradingHoursConfig(BaseModel):
    """Daily trading window."""

    start: str = Field(default="09:00", description="Window open, HH:MM local time")
    end: str = Field(default="15:00", description="Window close, HH:MM local time (inclusive)")
    timezone: str = Field(default="Asia/Tokyo", description="IANA timezone of the window")
    weekdays: list[int] = Field(
        default_factory=lambda: [0, 1, 2, 3, 4],
        description="Trading days, Monday=0",
    )

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError(f"Expected HH:MM, got {v!r}")
        return v

    @field_validator("weekdays")
    @classmethod
    def validate_weekdays(cls, v: list[int]) -> list[int]:
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("weekdays must be in 0..6")
        return v


class SessionConfig(BaseModel):
    """Trading session scheduling."""

    symbols: list[str] = Field(
        default_factory=lambda: ["BTC/USDT"],
        min_length=1,
        description="Symbols evaluated every cycle",
    )
    market: str = Field(default="crypto", description="Market identifier passed to the price feed")
    trading_hours: TradingHoursConfig = Field(default_factory=TradingHoursConfig)
    enforce_trading_hours: bool = Field(
        default=True,
        description="Skip cycles outside the trading window",
    )
    cycle_interval_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Spacing between trading cycles",
    )
    monitoring_interval_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Spacing between risk/connectivity checks",
    )
    history_days: int = Field(
        default=30,
        ge=2,
        description="Daily bars used for volatility",
    )


class BrokerConfig(BaseModel):
    """Broker adapter configuration."""

    mode: Literal["paper", "live"] = Field(
        default="paper",
        description="paper for simulated fills, live for a real exchange",
    )
    exchange_id: str = Field(default="binance", description="ccxt exchange id for live mode")
    sandbox: bool = Field(default=True, description="Use the exchange's sandbox endpoint")
    paper_starting_cash: float = Field(
        default=1_000_000.0,
        gt=0.0,
        description="Cash of the simulated account",
    )
    reconnect_interval_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Fixed delay between reconnect attempts",
    )
    max_retries: int = Field(
        default=5,
        ge=1,
        description="Reconnect attempts before the broker is declared disconnected",
    )
    order_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Wait for one placement call",
    )
    order_submit_attempts: int = Field(
        default=3,
        ge=1,
        description="Placement attempts with the same client order id",
    )


class MonitoringConfig(BaseModel):
    """Prometheus exporter settings."""

    metrics_enabled: bool = Field(default=True)
    metrics_port: int = Field(default=9090, ge=1, le=65535)
    start_metrics_server: bool = Field(
        default=False,
        description="Expose /metrics over HTTP",
    )


class AlertsConfig(BaseModel):
    """Operator notifications."""

    telegram_enabled: bool = Field(default=False)
    telegram_chat_id: str = Field(default="")
    min_priority: Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"] = Field(default="MEDIUM")


class EngineConfig(BaseModel):
    """Root configuration model for the consensus engine."""

    signals: SignalsConfig = Field(default_factory=SignalsConfig)
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)

    @model_validator(mode="after")
    def validate_sources(self) -> "EngineConfig":
        """Enough enabled sources must exist to ever reach min_sources."""
        enabled = [s for s in self.signals.sources if s.enabled]
        if self.signals.sources and len(enabled) < self.signals.min_sources:
            raise ValueError(
                f"{len(enabled)} enabled signal sources configured, "
                f"min_sources is {self.signals.min_sources}"
            )
        return self

    @model_validator(mode="after")
    def sync_sizing_limits(self) -> "EngineConfig":
        """The risk section owns the position and portfolio limits; sizing mirrors them."""
        if self.sizing.min_position_size > self.risk.max_position_size:
            raise ValueError(
                f"sizing.min_position_size ({self.sizing.min_position_size}) must not exceed "
                f"risk.max_position_size ({self.risk.max_position_size})"
            )
        if (
            self.sizing.max_position_size != self.risk.max_position_size
            or self.sizing.max_portfolio_risk_pct != self.risk.max_portfolio_risk_pct
        ):
            self.sizing = self.sizing.model_copy(
                update={
                    "max_position_size": self.risk.max_position_size,
                    "max_portfolio_risk_pct": self.risk.max_portfolio_risk_pct,
                }
            )
        return self
