"""Order-level risk gate and portfolio risk analysis.

Every entry order passes five checks, in fixed order, stopping at the
first violation:

1. order notional within max position size
2. per-trade risk within a fraction of equity
3. projected portfolio risk within limit
4. projected daily loss within limit
5. current drawdown within limit

Checks read one ``PortfolioSnapshot`` and one constraints object; they
never mutate portfolio state.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Sequence

from consensus_engine.config.models import RiskConfig
from consensus_engine.core.portfolio_ledger import LedgerPosition, PortfolioSnapshot
from consensus_engine.errors import RiskRejection
from consensus_engine.models.order import OrderRequest

if TYPE_CHECKING:
    from consensus_engine.monitoring.metrics import MetricsService

logger = logging.getLogger(__name__)

# Portfolio risk above this multiple of the limit is a hard breach
PORTFOLIO_RISK_BREACH_MULTIPLE = 1.5
# Below this fraction of the limit there is room to add risk
PORTFOLIO_RISK_INCREASE_FRACTION = 0.5


class RiskRule(str, Enum):
    """Named constraint that decided an order."""

    NONE = "none"
    MAX_POSITION_SIZE = "max_position_size"
    PER_TRADE_RISK = "per_trade_risk"
    PORTFOLIO_RISK = "portfolio_risk"
    DAILY_LOSS = "daily_loss"
    DRAWDOWN = "drawdown"


@dataclass(frozen=True)
class RiskDecision:
    """Outcome of an order risk check; ``rule`` names the violated constraint."""

    allowed: bool
    rule: RiskRule = RiskRule.NONE
    reason: str = "within limits"

    @classmethod
    def approve(cls, reason: str = "within limits") -> "RiskDecision":
        return cls(allowed=True, rule=RiskRule.NONE, reason=reason)

    @classmethod
    def reject(cls, rule: RiskRule, reason: str) -> "RiskDecision":
        return cls(allowed=False, rule=rule, reason=reason)


class PortfolioAction(str, Enum):
    REDUCE = "REDUCE"
    HOLD = "HOLD"
    INCREASE = "INCREASE"


@dataclass(frozen=True)
class PortfolioRiskAnalysis:
    total_value: float
    total_risk: float
    risk_percentage: float
    is_within_limit: bool
    recommended_action: PortfolioAction


@dataclass(frozen=True)
class PositionRiskAnalysis:
    """Stop/target levels derived from the configured percentages."""

    position_size: float
    risk_amount: float
    stop_loss_price: float
    take_profit_price: float
    risk_reward_ratio: float
    is_within_limit: bool


@dataclass(frozen=True)
class RiskBreach:
    """A hard limit crossed by the live portfolio."""

    kind: str  # daily_loss, drawdown, portfolio_risk
    message: str
    value: float
    limit: float


@dataclass(frozen=True)
class RiskReport:
    portfolio: PortfolioRiskAnalysis
    positions: list[PositionRiskAnalysis]
    daily_loss_ok: bool
    drawdown_ok: bool
    recommendations: list[str] = field(default_factory=list)


def order_trade_risk(order: OrderRequest) -> float:
    """Worst-case loss of an order; the full notional when it carries no stop."""
    if order.stop_loss is None:
        return order.notional
    return order.risk_amount


class RiskManager:
    """Gates orders against risk constraints.

    Usage:
        manager = RiskManager(risk_config)
        decision = manager.check_order_risk(order, ledger.snapshot())
        if decision.allowed:
            ...submit order...
    """

    def __init__(self, constraints: RiskConfig, metrics: "MetricsService | None" = None):
        self.constraints = constraints
        self.metrics = metrics

    def update_constraints(self, **changes: Any) -> RiskConfig:
        """Replace constraint fields between cycles; the merged config is re-validated."""
        self.constraints = RiskConfig.model_validate({**self.constraints.model_dump(), **changes})
        logger.info(f"Risk constraints updated: {sorted(changes)}")
        return self.constraints

    def check_order_risk(self, order: OrderRequest, snapshot: PortfolioSnapshot) -> RiskDecision:
        """
        Evaluate an order against every constraint.

        Args:
            order: Proposed order
            snapshot: Pre-trade portfolio state

        Returns:
            RiskDecision; reduce-only orders are always allowed
        """
        if order.reduce_only:
            return RiskDecision.approve("exit order")

        c = self.constraints
        trade_risk = order_trade_risk(order)
        equity = snapshot.equity

        # CHECK 1: Max position size
        if order.notional > c.max_position_size:
            return self._reject(
                order,
                RiskRule.MAX_POSITION_SIZE,
                f"order notional {order.notional:.2f} exceeds max position size {c.max_position_size:.2f}",
            )

        # CHECK 2: Per-trade risk
        per_trade_limit = max(equity, 0.0) * c.max_risk_per_trade_pct / 100
        if trade_risk > per_trade_limit:
            return self._reject(
                order,
                RiskRule.PER_TRADE_RISK,
                f"trade risk {trade_risk:.2f} exceeds {c.max_risk_per_trade_pct:.2f}% of equity ({per_trade_limit:.2f})",
            )

        # CHECK 3: Projected portfolio risk
        projected_pct = (snapshot.open_risk + trade_risk) / equity * 100 if equity > 0 else float("inf")
        if projected_pct > c.max_portfolio_risk_pct:
            return self._reject(
                order,
                RiskRule.PORTFOLIO_RISK,
                f"projected portfolio risk {projected_pct:.2f}% exceeds limit {c.max_portfolio_risk_pct:.2f}%",
            )

        # CHECK 4: Projected daily loss
        projected_loss = max(0.0, -snapshot.daily_realized_pnl) + trade_risk
        if projected_loss > c.max_daily_loss:
            return self._reject(
                order,
                RiskRule.DAILY_LOSS,
                f"projected daily loss {projected_loss:.2f} exceeds limit {c.max_daily_loss:.2f}",
            )

        # CHECK 5: Drawdown
        if snapshot.drawdown_pct > c.max_drawdown_pct:
            return self._reject(
                order,
                RiskRule.DRAWDOWN,
                f"drawdown {snapshot.drawdown_pct:.2f}% exceeds limit {c.max_drawdown_pct:.2f}%",
            )

        return RiskDecision.approve()

    def ensure_order_allowed(self, order: OrderRequest, snapshot: PortfolioSnapshot) -> RiskDecision:
        """Same as check_order_risk, raising RiskRejection when blocked."""
        decision = self.check_order_risk(order, snapshot)
        if not decision.allowed:
            raise RiskRejection(decision)
        return decision

    def _reject(self, order: OrderRequest, rule: RiskRule, reason: str) -> RiskDecision:
        logger.warning(f"🛑 {order.symbol} order rejected [{rule.value}]: {reason}")
        if self.metrics is not None:
            self.metrics.record_risk_rejection(rule.value)
        return RiskDecision.reject(rule, reason)

    def analyze_position_risk(
        self, position_size: float, entry_price: float, current_price: float
    ) -> PositionRiskAnalysis:
        c = self.constraints
        stop = entry_price * (1 - c.stop_loss_pct / 100)
        target = entry_price * (1 + c.take_profit_pct / 100)
        return PositionRiskAnalysis(
            position_size=position_size,
            risk_amount=position_size * abs(entry_price - current_price),
            stop_loss_price=stop,
            take_profit_price=target,
            risk_reward_ratio=(target - entry_price) / (entry_price - stop),
            is_within_limit=position_size * current_price <= c.max_position_size,
        )

    def stop_and_target(self, entry_price: float) -> tuple[float, float]:
        """Stop-loss and take-profit prices for a long entry."""
        c = self.constraints
        return (
            entry_price * (1 - c.stop_loss_pct / 100),
            entry_price * (1 + c.take_profit_pct / 100),
        )

    def analyze_portfolio_risk(
        self, positions: Sequence[LedgerPosition], equity: float
    ) -> PortfolioRiskAnalysis:
        """
        Grade open risk against the portfolio limit.

        REDUCE above the limit, INCREASE below half of it, HOLD otherwise.
        """
        limit = self.constraints.max_portfolio_risk_pct
        total_value = sum(p.market_value for p in positions)
        total_risk = sum(p.risk_amount for p in positions)
        risk_pct = total_risk / equity * 100 if equity > 0 else (0.0 if total_risk == 0 else float("inf"))

        if risk_pct > limit:
            action = PortfolioAction.REDUCE
        elif risk_pct < limit * PORTFOLIO_RISK_INCREASE_FRACTION:
            action = PortfolioAction.INCREASE
        else:
            action = PortfolioAction.HOLD

        return PortfolioRiskAnalysis(
            total_value=total_value,
            total_risk=total_risk,
            risk_percentage=risk_pct,
            is_within_limit=risk_pct <= limit,
            recommended_action=action,
        )

    def check_daily_loss_limit(self, daily_pnl: float) -> bool:
        return daily_pnl >= -self.constraints.max_daily_loss

    def check_drawdown_limit(self, current_value: float, peak_value: float) -> bool:
        if peak_value <= 0:
            return True
        drawdown = (peak_value - current_value) / peak_value * 100
        return drawdown <= self.constraints.max_drawdown_pct

    def detect_breach(self, snapshot: PortfolioSnapshot) -> list[RiskBreach]:
        """
        Hard-limit breaches of the live portfolio.

        Daily loss counts realized and unrealized P&L; portfolio risk breaches
        only beyond 1.5x its limit.
        """
        c = self.constraints
        breaches: list[RiskBreach] = []

        if not self.check_daily_loss_limit(snapshot.daily_pnl):
            breaches.append(
                RiskBreach(
                    kind="daily_loss",
                    message=f"daily loss {-snapshot.daily_pnl:.2f} exceeds limit {c.max_daily_loss:.2f}",
                    value=-snapshot.daily_pnl,
                    limit=c.max_daily_loss,
                )
            )

        if snapshot.drawdown_pct > c.max_drawdown_pct:
            breaches.append(
                RiskBreach(
                    kind="drawdown",
                    message=f"drawdown {snapshot.drawdown_pct:.2f}% exceeds limit {c.max_drawdown_pct:.2f}%",
                    value=snapshot.drawdown_pct,
                    limit=c.max_drawdown_pct,
                )
            )

        hard_limit = c.max_portfolio_risk_pct * PORTFOLIO_RISK_BREACH_MULTIPLE
        if snapshot.portfolio_risk_pct > hard_limit:
            breaches.append(
                RiskBreach(
                    kind="portfolio_risk",
                    message=f"portfolio risk {snapshot.portfolio_risk_pct:.2f}% exceeds {hard_limit:.2f}%",
                    value=snapshot.portfolio_risk_pct,
                    limit=hard_limit,
                )
            )

        return breaches

    def generate_risk_report(
        self,
        positions: Sequence[LedgerPosition],
        equity: float,
        daily_pnl: float,
        peak_equity: float | None = None,
    ) -> RiskReport:
        portfolio = self.analyze_portfolio_risk(positions, equity)
        position_risks = [
            self.analyze_position_risk(p.quantity, p.average_price, p.current_price)
            for p in positions
        ]
        daily_ok = self.check_daily_loss_limit(daily_pnl)
        drawdown_ok = self.check_drawdown_limit(equity, peak_equity if peak_equity is not None else equity)

        recommendations: list[str] = []
        if portfolio.recommended_action is PortfolioAction.REDUCE:
            recommendations.append("portfolio risk above limit: reduce positions")
        if not daily_ok:
            recommendations.append("daily loss limit reached: stop trading")
        if not drawdown_ok:
            recommendations.append("drawdown limit reached: stop trading")
        if portfolio.risk_percentage > self.constraints.max_portfolio_risk_pct * PORTFOLIO_RISK_BREACH_MULTIPLE:
            recommendations.append("portfolio risk critical: close all positions")
        if not recommendations:
            recommendations.append("risk within limits")

        return RiskReport(
            portfolio=portfolio,
            positions=position_risks,
            daily_loss_ok=daily_ok,
            drawdown_ok=drawdown_ok,
            recommendations=recommendations,
        )
