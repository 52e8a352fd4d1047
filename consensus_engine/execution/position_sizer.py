"""Risk-based position sizing.

Four independent methods (fixed risk, Kelly criterion, volatility based,
risk parity) plus a confidence-weighted blend used by the trading cycle.
All methods are pure: sizes are whole units, degenerate inputs give a zero
result instead of raising.

Example::

    sizer = PositionSizer(SizingConfig(account_balance=1_000_000))
    result = sizer.calculate_integrated(
        entry_price=1000.0,
        stop_loss_price=950.0,
        volatility_pct=25.0,
        win_rate_pct=55.0,
        avg_win=1.5,
        avg_loss=1.0,
    )
    units = result.recommended_size  # whole units, capped by max_position_size
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from consensus_engine.config.models import SizingConfig

logger = logging.getLogger(__name__)

KELLY_CAP = 0.25
KELLY_RECOMMENDED_ABOVE = 0.05
VOLATILITY_BASELINE_PCT = 20.0
VOLATILITY_MAX_ADJUSTMENT = 2.0
# Single position risk flagged HIGH above this fraction of balance
POSITION_RISK_WARN_FRACTION = 0.05


@dataclass(frozen=True)
class SizingResult:
    """Result of one sizing method.

    Attributes:
        method: Sizing method name
        recommended_size: Whole units to trade (>= 0)
        position_value: recommended_size * entry price
        risk_amount: Loss if the stop is hit
        risk_percent: risk_amount as % of balance
        confidence: Confidence in the size, 0-100
    """

    method: str
    recommended_size: int
    position_value: float
    risk_amount: float
    risk_percent: float
    confidence: float

    @classmethod
    def zero(cls, method: str) -> "SizingResult":
        return cls(
            method=method,
            recommended_size=0,
            position_value=0.0,
            risk_amount=0.0,
            risk_percent=0.0,
            confidence=0.0,
        )


@dataclass(frozen=True)
class KellyResult:
    """Kelly criterion output; kelly_percent is the clamped fraction in %."""

    kelly_percent: float
    position_size: int
    is_recommended: bool


@dataclass(frozen=True)
class RiskParityResult:
    target_risk: float
    position_size: int
    risk_contribution: float


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class SizingRiskAnalysis:
    """Risk of a proposed size against the sizing limits."""

    position_risk: float
    portfolio_risk_after_pct: float
    risk_level: RiskLevel
    recommendations: list[str] = field(default_factory=list)


class PositionSizer:
    """Position sizing against an account balance and sizing limits.

    Attributes:
        config: Sizing limits and Kelly priors
        account_balance: Balance all percentages refer to
    """

    def __init__(self, config: SizingConfig, account_balance: float | None = None):
        """
        Initialize sizer.

        Args:
            config: Sizing configuration
            account_balance: Current balance (defaults to config.account_balance)
        """
        self.config = config
        self.account_balance = account_balance if account_balance is not None else config.account_balance

    def update_balance(self, account_balance: float) -> None:
        if account_balance <= 0:
            raise ValueError("Account balance must be positive")
        self.account_balance = account_balance

    def update_config(self, **changes: Any) -> SizingConfig:
        """Replace sizing fields; the merged config is re-validated."""
        self.config = SizingConfig.model_validate({**self.config.model_dump(), **changes})
        return self.config

    def set_limits(self, max_position_size: float, max_portfolio_risk_pct: float) -> SizingConfig:
        """Adopt the risk manager's position and portfolio limits."""
        if (
            self.config.max_position_size == max_position_size
            and self.config.max_portfolio_risk_pct == max_portfolio_risk_pct
        ):
            return self.config
        changes: dict[str, Any] = {
            "max_position_size": max_position_size,
            "max_portfolio_risk_pct": max_portfolio_risk_pct,
        }
        if self.config.min_position_size > max_position_size:
            logger.warning(
                f"min_position_size {self.config.min_position_size:g} above new max "
                f"{max_position_size:g}; lowering it"
            )
            changes["min_position_size"] = max_position_size
        logger.info(
            f"Sizing limits set: max_position_size={max_position_size:g}, "
            f"max_portfolio_risk_pct={max_portfolio_risk_pct:g}"
        )
        return self.update_config(**changes)

    def max_units(self, price: float) -> int:
        """Largest whole size whose value does not exceed max_position_size."""
        if price <= 0:
            return 0
        units = math.floor(self.config.max_position_size / price + 1e-9)
        while units > 0 and units * price > self.config.max_position_size:
            units -= 1
        return max(units, 0)

    def min_units(self, price: float) -> int:
        """Smallest whole size whose value reaches min_position_size."""
        if price <= 0 or self.config.min_position_size <= 0:
            return 0
        units = math.ceil(self.config.min_position_size / price - 1e-9)
        while units * price < self.config.min_position_size:
            units += 1
        return units

    def _result(
        self, method: str, size: int, entry_price: float, risk_per_unit: float, confidence: float
    ) -> SizingResult:
        risk_amount = size * risk_per_unit
        return SizingResult(
            method=method,
            recommended_size=size,
            position_value=size * entry_price,
            risk_amount=risk_amount,
            risk_percent=risk_amount / self.account_balance * 100,
            confidence=confidence,
        )

    def calculate_fixed_risk(
        self, entry_price: float, stop_loss_price: float, risk_pct: float | None = None
    ) -> SizingResult:
        """
        Size so that hitting the stop loses risk_pct of the balance.

        Args:
            entry_price: Entry price
            stop_loss_price: Stop price
            risk_pct: Balance % at risk (defaults to config.risk_per_trade_pct)

        Returns:
            SizingResult clamped to max_position_size; zero when entry == stop
        """
        risk_pct = self.config.risk_per_trade_pct if risk_pct is None else risk_pct
        risk_per_unit = abs(entry_price - stop_loss_price)
        if risk_per_unit <= 0 or entry_price <= 0:
            return SizingResult.zero("Fixed Risk")

        risk_amount = self.account_balance * risk_pct / 100
        size = math.floor(risk_amount / risk_per_unit)
        size = min(size, self.max_units(entry_price))
        return self._result("Fixed Risk", size, entry_price, risk_per_unit, 85.0)

    def calculate_kelly_criterion(
        self, win_rate_pct: float, avg_win: float, avg_loss: float, entry_price: float
    ) -> KellyResult:
        """
        Kelly fraction (p * W - (1 - p) * L) / W, clamped to [0, 25%].

        Args:
            win_rate_pct: Win rate in %
            avg_win: Average winning trade
            avg_loss: Average losing trade (positive number)
            entry_price: Entry price used to convert the fraction to units

        Returns:
            KellyResult; recommended only when the clamped fraction exceeds 5%
        """
        if win_rate_pct <= 0 or win_rate_pct >= 100 or avg_loss <= 0 or avg_win <= 0 or entry_price <= 0:
            return KellyResult(kelly_percent=0.0, position_size=0, is_recommended=False)

        p = win_rate_pct / 100
        kelly = (p * avg_win - (1 - p) * avg_loss) / avg_win
        kelly = min(max(kelly, 0.0), KELLY_CAP)
        if kelly <= 0:
            return KellyResult(kelly_percent=0.0, position_size=0, is_recommended=False)

        position_size = math.floor(self.account_balance * kelly / entry_price)
        return KellyResult(
            kelly_percent=kelly * 100,
            position_size=position_size,
            is_recommended=kelly > KELLY_RECOMMENDED_ABOVE,
        )

    def calculate_volatility_based(
        self, entry_price: float, volatility_pct: float, risk_pct: float | None = None
    ) -> SizingResult:
        """
        Size with a volatility-implied stop and a volatility-scaled risk budget.

        The stop sits volatility_pct below entry; the risk budget is divided
        by min(volatility_pct / 20, 2), so higher volatility gives a smaller size.
        """
        risk_pct = self.config.risk_per_trade_pct if risk_pct is None else risk_pct
        if volatility_pct <= 0 or entry_price <= 0:
            return SizingResult.zero("Volatility Based")

        base_risk = self.account_balance * risk_pct / 100
        adjustment = min(volatility_pct / VOLATILITY_BASELINE_PCT, VOLATILITY_MAX_ADJUSTMENT)
        adjusted_risk = base_risk / adjustment

        implied_stop = entry_price * (1 - volatility_pct / 100)
        risk_per_unit = abs(entry_price - implied_stop)
        if risk_per_unit <= 0:
            return SizingResult.zero("Volatility Based")

        size = math.floor(adjusted_risk / risk_per_unit)
        size = min(size, self.max_units(entry_price))
        return self._result("Volatility Based", size, entry_price, risk_per_unit, 80.0)

    def calculate_risk_parity(
        self,
        target_risk: float,
        entry_price: float,
        stop_loss_price: float,
        portfolio_risk_used: float = 0.0,
    ) -> RiskParityResult:
        """Size to a target risk amount, capped by the remaining portfolio budget."""
        risk_per_unit = abs(entry_price - stop_loss_price)
        if risk_per_unit <= 0:
            return RiskParityResult(target_risk=0.0, position_size=0, risk_contribution=0.0)

        budget = self.account_balance * self.config.max_portfolio_risk_pct / 100 - portfolio_risk_used
        available = max(min(target_risk, budget), 0.0)
        size = math.floor(available / risk_per_unit)
        return RiskParityResult(
            target_risk=available,
            position_size=size,
            risk_contribution=size * risk_per_unit / self.account_balance * 100,
        )

    def calculate_integrated(
        self,
        entry_price: float,
        stop_loss_price: float,
        volatility_pct: float,
        win_rate_pct: float,
        avg_win: float,
        avg_loss: float,
        portfolio_risk_used: float = 0.0,
    ) -> SizingResult:
        """
        Blend fixed-risk, volatility and Kelly sizes, then apply limits.

        Weights are 0.4/0.3/0.3 (confidence 90) when Kelly is recommended,
        otherwise 0.6/0.4 over fixed-risk and volatility (confidence 75).
        Limits apply in order: remaining portfolio risk budget, then the
        minimum position value, then the maximum position value. The maximum
        always wins.

        Args:
            entry_price: Entry price
            stop_loss_price: Stop price
            volatility_pct: Annualized volatility in %
            win_rate_pct: Historical win rate in %
            avg_win: Average win
            avg_loss: Average loss
            portfolio_risk_used: Risk amount already open

        Returns:
            SizingResult with method "Integrated"
        """
        risk_per_unit = abs(entry_price - stop_loss_price)
        if entry_price <= 0 or risk_per_unit <= 0:
            logger.debug(f"Degenerate sizing inputs: entry={entry_price}, stop={stop_loss_price}")
            return SizingResult.zero("Integrated")

        fixed = self.calculate_fixed_risk(entry_price, stop_loss_price)
        volatility = self.calculate_volatility_based(entry_price, volatility_pct)
        kelly = self.calculate_kelly_criterion(win_rate_pct, avg_win, avg_loss, entry_price)

        if kelly.is_recommended:
            blended = (
                fixed.recommended_size * 0.4
                + volatility.recommended_size * 0.3
                + kelly.position_size * 0.3
            )
            confidence = 90.0
        else:
            blended = fixed.recommended_size * 0.6 + volatility.recommended_size * 0.4
            confidence = 75.0
        size = math.floor(blended)

        budget = self.account_balance * self.config.max_portfolio_risk_pct / 100 - portfolio_risk_used
        size = min(size, max(math.floor(budget / risk_per_unit), 0))
        size = max(size, self.min_units(entry_price))
        size = min(size, self.max_units(entry_price))

        result = self._result("Integrated", size, entry_price, risk_per_unit, confidence)
        logger.info(
            f"⚖️ Sized {size} units @ {entry_price:.2f} "
            f"(fixed={fixed.recommended_size}, vol={volatility.recommended_size}, "
            f"kelly={kelly.position_size}{'*' if kelly.is_recommended else ''}, "
            f"risk={result.risk_percent:.2f}%)"
        )
        return result

    def analyze_risk(
        self,
        position_size: float,
        entry_price: float,
        stop_loss_price: float,
        portfolio_risk_pct: float = 0.0,
    ) -> SizingRiskAnalysis:
        """
        Grade a proposed size against the sizing limits.

        Args:
            position_size: Proposed units
            entry_price: Entry price
            stop_loss_price: Stop price
            portfolio_risk_pct: Portfolio risk already open, in %

        Returns:
            SizingRiskAnalysis with LOW/MEDIUM/HIGH grade and reasons
        """
        position_risk = position_size * abs(entry_price - stop_loss_price)
        risk_after = portfolio_risk_pct + position_risk / self.account_balance * 100

        level = RiskLevel.LOW
        recommendations: list[str] = []
        if risk_after > self.config.max_portfolio_risk_pct:
            level = RiskLevel.HIGH
            recommendations.append("portfolio risk exceeds limit")
        elif risk_after > self.config.max_portfolio_risk_pct * 0.8:
            level = RiskLevel.MEDIUM
            recommendations.append("portfolio risk approaching limit")

        if position_size * entry_price > self.config.max_position_size:
            level = RiskLevel.HIGH
            recommendations.append("position size exceeds limit")

        if position_risk > self.account_balance * POSITION_RISK_WARN_FRACTION:
            level = RiskLevel.HIGH
            recommendations.append("single position risk too high")

        return SizingRiskAnalysis(
            position_risk=position_risk,
            portfolio_risk_after_pct=risk_after,
            risk_level=level,
            recommendations=recommendations,
        )
