"""Risk management for new positions.

Pre-trade validation runs as a prioritized chain of rules; the first
blocking failure rejects the position with that rule's reason. Position
sizing (capped Kelly with a reduced flat fallback) also lives here.
"""
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog

from tickloop.core.config import RiskConfig, SignalConfig
from tickloop.core.models import OrderSide, Portfolio, utc_now

logger = structlog.get_logger(__name__)

QUANTITY_STEP = Decimal("0.00000001")


@dataclass
class RiskCheck:
    """Result of a risk validation check.

    Attributes:
        passed: Whether the position passed all risk checks
        reason: Human-readable explanation if check failed
        risk_level: Severity level of the risk assessment
        rule_triggered: Name of the risk rule that triggered (if any)
        metadata: Additional diagnostic information
    """
    passed: bool
    reason: str = ""
    risk_level: str = "normal"
    rule_triggered: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RiskRule:
    """Individual risk rule definition.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Function that performs the validation
        priority: Lower numbers = higher priority (checked first)
        is_blocking: If True, failure stops all further checks
    """
    name: str
    check_fn: Callable[..., RiskCheck]
    priority: int = 100
    is_blocking: bool = True


@dataclass
class PositionRequest:
    """A proposed position, as seen by the risk rules."""
    symbol: str
    side: OrderSide
    size: Decimal
    price: Decimal

    @property
    def value(self) -> Decimal:
        return abs(self.size * self.price)


class RiskManager:
    """
    Pre-trade risk validation and position sizing.

    Rules (in priority order):
    - insufficient_balance: position value must fit the available balance
    - max_open_positions: open position count below the limit
    - max_position_size: position value within the per-position cap
    - daily_loss_limit: |today's realized P&L| below the daily limit
    """

    MAX_REJECTIONS_KEPT = 1000

    def __init__(
        self,
        config: Optional[RiskConfig] = None,
        signal_config: Optional[SignalConfig] = None,
    ):
        self.config = config or RiskConfig()
        self.signal_config = signal_config or SignalConfig()

        self._risk_rules: List[RiskRule] = []
        self._register_default_rules()

        self.rejected_checks: List[Dict[str, Any]] = []

    def _register_default_rules(self):
        """Register the default set of risk rules in priority order."""
        self._risk_rules = [
            RiskRule(
                name="insufficient_balance",
                check_fn=self._check_balance,
                priority=1,
            ),
            RiskRule(
                name="max_open_positions",
                check_fn=self._check_open_positions,
                priority=2,
            ),
            RiskRule(
                name="max_position_size",
                check_fn=self._check_position_size,
                priority=3,
            ),
            RiskRule(
                name="daily_loss_limit",
                check_fn=self._check_daily_loss,
                priority=4,
            ),
        ]
        self._risk_rules.sort(key=lambda r: r.priority)

    def check_new_position(self, request: PositionRequest, portfolio: Portfolio) -> RiskCheck:
        """
        Validate a proposed position against all risk rules.

        Rules are evaluated in priority order. If a blocking rule fails,
        subsequent rules are skipped.

        Args:
            request: Proposed symbol, side, size and entry price
            portfolio: Current (recalculated) portfolio

        Returns:
            RiskCheck indicating if the position can be opened
        """
        for rule in self._risk_rules:
            try:
                result = rule.check_fn(request, portfolio)
            except Exception as e:
                logger.error(
                    "risk_manager.rule_error",
                    rule=rule.name,
                    error=str(e),
                    symbol=request.symbol,
                )
                # On rule error, be conservative and block
                return RiskCheck(
                    passed=False,
                    reason=f"Risk rule '{rule.name}' encountered an error",
                    risk_level="critical",
                    rule_triggered=rule.name,
                )

            if not result.passed and rule.is_blocking:
                self._log_rejection(request, rule.name, result.reason)
                logger.warning(
                    "risk_manager.position_rejected",
                    symbol=request.symbol,
                    rule=rule.name,
                    reason=result.reason,
                    priority=rule.priority,
                )
                return RiskCheck(
                    passed=False,
                    reason=result.reason,
                    risk_level=result.risk_level,
                    rule_triggered=rule.name,
                    metadata=result.metadata,
                )

        logger.debug(
            "risk_manager.position_approved",
            symbol=request.symbol,
            side=request.side.value,
            value=str(request.value),
        )
        return RiskCheck(passed=True)

    # === Risk Rule Implementations ===

    def _check_balance(self, request: PositionRequest, portfolio: Portfolio) -> RiskCheck:
        """Position value must not exceed the available balance."""
        if request.size <= 0 or request.price <= 0:
            return RiskCheck(
                passed=False,
                reason="Position size and price must be positive",
                risk_level="critical",
            )
        if request.value > portfolio.available_balance:
            return RiskCheck(
                passed=False,
                reason=(
                    f"Insufficient balance: position value {request.value} exceeds "
                    f"available {portfolio.available_balance}"
                ),
                risk_level="warning",
                metadata={
                    "value": str(request.value),
                    "available": str(portfolio.available_balance),
                },
            )
        return RiskCheck(passed=True)

    def _check_open_positions(self, request: PositionRequest, portfolio: Portfolio) -> RiskCheck:
        """Open position count must stay below the limit."""
        open_count = len(portfolio.open_positions)
        if open_count >= self.config.max_open_positions:
            return RiskCheck(
                passed=False,
                reason=(
                    f"Max open positions reached: {open_count}/{self.config.max_open_positions}"
                ),
                risk_level="warning",
                metadata={"open_positions": open_count},
            )
        return RiskCheck(passed=True)

    def _check_position_size(self, request: PositionRequest, portfolio: Portfolio) -> RiskCheck:
        """Position value must stay within the per-position cap."""
        max_size = Decimal(str(self.config.max_position_size))
        if request.value > max_size:
            return RiskCheck(
                passed=False,
                reason=f"Position value {request.value} exceeds maximum {max_size}",
                risk_level="warning",
                metadata={"value": str(request.value), "max": str(max_size)},
            )
        return RiskCheck(passed=True)

    def _check_daily_loss(self, request: PositionRequest, portfolio: Portfolio) -> RiskCheck:
        """Today's realized P&L must stay within the daily limit in either direction."""
        max_loss = Decimal(str(self.config.max_daily_loss))
        if abs(portfolio.day_pnl) >= max_loss:
            return RiskCheck(
                passed=False,
                reason=f"Daily P&L limit reached: {portfolio.day_pnl} (max: +/-{max_loss})",
                risk_level="critical",
                metadata={"day_pnl": str(portfolio.day_pnl), "limit": str(max_loss)},
            )
        return RiskCheck(passed=True)

    # === Position Sizing ===

    def calculate_position_size(
        self,
        available_balance: Decimal,
        price: Decimal,
        kelly_fraction: float,
        kelly_threshold: float,
    ) -> Decimal:
        """
        Quantity to trade for a signal.

        Uses ``kelly_fraction`` of the available balance when Kelly sizing is
        enabled and the fraction clears ``kelly_threshold``; otherwise a reduced
        flat percentage. The value is capped by the maximum position size and
        by ``max_balance_fraction`` of the available balance.

        Returns:
            Quantity in base units, rounded down to 8 decimal places
        """
        if available_balance <= 0 or price <= 0:
            return Decimal("0")

        kelly_cap = min(self.signal_config.max_kelly_fraction, 0.25)
        use_kelly = self.signal_config.use_kelly_criterion and kelly_fraction >= kelly_threshold

        if use_kelly:
            fraction = Decimal(str(min(kelly_fraction, kelly_cap)))
            method = "kelly"
        else:
            fraction = Decimal(str(
                self.signal_config.position_size_percentage
                / 100
                * self.signal_config.fallback_size_factor
            ))
            method = "flat"

        position_value = available_balance * fraction
        position_value = min(position_value, Decimal(str(self.config.max_position_size)))
        position_value = min(
            position_value,
            available_balance * Decimal(str(self.config.max_balance_fraction)),
        )

        quantity = (position_value / price).quantize(QUANTITY_STEP, rounding=ROUND_DOWN)

        logger.debug(
            "risk_manager.position_size_calculated",
            method=method,
            fraction=str(fraction),
            position_value=str(position_value),
            price=str(price),
            quantity=str(quantity),
        )
        return quantity

    def _log_rejection(self, request: PositionRequest, rule: str, reason: str):
        """Keep a bounded record of rejected positions for analysis."""
        self.rejected_checks.append({
            "timestamp": utc_now().isoformat(),
            "symbol": request.symbol,
            "side": request.side.value,
            "size": str(request.size),
            "price": str(request.price),
            "rule_triggered": rule,
            "reason": reason,
        })
        if len(self.rejected_checks) > self.MAX_REJECTIONS_KEPT:
            self.rejected_checks = self.rejected_checks[-self.MAX_REJECTIONS_KEPT:]

    def get_risk_report(self, portfolio: Portfolio) -> Dict[str, Any]:
        return {
            "open_positions": len(portfolio.open_positions),
            "max_open_positions": self.config.max_open_positions,
            "day_pnl": str(portfolio.day_pnl),
            "max_daily_loss": self.config.max_daily_loss,
            "available_balance": str(portfolio.available_balance),
            "recent_rejections": self.rejected_checks[-10:],
        }


def create_risk_manager(
    config: Optional[RiskConfig] = None, signal_config: Optional[SignalConfig] = None
) -> RiskManager:
    """Factory function to create a configured RiskManager instance."""
    return RiskManager(config, signal_config)
