"""
Exit policy for open positions.

Conditions are checked in a fixed order and the first one that holds wins
for the tick:

1. time horizon reached
2. next partial-profit tier reached (partial exit)
3. trailing stop touched
4. stop loss: adverse move beyond max(predicted MAE, stop-loss percent)
5. profit target: favorable move beyond max(expected return, take-profit floor)
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Optional

import structlog

from tickloop.core.config import ExitConfig
from tickloop.core.models import OrderSide, Position, PositionTracking

logger = structlog.get_logger(__name__)

QUANTITY_STEP = Decimal("0.00000001")

TIME_HORIZON = "time horizon"
TRAILING_STOP = "trailing stop"
STOP_LOSS = "stop loss"
PROFIT_TARGET = "profit target"


def partial_profit_reason(level: float) -> str:
    return f"partial profit @{level:g}%"


@dataclass
class ExitDecision:
    """Exit chosen for a position on this tick.

    Attributes:
        reason: Exit reason string
        quantity: Size to close
        full: True when the whole position closes
    """
    reason: str
    quantity: Decimal
    full: bool = True


class ExitPolicy:
    """Evaluates exits and maintains trailing stops."""

    def __init__(self, config: Optional[ExitConfig] = None):
        self.config = config or ExitConfig()

    def trailing_distance(self, position: Position, atr: float) -> Decimal:
        """ATR x multiplier, never tighter than the minimum distance."""
        atr_distance = Decimal("0")
        if atr > 0:
            atr_distance = Decimal(str(atr * self.config.trailing_stop_atr_multiplier))
        min_distance = (
            position.entry_price
            * Decimal(str(self.config.min_trailing_distance_percentage))
            / 100
        )
        return max(atr_distance, min_distance)

    def update_trailing_stop(
        self,
        position: Position,
        tracking: PositionTracking,
        price: Decimal,
        atr: float,
    ) -> Optional[Decimal]:
        """Ratchet the trailing stop towards price; it never moves back."""
        if not self.config.enable_trailing_stop:
            return tracking.trailing_stop

        distance = self.trailing_distance(position, atr)
        if distance <= 0:
            return tracking.trailing_stop

        if position.side == OrderSide.BUY:
            candidate = price - distance
            improved = tracking.trailing_stop is None or candidate > tracking.trailing_stop
        else:
            candidate = price + distance
            improved = tracking.trailing_stop is None or candidate < tracking.trailing_stop

        if improved:
            previous = tracking.trailing_stop
            tracking.trailing_stop = candidate
            if previous is not None:
                logger.debug(
                    "exits.trailing_stop_updated",
                    position_id=position.id,
                    old_stop=str(previous),
                    new_stop=str(candidate),
                    price=str(price),
                )
        return tracking.trailing_stop

    def evaluate(
        self,
        position: Position,
        tracking: PositionTracking,
        price: Decimal,
        now: datetime,
    ) -> Optional[ExitDecision]:
        """First exit condition that holds for this tick, or None."""
        config = self.config
        prediction = tracking.prediction
        move = position.price_move_pct(price)

        horizon = config.max_hold_seconds
        if prediction is not None:
            horizon = min(prediction.time_horizon_seconds, horizon)
        held = (now - tracking.entry_time).total_seconds()
        if held >= horizon:
            return ExitDecision(TIME_HORIZON, position.size)

        levels = config.partial_profit_levels
        tier = tracking.partial_tiers_taken
        if config.enable_partial_profits and tier < len(levels) and move >= levels[tier]:
            reason = partial_profit_reason(levels[tier])
            quantity = (
                position.size * Decimal(str(config.partial_exit_fraction))
            ).quantize(QUANTITY_STEP, rounding=ROUND_DOWN)
            if quantity <= 0 or quantity >= position.size:
                return ExitDecision(reason, position.size)
            return ExitDecision(reason, quantity, full=False)

        stop = tracking.trailing_stop
        if stop is not None:
            touched = price <= stop if position.side == OrderSide.BUY else price >= stop
            if touched:
                return ExitDecision(TRAILING_STOP, position.size)

        stop_loss = config.stop_loss_percentage
        if prediction is not None:
            stop_loss = max(prediction.max_adverse_excursion, stop_loss)
        if move <= -stop_loss:
            return ExitDecision(STOP_LOSS, position.size)

        target = config.take_profit_percentage
        if prediction is not None:
            target = max(prediction.expected_return, target)
        if move >= target:
            return ExitDecision(PROFIT_TARGET, position.size)

        return None
