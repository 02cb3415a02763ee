"""
Signal decision policy.

Maps a prediction plus market context to BUY, SELL or HOLD with a size:

- one evaluation per symbol per cooldown window
- thresholds shifted for the market regime and liquidity
- BUY above the upper probability band, SELL below the lower band, with
  feature confluence agreeing with the direction
- capped Kelly sizing, or a reduced flat size when Kelly is near zero
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

import structlog

from tickloop.core.config import SignalConfig
from tickloop.core.models import (
    AdaptiveThresholds,
    MarketContext,
    MarketRegime,
    PredictionOutput,
    SignalAction,
    SignalDecision,
    TradingSignal,
    ensure_utc,
)
from tickloop.risk.risk_manager import RiskManager

logger = structlog.get_logger(__name__)

# Absolute limits applied after regime adjustment
PROBABILITY_LIMITS = (0.5, 0.95)
CONFIDENCE_LIMITS = (0.0, 1.0)
RISK_LIMITS = (0.0, 0.80)

HIGH_LIQUIDITY = 0.7


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def feature_confluence(prediction: PredictionOutput) -> float:
    """Net agreement of feature contributions, in [-1, 1] (positive = up)."""
    contributions = prediction.feature_contributions
    total = sum(abs(v) for v in contributions.values())
    if total <= 0:
        return 0.0
    return sum(contributions.values()) / total


class SignalDecisionPolicy:
    """Turns predictions into trading signals for one or more symbols."""

    def __init__(
        self,
        config: Optional[SignalConfig] = None,
        risk_manager: Optional[RiskManager] = None,
    ):
        self.config = config or SignalConfig()
        self.risk_manager = risk_manager or RiskManager(signal_config=self.config)
        self._last_evaluated: Dict[str, datetime] = {}

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def should_evaluate(self, symbol: str, now: datetime) -> bool:
        last = self._last_evaluated.get(symbol)
        if last is None:
            return True
        elapsed = (ensure_utc(now) - last).total_seconds()
        return elapsed >= self.config.signal_cooldown_seconds

    def mark_evaluated(self, symbol: str, now: datetime) -> None:
        self._last_evaluated[symbol] = ensure_utc(now)

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    @staticmethod
    def regime_adjusted_thresholds(
        thresholds: AdaptiveThresholds, context: MarketContext
    ) -> AdaptiveThresholds:
        """Loosen in strong trends and deep books, tighten in choppy markets."""
        min_probability = thresholds.min_probability
        min_confidence = thresholds.min_confidence
        max_risk = thresholds.max_risk_score

        regime = context.market_regime
        if regime.is_strong:
            min_probability -= 0.01
            min_confidence -= 0.02
        elif regime == MarketRegime.SIDEWAYS_VOLATILE:
            min_probability += 0.02
            max_risk -= 0.05
        elif regime == MarketRegime.SIDEWAYS_QUIET:
            min_confidence += 0.02

        if context.liquidity_score > HIGH_LIQUIDITY:
            min_confidence -= 0.02

        return AdaptiveThresholds(
            min_probability=_clamp(min_probability, *PROBABILITY_LIMITS),
            min_confidence=_clamp(min_confidence, *CONFIDENCE_LIMITS),
            max_risk_score=_clamp(max_risk, *RISK_LIMITS),
            kelly_threshold=thresholds.kelly_threshold,
        )

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def decide(
        self,
        symbol: str,
        price,
        prediction: PredictionOutput,
        context: MarketContext,
        thresholds: AdaptiveThresholds,
        available_balance: Decimal,
        now: datetime,
    ) -> SignalDecision:
        """
        Evaluate one prediction.

        Args:
            symbol: Trading pair
            price: Current mid price
            prediction: Model output for this tick
            context: Current market context
            thresholds: Effective (adaptive, drought-relaxed) thresholds
            available_balance: Capital available for sizing
            now: Evaluation time

        Returns:
            SignalDecision with a signal for BUY/SELL, or HOLD and the reason
        """
        limits = self.regime_adjusted_thresholds(thresholds, context)

        if context.liquidity_score < self.config.min_liquidity_score:
            return SignalDecision.hold("insufficient liquidity", limits)
        if prediction.confidence < limits.min_confidence:
            return SignalDecision.hold("confidence below threshold", limits)
        if prediction.risk_score > limits.max_risk_score:
            return SignalDecision.hold("risk above threshold", limits)

        confluence = feature_confluence(prediction)
        upper = limits.min_probability
        lower = 1.0 - limits.min_probability

        if prediction.probability >= upper and confluence >= self.config.min_confluence:
            action = SignalAction.BUY
        elif prediction.probability <= lower and confluence <= -self.config.min_confluence:
            action = SignalAction.SELL
        else:
            return SignalDecision.hold("probability inside neutral band", limits)

        price = Decimal(str(price))
        quantity = self.risk_manager.calculate_position_size(
            available_balance, price, prediction.kelly_fraction, limits.kelly_threshold
        )
        if quantity <= 0:
            return SignalDecision.hold("position size is zero", limits)

        signal = TradingSignal(
            symbol=symbol,
            action=action,
            confidence=prediction.confidence,
            price=price,
            quantity=quantity,
            timestamp=ensure_utc(now),
            reasoning=self._reasoning(action, prediction, context, confluence, quantity),
            probability=prediction.probability,
            kelly_fraction=prediction.kelly_fraction,
        )

        logger.info(
            "signal_policy.signal_generated",
            symbol=symbol,
            action=action.value,
            probability=round(prediction.probability, 4),
            confidence=round(prediction.confidence, 4),
            quantity=str(quantity),
        )
        return SignalDecision(action=action, reason=signal.reasoning, signal=signal, thresholds=limits)

    @staticmethod
    def _reasoning(
        action: SignalAction,
        prediction: PredictionOutput,
        context: MarketContext,
        confluence: float,
        quantity: Decimal,
    ) -> str:
        top = sorted(
            prediction.feature_contributions.items(), key=lambda kv: abs(kv[1]), reverse=True
        )[:2]
        drivers = ", ".join(f"{name} {value:+.3f}" for name, value in top)
        return (
            f"{action.value.upper()} p={prediction.probability:.3f} "
            f"conf={prediction.confidence:.2f} risk={prediction.risk_score:.2f} "
            f"confluence={confluence:+.2f}; drivers: {drivers}; "
            f"regime={context.market_regime.value}/{context.volatility_regime.value} "
            f"liquidity={context.liquidity_score:.2f}; "
            f"kelly={prediction.kelly_fraction:.3f} qty={quantity}"
        )
