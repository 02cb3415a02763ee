"""
Prediction engine.

Turns indicators and market context into a probabilistic forecast with
sizing inputs, and learns from closed-trade outcomes:

1. Extract five bounded features and scale them for the market regime
2. Weighted score + performance bias + opportunity bonus -> sigmoid probability
3. Confidence, expected return, risk score, horizon, Kelly fraction and MAE
4. On each outcome: rolling metrics, adaptive thresholds and, every
   ``retrain_every`` updates, feature-weight retraining

All model state (weights, thresholds, training buffer, metrics) is read and
written under one lock so prediction, feedback and reset never interleave.
"""

import math
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence

import structlog

from tickloop.core.config import LearningConfig, SignalConfig
from tickloop.core.models import (
    AdaptiveThresholds,
    IndicatorSet,
    MarketContext,
    MarketRegime,
    PerformanceMetrics,
    PredictionOutput,
    TradeOutcome,
    VolatilityRegime,
    ensure_utc,
    utc_now,
)
from tickloop.prediction.features import (
    apply_regime_multipliers,
    extract_features,
    regime_multipliers,
)
from tickloop.prediction.learning import (
    DEFAULT_WEIGHTS,
    adapt_thresholds,
    compute_metrics,
    data_quality,
    drought_multiplier,
    normalize_weights,
    relax_thresholds,
    retrain_weights,
    validate_outcome,
)

logger = structlog.get_logger(__name__)

KELLY_HARD_CAP = 0.25
KELLY_LOSS_RATIO = 0.4        # average loss as a fraction of expected return

CONFIDENCE_BOUNDS = (0.25, 0.92)
RISK_BOUNDS = (0.05, 0.80)
HORIZON_BOUNDS = (20, 180)

BASE_HORIZON_SECONDS = {
    VolatilityRegime.HIGH: 60,
    VolatilityRegime.MEDIUM: 90,
    VolatilityRegime.LOW: 120,
}

MAE_MULTIPLIERS = {
    VolatilityRegime.HIGH: 1.5,
    VolatilityRegime.MEDIUM: 1.0,
    VolatilityRegime.LOW: 0.8,
}

CONFIDENCE_REGIME_ADJUSTMENTS = {
    MarketRegime.STRONG_BULL: 0.08,
    MarketRegime.STRONG_BEAR: 0.08,
    MarketRegime.WEAK_BULL: 0.03,
    MarketRegime.WEAK_BEAR: 0.03,
    MarketRegime.SIDEWAYS_VOLATILE: -0.05,
    MarketRegime.SIDEWAYS_QUIET: -0.03,
}

RISK_REGIME_ADJUSTMENTS = {
    MarketRegime.STRONG_BULL: -0.05,
    MarketRegime.STRONG_BEAR: -0.05,
    MarketRegime.WEAK_BULL: 0.0,
    MarketRegime.WEAK_BEAR: 0.0,
    MarketRegime.SIDEWAYS_VOLATILE: 0.10,
    MarketRegime.SIDEWAYS_QUIET: 0.03,
}

RISK_VOLATILITY_ADJUSTMENTS = {
    VolatilityRegime.LOW: -0.05,
    VolatilityRegime.MEDIUM: 0.0,
    VolatilityRegime.HIGH: 0.15,
}

RETURN_REGIME_MULTIPLIERS = {
    MarketRegime.STRONG_BULL: 1.3,
    MarketRegime.STRONG_BEAR: 1.3,
    MarketRegime.WEAK_BULL: 1.1,
    MarketRegime.WEAK_BEAR: 1.1,
    MarketRegime.SIDEWAYS_VOLATILE: 0.9,
    MarketRegime.SIDEWAYS_QUIET: 0.7,
}

RETURN_VOLATILITY_MULTIPLIERS = {
    VolatilityRegime.LOW: 0.85,
    VolatilityRegime.MEDIUM: 1.0,
    VolatilityRegime.HIGH: 1.2,
}

MAX_EXPECTED_RETURN_PCT = 10.0
PERFORMANCE_BIAS_SCALE = 0.15
OPPORTUNITY_BONUS = 0.05


def _clamp(value: float, low: float, high: float) -> float:
    if not math.isfinite(value):
        return low
    return min(max(value, low), high)


def _sign(value: float) -> float:
    return 1.0 if value > 0 else -1.0 if value < 0 else 0.0


def sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


@dataclass
class PredictionInput:
    """Everything the model sees for one prediction.

    Attributes:
        indicators: Current indicator snapshot
        context: Market regime / liquidity context
        imbalance: Instant order book imbalance, [-1, 1]
        recent_prices: Most recent prices, oldest first
    """
    indicators: IndicatorSet
    context: MarketContext
    imbalance: float = 0.0
    recent_prices: Sequence[float] = field(default_factory=list)
    timestamp: Optional[datetime] = None


class PredictionEngine:
    """
    Weighted-feature prediction model with outcome-driven adaptation.

    Attributes:
        weights: Feature weights (sum 1, each in [0.05, 0.45])
        thresholds: Adaptive signal thresholds
        metrics: Rolling performance over the last ``metrics_window`` outcomes
        training_buffer: Bounded FIFO of accepted outcomes
    """

    def __init__(
        self,
        config: Optional[LearningConfig] = None,
        signal_config: Optional[SignalConfig] = None,
    ):
        self.config = config or LearningConfig()
        self.signal_config = signal_config or SignalConfig()
        self._lock = threading.RLock()
        self._reset_state()

    def _base_thresholds(self) -> AdaptiveThresholds:
        return AdaptiveThresholds(
            min_probability=self.signal_config.min_probability,
            min_confidence=self.signal_config.min_confidence,
            max_risk_score=self.signal_config.max_risk_score,
            kelly_threshold=self.signal_config.kelly_threshold,
        ).clamped()

    def _reset_state(self) -> None:
        self.weights: Dict[str, float] = normalize_weights(DEFAULT_WEIGHTS)
        self.thresholds: AdaptiveThresholds = self._base_thresholds()
        self.training_buffer: Deque[TradeOutcome] = deque(maxlen=self.config.max_training_buffer)
        self.metrics = PerformanceMetrics()
        self.update_count = 0
        self.rejected_updates = 0
        self.last_qualifying_signal_at: Optional[datetime] = None
        self.last_prediction: Optional[PredictionOutput] = None

    def apply_config(self, config: LearningConfig, signal_config: SignalConfig) -> None:
        """
        Swap configuration without discarding learned state.

        The training buffer keeps its newest outcomes. A learned threshold is
        only re-seeded when its own base value changed; the others keep their
        adapted values.
        """
        with self._lock:
            reseeded = {
                name: getattr(signal_config, name)
                for name in AdaptiveThresholds.BOUNDS
                if getattr(signal_config, name) != getattr(self.signal_config, name)
            }
            self.config = config
            self.signal_config = signal_config
            if self.training_buffer.maxlen != config.max_training_buffer:
                self.training_buffer = deque(
                    self.training_buffer, maxlen=config.max_training_buffer
                )
            if reseeded:
                self.thresholds = self.thresholds.model_copy(update=reseeded).clamped()
                logger.info("prediction.thresholds_reseeded", fields=sorted(reseeded))

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict(self, data: PredictionInput) -> PredictionOutput:
        """Produce a forecast for the current tick."""
        indicators, context = data.indicators, data.context

        with self._lock:
            weights = dict(self.weights)
            metrics = self.metrics

            raw_features = extract_features(
                indicators, context, data.imbalance, data.recent_prices
            )
            features = apply_regime_multipliers(raw_features, regime_multipliers(context))
            contributions = {name: value * weights[name] for name, value in features.items()}
            base_score = sum(contributions.values())

            performance_bias = 0.0
            if metrics.total_trades >= self.config.performance_bias_min_trades:
                performance_bias = (
                    (metrics.win_rate - 0.5) * PERFORMANCE_BIAS_SCALE * _sign(base_score)
                )

            opportunity_bonus = 0.0
            if (
                max(abs(v) for v in raw_features.values()) >= self.config.opportunity_threshold
                and context.liquidity_score >= 0.5
                and context.spread_quality >= 0.5
            ):
                opportunity_bonus = OPPORTUNITY_BONUS * _sign(base_score)

            score = base_score + performance_bias + opportunity_bonus
            probability = _clamp(
                sigmoid(score * self.config.sigmoid_slope) + self.config.probability_offset,
                0.001,
                0.999,
            )

            confidence = self._confidence(features, context)
            risk_score = self._risk_score(indicators, context, data.imbalance)
            expected_return = self._expected_return(
                probability, confidence, indicators, context
            )

            prediction = PredictionOutput(
                probability=probability,
                confidence=confidence,
                expected_return=expected_return,
                time_horizon_seconds=self._time_horizon(context),
                risk_score=risk_score,
                kelly_fraction=self._kelly_fraction(probability, expected_return),
                max_adverse_excursion=self._max_adverse_excursion(
                    indicators, context, risk_score
                ),
                features=features,
                feature_contributions=contributions,
                raw_score=score,
                timestamp=ensure_utc(data.timestamp) if data.timestamp else utc_now(),
            )
            self.last_prediction = prediction

        logger.debug(
            "prediction.generated",
            probability=round(probability, 4),
            confidence=round(confidence, 4),
            risk_score=round(risk_score, 4),
            kelly=round(prediction.kelly_fraction, 4),
            regime=context.market_regime.value,
        )
        return prediction

    @staticmethod
    def _confidence(features: Dict[str, float], context: MarketContext) -> float:
        strength = sum(abs(v) for v in features.values()) / len(features)
        confidence = (
            0.45
            + CONFIDENCE_REGIME_ADJUSTMENTS[context.market_regime]
            + (context.liquidity_score - 0.5) * 0.2
            + (context.spread_quality - 0.5) * 0.15
            + math.tanh(strength * 2) * 0.25
        )
        return _clamp(confidence, *CONFIDENCE_BOUNDS)

    @staticmethod
    def _risk_score(indicators: IndicatorSet, context: MarketContext, imbalance: float) -> float:
        risk = (
            0.30
            + RISK_REGIME_ADJUSTMENTS[context.market_regime]
            + RISK_VOLATILITY_ADJUSTMENTS[context.volatility_regime]
            + max(0.0, 0.5 - context.liquidity_score) * 0.3
            + max(0.0, 0.5 - context.spread_quality) * 0.2
        )

        rsi = indicators.rsi_14
        if rsi > 80 or rsi < 20:
            risk += 0.10
        elif rsi > 70 or rsi < 30:
            risk += 0.05

        if abs(imbalance) > 0.6:
            risk += 0.05

        return _clamp(risk, *RISK_BOUNDS)

    @staticmethod
    def _expected_return(
        probability: float,
        confidence: float,
        indicators: IndicatorSet,
        context: MarketContext,
    ) -> float:
        expected = (
            indicators.bollinger_width_pct
            * RETURN_REGIME_MULTIPLIERS[context.market_regime]
            * RETURN_VOLATILITY_MULTIPLIERS[context.volatility_regime]
            * (0.75 + context.liquidity_score * 0.5)
            * confidence
            * abs(probability - 0.5)
        )
        return _clamp(expected, 0.0, MAX_EXPECTED_RETURN_PCT)

    @staticmethod
    def _time_horizon(context: MarketContext) -> int:
        base = BASE_HORIZON_SECONDS[context.volatility_regime]
        horizon = base * (0.8 + context.liquidity_score * 0.4)
        return int(_clamp(round(horizon), *HORIZON_BOUNDS))

    def _kelly_fraction(self, probability: float, expected_return: float) -> float:
        if expected_return <= 0:
            return 0.0

        win_probability = max(probability, 1.0 - probability)
        avg_win = expected_return
        avg_loss = KELLY_LOSS_RATIO * expected_return
        kelly = (win_probability * avg_win - (1 - win_probability) * avg_loss) / avg_win

        cap = min(self.signal_config.max_kelly_fraction, KELLY_HARD_CAP)
        return _clamp(kelly, 0.0, cap)

    @staticmethod
    def _max_adverse_excursion(
        indicators: IndicatorSet, context: MarketContext, risk_score: float
    ) -> float:
        if indicators.price <= 0:
            return 0.0
        atr_pct = indicators.atr / indicators.price * 100
        return atr_pct * MAE_MULTIPLIERS[context.volatility_regime] * (1 + risk_score * 0.5)

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    def effective_thresholds(self, now: Optional[datetime] = None) -> AdaptiveThresholds:
        """Adaptive thresholds relaxed for the current signal drought."""
        now = ensure_utc(now) if now else utc_now()
        with self._lock:
            if not self.signal_config.use_adaptive_thresholds:
                thresholds = self._base_thresholds()
            else:
                thresholds = self.thresholds

            if self.last_qualifying_signal_at is None:
                self.last_qualifying_signal_at = now
            elapsed = (now - self.last_qualifying_signal_at).total_seconds()

            multiplier = drought_multiplier(
                elapsed,
                self.config.drought_grace_seconds,
                self.config.drought_relax_per_minute,
                self.config.drought_floor_multiplier,
            )
        return relax_thresholds(thresholds, multiplier)

    def record_qualifying_signal(self, now: Optional[datetime] = None) -> None:
        with self._lock:
            self.last_qualifying_signal_at = ensure_utc(now) if now else utc_now()

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def update_model(self, outcome: TradeOutcome) -> bool:
        """
        Learn from one closed trade.

        Returns:
            False when the outcome fails validation (model state untouched)
        """
        reason = validate_outcome(outcome)
        if reason is not None:
            with self._lock:
                self.rejected_updates += 1
            logger.warning(
                "prediction.outcome_rejected",
                position_id=outcome.position_id,
                reason=reason,
            )
            return False

        with self._lock:
            self.training_buffer.append(outcome)
            self.update_count += 1

            history = list(self.training_buffer)
            self.metrics = compute_metrics(history[-self.config.metrics_window:])

            if (
                self.signal_config.use_adaptive_thresholds
                and len(history) >= self.config.min_outcomes_for_adaptation
            ):
                self.thresholds = adapt_thresholds(self.thresholds, self.metrics)

            retrained = self.update_count % self.config.retrain_every == 0
            if retrained:
                self.weights = retrain_weights(
                    self.weights,
                    history[-self.config.retrain_window:],
                    self.config.weight_learning_rate,
                    self.config.weight_decay,
                )

            metrics = self.metrics
            update_count = self.update_count

        logger.info(
            "prediction.model_updated",
            position_id=outcome.position_id,
            success=outcome.success,
            updates=update_count,
            win_rate=round(metrics.win_rate, 4),
            profit_factor=round(metrics.profit_factor, 4),
            retrained=retrained,
        )
        return True

    def warm_start(self, outcomes: Iterable[TradeOutcome]) -> int:
        """Replay persisted outcomes (oldest first); returns how many were accepted."""
        accepted = sum(1 for outcome in outcomes if self.update_model(outcome))
        logger.info("prediction.warm_started", accepted=accepted)
        return accepted

    def reset_model(self) -> None:
        """Restore default weights, thresholds, buffer and metrics atomically."""
        with self._lock:
            self._reset_state()
        logger.info("prediction.model_reset")

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    def recent_outcomes(self, count: int) -> List[TradeOutcome]:
        with self._lock:
            return list(self.training_buffer)[-count:] if count > 0 else []

    def get_model_performance(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "metrics": self.metrics.model_dump(),
                "weights": dict(self.weights),
                "thresholds": self.thresholds.model_dump(),
                "training_samples": len(self.training_buffer),
                "updates": self.update_count,
                "rejected_updates": self.rejected_updates,
                "data_quality": data_quality(len(self.training_buffer)),
            }
