"""
Feedback learning for the prediction engine.

Pure functions over trade outcomes: outcome validation, rolling metrics,
adaptive thresholds, feature-weight retraining and signal-drought
relaxation. State lives in ``PredictionEngine``.
"""

import math
from typing import Dict, List, Optional, Sequence

import numpy as np

from tickloop.core.models import AdaptiveThresholds, PerformanceMetrics, TradeOutcome
from tickloop.prediction.features import FEATURE_NAMES

DEFAULT_WEIGHTS: Dict[str, float] = {
    "technical": 0.25,
    "momentum": 0.20,
    "volatility": 0.15,
    "market_structure": 0.20,
    "orderbook_depth": 0.20,
}

MIN_WEIGHT = 0.05
MAX_WEIGHT = 0.45

# Retraining: success/failure feature gap
STRONG_FEATURE_GAP = 0.2
WEAK_FEATURE_GAP = 0.08

# Threshold adaptation triggers
TIGHTEN_WIN_RATE = 0.55
TIGHTEN_PROFIT_FACTOR = 1.15
LOOSEN_WIN_RATE = 0.42
LOOSEN_PROFIT_FACTOR = 0.92

# Step per adaptation
THRESHOLD_STEPS: Dict[str, float] = {
    "min_probability": 0.01,
    "min_confidence": 0.01,
    "max_risk_score": -0.02,
    "kelly_threshold": 0.005,
}

MAX_ABS_RETURN_PCT = 50.0
PROFIT_FACTOR_CAP = 10.0


def normalize_weights(
    weights: Dict[str, float], low: float = MIN_WEIGHT, high: float = MAX_WEIGHT
) -> Dict[str, float]:
    """
    Project weights onto {sum == 1, low <= w <= high}.

    Clamps, then repeatedly spreads the residual over the weights that are
    not pinned at the bound in the direction of the residual, proportionally
    to their size.
    """
    if len(weights) * low > 1 or len(weights) * high < 1:
        raise ValueError("Weight bounds cannot sum to 1")

    result = {k: min(max(v if math.isfinite(v) else low, low), high) for k, v in weights.items()}

    for _ in range(len(result) + 1):
        residual = 1.0 - sum(result.values())
        if abs(residual) < 1e-12:
            break

        if residual > 0:
            free = [k for k, v in result.items() if v < high]
        else:
            free = [k for k, v in result.items() if v > low]
        if not free:
            break

        free_total = sum(result[k] for k in free)
        for k in free:
            share = result[k] / free_total if free_total > 0 else 1.0 / len(free)
            result[k] = min(max(result[k] + residual * share, low), high)

    return result


def validate_outcome(outcome: TradeOutcome) -> Optional[str]:
    """Reason an outcome is unusable for learning, or None if it is fine."""
    entry, exit_ = float(outcome.entry_price), float(outcome.exit_price)
    if not (math.isfinite(entry) and entry > 0 and math.isfinite(exit_) and exit_ > 0):
        return "invalid prices"
    if not math.isfinite(outcome.actual_return) or abs(outcome.actual_return) > MAX_ABS_RETURN_PCT:
        return "implausible return"
    if not math.isfinite(outcome.holding_time_seconds) or outcome.holding_time_seconds < 0:
        return "invalid holding time"
    if not (
        math.isfinite(outcome.max_favorable_excursion)
        and math.isfinite(outcome.max_adverse_excursion)
    ):
        return "invalid excursions"
    return None


def compute_metrics(outcomes: Sequence[TradeOutcome]) -> PerformanceMetrics:
    """Win rate, Sharpe, profit factor and averages over ``outcomes``."""
    if not outcomes:
        return PerformanceMetrics()

    returns = np.array([o.actual_return for o in outcomes], dtype=float)
    wins = sum(1 for o in outcomes if o.success)

    gross_win = float(sum(float(o.realized_pnl) for o in outcomes if o.realized_pnl > 0))
    gross_loss = float(sum(-float(o.realized_pnl) for o in outcomes if o.realized_pnl < 0))
    if gross_loss > 0:
        profit_factor = min(gross_win / gross_loss, PROFIT_FACTOR_CAP)
    else:
        profit_factor = PROFIT_FACTOR_CAP if gross_win > 0 else 0.0

    std = float(returns.std())
    sharpe = float(returns.mean()) / std if std > 0 else 0.0

    return PerformanceMetrics(
        total_trades=len(outcomes),
        win_rate=wins / len(outcomes),
        sharpe_ratio=sharpe,
        profit_factor=profit_factor,
        avg_return=float(returns.mean()),
        avg_mfe=float(np.mean([o.max_favorable_excursion for o in outcomes])),
        avg_mae=float(np.mean([o.max_adverse_excursion for o in outcomes])),
    )


def adapt_thresholds(
    thresholds: AdaptiveThresholds, metrics: PerformanceMetrics
) -> AdaptiveThresholds:
    """Tighten after strong performance, loosen after weak, always within bounds."""
    if metrics.win_rate > TIGHTEN_WIN_RATE and metrics.profit_factor > TIGHTEN_PROFIT_FACTOR:
        direction = 1.0
    elif metrics.win_rate < LOOSEN_WIN_RATE or metrics.profit_factor < LOOSEN_PROFIT_FACTOR:
        direction = -1.0
    else:
        return thresholds.clamped()

    values = {
        name: getattr(thresholds, name) + step * direction
        for name, step in THRESHOLD_STEPS.items()
    }
    return AdaptiveThresholds(**values).clamped()


def aligned_features(outcome: TradeOutcome) -> Optional[Dict[str, float]]:
    """Prediction features signed so that positive means "agreed with the trade"."""
    if outcome.prediction is None or not outcome.prediction.features:
        return None
    return {
        name: outcome.prediction.features.get(name, 0.0) * outcome.direction
        for name in FEATURE_NAMES
    }


def retrain_weights(
    weights: Dict[str, float],
    outcomes: Sequence[TradeOutcome],
    learning_rate: float = 0.10,
    decay: float = 0.95,
) -> Dict[str, float]:
    """
    Nudge feature weights by how well each feature separated wins from losses.

    Features whose mean aligned value on winners exceeds that on losers by
    more than ``STRONG_FEATURE_GAP`` are boosted; gaps below
    ``WEAK_FEATURE_GAP`` decay. Weights are then re-projected onto the bounded
    simplex. Without both winners and losers the weights are only normalized.
    """
    successes: List[Dict[str, float]] = []
    failures: List[Dict[str, float]] = []
    for outcome in outcomes:
        features = aligned_features(outcome)
        if features is None:
            continue
        (successes if outcome.success else failures).append(features)

    if not successes or not failures:
        return normalize_weights(weights)

    updated = dict(weights)
    for name in FEATURE_NAMES:
        success_mean = sum(f[name] for f in successes) / len(successes)
        failure_mean = sum(f[name] for f in failures) / len(failures)
        gap = success_mean - failure_mean

        if gap > STRONG_FEATURE_GAP:
            updated[name] = updated[name] * (1 + learning_rate)
        elif gap < WEAK_FEATURE_GAP:
            updated[name] = updated[name] * decay

    return normalize_weights(updated)


def drought_multiplier(
    elapsed_seconds: float,
    grace_seconds: float = 120.0,
    relax_per_minute: float = 0.02,
    floor: float = 0.85,
) -> float:
    """Threshold multiplier in [floor, 1] decaying after the grace period."""
    if elapsed_seconds <= grace_seconds:
        return 1.0
    minutes = (elapsed_seconds - grace_seconds) / 60
    return max(floor, 1.0 - relax_per_minute * minutes)


def relax_thresholds(thresholds: AdaptiveThresholds, multiplier: float) -> AdaptiveThresholds:
    """Move every threshold towards permissive by ``multiplier`` (1 = unchanged)."""
    if multiplier >= 1.0:
        return thresholds
    return AdaptiveThresholds(
        min_probability=0.5 + (thresholds.min_probability - 0.5) * multiplier,
        min_confidence=thresholds.min_confidence * multiplier,
        max_risk_score=min(0.80, thresholds.max_risk_score / multiplier),
        kelly_threshold=thresholds.kelly_threshold * multiplier,
    )


def data_quality(sample_count: int) -> str:
    if sample_count < 10:
        return "INSUFFICIENT"
    if sample_count < 50:
        return "BUILDING"
    if sample_count < 200:
        return "GOOD"
    return "EXCELLENT"
