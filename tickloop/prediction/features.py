"""
Feature extraction for the prediction engine.

Five feature groups, each a weighted combination of bounded sub-signals,
so every raw feature lies in [-1, 1]. Positive values point up.
"""

import math
from dataclasses import dataclass
from typing import Dict, Sequence

from tickloop.core.models import IndicatorSet, MarketContext, MarketRegime, VolatilityRegime

FEATURE_NAMES = (
    "technical",
    "momentum",
    "volatility",
    "market_structure",
    "orderbook_depth",
)

# Directional score of each market regime
REGIME_SCORES: Dict[MarketRegime, float] = {
    MarketRegime.STRONG_BULL: 0.8,
    MarketRegime.WEAK_BULL: 0.4,
    MarketRegime.SIDEWAYS_VOLATILE: 0.0,
    MarketRegime.SIDEWAYS_QUIET: 0.0,
    MarketRegime.WEAK_BEAR: -0.4,
    MarketRegime.STRONG_BEAR: -0.8,
}

VOLATILITY_LEVELS: Dict[VolatilityRegime, float] = {
    VolatilityRegime.LOW: 0.2,
    VolatilityRegime.MEDIUM: 0.5,
    VolatilityRegime.HIGH: 0.8,
}


@dataclass(frozen=True)
class RegimeMultipliers:
    """Feature scaling for the current market context."""
    volatility_multiplier: float = 1.0
    regime_multiplier: float = 1.0
    regime_boost: float = 0.0


def _clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    if not math.isfinite(value):
        return 0.0
    return min(max(value, low), high)


def _sign(value: float) -> float:
    if value > 0:
        return 1.0
    if value < 0:
        return -1.0
    return 0.0


def technical_feature(indicators: IndicatorSet) -> float:
    """RSI, MACD histogram, Bollinger position and stochastic deviation."""
    price = indicators.price
    rsi_signal = (indicators.rsi_14 - 50) / 50
    macd_signal = math.tanh(indicators.macd_histogram / price * 1000) if price > 0 else 0.0

    band_half_width = (indicators.bollinger_upper - indicators.bollinger_lower) / 2
    bollinger_position = (
        _clamp((price - indicators.bollinger_middle) / band_half_width)
        if band_half_width > 0
        else 0.0
    )
    stochastic_signal = (indicators.stoch_k - 50) / 50

    return _clamp(
        rsi_signal * 0.35
        + macd_signal * 0.30
        + bollinger_position * 0.20
        + stochastic_signal * 0.15
    )


def momentum_feature(indicators: IndicatorSet, recent_prices: Sequence[float]) -> float:
    """Mean tick return, EMA9/EMA21 spread and Williams %R."""
    returns = [
        (current - previous) / previous
        for previous, current in zip(recent_prices, recent_prices[1:])
        if previous > 0
    ]
    mean_return = sum(returns) / len(returns) if returns else 0.0
    price = indicators.price

    return_signal = math.tanh(mean_return * 500)
    ema_signal = (
        math.tanh((indicators.ema_9 - indicators.ema_21) / price * 200) if price > 0 else 0.0
    )
    williams_signal = (indicators.williams_r + 50) / 50

    return _clamp(return_signal * 0.5 + ema_signal * 0.3 + williams_signal * 0.2)


def volatility_feature(indicators: IndicatorSet, context: MarketContext) -> float:
    """Volatility level, ATR/price and volume surge, signed by price vs VWAP."""
    price = indicators.price
    direction = _sign(price - indicators.vwap)
    level = VOLATILITY_LEVELS[context.volatility_regime]
    atr_signal = math.tanh(indicators.atr / price * 100) if price > 0 else 0.0
    volume_signal = math.tanh(max(indicators.volume_ratio - 1.0, 0.0))

    return _clamp(direction * (level * 0.5 + atr_signal * 0.3 + volume_signal * 0.2))


def market_structure_feature(indicators: IndicatorSet, context: MarketContext) -> float:
    """Regime score, position in the support/resistance range and price vs SMA21."""
    price = indicators.price
    regime_score = REGIME_SCORES[context.market_regime]

    price_range = indicators.resistance_level - indicators.support_level
    range_position = (
        ((price - indicators.support_level) / price_range - 0.5) * 2 if price_range > 0 else 0.0
    )
    trend_position = math.tanh((price - indicators.sma_21) / price * 200) if price > 0 else 0.0

    return _clamp(regime_score * 0.5 + range_position * 0.25 + trend_position * 0.25)


def orderbook_feature(indicators: IndicatorSet, context: MarketContext, imbalance: float) -> float:
    """Instant and smoothed imbalance, damped by a wide spread."""
    instant = math.tanh(imbalance * 5)
    smoothed = math.tanh(indicators.orderbook_pressure * 3)
    return _clamp((instant * 0.6 + smoothed * 0.4) * (0.5 + 0.5 * context.spread_quality))


def extract_features(
    indicators: IndicatorSet,
    context: MarketContext,
    imbalance: float,
    recent_prices: Sequence[float],
) -> Dict[str, float]:
    """Compute all five raw features."""
    return {
        "technical": technical_feature(indicators),
        "momentum": momentum_feature(indicators, recent_prices),
        "volatility": volatility_feature(indicators, context),
        "market_structure": market_structure_feature(indicators, context),
        "orderbook_depth": orderbook_feature(indicators, context, imbalance),
    }


def regime_multipliers(context: MarketContext) -> RegimeMultipliers:
    """Feature scaling for the volatility and market regime."""
    volatility_multiplier = {
        VolatilityRegime.LOW: 1.3,
        VolatilityRegime.MEDIUM: 1.0,
        VolatilityRegime.HIGH: 0.8,
    }[context.volatility_regime]

    regime = context.market_regime
    if regime.is_strong:
        return RegimeMultipliers(volatility_multiplier, 1.2, 0.05)
    if regime.is_weak:
        return RegimeMultipliers(volatility_multiplier, 1.1, 0.03)
    if regime == MarketRegime.SIDEWAYS_VOLATILE:
        return RegimeMultipliers(volatility_multiplier, 0.9, -0.02)
    return RegimeMultipliers(volatility_multiplier, 0.95, -0.01)


def apply_regime_multipliers(
    features: Dict[str, float], multipliers: RegimeMultipliers
) -> Dict[str, float]:
    """Scale raw features; the regime boost follows the technical signal's sign."""
    technical = features["technical"]
    return {
        "technical": technical * multipliers.regime_multiplier
        + multipliers.regime_boost * _sign(technical),
        "momentum": features["momentum"] * multipliers.volatility_multiplier,
        "volatility": features["volatility"] * multipliers.volatility_multiplier,
        "market_structure": features["market_structure"] * multipliers.regime_multiplier,
        "orderbook_depth": features["orderbook_depth"],
    }
