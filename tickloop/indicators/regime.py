"""
Market regime classification.

Buckets the indicator snapshot into a volatility regime, a trend/range
regime and a trading session. All functions are pure.
"""

from datetime import datetime

from tickloop.core.models import MarketHour, MarketRegime, VolatilityRegime

# ATR as percent of price
LOW_VOLATILITY_PCT = 0.5
HIGH_VOLATILITY_PCT = 1.5

# Normalized EMA spread above which a trend is "strong"
STRONG_TREND_THRESHOLD = 1.0

# Bollinger width (percent of middle band) splitting sideways markets
VOLATILE_RANGE_WIDTH_PCT = 4.0

# EMA spread (percent of slow EMA) treated as no crossover
CROSSOVER_DEAD_BAND_PCT = 0.02


def classify_volatility(atr: float, average_price: float) -> VolatilityRegime:
    """Bucket ATR/price into LOW, MEDIUM or HIGH."""
    if average_price <= 0:
        return VolatilityRegime.MEDIUM

    atr_pct = atr / average_price * 100
    if atr_pct < LOW_VOLATILITY_PCT:
        return VolatilityRegime.LOW
    if atr_pct < HIGH_VOLATILITY_PCT:
        return VolatilityRegime.MEDIUM
    return VolatilityRegime.HIGH


def classify_market_regime(
    ema_fast: float,
    ema_slow: float,
    trend_strength: float,
    bollinger_width_pct: float,
) -> MarketRegime:
    """
    Classify trend direction and strength.

    Args:
        ema_fast: Fast EMA (9)
        ema_slow: Slow EMA (21)
        trend_strength: |EMA12 - EMA26| / SMA20 x 100
        bollinger_width_pct: Band width as percent of the middle band

    Returns:
        MarketRegime
    """
    strong = trend_strength > STRONG_TREND_THRESHOLD
    spread_pct = (ema_fast - ema_slow) / ema_slow * 100 if ema_slow > 0 else 0.0

    if spread_pct > CROSSOVER_DEAD_BAND_PCT:
        return MarketRegime.STRONG_BULL if strong else MarketRegime.WEAK_BULL
    if spread_pct < -CROSSOVER_DEAD_BAND_PCT:
        return MarketRegime.STRONG_BEAR if strong else MarketRegime.WEAK_BEAR

    if bollinger_width_pct > VOLATILE_RANGE_WIDTH_PCT:
        return MarketRegime.SIDEWAYS_VOLATILE
    return MarketRegime.SIDEWAYS_QUIET


def classify_market_hour(now: datetime) -> MarketHour:
    """Map a UTC timestamp to its trading session."""
    if now.weekday() >= 5:
        return MarketHour.LOW_LIQUIDITY

    hour = now.hour
    if 13 <= hour <= 16:
        return MarketHour.OVERLAP
    if 8 <= hour <= 12:
        return MarketHour.LONDON
    if 17 <= hour <= 21:
        return MarketHour.NEW_YORK
    return MarketHour.ASIA
