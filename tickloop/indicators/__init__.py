"""Technical indicators and market regime classification."""

from tickloop.indicators.regime import (
    classify_market_hour,
    classify_market_regime,
    classify_volatility,
)
from tickloop.indicators.technical import IndicatorEngine

__all__ = [
    "IndicatorEngine",
    "classify_market_hour",
    "classify_market_regime",
    "classify_volatility",
]
