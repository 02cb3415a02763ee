"""
Technical indicator engine.

Maintains bounded price / volume / imbalance histories and per-interval OHLC
bars for one symbol, and recomputes a full ``IndicatorSet`` from that history
on demand.
"""

import math
from collections import deque
from datetime import datetime
from typing import Deque, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from tickloop.core.config import IndicatorConfig
from tickloop.core.models import (
    IndicatorSet,
    MarketContext,
    OHLCBar,
    ensure_utc,
    utc_now,
)
from tickloop.indicators.regime import (
    classify_market_hour,
    classify_market_regime,
    classify_volatility,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Indicator math
# =============================================================================

def calculate_sma(values: Sequence[float], period: int) -> float:
    """Simple moving average; last value when history is short."""
    if not values:
        return 0.0
    if len(values) < period:
        return values[-1]
    return sum(values[-period:]) / period


def calculate_ema(values: Sequence[float], period: int) -> float:
    """Exponential moving average seeded with the SMA of the first ``period`` values."""
    if not values:
        return 0.0
    if len(values) < period:
        return values[-1]

    multiplier = 2.0 / (period + 1)
    ema = sum(values[:period]) / period
    for value in values[period:]:
        ema = value * multiplier + ema * (1 - multiplier)
    return ema


def calculate_rsi(prices: Sequence[float], period: int = 14) -> float:
    """Relative Strength Index over simple average gains and losses."""
    if len(prices) < period + 1:
        return 50.0

    gains = 0.0
    losses = 0.0
    window = prices[-(period + 1):]
    for previous, current in zip(window, window[1:]):
        change = current - previous
        if change > 0:
            gains += change
        else:
            losses -= change

    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def _stochastic_at(prices: Sequence[float], end: int, period: int) -> float:
    window = prices[max(0, end - period + 1):end + 1]
    high, low = max(window), min(window)
    if high == low:
        return 50.0
    return (prices[end] - low) / (high - low) * 100


def calculate_stochastic(prices: Sequence[float], period: int = 14) -> Tuple[float, float]:
    """Stochastic %K and %D (mean of the last three %K values)."""
    if not prices:
        return 50.0, 50.0

    last = len(prices) - 1
    k_values = [
        _stochastic_at(prices, last - offset, period)
        for offset in range(3)
        if last - offset >= 0
    ]
    return k_values[0], sum(k_values) / len(k_values)


def calculate_williams_r(prices: Sequence[float], period: int = 14) -> float:
    """Williams %R in [-100, 0]."""
    if not prices:
        return -50.0
    window = prices[-period:]
    high, low = max(window), min(window)
    if high == low:
        return -50.0
    return (high - prices[-1]) / (high - low) * -100


def calculate_bollinger(
    prices: Sequence[float], period: int = 20, num_std: float = 2.0
) -> Tuple[float, float, float]:
    """Bollinger bands (upper, middle, lower) using population std."""
    window = np.asarray(prices[-period:], dtype=float)
    middle = float(window.mean())
    std = float(window.std())
    return middle + num_std * std, middle, middle - num_std * std


def true_ranges(bars: Sequence[OHLCBar]) -> List[float]:
    """True range of each bar against the previous close."""
    ranges = []
    for previous, bar in zip(bars, bars[1:]):
        ranges.append(max(
            bar.high - bar.low,
            abs(bar.high - previous.close),
            abs(bar.low - previous.close),
        ))
    return ranges


# =============================================================================
# Indicator Engine
# =============================================================================

class IndicatorEngine:
    """
    Rolling technical indicators for a single symbol.

    Histories are capped at ``max_history`` samples; indicators are only
    produced once ``min_samples`` prices have been seen.
    """

    RSI_PERIOD = 14
    STOCH_PERIOD = 14
    WILLIAMS_PERIOD = 14
    BOLLINGER_PERIOD = 20
    ATR_PERIOD = 14
    VWAP_BARS = 20
    RANGE_WINDOW = 20
    PRESSURE_WINDOW = 5
    MACD_SIGNAL_PERIOD = 9

    def __init__(self, symbol: str, config: Optional[IndicatorConfig] = None):
        self.symbol = symbol
        self.config = config or IndicatorConfig()
        self.logger = logger.bind(symbol=symbol)

        maxlen = self.config.max_history
        self.prices: Deque[float] = deque(maxlen=maxlen)
        self.volumes: Deque[float] = deque(maxlen=maxlen)
        self.imbalances: Deque[float] = deque(maxlen=maxlen)
        self.macd_history: Deque[float] = deque(maxlen=maxlen)
        self.bars: Deque[OHLCBar] = deque(maxlen=maxlen)

        self._bar_bucket: Optional[int] = None
        self.latest: Optional[IndicatorSet] = None

    @property
    def sample_count(self) -> int:
        return len(self.prices)

    def recent_prices(self, count: int) -> List[float]:
        if count <= 0:
            return []
        return list(self.prices)[-count:]

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def update(
        self,
        price: float,
        volume: float = 0.0,
        timestamp: Optional[datetime] = None,
        imbalance: float = 0.0,
    ) -> None:
        """Append one validated tick to the histories."""
        if not math.isfinite(price) or price <= 0:
            self.logger.warning("indicators.invalid_price", price=price)
            return

        timestamp = ensure_utc(timestamp) if timestamp else utc_now()
        volume = volume if math.isfinite(volume) and volume > 0 else 0.0
        imbalance = min(max(imbalance, -1.0), 1.0) if math.isfinite(imbalance) else 0.0

        self.prices.append(price)
        self.volumes.append(volume)
        self.imbalances.append(imbalance)
        self._update_bars(price, volume, timestamp)

        if len(self.prices) >= 12:
            self.macd_history.append(self._macd_line(list(self.prices)))

    def _update_bars(self, price: float, volume: float, timestamp: datetime) -> None:
        interval = self.config.bar_interval_seconds
        bucket = int(timestamp.timestamp()) // interval * interval

        if self._bar_bucket is None or bucket > self._bar_bucket:
            self._bar_bucket = bucket
            self.bars.append(OHLCBar(
                timestamp=datetime.fromtimestamp(bucket, tz=timestamp.tzinfo),
                open=price,
                high=price,
                low=price,
                close=price,
                volume=volume,
            ))
        else:
            # Same bucket, or a late tick folded into the current bar
            self.bars[-1].update(price, volume)

    # ------------------------------------------------------------------
    # Calculation
    # ------------------------------------------------------------------

    @staticmethod
    def _macd_line(prices: List[float]) -> float:
        slow_period = min(26, len(prices))
        return calculate_ema(prices, 12) - calculate_ema(prices, slow_period)

    def _macd_signal(self) -> float:
        history = list(self.macd_history)
        if not history:
            return 0.0
        if len(history) < self.MACD_SIGNAL_PERIOD:
            return sum(history) / len(history)
        return calculate_ema(history, self.MACD_SIGNAL_PERIOD)

    def _atr(self) -> float:
        ranges = true_ranges(list(self.bars))
        if not ranges:
            # Fewer than two bars: tick-to-tick ranges
            prices = self.recent_prices(self.ATR_PERIOD + 1)
            ranges = [abs(b - a) for a, b in zip(prices, prices[1:])]
        if not ranges:
            return 0.0
        window = ranges[-self.ATR_PERIOD:]
        return sum(window) / len(window)

    def _vwap(self, fallback: float) -> float:
        bars = list(self.bars)[-self.VWAP_BARS:]
        total_volume = sum(bar.volume for bar in bars)
        if total_volume <= 0:
            return bars[-1].close if bars else fallback
        return sum(bar.typical_price * bar.volume for bar in bars) / total_volume

    def calculate_indicators(self) -> Optional[IndicatorSet]:
        """Recompute all indicators, or None while history is insufficient."""
        n = len(self.prices)
        if n < self.config.min_samples:
            self.logger.debug(
                "indicators.insufficient_data",
                samples=n,
                required=self.config.min_samples,
            )
            return None

        prices = list(self.prices)
        volumes = list(self.volumes)
        price = prices[-1]

        ema_12 = calculate_ema(prices, 12)
        ema_26 = calculate_ema(prices, min(26, n))
        macd = ema_12 - ema_26
        macd_signal = self._macd_signal()

        stoch_k, stoch_d = calculate_stochastic(prices, self.STOCH_PERIOD)
        upper, middle, lower = calculate_bollinger(prices, self.BOLLINGER_PERIOD)

        volume_sma = calculate_sma(volumes, min(20, n))
        volume_ratio = volumes[-1] / volume_sma if volume_sma > 0 else 1.0

        sma_20 = calculate_sma(prices, 20)
        trend_strength = abs(ema_12 - ema_26) / sma_20 * 100 if sma_20 > 0 else 0.0

        window = prices[-self.RANGE_WINDOW:]
        pressure_window = list(self.imbalances)[-self.PRESSURE_WINDOW:]

        self.latest = IndicatorSet(
            price=price,
            sample_count=n,
            sma_9=calculate_sma(prices, 9),
            sma_21=calculate_sma(prices, 21),
            ema_9=calculate_ema(prices, 9),
            ema_21=calculate_ema(prices, 21),
            ema_12=ema_12,
            ema_26=ema_26,
            macd=macd,
            macd_signal=macd_signal,
            macd_histogram=macd - macd_signal,
            rsi_14=calculate_rsi(prices, self.RSI_PERIOD),
            stoch_k=stoch_k,
            stoch_d=stoch_d,
            williams_r=calculate_williams_r(prices, self.WILLIAMS_PERIOD),
            bollinger_upper=upper,
            bollinger_middle=middle,
            bollinger_lower=lower,
            atr=self._atr(),
            volume_sma=volume_sma,
            volume_ratio=volume_ratio,
            vwap=self._vwap(price),
            support_level=min(window),
            resistance_level=max(window),
            trend_strength=trend_strength,
            orderbook_pressure=sum(pressure_window) / len(pressure_window),
        )
        return self.latest

    def market_context(
        self,
        liquidity_score: float = 0.5,
        spread_quality: float = 0.5,
        now: Optional[datetime] = None,
    ) -> MarketContext:
        """Classify the current market using the latest indicators."""
        now = ensure_utc(now) if now else utc_now()
        liquidity_score = min(max(liquidity_score, 0.0), 1.0)
        spread_quality = min(max(spread_quality, 0.0), 1.0)

        indicators = self.latest
        if indicators is None or len(self.prices) < self.config.min_samples:
            return MarketContext(
                market_hour=classify_market_hour(now),
                liquidity_score=liquidity_score,
                spread_quality=spread_quality,
            )

        return MarketContext(
            volatility_regime=classify_volatility(indicators.atr, indicators.bollinger_middle),
            market_regime=classify_market_regime(
                indicators.ema_9,
                indicators.ema_21,
                indicators.trend_strength,
                indicators.bollinger_width_pct,
            ),
            market_hour=classify_market_hour(now),
            liquidity_score=liquidity_score,
            spread_quality=spread_quality,
        )

    def reset(self) -> None:
        """Drop all history."""
        self.prices.clear()
        self.volumes.clear()
        self.imbalances.clear()
        self.macd_history.clear()
        self.bars.clear()
        self._bar_bucket = None
        self.latest = None
