"""Shared factories for building test data."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

from tickloop.core.models import (
    IndicatorSet,
    OrderSide,
    PredictionOutput,
    PriceTick,
    TradeOutcome,
)

# A Wednesday afternoon: London / New York overlap
BASE_TIME = datetime(2024, 1, 3, 14, 0, 0, tzinfo=timezone.utc)


def make_indicator_set(**overrides) -> IndicatorSet:
    """Neutral indicator snapshot around price 100."""
    values = dict(
        price=100.0,
        sample_count=30,
        sma_9=100.0,
        sma_21=100.0,
        ema_9=100.0,
        ema_21=100.0,
        ema_12=100.0,
        ema_26=100.0,
        macd=0.0,
        macd_signal=0.0,
        macd_histogram=0.0,
        rsi_14=50.0,
        stoch_k=50.0,
        stoch_d=50.0,
        williams_r=-50.0,
        bollinger_upper=101.0,
        bollinger_middle=100.0,
        bollinger_lower=99.0,
        atr=0.3,
        volume_sma=1.0,
        volume_ratio=1.0,
        vwap=100.0,
        support_level=99.0,
        resistance_level=101.0,
        trend_strength=0.0,
        orderbook_pressure=0.0,
    )
    values.update(overrides)
    return IndicatorSet(**values)


def make_bullish_indicator_set(**overrides) -> IndicatorSet:
    """Snapshot with every feature group pointing up."""
    values = dict(
        price=102.0,
        sma_9=101.5,
        sma_21=100.5,
        ema_9=101.6,
        ema_21=100.6,
        ema_12=101.4,
        ema_26=100.4,
        macd=1.0,
        macd_signal=0.6,
        macd_histogram=0.4,
        rsi_14=68.0,
        stoch_k=85.0,
        stoch_d=80.0,
        williams_r=-10.0,
        bollinger_upper=102.5,
        bollinger_middle=101.0,
        bollinger_lower=99.5,
        vwap=100.8,
        support_level=99.5,
        resistance_level=102.2,
        trend_strength=1.0,
        orderbook_pressure=0.4,
        volume_ratio=1.5,
    )
    values.update(overrides)
    return make_indicator_set(**values)


def make_prediction(**overrides) -> PredictionOutput:
    values = dict(
        probability=0.7,
        confidence=0.6,
        expected_return=0.8,
        time_horizon_seconds=120,
        risk_score=0.3,
        kelly_fraction=0.1,
        max_adverse_excursion=0.4,
        features={
            "technical": 0.5,
            "momentum": 0.4,
            "volatility": 0.2,
            "market_structure": 0.3,
            "orderbook_depth": 0.2,
        },
        feature_contributions={
            "technical": 0.125,
            "momentum": 0.08,
            "volatility": 0.03,
            "market_structure": 0.06,
            "orderbook_depth": 0.04,
        },
    )
    values.update(overrides)
    return PredictionOutput(**values)


def make_outcome(
    success: bool = True,
    side: OrderSide = OrderSide.BUY,
    actual_return: float = 1.0,
    realized_pnl: str = "10",
    prediction: PredictionOutput = None,
    **overrides,
) -> TradeOutcome:
    values = dict(
        position_id="pos_test",
        symbol="BTCUSDT",
        side=side,
        entry_price=Decimal("100"),
        exit_price=Decimal("101"),
        size=Decimal("1"),
        holding_time_seconds=30.0,
        realized_pnl=Decimal(realized_pnl),
        actual_return=actual_return,
        success=success,
        max_favorable_excursion=max(actual_return, 0.0),
        max_adverse_excursion=max(-actual_return, 0.0),
        exit_reason="profit target" if success else "stop loss",
        prediction=prediction,
        closed_at=BASE_TIME,
    )
    values.update(overrides)
    return TradeOutcome(**values)


def make_ticks(prices: List[float], start: datetime = BASE_TIME, step_seconds: float = 1.0,
               half_spread: float = 0.01, volume: float = 1.0) -> List[PriceTick]:
    return [
        PriceTick(
            bid=price - half_spread,
            ask=price + half_spread,
            timestamp=start + timedelta(seconds=i * step_seconds),
            bid_volume=volume / 2,
            ask_volume=volume / 2,
        )
        for i, price in enumerate(prices)
    ]
