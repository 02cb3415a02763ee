"""Data models for the TickLoop trading system.

This module defines the value objects flowing through the decision loop:
- market input (order book levels, ticks, OHLC bars)
- derived analytics (indicator sets, market context, predictions)
- decisions (trading signals)
- portfolio state (positions, tracking, portfolio, trade outcomes)

All monetary values use Decimal for precision.
All timestamps are timezone-aware UTC datetime objects.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class OrderSide(str, Enum):
    """Position side - buy (long) or sell (short)."""
    BUY = "buy"
    SELL = "sell"


class SignalAction(str, Enum):
    """Decision policy output."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class PositionStatus(str, Enum):
    """Position lifecycle status."""
    OPEN = "open"
    PARTIAL = "partial"           # Open, after at least one partial exit
    CLOSED = "closed"


class VolatilityRegime(str, Enum):
    """ATR-over-price volatility bucket."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MarketRegime(str, Enum):
    """Trend / range classification of recent prices."""
    STRONG_BULL = "strong_bull"
    WEAK_BULL = "weak_bull"
    STRONG_BEAR = "strong_bear"
    WEAK_BEAR = "weak_bear"
    SIDEWAYS_VOLATILE = "sideways_volatile"
    SIDEWAYS_QUIET = "sideways_quiet"

    @property
    def is_strong(self) -> bool:
        return self in (MarketRegime.STRONG_BULL, MarketRegime.STRONG_BEAR)

    @property
    def is_weak(self) -> bool:
        return self in (MarketRegime.WEAK_BULL, MarketRegime.WEAK_BEAR)


class MarketHour(str, Enum):
    """Trading session by UTC hour."""
    ASIA = "asia"
    LONDON = "london"
    OVERLAP = "overlap"           # London / New York overlap
    NEW_YORK = "new_york"
    LOW_LIQUIDITY = "low_liquidity"


# =============================================================================
# Market Data Models
# =============================================================================

class BookLevel(BaseModel):
    """Single price level of an order book side."""

    price: float
    quantity: float

    @field_validator("price", "quantity")
    @classmethod
    def validate_finite(cls, v: float) -> float:
        if not math.isfinite(v) or v < 0:
            raise ValueError(f"Book level values must be finite and non-negative, got {v}")
        return v


class OrderBookSnapshot(BaseModel):
    """Top-of-book snapshot delivered by the market-data collaborator.

    Attributes:
        symbol: Trading pair symbol
        bids: Bid levels, best (highest) first
        asks: Ask levels, best (lowest) first
        timestamp: Snapshot time (UTC)
    """

    symbol: str = ""
    bids: List[BookLevel] = Field(default_factory=list)
    asks: List[BookLevel] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def best_bid(self) -> Optional[BookLevel]:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[BookLevel]:
        return self.asks[0] if self.asks else None


class PriceTick(BaseModel):
    """Validated top-of-book quote.

    Construction fails for non-finite or non-positive bid/ask and for a
    crossed book (ask < bid). ``mid`` is derived when not supplied.
    """

    bid: float
    ask: float
    mid: float = 0.0
    timestamp: datetime = Field(default_factory=utc_now)
    bid_volume: float = 0.0
    ask_volume: float = 0.0

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("bid_volume", "ask_volume")
    @classmethod
    def validate_volume(cls, v: float) -> float:
        if not math.isfinite(v) or v < 0:
            raise ValueError(f"Volume must be finite and non-negative, got {v}")
        return v

    @model_validator(mode="after")
    def validate_quote(self) -> "PriceTick":
        for name, value in (("bid", self.bid), ("ask", self.ask)):
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be finite and positive, got {value}")
        if self.ask < self.bid:
            raise ValueError(f"Crossed quote: ask {self.ask} < bid {self.bid}")
        if self.mid <= 0 or not math.isfinite(self.mid):
            self.mid = (self.bid + self.ask) / 2
        return self

    @property
    def volume(self) -> float:
        return self.bid_volume + self.ask_volume

    @property
    def spread(self) -> float:
        return self.ask - self.bid


class OHLCBar(BaseModel):
    """Per-interval OHLC bar aggregated from ticks."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3

    def update(self, price: float, volume: float) -> None:
        """Fold a tick into the bar."""
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price
        self.volume += volume


# =============================================================================
# Analytics Models
# =============================================================================

class IndicatorSet(BaseModel):
    """Snapshot of technical indicators, recomputed from history each tick."""

    price: float
    sample_count: int

    sma_9: float
    sma_21: float
    ema_9: float
    ema_21: float
    ema_12: float
    ema_26: float

    macd: float
    macd_signal: float
    macd_histogram: float

    rsi_14: float = Field(..., ge=0, le=100)
    stoch_k: float = Field(..., ge=0, le=100)
    stoch_d: float = Field(..., ge=0, le=100)
    williams_r: float = Field(..., ge=-100, le=0)

    bollinger_upper: float
    bollinger_middle: float
    bollinger_lower: float

    atr: float = Field(..., ge=0)
    volume_sma: float = 0.0
    volume_ratio: float = 1.0
    vwap: float

    support_level: float
    resistance_level: float
    trend_strength: float = Field(..., ge=0)
    orderbook_pressure: float = Field(default=0.0, ge=-1, le=1)

    @property
    def bollinger_width_pct(self) -> float:
        """Band width as a percentage of the middle band."""
        if self.bollinger_middle <= 0:
            return 0.0
        return (self.bollinger_upper - self.bollinger_lower) / self.bollinger_middle * 100


class MarketContext(BaseModel):
    """Regime classification and liquidity quality for the current tick."""

    volatility_regime: VolatilityRegime = VolatilityRegime.MEDIUM
    market_regime: MarketRegime = MarketRegime.SIDEWAYS_QUIET
    market_hour: MarketHour = MarketHour.LOW_LIQUIDITY
    liquidity_score: float = Field(default=0.5, ge=0, le=1)
    spread_quality: float = Field(default=0.5, ge=0, le=1)


class PredictionOutput(BaseModel):
    """Probabilistic forecast produced by the prediction engine.

    Attributes:
        probability: Probability that price rises over the horizon
        confidence: Confidence in the forecast
        expected_return: Expected favorable move in percent (non-negative)
        time_horizon_seconds: Holding horizon for a trade on this forecast
        risk_score: Aggregate risk of acting on the forecast
        kelly_fraction: Capped Kelly fraction of capital
        max_adverse_excursion: Expected adverse move in percent
        features: Regime-adjusted feature values
        feature_contributions: feature value x model weight
        raw_score: Weighted score before the sigmoid
    """

    probability: float = Field(..., ge=0, le=1)
    confidence: float = Field(..., ge=0.25, le=0.92)
    expected_return: float = Field(..., ge=0)
    time_horizon_seconds: int = Field(..., ge=20, le=180)
    risk_score: float = Field(..., ge=0.05, le=0.80)
    kelly_fraction: float = Field(..., ge=0, le=0.25)
    max_adverse_excursion: float = Field(..., ge=0)
    features: Dict[str, float] = Field(default_factory=dict)
    feature_contributions: Dict[str, float] = Field(default_factory=dict)
    raw_score: float = 0.0
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def direction(self) -> OrderSide:
        return OrderSide.BUY if self.probability >= 0.5 else OrderSide.SELL

    @property
    def win_probability(self) -> float:
        """Probability of the predicted direction being right."""
        return max(self.probability, 1.0 - self.probability)


class AdaptiveThresholds(BaseModel):
    """Signal thresholds, adapted by recent performance within fixed bounds."""

    BOUNDS: ClassVar[Dict[str, Tuple[float, float]]] = {
        "min_probability": (0.52, 0.70),
        "min_confidence": (0.30, 0.75),
        "max_risk_score": (0.50, 0.80),
        "kelly_threshold": (0.01, 0.10),
    }

    min_probability: float = 0.55
    min_confidence: float = 0.40
    max_risk_score: float = 0.70
    kelly_threshold: float = 0.03

    def clamped(self) -> "AdaptiveThresholds":
        values = {}
        for name, (low, high) in self.BOUNDS.items():
            values[name] = min(max(getattr(self, name), low), high)
        return AdaptiveThresholds(**values)


class PerformanceMetrics(BaseModel):
    """Rolling performance of recent trade outcomes."""

    total_trades: int = 0
    win_rate: float = 0.0
    sharpe_ratio: float = 0.0
    profit_factor: float = 0.0
    avg_return: float = 0.0
    avg_mfe: float = 0.0
    avg_mae: float = 0.0


# =============================================================================
# Signal Models
# =============================================================================

class TradingSignal(BaseModel):
    """Actionable signal emitted by the decision policy."""

    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str
    action: SignalAction
    confidence: float = Field(..., ge=0, le=1)
    price: Decimal
    quantity: Decimal
    timestamp: datetime = Field(default_factory=utc_now)
    reasoning: str = ""
    probability: float = 0.5
    kelly_fraction: float = 0.0

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: SignalAction) -> SignalAction:
        if v == SignalAction.HOLD:
            raise ValueError("A trading signal cannot be HOLD")
        return v

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def side(self) -> OrderSide:
        return OrderSide.BUY if self.action == SignalAction.BUY else OrderSide.SELL


class SignalDecision(BaseModel):
    """Result of one policy evaluation (a signal, or HOLD with a reason)."""

    action: SignalAction = SignalAction.HOLD
    reason: str = ""
    signal: Optional[TradingSignal] = None
    thresholds: Optional[AdaptiveThresholds] = None

    @classmethod
    def hold(cls, reason: str, thresholds: Optional[AdaptiveThresholds] = None) -> "SignalDecision":
        return cls(action=SignalAction.HOLD, reason=reason, thresholds=thresholds)


# =============================================================================
# Position & Portfolio Models
# =============================================================================

class Position(BaseModel):
    """Open or historical position.

    ``realized_pnl`` accumulates net P&L from partial and final exits;
    ``locked_pnl`` is the part of it moved into the portfolio's locked profits.
    """

    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: f"pos_{uuid4().hex[:16]}")
    symbol: str
    side: OrderSide
    size: Decimal
    initial_size: Decimal = Decimal("0")
    entry_price: Decimal
    current_price: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")
    locked_pnl: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    status: PositionStatus = PositionStatus.OPEN
    timestamp: datetime = Field(default_factory=utc_now)
    closed_at: Optional[datetime] = None
    exit_reason: Optional[str] = None

    @field_validator("size", "entry_price")
    @classmethod
    def validate_positive(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Size and entry price must be non-negative")
        return v

    @field_validator("timestamp", "closed_at")
    @classmethod
    def validate_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else v

    @model_validator(mode="after")
    def fill_defaults(self) -> "Position":
        if self.initial_size == 0:
            self.initial_size = self.size
        if self.current_price == 0:
            self.current_price = self.entry_price
        return self

    @property
    def is_active(self) -> bool:
        return self.status != PositionStatus.CLOSED

    @property
    def direction(self) -> Decimal:
        return Decimal("1") if self.side == OrderSide.BUY else Decimal("-1")

    @property
    def notional(self) -> Decimal:
        return abs(self.size * self.current_price)

    def calculate_unrealized_pnl(self, price: Decimal) -> Decimal:
        """Side-signed mark-to-market P&L at ``price``."""
        return (price - self.entry_price) * self.size * self.direction

    def price_move_pct(self, price: Decimal) -> float:
        """Favorable move from entry in percent (negative when adverse)."""
        if self.entry_price <= 0:
            return 0.0
        return float((price - self.entry_price) / self.entry_price * 100 * self.direction)


@dataclass
class PositionTracking:
    """Per-position exit state, alive only while the position is open.

    Attributes:
        prediction: Forecast the position was opened on (None after recovery)
        entry_time: Time the position was opened
        max_favorable_excursion: Best favorable move seen, percent
        max_adverse_excursion: Worst adverse move seen, percent (positive)
        trailing_stop: Current trailing-stop price
        partial_tiers_taken: Number of partial-profit tiers executed
    """
    prediction: Optional[PredictionOutput]
    entry_time: datetime
    max_favorable_excursion: float = 0.0
    max_adverse_excursion: float = 0.0
    trailing_stop: Optional[Decimal] = None
    partial_tiers_taken: int = 0
    partial_history: List[str] = field(default_factory=list)


class Portfolio(BaseModel):
    """Portfolio state. ``positions`` holds open and closed positions."""

    model_config = ConfigDict(json_encoders={Decimal: str})

    base_capital: Decimal = Decimal("10000")
    available_balance: Decimal = Decimal("10000")
    locked_profits: Decimal = Decimal("0")
    positions: List[Position] = Field(default_factory=list)
    total_pnl: Decimal = Decimal("0")
    day_pnl: Decimal = Decimal("0")
    equity: Decimal = Decimal("10000")
    trading_day: Optional[str] = None  # YYYY-MM-DD
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def open_positions(self) -> List[Position]:
        return [p for p in self.positions if p.is_active]

    @property
    def closed_positions(self) -> List[Position]:
        return [p for p in self.positions if not p.is_active]


class TradeOutcome(BaseModel):
    """Immutable record of a fully closed position, fed back to the model."""

    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    position_id: str
    symbol: str
    side: OrderSide
    entry_price: Decimal
    exit_price: Decimal
    size: Decimal
    holding_time_seconds: float
    realized_pnl: Decimal
    actual_return: float          # percent, side-signed, net of fees
    success: bool
    max_favorable_excursion: float
    max_adverse_excursion: float
    exit_reason: str
    prediction: Optional[PredictionOutput] = None
    closed_at: datetime = Field(default_factory=utc_now)

    @field_validator("closed_at")
    @classmethod
    def validate_closed_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def direction(self) -> float:
        return 1.0 if self.side == OrderSide.BUY else -1.0
