"""
Order book ingestion.

Converts order book snapshots from the market-data collaborator into
validated ticks plus the liquidity inputs the decision loop needs.
Malformed snapshots are dropped here and never reach the core.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog
from pydantic import ValidationError

from tickloop.core.config import MarketDataConfig
from tickloop.core.models import BookLevel, OrderBookSnapshot, PriceTick

logger = structlog.get_logger(__name__)


@dataclass
class MarketSnapshot:
    """Validated tick with its order book derived inputs.

    Attributes:
        tick: Top-of-book quote
        imbalance: Bid/ask volume imbalance over the top levels, [-1, 1]
        liquidity_score: Depth score, [0, 1]
        spread_quality: Tightness of the spread, [0, 1]
    """
    tick: PriceTick
    imbalance: float = 0.0
    liquidity_score: float = 0.5
    spread_quality: float = 0.5


def order_book_imbalance(
    bids: Sequence[BookLevel], asks: Sequence[BookLevel], depth: int = 5
) -> float:
    """(bid volume - ask volume) / total volume over the top ``depth`` levels."""
    bid_volume = sum(level.quantity for level in bids[:depth])
    ask_volume = sum(level.quantity for level in asks[:depth])
    total = bid_volume + ask_volume
    if total <= 0:
        return 0.0
    return (bid_volume - ask_volume) / total


def liquidity_score(
    bids: Sequence[BookLevel],
    asks: Sequence[BookLevel],
    depth: int = 10,
    reference_quantity: float = 50.0,
) -> float:
    """Saturating depth score: tanh(total quantity / reference quantity)."""
    if reference_quantity <= 0:
        return 0.0
    total = sum(level.quantity for level in bids[:depth])
    total += sum(level.quantity for level in asks[:depth])
    return math.tanh(total / reference_quantity)


def spread_quality(bid: float, ask: float, max_spread_bps: float = 10.0) -> float:
    """1 for a zero spread, falling linearly to 0 at ``max_spread_bps``."""
    mid = (bid + ask) / 2
    if mid <= 0 or max_spread_bps <= 0:
        return 0.0
    spread_bps = (ask - bid) / mid * 10_000
    return 1.0 - min(1.0, max(spread_bps, 0.0) / max_spread_bps)


def build_tick(snapshot: OrderBookSnapshot) -> Optional[PriceTick]:
    """Best bid/ask of a snapshot as a tick, or None when unusable."""
    best_bid, best_ask = snapshot.best_bid, snapshot.best_ask
    if best_bid is None or best_ask is None:
        return None

    try:
        return PriceTick(
            bid=best_bid.price,
            ask=best_ask.price,
            timestamp=snapshot.timestamp,
            bid_volume=best_bid.quantity,
            ask_volume=best_ask.quantity,
        )
    except ValidationError as e:
        logger.debug(
            "orderbook.tick_rejected",
            symbol=snapshot.symbol,
            errors=e.error_count(),
        )
        return None


def snapshot_from_book(
    snapshot: OrderBookSnapshot, config: Optional[MarketDataConfig] = None
) -> Optional[MarketSnapshot]:
    """Full ingestion step: tick plus imbalance, liquidity and spread quality."""
    config = config or MarketDataConfig()
    tick = build_tick(snapshot)
    if tick is None:
        return None

    return MarketSnapshot(
        tick=tick,
        imbalance=order_book_imbalance(snapshot.bids, snapshot.asks, config.imbalance_depth),
        liquidity_score=liquidity_score(
            snapshot.bids,
            snapshot.asks,
            config.liquidity_depth,
            config.liquidity_reference_quantity,
        ),
        spread_quality=spread_quality(tick.bid, tick.ask, config.max_spread_bps),
    )
