"""Market data ingestion: order book snapshots to validated ticks."""

from tickloop.market.orderbook import (
    MarketSnapshot,
    build_tick,
    liquidity_score,
    order_book_imbalance,
    snapshot_from_book,
    spread_quality,
)

__all__ = [
    "MarketSnapshot",
    "build_tick",
    "liquidity_score",
    "order_book_imbalance",
    "snapshot_from_book",
    "spread_quality",
]
