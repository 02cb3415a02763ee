"""Unit tests for order book ingestion and quote replay."""
import math

import pytest

from tickloop.core.config import MarketDataConfig
from tickloop.core.models import BookLevel, OrderBookSnapshot
from tickloop.market.orderbook import (
    build_tick,
    liquidity_score,
    order_book_imbalance,
    snapshot_from_book,
    spread_quality,
)
from tickloop.market.replay import load_quotes_csv

from helpers import BASE_TIME


def levels(*pairs):
    return [BookLevel(price=price, quantity=quantity) for price, quantity in pairs]


class TestOrderBookMetrics:
    """Test imbalance, liquidity and spread quality."""

    def test_imbalance(self):
        bids = levels((99.0, 2.0), (98.0, 1.0))
        asks = levels((101.0, 1.0))
        assert order_book_imbalance(bids, asks) == pytest.approx(0.5)

    def test_imbalance_respects_depth(self):
        bids = levels((99.0, 1.0), (98.0, 100.0))
        asks = levels((101.0, 1.0))
        assert order_book_imbalance(bids, asks, depth=1) == 0.0

    def test_imbalance_of_empty_book(self):
        assert order_book_imbalance([], []) == 0.0

    def test_liquidity_score_saturates(self):
        bids = levels((99.0, 25.0))
        asks = levels((101.0, 25.0))
        assert liquidity_score(bids, asks, reference_quantity=50.0) == pytest.approx(math.tanh(1.0))
        assert liquidity_score([], []) == 0.0

    def test_spread_quality(self):
        assert spread_quality(100.0, 100.0) == 1.0
        assert spread_quality(99.975, 100.025, max_spread_bps=10.0) == pytest.approx(0.5)
        assert spread_quality(99.0, 101.0, max_spread_bps=10.0) == 0.0


class TestSnapshotIngestion:
    """Test conversion of snapshots into ticks."""

    def test_build_tick(self):
        book = OrderBookSnapshot(
            symbol="BTCUSDT",
            bids=levels((99.0, 1.0)),
            asks=levels((101.0, 3.0)),
            timestamp=BASE_TIME,
        )
        tick = build_tick(book)

        assert tick.mid == 100.0
        assert tick.bid_volume == 1.0
        assert tick.ask_volume == 3.0
        assert tick.timestamp == BASE_TIME

    def test_crossed_book_is_dropped(self):
        book = OrderBookSnapshot(bids=levels((101.0, 1.0)), asks=levels((100.0, 1.0)))
        assert build_tick(book) is None
        assert snapshot_from_book(book) is None

    def test_one_sided_book_is_dropped(self):
        book = OrderBookSnapshot(bids=levels((99.0, 1.0)), asks=[])
        assert build_tick(book) is None

    def test_snapshot_from_book(self):
        book = OrderBookSnapshot(
            bids=levels((99.99, 30.0)),
            asks=levels((100.01, 10.0)),
            timestamp=BASE_TIME,
        )
        snapshot = snapshot_from_book(book, MarketDataConfig())

        assert snapshot.tick.mid == pytest.approx(100.0)
        assert snapshot.imbalance == pytest.approx(0.5)
        assert 0.0 < snapshot.liquidity_score < 1.0
        assert snapshot.spread_quality == pytest.approx(0.8)


class TestQuoteReplay:
    """Test loading recorded quotes."""

    def test_load_quotes_csv(self, tmp_path):
        path = tmp_path / "quotes.csv"
        path.write_text(
            "timestamp,bid,ask,bid_volume,ask_volume\n"
            "2024-01-03T14:00:00+00:00,99.0,101.0,1.0,2.0\n"
            "2024-01-03T14:00:01+00:00,101.0,100.0,1.0,1.0\n"
            "2024-01-03T14:00:02+00:00,100.0,100.5,,\n"
        )
        snapshots = load_quotes_csv(path)

        assert len(snapshots) == 2
        assert snapshots[0].tick.mid == 100.0
        assert snapshots[0].tick.volume == 3.0
        assert snapshots[1].tick.volume == 0.0
        assert snapshots[1].liquidity_score == 0.5

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "quotes.csv"
        path.write_text("timestamp,bid\n2024-01-03T14:00:00+00:00,99.0\n")
        with pytest.raises(ValueError):
            load_quotes_csv(path)
