"""Unit tests for database operations."""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from tickloop.core.models import (
    OrderSide,
    Portfolio,
    Position,
    PositionStatus,
    SignalAction,
    TradingSignal,
)
from tickloop.storage.database import (
    Database,
    DatabaseEventSink,
    DatabaseOutcomeRepository,
)

from helpers import BASE_TIME, make_outcome, make_prediction


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def sample_position():
    """Create a sample position for testing."""
    return Position(
        symbol="BTCUSDT",
        side=OrderSide.BUY,
        size=Decimal("2"),
        entry_price=Decimal("100"),
        timestamp=BASE_TIME,
    )


@pytest.fixture
def sample_signal():
    return TradingSignal(
        symbol="BTCUSDT",
        action=SignalAction.BUY,
        confidence=0.6,
        price=Decimal("100"),
        quantity=Decimal("1.5"),
        timestamp=BASE_TIME,
        reasoning="BUY p=0.700",
        probability=0.7,
    )


# =============================================================================
# Outcome Tests
# =============================================================================

class TestOutcomeOperations:
    """Test trade outcome persistence."""

    @pytest.mark.asyncio
    async def test_save_and_load_outcome(self, test_database):
        outcome = make_outcome(prediction=make_prediction())
        await test_database.save_outcome(outcome)

        loaded = await test_database.load_recent_outcomes(10)

        assert len(loaded) == 1
        restored = loaded[0]
        assert restored.position_id == outcome.position_id
        assert restored.side == OrderSide.BUY
        assert restored.realized_pnl == Decimal("10")
        assert restored.success is True
        assert restored.closed_at == BASE_TIME
        assert restored.prediction.probability == pytest.approx(0.7)
        assert restored.prediction.features == outcome.prediction.features

    @pytest.mark.asyncio
    async def test_load_recent_is_oldest_first(self, test_database):
        for i in range(5):
            await test_database.save_outcome(make_outcome(
                position_id=f"pos_{i}", closed_at=BASE_TIME + timedelta(seconds=i)
            ))

        loaded = await test_database.load_recent_outcomes(3)
        assert [o.position_id for o in loaded] == ["pos_2", "pos_3", "pos_4"]

    @pytest.mark.asyncio
    async def test_load_nothing(self, test_database):
        assert await test_database.load_recent_outcomes(0) == []
        assert await test_database.load_recent_outcomes(5) == []

    @pytest.mark.asyncio
    async def test_outcome_without_prediction(self, test_database):
        await test_database.save_outcome(make_outcome(success=False, realized_pnl="-5"))
        loaded = await test_database.load_recent_outcomes(1)

        assert loaded[0].prediction is None
        assert loaded[0].realized_pnl == Decimal("-5")


# =============================================================================
# Position Tests
# =============================================================================

class TestPositionOperations:
    """Test position persistence."""

    @pytest.mark.asyncio
    async def test_save_and_get_position(self, test_database, sample_position):
        await test_database.save_position(sample_position)
        restored = await test_database.get_position(sample_position.id)

        assert restored.id == sample_position.id
        assert restored.size == Decimal("2")
        assert restored.entry_price == Decimal("100")
        assert restored.status == PositionStatus.OPEN
        assert restored.timestamp == BASE_TIME

    @pytest.mark.asyncio
    async def test_get_missing_position(self, test_database):
        assert await test_database.get_position("pos_missing") is None

    @pytest.mark.asyncio
    async def test_update_position(self, test_database, sample_position):
        await test_database.save_position(sample_position)

        closed = sample_position.model_copy(update={
            "status": PositionStatus.CLOSED,
            "closed_at": BASE_TIME + timedelta(minutes=5),
            "realized_pnl": Decimal("4"),
            "exit_reason": "profit target",
        })
        await test_database.save_position(closed)
        restored = await test_database.get_position(sample_position.id)

        assert restored.status == PositionStatus.CLOSED
        assert restored.realized_pnl == Decimal("4")
        assert restored.exit_reason == "profit target"

    @pytest.mark.asyncio
    async def test_get_open_positions(self, test_database, sample_position):
        other = Position(
            symbol="BTCUSDT",
            side=OrderSide.SELL,
            size=Decimal("1"),
            entry_price=Decimal("100"),
            status=PositionStatus.CLOSED,
            closed_at=BASE_TIME,
        )
        await test_database.save_position(sample_position)
        await test_database.save_position(other)

        open_positions = await test_database.get_open_positions()
        assert [p.id for p in open_positions] == [sample_position.id]

    @pytest.mark.asyncio
    async def test_positions_filtered_by_symbol(self, test_database, sample_position):
        eth = Position(
            symbol="ETHUSDT",
            side=OrderSide.BUY,
            size=Decimal("1"),
            entry_price=Decimal("50"),
            timestamp=BASE_TIME,
        )
        await test_database.save_position(sample_position)
        await test_database.save_position(eth)
        await test_database.save_portfolio_snapshot(Portfolio())

        btc = await test_database.get_open_positions("BTCUSDT")
        assert [p.id for p in btc] == [sample_position.id]
        assert len(await test_database.get_open_positions()) == 2

        portfolio = await test_database.get_latest_portfolio("ETHUSDT")
        assert [p.id for p in portfolio.positions] == [eth.id]


# =============================================================================
# Portfolio and Signal Tests
# =============================================================================

class TestPortfolioOperations:
    """Test portfolio snapshots."""

    @pytest.mark.asyncio
    async def test_no_snapshot(self, test_database):
        assert await test_database.get_latest_portfolio() is None

    @pytest.mark.asyncio
    async def test_latest_snapshot_with_positions(self, test_database, sample_position):
        await test_database.save_portfolio_snapshot(Portfolio())
        await test_database.save_position(sample_position)
        await test_database.save_portfolio_snapshot(Portfolio(
            available_balance=Decimal("9800"),
            locked_profits=Decimal("40"),
            equity=Decimal("10050"),
            trading_day="2024-01-03",
        ))

        portfolio = await test_database.get_latest_portfolio()

        assert portfolio.available_balance == Decimal("9800")
        assert portfolio.locked_profits == Decimal("40")
        assert portfolio.trading_day == "2024-01-03"
        assert [p.id for p in portfolio.positions] == [sample_position.id]


class TestSignalOperations:
    """Test signal persistence."""

    @pytest.mark.asyncio
    async def test_save_and_get_signals(self, test_database, sample_signal):
        await test_database.save_signal(sample_signal)
        await test_database.save_signal(sample_signal.model_copy(update={"symbol": "ETHUSDT"}))

        signals = await test_database.get_signals()
        assert [s["symbol"] for s in signals] == ["ETHUSDT", "BTCUSDT"]

        btc = await test_database.get_signals(symbol="BTCUSDT")
        assert len(btc) == 1
        assert btc[0]["action"] == "buy"
        assert btc[0]["quantity"] == Decimal("1.5")


# =============================================================================
# Event Sink and Repository Tests
# =============================================================================

class TestDatabaseEventSink:
    """Test background event persistence."""

    @pytest.mark.asyncio
    async def test_events_are_written(self, test_database, sample_position, sample_signal):
        sink = DatabaseEventSink(test_database)
        sink.publish("position_opened", {"position": sample_position})
        sink.publish("signal", {"signal": sample_signal})
        sink.publish("portfolio_snapshot", {"portfolio": Portfolio()})
        sink.publish("trade_outcome", {"outcome": make_outcome()})
        await sink.flush()

        assert await test_database.get_position(sample_position.id) is not None
        assert len(await test_database.get_signals()) == 1
        assert await test_database.get_latest_portfolio() is not None
        assert await test_database.load_recent_outcomes(10) == []

    def test_publish_without_loop_is_dropped(self, sample_position):
        db = Database("sqlite+aiosqlite:///:memory:")
        sink = DatabaseEventSink(db)

        sink.publish("position_opened", {"position": sample_position})
        assert sink._tasks == set()
        asyncio.run(db.close())

    @pytest.mark.asyncio
    async def test_write_failure_is_contained(self):
        db = Database("sqlite+aiosqlite:///:memory:")
        sink = DatabaseEventSink(db)

        # Tables were never created
        sink.publish("portfolio_snapshot", {"portfolio": Portfolio()})
        await sink.flush()

        assert sink._tasks == set()
        await db.close()


class TestDatabaseOutcomeRepository:
    """Test the database-backed outcome repository."""

    @pytest.mark.asyncio
    async def test_save_is_cached_and_persisted(self, test_database):
        repository = DatabaseOutcomeRepository(test_database)
        repository.save(make_outcome(position_id="pos_a"))
        repository.save(make_outcome(position_id="pos_b"))

        assert [o.position_id for o in repository.load_recent(1)] == ["pos_b"]

        await repository.sink.flush()
        persisted = await test_database.load_recent_outcomes(10)
        assert [o.position_id for o in persisted] == ["pos_a", "pos_b"]

    @pytest.mark.asyncio
    async def test_preload(self, test_database):
        for i in range(4):
            await test_database.save_outcome(make_outcome(position_id=f"pos_{i}"))

        repository = DatabaseOutcomeRepository(test_database, max_cached=10)
        loaded = await repository.preload(3)

        assert [o.position_id for o in loaded] == ["pos_1", "pos_2", "pos_3"]
        assert repository.load_recent(0) == []
        assert len(repository.load_recent(10)) == 3
