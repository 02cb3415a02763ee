"""Unit tests for position and portfolio management."""
from datetime import timedelta
from decimal import Decimal

import pytest

from tickloop.core.config import ExitConfig, RiskConfig, TickLoopConfig
from tickloop.core.models import OrderSide, Portfolio, Position, PositionStatus
from tickloop.portfolio.calculator import PortfolioCalculator
from tickloop.portfolio.manager import PortfolioManager

from helpers import BASE_TIME, make_prediction


def at(seconds):
    return BASE_TIME + timedelta(seconds=seconds)


def assert_equity_identity(portfolio: Portfolio):
    exposure = sum(
        (p.size * p.current_price for p in portfolio.open_positions), Decimal("0")
    )
    assert portfolio.equity == portfolio.base_capital + portfolio.total_pnl + portfolio.locked_profits
    assert portfolio.available_balance == portfolio.equity - portfolio.locked_profits - exposure


# =============================================================================
# Opening Positions
# =============================================================================

class TestAddPosition:
    """Test opening positions."""

    def test_open_position(self, portfolio_manager):
        result = portfolio_manager.add_position(
            "BTCUSDT", OrderSide.BUY, "10", "100", now=BASE_TIME
        )

        assert result.accepted
        position = result.position
        assert position.size == Decimal("10")
        assert position.status == PositionStatus.OPEN
        assert portfolio_manager.portfolio.available_balance == Decimal("9000")
        assert portfolio_manager.get_tracking(position.id).entry_time == BASE_TIME
        assert_equity_identity(portfolio_manager.portfolio)

    def test_unrealized_pnl_scenario(self, portfolio_manager):
        """BUY 1 @ 100 marked at 102 has exactly 2.0 unrealized."""
        result = portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        outcomes = portfolio_manager.on_price(102, now=at(5))

        assert outcomes == []
        position = portfolio_manager.get_position(result.position.id)
        assert position.unrealized_pnl == Decimal("2.000000")
        assert portfolio_manager.portfolio.total_pnl == Decimal("2")
        assert_equity_identity(portfolio_manager.portfolio)

    def test_short_unrealized_pnl(self, portfolio_manager):
        result = portfolio_manager.add_position("BTCUSDT", OrderSide.SELL, 2, 100, now=BASE_TIME)
        portfolio_manager.on_price(99, now=at(5))

        assert portfolio_manager.get_position(result.position.id).unrealized_pnl == Decimal("2")

    def test_rejected_when_value_exceeds_balance(self):
        """A rejected position leaves the portfolio unchanged."""
        manager = PortfolioManager(TickLoopConfig(risk=RiskConfig(base_capital=100.0)))
        before = manager.snapshot()

        result = manager.add_position("BTCUSDT", OrderSide.BUY, 1, 150, now=BASE_TIME)

        assert not result.accepted
        assert result.rule == "insufficient_balance"
        after = manager.portfolio
        assert after.positions == before.positions == []
        assert after.available_balance == before.available_balance == Decimal("100")
        assert after.equity == before.equity
        assert after.locked_profits == before.locked_profits

    def test_entry_fee_is_realized(self):
        config = TickLoopConfig(risk=RiskConfig(exchange_fee_percentage=0.1))
        manager = PortfolioManager(config)
        result = manager.add_position("BTCUSDT", OrderSide.BUY, 10, 100, now=BASE_TIME)

        assert result.position.fees == Decimal("1.000000")
        assert result.position.realized_pnl == Decimal("-1.000000")
        assert manager.portfolio.equity == Decimal("9999")
        assert_equity_identity(manager.portfolio)

    def test_fees_count_toward_day_pnl(self):
        config = TickLoopConfig(risk=RiskConfig(exchange_fee_percentage=0.1))
        manager = PortfolioManager(config)
        result = manager.add_position("BTCUSDT", OrderSide.BUY, 10, 100, now=BASE_TIME)
        assert manager.portfolio.day_pnl == Decimal("-1")

        outcome = manager.close_position(result.position.id, 100, now=at(5))

        assert outcome.realized_pnl == Decimal("-2")
        assert manager.portfolio.day_pnl == outcome.realized_pnl


# =============================================================================
# Closing Positions
# =============================================================================

class TestClosePosition:
    """Test full and partial closes."""

    def test_profit_lock(self, portfolio_manager):
        """Realized 50 with an 80% lock moves exactly 40 into locked profits."""
        result = portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        before = portfolio_manager.portfolio.locked_profits

        outcome = portfolio_manager.close_position(result.position.id, 150, "manual", at(30))

        assert outcome.realized_pnl == Decimal("50")
        assert portfolio_manager.portfolio.locked_profits - before == Decimal("40")
        closed = portfolio_manager.get_position(result.position.id)
        assert closed.status == PositionStatus.CLOSED
        assert closed.locked_pnl == Decimal("40")
        assert portfolio_manager.portfolio.equity == Decimal("10050")
        assert portfolio_manager.portfolio.available_balance == Decimal("10010")
        assert_equity_identity(portfolio_manager.portfolio)

    def test_no_lock_on_loss(self, portfolio_manager):
        result = portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        outcome = portfolio_manager.close_position(result.position.id, 98, "manual", at(30))

        assert outcome.realized_pnl == Decimal("-2")
        assert not outcome.success
        assert portfolio_manager.portfolio.locked_profits == 0
        assert portfolio_manager.portfolio.day_pnl == Decimal("-2")

    def test_outcome_fields(self, portfolio_manager, sample_prediction):
        result = portfolio_manager.add_position(
            "BTCUSDT", OrderSide.BUY, 2, 100, prediction=sample_prediction, now=BASE_TIME
        )
        outcome = portfolio_manager.close_position(result.position.id, 101, "manual", at(45))

        assert outcome.holding_time_seconds == 45.0
        assert outcome.actual_return == pytest.approx(1.0)
        assert outcome.size == Decimal("2")
        assert outcome.prediction == sample_prediction
        assert outcome.exit_reason == "manual"
        assert portfolio_manager.get_tracking(result.position.id) is None

    def test_close_unknown_is_noop(self, portfolio_manager):
        assert portfolio_manager.close_position("pos_missing", 100) is None

    def test_double_close_is_noop(self, portfolio_manager):
        result = portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        portfolio_manager.close_position(result.position.id, 110, now=at(10))
        locked = portfolio_manager.portfolio.locked_profits

        assert portfolio_manager.close_position(result.position.id, 120, now=at(20)) is None
        assert portfolio_manager.portfolio.locked_profits == locked

    def test_partial_close(self, portfolio_manager):
        result = portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 3, 100, now=BASE_TIME)
        net = portfolio_manager.partial_close(result.position.id, 1, 110, now=at(10))

        position = portfolio_manager.get_position(result.position.id)
        assert net == Decimal("10")
        assert position.size == Decimal("2")
        assert position.initial_size == Decimal("3")
        assert position.status == PositionStatus.PARTIAL
        assert portfolio_manager.portfolio.day_pnl == Decimal("10")
        assert_equity_identity(portfolio_manager.portfolio)

    def test_partial_close_of_whole_size_closes(self, portfolio_manager):
        result = portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        net = portfolio_manager.partial_close(result.position.id, 5, 104, now=at(10))

        assert net == Decimal("4")
        assert portfolio_manager.get_position(result.position.id).status == PositionStatus.CLOSED

    def test_realized_pnl_accumulates_over_partials(self, portfolio_manager):
        result = portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 2, 100, now=BASE_TIME)
        portfolio_manager.partial_close(result.position.id, 1, 110, now=at(10))
        outcome = portfolio_manager.close_position(result.position.id, 105, now=at(20))

        assert outcome.realized_pnl == Decimal("15")
        assert portfolio_manager.portfolio.locked_profits == Decimal("12")


# =============================================================================
# Marking to Market
# =============================================================================

class TestOnPrice:
    """Test exits triggered by price updates."""

    def test_stop_loss_closes_position(self, portfolio_manager):
        portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        outcomes = portfolio_manager.on_price(94, now=at(10))

        assert len(outcomes) == 1
        assert outcomes[0].exit_reason == "stop loss"
        assert portfolio_manager.open_positions == []

    def test_time_horizon_from_prediction(self, portfolio_manager, sample_prediction):
        portfolio_manager.add_position(
            "BTCUSDT", OrderSide.BUY, 1, 100, prediction=sample_prediction, now=BASE_TIME
        )
        assert portfolio_manager.on_price(100.5, now=at(60)) == []

        outcomes = portfolio_manager.on_price(100.5, now=at(120))
        assert outcomes[0].exit_reason == "time horizon"

    def test_other_symbols_are_not_marked(self, portfolio_manager):
        btc = portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        eth = portfolio_manager.add_position("ETHUSDT", OrderSide.BUY, 1, 50, now=BASE_TIME)

        outcomes = portfolio_manager.on_price(90, now=at(5), symbol="BTCUSDT")

        assert [o.position_id for o in outcomes] == [btc.position.id]
        untouched = portfolio_manager.get_position(eth.position.id)
        assert untouched.is_active
        assert untouched.current_price == Decimal("50")

    def test_excursions_tracked(self, portfolio_manager):
        result = portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        portfolio_manager.on_price(103, now=at(1))
        portfolio_manager.on_price(98, now=at(2))

        tracking = portfolio_manager.get_tracking(result.position.id)
        assert tracking.max_favorable_excursion == pytest.approx(3.0)
        assert tracking.max_adverse_excursion == pytest.approx(2.0)

    def test_partial_profit_tiers(self):
        manager = PortfolioManager(TickLoopConfig(
            exits=ExitConfig(enable_trailing_stop=False, take_profit_percentage=5.0)
        ))
        result = manager.add_position("BTCUSDT", OrderSide.BUY, 3, 100, now=BASE_TIME)
        manager.on_price(101, now=at(1))

        tracking = manager.get_tracking(result.position.id)
        assert tracking.partial_tiers_taken == 1
        assert tracking.partial_history == ["partial profit @0.8%"]
        assert manager.get_position(result.position.id).size == Decimal("2.01")

    def test_day_roll_resets_day_pnl(self, portfolio_manager):
        result = portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        portfolio_manager.close_position(result.position.id, 97, now=at(10))
        assert portfolio_manager.portfolio.day_pnl == Decimal("-3")

        portfolio_manager.on_price(100, now=BASE_TIME + timedelta(days=1))
        assert portfolio_manager.portfolio.day_pnl == 0
        assert portfolio_manager.portfolio.trading_day == "2024-01-04"


# =============================================================================
# Recalculation and Recovery
# =============================================================================

class TestRecalculation:
    """Test the portfolio calculator."""

    def test_recalculate_is_idempotent(self, portfolio_manager):
        portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        portfolio_manager.on_price(101.5, now=at(1))

        once = PortfolioCalculator.recalculate(portfolio_manager.portfolio)
        twice = PortfolioCalculator.recalculate(once)
        assert once.model_dump() == twice.model_dump()

    def test_recalculate_does_not_mutate_input(self):
        position = Position(
            symbol="BTCUSDT",
            side=OrderSide.BUY,
            size=Decimal("1"),
            entry_price=Decimal("100"),
            current_price=Decimal("105"),
        )
        portfolio = Portfolio(positions=[position])
        result = PortfolioCalculator.recalculate(portfolio)

        assert result.positions[0].unrealized_pnl == Decimal("5")
        assert portfolio.positions[0].unrealized_pnl == 0
        assert portfolio.total_pnl == 0

    def test_quantize(self):
        assert PortfolioCalculator.quantize(Decimal("1.23456789")) == Decimal("1.234568")


class TestRecovery:
    """Test resuming from persisted state."""

    def test_recover_rebuilds_tracking(self, portfolio_manager, quiet_exit_config):
        result = portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        saved = portfolio_manager.snapshot()

        restored = PortfolioManager(quiet_exit_config)
        restored.recover(saved)

        assert [p.id for p in restored.open_positions] == [result.position.id]
        tracking = restored.get_tracking(result.position.id)
        assert tracking.prediction is None
        assert tracking.entry_time == BASE_TIME
        assert restored.portfolio.available_balance == saved.available_balance

    def test_recover_merges_open_positions(self, quiet_exit_config):
        extra = Position(
            symbol="BTCUSDT", side=OrderSide.SELL, size=Decimal("1"), entry_price=Decimal("100")
        )
        manager = PortfolioManager(quiet_exit_config)
        manager.recover(Portfolio(), [extra, extra])

        assert len(manager.portfolio.positions) == 1
        assert manager.portfolio.available_balance == Decimal("9900")

    def test_snapshot_is_a_copy(self, portfolio_manager):
        portfolio_manager.add_position("BTCUSDT", OrderSide.BUY, 1, 100, now=BASE_TIME)
        snapshot = portfolio_manager.snapshot()
        snapshot.positions.clear()

        assert len(portfolio_manager.portfolio.positions) == 1
