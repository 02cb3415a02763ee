"""Pytest fixtures for the TickLoop test suite."""
import pytest
import pytest_asyncio

from tickloop.core.config import (
    ExitConfig,
    IndicatorConfig,
    LearningConfig,
    RiskConfig,
    SignalConfig,
    TickLoopConfig,
)
from tickloop.core.models import (
    MarketContext,
    MarketRegime,
    VolatilityRegime,
)
from tickloop.portfolio.manager import PortfolioManager
from tickloop.risk.risk_manager import RiskManager
from tickloop.storage.database import Database

from helpers import BASE_TIME, make_bullish_indicator_set, make_indicator_set, make_prediction


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def tick_config():
    """Default configuration with deterministic exits for portfolio tests."""
    return TickLoopConfig(
        indicators=IndicatorConfig(),
        signal=SignalConfig(),
        risk=RiskConfig(base_capital=10000.0, max_position_size=1500.0),
        exits=ExitConfig(),
        learning=LearningConfig(),
    )


@pytest.fixture
def quiet_exit_config():
    """Exits that only fire on the stop loss or a large move."""
    return TickLoopConfig(
        risk=RiskConfig(base_capital=10000.0, max_position_size=5000.0),
        exits=ExitConfig(
            take_profit_percentage=10.0,
            stop_loss_percentage=5.0,
            enable_partial_profits=False,
            enable_trailing_stop=False,
            max_hold_seconds=3600,
        ),
    )


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def risk_manager(tick_config):
    return RiskManager(tick_config.risk, tick_config.signal)


@pytest.fixture
def portfolio_manager(quiet_exit_config):
    return PortfolioManager(quiet_exit_config)


@pytest.fixture
def neutral_indicators():
    return make_indicator_set()


@pytest.fixture
def bullish_indicators():
    return make_bullish_indicator_set()


@pytest.fixture
def bullish_context():
    return MarketContext(
        volatility_regime=VolatilityRegime.MEDIUM,
        market_regime=MarketRegime.STRONG_BULL,
        liquidity_score=0.8,
        spread_quality=0.9,
    )


@pytest.fixture
def sample_prediction():
    return make_prediction()


@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()
