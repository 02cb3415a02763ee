"""Unit tests for the signal decision policy."""
from datetime import timedelta
from decimal import Decimal

import pytest

from tickloop.core.config import RiskConfig, SignalConfig
from tickloop.core.models import (
    AdaptiveThresholds,
    MarketContext,
    MarketRegime,
    SignalAction,
)
from tickloop.risk.risk_manager import RiskManager
from tickloop.signals.policy import SignalDecisionPolicy, feature_confluence

from helpers import BASE_TIME, make_prediction

BEARISH_CONTRIBUTIONS = {
    "technical": -0.125,
    "momentum": -0.08,
    "volatility": -0.03,
    "market_structure": -0.06,
    "orderbook_depth": -0.04,
}


@pytest.fixture
def policy():
    config = SignalConfig()
    return SignalDecisionPolicy(config, RiskManager(RiskConfig(), config))


def decide(policy, prediction, context, balance="10000", thresholds=None):
    return policy.decide(
        "BTCUSDT",
        100.0,
        prediction,
        context,
        thresholds or AdaptiveThresholds(),
        Decimal(balance),
        BASE_TIME,
    )


# =============================================================================
# Rate Limiting
# =============================================================================

class TestCooldown:
    """Test per-symbol evaluation cooldown."""

    def test_first_evaluation_allowed(self, policy):
        assert policy.should_evaluate("BTCUSDT", BASE_TIME) is True

    def test_cooldown_blocks_repeat(self, policy):
        policy.mark_evaluated("BTCUSDT", BASE_TIME)

        assert policy.should_evaluate("BTCUSDT", BASE_TIME + timedelta(seconds=1)) is False
        assert policy.should_evaluate("BTCUSDT", BASE_TIME + timedelta(seconds=2)) is True

    def test_cooldown_is_per_symbol(self, policy):
        policy.mark_evaluated("BTCUSDT", BASE_TIME)
        assert policy.should_evaluate("ETHUSDT", BASE_TIME) is True


# =============================================================================
# Thresholds
# =============================================================================

class TestRegimeAdjustedThresholds:
    """Test context-dependent threshold shifts."""

    def test_strong_trend_with_deep_book_loosens(self):
        limits = SignalDecisionPolicy.regime_adjusted_thresholds(
            AdaptiveThresholds(),
            MarketContext(market_regime=MarketRegime.STRONG_BULL, liquidity_score=0.8),
        )
        assert limits.min_probability == pytest.approx(0.54)
        assert limits.min_confidence == pytest.approx(0.36)

    def test_volatile_sideways_tightens(self):
        limits = SignalDecisionPolicy.regime_adjusted_thresholds(
            AdaptiveThresholds(),
            MarketContext(market_regime=MarketRegime.SIDEWAYS_VOLATILE),
        )
        assert limits.min_probability == pytest.approx(0.57)
        assert limits.max_risk_score == pytest.approx(0.65)

    def test_quiet_sideways_requires_more_confidence(self):
        limits = SignalDecisionPolicy.regime_adjusted_thresholds(
            AdaptiveThresholds(),
            MarketContext(market_regime=MarketRegime.SIDEWAYS_QUIET),
        )
        assert limits.min_confidence == pytest.approx(0.42)

    def test_adjusted_probability_never_below_coin_flip(self):
        limits = SignalDecisionPolicy.regime_adjusted_thresholds(
            AdaptiveThresholds(min_probability=0.505),
            MarketContext(market_regime=MarketRegime.STRONG_BEAR),
        )
        assert limits.min_probability == 0.5

    def test_kelly_threshold_passes_through(self):
        limits = SignalDecisionPolicy.regime_adjusted_thresholds(
            AdaptiveThresholds(kelly_threshold=0.05), MarketContext()
        )
        assert limits.kelly_threshold == 0.05


# =============================================================================
# Decisions
# =============================================================================

class TestDecide:
    """Test BUY / SELL / HOLD decisions."""

    def test_buy_above_upper_band(self, policy, sample_prediction, bullish_context):
        decision = decide(policy, sample_prediction, bullish_context)

        assert decision.action == SignalAction.BUY
        signal = decision.signal
        assert signal.action == SignalAction.BUY
        assert signal.price == Decimal("100.0")
        assert signal.quantity == Decimal("10")
        assert signal.timestamp == BASE_TIME
        assert "BUY" in signal.reasoning
        assert decision.thresholds.min_probability == pytest.approx(0.54)

    def test_sell_below_lower_band(self, policy, bullish_context):
        prediction = make_prediction(probability=0.3, feature_contributions=BEARISH_CONTRIBUTIONS)
        decision = decide(policy, prediction, bullish_context)

        assert decision.action == SignalAction.SELL
        assert decision.signal.quantity > 0

    def test_insufficient_liquidity(self, policy, sample_prediction):
        decision = decide(policy, sample_prediction, MarketContext(liquidity_score=0.01))

        assert decision.action == SignalAction.HOLD
        assert decision.reason == "insufficient liquidity"

    def test_low_confidence(self, policy, bullish_context):
        decision = decide(policy, make_prediction(confidence=0.3), bullish_context)
        assert decision.reason == "confidence below threshold"
        assert decision.signal is None

    def test_high_risk(self, policy, bullish_context):
        decision = decide(policy, make_prediction(risk_score=0.75), bullish_context)
        assert decision.reason == "risk above threshold"

    def test_neutral_band(self, policy, bullish_context):
        decision = decide(policy, make_prediction(probability=0.52), bullish_context)
        assert decision.reason == "probability inside neutral band"

    def test_confluence_must_agree_with_direction(self, policy, bullish_context):
        prediction = make_prediction(probability=0.7, feature_contributions=BEARISH_CONTRIBUTIONS)
        decision = decide(policy, prediction, bullish_context)
        assert decision.action == SignalAction.HOLD

    def test_zero_size(self, policy, sample_prediction, bullish_context):
        decision = decide(policy, sample_prediction, bullish_context, balance="0")
        assert decision.reason == "position size is zero"

    def test_flat_size_when_kelly_below_threshold(self, policy, bullish_context):
        decision = decide(policy, make_prediction(kelly_fraction=0.01), bullish_context)

        # 2% * 0.5 of 10000 at price 100
        assert decision.signal.quantity == Decimal("1")

    def test_relaxed_thresholds_let_weaker_signals_through(self, policy):
        context = MarketContext(liquidity_score=0.5)
        prediction = make_prediction(probability=0.54)

        assert decide(policy, prediction, context).action == SignalAction.HOLD
        relaxed = AdaptiveThresholds(min_probability=0.53)
        assert decide(policy, prediction, context, thresholds=relaxed).action == SignalAction.BUY


def test_feature_confluence():
    assert feature_confluence(make_prediction()) == pytest.approx(1.0)
    assert feature_confluence(make_prediction(feature_contributions={})) == 0.0
    mixed = make_prediction(feature_contributions={"technical": 0.3, "momentum": -0.1})
    assert feature_confluence(mixed) == pytest.approx(0.5)
