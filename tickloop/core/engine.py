"""Trading engine - runs the decision loop for one symbol.

Each tick flows through the same steps:

1. Indicator update and recalculation
2. Market context classification
3. Mark-to-market and exits for open positions (outcomes feed the model)
4. Once enough history exists and the cooldown allows: prediction,
   signal decision and, for BUY/SELL, a risk-checked position

All state is owned by the engine instance; nothing is module-global.
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence

import structlog
from pydantic import ValidationError

from tickloop.core.config import TickLoopConfig
from tickloop.core.models import (
    BookLevel,
    IndicatorSet,
    MarketContext,
    OrderBookSnapshot,
    Portfolio,
    Position,
    PredictionOutput,
    PriceTick,
    SignalAction,
    SignalDecision,
    TradeOutcome,
    TradingSignal,
    ensure_utc,
    utc_now,
)
from tickloop.indicators.technical import IndicatorEngine
from tickloop.market.orderbook import snapshot_from_book
from tickloop.portfolio.manager import PortfolioManager, PositionResult
from tickloop.prediction.model import PredictionEngine, PredictionInput
from tickloop.risk.risk_manager import RiskManager
from tickloop.signals.policy import SignalDecisionPolicy
from tickloop.storage.repository import (
    EventSink,
    InMemoryOutcomeRepository,
    NullEventSink,
    OutcomeRepository,
)

logger = structlog.get_logger(__name__)

SIGNAL_HISTORY_SIZE = 50
PRICE_WINDOW = 20


@dataclass
class TickResult:
    """Everything one tick produced.

    Attributes:
        tick: The processed quote
        indicators: Indicator snapshot, None while warming up
        context: Market context for this tick
        prediction: Model output when a signal was evaluated
        decision: Signal decision when a signal was evaluated
        opened: Position opened on this tick
        rejection: Risk rejection of this tick's signal
        outcomes: Trades fully closed on this tick
    """
    tick: PriceTick
    indicators: Optional[IndicatorSet] = None
    context: Optional[MarketContext] = None
    prediction: Optional[PredictionOutput] = None
    decision: Optional[SignalDecision] = None
    opened: Optional[Position] = None
    rejection: Optional[PositionResult] = None
    outcomes: List[TradeOutcome] = field(default_factory=list)


def _book_levels(levels: Iterable[Any]) -> List[BookLevel]:
    parsed = []
    for level in levels:
        if isinstance(level, BookLevel):
            parsed.append(level)
        elif isinstance(level, dict):
            parsed.append(BookLevel(**level))
        else:
            price, quantity = level[0], level[1]
            parsed.append(BookLevel(price=price, quantity=quantity))
    return parsed


class TradingEngine:
    """
    Tick-driven trading loop for a single symbol.

    Responsibilities:
    - Feeds ticks to the indicator engine
    - Marks positions to market and applies exits
    - Sends closed-trade outcomes to the model and the repository
    - Turns predictions into risk-checked positions
    - Publishes state changes to the event sink
    """

    def __init__(
        self,
        symbol: Optional[str] = None,
        config: Optional[TickLoopConfig] = None,
        repository: Optional[OutcomeRepository] = None,
        event_sink: Optional[EventSink] = None,
        portfolio: Optional[Portfolio] = None,
        open_positions: Optional[Sequence[Position]] = None,
    ):
        self.config = config or TickLoopConfig()
        self.symbol = symbol or self.config.market.symbol
        self.repository = repository or InMemoryOutcomeRepository(
            self.config.learning.max_training_buffer
        )
        self.event_sink = event_sink or NullEventSink()
        self.logger = logger.bind(symbol=self.symbol)

        self.risk_manager = RiskManager(self.config.risk, self.config.signal)
        self.indicator_engine = IndicatorEngine(self.symbol, self.config.indicators)
        self.prediction_engine = PredictionEngine(self.config.learning, self.config.signal)
        self.policy = SignalDecisionPolicy(self.config.signal, self.risk_manager)
        self.portfolio_manager = PortfolioManager(self.config, self.risk_manager)

        if portfolio is not None or open_positions:
            base = self.portfolio_manager.portfolio
            self.portfolio_manager.recover(portfolio or base, open_positions)

        self._signal_history: Deque[TradingSignal] = deque(maxlen=SIGNAL_HISTORY_SIZE)
        self._last_context: Optional[MarketContext] = None
        self.ticks_processed = 0
        self.ticks_rejected = 0

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest_order_book(
        self,
        bids: Iterable[Any],
        asks: Iterable[Any],
        timestamp: Optional[datetime] = None,
    ) -> Optional[TickResult]:
        """
        Process one order book snapshot.

        Levels may be ``BookLevel`` objects, ``{"price", "quantity"}`` dicts or
        ``(price, quantity)`` pairs, best level first. Malformed snapshots are
        dropped and return None.
        """
        try:
            book = OrderBookSnapshot(
                symbol=self.symbol,
                bids=_book_levels(bids),
                asks=_book_levels(asks),
                timestamp=timestamp or utc_now(),
            )
        except (ValidationError, TypeError, IndexError, ValueError) as e:
            self.ticks_rejected += 1
            self.logger.debug("engine.order_book_rejected", error=str(e))
            return None

        snapshot = snapshot_from_book(book, self.config.market)
        if snapshot is None:
            self.ticks_rejected += 1
            return None

        return self.process_tick(
            snapshot.tick,
            imbalance=snapshot.imbalance,
            liquidity_score=snapshot.liquidity_score,
            spread_quality=snapshot.spread_quality,
        )

    def process_tick(
        self,
        tick: PriceTick,
        imbalance: float = 0.0,
        liquidity_score: float = 0.5,
        spread_quality: float = 0.5,
    ) -> TickResult:
        """Run the full decision loop for one validated tick."""
        now = ensure_utc(tick.timestamp)
        result = TickResult(tick=tick)
        self.ticks_processed += 1

        indicator_engine = self.indicator_engine
        indicator_engine.update(tick.mid, tick.volume, now, imbalance)
        result.indicators = indicator_engine.calculate_indicators()
        result.context = indicator_engine.market_context(liquidity_score, spread_quality, now)
        self._last_context = result.context

        atr = result.indicators.atr if result.indicators else 0.0
        result.outcomes = self._mark_to_market(tick.mid, now, atr)

        if (
            result.indicators is not None
            and indicator_engine.sample_count >= self.config.indicators.min_signal_history
            and self.policy.should_evaluate(self.symbol, now)
        ):
            self._evaluate_signal(result, imbalance, now)

        return result

    # ------------------------------------------------------------------
    # Loop steps
    # ------------------------------------------------------------------

    def _mark_to_market(self, price: float, now: datetime, atr: float) -> List[TradeOutcome]:
        manager = self.portfolio_manager
        sizes_before = {
            p.id: p.size for p in manager.open_positions if p.symbol == self.symbol
        }
        if not sizes_before:
            return []

        outcomes = manager.on_price(price, now, atr, symbol=self.symbol)

        changed = False
        for position in manager.open_positions:
            previous = sizes_before.get(position.id)
            if previous is not None and position.size != previous:
                self._publish("position_updated", {"position": position.model_copy()})
                changed = True

        for outcome in outcomes:
            closed = manager.get_position(outcome.position_id)
            if closed is not None:
                self._publish("position_closed", {"position": closed.model_copy()})
            self._record_outcome(outcome)
            changed = True

        if changed:
            self._publish_portfolio()
        return outcomes

    def _record_outcome(self, outcome: TradeOutcome) -> None:
        try:
            self.repository.save(outcome)
        except Exception as e:
            self.logger.error(
                "engine.outcome_save_failed",
                position_id=outcome.position_id,
                error=str(e),
            )
        self._publish("trade_outcome", {"outcome": outcome})

        if self.config.learning.learning_enabled:
            self.prediction_engine.update_model(outcome)

    def _evaluate_signal(self, result: TickResult, imbalance: float, now: datetime) -> None:
        self.policy.mark_evaluated(self.symbol, now)

        result.prediction = self.prediction_engine.predict(PredictionInput(
            indicators=result.indicators,
            context=result.context,
            imbalance=imbalance,
            recent_prices=self.indicator_engine.recent_prices(PRICE_WINDOW),
            timestamp=now,
        ))

        thresholds = self.prediction_engine.effective_thresholds(now)
        decision = self.policy.decide(
            self.symbol,
            result.tick.mid,
            result.prediction,
            result.context,
            thresholds,
            self.portfolio_manager.portfolio.available_balance,
            now,
        )
        result.decision = decision
        if decision.action == SignalAction.HOLD or decision.signal is None:
            return

        signal = decision.signal
        self.prediction_engine.record_qualifying_signal(now)
        self._signal_history.append(signal)
        self._publish("signal", {"signal": signal})

        opened = self.portfolio_manager.add_position(
            self.symbol,
            signal.side,
            signal.quantity,
            signal.price,
            prediction=result.prediction,
            now=now,
            atr=result.indicators.atr,
        )
        if not opened.accepted:
            result.rejection = opened
            self.logger.info(
                "engine.signal_rejected",
                action=signal.action.value,
                rule=opened.rule,
                reason=opened.reason,
            )
            return

        result.opened = opened.position
        self._publish("position_opened", {"position": opened.position.model_copy()})
        self._publish_portfolio()

    def _publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            self.event_sink.publish(event_type, payload)
        except Exception as e:
            self.logger.error("engine.publish_failed", event_type=event_type, error=str(e))

    def _publish_portfolio(self) -> None:
        self._publish("portfolio_snapshot", {"portfolio": self.portfolio_manager.snapshot()})

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def update_config(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a partial configuration update to every component.

        Raises:
            ValueError: Unknown key
            pydantic.ValidationError: Invalid value (configuration unchanged)
        """
        applied = self.config.update(partial)

        self.indicator_engine.config = self.config.indicators
        self.prediction_engine.apply_config(self.config.learning, self.config.signal)
        self.portfolio_manager.apply_config(self.config)
        self.policy.config = self.config.signal

        self.logger.info("engine.config_updated", changes=list(applied))
        return applied

    def reset_model(self) -> None:
        self.prediction_engine.reset_model()

    def warm_start(self, n: Optional[int] = None) -> int:
        """Replay the most recent persisted outcomes into the model."""
        n = self.config.database.outcomes_to_load if n is None else n
        outcomes = self.repository.load_recent(n)
        return self.prediction_engine.warm_start(outcomes)

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    @property
    def portfolio(self) -> Portfolio:
        return self.portfolio_manager.snapshot()

    @property
    def indicators(self) -> Optional[IndicatorSet]:
        return self.indicator_engine.latest

    @property
    def market_context(self) -> Optional[MarketContext]:
        return self._last_context

    @property
    def prediction(self) -> Optional[PredictionOutput]:
        return self.prediction_engine.last_prediction

    @property
    def signal_history(self) -> List[TradingSignal]:
        return list(self._signal_history)

    def get_model_performance(self) -> Dict[str, Any]:
        return self.prediction_engine.get_model_performance()

    def get_status(self) -> Dict[str, Any]:
        """Get current engine status."""
        portfolio = self.portfolio_manager.portfolio
        reconciliation = self.portfolio_manager.last_reconciliation
        return {
            'symbol': self.symbol,
            'ticks_processed': self.ticks_processed,
            'ticks_rejected': self.ticks_rejected,
            'samples': self.indicator_engine.sample_count,
            'portfolio': {
                'equity': str(portfolio.equity),
                'available': str(portfolio.available_balance),
                'locked_profits': str(portfolio.locked_profits),
                'total_pnl': str(portfolio.total_pnl),
                'day_pnl': str(portfolio.day_pnl),
            },
            'positions': {
                pos.id: {
                    'side': pos.side.value,
                    'size': str(pos.size),
                    'entry_price': str(pos.entry_price),
                    'unrealized_pnl': str(pos.unrealized_pnl),
                    'status': pos.status.value,
                }
                for pos in portfolio.open_positions
            },
            'closed_positions': len(portfolio.closed_positions),
            'signals': len(self._signal_history),
            'model': self.get_model_performance(),
            'risk': self.risk_manager.get_risk_report(portfolio),
            'reconciliation': (
                reconciliation.to_dict() if reconciliation is not None else None
            ),
        }
