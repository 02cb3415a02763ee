"""Position and portfolio management.

Owns the portfolio's positions (a dense list indexed by position id), the
per-position exit tracking, and every money mutation: opening, partial and
full closes, profit locking and daily P&L. After each mutation the portfolio
is recalculated by ``PortfolioCalculator``.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import structlog

from tickloop.core.config import TickLoopConfig
from tickloop.core.models import (
    OrderSide,
    Portfolio,
    Position,
    PositionStatus,
    PositionTracking,
    PredictionOutput,
    TradeOutcome,
    ensure_utc,
    utc_now,
)
from tickloop.portfolio.calculator import PortfolioCalculator
from tickloop.portfolio.exits import ExitPolicy
from tickloop.portfolio.reconciliation import ReconciliationReport, reconcile_portfolio
from tickloop.risk.risk_manager import PositionRequest, RiskManager

logger = structlog.get_logger(__name__)


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class PositionResult:
    """Outcome of ``add_position``.

    Attributes:
        accepted: Whether the position was opened
        position: The opened position
        reason: Rejection reason
        rule: Risk rule that rejected the position
    """
    accepted: bool
    position: Optional[Position] = None
    reason: str = ""
    rule: Optional[str] = None


class PortfolioManager:
    """
    Position lifecycle and portfolio accounting for one trading loop.

    Closed positions stay in ``portfolio.positions`` as history; their
    tracking entries are destroyed on close.
    """

    def __init__(
        self,
        config: Optional[TickLoopConfig] = None,
        risk_manager: Optional[RiskManager] = None,
        portfolio: Optional[Portfolio] = None,
    ):
        self.config = config or TickLoopConfig()
        self.risk_manager = risk_manager or RiskManager(self.config.risk, self.config.signal)
        self.exit_policy = ExitPolicy(self.config.exits)

        base = to_decimal(self.config.risk.base_capital)
        self.portfolio = portfolio or Portfolio(
            base_capital=base, available_balance=base, equity=base
        )
        self._index: Dict[str, int] = {}
        self._tracking: Dict[str, PositionTracking] = {}
        self.last_reconciliation: Optional[ReconciliationReport] = None
        self._reindex()
        self._ensure_tracking()
        self.recalculate()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reindex(self) -> None:
        self._index = {p.id: i for i, p in enumerate(self.portfolio.positions)}

    def _ensure_tracking(self) -> None:
        for position in self.portfolio.open_positions:
            if position.id not in self._tracking:
                self._tracking[position.id] = PositionTracking(
                    prediction=None, entry_time=position.timestamp
                )

    def _fee_rate(self) -> Decimal:
        return to_decimal(self.config.risk.exchange_fee_percentage) / 100

    def _roll_day(self, now: datetime) -> None:
        day = now.date().isoformat()
        if self.portfolio.trading_day != day:
            if self.portfolio.trading_day is not None:
                logger.info(
                    "portfolio.daily_reset",
                    previous_day=self.portfolio.trading_day,
                    day_pnl=str(self.portfolio.day_pnl),
                )
            self.portfolio.day_pnl = Decimal("0")
            self.portfolio.trading_day = day

    def _replace(self, position: Position) -> None:
        self.portfolio.positions[self._index[position.id]] = position

    def apply_config(self, config: TickLoopConfig) -> None:
        self.config = config
        self.exit_policy.config = config.exits
        self.risk_manager.config = config.risk
        self.risk_manager.signal_config = config.signal

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_position(self, position_id: str) -> Optional[Position]:
        index = self._index.get(position_id)
        if index is None:
            return None
        return self.portfolio.positions[index]

    def get_tracking(self, position_id: str) -> Optional[PositionTracking]:
        return self._tracking.get(position_id)

    @property
    def open_positions(self) -> List[Position]:
        return self.portfolio.open_positions

    def snapshot(self) -> Portfolio:
        """Deep copy of the current portfolio."""
        return self.portfolio.model_copy(deep=True)

    def recalculate(self) -> Portfolio:
        self.portfolio = PortfolioCalculator.recalculate(self.portfolio)
        return self.portfolio

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_position(
        self,
        symbol: str,
        side: OrderSide,
        size,
        price,
        prediction: Optional[PredictionOutput] = None,
        now: Optional[datetime] = None,
        atr: float = 0.0,
    ) -> PositionResult:
        """
        Open a position if every risk rule passes.

        A rejected request has no side effects.
        """
        now = ensure_utc(now) if now else utc_now()
        size, price = to_decimal(size), to_decimal(price)
        self._roll_day(now)
        self.recalculate()

        request = PositionRequest(symbol=symbol, side=side, size=size, price=price)
        check = self.risk_manager.check_new_position(request, self.portfolio)
        if not check.passed:
            return PositionResult(
                accepted=False, reason=check.reason, rule=check.rule_triggered
            )

        entry_fee = PortfolioCalculator.quantize(size * price * self._fee_rate())
        position = Position(
            symbol=symbol,
            side=side,
            size=size,
            entry_price=price,
            current_price=price,
            realized_pnl=-entry_fee,
            fees=entry_fee,
            timestamp=now,
        )
        self.portfolio.positions.append(position)
        self._index[position.id] = len(self.portfolio.positions) - 1
        if entry_fee:
            self.portfolio.day_pnl = PortfolioCalculator.quantize(self.portfolio.day_pnl - entry_fee)

        tracking = PositionTracking(prediction=prediction, entry_time=now)
        self.exit_policy.update_trailing_stop(position, tracking, price, atr)
        self._tracking[position.id] = tracking

        self.recalculate()
        logger.info(
            "portfolio.position_opened",
            position_id=position.id,
            symbol=symbol,
            side=side.value,
            size=str(size),
            price=str(price),
            available_balance=str(self.portfolio.available_balance),
        )
        return PositionResult(accepted=True, position=self.get_position(position.id))

    def on_price(
        self,
        price,
        now: Optional[datetime] = None,
        atr: float = 0.0,
        symbol: Optional[str] = None,
    ) -> List[TradeOutcome]:
        """
        Mark open positions to ``price`` and apply exits.

        When ``symbol`` is given, positions in other symbols are left alone.

        Returns:
            Outcomes of positions fully closed on this tick
        """
        now = ensure_utc(now) if now else utc_now()
        price = to_decimal(price)
        self._roll_day(now)

        outcomes = []
        position_ids = [
            p.id for p in self.portfolio.open_positions
            if symbol is None or p.symbol == symbol
        ]
        for position_id in position_ids:
            position = self.get_position(position_id)
            tracking = self._tracking[position_id]

            position.current_price = price
            move = position.price_move_pct(price)
            tracking.max_favorable_excursion = max(tracking.max_favorable_excursion, move)
            tracking.max_adverse_excursion = max(tracking.max_adverse_excursion, -move)
            self.exit_policy.update_trailing_stop(position, tracking, price, atr)

            decision = self.exit_policy.evaluate(position, tracking, price, now)
            if decision is None:
                continue

            if decision.full:
                outcome = self.close_position(position_id, price, decision.reason, now)
                if outcome is not None:
                    outcomes.append(outcome)
            else:
                self.partial_close(position_id, decision.quantity, price, decision.reason, now)
                tracking.partial_tiers_taken += 1

        self.recalculate()
        return outcomes

    def partial_close(
        self,
        position_id: str,
        quantity,
        price,
        reason: str = "partial close",
        now: Optional[datetime] = None,
    ) -> Optional[Decimal]:
        """
        Close part of a position.

        Returns:
            Net realized P&L of the closed part, or None when nothing closed
        """
        position = self.get_position(position_id)
        if position is None or not position.is_active:
            logger.warning(
                "portfolio.partial_close_ignored",
                position_id=position_id,
                reason="unknown position" if position is None else "already closed",
            )
            return None

        now = ensure_utc(now) if now else utc_now()
        quantity, price = to_decimal(quantity), to_decimal(price)
        if quantity <= 0:
            return None
        if quantity >= position.size:
            outcome = self.close_position(position_id, price, reason, now)
            return outcome.realized_pnl if outcome else None

        gross = (price - position.entry_price) * quantity * position.direction
        fee = PortfolioCalculator.quantize(quantity * price * self._fee_rate())
        net = PortfolioCalculator.quantize(gross - fee)

        position.realized_pnl = PortfolioCalculator.quantize(position.realized_pnl + net)
        position.fees += fee
        position.size -= quantity
        position.current_price = price
        position.status = PositionStatus.PARTIAL
        self.portfolio.day_pnl = PortfolioCalculator.quantize(self.portfolio.day_pnl + net)

        tracking = self._tracking.get(position_id)
        if tracking is not None:
            tracking.partial_history.append(reason)

        self.recalculate()
        logger.info(
            "portfolio.partial_close",
            position_id=position_id,
            reason=reason,
            quantity=str(quantity),
            price=str(price),
            realized_pnl=str(net),
            remaining=str(position.size),
        )
        return net

    def close_position(
        self,
        position_id: str,
        price,
        reason: str = "manual",
        now: Optional[datetime] = None,
    ) -> Optional[TradeOutcome]:
        """
        Fully close a position and emit its trade outcome.

        Closing an unknown or already-closed id is a no-op returning None.
        """
        position = self.get_position(position_id)
        if position is None or not position.is_active:
            logger.warning(
                "portfolio.close_ignored",
                position_id=position_id,
                reason="unknown position" if position is None else "already closed",
            )
            return None

        now = ensure_utc(now) if now else utc_now()
        price = to_decimal(price)
        quantity = position.size

        gross = (price - position.entry_price) * quantity * position.direction
        fee = PortfolioCalculator.quantize(quantity * price * self._fee_rate())
        net = PortfolioCalculator.quantize(gross - fee)

        realized = PortfolioCalculator.quantize(position.realized_pnl + net)
        move = position.price_move_pct(price)

        locked = Decimal("0")
        exits = self.config.exits
        if (
            exits.enable_profit_lock
            and realized > 0
            and realized >= to_decimal(exits.profit_lock_min_threshold)
        ):
            locked = PortfolioCalculator.quantize(
                realized * to_decimal(exits.profit_lock_percentage)
            )

        closed = position.model_copy(update={
            "current_price": price,
            "realized_pnl": realized,
            "locked_pnl": locked,
            "fees": position.fees + fee,
            "unrealized_pnl": Decimal("0"),
            "status": PositionStatus.CLOSED,
            "closed_at": now,
            "exit_reason": reason,
        })
        self._replace(closed)
        self.portfolio.locked_profits = PortfolioCalculator.quantize(
            self.portfolio.locked_profits + locked
        )
        self.portfolio.day_pnl = PortfolioCalculator.quantize(self.portfolio.day_pnl + net)

        tracking = self._tracking.pop(position_id, None)
        entry_time = tracking.entry_time if tracking else position.timestamp
        mfe = max(tracking.max_favorable_excursion if tracking else 0.0, move)
        mae = max(tracking.max_adverse_excursion if tracking else 0.0, -move)

        outcome = TradeOutcome(
            position_id=position_id,
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=price,
            size=position.initial_size,
            holding_time_seconds=max((now - entry_time).total_seconds(), 0.0),
            realized_pnl=realized,
            actual_return=move,
            success=realized > 0,
            max_favorable_excursion=mfe,
            max_adverse_excursion=mae,
            exit_reason=reason,
            prediction=tracking.prediction if tracking else None,
            closed_at=now,
        )

        self.recalculate()
        logger.info(
            "portfolio.position_closed",
            position_id=position_id,
            reason=reason,
            price=str(price),
            realized_pnl=str(realized),
            locked=str(locked),
            equity=str(self.portfolio.equity),
        )
        return outcome

    def recover(
        self,
        portfolio: Portfolio,
        open_positions: Optional[Sequence[Position]] = None,
        now: Optional[datetime] = None,
    ) -> Portfolio:
        """
        Resume from a persisted portfolio plus its open positions.

        The persisted totals are reconciled against the positions before
        they are replaced by recalculated values; the report is kept in
        ``last_reconciliation``.
        """
        positions = list(portfolio.positions)
        known = {p.id for p in positions}
        for position in open_positions or []:
            if position.id not in known:
                positions.append(position)
                known.add(position.id)

        self.portfolio = portfolio.model_copy(update={"positions": positions}, deep=True)
        self._tracking = {}
        self._reindex()
        self._ensure_tracking()
        report = self.reconcile(now)

        logger.info(
            "portfolio.recovered",
            open_positions=len(self.portfolio.open_positions),
            locked_profits=str(self.portfolio.locked_profits),
            consistent=report.is_consistent,
        )
        return self.recalculate()

    def reconcile(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """Check the current stored totals against their positions."""
        risk = self.config.risk
        self.last_reconciliation = reconcile_portfolio(
            self.portfolio,
            now=now,
            tolerance=to_decimal(risk.reconciliation_tolerance),
            stale_after_seconds=risk.stale_position_seconds,
        )
        return self.last_reconciliation
