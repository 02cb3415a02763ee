"""Database storage for trading data."""
import asyncio
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Coroutine, Deque, Dict, List, Optional, Set

import structlog
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, Numeric, String, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from tickloop.core.config import DatabaseConfig
from tickloop.core.models import (
    OrderSide,
    Portfolio,
    Position,
    PositionStatus,
    PredictionOutput,
    TradeOutcome,
    TradingSignal,
)

logger = structlog.get_logger(__name__)

Base = declarative_base()


class TradeOutcomeModel(Base):
    """SQLAlchemy model for closed-trade outcomes."""
    __tablename__ = 'trade_outcomes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    position_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    entry_price = Column(Numeric(36, 18), nullable=False)
    exit_price = Column(Numeric(36, 18), nullable=False)
    size = Column(Numeric(36, 18), nullable=False)
    holding_time_seconds = Column(Float, nullable=False)
    realized_pnl = Column(Numeric(36, 18), nullable=False)
    actual_return = Column(Float, nullable=False)
    success = Column(Boolean, nullable=False)
    max_favorable_excursion = Column(Float, default=0.0)
    max_adverse_excursion = Column(Float, default=0.0)
    exit_reason = Column(String, nullable=False)
    prediction_json = Column(JSON, nullable=True)
    closed_at = Column(DateTime, nullable=False)


class PositionModel(Base):
    """SQLAlchemy model for positions."""
    __tablename__ = 'positions'

    id = Column(String, primary_key=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    size = Column(Numeric(36, 18), nullable=False)
    initial_size = Column(Numeric(36, 18), nullable=False)
    entry_price = Column(Numeric(36, 18), nullable=False)
    current_price = Column(Numeric(36, 18), nullable=False)
    unrealized_pnl = Column(Numeric(36, 18), default=0)
    realized_pnl = Column(Numeric(36, 18), default=0)
    locked_pnl = Column(Numeric(36, 18), default=0)
    fees = Column(Numeric(36, 18), default=0)
    status = Column(String, nullable=False)
    opened_at = Column(DateTime, nullable=False)
    closed_at = Column(DateTime, nullable=True)
    exit_reason = Column(String, nullable=True)


class PortfolioSnapshotModel(Base):
    """SQLAlchemy model for portfolio snapshots (positions stored separately)."""
    __tablename__ = 'portfolio_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    base_capital = Column(Numeric(36, 18), nullable=False)
    available_balance = Column(Numeric(36, 18), nullable=False)
    locked_profits = Column(Numeric(36, 18), nullable=False)
    total_pnl = Column(Numeric(36, 18), nullable=False)
    day_pnl = Column(Numeric(36, 18), nullable=False)
    equity = Column(Numeric(36, 18), nullable=False)
    trading_day = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class SignalModel(Base):
    """SQLAlchemy model for emitted trading signals."""
    __tablename__ = 'signals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    action = Column(String, nullable=False)
    confidence = Column(Float, nullable=False)
    probability = Column(Float, nullable=False)
    price = Column(Numeric(36, 18), nullable=False)
    quantity = Column(Numeric(36, 18), nullable=False)
    reasoning = Column(String, default="")
    created_at = Column(DateTime, nullable=False)


class Database:
    """Async database interface."""

    def __init__(self, database_url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = database_url or DatabaseConfig().database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        engine_kwargs: Dict[str, Any] = {"echo": False}
        if ":memory:" in db_url:
            # One shared connection, otherwise every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool
        elif db_url.startswith("sqlite+aiosqlite:///"):
            Path(db_url[len("sqlite+aiosqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

        self.database_url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession)

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Trade outcome operations
    async def save_outcome(self, outcome: TradeOutcome):
        """Append a trade outcome."""
        async with self.session_maker() as session:
            session.add(TradeOutcomeModel(
                position_id=outcome.position_id,
                symbol=outcome.symbol,
                side=outcome.side.value,
                entry_price=outcome.entry_price,
                exit_price=outcome.exit_price,
                size=outcome.size,
                holding_time_seconds=outcome.holding_time_seconds,
                realized_pnl=outcome.realized_pnl,
                actual_return=outcome.actual_return,
                success=outcome.success,
                max_favorable_excursion=outcome.max_favorable_excursion,
                max_adverse_excursion=outcome.max_adverse_excursion,
                exit_reason=outcome.exit_reason,
                prediction_json=(
                    outcome.prediction.model_dump(mode="json") if outcome.prediction else None
                ),
                closed_at=outcome.closed_at,
            ))
            await session.commit()

    async def load_recent_outcomes(self, n: int) -> List[TradeOutcome]:
        """The ``n`` most recent outcomes, oldest first."""
        if n <= 0:
            return []
        async with self.session_maker() as session:
            result = await session.execute(
                select(TradeOutcomeModel).order_by(TradeOutcomeModel.id.desc()).limit(n)
            )
            rows = result.scalars().all()
            return [self._outcome_from_model(row) for row in reversed(rows)]

    # Position operations
    async def save_position(self, position: Position):
        """Save or update a position."""
        async with self.session_maker() as session:
            db_position = await session.get(PositionModel, position.id)

            if db_position is None:
                db_position = PositionModel(
                    id=position.id,
                    symbol=position.symbol,
                    side=position.side.value,
                    initial_size=position.initial_size,
                    entry_price=position.entry_price,
                    opened_at=position.timestamp,
                )
                session.add(db_position)

            db_position.size = position.size
            db_position.current_price = position.current_price
            db_position.unrealized_pnl = position.unrealized_pnl
            db_position.realized_pnl = position.realized_pnl
            db_position.locked_pnl = position.locked_pnl
            db_position.fees = position.fees
            db_position.status = position.status.value
            db_position.closed_at = position.closed_at
            db_position.exit_reason = position.exit_reason

            await session.commit()

    async def get_open_positions(self, symbol: Optional[str] = None) -> List[Position]:
        """Get open positions, optionally for one symbol only."""
        async with self.session_maker() as session:
            query = select(PositionModel).where(PositionModel.closed_at.is_(None))
            if symbol:
                query = query.where(PositionModel.symbol == symbol)
            result = await session.execute(query)
            db_positions = result.scalars().all()

            return [self._position_from_model(p) for p in db_positions]

    async def get_position(self, position_id: str) -> Optional[Position]:
        """Get a position by id."""
        async with self.session_maker() as session:
            db_position = await session.get(PositionModel, position_id)
            if db_position is None:
                return None
            return self._position_from_model(db_position)

    # Portfolio operations
    async def save_portfolio_snapshot(self, portfolio: Portfolio):
        """Append a portfolio snapshot."""
        async with self.session_maker() as session:
            session.add(PortfolioSnapshotModel(
                base_capital=portfolio.base_capital,
                available_balance=portfolio.available_balance,
                locked_profits=portfolio.locked_profits,
                total_pnl=portfolio.total_pnl,
                day_pnl=portfolio.day_pnl,
                equity=portfolio.equity,
                trading_day=portfolio.trading_day,
                created_at=portfolio.timestamp,
            ))
            await session.commit()

    async def get_latest_portfolio(self, symbol: Optional[str] = None) -> Optional[Portfolio]:
        """Latest snapshot with persisted positions attached, optionally for one symbol."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(PortfolioSnapshotModel)
                .order_by(PortfolioSnapshotModel.id.desc())
                .limit(1)
            )
            snapshot = result.scalar_one_or_none()
            if snapshot is None:
                return None

            query = select(PositionModel)
            if symbol:
                query = query.where(PositionModel.symbol == symbol)
            positions_result = await session.execute(query.order_by(PositionModel.opened_at))
            positions = [self._position_from_model(p) for p in positions_result.scalars().all()]

            return Portfolio(
                base_capital=snapshot.base_capital,
                available_balance=snapshot.available_balance,
                locked_profits=snapshot.locked_profits,
                total_pnl=snapshot.total_pnl,
                day_pnl=snapshot.day_pnl,
                equity=snapshot.equity,
                trading_day=snapshot.trading_day,
                positions=positions,
            )

    # Signal operations
    async def save_signal(self, signal: TradingSignal):
        """Append an emitted signal."""
        async with self.session_maker() as session:
            session.add(SignalModel(
                symbol=signal.symbol,
                action=signal.action.value,
                confidence=signal.confidence,
                probability=signal.probability,
                price=signal.price,
                quantity=signal.quantity,
                reasoning=signal.reasoning,
                created_at=signal.timestamp,
            ))
            await session.commit()

    async def get_signals(self, symbol: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent signals, newest first."""
        async with self.session_maker() as session:
            query = select(SignalModel)
            if symbol:
                query = query.where(SignalModel.symbol == symbol)
            result = await session.execute(
                query.order_by(SignalModel.id.desc()).limit(limit)
            )
            return [
                {
                    "symbol": row.symbol,
                    "action": row.action,
                    "confidence": row.confidence,
                    "probability": row.probability,
                    "price": row.price,
                    "quantity": row.quantity,
                    "reasoning": row.reasoning,
                    "created_at": row.created_at,
                }
                for row in result.scalars().all()
            ]

    # Helpers
    def _outcome_from_model(self, model: TradeOutcomeModel) -> TradeOutcome:
        """Convert DB model to TradeOutcome object."""
        return TradeOutcome(
            position_id=model.position_id,
            symbol=model.symbol,
            side=OrderSide(model.side),
            entry_price=model.entry_price,
            exit_price=model.exit_price,
            size=model.size,
            holding_time_seconds=model.holding_time_seconds,
            realized_pnl=model.realized_pnl,
            actual_return=model.actual_return,
            success=model.success,
            max_favorable_excursion=model.max_favorable_excursion or 0.0,
            max_adverse_excursion=model.max_adverse_excursion or 0.0,
            exit_reason=model.exit_reason,
            prediction=(
                PredictionOutput.model_validate(model.prediction_json)
                if model.prediction_json
                else None
            ),
            closed_at=model.closed_at,
        )

    def _position_from_model(self, model: PositionModel) -> Position:
        """Convert DB model to Position object."""
        return Position(
            id=model.id,
            symbol=model.symbol,
            side=OrderSide(model.side),
            size=model.size,
            initial_size=model.initial_size,
            entry_price=model.entry_price,
            current_price=model.current_price,
            unrealized_pnl=model.unrealized_pnl or 0,
            realized_pnl=model.realized_pnl or 0,
            locked_pnl=model.locked_pnl or 0,
            fees=model.fees or 0,
            status=PositionStatus(model.status),
            timestamp=model.opened_at,
            closed_at=model.closed_at,
            exit_reason=model.exit_reason,
        )


class DatabaseEventSink:
    """Event sink writing engine events to the database in background tasks.

    ``publish`` only schedules the write on the running event loop; write
    failures are logged, never raised into the tick path.
    """

    def __init__(self, database: Database):
        self.database = database
        self._tasks: Set[asyncio.Task] = set()

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        if event_type in ("position_opened", "position_updated", "position_closed"):
            self.schedule(self.database.save_position(payload["position"]))
        elif event_type == "portfolio_snapshot":
            self.schedule(self.database.save_portfolio_snapshot(payload["portfolio"]))
        elif event_type == "signal":
            self.schedule(self.database.save_signal(payload["signal"]))

    def schedule(self, coroutine: Coroutine) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coroutine.close()
            logger.debug("database_sink.no_running_loop")
            return

        task = loop.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("database_sink.write_failed", error=str(error))

    async def flush(self) -> None:
        """Wait for all scheduled writes."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class DatabaseOutcomeRepository:
    """``OutcomeRepository`` over ``Database``.

    Saves are scheduled in the background; ``load_recent`` serves outcomes
    preloaded with ``preload`` at start-up plus those saved since, so the
    tick path never awaits I/O.
    """

    def __init__(
        self,
        database: Database,
        sink: Optional[DatabaseEventSink] = None,
        max_cached: int = 1000,
    ):
        self.database = database
        self.sink = sink or DatabaseEventSink(database)
        self._cache: Deque[TradeOutcome] = deque(maxlen=max_cached)

    async def preload(self, n: int) -> List[TradeOutcome]:
        self._cache.clear()
        self._cache.extend(await self.database.load_recent_outcomes(n))
        return list(self._cache)

    def save(self, outcome: TradeOutcome) -> None:
        self._cache.append(outcome)
        self.sink.schedule(self.database.save_outcome(outcome))

    def load_recent(self, n: int) -> List[TradeOutcome]:
        if n <= 0:
            return []
        return list(self._cache)[-n:]
