"""Replay of recorded top-of-book quotes."""
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Union

import pandas as pd
import structlog
from pydantic import ValidationError

from tickloop.core.engine import TickResult, TradingEngine
from tickloop.core.models import PriceTick
from tickloop.market.orderbook import MarketSnapshot

logger = structlog.get_logger(__name__)

REQUIRED_COLUMNS = ("timestamp", "bid", "ask")
OPTIONAL_COLUMNS = {
    "bid_volume": 0.0,
    "ask_volume": 0.0,
    "imbalance": 0.0,
    "liquidity_score": 0.5,
    "spread_quality": 0.5,
}


def _row_value(row, column: str) -> float:
    value = row.get(column, OPTIONAL_COLUMNS[column])
    return OPTIONAL_COLUMNS[column] if pd.isna(value) else float(value)


def load_quotes_csv(filepath: Union[str, Path]) -> List[MarketSnapshot]:
    """
    Load quotes from a CSV file.

    Required columns: timestamp (ISO 8601), bid, ask. Optional columns:
    bid_volume, ask_volume, imbalance, liquidity_score, spread_quality.
    Rows that do not form a valid quote are skipped.
    """
    df = pd.read_csv(filepath)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Missing columns in {filepath}: {', '.join(missing)}")

    snapshots = []
    skipped = 0
    for _, row in df.iterrows():
        try:
            tick = PriceTick(
                bid=float(row["bid"]),
                ask=float(row["ask"]),
                timestamp=datetime.fromisoformat(str(row["timestamp"])),
                bid_volume=_row_value(row, "bid_volume"),
                ask_volume=_row_value(row, "ask_volume"),
            )
        except (ValidationError, ValueError):
            skipped += 1
            continue

        snapshots.append(MarketSnapshot(
            tick=tick,
            imbalance=min(max(_row_value(row, "imbalance"), -1.0), 1.0),
            liquidity_score=min(max(_row_value(row, "liquidity_score"), 0.0), 1.0),
            spread_quality=min(max(_row_value(row, "spread_quality"), 0.0), 1.0),
        ))

    logger.info("replay.loaded", file=str(filepath), quotes=len(snapshots), skipped=skipped)
    return snapshots


def replay(engine: TradingEngine, snapshots: Iterable[MarketSnapshot]) -> List[TickResult]:
    """Feed snapshots through the engine synchronously, in order."""
    results = []
    for snapshot in snapshots:
        results.append(engine.process_tick(
            snapshot.tick,
            imbalance=snapshot.imbalance,
            liquidity_score=snapshot.liquidity_score,
            spread_quality=snapshot.spread_quality,
        ))

    opened = sum(1 for r in results if r.opened is not None)
    closed = sum(len(r.outcomes) for r in results)
    logger.info("replay.completed", ticks=len(results), opened=opened, closed=closed)
    return results
