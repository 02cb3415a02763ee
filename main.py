"""
TickLoop - Main Entry Point

Tick-driven adaptive trading loop for a single instrument.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Replay recorded quotes through the loop
    python main.py --replay data/quotes.csv

    # Replay with persistence (outcomes, positions and snapshots in the database)
    python main.py --replay data/quotes.csv --persist

    # Show engine status (after a replay, or the recovered state)
    python main.py --status
"""

import argparse
import asyncio
from typing import Dict, Optional

import structlog

from tickloop.core.config import TickLoopConfig, load_config
from tickloop.core.engine import TradingEngine
from tickloop.core.worker import TickWorker
from tickloop.market.replay import load_quotes_csv
from tickloop.storage.database import (
    Database,
    DatabaseEventSink,
    DatabaseOutcomeRepository,
)
from tickloop.storage.repository import RecordingEventSink
from tickloop.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def print_banner(config: TickLoopConfig):
    """Print the startup banner."""
    print("=" * 60)
    print(f"  {config.system.app_name} v{config.system.app_version}")
    print(f"  Adaptive tick-driven trading loop - {config.market.symbol}")
    print("=" * 60)


def check_configuration(config: TickLoopConfig) -> Dict:
    """
    Check if configuration is valid.

    Returns:
        Dictionary with validation results
    """
    validation = config.validate_configuration()
    warnings = []

    if not config.learning.learning_enabled:
        warnings.append("Learning is disabled: outcomes will not adapt the model")
    if not config.signal.use_kelly_criterion:
        warnings.append("Kelly sizing disabled: flat fallback sizing only")
    if config.risk.exchange_fee_percentage == 0:
        warnings.append("Exchange fee is 0%: P&L excludes trading costs")

    return {
        "valid": validation["valid"],
        "issues": validation["issues"],
        "warnings": warnings,
        "symbol": config.market.symbol,
        "environment": config.system.environment,
    }


def print_status(status: Dict):
    """Print formatted status output."""
    print("\n" + "=" * 60)
    print("           TICKLOOP - ENGINE STATUS")
    print("=" * 60)

    print(f"\nSymbol: {status['symbol']}")
    print(f"Ticks processed: {status['ticks_processed']} (rejected: {status['ticks_rejected']})")
    print(f"Signals: {status['signals']}")

    portfolio = status["portfolio"]
    print("\nPortfolio:")
    print(f"   Equity: {portfolio['equity']}")
    print(f"   Available: {portfolio['available']}")
    print(f"   Locked profits: {portfolio['locked_profits']}")
    print(f"   Total P&L: {portfolio['total_pnl']}  (day: {portfolio['day_pnl']})")

    positions = status["positions"]
    print(f"\nOpen positions: {len(positions)}  Closed: {status['closed_positions']}")
    for position_id, pos in positions.items():
        print(
            f"   {position_id}: {pos['side']} {pos['size']} @ {pos['entry_price']} "
            f"(uPnL {pos['unrealized_pnl']})"
        )

    model = status["model"]
    metrics = model["metrics"]
    print("\nModel:")
    print(f"   Training samples: {model['training_samples']} ({model['data_quality']})")
    print(f"   Win rate: {metrics['win_rate']:.2%}  Profit factor: {metrics['profit_factor']:.2f}")
    print("   Weights: " + ", ".join(f"{k}={v:.3f}" for k, v in model["weights"].items()))
    print(
        "   Thresholds: "
        + ", ".join(f"{k}={v:.3f}" for k, v in model["thresholds"].items())
    )

    reconciliation = status.get("reconciliation")
    if reconciliation:
        state = "consistent" if reconciliation["consistent"] else "DISCREPANCIES"
        print(f"\nReconciliation: {state} (impact {reconciliation['total_impact']})")
        for item in reconciliation["discrepancies"]:
            print(
                f"   [{item['severity']}] {item['field']}: "
                f"expected {item['expected']}, stored {item['actual']}"
            )
        if reconciliation["stale_positions"]:
            print(f"   Stale positions: {', '.join(reconciliation['stale_positions'])}")

    print("\n" + "=" * 60)


async def build_engine(config: TickLoopConfig, database: Optional[Database]) -> TradingEngine:
    """Create the engine, recovering persisted state when a database is given."""
    if database is None:
        return TradingEngine(config=config, event_sink=RecordingEventSink())

    sink = DatabaseEventSink(database)
    repository = DatabaseOutcomeRepository(database, sink, config.learning.max_training_buffer)
    await repository.preload(config.database.outcomes_to_load)

    engine = TradingEngine(
        config=config,
        repository=repository,
        event_sink=sink,
        portfolio=await database.get_latest_portfolio(config.market.symbol),
        open_positions=await database.get_open_positions(config.market.symbol),
    )
    engine.warm_start()
    return engine


async def run_replay(engine: TradingEngine, filepath: str):
    """Replay a quote file through the async worker."""
    snapshots = load_quotes_csv(filepath)
    worker = TickWorker(engine, queue_size=max(len(snapshots), 1))

    await worker.start()
    worker.submit_many(snapshots)
    await worker.stop(drain=True)

    print(f"\nReplayed {worker.processed} quotes ({worker.errors} errors)")


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="TickLoop - adaptive tick-driven trading loop"
    )
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument(
        "--replay", metavar="FILE", help="Replay a CSV of quotes (timestamp, bid, ask, ...)"
    )
    parser.add_argument(
        "--persist",
        action="store_true",
        help="Recover from and write to the configured database",
    )
    parser.add_argument(
        "--status", action="store_true", help="Show engine status and exit"
    )

    args = parser.parse_args()

    config = load_config()
    setup_logging(config.logging)

    if not args.check and not args.status:
        print_banner(config)

    config_check = check_configuration(config)
    for warning in config_check["warnings"]:
        print(f"! {warning}")

    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)

        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")

        print(f"\nSymbol: {config_check['symbol']}")
        print(f"Environment: {config_check['environment']}")
        print("\n" + "=" * 60)
        return

    if not config_check["valid"]:
        print("\n✗ Configuration errors:")
        for issue in config_check["issues"]:
            print(f"   - {issue}")
        print("\nPlease check your .env file and try again.")
        return

    if args.init_db:
        print("\nInitializing database...")
        db = Database(config.database.database_url)
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return

    database = None
    if args.persist:
        database = Database(config.database.database_url)
        await database.initialize()

    try:
        engine = await build_engine(config, database)

        if args.replay:
            await run_replay(engine, args.replay)

        if args.status or args.replay:
            print_status(engine.get_status())

        if isinstance(engine.event_sink, DatabaseEventSink):
            await engine.event_sink.flush()

    except KeyboardInterrupt:
        print("\n\nShutdown requested by user...")
    except Exception as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        raise
    finally:
        if database is not None:
            await database.close()


if __name__ == "__main__":
    asyncio.run(main())
