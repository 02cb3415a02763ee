"""Position lifecycle, exits and portfolio accounting."""

from tickloop.portfolio.calculator import PortfolioCalculator
from tickloop.portfolio.exits import ExitDecision, ExitPolicy
from tickloop.portfolio.manager import PortfolioManager, PositionResult
from tickloop.portfolio.reconciliation import (
    Discrepancy,
    ReconciliationReport,
    reconcile_portfolio,
)

__all__ = [
    "Discrepancy",
    "ExitDecision",
    "ExitPolicy",
    "PortfolioCalculator",
    "PortfolioManager",
    "PositionResult",
    "ReconciliationReport",
    "reconcile_portfolio",
]
