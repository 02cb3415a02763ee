"""Portfolio reconciliation.

Checks a persisted portfolio against the totals recomputed from its positions
before the recomputed values replace it. Every discrepancy is reported with
its monetary impact, and open positions held longer than the stale age are
flagged.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from tickloop.core.models import Portfolio, ensure_utc, utc_now
from tickloop.portfolio.calculator import PortfolioCalculator

logger = structlog.get_logger(__name__)

HIGH_THRESHOLD = Decimal("0.10")
CRITICAL_THRESHOLD = Decimal("1.00")


def _to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def severity_for(difference: Decimal) -> str:
    if difference > CRITICAL_THRESHOLD:
        return "critical"
    if difference > HIGH_THRESHOLD:
        return "high"
    return "medium"


@dataclass
class Discrepancy:
    """A persisted value that disagrees with its recomputed value.

    Attributes:
        field: Portfolio field, or ``position[<id>].<field>``
        expected: Recomputed value
        actual: Persisted value
        severity: medium, high or critical
    """
    field: str
    expected: Decimal
    actual: Decimal
    severity: str

    @property
    def impact(self) -> Decimal:
        return abs(self.expected - self.actual)


@dataclass
class ReconciliationReport:
    """Result of reconciling one portfolio snapshot."""
    expected_equity: Decimal
    expected_total_pnl: Decimal
    expected_available_balance: Decimal
    total_exposure: Decimal
    open_positions: int
    discrepancies: List[Discrepancy] = field(default_factory=list)
    stale_positions: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def is_consistent(self) -> bool:
        return not self.discrepancies

    @property
    def has_critical(self) -> bool:
        return any(d.severity == "critical" for d in self.discrepancies)

    @property
    def total_impact(self) -> Decimal:
        return sum((d.impact for d in self.discrepancies), Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consistent": self.is_consistent,
            "critical": self.has_critical,
            "total_impact": str(self.total_impact),
            "discrepancies": [
                {
                    "field": d.field,
                    "expected": str(d.expected),
                    "actual": str(d.actual),
                    "impact": str(d.impact),
                    "severity": d.severity,
                }
                for d in self.discrepancies
            ],
            "stale_positions": list(self.stale_positions),
            "open_positions": self.open_positions,
            "total_exposure": str(self.total_exposure),
            "timestamp": self.timestamp.isoformat(),
        }


def reconcile_portfolio(
    portfolio: Portfolio,
    now: Optional[datetime] = None,
    tolerance=Decimal("0.001"),
    stale_after_seconds: float = 3600.0,
) -> ReconciliationReport:
    """
    Compare ``portfolio``'s stored totals with a fresh recalculation.

    Differences at or below ``tolerance`` are ignored. The input is not
    modified.
    """
    now = ensure_utc(now) if now else utc_now()
    tolerance = _to_decimal(tolerance)
    expected = PortfolioCalculator.recalculate(portfolio)

    report = ReconciliationReport(
        expected_equity=expected.equity,
        expected_total_pnl=expected.total_pnl,
        expected_available_balance=expected.available_balance,
        total_exposure=PortfolioCalculator.exposure(expected),
        open_positions=len(expected.open_positions),
        timestamp=now,
    )

    def compare(name: str, expected_value: Decimal, actual_value: Decimal) -> None:
        difference = abs(expected_value - actual_value)
        if difference > tolerance:
            report.discrepancies.append(Discrepancy(
                field=name,
                expected=expected_value,
                actual=actual_value,
                severity=severity_for(difference),
            ))

    compare("equity", expected.equity, portfolio.equity)
    compare("total_pnl", expected.total_pnl, portfolio.total_pnl)
    compare("available_balance", expected.available_balance, portfolio.available_balance)

    for stored, recalculated in zip(portfolio.positions, expected.positions):
        if not stored.is_active:
            continue
        compare(
            f"position[{stored.id}].unrealized_pnl",
            recalculated.unrealized_pnl,
            stored.unrealized_pnl,
        )
        age = (now - ensure_utc(stored.timestamp)).total_seconds()
        if age > stale_after_seconds:
            report.stale_positions.append(stored.id)

    for discrepancy in report.discrepancies:
        logger.warning(
            "reconciliation.discrepancy",
            field=discrepancy.field,
            expected=str(discrepancy.expected),
            actual=str(discrepancy.actual),
            impact=str(discrepancy.impact),
            severity=discrepancy.severity,
        )
    for position_id in report.stale_positions:
        logger.warning("reconciliation.stale_position", position_id=position_id)

    logger.info(
        "reconciliation.completed",
        consistent=report.is_consistent,
        discrepancies=len(report.discrepancies),
        total_impact=str(report.total_impact),
        stale_positions=len(report.stale_positions),
    )
    return report
