"""Portfolio arithmetic.

The single source of truth for equity and available balance. Pure: takes a
portfolio, returns a recalculated copy, never mutates its input, so calling
it twice yields identical results.
"""
from decimal import ROUND_HALF_UP, Decimal

from tickloop.core.models import Portfolio, Position


class PortfolioCalculator:
    """Decimal portfolio totals quantized to six decimal places.

    Identities maintained by ``recalculate``:
        total_pnl = sum(realized - locked) + sum(unrealized of open positions)
        equity = base_capital + total_pnl + locked_profits
        available_balance = equity - locked_profits - sum(|size x current price|) over open
    """

    PRECISION = Decimal("0.000001")

    @classmethod
    def quantize(cls, value: Decimal) -> Decimal:
        return value.quantize(cls.PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def unrealized_pnl(cls, position: Position) -> Decimal:
        if not position.is_active:
            return Decimal("0")
        return cls.quantize(position.calculate_unrealized_pnl(position.current_price))

    @classmethod
    def exposure(cls, portfolio: Portfolio) -> Decimal:
        return cls.quantize(sum(
            (p.notional for p in portfolio.positions if p.is_active), Decimal("0")
        ))

    @classmethod
    def recalculate(cls, portfolio: Portfolio) -> Portfolio:
        """Recompute P&L, equity and available balance from positions."""
        positions = []
        realized = Decimal("0")
        unrealized = Decimal("0")
        exposure = Decimal("0")

        for position in portfolio.positions:
            if position.is_active:
                pnl = cls.unrealized_pnl(position)
                if pnl != position.unrealized_pnl:
                    position = position.model_copy(update={"unrealized_pnl": pnl})
                unrealized += pnl
                exposure += position.notional
            realized += position.realized_pnl - position.locked_pnl
            positions.append(position)

        total_pnl = cls.quantize(realized + unrealized)
        locked = cls.quantize(portfolio.locked_profits)
        equity = cls.quantize(portfolio.base_capital + total_pnl + locked)
        available = cls.quantize(equity - locked - exposure)

        return portfolio.model_copy(update={
            "positions": positions,
            "total_pnl": total_pnl,
            "locked_profits": locked,
            "equity": equity,
            "available_balance": available,
        })
