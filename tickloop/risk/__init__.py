"""Risk management module for TickLoop.

Pre-trade validation of new positions as a prioritized rule chain, plus
Kelly-based position sizing.
"""

from tickloop.risk.risk_manager import (
    PositionRequest,
    RiskCheck,
    RiskManager,
    RiskRule,
    create_risk_manager,
)

__all__ = [
    'PositionRequest',
    'RiskCheck',
    'RiskManager',
    'RiskRule',
    'create_risk_manager',
]
