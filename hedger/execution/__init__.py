"""Execution core for hedge trading.

Opens paired long/short exposures against a venue, tracks their combined
P&L and ratio drift, and closes or rebalances them under risk limits. Both
legs of a hedge are sent strictly in sequence so a failure is always
attributable to one leg.

Modules:
    risk_manager     -- Sizing, balance, ratio, trigger and portfolio checks
    order_executor   -- Single orders with retry, and hedge pairs
    position_manager -- Position and hedge-group lifecycle over a store
    hedge_engine     -- Open/close/rebalance orchestration and monitoring
"""

from hedger.execution.hedge_engine import HedgeEngine
from hedger.execution.order_executor import OrderExecutor
from hedger.execution.position_manager import PositionManager
from hedger.execution.risk_manager import RiskManager

__all__ = [
    "HedgeEngine",
    "OrderExecutor",
    "PositionManager",
    "RiskManager",
]
