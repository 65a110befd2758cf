"""
Position Guard - position risk monitoring and safe execution.

Continuously re-evaluates open positions against exit rules, reduces
positions at liquidation risk, and executes every trade-affecting action
at most once per logical intent.
"""

__version__ = "0.1.0"

from position_guard.errors import (
    RiskCoreError,
    TransientFetchFailure,
    MarketDataUnavailable,
    ConfigurationFailure,
    PositionNotFound,
    PersistenceFailure,
    OrderRejected,
)
from position_guard.interfaces import Fill, PositionStore, MarketDataSource, ExecutionAdapter
from position_guard.service import RiskCoreService

__all__ = [
    "RiskCoreError",
    "TransientFetchFailure",
    "MarketDataUnavailable",
    "ConfigurationFailure",
    "PositionNotFound",
    "PersistenceFailure",
    "OrderRejected",
    "Fill",
    "PositionStore",
    "MarketDataSource",
    "ExecutionAdapter",
    "RiskCoreService",
]
