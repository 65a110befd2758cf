"""Logging helpers."""

from position_guard.utils.logger import (
    JSONFormatter,
    PerformanceLogger,
    RiskLogger,
    setup_logging,
    get_risk_logger,
)

__all__ = [
    "JSONFormatter",
    "PerformanceLogger",
    "RiskLogger",
    "setup_logging",
    "get_risk_logger",
]
