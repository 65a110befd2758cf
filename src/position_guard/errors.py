"""
Error taxonomy for the risk-monitoring core.

RETRYABLE vs NON-RETRYABLE:
- TransientFetchFailure: skip this position this tick, try again next tick
- ConfigurationFailure: hard stop for the attempt, needs an operator
- PositionNotFound: reported as a failed result, never fatal to a monitor
- PersistenceFailure: logged, the trade path proceeds regardless
- OrderRejected: the venue refused the order, the attempt may be retried
"""


class RiskCoreError(Exception):
    """Base exception for risk-core errors."""
    pass


class TransientFetchFailure(RiskCoreError):
    """A single price or store lookup failed."""
    pass


class MarketDataUnavailable(TransientFetchFailure):
    """A market-data source could not be reached at all."""
    pass


class ConfigurationFailure(RiskCoreError):
    """Execution credentials or adapter configuration are missing."""
    pass


class PositionNotFound(RiskCoreError):
    """Reduction requested against a closed or unknown position."""

    def __init__(self, position_id: str, domain: str):
        super().__init__(f"Position {position_id} not found in {domain}")
        self.position_id = position_id
        self.domain = domain


class PersistenceFailure(RiskCoreError):
    """A cache or idempotency-store write failed."""
    pass


class OrderRejected(RiskCoreError):
    """The execution venue rejected a reduce/close order."""
    pass
