"""Deduplication of side-effecting actions."""

from position_guard.idempotency.storage import (
    IdempotencyRecord,
    IdempotencyStore,
    DuckDBIdempotencyStore,
)
from position_guard.idempotency.guard import (
    IdempotencyGuard,
    IdempotencyCheckResult,
    ReservationResult,
    IdempotencyCleanupJob,
    STATUS_PENDING,
    STATUS_SUCCESS,
    STATUS_FAILED,
)

__all__ = [
    "IdempotencyRecord",
    "IdempotencyStore",
    "DuckDBIdempotencyStore",
    "IdempotencyGuard",
    "IdempotencyCheckResult",
    "ReservationResult",
    "IdempotencyCleanupJob",
    "STATUS_PENDING",
    "STATUS_SUCCESS",
    "STATUS_FAILED",
]
