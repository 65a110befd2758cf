"""
Idempotency Guard - deduplication of trade-affecting actions.

Keys are bucketed so that near-duplicate retries within the same hour
collapse into one key, while a materially different amount or the same
call after the hour rolls over produces a new key:

    {domain}:{action}:{target}:{amountBucket}:{hourBucket}

Storage failures fail open: if the guard cannot tell whether a key
exists, the action proceeds rather than never executing a protective close.
"""

import asyncio
import json
import logging
import math
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from position_guard.core.base import ScheduledSweep
from position_guard.idempotency.storage import IdempotencyRecord, IdempotencyStore


logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass
class IdempotencyCheckResult:
    """Result of looking up a key."""
    exists: bool
    result: Any = None
    created_at: Optional[datetime] = None


@dataclass
class ReservationResult:
    """Result of check_and_reserve."""
    is_duplicate: bool
    key: str
    previous_result: Any = None


class IdempotencyGuard:
    """
    Prevents duplicate execution of side-effecting actions.

    Usage:
        reservation = await guard.check_and_reserve("perps", "close", "pos-1", 250.0)
        if reservation.is_duplicate:
            return
        try:
            fill = await do_the_trade()
            await guard.update_result(reservation.key, {"status": "success", ...})
        except TransientError:
            await guard.remove(reservation.key)  # permit retry
    """

    def __init__(
        self,
        store: IdempotencyStore,
        ttl_seconds: float = 24 * 60 * 60,
        failed_retry_after_seconds: float = 10 * 60,
        amount_bucket_usd: float = 10.0,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the guard.

        Args:
            store: Record storage backend
            ttl_seconds: Lifetime of a record
            failed_retry_after_seconds: Age after which a failed record stops blocking
            amount_bucket_usd: Width of the amount bucket in keys
            clock: Wall clock returning epoch seconds
        """
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.failed_retry_after_seconds = failed_retry_after_seconds
        self.amount_bucket_usd = amount_bucket_usd
        self._clock = clock
        self._reserve_lock = asyncio.Lock()
        self.logger = logging.getLogger(f"{__name__}.IdempotencyGuard")

    # ========================================================================
    # Keys
    # ========================================================================

    def generate_key(
        self,
        domain: str,
        action: str,
        target: Optional[str],
        amount_usd: Optional[float]
    ) -> str:
        """
        Generate a deterministic idempotency key.

        Args:
            domain: Trading domain
            action: Action being taken (close, reduce_25, ...)
            target: Target of the action (position id, symbol, pool address)
            amount_usd: USD amount of the action

        Returns:
            Key of the form domain:action:target:amountBucket:hourBucket
        """
        domain = getattr(domain, "value", domain)
        normalized_target = re.sub(r"[^a-z0-9]", "", (target or "none").lower())
        bucket = self.amount_bucket_usd
        amount_bucket = int(math.floor((amount_usd or 0) / bucket) * bucket)
        hour_bucket = int(self._clock() * 1000) // HOUR_MS
        return f"{domain}:{action}:{normalized_target}:{amount_bucket}:{hour_bucket}"

    # ========================================================================
    # Lookup
    # ========================================================================

    async def check(self, key: str) -> IdempotencyCheckResult:
        """
        Check whether an action with this key was already executed.

        Expired records and failed records older than the retry window are
        treated as absent. Any storage error is treated as absent.
        """
        try:
            record = self.store.get(key)
        except Exception as e:
            self.logger.error(f"[Idempotency] Failed to check key {key}: {e}")
            return IdempotencyCheckResult(exists=False)

        if record is None:
            return IdempotencyCheckResult(exists=False)

        now = self._clock()

        if record.expires_at < now:
            try:
                self.store.delete(key)
            except Exception as e:
                self.logger.warning(f"[Idempotency] Failed to delete expired key {key}: {e}")
            return IdempotencyCheckResult(exists=False)

        parsed = _parse_result(record.result)

        if isinstance(parsed, dict) and parsed.get("status") == STATUS_FAILED:
            if now - record.created_at > self.failed_retry_after_seconds:
                return IdempotencyCheckResult(exists=False)

        return IdempotencyCheckResult(
            exists=True,
            result=parsed,
            created_at=datetime.utcfromtimestamp(record.created_at),
        )

    # ========================================================================
    # Writes
    # ========================================================================

    async def record(
        self,
        key: str,
        domain: str,
        action: str,
        target: Optional[str],
        amount_usd: Optional[float],
        result: Any
    ) -> None:
        """
        Record an operation. Failures are logged, never raised.

        A fresh record starts a new age for the stale-failure window.
        """
        now = self._clock()
        record = IdempotencyRecord(
            key=key,
            domain=getattr(domain, "value", domain),
            action=action,
            target=target or "none",
            amount_usd=amount_usd or 0.0,
            result=json.dumps(result, default=str) if result is not None else None,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        try:
            self.store.upsert(record)
            self.logger.debug(f"[Idempotency] Recorded operation: {key}")
        except Exception as e:
            self.logger.error(f"[Idempotency] Failed to record operation {key}: {e}")

    async def check_and_reserve(
        self,
        domain: str,
        action: str,
        target: Optional[str],
        amount_usd: Optional[float]
    ) -> ReservationResult:
        """
        Check for a duplicate and, if none, reserve the key as pending.

        The caller must later call update_result (success) or remove
        (failure, to permit retry).
        """
        key = self.generate_key(domain, action, target, amount_usd)

        async with self._reserve_lock:
            existing = await self.check(key)
            if existing.exists:
                self.logger.info(f"[Idempotency] Duplicate action suppressed: {key}")
                return ReservationResult(
                    is_duplicate=True,
                    key=key,
                    previous_result=existing.result,
                )

            await self.record(key, domain, action, target, amount_usd, {"status": STATUS_PENDING})

        return ReservationResult(is_duplicate=False, key=key)

    async def update_result(self, key: str, result: Any) -> None:
        """Store the final result for a reserved key."""
        try:
            if not self.store.update_result(key, json.dumps(result, default=str)):
                self.logger.warning(f"[Idempotency] No reservation to update for {key}")
        except Exception as e:
            self.logger.error(f"[Idempotency] Failed to update result for {key}: {e}")

    async def remove(self, key: str) -> None:
        """Remove a key so the action can be retried."""
        try:
            self.store.delete(key)
        except Exception as e:
            self.logger.error(f"[Idempotency] Failed to remove key {key}: {e}")

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def cleanup(self) -> int:
        """
        Delete expired records.

        Returns:
            Number of records deleted (0 on failure)
        """
        try:
            count = self.store.delete_expired(self._clock())
        except Exception as e:
            self.logger.error(f"[Idempotency] Failed to clean up expired entries: {e}")
            return 0

        if count > 0:
            self.logger.info(f"[Idempotency] Cleaned up {count} expired entries")
        return count

    async def get_stats(self) -> Dict[str, Any]:
        """Get statistics about idempotency records."""
        try:
            return {
                "total_records": self.store.count(),
                "by_domain": self.store.count_by_domain(),
                "expired_count": self.store.count_expired(self._clock()),
            }
        except Exception as e:
            self.logger.error(f"[Idempotency] Failed to get stats: {e}")
            return {"total_records": 0, "by_domain": {}, "expired_count": 0}


class IdempotencyCleanupJob(ScheduledSweep):
    """Periodic deletion of expired idempotency records."""

    def __init__(self, guard: IdempotencyGuard, interval_seconds: float = 3600.0, **kwargs):
        super().__init__("IdempotencyCleanup", interval_seconds, **kwargs)
        self.guard = guard
        self.total_deleted = 0

    async def sweep(self) -> None:
        self.total_deleted += await self.guard.cleanup()


def _parse_result(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw
