"""
Unit tests for the IdempotencyGuard and its DuckDB record store.

Tests:
- Deterministic, bucketed key generation
- Duplicate detection on check_and_reserve
- Expiry and stale-failure windows
- Fail-open behavior when storage breaks
- Cleanup and statistics
"""

import asyncio
import pytest

from position_guard.idempotency import (
    IdempotencyCleanupJob,
    IdempotencyGuard,
    IdempotencyRecord,
    IdempotencyStore,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SUCCESS,
)


class BrokenStore(IdempotencyStore):
    """Store whose every operation fails."""

    def get(self, key):
        raise RuntimeError("db locked")

    def upsert(self, record):
        raise RuntimeError("db locked")

    def update_result(self, key, result):
        raise RuntimeError("db locked")

    def delete(self, key):
        raise RuntimeError("db locked")

    def delete_expired(self, now):
        raise RuntimeError("db locked")

    def count(self):
        raise RuntimeError("db locked")

    def count_by_domain(self):
        raise RuntimeError("db locked")

    def count_expired(self, now):
        raise RuntimeError("db locked")


# ============================================================================
# Key Generation
# ============================================================================

def test_generate_key_is_deterministic_within_hour(guard, clock):
    """Same arguments in the same hour bucket give the same key."""
    first = guard.generate_key("perps", "close", "SOL-PERP", 250.0)
    clock.advance(60)
    second = guard.generate_key("perps", "close", "SOL-PERP", 250.0)

    assert first == second
    hour_bucket = int(clock() * 1000) // 3_600_000
    assert first == f"perps:close:solperp:250:{hour_bucket}"


def test_generate_key_amount_buckets(guard):
    """Amounts in the same $10 bucket collapse; other buckets differ."""
    assert guard.generate_key("perps", "close", "pos-1", 251.0) == \
        guard.generate_key("perps", "close", "pos-1", 259.99)
    assert guard.generate_key("perps", "close", "pos-1", 259.99) != \
        guard.generate_key("perps", "close", "pos-1", 260.0)


def test_generate_key_changes_when_hour_rolls_over(guard, clock):
    before = guard.generate_key("dlmm", "close", "pool", 100.0)
    clock.advance(3600)
    after = guard.generate_key("dlmm", "close", "pool", 100.0)

    assert before != after


def test_generate_key_normalizes_target(guard):
    key = guard.generate_key("spot", "reduce_25", "So1ana_Mint-ABC", None)
    assert key.split(":")[2] == "so1anamintabc"
    assert key.split(":")[3] == "0"

    assert guard.generate_key("spot", "close", None, 10.0).split(":")[2] == "none"


# ============================================================================
# Reservation
# ============================================================================

@pytest.mark.asyncio
async def test_check_and_reserve_second_call_is_duplicate(guard):
    first = await guard.check_and_reserve("perps", "close", "pos-1", 100.0)
    second = await guard.check_and_reserve("perps", "close", "pos-1", 100.0)

    assert first.is_duplicate is False
    assert second.is_duplicate is True
    assert second.key == first.key
    assert second.previous_result == {"status": STATUS_PENDING}


@pytest.mark.asyncio
async def test_concurrent_reservations_yield_one_winner(guard):
    results = await asyncio.gather(*(
        guard.check_and_reserve("perps", "close", "pos-1", 100.0) for _ in range(5)
    ))

    assert sum(1 for r in results if not r.is_duplicate) == 1


@pytest.mark.asyncio
async def test_update_result_is_returned_on_check(guard):
    reservation = await guard.check_and_reserve("perps", "close", "pos-1", 100.0)
    await guard.update_result(reservation.key, {"status": STATUS_SUCCESS, "fill_price": 99.5})

    check = await guard.check(reservation.key)

    assert check.exists is True
    assert check.result == {"status": STATUS_SUCCESS, "fill_price": 99.5}
    assert check.created_at is not None


@pytest.mark.asyncio
async def test_remove_permits_retry(guard):
    reservation = await guard.check_and_reserve("perps", "close", "pos-1", 100.0)
    await guard.remove(reservation.key)

    retry = await guard.check_and_reserve("perps", "close", "pos-1", 100.0)

    assert retry.is_duplicate is False


# ============================================================================
# Expiry / Stale Failures
# ============================================================================

@pytest.mark.asyncio
async def test_expired_record_is_absent_and_deleted(guard, clock, idempotency_store):
    await guard.record("perps:close:x:0:1", "perps", "close", "x", 0.0, {"status": STATUS_SUCCESS})

    clock.advance(24 * 3600 + 1)
    check = await guard.check("perps:close:x:0:1")

    assert check.exists is False
    assert idempotency_store.get("perps:close:x:0:1") is None


@pytest.mark.asyncio
async def test_failed_record_older_than_window_is_absent(guard, clock):
    reservation = await guard.check_and_reserve("perps", "close", "pos-1", 100.0)
    await guard.update_result(reservation.key, {"status": STATUS_FAILED, "error": "no creds"})

    clock.advance(5 * 60)
    assert (await guard.check(reservation.key)).exists is True

    clock.advance(6 * 60)
    assert (await guard.check(reservation.key)).exists is False


@pytest.mark.asyncio
async def test_successful_record_outlives_failure_window(guard, clock):
    reservation = await guard.check_and_reserve("perps", "close", "pos-1", 100.0)
    await guard.update_result(reservation.key, {"status": STATUS_SUCCESS})

    clock.advance(30 * 60)

    assert (await guard.check(reservation.key)).exists is True


@pytest.mark.asyncio
async def test_re_reserving_stale_failure_refreshes_age(guard, clock):
    """A fresh reservation over a stale failure must not itself be stale."""
    first = await guard.check_and_reserve("perps", "close", "pos-1", 100.0)
    await guard.update_result(first.key, {"status": STATUS_FAILED})
    clock.advance(11 * 60)

    second = await guard.check_and_reserve("perps", "close", "pos-1", 100.0)
    await guard.update_result(second.key, {"status": STATUS_FAILED})

    assert second.is_duplicate is False
    assert (await guard.check(second.key)).exists is True


# ============================================================================
# Fail Open
# ============================================================================

@pytest.mark.asyncio
async def test_storage_failure_fails_open(clock):
    guard = IdempotencyGuard(BrokenStore(), clock=clock)

    check = await guard.check("anything")
    reservation = await guard.check_and_reserve("perps", "close", "pos-1", 100.0)

    assert check.exists is False
    assert reservation.is_duplicate is False
    await guard.update_result(reservation.key, {"status": STATUS_SUCCESS})
    await guard.remove(reservation.key)
    assert await guard.cleanup() == 0
    assert (await guard.get_stats())["total_records"] == 0


# ============================================================================
# Maintenance
# ============================================================================

@pytest.mark.asyncio
async def test_cleanup_deletes_only_expired(guard, clock, idempotency_store):
    await guard.record("old", "perps", "close", "a", 10.0, {"status": STATUS_SUCCESS})
    clock.advance(23 * 3600)
    await guard.record("new", "dlmm", "close", "b", 10.0, {"status": STATUS_SUCCESS})
    clock.advance(2 * 3600)

    stats = await guard.get_stats()
    assert stats["total_records"] == 2
    assert stats["expired_count"] == 1
    assert stats["by_domain"] == {"perps": 1, "dlmm": 1}

    assert await guard.cleanup() == 1
    assert idempotency_store.get("old") is None
    assert idempotency_store.get("new") is not None


@pytest.mark.asyncio
async def test_cleanup_job_accumulates_deleted(guard, clock):
    await guard.record("old", "perps", "close", "a", 10.0, {"status": STATUS_SUCCESS})
    clock.advance(25 * 3600)

    job = IdempotencyCleanupJob(guard, interval_seconds=3600)
    await job.run_tick()

    assert job.total_deleted == 1
    assert job.tick_count == 1
    assert job.failed_ticks == 0


def test_store_upsert_refreshes_existing_record(idempotency_store):
    idempotency_store.upsert(IdempotencyRecord("k", "perps", "close", "t", 10.0, '{"status": "failed"}', 1.0, 100.0))
    idempotency_store.upsert(IdempotencyRecord("k", "perps", "close", "t", 10.0, '{"status": "pending"}', 50.0, 150.0))

    record = idempotency_store.get("k")

    assert idempotency_store.count() == 1
    assert record.result == '{"status": "pending"}'
    assert record.created_at == 50.0
    assert record.expires_at == 150.0
    assert idempotency_store.update_result("missing", "{}") is False
