"""
Unit tests for the PositionMonitor and the LiquidationRiskMonitor.
"""

import pytest

from conftest import FakeMarketData, FakePositionStore, make_perp, make_spot
from position_guard.core.events import EventBus
from position_guard.position import (
    Domain,
    ExitCondition,
    ExitConditionRegistry,
    ExitKind,
    PositionSnapshotCache,
    PositionStatus,
    RecommendedAction,
    RiskLevel,
    TriggerDirection,
)
from position_guard.position.monitor import LiquidationRiskMonitor, PositionMonitor
from position_guard.position.pricing import PriceRiskAggregator
from position_guard.position.reducer import EmergencyReducer


@pytest.fixture
def registry():
    return ExitConditionRegistry()


@pytest.fixture
def feed():
    return FakeMarketData()


@pytest.fixture
def store():
    return FakePositionStore()


@pytest.fixture
def cache(tmp_path):
    return PositionSnapshotCache(str(tmp_path / "positions.json"))


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def reducer(store, guard, cache, bus):
    return EmergencyReducer(store, guard, cache=cache, event_bus=bus)


@pytest.fixture
def monitor(registry, store, feed, reducer, cache, bus):
    aggregator = PriceRiskAggregator({Domain.PERPS: feed, Domain.SPOT: feed})
    return PositionMonitor(registry, store, aggregator, reducer, cache=cache, event_bus=bus)


@pytest.fixture
def liquidation_monitor(store, feed, reducer, bus, registry):
    aggregator = PriceRiskAggregator({Domain.PERPS: feed})
    return LiquidationRiskMonitor(store, aggregator, reducer, registry=registry, event_bus=bus)


def stop_loss(position_id, trigger, domain=Domain.SPOT):
    return ExitCondition(
        position_id=position_id,
        domain=domain,
        kind=ExitKind.STOP_LOSS,
        trigger_price=trigger,
        direction=TriggerDirection.BELOW,
    )


# ============================================================================
# Position Monitor
# ============================================================================

@pytest.mark.asyncio
async def test_stop_loss_triggers_exactly_once(monitor, registry, store, feed, bus):
    events = []

    async def on_exit(event):
        events.append(event)

    await bus.subscribe("ExitExecuted", on_exit)
    store.add(make_spot("spot-1", "SOL", current_price=95.0))
    exit_id = registry.register(stop_loss("spot-1", 90.0))
    condition = registry.get(exit_id)
    feed.prices["SOL"] = 88.0

    executed = await monitor.check_all_exits()

    assert len(executed) == 1
    assert executed[0].success is True
    assert "90" in executed[0].reason
    assert condition.active is False
    assert condition.triggered_at is not None
    assert len(store.closed) == 1
    assert registry.list_for_position("spot-1") == []
    assert len(events) == 1

    assert await monitor.check_all_exits() == []
    assert len(store.closed) == 1


@pytest.mark.asyncio
async def test_untriggered_condition_stays_active(monitor, registry, store, feed):
    store.add(make_spot("spot-1", "SOL"))
    exit_id = registry.register(stop_loss("spot-1", 90.0))
    feed.prices["SOL"] = 95.0

    assert await monitor.check_all_exits() == []
    assert registry.get(exit_id).active is True
    assert store.updates[0]["current_price"] == 95.0


@pytest.mark.asyncio
async def test_missing_price_skips_position_for_tick(monitor, registry, store, feed):
    store.add(make_spot("spot-1", "SOL"))
    exit_id = registry.register(stop_loss("spot-1", 90.0))

    assert await monitor.check_all_exits() == []
    assert registry.get(exit_id).active is True

    feed.prices["SOL"] = 80.0
    assert len(await monitor.check_all_exits()) == 1


@pytest.mark.asyncio
async def test_store_failure_skips_domain(monitor, registry, store, feed):
    store.add(make_spot("spot-1", "SOL"))
    registry.register(stop_loss("spot-1", 90.0))
    feed.prices["SOL"] = 80.0
    store.failing_domains.add(Domain.SPOT)

    assert await monitor.check_all_exits() == []
    assert len(registry.list_active()) == 1


@pytest.mark.asyncio
async def test_same_tick_triggers_close_once(monitor, registry, store, feed):
    store.add(make_spot("spot-1", "SOL"))
    first = registry.register(stop_loss("spot-1", 92.0))
    second = registry.register(stop_loss("spot-1", 90.0))
    feed.prices["SOL"] = 88.0

    executed = await monitor.check_all_exits()

    assert [e.exit_condition.id for e in executed] == [first, second]
    assert all(e.success for e in executed)
    assert "already closed" in executed[1].reason
    assert len(store.closed) == 1


@pytest.mark.asyncio
async def test_failed_close_is_recorded_and_condition_stays_inactive(monitor, registry, store, feed):
    store.add(make_spot("spot-1", "SOL"))
    exit_id = registry.register(stop_loss("spot-1", 90.0))
    feed.prices["SOL"] = 88.0
    store.fail_writes = True

    executed = await monitor.check_all_exits()

    assert len(executed) == 1
    assert executed[0].success is False
    assert executed[0].error
    assert registry.get(exit_id).active is False
    assert monitor.exits_failed == 1


@pytest.mark.asyncio
async def test_monitor_refreshes_cache(monitor, registry, store, feed, cache):
    store.add(make_spot("spot-1", "SOL"))
    registry.register(stop_loss("spot-1", 90.0))
    feed.prices["SOL"] = 95.0

    await monitor.check_all_exits()

    assert [p.id for p in cache.get(Domain.SPOT)] == ["spot-1"]


# ============================================================================
# Liquidation Risk Monitor
# ============================================================================

@pytest.mark.asyncio
async def test_danger_position_is_reduced_by_quarter(liquidation_monitor, store, feed, bus):
    """Entry 100, 5x, $20 margin, mark 84 -> margin ratio 0.20."""
    alerts = []

    async def on_risk(event):
        alerts.append(event)

    await bus.subscribe("LiquidationRiskDetected", on_risk)
    store.add(make_perp("pos-1"))
    feed.prices["SOL-PERP"] = 84.0

    results = await liquidation_monitor.check_all_perps_liquidation_risk()

    assert len(results) == 1
    assert results[0].risk_level == RiskLevel.DANGER
    assert results[0].recommended_action == RecommendedAction.REDUCE_25
    assert store.updates[0]["metadata"]["size_usd"] == pytest.approx(75.0)
    assert liquidation_monitor.reductions_triggered == 1
    assert alerts[0].risk_level == "danger"


@pytest.mark.asyncio
async def test_critical_position_is_closed(liquidation_monitor, store, feed):
    store.add(make_perp("pos-1"))
    feed.prices["SOL-PERP"] = 81.0  # margin ratio 0.05

    results = await liquidation_monitor.check_all_perps_liquidation_risk()

    assert results[0].recommended_action == RecommendedAction.CLOSE
    assert store.positions["pos-1"].status == PositionStatus.CLOSED


@pytest.mark.asyncio
async def test_liquidation_close_clears_exit_conditions(liquidation_monitor, registry, store, feed):
    store.add(make_perp("pos-1"))
    registry.register(stop_loss("pos-1", 95.0, domain=Domain.PERPS))
    other = registry.register(stop_loss("pos-2", 95.0, domain=Domain.PERPS))
    feed.prices["SOL-PERP"] = 81.0

    await liquidation_monitor.check_all_perps_liquidation_risk()

    assert registry.list_for_position("pos-1") == []
    assert [c.id for c in registry.list_active()] == [other]


@pytest.mark.asyncio
async def test_partial_liquidation_reduction_keeps_exit_conditions(liquidation_monitor, registry, store, feed):
    store.add(make_perp("pos-1"))
    registry.register(stop_loss("pos-1", 70.0, domain=Domain.PERPS))
    feed.prices["SOL-PERP"] = 84.0  # margin ratio 0.20

    await liquidation_monitor.check_all_perps_liquidation_risk()

    assert len(registry.list_for_position("pos-1")) == 1


@pytest.mark.asyncio
async def test_safe_and_warning_positions_are_not_reduced(liquidation_monitor, store, feed):
    store.add(make_perp("safe", symbol="SOL-PERP"))
    store.add(make_perp("warn", symbol="ETH-PERP"))
    feed.prices.update({"SOL-PERP": 100.0, "ETH-PERP": 88.0})  # ratios 1.0 and 0.40

    results = await liquidation_monitor.check_all_perps_liquidation_risk()

    assert {r.position_id: r.risk_level for r in results} == {
        "safe": RiskLevel.SAFE,
        "warn": RiskLevel.WARNING,
    }
    assert store.updates == []
    assert store.closed == []


@pytest.mark.asyncio
async def test_missing_mark_skips_position(liquidation_monitor, store, feed):
    store.add(make_perp("pos-1", symbol="SOL-PERP"))
    store.add(make_perp("pos-2", symbol="ETH-PERP"))
    feed.prices["SOL-PERP"] = 100.0

    results = await liquidation_monitor.check_all_perps_liquidation_risk()

    assert [r.position_id for r in results] == ["pos-1"]


@pytest.mark.asyncio
async def test_unreachable_feed_returns_no_results(liquidation_monitor, store, feed):
    store.add(make_perp("pos-1"))
    feed.prices["SOL-PERP"] = 81.0
    feed.unavailable = True

    assert await liquidation_monitor.check_all_perps_liquidation_risk() == []
    assert store.closed == []
