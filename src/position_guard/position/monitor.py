"""
Position monitors.

Two scheduled sweeps cover the same positions at different cadences:

- PositionMonitor: evaluates every registered exit condition (default 5 min)
- LiquidationRiskMonitor: classifies liquidation risk of every open
  leveraged position and reduces automatically (default 2 min), whether or
  not an explicit liquidation_risk condition exists
"""

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from position_guard.core.base import ScheduledSweep
from position_guard.core.events import EventBus, ExitExecuted, LiquidationRiskDetected
from position_guard.errors import MarketDataUnavailable
from position_guard.interfaces import PositionStore
from position_guard.position.cache import PositionSnapshotCache
from position_guard.position.evaluator import evaluate_condition
from position_guard.position.exit_conditions import ExitConditionRegistry
from position_guard.position.models import (
    Domain,
    ExecutedExit,
    ExitCondition,
    LiquidationRiskResult,
    Position,
    PriceData,
    RiskLevel,
)
from position_guard.position.pricing import PriceRiskAggregator
from position_guard.position.reducer import EmergencyReducer
from position_guard.utils.logger import get_risk_logger


logger = logging.getLogger(__name__)


async def _fetch_open_positions(
    store: PositionStore,
    domains: Iterable[Domain],
    log: logging.Logger
) -> Dict[Domain, List[Position]]:
    """Fetch open positions for several domains concurrently, skipping failures."""
    domains = list(domains)
    results = await asyncio.gather(
        *(store.get_open_positions(domain) for domain in domains),
        return_exceptions=True
    )

    positions: Dict[Domain, List[Position]] = {}
    for domain, result in zip(domains, results):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            log.warning(f"Failed to load open {domain.value} positions, skipping this tick: {result}")
            continue
        positions[domain] = result
    return positions


# ============================================================================
# Exit-condition monitor
# ============================================================================

class PositionMonitor(ScheduledSweep):
    """
    Periodic evaluation of registered exit conditions.

    Per tick:
    1. snapshot active conditions grouped by position
    2. load open positions for the involved domains and price them
    3. skip positions missing from the price map (transient, nothing deactivated)
    4. evaluate conditions sequentially in registration order
    5. on trigger: deactivate, close through the emergency reducer, record the outcome

    When several conditions of one position trigger in the same tick, only
    the first successful close acts; the rest are reported as successful no-ops.
    """

    def __init__(
        self,
        registry: ExitConditionRegistry,
        store: PositionStore,
        aggregator: PriceRiskAggregator,
        reducer: EmergencyReducer,
        cache: Optional[PositionSnapshotCache] = None,
        event_bus: Optional[EventBus] = None,
        interval_seconds: float = 300.0,
        persist_marks: bool = True,
        now: Callable[[], datetime] = datetime.utcnow,
        **kwargs
    ):
        super().__init__("PositionMonitor", interval_seconds, event_bus=event_bus, **kwargs)
        self.registry = registry
        self.store = store
        self.aggregator = aggregator
        self.reducer = reducer
        self.cache = cache
        self.persist_marks = persist_marks
        self._now = now
        self.risk_logger = get_risk_logger(f"{__name__}.PositionMonitor")

        # Stats
        self.exits_executed = 0
        self.exits_failed = 0

    async def sweep(self) -> None:
        await self.check_all_exits()

    async def check_all_exits(self) -> List[ExecutedExit]:
        """
        Run one evaluation pass over all active exit conditions.

        Returns:
            Executed exits, in evaluation order
        """
        by_position: "OrderedDict[str, List[ExitCondition]]" = OrderedDict()
        for condition in self.registry.list_active():
            by_position.setdefault(condition.position_id, []).append(condition)

        if not by_position:
            return []

        domains = {conditions[0].domain for conditions in by_position.values()}
        open_by_domain = await _fetch_open_positions(self.store, domains, self._logger)

        if self.cache is not None:
            for domain, positions in open_by_domain.items():
                self.cache.update(domain, positions)

        positions: Dict[str, Position] = {}
        tracked: Dict[Domain, List[Position]] = {}
        for domain, domain_positions in open_by_domain.items():
            for position in domain_positions:
                if position.id in by_position:
                    positions[position.id] = position
                    tracked.setdefault(domain, []).append(position)

        prices = await self.aggregator.current_prices(tracked) if tracked else {}

        if self.persist_marks and prices:
            await self._persist_marks(prices)

        executed: List[ExecutedExit] = []
        closed_this_tick: Set[str] = set()

        for position_id, conditions in by_position.items():
            price_data = prices.get(position_id)
            position = positions.get(position_id)
            if price_data is None or position is None:
                self._logger.debug(f"No price for {position_id} this tick, skipping {len(conditions)} conditions")
                continue

            for condition in conditions:
                try:
                    result = await self._evaluate_and_execute(
                        condition, position, price_data, closed_this_tick
                    )
                except Exception as e:
                    self._logger.error(f"Error evaluating exit {condition.id} for {position_id}: {e}")
                    continue
                if result is not None:
                    executed.append(result)

        if executed:
            self._logger.info(f"[MONITOR] {len(executed)} exits executed this tick")
        return executed

    async def _evaluate_and_execute(
        self,
        condition: ExitCondition,
        position: Position,
        price_data: PriceData,
        closed_this_tick: Set[str]
    ) -> Optional[ExecutedExit]:
        if not condition.active:
            return None

        now = self._now()
        outcome = evaluate_condition(condition, price_data, now, position.side)
        if not outcome.triggered:
            return None

        if not condition.deactivate(now):
            return None

        if position.id in closed_this_tick:
            return ExecutedExit(
                exit_condition=condition,
                position_id=position.id,
                domain=position.domain,
                execution_time=now,
                reason=f"{outcome.reason} (position already closed this tick)",
                success=True,
                execution_price=price_data.price,
            )

        self._logger.warning(f"[EXIT] {position.id}: {outcome.reason}")
        reduction = await self.reducer.reduce(position.id, position.domain, 1.0, outcome.reason)

        exit_result = ExecutedExit(
            exit_condition=condition,
            position_id=position.id,
            domain=position.domain,
            execution_time=now,
            reason=outcome.reason,
            success=reduction.success,
            execution_price=reduction.fill_price or price_data.price,
            error=reduction.error,
        )

        if reduction.success:
            self.exits_executed += 1
            closed_this_tick.add(position.id)
            self.registry.remove_all_for_position(position.id)
        else:
            self.exits_failed += 1

        self.risk_logger.exit_event(
            position.id,
            position.domain.value,
            condition.kind.value,
            outcome.reason if reduction.success else f"{outcome.reason}: {reduction.error}",
            reduction.success,
        )

        if self.event_bus:
            await self.event_bus.publish(ExitExecuted(
                position_id=position.id,
                domain=position.domain.value,
                exit_kind=condition.kind.value,
                reason=outcome.reason,
                success=exit_result.success,
                execution_price=exit_result.execution_price,
                error=exit_result.error,
            ))

        return exit_result

    async def _persist_marks(self, prices: Dict[str, PriceData]) -> None:
        fresh = [data for data in prices.values() if not data.stale]
        results = await asyncio.gather(
            *(
                self.store.update_position(
                    data.position_id,
                    current_value_usd=data.current_value_usd,
                    current_price=data.price,
                )
                for data in fresh
            ),
            return_exceptions=True
        )
        for data, result in zip(fresh, results):
            if isinstance(result, Exception):
                self._logger.warning(f"Failed to persist mark for {data.position_id}: {result}")

    def get_stats(self):
        stats = super().get_stats()
        stats.update({
            "active_conditions": len(self.registry.list_active()),
            "exits_executed": self.exits_executed,
            "exits_failed": self.exits_failed,
        })
        return stats


# ============================================================================
# Liquidation-risk monitor
# ============================================================================

_RISK_SEVERITY = {
    RiskLevel.WARNING: "medium",
    RiskLevel.DANGER: "high",
    RiskLevel.CRITICAL: "critical",
}


class LiquidationRiskMonitor(ScheduledSweep):
    """
    Always-on liquidation safety net for leveraged positions.

    Every tick classifies every open leveraged position and invokes the
    emergency reducer whenever the recommended action is a reduction.
    A full close also clears the position's exit rules from the registry.
    """

    def __init__(
        self,
        store: PositionStore,
        aggregator: PriceRiskAggregator,
        reducer: EmergencyReducer,
        leveraged_domains: Iterable[str] = ("perps",),
        registry: Optional[ExitConditionRegistry] = None,
        event_bus: Optional[EventBus] = None,
        interval_seconds: float = 120.0,
        **kwargs
    ):
        super().__init__("LiquidationRiskMonitor", interval_seconds, event_bus=event_bus, **kwargs)
        self.store = store
        self.aggregator = aggregator
        self.reducer = reducer
        self.leveraged_domains = [Domain(d) for d in leveraged_domains]
        self.registry = registry
        self.risk_logger = get_risk_logger(f"{__name__}.LiquidationRiskMonitor")

        # Stats
        self.reductions_triggered = 0

    async def sweep(self) -> None:
        await self.check_all_perps_liquidation_risk()

    async def check_all_perps_liquidation_risk(self) -> List[LiquidationRiskResult]:
        """
        Assess every open leveraged position and reduce where recommended.

        Returns:
            Risk results for every position that could be assessed
        """
        open_by_domain = await _fetch_open_positions(self.store, self.leveraged_domains, self._logger)

        results: List[LiquidationRiskResult] = []
        for domain, positions in open_by_domain.items():
            if not positions:
                continue
            results.extend(await self._check_domain(domain, positions))
        return results

    async def _check_domain(self, domain: Domain, positions: List[Position]) -> List[LiquidationRiskResult]:
        try:
            marks = await self.aggregator.fetch_mark_prices(domain, [p.target for p in positions])
        except MarketDataUnavailable as e:
            self._logger.warning(f"[LIQUIDATION] {domain.value} marks unavailable, skipping this tick: {e}")
            return []

        results: List[LiquidationRiskResult] = []
        for position in positions:
            mark = marks.get(position.target)
            if mark is None:
                self._logger.warning(f"[LIQUIDATION] No mark price for {position.target}, skipping {position.id}")
                continue

            risk = self.aggregator.assess_position(position, mark)
            if risk is None:
                continue
            results.append(risk)

            if risk.risk_level == RiskLevel.SAFE:
                continue

            await self._report(domain, risk)

            if risk.recommended_action.requires_reduction:
                await self._reduce(domain, risk)

        return results

    async def _report(self, domain: Domain, risk: LiquidationRiskResult) -> None:
        self.risk_logger.risk_alert(
            "liquidation_risk",
            _RISK_SEVERITY[risk.risk_level],
            f"{risk.symbol} {risk.position_id} {risk.risk_level.value}: "
            f"margin ratio {risk.margin_ratio * 100:.1f}%, "
            f"liquidation ${risk.liquidation_price:.2f} "
            f"({risk.distance_to_liquidation_pct:.1f}% away), "
            f"action {risk.recommended_action.value}",
            position_id=risk.position_id,
            domain=domain.value,
            risk_level=risk.risk_level.value,
            recommended_action=risk.recommended_action.value,
            margin_ratio=risk.margin_ratio,
        )

        if self.event_bus:
            await self.event_bus.publish(LiquidationRiskDetected(
                position_id=risk.position_id,
                symbol=risk.symbol,
                risk_level=risk.risk_level.value,
                margin_ratio=risk.margin_ratio,
                liquidation_price=risk.liquidation_price,
                current_price=risk.current_price,
                recommended_action=risk.recommended_action.value,
            ))

    async def _reduce(self, domain: Domain, risk: LiquidationRiskResult) -> None:
        fraction = risk.recommended_action.reduce_fraction
        reason = (
            f"Liquidation risk {risk.risk_level.value}: margin ratio "
            f"{risk.margin_ratio * 100:.1f}%, reducing {fraction * 100:.0f}%"
        )
        try:
            result = await self.reducer.reduce(risk.position_id, domain, fraction, reason)
        except Exception as e:
            self._logger.error(f"[LIQUIDATION] Reduction of {risk.position_id} raised: {e}")
            return

        self.reductions_triggered += 1
        if not result.success:
            self._logger.error(f"[LIQUIDATION] Reduction of {risk.position_id} failed: {result.error}")
            return

        if fraction >= 1.0 and self.registry is not None:
            removed = self.registry.remove_all_for_position(risk.position_id)
            if removed:
                self._logger.info(f"[LIQUIDATION] Removed {removed} exit conditions of closed {risk.position_id}")

    def get_stats(self):
        stats = super().get_stats()
        stats.update({
            "leveraged_domains": [d.value for d in self.leveraged_domains],
            "reductions_triggered": self.reductions_triggered,
        })
        return stats
