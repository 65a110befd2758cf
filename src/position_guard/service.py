"""
Risk core service.

Owns every piece of risk-core state (exit registry, snapshot cache,
idempotency guard) and the three scheduled sweeps. Constructed once at
process start and passed to callers.

Usage:
    service = RiskCoreService.from_config(store, market_data={Domain.PERPS: feed})
    await service.start()
    service.register_safety_exits("pos-1", Domain.PERPS, 100.0, "stop loss at $90")
    ...
    await service.stop()
"""

import logging
from typing import Any, Dict, List, Optional

from position_guard.config.loader import ConfigLoader
from position_guard.config.settings import AppConfig
from position_guard.core.events import EventBus
from position_guard.idempotency.guard import IdempotencyGuard, IdempotencyCleanupJob
from position_guard.idempotency.storage import DuckDBIdempotencyStore, IdempotencyStore
from position_guard.interfaces import ExecutionAdapter, MarketDataSource, PositionStore
from position_guard.position.cache import PositionSnapshotCache
from position_guard.position.exit_conditions import (
    ExitConditionRegistry,
    ReasoningParser,
    SafetyExitPolicy,
)
from position_guard.position.models import (
    Domain,
    EmergencyReduceResult,
    ExecutedExit,
    LiquidationRiskResult,
    PositionSide,
)
from position_guard.position.monitor import LiquidationRiskMonitor, PositionMonitor
from position_guard.position.pricing import PriceRiskAggregator
from position_guard.position.reducer import EmergencyReducer
from position_guard.utils.logger import setup_logging


logger = logging.getLogger(__name__)


class RiskCoreService:
    """Position risk-monitoring and safe-execution core."""

    def __init__(
        self,
        store: PositionStore,
        market_data: Optional[Dict[Domain, MarketDataSource]] = None,
        execution_adapters: Optional[Dict[Domain, ExecutionAdapter]] = None,
        config: Optional[AppConfig] = None,
        event_bus: Optional[EventBus] = None,
        idempotency_store: Optional[IdempotencyStore] = None,
        cache: Optional[PositionSnapshotCache] = None,
        parser: Optional[ReasoningParser] = None
    ):
        """
        Build the core from collaborators and configuration.

        Args:
            store: Position store
            market_data: Market data source per domain
            execution_adapters: Execution adapter per domain (live mode)
            config: Application configuration (defaults if omitted)
            event_bus: Event bus (a private one is created if omitted)
            idempotency_store: Record storage (DuckDB at the configured path if omitted)
            cache: Snapshot cache (JSON file at the configured path if omitted)
            parser: Reasoning parser (regex parser if omitted)
        """
        self.config = config or AppConfig()
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.logger = logging.getLogger(f"{__name__}.RiskCoreService")

        safety = self.config.safety_exits
        monitor_cfg = self.config.monitor
        idem = self.config.idempotency

        self.registry = ExitConditionRegistry(parser)
        self.safety_policy = SafetyExitPolicy(
            self.registry,
            leveraged_domains=safety.leveraged_domains,
            liquidation_margin_threshold=safety.liquidation_margin_threshold,
            leveraged_stop_loss_pct=safety.leveraged_stop_loss_pct,
            default_stop_loss_pct=safety.default_stop_loss_pct,
        )

        if cache is None:
            cache = PositionSnapshotCache(str(self.config.cache.cache_file))
        self.cache = cache

        self.idempotency_store = idempotency_store or DuckDBIdempotencyStore(idem.database_path)
        self.guard = IdempotencyGuard(
            self.idempotency_store,
            ttl_seconds=idem.ttl_hours * 3600,
            failed_retry_after_seconds=idem.failed_retry_after_minutes * 60,
            amount_bucket_usd=idem.amount_bucket_usd,
        )

        self.aggregator = PriceRiskAggregator(
            market_data,
            leveraged_domains=safety.leveraged_domains,
            maintenance_margin=self.config.liquidation.maintenance_margin,
        )

        self.reducer = EmergencyReducer(
            store,
            self.guard,
            execution_adapters=execution_adapters,
            cache=self.cache,
            event_bus=self.event_bus,
            paper_trading=self.config.execution.paper_trading,
        )

        self.exit_monitor = PositionMonitor(
            self.registry,
            store,
            self.aggregator,
            self.reducer,
            cache=self.cache,
            event_bus=self.event_bus,
            interval_seconds=monitor_cfg.exit_check_interval_seconds,
            persist_marks=monitor_cfg.persist_marks,
            run_immediately=monitor_cfg.run_immediately,
        )
        self.liquidation_monitor = LiquidationRiskMonitor(
            store,
            self.aggregator,
            self.reducer,
            leveraged_domains=safety.leveraged_domains,
            registry=self.registry,
            event_bus=self.event_bus,
            interval_seconds=monitor_cfg.liquidation_check_interval_seconds,
            run_immediately=monitor_cfg.run_immediately,
        )
        self.cleanup_job = IdempotencyCleanupJob(
            self.guard,
            interval_seconds=idem.cleanup_interval_seconds,
            run_immediately=monitor_cfg.run_immediately,
        )

    @classmethod
    def from_config(
        cls,
        store: PositionStore,
        market_data: Optional[Dict[Domain, MarketDataSource]] = None,
        execution_adapters: Optional[Dict[Domain, ExecutionAdapter]] = None,
        config_loader: Optional[ConfigLoader] = None,
        configure_logging: bool = False,
        **kwargs
    ) -> "RiskCoreService":
        """
        Build the core from config.yaml and environment overrides.

        With configure_logging, the root logger is set up from the
        system section before anything else is built.
        """
        loader = config_loader or ConfigLoader()
        config = loader.load_app_config()
        if configure_logging:
            setup_logging(
                log_level=config.system.log_level,
                log_file=config.system.log_file,
                json_format=config.system.json_logs,
            )
        return cls(
            store,
            market_data=market_data,
            execution_adapters=execution_adapters,
            config=config,
            **kwargs
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @property
    def sweeps(self):
        return [self.exit_monitor, self.liquidation_monitor, self.cleanup_job]

    async def start(self) -> None:
        """Start all sweeps. Safe to call when already running."""
        for sweep in self.sweeps:
            await sweep.start()
        mode = "SIMULATED" if self.reducer.paper_trading else "LIVE"
        self.logger.info(f"Risk core started ({mode} execution)")

    async def stop(self) -> None:
        """Stop all sweeps, letting in-flight ticks finish. Safe to call repeatedly."""
        for sweep in self.sweeps:
            await sweep.stop()
        self.logger.info("Risk core stopped")

    async def close(self) -> None:
        """Stop sweeps and release the idempotency store."""
        await self.stop()
        if isinstance(self.idempotency_store, DuckDBIdempotencyStore):
            self.idempotency_store.close()

    # ========================================================================
    # Caller API
    # ========================================================================

    def register_safety_exits(
        self,
        position_id: str,
        domain: Domain,
        entry_price: float,
        reasoning: Optional[str] = None,
        side: PositionSide = PositionSide.LONG
    ) -> List[str]:
        """
        Register exit rules for a newly opened position.

        Args:
            position_id: Position id
            domain: Domain of the position
            entry_price: Entry price
            reasoning: Optional free-text rationale to parse for a stop-loss/take-profit
            side: Position side

        Returns:
            Ids of the registered exit conditions
        """
        return self.safety_policy.apply(position_id, domain, entry_price, reasoning, side)

    def remove_exits_for_position(self, position_id: str) -> int:
        """Remove all exit conditions of a position that closed through any path."""
        return self.registry.remove_all_for_position(position_id)

    async def check_all_exits(self) -> List[ExecutedExit]:
        """Run one exit-condition pass now, outside the timer."""
        return await self.exit_monitor.check_all_exits()

    async def check_all_perps_liquidation_risk(self) -> List[LiquidationRiskResult]:
        """Run one liquidation-risk pass now, outside the timer."""
        return await self.liquidation_monitor.check_all_perps_liquidation_risk()

    async def emergency_reduce(
        self,
        position_id: str,
        domain: Domain,
        reduce_percent: float,
        reason: str
    ) -> EmergencyReduceResult:
        """Reduce a position directly (manual intervention). A full close drops its exit rules."""
        result = await self.reducer.reduce(position_id, domain, reduce_percent, reason)
        if result.success and reduce_percent >= 1.0:
            self.remove_exits_for_position(position_id)
        return result

    # ========================================================================
    # Health
    # ========================================================================

    async def health_check(self) -> Dict[str, Any]:
        components = [await sweep.health_check() for sweep in self.sweeps]
        statuses = {c["status"] for c in components}
        if statuses == {"healthy"}:
            status = "healthy"
        elif "degraded" in statuses:
            status = "degraded"
        else:
            status = "stopped" if statuses == {"stopped"} else "degraded"
        return {"status": status, "components": components}

    async def get_stats(self) -> Dict[str, Any]:
        return {
            "exit_monitor": self.exit_monitor.get_stats(),
            "liquidation_monitor": self.liquidation_monitor.get_stats(),
            "cleanup": {**self.cleanup_job.get_stats(), "total_deleted": self.cleanup_job.total_deleted},
            "reducer": self.reducer.get_stats(),
            "idempotency": await self.guard.get_stats(),
            "registered_exits": len(self.registry),
            "cached_positions": len(self.cache),
        }
