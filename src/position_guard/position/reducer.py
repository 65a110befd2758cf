"""
Emergency Reducer.

Executes partial or full position reductions, always through the
idempotency guard. In simulated mode the reduction is a store update only;
in live mode the domain's execution adapter places the order first and the
store is updated afterwards.
"""

import logging
from typing import Any, Dict, Optional

from position_guard.core.events import EventBus, EmergencyReduceExecuted
from position_guard.errors import ConfigurationFailure, PersistenceFailure, PositionNotFound
from position_guard.idempotency.guard import IdempotencyGuard, STATUS_FAILED, STATUS_SUCCESS
from position_guard.interfaces import ExecutionAdapter, Fill, PositionStore
from position_guard.position.cache import PositionSnapshotCache
from position_guard.position.models import Domain, EmergencyReduceResult, Position
from position_guard.utils.logger import get_risk_logger


logger = logging.getLogger(__name__)


def reduce_action(reduce_percent: float) -> str:
    """Idempotency action name for a reduction: 'close' or 'reduce_<pct>'."""
    if reduce_percent >= 1.0:
        return "close"
    return f"reduce_{round(reduce_percent * 100)}"


class EmergencyReducer:
    """
    Reduces or closes positions in response to detected risk.

    Failures are reported in the returned EmergencyReduceResult, never raised:
    - PositionNotFound: not retried, logged
    - ConfigurationFailure: recorded as failed, logged at error for an operator
    - order rejection / transient errors: reservation released so a later tick can retry
    """

    def __init__(
        self,
        store: PositionStore,
        guard: IdempotencyGuard,
        execution_adapters: Optional[Dict[Domain, ExecutionAdapter]] = None,
        cache: Optional[PositionSnapshotCache] = None,
        event_bus: Optional[EventBus] = None,
        paper_trading: bool = True
    ):
        """
        Initialize reducer.

        Args:
            store: Position store
            guard: Idempotency guard wrapping every reduction
            execution_adapters: Execution adapter per domain (live mode)
            cache: Optional snapshot cache updated after each reduction
            event_bus: Optional event bus for EmergencyReduceExecuted events
            paper_trading: Simulated mode (store updates only)
        """
        self.store = store
        self.guard = guard
        self.execution_adapters: Dict[Domain, ExecutionAdapter] = {
            Domain(domain): adapter for domain, adapter in (execution_adapters or {}).items()
        }
        self.cache = cache
        self.event_bus = event_bus
        self.paper_trading = paper_trading
        self.risk_logger = get_risk_logger(f"{__name__}.EmergencyReducer")
        self.logger = logging.getLogger(f"{__name__}.EmergencyReducer")

        # Stats
        self.reductions_executed = 0
        self.reductions_failed = 0
        self.duplicates_suppressed = 0

    async def _resolve_position(self, position_id: str, domain: Domain) -> Position:
        positions = await self.store.get_open_positions(domain)
        for position in positions:
            if position.id == position_id:
                return position
        raise PositionNotFound(position_id, domain.value)

    async def reduce(
        self,
        position_id: str,
        domain: Domain,
        reduce_percent: float,
        reason: str
    ) -> EmergencyReduceResult:
        """
        Reduce a position by a fraction of its size.

        Args:
            position_id: Position to reduce
            domain: Domain of the position
            reduce_percent: Fraction to reduce (0-1], 1.0 closes the position
            reason: Human-readable reason, stored with the reduction

        Returns:
            EmergencyReduceResult

        Raises:
            ValueError: If reduce_percent is not positive
        """
        if reduce_percent <= 0:
            raise ValueError("reduce_percent must be positive")
        reduce_percent = min(reduce_percent, 1.0)
        domain = Domain(domain)

        try:
            position = await self._resolve_position(position_id, domain)
        except PositionNotFound as e:
            self.logger.warning(f"[EMERGENCY] {e}")
            self.reductions_failed += 1
            return EmergencyReduceResult(
                position_id=position_id,
                original_size=0.0,
                reduced_by=0.0,
                new_size=0.0,
                reason=reason,
                success=False,
                error=str(e),
            )
        except Exception as e:
            self.logger.error(f"[EMERGENCY] Failed to load position {position_id}: {e}")
            self.reductions_failed += 1
            return EmergencyReduceResult(
                position_id=position_id,
                original_size=0.0,
                reduced_by=0.0,
                new_size=0.0,
                reason=reason,
                success=False,
                error=str(e),
            )

        original_size = position.size_usd
        reduce_amount = original_size * reduce_percent
        new_size = original_size - reduce_amount

        reservation = await self.guard.check_and_reserve(
            domain.value,
            reduce_action(reduce_percent),
            position.id,
            reduce_amount
        )
        if reservation.is_duplicate:
            self.duplicates_suppressed += 1
            previous = reservation.previous_result if isinstance(reservation.previous_result, dict) else {}
            previous_failed = previous.get("status") == STATUS_FAILED
            self.logger.info(
                f"[EMERGENCY] Reduction of {position_id} already "
                f"{'attempted and failed' if previous_failed else 'executed'} ({reservation.key})"
            )
            return EmergencyReduceResult(
                position_id=position_id,
                original_size=original_size,
                reduced_by=0.0,
                new_size=original_size,
                reason=reason,
                success=not previous_failed,
                error=previous.get("error") if previous_failed else None,
                duplicate=True,
                idempotency_key=reservation.key,
            )

        self.risk_logger.reduction_event(position_id, domain.value, reduce_percent, reason)

        fill: Optional[Fill] = None
        try:
            if self.paper_trading:
                await self._apply_to_store(position, reduce_percent, reason, fill)
            else:
                fill = await self._execute_live(position, reduce_amount)
                try:
                    await self._apply_to_store(position, reduce_percent, reason, fill)
                except Exception as e:
                    # Order already filled
                    failure = PersistenceFailure(f"store update after fill failed for {position_id}: {e}")
                    self.logger.error(f"[EMERGENCY] {failure}")

        except ConfigurationFailure as e:
            self.reductions_failed += 1
            self.logger.error(
                f"[EMERGENCY] Configuration failure reducing {position_id}, operator action required: {e}"
            )
            await self.guard.update_result(reservation.key, {"status": STATUS_FAILED, "error": str(e)})
            return self._failed(position, original_size, reason, e, reservation.key)

        except Exception as e:
            self.reductions_failed += 1
            self.logger.error(f"[EMERGENCY] Reduction of {position_id} failed: {e}")
            await self.guard.remove(reservation.key)
            return self._failed(position, original_size, reason, e, reservation.key)

        await self.guard.update_result(reservation.key, {
            "status": STATUS_SUCCESS,
            "reduced_by": reduce_amount,
            "new_size": new_size,
            "fill_price": fill.fill_price if fill else None,
            "order_id": fill.order_id if fill else None,
            "simulated": self.paper_trading,
        })
        self.reductions_executed += 1

        self.logger.info(
            f"[EMERGENCY] {'Closed' if reduce_percent >= 1.0 else 'Reduced'} {position_id}: "
            f"${original_size:.2f} -> ${new_size:.2f}"
            f"{' (simulated)' if self.paper_trading else ''}"
        )

        if self.event_bus:
            await self.event_bus.publish(EmergencyReduceExecuted(
                position_id=position_id,
                domain=domain.value,
                reduced_by=reduce_amount,
                original_size=original_size,
                new_size=new_size,
                reason=reason,
                simulated=self.paper_trading,
                fill_price=fill.fill_price if fill else None,
            ))

        return EmergencyReduceResult(
            position_id=position_id,
            original_size=original_size,
            reduced_by=reduce_amount,
            new_size=new_size,
            reason=reason,
            success=True,
            fill_price=fill.fill_price if fill else None,
            order_id=fill.order_id if fill else None,
            idempotency_key=reservation.key,
        )

    async def _execute_live(self, position: Position, usd_amount: float) -> Fill:
        adapter = self.execution_adapters.get(position.domain)
        if adapter is None:
            raise ConfigurationFailure(f"No execution adapter configured for {position.domain.value}")
        return await adapter.reduce_position(position.target, position.side, usd_amount)

    async def _apply_to_store(
        self,
        position: Position,
        reduce_percent: float,
        reason: str,
        fill: Optional[Fill]
    ) -> None:
        """Write the reduction to the store and the snapshot cache."""
        current_value = position.current_value_usd
        execution: Dict[str, Any] = {"reason": reason, "simulated": fill is None}
        if fill is not None:
            execution.update({"fill_price": fill.fill_price, "order_id": fill.order_id})

        cost_basis = position.cost_basis_usd

        if reduce_percent >= 1.0:
            realized_pnl = current_value - cost_basis
            await self.store.close_position(
                position.domain,
                position.id,
                current_value_usd=current_value,
                realized_pnl=realized_pnl,
                metadata={"close_reason": reason, "execution": execution},
            )
            if self.cache is not None:
                self.cache.track(position)
                self.cache.mark_closed(position.domain, position.id, current_value, realized_pnl)
            return

        remaining = 1 - reduce_percent
        realized_value = current_value * reduce_percent
        realized_pnl = (current_value - cost_basis) * reduce_percent

        metadata = {
            **position.metadata,
            "size_usd": position.size_usd * remaining,
            "cost_basis_usd": cost_basis * remaining,
            "last_reduction": {"proportion": reduce_percent, **execution},
        }
        for held in ("quantity", "shares"):
            if metadata.get(held) is not None:
                metadata[held] = float(metadata[held]) * remaining

        await self.store.update_position(
            position.id,
            current_value_usd=current_value - realized_value,
            metadata=metadata,
        )
        if self.cache is not None:
            self.cache.track(position)
            self.cache.record_partial_close(
                position.domain,
                position.id,
                reduce_percent,
                realized_value,
                realized_pnl,
            )

    def _failed(
        self,
        position: Position,
        original_size: float,
        reason: str,
        error: Exception,
        key: str
    ) -> EmergencyReduceResult:
        return EmergencyReduceResult(
            position_id=position.id,
            original_size=original_size,
            reduced_by=0.0,
            new_size=original_size,
            reason=reason,
            success=False,
            error=str(error),
            idempotency_key=key,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "paper_trading": self.paper_trading,
            "reductions_executed": self.reductions_executed,
            "reductions_failed": self.reductions_failed,
            "duplicates_suppressed": self.duplicates_suppressed,
        }
