"""
Shared fixtures and collaborator fakes for the risk-core tests.
"""

import asyncio
import copy
from datetime import datetime
from typing import Dict, List, Optional, Set

import pytest

from position_guard.errors import MarketDataUnavailable, TransientFetchFailure
from position_guard.idempotency import DuckDBIdempotencyStore, IdempotencyGuard
from position_guard.interfaces import ExecutionAdapter, Fill, MarketDataSource, PositionStore
from position_guard.position.models import Domain, Position, PositionSide, PositionStatus


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePositionStore(PositionStore):
    """In-memory position store recording every write."""

    def __init__(self, positions: Optional[List[Position]] = None):
        self.positions: Dict[str, Position] = {p.id: p for p in positions or []}
        self.closed: List[dict] = []
        self.updates: List[dict] = []
        self.failing_domains: Set[Domain] = set()
        self.fail_writes = False

    def add(self, position: Position) -> Position:
        self.positions[position.id] = position
        return position

    async def get_open_positions(self, domain: Domain) -> List[Position]:
        if domain in self.failing_domains:
            raise TransientFetchFailure(f"store unavailable for {domain.value}")
        return [
            copy.deepcopy(p) for p in self.positions.values()
            if p.domain == domain and p.status == PositionStatus.OPEN
        ]

    async def close_position(self, domain, position_id, current_value_usd, realized_pnl=None, metadata=None):
        if self.fail_writes:
            raise IOError("store write failed")
        self.closed.append({
            "domain": domain,
            "position_id": position_id,
            "current_value_usd": current_value_usd,
            "realized_pnl": realized_pnl,
            "metadata": metadata,
        })
        position = self.positions[position_id]
        position.status = PositionStatus.CLOSED
        position.current_value_usd = current_value_usd
        position.realized_pnl = realized_pnl

    async def update_position(self, position_id, current_value_usd=None, current_price=None, metadata=None):
        if self.fail_writes:
            raise IOError("store write failed")
        self.updates.append({
            "position_id": position_id,
            "current_value_usd": current_value_usd,
            "current_price": current_price,
            "metadata": metadata,
        })
        position = self.positions.get(position_id)
        if position is None:
            return
        if current_value_usd is not None:
            position.current_value_usd = current_value_usd
        if current_price is not None:
            position.current_price = current_price
        if metadata is not None:
            position.metadata = metadata
            if "size_usd" in metadata:
                position.size = metadata["size_usd"]


class FakeMarketData(MarketDataSource):
    """Price feed backed by dictionaries."""

    def __init__(self, prices: Optional[Dict[str, float]] = None, yields: Optional[Dict[str, float]] = None):
        self.prices = dict(prices or {})
        self.yields = dict(yields or {})
        self.failing: Set[str] = set()
        self.unavailable = False
        self.calls: List[str] = []

    async def get_price(self, target: str) -> float:
        self.calls.append(target)
        if self.unavailable:
            raise MarketDataUnavailable("feed down")
        if target in self.failing or target not in self.prices:
            raise TransientFetchFailure(f"no price for {target}")
        return self.prices[target]

    async def get_annualized_yield(self, target: str) -> float:
        if self.unavailable:
            raise MarketDataUnavailable("feed down")
        if target in self.failing:
            raise TransientFetchFailure(f"no yield for {target}")
        return self.yields[target]


class FakeExecutionAdapter(ExecutionAdapter):
    """Execution adapter counting calls; optionally slow or failing."""

    def __init__(self, fill_price: float = 100.0, delay: float = 0.0, error: Optional[Exception] = None):
        self.fill_price = fill_price
        self.delay = delay
        self.error = error
        self.calls: List[tuple] = []

    async def reduce_position(self, symbol: str, side: PositionSide, usd_amount: float) -> Fill:
        self.calls.append((symbol, side, usd_amount))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Fill(fill_price=self.fill_price, order_id=f"order-{len(self.calls)}", filled_usd=usd_amount)


# ============================================================================
# Factories
# ============================================================================

def make_perp(
    position_id: str = "pos-1",
    symbol: str = "SOL-PERP",
    entry_price: float = 100.0,
    size: float = 100.0,
    leverage: float = 5.0,
    side: PositionSide = PositionSide.LONG,
    current_price: Optional[float] = None
) -> Position:
    return Position(
        id=position_id,
        domain=Domain.PERPS,
        target=symbol,
        entry_value_usd=size,
        current_value_usd=size,
        side=side,
        size=size,
        entry_price=entry_price,
        current_price=current_price,
        leverage=leverage,
        opened_at=datetime(2024, 1, 1),
    )


def make_spot(
    position_id: str = "spot-1",
    symbol: str = "SOL",
    entry_price: float = 100.0,
    entry_value: float = 1000.0,
    current_price: Optional[float] = None
) -> Position:
    return Position(
        id=position_id,
        domain=Domain.SPOT,
        target=symbol,
        entry_value_usd=entry_value,
        current_value_usd=entry_value,
        entry_price=entry_price,
        current_price=current_price,
        opened_at=datetime(2024, 1, 1),
    )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def idempotency_store():
    store = DuckDBIdempotencyStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def guard(idempotency_store, clock):
    return IdempotencyGuard(idempotency_store, clock=clock)


@pytest.fixture
def store():
    return FakePositionStore()


@pytest.fixture
def perps_feed():
    return FakeMarketData()
