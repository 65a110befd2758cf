"""
Position and exit-rule data models.

This module defines the position snapshot consumed from the external store,
the exit conditions attached to it, and the result records produced by the
monitors and the emergency reducer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List


class Domain(str, Enum):
    """Market domain a position lives in."""
    DLMM = "dlmm"              # Concentrated-liquidity pools (yield-bearing)
    PERPS = "perps"            # Perpetual futures (leveraged)
    POLYMARKET = "polymarket"  # Prediction-market shares
    SPOT = "spot"              # Spot token holdings


class PositionStatus(str, Enum):
    """Position lifecycle states as reported by the store."""
    OPEN = "open"
    CLOSED = "closed"


class PositionSide(str, Enum):
    """Position side (long or short)."""
    LONG = "long"
    SHORT = "short"


class ExitKind(str, Enum):
    """Kind of exit rule."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TIME_BASED = "time_based"
    LIQUIDATION_RISK = "liquidation_risk"
    TRAILING_STOP = "trailing_stop"


class TriggerDirection(str, Enum):
    """Side of the trigger price the mark must cross."""
    ABOVE = "above"
    BELOW = "below"


class RiskLevel(str, Enum):
    """Liquidation risk level for a leveraged position."""
    SAFE = "safe"
    WARNING = "warning"
    DANGER = "danger"
    CRITICAL = "critical"


class RecommendedAction(str, Enum):
    """Action recommended by the liquidation-risk classification."""
    NONE = "none"
    MONITOR = "monitor"
    REDUCE_25 = "reduce_25"
    REDUCE_50 = "reduce_50"
    CLOSE = "close"

    @property
    def reduce_fraction(self) -> float:
        """Fraction of the position to reduce (0 when no reduction)."""
        return {
            RecommendedAction.REDUCE_25: 0.25,
            RecommendedAction.REDUCE_50: 0.50,
            RecommendedAction.CLOSE: 1.0,
        }.get(self, 0.0)

    @property
    def requires_reduction(self) -> bool:
        return self.reduce_fraction > 0


def _parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp into a naive UTC datetime."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass
class Position:
    """
    A position as read from the external store.

    The store owns positions; this core only holds read-mostly copies.
    Leveraged positions carry side, size (USD notional), entry price and
    leverage; older records keep those in metadata, which ``from_dict``
    falls back to.
    """

    # ========================================================================
    # Identity
    # ========================================================================
    id: str
    domain: Domain
    target: str  # Pool address, market ID or ticker symbol

    # ========================================================================
    # Value
    # ========================================================================
    entry_value_usd: float
    current_value_usd: float
    status: PositionStatus = PositionStatus.OPEN

    # ========================================================================
    # Leveraged / priced details
    # ========================================================================
    side: PositionSide = PositionSide.LONG
    size: Optional[float] = None
    entry_price: Optional[float] = None
    current_price: Optional[float] = None
    leverage: float = 1.0

    # ========================================================================
    # Lifecycle
    # ========================================================================
    opened_at: datetime = field(default_factory=datetime.utcnow)
    closed_at: Optional[datetime] = None
    realized_pnl: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def size_usd(self) -> float:
        """USD notional of the position (falls back to entry value)."""
        if self.size:
            return self.size
        return self.entry_value_usd

    @property
    def cost_basis_usd(self) -> float:
        """Entry value of the part still held after partial reductions."""
        basis = self.metadata.get("cost_basis_usd")
        if basis is None:
            return self.entry_value_usd
        return float(basis)

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def to_dict(self) -> Dict[str, Any]:
        """Convert position to dictionary for serialization."""
        return {
            "id": self.id,
            "domain": self.domain.value,
            "target": self.target,
            "entry_value_usd": self.entry_value_usd,
            "current_value_usd": self.current_value_usd,
            "status": self.status.value,
            "side": self.side.value,
            "size": self.size,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "leverage": self.leverage,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "realized_pnl": self.realized_pnl,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        """
        Create Position from dictionary.

        Args:
            data: Dictionary representation of position (store row or cache entry)

        Returns:
            Position instance
        """
        metadata = dict(data.get("metadata") or {})

        side_raw = data.get("side") or metadata.get("side") or "long"
        side = side_raw if isinstance(side_raw, PositionSide) else PositionSide(str(side_raw).lower())

        size = data.get("size")
        if size is None:
            size = metadata.get("size_usd")
        entry_price = data.get("entry_price")
        if entry_price is None:
            entry_price = metadata.get("entry_price")
        current_price = data.get("current_price")
        if current_price is None:
            current_price = metadata.get("current_price")
        leverage = data.get("leverage")
        if leverage is None:
            leverage = metadata.get("leverage", 1.0)

        entry_value = float(data["entry_value_usd"])
        current_value = data.get("current_value_usd")

        return cls(
            id=data["id"],
            domain=Domain(data["domain"]),
            target=data["target"],
            entry_value_usd=entry_value,
            current_value_usd=float(current_value) if current_value is not None else entry_value,
            status=PositionStatus(data.get("status", "open")),
            side=side,
            size=float(size) if size is not None else None,
            entry_price=float(entry_price) if entry_price is not None else None,
            current_price=float(current_price) if current_price is not None else None,
            leverage=float(leverage),
            opened_at=_parse_datetime(data.get("opened_at")) or datetime.utcnow(),
            closed_at=_parse_datetime(data.get("closed_at")),
            realized_pnl=data.get("realized_pnl"),
            metadata=metadata,
        )


@dataclass
class ExitConditionDraft:
    """An exit rule extracted from free text, not yet registered."""
    kind: ExitKind
    trigger_price: float
    direction: TriggerDirection
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExitCondition:
    """
    A rule attached to one position.

    Exactly one kind-specific payload is populated: trigger price and
    direction (stop-loss, take-profit), trigger time (time-based), margin
    threshold (liquidation risk) or trailing percent (trailing stop, with
    its mutable high-water mark).
    """

    position_id: str
    domain: Domain
    kind: ExitKind
    id: str = ""

    trigger_price: Optional[float] = None
    direction: Optional[TriggerDirection] = None
    trigger_time: Optional[datetime] = None
    margin_threshold: Optional[float] = None
    trailing_percent: Optional[float] = None
    high_water_mark: Optional[float] = None

    active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    triggered_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """
        Check that the payload matches the kind.

        Raises:
            ValueError: If the kind's payload is missing or another kind's is set
        """
        payloads = {
            ExitKind.STOP_LOSS: self.trigger_price is not None,
            ExitKind.TAKE_PROFIT: self.trigger_price is not None,
            ExitKind.TIME_BASED: self.trigger_time is not None,
            ExitKind.LIQUIDATION_RISK: self.margin_threshold is not None,
            ExitKind.TRAILING_STOP: self.trailing_percent is not None,
        }
        if not payloads[self.kind]:
            raise ValueError(f"{self.kind.value} condition is missing its payload")

        populated = sum([
            self.trigger_price is not None,
            self.trigger_time is not None,
            self.margin_threshold is not None,
            self.trailing_percent is not None,
        ])
        if populated != 1:
            raise ValueError(f"{self.kind.value} condition must carry exactly one payload")

        if self.kind in (ExitKind.STOP_LOSS, ExitKind.TAKE_PROFIT) and self.direction is None:
            raise ValueError(f"{self.kind.value} condition requires a trigger direction")

        if self.kind == ExitKind.TRAILING_STOP and not 0 < self.trailing_percent < 1:
            raise ValueError("trailing_percent must be between 0 and 1")

    def deactivate(self, when: Optional[datetime] = None) -> bool:
        """
        Mark the condition as triggered.

        Returns:
            True on the first call, False if it was already inactive
        """
        if not self.active:
            return False
        self.active = False
        self.triggered_at = when or datetime.utcnow()
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "position_id": self.position_id,
            "domain": self.domain.value,
            "kind": self.kind.value,
            "trigger_price": self.trigger_price,
            "direction": self.direction.value if self.direction else None,
            "trigger_time": self.trigger_time.isoformat() if self.trigger_time else None,
            "margin_threshold": self.margin_threshold,
            "trailing_percent": self.trailing_percent,
            "high_water_mark": self.high_water_mark,
            "active": self.active,
            "created_at": self.created_at.isoformat(),
            "triggered_at": self.triggered_at.isoformat() if self.triggered_at else None,
            "metadata": self.metadata,
        }


@dataclass
class PriceData:
    """Current pricing for one position, produced by the aggregator."""
    position_id: str
    price: float
    current_value_usd: float
    margin_ratio: Optional[float] = None
    stale: bool = False  # True when the lookup failed and last-known value was used


@dataclass
class ExecutedExit:
    """Result of executing a triggered exit condition."""
    exit_condition: ExitCondition
    position_id: str
    domain: Domain
    execution_time: datetime
    reason: str
    success: bool
    execution_price: Optional[float] = None
    error: Optional[str] = None


@dataclass
class LiquidationRiskResult:
    """Liquidation risk for one leveraged position. Recomputed every tick."""
    position_id: str
    symbol: str
    risk_level: RiskLevel
    margin_ratio: float
    liquidation_price: float
    current_price: float
    distance_to_liquidation_pct: float
    recommended_action: RecommendedAction


@dataclass
class EmergencyReduceResult:
    """Outcome of a partial or full position reduction."""
    position_id: str
    original_size: float
    reduced_by: float
    new_size: float
    reason: str
    success: bool
    error: Optional[str] = None
    duplicate: bool = False
    fill_price: Optional[float] = None
    order_id: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass
class PartialCloseRecord:
    """One partial close in a position's history."""
    timestamp: datetime
    proportion: float  # 0-1
    realized_value_usd: float
    realized_pnl_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "proportion": self.proportion,
            "realized_value_usd": self.realized_value_usd,
            "realized_pnl_usd": self.realized_pnl_usd,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartialCloseRecord":
        return cls(
            timestamp=_parse_datetime(data["timestamp"]),
            proportion=float(data["proportion"]),
            realized_value_usd=float(data["realized_value_usd"]),
            realized_pnl_usd=float(data["realized_pnl_usd"]),
        )


@dataclass
class CachedPositionEntry:
    """A position snapshot plus its partial-close history."""
    position: Position
    partial_history: List[PartialCloseRecord] = field(default_factory=list)
    closed: bool = False
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position.to_dict(),
            "partial_history": [record.to_dict() for record in self.partial_history],
            "closed": self.closed,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedPositionEntry":
        return cls(
            position=Position.from_dict(data["position"]),
            partial_history=[
                PartialCloseRecord.from_dict(record)
                for record in data.get("partial_history", [])
            ],
            closed=bool(data.get("closed", False)),
            updated_at=_parse_datetime(data.get("updated_at")) or datetime.utcnow(),
        )
