"""
Exit Condition Registry.

In-memory catalog of exit rules per position, the free-text reasoning
parser that extracts stop-loss/take-profit hints, and the safety-default
policy applied to every newly opened position.
"""

import logging
import re
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Iterable

from position_guard.position.models import (
    Domain,
    ExitCondition,
    ExitConditionDraft,
    ExitKind,
    PositionSide,
    TriggerDirection,
)


logger = logging.getLogger(__name__)


# ============================================================================
# Registry
# ============================================================================

class ExitConditionRegistry:
    """
    Catalog of exit conditions keyed by condition id.

    Conditions are never deleted on trigger, only marked inactive; they are
    removed when their position closes.
    """

    def __init__(self, parser: Optional["ReasoningParser"] = None):
        self._conditions: Dict[str, ExitCondition] = {}
        self.parser = parser or RegexReasoningParser()
        self.logger = logging.getLogger(f"{__name__}.ExitConditionRegistry")

    @staticmethod
    def _new_id() -> str:
        return f"exit-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"

    def register(self, condition: ExitCondition) -> str:
        """
        Register an exit condition for monitoring.

        Args:
            condition: Condition to register (id, active and created_at are assigned)

        Returns:
            The condition id

        Raises:
            ValueError: If the condition payload does not match its kind
        """
        condition.domain = Domain(condition.domain)
        condition.validate()

        condition.id = self._new_id()
        condition.active = True
        condition.created_at = datetime.utcnow()
        condition.triggered_at = None

        self._conditions[condition.id] = condition
        self.logger.info(
            f"Registered {condition.kind.value} for position {condition.position_id} ({condition.id})"
        )
        return condition.id

    def register_draft(self, position_id: str, domain: Domain, draft: ExitConditionDraft) -> str:
        """Register a parsed draft as a full condition."""
        return self.register(ExitCondition(
            position_id=position_id,
            domain=domain,
            kind=draft.kind,
            trigger_price=draft.trigger_price,
            direction=draft.direction,
            metadata=dict(draft.metadata),
        ))

    def remove(self, exit_id: str) -> bool:
        """Remove an exit condition. Returns True if it existed."""
        removed = self._conditions.pop(exit_id, None) is not None
        if removed:
            self.logger.info(f"Removed exit condition {exit_id}")
        return removed

    def remove_all_for_position(self, position_id: str) -> int:
        """Remove all exit conditions for a position. Returns the count."""
        ids = [cid for cid, c in self._conditions.items() if c.position_id == position_id]
        for cid in ids:
            del self._conditions[cid]
        if ids:
            self.logger.info(f"Removed {len(ids)} exit conditions for position {position_id}")
        return len(ids)

    def get(self, exit_id: str) -> Optional[ExitCondition]:
        return self._conditions.get(exit_id)

    def parse_exit_from_reasoning(
        self,
        reasoning: str,
        entry_price: float,
        side: PositionSide = PositionSide.LONG
    ) -> Optional[ExitConditionDraft]:
        """Extract a stop-loss/take-profit draft from free text, without registering it."""
        return self.parser.parse(reasoning, entry_price, side)

    def list_active(self) -> List[ExitCondition]:
        """Get all active exit conditions, in registration order."""
        return [c for c in self._conditions.values() if c.active]

    def list_for_position(self, position_id: str) -> List[ExitCondition]:
        """Get all exit conditions (active or not) for a position."""
        return [c for c in self._conditions.values() if c.position_id == position_id]

    def __len__(self) -> int:
        return len(self._conditions)


# ============================================================================
# Reasoning Parser
# ============================================================================

class ReasoningParser(ABC):
    """Extracts at most one exit rule from free-text rationale."""

    @abstractmethod
    def parse(
        self,
        reasoning: str,
        entry_price: float,
        side: PositionSide = PositionSide.LONG
    ) -> Optional[ExitConditionDraft]:
        """
        Parse an exit rule.

        Args:
            reasoning: Free-text rationale
            entry_price: Entry price, used for percentage phrasing
            side: Position side; shorts mirror the trigger directions

        Returns:
            A draft, or None when nothing unambiguous matched
        """
        pass


# A number not followed by a percent sign (otherwise "stop loss at 5%"
# would read as an absolute price of 5).
_PRICE = r"\$?([\d,]+(?:\.\d+)?)(?![\d,.]*\s*%)"

_STOP_LOSS_PATTERNS = [
    re.compile(r"stop[\s-]*loss\s*(?:at|@|:)?\s*" + _PRICE, re.IGNORECASE),
    re.compile(r"\bsl\s*(?:at|@|:)?\s*" + _PRICE, re.IGNORECASE),
    re.compile(r"exit\s*if\s*(?:price\s*)?(?:drops?|falls?)\s*(?:below|under)\s*" + _PRICE, re.IGNORECASE),
]

_TAKE_PROFIT_PATTERNS = [
    re.compile(r"take[\s-]*profit\s*(?:at|@|:)?\s*" + _PRICE, re.IGNORECASE),
    re.compile(r"\btp\s*(?:at|@|:)?\s*" + _PRICE, re.IGNORECASE),
    re.compile(r"exit\s*if\s*(?:price\s*)?(?:rises?|reaches?)\s*(?:above|over)?\s*" + _PRICE, re.IGNORECASE),
    re.compile(r"target\s*(?:price|:)?\s*" + _PRICE, re.IGNORECASE),
]

_PERCENT_STOP_PATTERNS = [
    re.compile(r"stop[\s-]*(?:loss)?\s*(?:at|@|:)?\s*(\d+(?:\.\d+)?)\s*%", re.IGNORECASE),
    re.compile(r"risk(?:ing)?\s*(\d+(?:\.\d+)?)\s*%", re.IGNORECASE),
]


def _to_float(raw: str) -> Optional[float]:
    try:
        return float(raw.replace(",", ""))
    except ValueError:
        return None


class RegexReasoningParser(ReasoningParser):
    """
    Prioritized pattern matching.

    Absolute-price stop-loss phrasing first, then absolute take-profit,
    then percentage-of-entry stop-loss. Only the first match is used.
    """

    def parse(
        self,
        reasoning: str,
        entry_price: float,
        side: PositionSide = PositionSide.LONG
    ) -> Optional[ExitConditionDraft]:
        if not reasoning:
            return None

        is_short = side == PositionSide.SHORT
        stop_direction = TriggerDirection.ABOVE if is_short else TriggerDirection.BELOW
        profit_direction = TriggerDirection.BELOW if is_short else TriggerDirection.ABOVE

        for kind, patterns, direction in (
            (ExitKind.STOP_LOSS, _STOP_LOSS_PATTERNS, stop_direction),
            (ExitKind.TAKE_PROFIT, _TAKE_PROFIT_PATTERNS, profit_direction),
        ):
            for pattern in patterns:
                match = pattern.search(reasoning)
                if not match:
                    continue
                price = _to_float(match.group(1))
                if price is None or price <= 0:
                    continue
                return ExitConditionDraft(
                    kind=kind,
                    trigger_price=price,
                    direction=direction,
                    metadata={"parsed_from": match.group(0).strip()},
                )

        if entry_price and entry_price > 0:
            for pattern in _PERCENT_STOP_PATTERNS:
                match = pattern.search(reasoning)
                if not match:
                    continue
                percent = float(match.group(1)) / 100
                if not 0 < percent < 1:
                    continue
                factor = (1 + percent) if is_short else (1 - percent)
                return ExitConditionDraft(
                    kind=ExitKind.STOP_LOSS,
                    trigger_price=entry_price * factor,
                    direction=stop_direction,
                    metadata={"parsed_from_percent": percent},
                )

        return None


# ============================================================================
# Safety Defaults
# ============================================================================

class SafetyExitPolicy:
    """
    Exit rules every newly opened position receives, in order:

    1. any rule parsed from the opening rationale
    2. for leveraged positions, a liquidation_risk rule at a fixed margin threshold
    3. if no stop-loss exists yet, a percentage stop-loss (tighter when leveraged)
    """

    def __init__(
        self,
        registry: ExitConditionRegistry,
        parser: Optional[ReasoningParser] = None,
        leveraged_domains: Iterable[str] = ("perps",),
        liquidation_margin_threshold: float = 0.25,
        leveraged_stop_loss_pct: float = 0.05,
        default_stop_loss_pct: float = 0.15
    ):
        self.registry = registry
        self.parser = parser or registry.parser
        self.leveraged_domains = {Domain(d) for d in leveraged_domains}
        self.liquidation_margin_threshold = liquidation_margin_threshold
        self.leveraged_stop_loss_pct = leveraged_stop_loss_pct
        self.default_stop_loss_pct = default_stop_loss_pct
        self.logger = logging.getLogger(f"{__name__}.SafetyExitPolicy")

    def is_leveraged(self, domain: Domain) -> bool:
        return Domain(domain) in self.leveraged_domains

    def apply(
        self,
        position_id: str,
        domain: Domain,
        entry_price: float,
        reasoning: Optional[str] = None,
        side: PositionSide = PositionSide.LONG
    ) -> List[str]:
        """
        Register safety exits for a newly opened position.

        Returns:
            Ids of the registered conditions, in registration order
        """
        domain = Domain(domain)
        exit_ids: List[str] = []
        has_stop_loss = False

        if reasoning:
            draft = self.parser.parse(reasoning, entry_price, side)
            if draft is not None:
                exit_ids.append(self.registry.register_draft(position_id, domain, draft))
                has_stop_loss = draft.kind == ExitKind.STOP_LOSS

        leveraged = self.is_leveraged(domain)

        if leveraged:
            exit_ids.append(self.registry.register(ExitCondition(
                position_id=position_id,
                domain=domain,
                kind=ExitKind.LIQUIDATION_RISK,
                margin_threshold=self.liquidation_margin_threshold,
                metadata={"auto_generated": True},
            )))

        if not has_stop_loss and entry_price and entry_price > 0:
            stop_pct = self.leveraged_stop_loss_pct if leveraged else self.default_stop_loss_pct
            is_short = side == PositionSide.SHORT
            exit_ids.append(self.registry.register(ExitCondition(
                position_id=position_id,
                domain=domain,
                kind=ExitKind.STOP_LOSS,
                trigger_price=entry_price * ((1 + stop_pct) if is_short else (1 - stop_pct)),
                direction=TriggerDirection.ABOVE if is_short else TriggerDirection.BELOW,
                metadata={"auto_generated": True, "default_stop_percent": stop_pct},
            )))
            self.logger.info(
                f"Auto-registered {stop_pct * 100:.0f}% stop loss for {position_id}"
            )

        return exit_ids
