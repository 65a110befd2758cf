"""
Exit condition evaluation.

Pure decision logic: given one condition, the current pricing of its
position and the current time, decide whether the exit fires. The only
side effect is the trailing-stop high-water mark, which ratchets on
every evaluation.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from position_guard.position.models import (
    ExitCondition,
    ExitKind,
    PositionSide,
    PriceData,
    TriggerDirection,
)


@dataclass
class EvaluationOutcome:
    """Whether a condition fired, and the human-readable reason."""
    triggered: bool
    reason: str = ""


NOT_TRIGGERED = EvaluationOutcome(triggered=False)


def _crossed(price: float, trigger: float, direction: TriggerDirection) -> bool:
    if direction == TriggerDirection.BELOW:
        return price <= trigger
    return price >= trigger


def _evaluate_trailing(condition: ExitCondition, price: float, side: PositionSide) -> EvaluationOutcome:
    pct = condition.trailing_percent

    if side == PositionSide.SHORT:
        # Shorts track the lowest price seen
        mark = price if condition.high_water_mark is None else min(condition.high_water_mark, price)
        condition.high_water_mark = mark
        stop = mark * (1 + pct)
        if price >= stop:
            return EvaluationOutcome(
                True,
                f"Trailing stop triggered at ${price:.2f} "
                f"({pct * 100:.1f}% above low of ${mark:.2f})"
            )
        return NOT_TRIGGERED

    mark = price if condition.high_water_mark is None else max(condition.high_water_mark, price)
    condition.high_water_mark = mark
    stop = mark * (1 - pct)
    if price <= stop:
        return EvaluationOutcome(
            True,
            f"Trailing stop triggered at ${price:.2f} "
            f"({pct * 100:.1f}% below high of ${mark:.2f})"
        )
    return NOT_TRIGGERED


def evaluate_condition(
    condition: ExitCondition,
    price_data: PriceData,
    now: Optional[datetime] = None,
    side: PositionSide = PositionSide.LONG
) -> EvaluationOutcome:
    """
    Evaluate one exit condition.

    Args:
        condition: Active exit condition
        price_data: Current pricing for the condition's position
        now: Evaluation time (naive UTC), defaults to utcnow
        side: Side of the position (affects trailing stops only)

    Returns:
        EvaluationOutcome
    """
    price = price_data.price
    kind = condition.kind

    if kind == ExitKind.STOP_LOSS:
        if _crossed(price, condition.trigger_price, condition.direction):
            return EvaluationOutcome(
                True,
                f"Stop loss triggered at ${price:.2f} (trigger: ${condition.trigger_price:.2f})"
            )
        return NOT_TRIGGERED

    if kind == ExitKind.TAKE_PROFIT:
        if _crossed(price, condition.trigger_price, condition.direction):
            return EvaluationOutcome(
                True,
                f"Take profit triggered at ${price:.2f} (target: ${condition.trigger_price:.2f})"
            )
        return NOT_TRIGGERED

    if kind == ExitKind.TIME_BASED:
        now = now or datetime.utcnow()
        if now >= condition.trigger_time:
            return EvaluationOutcome(
                True,
                f"Time-based exit reached ({condition.trigger_time.isoformat()})"
            )
        return NOT_TRIGGERED

    if kind == ExitKind.LIQUIDATION_RISK:
        # Only leveraged positions carry a margin ratio
        if price_data.margin_ratio is None:
            return NOT_TRIGGERED
        if price_data.margin_ratio <= condition.margin_threshold:
            return EvaluationOutcome(
                True,
                f"Liquidation risk: margin ratio {price_data.margin_ratio * 100:.1f}% "
                f"(threshold: {condition.margin_threshold * 100:.1f}%)"
            )
        return NOT_TRIGGERED

    if kind == ExitKind.TRAILING_STOP:
        return _evaluate_trailing(condition, price, side)

    return NOT_TRIGGERED
