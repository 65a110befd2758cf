"""
Position risk monitoring.

Heavier modules (pricing, reducer, monitor) import the collaborator
interfaces and are imported directly from their modules.
"""

from position_guard.position.models import (
    Domain,
    PositionStatus,
    PositionSide,
    ExitKind,
    TriggerDirection,
    RiskLevel,
    RecommendedAction,
    Position,
    ExitCondition,
    ExitConditionDraft,
    PriceData,
    ExecutedExit,
    LiquidationRiskResult,
    EmergencyReduceResult,
    PartialCloseRecord,
    CachedPositionEntry,
)
from position_guard.position.exit_conditions import (
    ExitConditionRegistry,
    ReasoningParser,
    RegexReasoningParser,
    SafetyExitPolicy,
)
from position_guard.position.evaluator import EvaluationOutcome, evaluate_condition
from position_guard.position.cache import PositionSnapshotCache

__all__ = [
    "Domain",
    "PositionStatus",
    "PositionSide",
    "ExitKind",
    "TriggerDirection",
    "RiskLevel",
    "RecommendedAction",
    "Position",
    "ExitCondition",
    "ExitConditionDraft",
    "PriceData",
    "ExecutedExit",
    "LiquidationRiskResult",
    "EmergencyReduceResult",
    "PartialCloseRecord",
    "CachedPositionEntry",
    "ExitConditionRegistry",
    "ReasoningParser",
    "RegexReasoningParser",
    "SafetyExitPolicy",
    "EvaluationOutcome",
    "evaluate_condition",
    "PositionSnapshotCache",
]
