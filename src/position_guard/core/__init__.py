"""Component base classes, scheduled sweeps and the event bus."""

from position_guard.core.events import (
    Event,
    EventBus,
    ExitExecuted,
    EmergencyReduceExecuted,
    LiquidationRiskDetected,
)
from position_guard.core.base import Component, ScheduledSweep

__all__ = [
    "Event",
    "EventBus",
    "ExitExecuted",
    "EmergencyReduceExecuted",
    "LiquidationRiskDetected",
    "Component",
    "ScheduledSweep",
]
